"""
reporting.py - Recommendations and suggested next actions for a finished workflow.

Both functions are pure: they read the request, the final plan, the
workflow's PerformanceMetrics and (for next actions) the history summary,
and return plain values that are placed on the WorkflowResult.

Usage:
    from conductor.runtime.reporting import build_recommendations, suggest_next_actions

    result.recommendations = build_recommendations(request, metrics, plan)
    result.next_actions = suggest_next_actions(request, metrics, plan, history.aggregate())
"""

from __future__ import annotations

from typing import List, Optional

from .types import (
    ActionPlan,
    Environment,
    HistorySummary,
    Mode,
    NextAction,
    PerformanceMetrics,
    WorkflowRequest,
)

LOW_SUCCESS_RATE = 0.8
LONG_DURATION_MS = 30_000
MIN_VISUAL_INSIGHTS = 3
CONSERVATIVE_UPGRADE_RATE = 0.95
AGGRESSIVE_DOWNGRADE_RATE = 0.7

EVOLVE_BELOW_RATE = 0.9
DOCUMENT_ABOVE_INSIGHTS = 5
OPTIMIZE_MIN_WORKFLOWS = 5
OPTIMIZE_BELOW_RATE = 0.85


def _uses_interactive(plan: Optional[ActionPlan]) -> bool:
    return plan is not None and Environment.INTERACTIVE in plan.environments


def build_recommendations(
    request: WorkflowRequest,
    metrics: PerformanceMetrics,
    plan: Optional[ActionPlan],
) -> List[str]:
    """Human-readable improvement suggestions, most important first."""
    recommendations: List[str] = []

    if metrics.success_rate < LOW_SUCCESS_RATE:
        recommendations.append(
            "Break the goal into smaller steps; success rate was "
            f"{metrics.success_rate:.0%}"
        )
    if metrics.duration_ms > LONG_DURATION_MS:
        recommendations.append("Run independent command steps in parallel to reduce duration")
    if request.visual_feedback and metrics.visual_insights < MIN_VISUAL_INSIGHTS:
        recommendations.append("Add more interactive checkpoints to gather visual evidence")
    if not _uses_interactive(plan):
        recommendations.append("Use interactive-session steps to verify results end to end")
    if request.mode == Mode.CONSERVATIVE and metrics.success_rate > CONSERVATIVE_UPGRADE_RATE:
        recommendations.append("Try balanced mode; conservative runs are consistently succeeding")
    if request.mode == Mode.AGGRESSIVE and metrics.success_rate < AGGRESSIVE_DOWNGRADE_RATE:
        recommendations.append("Switch to balanced or conservative mode for higher reliability")
    if request.evolution_cycles == 0:
        recommendations.append("Enable evolution cycles for continuous improvement")
    return recommendations


def suggest_next_actions(
    request: WorkflowRequest,
    metrics: PerformanceMetrics,
    plan: Optional[ActionPlan],
    summary: Optional[HistorySummary] = None,
) -> List[NextAction]:
    """Follow-up commands ordered by priority (highest first)."""
    actions: List[NextAction] = []

    if metrics.success_rate < EVOLVE_BELOW_RATE:
        actions.append(
            NextAction("evolve", "Run evolution cycles to improve the success rate", 8)
        )
    if metrics.visual_insights > DOCUMENT_ABOVE_INSIGHTS:
        actions.append(
            NextAction("document", "Document the visual insights gathered during the run", 6)
        )
    if request.market_intelligence:
        actions.append(
            NextAction("market-analysis", "Deepen the market analysis for this domain", 7)
        )
    if _uses_interactive(plan):
        actions.append(
            NextAction("validate", "Validate the interactive results with a follow-up session", 5)
        )
    if (
        summary is not None
        and summary.workflows > OPTIMIZE_MIN_WORKFLOWS
        and summary.success_rate < OPTIMIZE_BELOW_RATE
    ):
        actions.append(
            NextAction(
                "optimize",
                f"Historical success rate is {summary.success_rate:.0%} over "
                f"{summary.workflows} workflows",
                9,
            )
        )
    actions.sort(key=lambda a: a.priority, reverse=True)
    return actions
