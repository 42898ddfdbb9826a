"""Workflow result types returned by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ._ids import WorkflowId
from .decision import Decision, Evidence, decision_to_dict, evidence_to_dict
from .metrics import (
    EvolutionGeneration,
    MetricVector,
    PerformanceMetrics,
    evolution_generation_to_dict,
    performance_metrics_to_dict,
)
from .plan import ActionPlan, ExecutionResult, StepStatus, action_plan_to_dict, execution_result_to_dict
from .workflow import WorkflowEvent, WorkflowRequest, WorkflowState, workflow_event_to_dict, workflow_request_to_dict


@dataclass(frozen=True)
class NextAction:
    """A suggested follow-up command, ordered by priority (higher first)."""

    command: str
    reason: str
    priority: int


@dataclass
class WorkflowResult:
    """Structured result of one orchestrated workflow.

    Attributes:
        workflow_id: Workflow identifier.
        request: The accepted request.
        state: Terminal workflow state.
        plan: Final ActionPlan (including adaptation rewrites).
        results: Every ExecutionResult, in observation order.
        decisions: Every Decision recorded at adaptation checkpoints.
        evidence: Evidence captured and analyzed during the workflow.
        generations: EvolutionGeneration entries, if evolution ran.
        best_artifact: Best artifact retained by evolution, if any.
        best_metrics: Metric vector of the best artifact, if any.
        metrics: PerformanceMetrics summary.
        recommendations: Human-readable improvement suggestions.
        next_actions: Suggested follow-up commands.
        error: Failure message for Failed workflows.
        cancelled: True when the workflow was cancelled.
        events: Full event trail (only when the request set debug).
    """

    workflow_id: WorkflowId
    request: WorkflowRequest
    state: WorkflowState
    plan: Optional[ActionPlan]
    results: List[ExecutionResult] = field(default_factory=list)
    decisions: List[Decision] = field(default_factory=list)
    evidence: List[Evidence] = field(default_factory=list)
    generations: List[EvolutionGeneration] = field(default_factory=list)
    best_artifact: Any = None
    best_metrics: Optional[MetricVector] = None
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    recommendations: List[str] = field(default_factory=list)
    next_actions: List[NextAction] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False
    events: List[WorkflowEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == WorkflowState.COMPLETED

    def steps_with_status(self, status: StepStatus) -> List[str]:
        if self.plan is None:
            return []
        return [step.id for step in self.plan.steps if step.status == status]


def workflow_result_to_dict(result: WorkflowResult) -> Dict[str, Any]:
    """Convert WorkflowResult to a JSON-friendly dictionary."""
    return {
        "workflow_id": result.workflow_id,
        "request": workflow_request_to_dict(result.request),
        "state": result.state.value,
        "plan": action_plan_to_dict(result.plan) if result.plan else None,
        "results": [execution_result_to_dict(r) for r in result.results],
        "decisions": [decision_to_dict(d) for d in result.decisions],
        "evidence": [evidence_to_dict(e) for e in result.evidence],
        "generations": [evolution_generation_to_dict(g) for g in result.generations],
        "best_metrics": result.best_metrics.to_dict() if result.best_metrics else None,
        "metrics": performance_metrics_to_dict(result.metrics),
        "recommendations": list(result.recommendations),
        "next_actions": [
            {"command": a.command, "reason": a.reason, "priority": a.priority}
            for a in result.next_actions
        ],
        "error": result.error,
        "cancelled": result.cancelled,
        "events": [workflow_event_to_dict(e) for e in result.events],
    }
