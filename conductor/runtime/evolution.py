"""
evolution.py - Evolution Controller: propose, measure and retain better artifacts.

The evolution phase runs after execution when a request asks for evolution
cycles. Each generation:

1. asks the Mutation Oracle for a candidate given the current best artifact
   and its metric vector,
2. has the Metrics Evaluator measure the candidate's MetricVector,
3. retains the candidate as the new best only if the acceptance rule allows it.

Acceptance is multi-objective over code quality, user satisfaction, market
alignment and autonomy level:

- ``non_dominated`` (default): accept unless the current best Pareto-dominates
  the candidate.
- ``pareto_improvement``: accept only if the candidate is no worse than the
  best on every objective.

With market protection enabled and a strong rising market signal present, a
candidate may also not regress market alignment. Either way the retained
best after generation k+1 is never dominated by the best after generation k.

A generation fails when proposal or evaluation raises or times out. Two
consecutive failures (configurable) truncate the phase; the best artifact
found so far is kept and the workflow is unaffected. A set cancel event
stops the phase before the next proposal, also keeping the best so far.

Usage:
    from conductor.runtime.evolution import EvolutionController

    controller = EvolutionController(mutation_oracle, metrics_evaluator, config=config)
    outcome = await controller.run_evolution(artifact, baseline_metrics, generations=3)
    best = outcome.best_artifact
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

from ..config.runtime_config import EvolutionPolicy, RuntimeConfig
from .collaborators import MetricsEvaluator, MutationOracle
from .errors import EvolutionError
from .types import (
    EvolutionGeneration,
    EvolutionOutcome,
    MarketSignal,
    MetricVector,
    WorkflowEvent,
    WorkflowId,
)
from .types._time import _utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# Acceptance
# =============================================================================


class AcceptanceRule(str, Enum):
    """Rule for retaining a candidate as the new best."""

    NON_DOMINATED = "non_dominated"
    PARETO_IMPROVEMENT = "pareto_improvement"


def accepts(
    candidate: MetricVector,
    best: MetricVector,
    rule: AcceptanceRule = AcceptanceRule.NON_DOMINATED,
    protect_market_alignment: bool = False,
) -> bool:
    """Decide whether ``candidate`` replaces ``best``.

    Args:
        candidate: Metric vector of the proposed artifact.
        best: Metric vector of the current best artifact.
        rule: Acceptance rule.
        protect_market_alignment: Reject candidates that lower market alignment.

    Returns:
        True when the candidate should become the new best.
    """
    if protect_market_alignment and candidate.market_alignment < best.market_alignment:
        return False
    if rule == AcceptanceRule.PARETO_IMPROVEMENT:
        return candidate.at_least(best)
    return not best.dominates(candidate)


def artifact_ref(artifact: Any) -> str:
    """Stable short reference for an artifact.

    Uses the artifact's own ``ref``/``id`` when it has one, otherwise a
    content hash of its repr.
    """
    for attr in ("ref", "id"):
        value = getattr(artifact, attr, None)
        if value is None and isinstance(artifact, dict):
            value = artifact.get(attr)
        if value is not None:
            return str(value)
    return "artifact-" + hashlib.sha256(repr(artifact).encode("utf-8")).hexdigest()[:12]


# =============================================================================
# Controller
# =============================================================================


class EvolutionController:
    """Runs bounded evolution generations over a produced artifact."""

    def __init__(
        self,
        mutation_oracle: MutationOracle,
        metrics_evaluator: MetricsEvaluator,
        *,
        config: Optional[RuntimeConfig] = None,
        workflow_id: Optional[WorkflowId] = None,
        market_signals: Sequence[MarketSignal] = (),
        event_emitter: Optional[Callable[[WorkflowId, WorkflowEvent], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._oracle = mutation_oracle
        self._cancel_event = cancel_event
        self._evaluator = metrics_evaluator
        self._config = config or RuntimeConfig()
        self._policy: EvolutionPolicy = self._config.evolution
        self._rule = AcceptanceRule(self._policy.acceptance)
        self._workflow_id = workflow_id
        self._protect_market = self._policy.protect_market_alignment and any(
            s.is_strong_rise for s in market_signals
        )
        self._event_emitter = event_emitter

    async def evaluate(self, artifact: Any) -> MetricVector:
        """Measure an artifact with the configured evaluator (bounded by timeout)."""
        metrics = await asyncio.wait_for(
            self._evaluator.evaluate(artifact), self._config.evolution_timeout_seconds
        )
        if not isinstance(metrics, MetricVector):
            raise EvolutionError(f"Evaluator returned {type(metrics).__name__}, not MetricVector")
        return metrics

    async def _propose(self, artifact: Any, metrics: MetricVector) -> Any:
        candidate = await asyncio.wait_for(
            self._oracle.propose(artifact, metrics), self._config.evolution_timeout_seconds
        )
        if candidate is None:
            raise EvolutionError("Mutation oracle returned no candidate")
        return candidate

    async def run_evolution(
        self,
        baseline_artifact: Any,
        baseline_metrics: MetricVector,
        generations: int,
    ) -> EvolutionOutcome:
        """Run up to ``generations`` propose-evaluate-retain iterations.

        Args:
            baseline_artifact: Artifact produced by execution.
            baseline_metrics: Its measured metric vector.
            generations: Number of generations to attempt (>= 0).

        Returns:
            EvolutionOutcome with the best artifact and every generation.
        """
        best_artifact = baseline_artifact
        best_metrics = baseline_metrics
        history: List[EvolutionGeneration] = []
        consecutive_failures = 0
        truncated = False
        reason = "completed"

        logger.info(
            "Starting evolution: %d generation(s), rule=%s, market protection=%s",
            generations,
            self._rule.value,
            self._protect_market,
        )

        for index in range(1, generations + 1):
            if self._cancel_event is not None and self._cancel_event.is_set():
                truncated = True
                reason = "cancelled"
                logger.warning("Evolution cancelled before generation %d", index)
                break
            try:
                candidate = await self._propose(best_artifact, best_metrics)
                metrics = await self.evaluate(candidate)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                consecutive_failures += 1
                message = str(exc) or type(exc).__name__
                generation = EvolutionGeneration(
                    index=index,
                    mutation_ref=None,
                    metrics=None,
                    accepted=False,
                    best_before=best_metrics,
                    error=message,
                )
                history.append(generation)
                self._emit(generation)
                logger.warning(
                    "Evolution generation %d failed (%d in a row): %s",
                    index,
                    consecutive_failures,
                    message,
                )
                if consecutive_failures >= self._policy.max_consecutive_failures:
                    truncated = True
                    reason = f"{consecutive_failures} consecutive generation failures"
                    logger.warning("Evolution truncated after generation %d: %s", index, reason)
                    break
                continue

            consecutive_failures = 0
            accepted = accepts(metrics, best_metrics, self._rule, self._protect_market)
            generation = EvolutionGeneration(
                index=index,
                mutation_ref=artifact_ref(candidate),
                metrics=metrics,
                accepted=accepted,
                best_before=best_metrics,
            )
            history.append(generation)
            self._emit(generation)
            logger.info(
                "Evolution generation %d %s: %s",
                index,
                "accepted" if accepted else "rejected",
                metrics.to_dict(),
            )
            if accepted:
                best_artifact, best_metrics = candidate, metrics

        return EvolutionOutcome(
            best_artifact=best_artifact,
            best_metrics=best_metrics,
            generations=tuple(history),
            truncated=truncated,
            reason=reason,
        )

    def _emit(self, generation: EvolutionGeneration) -> None:
        if self._event_emitter is None or self._workflow_id is None:
            return
        event = WorkflowEvent(
            workflow_id=self._workflow_id,
            ts=_utcnow(),
            kind="generation",
            payload={
                "index": generation.index,
                "accepted": generation.accepted,
                "error": generation.error,
            },
        )
        self._event_emitter(self._workflow_id, event)
