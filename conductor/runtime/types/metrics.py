"""Metric, evolution and outcome types.

MetricVector carries the four objectives tracked during evolution and the
Pareto dominance helpers used for acceptance. PerformanceMetrics is the
per-workflow summary; WorkflowOutcome is the immutable snapshot appended to
the Metrics & History Store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ._ids import WorkflowId
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow

OBJECTIVES: Tuple[str, ...] = (
    "code_quality",
    "user_satisfaction",
    "market_alignment",
    "autonomy_level",
)


@dataclass(frozen=True)
class MetricVector:
    """Multi-objective score of an artifact (higher is better on every axis)."""

    code_quality: float = 0.0
    user_satisfaction: float = 0.0
    market_alignment: float = 0.0
    autonomy_level: float = 0.0

    def as_tuple(self) -> Tuple[float, ...]:
        return tuple(getattr(self, name) for name in OBJECTIVES)

    def dominates(self, other: "MetricVector") -> bool:
        """Pareto dominance: no worse on every objective, better on one."""
        mine, theirs = self.as_tuple(), other.as_tuple()
        return all(a >= b for a, b in zip(mine, theirs)) and any(
            a > b for a, b in zip(mine, theirs)
        )

    def at_least(self, other: "MetricVector") -> bool:
        """True when no objective is below ``other``'s."""
        return all(a >= b for a, b in zip(self.as_tuple(), other.as_tuple()))

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in OBJECTIVES}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricVector":
        return cls(**{name: float(data.get(name, 0.0)) for name in OBJECTIVES})


@dataclass(frozen=True)
class EvolutionGeneration:
    """One propose-evaluate-retain iteration.

    Attributes:
        index: Generation number (1-based).
        mutation_ref: Reference to the proposed candidate, if any.
        metrics: Candidate metric vector (None when the generation failed).
        accepted: Whether the candidate became the new best.
        best_before: Best vector the candidate was compared against.
        error: Failure message for failed generations.
    """

    index: int
    mutation_ref: Optional[str]
    metrics: Optional[MetricVector]
    accepted: bool
    best_before: Optional[MetricVector] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class EvolutionOutcome:
    """Result of the evolution phase."""

    best_artifact: Any
    best_metrics: MetricVector
    generations: Tuple[EvolutionGeneration, ...] = ()
    truncated: bool = False
    reason: str = ""

    @property
    def accepted_count(self) -> int:
        return sum(1 for g in self.generations if g.accepted)


class OutcomeStatus(str, Enum):
    """Status of a recorded workflow outcome."""

    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class PerformanceMetrics:
    """Aggregate performance record for one workflow.

    Attributes:
        success_rate: Succeeded steps / total steps (0 for an empty plan).
        duration_ms: Wall-clock duration of the workflow.
        adaptations: Plan rewrites applied.
        evolution_generations: Generations run (accepted or not).
        confidence_mean/min/max: Statistics over recorded Decision confidences.
        errors_detected: Step failures observed, including retried ones.
        errors_by_kind: errors_detected broken down by ErrorKind value.
        recovery_attempts: Transient retries plus adaptation attempts on failures.
        steps_total/steps_succeeded/steps_failed/steps_abandoned: Step counts.
        environment_utilization: Step count per environment value.
        visual_insights: Evidence analyses gathered.
    """

    success_rate: float = 0.0
    duration_ms: int = 0
    adaptations: int = 0
    evolution_generations: int = 0
    confidence_mean: Optional[float] = None
    confidence_min: Optional[float] = None
    confidence_max: Optional[float] = None
    errors_detected: int = 0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)
    recovery_attempts: int = 0
    steps_total: int = 0
    steps_succeeded: int = 0
    steps_failed: int = 0
    steps_abandoned: int = 0
    environment_utilization: Dict[str, int] = field(default_factory=dict)
    visual_insights: int = 0


@dataclass(frozen=True)
class WorkflowOutcome:
    """Immutable snapshot appended to the Metrics & History Store."""

    workflow_id: WorkflowId
    goal: str
    mode: str
    status: OutcomeStatus
    metrics: PerformanceMetrics
    step_statuses: Tuple[Tuple[str, str, str], ...] = ()  # (step_id, environment, status)
    decisions: Tuple[Dict[str, Any], ...] = ()
    generations: Tuple[Dict[str, Any], ...] = ()
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class HistorySummary:
    """Running averages over recorded workflows.

    ``environment_success`` maps an environment value to the success rate
    of its steps across history; ``environment_samples`` gives step counts.
    """

    workflows: int = 0
    success_rate: float = 0.0
    completed_ratio: float = 0.0
    confidence_mean: Optional[float] = None
    adaptations_per_workflow: float = 0.0
    duration_ms_mean: float = 0.0
    environment_success: Dict[str, float] = field(default_factory=dict)
    environment_samples: Dict[str, int] = field(default_factory=dict)


# =============================================================================
# Serialization
# =============================================================================


def performance_metrics_to_dict(metrics: PerformanceMetrics) -> Dict[str, Any]:
    """Convert PerformanceMetrics to a dictionary."""
    return {
        "success_rate": metrics.success_rate,
        "duration_ms": metrics.duration_ms,
        "adaptations": metrics.adaptations,
        "evolution_generations": metrics.evolution_generations,
        "confidence_mean": metrics.confidence_mean,
        "confidence_min": metrics.confidence_min,
        "confidence_max": metrics.confidence_max,
        "errors_detected": metrics.errors_detected,
        "errors_by_kind": dict(metrics.errors_by_kind),
        "recovery_attempts": metrics.recovery_attempts,
        "steps_total": metrics.steps_total,
        "steps_succeeded": metrics.steps_succeeded,
        "steps_failed": metrics.steps_failed,
        "steps_abandoned": metrics.steps_abandoned,
        "environment_utilization": dict(metrics.environment_utilization),
        "visual_insights": metrics.visual_insights,
    }


def performance_metrics_from_dict(data: Dict[str, Any]) -> PerformanceMetrics:
    """Create PerformanceMetrics from a dictionary."""
    return PerformanceMetrics(
        success_rate=data.get("success_rate", 0.0),
        duration_ms=data.get("duration_ms", 0),
        adaptations=data.get("adaptations", 0),
        evolution_generations=data.get("evolution_generations", 0),
        confidence_mean=data.get("confidence_mean"),
        confidence_min=data.get("confidence_min"),
        confidence_max=data.get("confidence_max"),
        errors_detected=data.get("errors_detected", 0),
        errors_by_kind=dict(data.get("errors_by_kind", {})),
        recovery_attempts=data.get("recovery_attempts", 0),
        steps_total=data.get("steps_total", 0),
        steps_succeeded=data.get("steps_succeeded", 0),
        steps_failed=data.get("steps_failed", 0),
        steps_abandoned=data.get("steps_abandoned", 0),
        environment_utilization=dict(data.get("environment_utilization", {})),
        visual_insights=data.get("visual_insights", 0),
    )


def evolution_generation_to_dict(gen: EvolutionGeneration) -> Dict[str, Any]:
    """Convert EvolutionGeneration to a dictionary."""
    return {
        "index": gen.index,
        "mutation_ref": gen.mutation_ref,
        "metrics": gen.metrics.to_dict() if gen.metrics else None,
        "accepted": gen.accepted,
        "best_before": gen.best_before.to_dict() if gen.best_before else None,
        "error": gen.error,
        "timestamp": _datetime_to_iso(gen.timestamp),
    }


def workflow_outcome_to_dict(outcome: WorkflowOutcome) -> Dict[str, Any]:
    """Convert WorkflowOutcome to a dictionary."""
    return {
        "workflow_id": outcome.workflow_id,
        "goal": outcome.goal,
        "mode": outcome.mode,
        "status": outcome.status.value,
        "metrics": performance_metrics_to_dict(outcome.metrics),
        "step_statuses": [list(s) for s in outcome.step_statuses],
        "decisions": list(outcome.decisions),
        "generations": list(outcome.generations),
        "started_at": _datetime_to_iso(outcome.started_at),
        "completed_at": _datetime_to_iso(outcome.completed_at),
    }


def workflow_outcome_from_dict(data: Dict[str, Any]) -> WorkflowOutcome:
    """Create WorkflowOutcome from a dictionary."""
    return WorkflowOutcome(
        workflow_id=data["workflow_id"],
        goal=data.get("goal", ""),
        mode=data.get("mode", "balanced"),
        status=OutcomeStatus(data["status"]),
        metrics=performance_metrics_from_dict(data.get("metrics", {})),
        step_statuses=tuple(tuple(s) for s in data.get("step_statuses", [])),
        decisions=tuple(data.get("decisions", [])),
        generations=tuple(data.get("generations", [])),
        started_at=_iso_to_datetime(data.get("started_at")) or _utcnow(),
        completed_at=_iso_to_datetime(data.get("completed_at")) or _utcnow(),
    )
