"""Decision, evidence and decision-context types.

The Decision Oracle receives a single DecisionContext built from typed
context fragments (terminal, visual and market) and answers with a Decision.
Every adaptation checkpoint records its Decision for audit, whether or not
the plan was rewritten.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple, Union

from ._ids import StepId, WorkflowId
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow
from .plan import Environment


class RiskLevel(str, Enum):
    """Risk classification of a decision."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExecutionStrategy(str, Enum):
    """How the chosen action should be carried out."""

    IMMEDIATE = "immediate"
    DEFERRED = "deferred"
    ABORT = "abort"


class AdaptationKind(str, Enum):
    """Plan rewrite proposed by (or applied for) a decision."""

    CONTINUE = "continue"
    INSERT = "insert"
    REPLACE = "replace"
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True)
class ProposedAction:
    """The next action a decision recommends.

    Attributes:
        kind: Plan rewrite requested (continue leaves the plan alone).
        environment: Environment for an inserted or replacement step.
            Defaults to the checkpoint step's environment.
        descriptor: Action descriptor for an inserted or replacement step.
        description: Human-readable summary.
    """

    kind: AdaptationKind = AdaptationKind.CONTINUE
    environment: Optional[Environment] = None
    descriptor: Dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass(frozen=True)
class Decision:
    """An oracle's recommended next action with confidence and risk.

    Attributes:
        action: Chosen next action.
        confidence: Confidence in [0, 1].
        rationale: Free-text rationale.
        risk: Risk classification.
        strategy: Execution strategy.
        alternatives: Alternative actions considered (fallback plan).
        checkpoint_step_id: Step whose completion triggered the checkpoint.
        triggered: Whether the checkpoint adapted on this decision.
        applied: Rewrite actually applied (None when nothing changed).
        attempt: Oracle consultation number at this checkpoint (1-based).
        synthetic: True for the fallback recorded after an oracle timeout.
        timestamp: When the decision was recorded.
    """

    action: ProposedAction
    confidence: float
    rationale: str = ""
    risk: RiskLevel = RiskLevel.LOW
    strategy: ExecutionStrategy = ExecutionStrategy.IMMEDIATE
    alternatives: Tuple[str, ...] = ()
    checkpoint_step_id: Optional[StepId] = None
    triggered: bool = False
    applied: Optional[AdaptationKind] = None
    attempt: int = 1
    synthetic: bool = False
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Decision confidence must be within [0, 1], got {self.confidence}")


# =============================================================================
# Evidence
# =============================================================================


@dataclass(frozen=True)
class ElementObservation:
    """One interactive element observed in a captured snapshot."""

    type: str
    description: str
    confidence: float
    actionable: bool = False


@dataclass(frozen=True)
class EvidenceAnalysis:
    """Structured analysis produced by the Evidence Analyzer.

    Attributes:
        elements: Observed interactive elements.
        layout_summary: Free-text layout summary.
        confidence: Overall confidence in [0, 1].
        issues: Potential problems spotted in the snapshot.
    """

    elements: Tuple[ElementObservation, ...] = ()
    layout_summary: str = ""
    confidence: float = 0.0
    issues: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Evidence confidence must be within [0, 1], got {self.confidence}")


@dataclass(frozen=True)
class Evidence:
    """Opaque captured observation plus its analysis once processed."""

    ref: str
    step_id: StepId
    analysis: Optional[EvidenceAnalysis] = None
    captured_at: datetime = field(default_factory=_utcnow)
    error: Optional[str] = None


@dataclass(frozen=True)
class MarketSignal:
    """A trend reported by the Market Signal Provider."""

    trend: str
    direction: str = "stable"
    magnitude: float = 0.0

    @property
    def is_strong_rise(self) -> bool:
        return self.direction == "rising" and self.magnitude >= 0.5


# =============================================================================
# Decision Context (tagged union of fragments)
# =============================================================================


@dataclass(frozen=True)
class TerminalContext:
    """Recent execution outcomes from the plan."""

    recent_results: Tuple[Dict[str, Any], ...] = ()
    failed_step_id: Optional[StepId] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    kind: Literal["terminal"] = "terminal"


@dataclass(frozen=True)
class VisualContext:
    """Evidence from the most recent interactive-session step."""

    evidence_ref: str
    analysis: Optional[EvidenceAnalysis] = None
    kind: Literal["visual"] = "visual"


@dataclass(frozen=True)
class MarketContext:
    """Market signals gathered for the workflow."""

    domain: str
    signals: Tuple[MarketSignal, ...] = ()
    kind: Literal["market"] = "market"


ContextFragment = Union[TerminalContext, VisualContext, MarketContext]


@dataclass(frozen=True)
class DecisionContext:
    """Everything the Decision Oracle sees at one checkpoint.

    Attributes:
        workflow_id: Workflow being adapted.
        goal: The request's goal text.
        mode: The request's mode value.
        checkpoint_step_id: Step whose completion triggered the checkpoint.
        fragments: Typed context fragments, at most one per kind.
        history: Decisions already recorded in this workflow.
        remaining_step_ids: Pending steps, in plan order.
    """

    workflow_id: WorkflowId
    goal: str
    mode: str
    checkpoint_step_id: StepId
    fragments: Tuple[ContextFragment, ...] = ()
    history: Tuple[Decision, ...] = ()
    remaining_step_ids: Tuple[StepId, ...] = ()

    def fragment(self, kind: str) -> Optional[ContextFragment]:
        for frag in self.fragments:
            if frag.kind == kind:
                return frag
        return None

    @property
    def terminal(self) -> Optional[TerminalContext]:
        return self.fragment("terminal")  # type: ignore[return-value]

    @property
    def visual(self) -> Optional[VisualContext]:
        return self.fragment("visual")  # type: ignore[return-value]

    @property
    def market(self) -> Optional[MarketContext]:
        return self.fragment("market")  # type: ignore[return-value]


# =============================================================================
# Serialization
# =============================================================================


def decision_to_dict(decision: Decision) -> Dict[str, Any]:
    """Convert Decision to a dictionary."""
    return {
        "action": {
            "kind": decision.action.kind.value,
            "environment": decision.action.environment.value if decision.action.environment else None,
            "descriptor": dict(decision.action.descriptor),
            "description": decision.action.description,
        },
        "confidence": decision.confidence,
        "rationale": decision.rationale,
        "risk": decision.risk.value,
        "strategy": decision.strategy.value,
        "alternatives": list(decision.alternatives),
        "checkpoint_step_id": decision.checkpoint_step_id,
        "triggered": decision.triggered,
        "applied": decision.applied.value if decision.applied else None,
        "attempt": decision.attempt,
        "synthetic": decision.synthetic,
        "timestamp": _datetime_to_iso(decision.timestamp),
    }


def decision_from_dict(data: Dict[str, Any]) -> Decision:
    """Create Decision from a dictionary."""
    action_data = data.get("action", {})
    env = action_data.get("environment")
    return Decision(
        action=ProposedAction(
            kind=AdaptationKind(action_data.get("kind", "continue")),
            environment=Environment(env) if env else None,
            descriptor=dict(action_data.get("descriptor", {})),
            description=action_data.get("description", ""),
        ),
        confidence=float(data["confidence"]),
        rationale=data.get("rationale", ""),
        risk=RiskLevel(data.get("risk", "low")),
        strategy=ExecutionStrategy(data.get("strategy", "immediate")),
        alternatives=tuple(data.get("alternatives", ())),
        checkpoint_step_id=data.get("checkpoint_step_id"),
        triggered=data.get("triggered", False),
        applied=AdaptationKind(data["applied"]) if data.get("applied") else None,
        attempt=data.get("attempt", 1),
        synthetic=data.get("synthetic", False),
        timestamp=_iso_to_datetime(data.get("timestamp")) or _utcnow(),
    )


def evidence_to_dict(evidence: Evidence) -> Dict[str, Any]:
    """Convert Evidence to a dictionary."""
    analysis = evidence.analysis
    return {
        "ref": evidence.ref,
        "step_id": evidence.step_id,
        "captured_at": _datetime_to_iso(evidence.captured_at),
        "error": evidence.error,
        "analysis": None
        if analysis is None
        else {
            "elements": [
                {
                    "type": e.type,
                    "description": e.description,
                    "confidence": e.confidence,
                    "actionable": e.actionable,
                }
                for e in analysis.elements
            ],
            "layout_summary": analysis.layout_summary,
            "confidence": analysis.confidence,
            "issues": list(analysis.issues),
        },
    }
