"""Boundary contracts for the orchestrator's external collaborators.

The orchestrator never implements executors, oracles or analyzers itself; it
consumes them through the narrow async protocols below. Implementations are
injected through a ``Collaborators`` bundle, which makes it trivial to swap
real services for deterministic fakes in tests.

Usage:
    from conductor.runtime.collaborators import Collaborators

    collaborators = Collaborators(
        command_executor=ShellExecutor(),
        session_factory=BrowserSessionFactory(),
        decision_oracle=MyOracle(),
    )
    orchestrator = WorkflowOrchestrator(collaborators)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from .types import (
    Decision,
    DecisionContext,
    EvidenceAnalysis,
    MarketSignal,
    MetricVector,
    WorkflowId,
)

# =============================================================================
# Executor Results
# =============================================================================


@dataclass(frozen=True)
class CommandOutcome:
    """Result of a command-execution action."""

    exit_status: int
    output: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True)
class InteractionOutcome:
    """Result of an interactive-session action."""

    success: bool
    state_summary: str = ""
    evidence_ref: Optional[str] = None
    duration_ms: int = 0


# =============================================================================
# Protocols
# =============================================================================


class CommandExecutor(Protocol):
    """Runs one command-type action descriptor."""

    async def run(self, action: Dict[str, Any]) -> CommandOutcome:
        """Run the action.

        Raises:
            StepError subclasses to signal a classified failure. Any other
            exception is classified by ``classify_failure``.
        """
        ...


class InteractiveSession(Protocol):
    """A live, stateful interactive session (e.g. a browser)."""

    async def perform(self, action: Dict[str, Any]) -> InteractionOutcome:
        """Perform one action against the session."""
        ...

    async def close(self) -> None:
        """Release the session."""
        ...


class SessionFactory(Protocol):
    """Creates at most one interactive session per workflow."""

    async def open(self, workflow_id: WorkflowId) -> InteractiveSession:
        """Open a session for the workflow.

        Raises:
            Any exception; the orchestrator treats session creation failure
            as fatal.
        """
        ...


class DecisionOracle(Protocol):
    """Scores the next action at an adaptation checkpoint."""

    async def decide(self, context: DecisionContext) -> Decision:
        ...


class EvidenceAnalyzer(Protocol):
    """Turns a captured snapshot into structured observations."""

    async def analyze(self, evidence_ref: str, goal_context: str) -> EvidenceAnalysis:
        ...


class MarketSignalProvider(Protocol):
    """Reports market and trend signals for a domain."""

    async def signals(self, domain_hint: str) -> List[MarketSignal]:
        ...


class MutationOracle(Protocol):
    """Proposes a candidate artifact given the current best and its metrics."""

    async def propose(self, current_artifact: Any, metrics: MetricVector) -> Any:
        ...


class MetricsEvaluator(Protocol):
    """Measures an artifact's metric vector."""

    async def evaluate(self, artifact: Any) -> MetricVector:
        ...


# =============================================================================
# Bundle
# =============================================================================


@dataclass
class Collaborators:
    """The set of collaborators a WorkflowOrchestrator drives.

    Only the executors for environments a plan actually uses are required;
    the rest are optional and their features are skipped when absent.
    """

    command_executor: Optional[CommandExecutor] = None
    session_factory: Optional[SessionFactory] = None
    decision_oracle: Optional[DecisionOracle] = None
    evidence_analyzer: Optional[EvidenceAnalyzer] = None
    market_provider: Optional[MarketSignalProvider] = None
    mutation_oracle: Optional[MutationOracle] = None
    metrics_evaluator: Optional[MetricsEvaluator] = None

    @property
    def supports_evolution(self) -> bool:
        return self.mutation_oracle is not None and self.metrics_evaluator is not None
