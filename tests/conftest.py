"""
Test fixtures and fake collaborators for the conductor runtime tests.

Every fake is deterministic: outcomes are scripted per instruction or
returned in order, never drawn at random.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

from conductor.config.runtime_config import RetryPolicy, RuntimeConfig, reset_config
from conductor.runtime.collaborators import CommandOutcome, InteractionOutcome
from conductor.runtime.history import HistoryStore
from conductor.runtime.types import (
    AdaptationKind,
    Decision,
    DecisionContext,
    ElementObservation,
    EvidenceAnalysis,
    ExecutionStrategy,
    MarketSignal,
    MetricVector,
    ProposedAction,
    RiskLevel,
)

ScriptItem = Union[CommandOutcome, InteractionOutcome, BaseException]


# ============================================================================
# Executors
# ============================================================================


class FakeCommandExecutor:
    """Command executor with per-instruction scripted outcomes.

    Instructions without a script (or whose script is used up) succeed.
    Tracks how many calls were in flight at once.
    """

    def __init__(
        self,
        script: Optional[Dict[str, Sequence[ScriptItem]]] = None,
        delay: float = 0.0,
    ):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def run(self, action: Dict[str, Any]) -> CommandOutcome:
        self.calls.append(dict(action))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            queue = self.script.get(action.get("instruction", ""))
            if queue:
                item = queue.pop(0)
                if isinstance(item, BaseException):
                    raise item
                return item
            return CommandOutcome(exit_status=0, output=f"ok: {action.get('instruction')}", duration_ms=1)
        finally:
            self.active -= 1

    @property
    def instructions(self) -> List[str]:
        return [c.get("instruction", "") for c in self.calls]


class BlockingCommandExecutor:
    """Succeeds for the first ``succeed`` calls, then blocks until cancelled."""

    def __init__(self, succeed: int):
        self.succeed = succeed
        self.calls = 0
        self.blocked = asyncio.Event()
        self.cancelled_calls = 0

    async def run(self, action: Dict[str, Any]) -> CommandOutcome:
        self.calls += 1
        if self.calls <= self.succeed:
            return CommandOutcome(exit_status=0, output="done", duration_ms=1)
        self.blocked.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled_calls += 1
            raise
        return CommandOutcome(exit_status=0)


class FakeInteractiveSession:
    """Interactive session recording performed actions and overlap."""

    def __init__(self, factory: "FakeSessionFactory", workflow_id: str):
        self.factory = factory
        self.workflow_id = workflow_id
        self.closed = False

    async def perform(self, action: Dict[str, Any]) -> InteractionOutcome:
        factory = self.factory
        factory.performed.append(dict(action))
        factory.active += 1
        factory.max_active = max(factory.max_active, factory.active)
        try:
            await asyncio.sleep(factory.delay)
            queue = factory.script.get(action.get("instruction", ""))
            if queue:
                item = queue.pop(0)
                if isinstance(item, BaseException):
                    raise item
                return item
            n = len(factory.performed)
            return InteractionOutcome(
                success=True,
                state_summary=f"state after {action.get('instruction')}",
                evidence_ref=f"snapshot-{n}",
                duration_ms=1,
            )
        finally:
            factory.active -= 1

    async def close(self) -> None:
        self.closed = True
        self.factory.closed += 1


class FakeSessionFactory:
    """Opens FakeInteractiveSessions; can be told to fail on open."""

    def __init__(
        self,
        fail_open: bool = False,
        delay: float = 0.0,
        script: Optional[Dict[str, Sequence[ScriptItem]]] = None,
    ):
        self.fail_open = fail_open
        self.delay = delay
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.opened: List[str] = []
        self.closed = 0
        self.performed: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def open(self, workflow_id: str) -> FakeInteractiveSession:
        if self.fail_open:
            raise RuntimeError("browser could not be launched")
        self.opened.append(workflow_id)
        return FakeInteractiveSession(self, workflow_id)


class HangingSessionFactory:
    """Session factory whose ``open`` never completes."""

    def __init__(self):
        self.attempts = 0

    async def open(self, workflow_id: str) -> FakeInteractiveSession:
        self.attempts += 1
        await asyncio.sleep(3600)
        raise AssertionError("session open should have been timed out")


# ============================================================================
# Oracles and Analyzers
# ============================================================================


def make_decision(
    confidence: float = 0.9,
    kind: AdaptationKind = AdaptationKind.CONTINUE,
    risk: RiskLevel = RiskLevel.LOW,
    strategy: ExecutionStrategy = ExecutionStrategy.IMMEDIATE,
    descriptor: Optional[Dict[str, Any]] = None,
    description: str = "",
) -> Decision:
    return Decision(
        action=ProposedAction(kind=kind, descriptor=dict(descriptor or {}), description=description),
        confidence=confidence,
        rationale="scripted",
        risk=risk,
        strategy=strategy,
    )


class ScriptedOracle:
    """Decision oracle returning scripted decisions in order, then a default."""

    def __init__(
        self,
        decisions: Optional[Sequence[Union[Decision, BaseException]]] = None,
        default: Optional[Decision] = None,
        delay: float = 0.0,
    ):
        self.decisions = list(decisions or [])
        self.default = default or make_decision(confidence=0.9)
        self.delay = delay
        self.contexts: List[DecisionContext] = []

    async def decide(self, context: DecisionContext) -> Decision:
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.decisions:
            item = self.decisions.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return self.default


class FixedAnalyzer:
    """Evidence analyzer returning the same analysis for every snapshot."""

    def __init__(self, confidence: float = 0.8):
        self.calls: List[str] = []
        self.analysis = EvidenceAnalysis(
            elements=(ElementObservation("button", "submit", 0.9, actionable=True),),
            layout_summary="single form",
            confidence=confidence,
        )

    async def analyze(self, evidence_ref: str, goal_context: str) -> EvidenceAnalysis:
        self.calls.append(evidence_ref)
        return self.analysis


class FixedMarketProvider:
    def __init__(self, signals: Optional[Sequence[MarketSignal]] = None):
        self.domains: List[str] = []
        self._signals = list(signals or [])

    async def signals(self, domain_hint: str) -> List[MarketSignal]:
        self.domains.append(domain_hint)
        return list(self._signals)


# ============================================================================
# Evolution
# ============================================================================


class ScoreEvaluator:
    """Scores an artifact by its ``score`` entry (0.5 when absent) on every objective."""

    def __init__(self):
        self.evaluated: List[Any] = []

    async def evaluate(self, artifact: Any) -> MetricVector:
        self.evaluated.append(artifact)
        score = float(artifact.get("score", 0.5)) if isinstance(artifact, dict) else 0.5
        return MetricVector(score, score, score, score)


class ImprovingMutationOracle:
    """Always proposes a candidate strictly better than the current artifact."""

    def __init__(self, step: float = 0.1):
        self.step = step
        self.proposals = 0

    async def propose(self, current_artifact: Any, metrics: MetricVector) -> Dict[str, Any]:
        self.proposals += 1
        return {
            "ref": f"candidate-{self.proposals}",
            "score": round(metrics.code_quality + self.step, 6),
        }


class CancellingMutationOracle(ImprovingMutationOracle):
    """Improving oracle that calls ``cancel`` while making its first proposal."""

    def __init__(self, cancel: Callable[[], Any], step: float = 0.1):
        super().__init__(step)
        self.cancel = cancel

    async def propose(self, current_artifact: Any, metrics: MetricVector) -> Dict[str, Any]:
        if self.proposals == 0:
            self.cancel()
        return await super().propose(current_artifact, metrics)


class ScriptedMutationOracle:
    """Returns scripted candidates (or raises scripted errors) in order."""

    def __init__(self, items: Sequence[Any]):
        self.items = list(items)
        self.proposals = 0

    async def propose(self, current_artifact: Any, metrics: MetricVector) -> Any:
        self.proposals += 1
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class VectorEvaluator:
    """Evaluates dict artifacts carrying an explicit ``metrics`` MetricVector."""

    async def evaluate(self, artifact: Any) -> MetricVector:
        return artifact["metrics"]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _reset_runtime_config():
    """Isolate the cached runtime config between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def fast_config() -> RuntimeConfig:
    """Runtime config with zero backoff and short timeouts."""
    return RuntimeConfig(
        step_timeout_seconds=5.0,
        cancel_grace_seconds=0.1,
        oracle_timeout_seconds=0.2,
        analyzer_timeout_seconds=0.5,
        market_timeout_seconds=0.5,
        evolution_timeout_seconds=1.0,
        retry=RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0),
    )


@pytest.fixture
def history():
    """In-memory history store."""
    store = HistoryStore()
    yield store
    store.close()
