"""Action plan types: steps, the dependency graph and execution results.

An ActionPlan is an ordered list of Steps whose ``depends_on`` lists only ever
reference steps that appear earlier in the list. Every mutation helper keeps
that property, so the dependency graph is acyclic by construction and the
list order is always a valid topological execution order.

Ownership:
    - ``set_status`` is called only by the Execution Engine.
    - ``insert_after`` / ``insert_replacement`` / ``bypass`` are called only by
      the Adaptation Loop and refuse to touch started or terminal steps.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from ..errors import ErrorKind, PlanMutationError, PlanValidationError
from ._ids import PlanId, StepId, WorkflowId
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow


class Environment(str, Enum):
    """Execution environment a step targets."""

    COMMAND = "command"
    INTERACTIVE = "interactive"


class StepStatus(str, Enum):
    """Status of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STEP_STATUSES: FrozenSet[StepStatus] = frozenset(
    {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.ABANDONED}
)

_STEP_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.ABANDONED}),
    StepStatus.RUNNING: frozenset(
        {StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.ABANDONED}
    ),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.ABANDONED: frozenset(),
}


@dataclass
class Step:
    """A single typed unit of work bound to one environment.

    Attributes:
        id: Unique step identifier within the plan.
        environment: Target environment.
        action: Action descriptor, interpreted only by the matching executor.
            Always carries ``kind`` and ``instruction`` keys.
        depends_on: Steps that must succeed before this one is dispatched.
        status: Current status (mutated by the Execution Engine only).
        retry_count: Transient retries spent on this step.
        evidence_ref: Evidence produced by an interactive step, if any.
        origin: "planned", "corrective", "replacement" or "retry".
        supersedes: Step this one replaces or corrects, for audit.
    """

    id: StepId
    environment: Environment
    action: Dict[str, Any]
    depends_on: List[StepId] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    retry_count: int = 0
    evidence_ref: Optional[str] = None
    origin: str = "planned"
    supersedes: Optional[StepId] = None

    @property
    def kind(self) -> str:
        return str(self.action.get("kind", ""))

    @property
    def instruction(self) -> str:
        return str(self.action.get("instruction", ""))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


@dataclass(frozen=True)
class ExecutionResult:
    """Immutable record of one step dispatch outcome.

    Attributes:
        step_id: The step that produced this result.
        status: SUCCEEDED or FAILED as reported by the executor.
        output: Raw executor output (command output or state summary).
        evidence_ref: Evidence artifact reference, if any.
        timestamp: When the result was recorded.
        environment: Environment the step ran in.
        attempts: Executor calls made, including transient retries.
        error_kind: Failure classification when status is FAILED.
        error: Failure message when status is FAILED.
        exit_status: Command exit status, for command steps.
        duration_ms: Executor-reported or measured duration.
    """

    step_id: StepId
    status: StepStatus
    output: Any = None
    evidence_ref: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    environment: Optional[Environment] = None
    attempts: int = 1
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    exit_status: Optional[int] = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED


# =============================================================================
# ActionPlan
# =============================================================================


@dataclass
class ActionPlan:
    """Dependency-ordered graph of steps toward a goal.

    Attributes:
        id: Unique plan identifier.
        workflow_id: Owning workflow (plans are never shared).
        steps: Steps in a valid topological order.
        intent: Goal intent classification (create, fix, optimize, ...).
        domain: Domain hint extracted from the goal.
        created_at: Plan creation time.
    """

    id: PlanId
    workflow_id: WorkflowId
    steps: List[Step] = field(default_factory=list)
    intent: str = "explore"
    domain: str = "general"
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.validate()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, step_id: object) -> bool:
        return any(step.id == step_id for step in self.steps)

    def get(self, step_id: StepId) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def index_of(self, step_id: StepId) -> int:
        for idx, step in enumerate(self.steps):
            if step.id == step_id:
                return idx
        raise KeyError(step_id)

    @property
    def edges(self) -> Set[Tuple[StepId, StepId]]:
        """Set of (before, after) must-complete-before edges."""
        return {(dep, step.id) for step in self.steps for dep in step.depends_on}

    @property
    def environments(self) -> Set[Environment]:
        return {step.environment for step in self.steps}

    def topological_order(self) -> List[StepId]:
        """Step ids in execution order (the list order, validated)."""
        self.validate()
        return [step.id for step in self.steps]

    def validate(self) -> None:
        """Check ids are unique and every dependency appears earlier.

        Raises:
            PlanValidationError: On duplicate ids, unknown or forward
                dependencies (a forward dependency is the only way to form a
                cycle in an ordered plan).
        """
        seen: Set[StepId] = set()
        for step in self.steps:
            if step.id in seen:
                raise PlanValidationError(f"Duplicate step id '{step.id}'")
            for dep in step.depends_on:
                if dep == step.id:
                    raise PlanValidationError(f"Step '{step.id}' depends on itself")
                if dep not in seen:
                    raise PlanValidationError(
                        f"Step '{step.id}' depends on '{dep}' which does not precede it"
                    )
            seen.add(step.id)

    def count(self, status: StepStatus) -> int:
        return sum(1 for step in self.steps if step.status == status)

    def with_status(self, *statuses: StepStatus) -> List[Step]:
        return [step for step in self.steps if step.status in statuses]

    def dependents(self, step_id: StepId) -> List[Step]:
        """Steps that directly depend on ``step_id``."""
        return [step for step in self.steps if step_id in step.depends_on]

    def downstream(self, step_id: StepId) -> List[Step]:
        """All steps that transitively depend on ``step_id``, in plan order."""
        affected: Set[StepId] = {step_id}
        result: List[Step] = []
        for step in self.steps[self.index_of(step_id) + 1 :]:
            if affected.intersection(step.depends_on):
                affected.add(step.id)
                result.append(step)
        return result

    def ready_steps(self) -> List[Step]:
        """Pending steps whose dependencies have all succeeded."""
        succeeded = {s.id for s in self.steps if s.status == StepStatus.SUCCEEDED}
        return [
            step
            for step in self.steps
            if step.status == StepStatus.PENDING and all(d in succeeded for d in step.depends_on)
        ]

    def blocked_steps(self) -> List[Step]:
        """Pending steps with a dependency that can no longer succeed."""
        dead = {
            s.id for s in self.steps if s.status in (StepStatus.FAILED, StepStatus.ABANDONED)
        }
        return [
            step
            for step in self.steps
            if step.status == StepStatus.PENDING and dead.intersection(step.depends_on)
        ]

    def pending_steps(self) -> List[Step]:
        return self.with_status(StepStatus.PENDING)

    def next_pending(self, after: Optional[StepId] = None) -> Optional[Step]:
        """First pending step in plan order, optionally after a given step."""
        start = self.index_of(after) + 1 if after is not None else 0
        for step in self.steps[start:]:
            if step.status == StepStatus.PENDING:
                return step
        return None

    def next_step_id(self) -> StepId:
        n = len(self.steps) + 1
        while f"step-{n}" in self:
            n += 1
        return f"step-{n}"

    # -------------------------------------------------------------------------
    # Engine-owned mutation
    # -------------------------------------------------------------------------

    def set_status(self, step_id: StepId, status: StepStatus) -> Step:
        """Transition a step's status, enforcing the step state machine.

        Raises:
            PlanMutationError: If the transition is not allowed (terminal
                steps never change).
        """
        step = self.get(step_id)
        if status == step.status:
            return step
        if status not in _STEP_TRANSITIONS[step.status]:
            raise PlanMutationError(
                f"Step '{step_id}' cannot move from {step.status.value} to {status.value}"
            )
        step.status = status
        return step

    # -------------------------------------------------------------------------
    # Adaptation-owned mutation (unexecuted suffix only)
    # -------------------------------------------------------------------------

    def require_pending(self, step_id: StepId) -> Step:
        step = self.get(step_id)
        if step.status != StepStatus.PENDING:
            raise PlanMutationError(
                f"Step '{step_id}' is {step.status.value}; only pending steps may be rewritten"
            )
        return step

    def _rewire(self, old: StepId, new_deps: List[StepId]) -> List[StepId]:
        """Point pending dependents of ``old`` at ``new_deps`` instead."""
        rewired = []
        for step in self.dependents(old):
            if step.status != StepStatus.PENDING:
                continue
            deps: List[StepId] = []
            for dep in step.depends_on:
                for candidate in new_deps if dep == old else [dep]:
                    if candidate not in deps:
                        deps.append(candidate)
            step.depends_on = deps
            rewired.append(step.id)
        return rewired

    def insert_after(self, anchor_id: StepId, step: Step, adopt_dependents: bool = True) -> Step:
        """Insert a new pending step right after ``anchor_id``.

        The new step's dependencies must already be in the plan at or before
        the anchor. With ``adopt_dependents``, pending dependents of the
        anchor also wait for the new step.
        """
        anchor_idx = self.index_of(anchor_id)
        if step.id in self:
            raise PlanValidationError(f"Duplicate step id '{step.id}'")
        prefix = {s.id for s in self.steps[: anchor_idx + 1]}
        for dep in step.depends_on:
            if dep not in prefix:
                raise PlanValidationError(
                    f"Inserted step '{step.id}' depends on '{dep}' which does not precede it"
                )
        step.status = StepStatus.PENDING
        self.steps.insert(anchor_idx + 1, step)
        if adopt_dependents:
            for dependent in self.dependents(anchor_id):
                if dependent.id == step.id or dependent.status != StepStatus.PENDING:
                    continue
                dependent.depends_on.append(step.id)
        return step

    def insert_replacement(self, target_id: StepId, step: Step) -> Step:
        """Add ``step`` as a stand-in for ``target_id``.

        The replacement inherits the target's dependencies (unless it brings
        its own) and every pending dependent of the target is rewired to it.
        A pending target must then be abandoned by the engine; a terminal
        target is left untouched.
        """
        target = self.get(target_id)
        if target.status == StepStatus.RUNNING:
            raise PlanMutationError(f"Step '{target_id}' is running and cannot be replaced")
        if step.id in self:
            raise PlanValidationError(f"Duplicate step id '{step.id}'")
        if not step.depends_on:
            step.depends_on = list(target.depends_on)
        step.supersedes = target_id

        target_idx = self.index_of(target_id)
        insert_at = target_idx if target.status == StepStatus.PENDING else target_idx + 1
        for dep in step.depends_on:
            insert_at = max(insert_at, self.index_of(dep) + 1)
        for dependent in self.dependents(target_id):
            if dependent.status == StepStatus.PENDING and self.index_of(dependent.id) < insert_at:
                raise PlanValidationError(
                    f"Replacement '{step.id}' cannot precede dependent '{dependent.id}'"
                )

        step.status = StepStatus.PENDING
        self.steps.insert(insert_at, step)
        self._rewire(target_id, [step.id])
        return step

    def bypass(self, step_id: StepId) -> List[StepId]:
        """Rewire pending dependents of a step onto that step's own dependencies."""
        step = self.get(step_id)
        return self._rewire(step_id, list(step.depends_on))


# =============================================================================
# Serialization
# =============================================================================


def step_to_dict(step: Step) -> Dict[str, Any]:
    """Convert Step to a dictionary."""
    return {
        "id": step.id,
        "environment": step.environment.value,
        "action": dict(step.action),
        "depends_on": list(step.depends_on),
        "status": step.status.value,
        "retry_count": step.retry_count,
        "evidence_ref": step.evidence_ref,
        "origin": step.origin,
        "supersedes": step.supersedes,
    }


def step_from_dict(data: Dict[str, Any]) -> Step:
    """Create Step from a dictionary."""
    return Step(
        id=data["id"],
        environment=Environment(data["environment"]),
        action=dict(data.get("action", {})),
        depends_on=list(data.get("depends_on", [])),
        status=StepStatus(data.get("status", "pending")),
        retry_count=data.get("retry_count", 0),
        evidence_ref=data.get("evidence_ref"),
        origin=data.get("origin", "planned"),
        supersedes=data.get("supersedes"),
    )


def action_plan_to_dict(plan: ActionPlan) -> Dict[str, Any]:
    """Convert ActionPlan to a dictionary."""
    return {
        "id": plan.id,
        "workflow_id": plan.workflow_id,
        "intent": plan.intent,
        "domain": plan.domain,
        "created_at": _datetime_to_iso(plan.created_at),
        "steps": [step_to_dict(step) for step in plan.steps],
        "edges": sorted([list(edge) for edge in plan.edges]),
    }


def action_plan_from_dict(data: Dict[str, Any]) -> ActionPlan:
    """Create ActionPlan from a dictionary (validates the graph)."""
    return ActionPlan(
        id=data["id"],
        workflow_id=data["workflow_id"],
        steps=[step_from_dict(s) for s in data.get("steps", [])],
        intent=data.get("intent", "explore"),
        domain=data.get("domain", "general"),
        created_at=_iso_to_datetime(data.get("created_at")) or _utcnow(),
    )


def execution_result_to_dict(result: ExecutionResult) -> Dict[str, Any]:
    """Convert ExecutionResult to a dictionary."""
    output = result.output
    if not isinstance(output, (str, int, float, bool, type(None), dict, list)):
        output = str(output)
    return {
        "step_id": result.step_id,
        "status": result.status.value,
        "output": output,
        "evidence_ref": result.evidence_ref,
        "timestamp": _datetime_to_iso(result.timestamp),
        "environment": result.environment.value if result.environment else None,
        "attempts": result.attempts,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "error": result.error,
        "exit_status": result.exit_status,
        "duration_ms": result.duration_ms,
    }


def execution_result_from_dict(data: Dict[str, Any]) -> ExecutionResult:
    """Create ExecutionResult from a dictionary."""
    return ExecutionResult(
        step_id=data["step_id"],
        status=StepStatus(data["status"]),
        output=data.get("output"),
        evidence_ref=data.get("evidence_ref"),
        timestamp=_iso_to_datetime(data.get("timestamp")) or _utcnow(),
        environment=Environment(data["environment"]) if data.get("environment") else None,
        attempts=data.get("attempts", 1),
        error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
        error=data.get("error"),
        exit_status=data.get("exit_status"),
        duration_ms=data.get("duration_ms", 0),
    )
