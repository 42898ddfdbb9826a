# conductor/runtime package
# Plans, executes, adapts and evolves cross-environment workflows.
#
# Core components:
#   - types: Core dataclasses (WorkflowRequest, ActionPlan, Step, Decision, ...)
#   - planner: Plan Builder (goal -> ActionPlan)
#   - engine: Execution Engine (dependency-ordered, concurrency-bounded dispatch)
#   - adaptation: Adaptation Loop (checkpoint decisions, plan rewrites)
#   - evolution: Evolution Controller (multi-objective artifact improvement)
#   - history: Metrics & History Store (DuckDB)
#   - orchestrator: WorkflowOrchestrator driving the workflow state machine
#
# Usage:
#     from conductor.runtime import WorkflowOrchestrator, Collaborators, WorkflowRequest
#     orchestrator = WorkflowOrchestrator(Collaborators(command_executor=executor))
#     result = await orchestrator.run(WorkflowRequest(goal="build then test"))

from .collaborators import Collaborators, CommandOutcome, InteractionOutcome
from .errors import ConductorError, ErrorKind, classify_failure
from .history import HistoryStore
from .orchestrator import WorkflowOrchestrator
from .session import WorkflowSession
from .types import (
    ActionPlan,
    Mode,
    Step,
    StepStatus,
    WorkflowRequest,
    WorkflowResult,
    WorkflowState,
    generate_workflow_id,
)

__all__ = [
    # Orchestration
    "WorkflowOrchestrator",
    "WorkflowSession",
    "HistoryStore",
    # Collaborators
    "Collaborators",
    "CommandOutcome",
    "InteractionOutcome",
    # Errors
    "ConductorError",
    "ErrorKind",
    "classify_failure",
    # Types
    "WorkflowRequest",
    "WorkflowResult",
    "WorkflowState",
    "ActionPlan",
    "Step",
    "StepStatus",
    "Mode",
    "generate_workflow_id",
]
