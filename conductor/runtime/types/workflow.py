"""Workflow request and lifecycle types.

The WorkflowRequest is the structured request produced by the invocation
surface. It is validated with pydantic and frozen once accepted, so every
component downstream sees the same immutable request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ._ids import WorkflowId, _generate_event_id
from ._time import _datetime_to_iso


class Mode(str, Enum):
    """Risk appetite of a workflow; selects the adaptation policy."""

    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class EnvironmentHint(str, Enum):
    """Requested environment spread for a workflow's plan."""

    AUTO = "auto"
    SINGLE = "single"
    HYBRID = "hybrid"


class WorkflowState(str, Enum):
    """Per-workflow state machine.

    Planning -> Executing <-> Adapting -> (Evolving) -> Completed | Failed.
    """

    PLANNING = "planning"
    EXECUTING = "executing"
    ADAPTING = "adapting"
    EVOLVING = "evolving"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_WORKFLOW_STATES: FrozenSet[WorkflowState] = frozenset(
    {WorkflowState.COMPLETED, WorkflowState.FAILED}
)

# Allowed transitions; terminal states have none.
WORKFLOW_TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    WorkflowState.PLANNING: frozenset({WorkflowState.EXECUTING, WorkflowState.FAILED}),
    WorkflowState.EXECUTING: frozenset(
        {
            WorkflowState.ADAPTING,
            WorkflowState.EVOLVING,
            WorkflowState.COMPLETED,
            WorkflowState.FAILED,
        }
    ),
    WorkflowState.ADAPTING: frozenset(
        {WorkflowState.EXECUTING, WorkflowState.COMPLETED, WorkflowState.FAILED}
    ),
    WorkflowState.EVOLVING: frozenset({WorkflowState.COMPLETED, WorkflowState.FAILED}),
    WorkflowState.COMPLETED: frozenset(),
    WorkflowState.FAILED: frozenset(),
}


class WorkflowRequest(BaseModel):
    """A structured, immutable orchestration request.

    Accepts both snake_case field names and the camelCase names used by the
    invocation surface (``evolutionCycles``, ``adaptiveFeedback``, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, use_enum_values=False)

    goal: str = Field(..., min_length=1, description="Free-form goal text")
    mode: Mode = Field(default=Mode.BALANCED, description="Adaptation policy mode")
    environment: EnvironmentHint = Field(
        default=EnvironmentHint.AUTO, description="Environment hint: auto, single or hybrid"
    )
    evolution_cycles: int = Field(
        default=0, ge=0, alias="evolutionCycles", description="Evolution generations to run"
    )
    adaptive_feedback: bool = Field(
        default=False, alias="adaptiveFeedback", description="Enable adaptation checkpoints"
    )
    visual_feedback: bool = Field(
        default=False,
        alias="visualFeedback",
        description="Request evidence capture from interactive steps",
    )
    market_intelligence: bool = Field(
        default=False, alias="marketIntelligence", description="Consult the market signal provider"
    )
    debug: bool = Field(default=False, description="Retain the full event trail in the result")

    @field_validator("goal")
    @classmethod
    def validate_goal(cls, v: str) -> str:
        """Reject goals that are empty after trimming whitespace."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("goal must not be blank")
        return stripped

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        """Accept the ``single-env`` spelling for the single hint."""
        if isinstance(v, str) and v.lower() in ("single-env", "single_env"):
            return EnvironmentHint.SINGLE
        return v

    @property
    def adaptation_enabled(self) -> bool:
        """Whether adaptation checkpoints run for this request."""
        return self.adaptive_feedback or self.visual_feedback


def workflow_request_to_dict(request: WorkflowRequest) -> Dict[str, Any]:
    """Convert a WorkflowRequest to the camelCase request shape."""
    return request.model_dump(mode="json", by_alias=True)


def workflow_request_from_dict(data: Dict[str, Any]) -> WorkflowRequest:
    """Validate and build a WorkflowRequest from a mapping."""
    return WorkflowRequest.model_validate(data)


@dataclass(frozen=True)
class WorkflowEvent:
    """A single event in a workflow's timeline.

    Attributes:
        workflow_id: The workflow this event belongs to.
        ts: Timestamp of the event.
        kind: Event type. Standard types include:
              - "state_changed": Workflow state machine transition
              - "plan_built": Plan Builder produced the plan
              - "step_dispatched", "step_finished": Step execution lifecycle
              - "step_retry": Transient failure being retried
              - "step_abandoned": Step marked Abandoned
              - "adaptation": Adaptation checkpoint recorded a Decision
              - "generation": Evolution generation recorded
              - "late_result_discarded": Executor finished after terminal state
        step_id: Optional step the event concerns.
        payload: Arbitrary event-specific data.
        event_id: Globally unique identifier for this event.
    """

    workflow_id: WorkflowId
    ts: datetime
    kind: str
    step_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=_generate_event_id)


def workflow_event_to_dict(event: WorkflowEvent) -> Dict[str, Any]:
    """Convert WorkflowEvent to a dictionary."""
    return {
        "event_id": event.event_id,
        "workflow_id": event.workflow_id,
        "ts": _datetime_to_iso(event.ts),
        "kind": event.kind,
        "step_id": event.step_id,
        "payload": dict(event.payload),
    }
