"""
session.py - Per-workflow session: state machine, cancellation and resources.

A WorkflowSession is created when a request is accepted and torn down when
the workflow reaches a terminal state. It replaces any process-wide
"current workflow" state: everything one workflow owns lives here.

The session owns:
- the workflow state machine (Planning -> Executing <-> Adapting ->
  (Evolving) -> Completed | Failed), rejecting illegal transitions
- the cancellation signal observed by the engine at every suspension point
- the workflow's interactive session, opened lazily on the first
  interactive step and closed at teardown (never shared across workflows)
- the event trail, forwarded to an optional external emitter

Usage:
    from conductor.runtime.session import WorkflowSession

    session = WorkflowSession(request, policy=config.mode_policy(request.mode))
    session.transition(WorkflowState.EXECUTING)
    session.cancel("user requested")
    await session.close()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from ..config.runtime_config import ModePolicy
from .collaborators import InteractiveSession, SessionFactory
from .errors import InvalidTransitionError, SessionUnavailableError
from .types import (
    TERMINAL_WORKFLOW_STATES,
    WORKFLOW_TRANSITIONS,
    WorkflowEvent,
    WorkflowId,
    WorkflowRequest,
    WorkflowState,
    generate_workflow_id,
)
from .types._time import _utcnow

logger = logging.getLogger(__name__)

EventEmitter = Callable[[WorkflowId, WorkflowEvent], None]


class WorkflowSession:
    """Explicit state owned by one workflow for its lifetime.

    Attributes:
        workflow_id: Unique workflow identifier.
        request: The accepted (immutable) request.
        policy: Mode policy resolved for the request.
        events: Every event emitted for this workflow.
        cancel_reason: Why the workflow was cancelled, if it was.
    """

    def __init__(
        self,
        request: WorkflowRequest,
        *,
        policy: ModePolicy,
        workflow_id: Optional[WorkflowId] = None,
        session_factory: Optional[SessionFactory] = None,
        event_emitter: Optional[EventEmitter] = None,
        open_timeout: float = 30.0,
    ):
        self.workflow_id = workflow_id or generate_workflow_id()
        self.request = request
        self.policy = policy
        self.events: List[WorkflowEvent] = []
        self.cancel_reason: Optional[str] = None

        self._state = WorkflowState.PLANNING
        self._session_factory = session_factory
        self._open_timeout = open_timeout
        self._event_emitter = event_emitter
        self._cancel_event = asyncio.Event()
        self._interactive: Optional[InteractiveSession] = None
        self._interactive_lock = asyncio.Lock()
        self._closed = False

    # =========================================================================
    # State Machine
    # =========================================================================

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_WORKFLOW_STATES

    def transition(self, new_state: WorkflowState, reason: str = "") -> None:
        """Move to ``new_state``.

        Raises:
            InvalidTransitionError: If the transition is not allowed
                (including any transition out of a terminal state).
        """
        if new_state not in WORKFLOW_TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Workflow {self.workflow_id}: cannot go from "
                f"{self._state.value} to {new_state.value}"
            )
        previous = self._state
        self._state = new_state
        log = logger.error if new_state == WorkflowState.FAILED else logger.info
        log(
            "Workflow %s: %s -> %s%s",
            self.workflow_id,
            previous.value,
            new_state.value,
            f" ({reason})" if reason else "",
        )
        self.emit("state_changed", from_state=previous.value, to_state=new_state.value, reason=reason)

    # =========================================================================
    # Cancellation
    # =========================================================================

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request cancellation; takes effect at the next suspension point."""
        if self.is_terminal or self.cancelled:
            return
        self.cancel_reason = reason
        self._cancel_event.set()
        logger.warning("Workflow %s cancellation requested: %s", self.workflow_id, reason)

    # =========================================================================
    # Interactive Session
    # =========================================================================

    async def interactive_session(self) -> InteractiveSession:
        """Return the workflow's interactive session, opening it on first use.

        Raises:
            SessionUnavailableError: If no factory is configured or the
                session cannot be opened within ``open_timeout`` seconds
                (a fatal failure).
        """
        async with self._interactive_lock:
            if self._interactive is not None:
                return self._interactive
            if self._closed:
                raise SessionUnavailableError(f"Workflow {self.workflow_id} is already closed")
            if self._session_factory is None:
                raise SessionUnavailableError("No interactive session factory configured")
            try:
                self._interactive = await asyncio.wait_for(
                    self._session_factory.open(self.workflow_id), self._open_timeout
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError as exc:
                raise SessionUnavailableError(
                    f"Could not open interactive session: timed out after {self._open_timeout}s"
                ) from exc
            except Exception as exc:
                raise SessionUnavailableError(f"Could not open interactive session: {exc}") from exc
            logger.info("Opened interactive session for workflow %s", self.workflow_id)
            return self._interactive

    @property
    def has_interactive_session(self) -> bool:
        return self._interactive is not None

    async def close(self) -> None:
        """Tear down workflow resources (idempotent)."""
        if self._closed:
            return
        self._closed = True
        session, self._interactive = self._interactive, None
        if session is None:
            return
        try:
            await session.close()
        except Exception as exc:
            logger.warning(
                "Failed to close interactive session for workflow %s: %s", self.workflow_id, exc
            )
        else:
            logger.info("Closed interactive session for workflow %s", self.workflow_id)

    # =========================================================================
    # Events
    # =========================================================================

    def emit(self, kind: str, step_id: Optional[str] = None, **payload: Any) -> None:
        self.record_event(
            self.workflow_id,
            WorkflowEvent(
                workflow_id=self.workflow_id,
                ts=_utcnow(),
                kind=kind,
                step_id=step_id,
                payload=payload,
            ),
        )

    def record_event(self, workflow_id: WorkflowId, event: WorkflowEvent) -> None:
        """Event emitter handed to the engine, adaptation loop and evolution."""
        self.events.append(event)
        if self._event_emitter is not None:
            try:
                self._event_emitter(workflow_id, event)
            except Exception as exc:
                logger.warning("Event emitter failed for %s: %s", event.kind, exc)
