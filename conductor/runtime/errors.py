"""Exception taxonomy and failure classification for the conductor runtime.

Three failure kinds drive the engine's recovery path:

- transient: network hiccups and executor timeouts; retried in place with
  bounded exponential backoff.
- structural: expected element absent, unexpected state, non-zero exit;
  routed to the Adaptation Loop.
- fatal: unrecoverable environment failure (e.g. the interactive session
  cannot be created); the workflow fails immediately.

Executors may raise the ``*StepError`` classes directly; anything else is
mapped by ``classify_failure``.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure taxonomy used by the engine and the metrics summary."""

    TRANSIENT = "transient"
    STRUCTURAL = "structural"
    FATAL = "fatal"


class ConductorError(Exception):
    """Base class for conductor runtime errors."""


# =============================================================================
# Step Failures
# =============================================================================


class StepError(ConductorError):
    """A step executor failure carrying its classification."""

    kind: ErrorKind = ErrorKind.STRUCTURAL

    def __init__(self, message: str, *, output: Optional[str] = None) -> None:
        self.output = output
        super().__init__(message)


class TransientStepError(StepError):
    """Temporary failure; retrying the same action may succeed."""

    kind = ErrorKind.TRANSIENT


class StructuralStepError(StepError):
    """The environment is not in the expected state for this action."""

    kind = ErrorKind.STRUCTURAL


class FatalStepError(StepError):
    """Unrecoverable environment failure; the workflow cannot continue."""

    kind = ErrorKind.FATAL


class SessionUnavailableError(FatalStepError):
    """The interactive session could not be created for a workflow."""


# =============================================================================
# Oracle Failures
# =============================================================================


class OracleError(ConductorError):
    """The Decision Oracle did not produce a usable decision."""


class OracleTimeout(OracleError):
    """The Decision Oracle did not answer within its timeout."""


# =============================================================================
# Plan / Workflow Errors
# =============================================================================


class PlanValidationError(ConductorError, ValueError):
    """Raised when a plan's dependency graph is malformed."""


class PlanMutationError(ConductorError):
    """Raised when a mutation would touch a started or terminal step."""


class InvalidTransitionError(ConductorError):
    """Raised on a workflow state transition the state machine forbids."""


class EvolutionError(ConductorError):
    """A single evolution generation failed (proposal or evaluation)."""


# =============================================================================
# History Errors
# =============================================================================


class HistoryError(ConductorError):
    """Metrics & History Store failure."""


class DuplicateOutcomeError(HistoryError):
    """A workflow outcome was recorded twice; past entries are never replaced."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Outcome for workflow '{workflow_id}' is already recorded")


# =============================================================================
# Classification
# =============================================================================

_TRANSIENT_TYPES = (asyncio.TimeoutError, TimeoutError, ConnectionError)


def classify_failure(exc: BaseException) -> ErrorKind:
    """Map an executor exception onto the failure taxonomy.

    Args:
        exc: The exception raised by (or on behalf of) an executor call.

    Returns:
        ``exc.kind`` for StepError subclasses, TRANSIENT for timeouts and
        connection errors, STRUCTURAL for anything else.
    """
    if isinstance(exc, StepError):
        return exc.kind
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorKind.TRANSIENT
    return ErrorKind.STRUCTURAL


__all__ = [
    "ErrorKind",
    "ConductorError",
    "StepError",
    "TransientStepError",
    "StructuralStepError",
    "FatalStepError",
    "SessionUnavailableError",
    "OracleError",
    "OracleTimeout",
    "PlanValidationError",
    "PlanMutationError",
    "InvalidTransitionError",
    "EvolutionError",
    "HistoryError",
    "DuplicateOutcomeError",
    "classify_failure",
]
