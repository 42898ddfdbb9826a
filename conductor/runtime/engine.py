"""
engine.py - Execution Engine: dependency-ordered, concurrency-bounded dispatch.

The engine walks an ActionPlan, keeping a ready-set of Pending steps whose
dependencies have all Succeeded, and dispatches them as asyncio tasks to the
matching executor. It yields one ExecutionResult per dispatched step as the
results arrive.

Concurrency policy:
    - Command steps share a global semaphore (``max_command_concurrency``),
      passed in by the orchestrator so the bound holds across workflows.
    - At most one interactive-session step is in flight per workflow.

Failure handling:
    - transient: retried in place with exponential backoff up to
      ``retry.max_attempts`` executor calls; exhausted retries escalate to
      structural.
    - structural: the step is Abandoned and the failed result is yielded so
      the Adaptation Loop can rewrite the unexecuted suffix before the engine
      sweeps steps left blocked by the failure.
    - fatal: the step is Failed, dispatch stops and ``shutdown`` abandons
      every remaining step.

The engine is the only component that changes Step status. Results are
frozen once recorded; a result that arrives after the workflow reached a
terminal state is logged and discarded.

Usage:
    engine = ExecutionEngine(workflow_id, command_executor=executor, config=config)
    async for result in engine.execute(plan):
        ...
    await engine.shutdown(plan, reason="completed")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

from ..config.runtime_config import RuntimeConfig
from .collaborators import CommandExecutor, InteractiveSession
from .errors import (
    ErrorKind,
    FatalStepError,
    StructuralStepError,
    classify_failure,
)
from .types import (
    ActionPlan,
    Environment,
    ExecutionResult,
    Step,
    StepId,
    StepStatus,
    WorkflowEvent,
    WorkflowId,
)
from .types._time import _utcnow

logger = logging.getLogger(__name__)

EventEmitter = Callable[[WorkflowId, WorkflowEvent], None]
SessionProvider = Callable[[], Awaitable[InteractiveSession]]


@dataclass(frozen=True)
class ErrorRecord:
    """One failure observed while executing a step (retried or not)."""

    step_id: StepId
    kind: ErrorKind
    message: str
    attempt: int
    timestamp: datetime = field(default_factory=_utcnow)


class ExecutionEngine:
    """Dispatches one workflow's plan to its executors."""

    def __init__(
        self,
        workflow_id: WorkflowId,
        *,
        command_executor: Optional[CommandExecutor] = None,
        session_provider: Optional[SessionProvider] = None,
        config: Optional[RuntimeConfig] = None,
        command_slots: Optional[asyncio.Semaphore] = None,
        cancel_event: Optional[asyncio.Event] = None,
        is_terminal: Optional[Callable[[], bool]] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        """Initialize the engine.

        Args:
            workflow_id: Workflow whose plan this engine runs.
            command_executor: Executor for command steps.
            session_provider: Coroutine function returning the workflow's
                interactive session (opened lazily by the caller).
            config: Runtime configuration (timeouts, retry policy).
            command_slots: Shared semaphore bounding concurrent command steps.
            cancel_event: Set to stop dispatching and end ``execute``.
            is_terminal: Returns True once the workflow reached a terminal
                state; used to discard late results.
            event_emitter: Optional callback for emitting events.
        """
        self.workflow_id = workflow_id
        self._command_executor = command_executor
        self._session_provider = session_provider
        self._config = config or RuntimeConfig()
        self._command_slots = command_slots or asyncio.Semaphore(
            self._config.max_command_concurrency
        )
        self._cancel_event = cancel_event or asyncio.Event()
        self._is_terminal = is_terminal or (lambda: False)
        self._event_emitter = event_emitter

        self._in_flight: Dict[asyncio.Task, Step] = {}
        self.errors: List[ErrorRecord] = []
        self.retries = 0
        self.fatal_result: Optional[ExecutionResult] = None

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def interactive_in_flight(self) -> int:
        return sum(1 for s in self._in_flight.values() if s.environment == Environment.INTERACTIVE)

    @property
    def has_fatal_failure(self) -> bool:
        return self.fatal_result is not None

    async def execute(self, plan: ActionPlan) -> AsyncIterator[ExecutionResult]:
        """Run the plan, yielding results in arrival order.

        Control returns to the caller at every yield; the caller may rewrite
        the plan's unexecuted suffix before resuming. The generator ends when
        nothing is runnable, on a fatal failure, or on cancellation.
        """
        cancel_waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            while not self._cancel_event.is_set() and self.fatal_result is None:
                self._abandon_blocked(plan)
                self._dispatch_ready(plan)
                if not self._in_flight:
                    break

                done, _ = await asyncio.wait(
                    list(self._in_flight) + [cancel_waiter],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                finished = [t for t in done if t is not cancel_waiter]
                finished.sort(key=lambda t: plan.index_of(self._in_flight[t].id))
                for task in finished:
                    step = self._in_flight.pop(task)
                    result = task.result()
                    if result is None:
                        continue
                    self._record(plan, step, result)
                    yield result
                    if self.fatal_result is not None:
                        break
        finally:
            cancel_waiter.cancel()

    def abandon(self, plan: ActionPlan, step_ids: Iterable[StepId], reason: str) -> List[StepId]:
        """Mark pending steps Abandoned (used for skip and abort rewrites)."""
        abandoned = []
        for step_id in step_ids:
            step = plan.get(step_id)
            if step.status != StepStatus.PENDING:
                continue
            plan.set_status(step_id, StepStatus.ABANDONED)
            abandoned.append(step_id)
            self._emit("step_abandoned", step_id, reason=reason)
        if abandoned:
            logger.warning(
                "Workflow %s abandoned %d step(s) (%s): %s",
                self.workflow_id,
                len(abandoned),
                reason,
                abandoned,
            )
        return abandoned

    async def shutdown(self, plan: ActionPlan, reason: str) -> List[StepId]:
        """Cancel in-flight calls and abandon every Pending/Running step.

        In-flight executor calls get ``cancel_grace_seconds`` to acknowledge
        cancellation; calls that cannot be cancelled keep running detached and
        their late results are discarded.
        """
        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=self._config.cancel_grace_seconds)

        abandoned: List[StepId] = []
        for task in tasks:
            step = self._in_flight.pop(task)
            if step.status == StepStatus.RUNNING:
                plan.set_status(step.id, StepStatus.ABANDONED)
                abandoned.append(step.id)
                self._emit("step_abandoned", step.id, reason=reason)
        abandoned.extend(self.abandon(plan, [s.id for s in plan.pending_steps()], reason))
        return abandoned

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _abandon_blocked(self, plan: ActionPlan) -> None:
        blocked = plan.blocked_steps()
        while blocked:
            self.abandon(plan, [s.id for s in blocked], "dependency did not succeed")
            blocked = plan.blocked_steps()

    def _dispatch_ready(self, plan: ActionPlan) -> None:
        interactive_busy = self.interactive_in_flight > 0
        for step in plan.ready_steps():
            if step.environment == Environment.INTERACTIVE:
                if interactive_busy:
                    continue
                interactive_busy = True
            plan.set_status(step.id, StepStatus.RUNNING)
            task = asyncio.ensure_future(self._run_step(step))
            self._in_flight[task] = step
            logger.debug(
                "Dispatched %s (%s/%s) for workflow %s",
                step.id,
                step.environment.value,
                step.kind,
                self.workflow_id,
            )
            self._emit("step_dispatched", step.id, environment=step.environment.value)

    def _record(self, plan: ActionPlan, step: Step, result: ExecutionResult) -> None:
        if result.succeeded:
            step.evidence_ref = result.evidence_ref
            plan.set_status(step.id, StepStatus.SUCCEEDED)
        elif result.error_kind == ErrorKind.FATAL:
            plan.set_status(step.id, StepStatus.FAILED)
            self.fatal_result = result
            logger.error(
                "Fatal failure in %s for workflow %s: %s", step.id, self.workflow_id, result.error
            )
        else:
            plan.set_status(step.id, StepStatus.ABANDONED)
            logger.warning(
                "Structural failure in %s for workflow %s: %s",
                step.id,
                self.workflow_id,
                result.error,
            )
        self._emit(
            "step_finished",
            step.id,
            status=result.status.value,
            error_kind=result.error_kind.value if result.error_kind else None,
            attempts=result.attempts,
        )

    # =========================================================================
    # Step Execution
    # =========================================================================

    async def _call_executor(self, step: Step) -> ExecutionResult:
        """Perform one executor call and convert the outcome to a result."""
        timeout = self._config.step_timeout_seconds
        action = dict(step.action)

        if step.environment == Environment.COMMAND:
            if self._command_executor is None:
                raise FatalStepError("No command executor configured")
            async with self._command_slots:
                outcome = await asyncio.wait_for(self._command_executor.run(action), timeout)
            if not outcome.ok:
                raise StructuralStepError(
                    f"Command exited with status {outcome.exit_status}", output=outcome.output
                )
            return ExecutionResult(
                step_id=step.id,
                status=StepStatus.SUCCEEDED,
                output=outcome.output,
                environment=step.environment,
                exit_status=outcome.exit_status,
                duration_ms=outcome.duration_ms,
            )

        if self._session_provider is None:
            raise FatalStepError("No interactive session factory configured")
        session = await self._session_provider()
        outcome = await asyncio.wait_for(session.perform(action), timeout)
        if not outcome.success:
            raise StructuralStepError(
                "Interactive action did not reach the expected state",
                output=outcome.state_summary,
            )
        return ExecutionResult(
            step_id=step.id,
            status=StepStatus.SUCCEEDED,
            output=outcome.state_summary,
            evidence_ref=outcome.evidence_ref,
            environment=step.environment,
            duration_ms=outcome.duration_ms,
        )

    async def _run_step(self, step: Step) -> Optional[ExecutionResult]:
        """Run a step with transient retries; never raises except on cancel."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        retry = self._config.retry
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await self._call_executor(step)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                kind = classify_failure(exc)
                message = str(exc) or type(exc).__name__
                self.errors.append(ErrorRecord(step.id, kind, message, attempt))

                if kind == ErrorKind.TRANSIENT and attempt < retry.max_attempts:
                    delay = retry.delay_for(attempt)
                    step.retry_count += 1
                    self.retries += 1
                    logger.warning(
                        "Transient failure in %s (attempt %d/%d), retrying in %.2fs: %s",
                        step.id,
                        attempt,
                        retry.max_attempts,
                        delay,
                        message,
                    )
                    self._emit("step_retry", step.id, attempt=attempt, error=message)
                    await asyncio.sleep(delay)
                    continue

                if kind == ErrorKind.TRANSIENT:
                    kind = ErrorKind.STRUCTURAL
                    message = f"Retries exhausted after {attempt} attempts: {message}"

                result = ExecutionResult(
                    step_id=step.id,
                    status=StepStatus.FAILED,
                    output=getattr(exc, "output", None),
                    environment=step.environment,
                    attempts=attempt,
                    error_kind=kind,
                    error=message,
                    duration_ms=int((loop.time() - started) * 1000),
                )
                return self._accept_or_discard(step, result)

            if result.duration_ms == 0:
                result = replace(result, duration_ms=int((loop.time() - started) * 1000))
            if attempt > 1:
                result = replace(result, attempts=attempt)
            return self._accept_or_discard(step, result)

    def _accept_or_discard(self, step: Step, result: ExecutionResult) -> Optional[ExecutionResult]:
        if self._is_terminal():
            logger.warning(
                "Discarding late result for %s: workflow %s already terminal",
                step.id,
                self.workflow_id,
            )
            self._emit("late_result_discarded", step.id, status=result.status.value)
            return None
        return result

    def _emit(self, kind: str, step_id: Optional[StepId] = None, **payload: Any) -> None:
        """Emit an event via the configured emitter."""
        if self._event_emitter is not None:
            event = WorkflowEvent(
                workflow_id=self.workflow_id,
                ts=_utcnow(),
                kind=kind,
                step_id=step_id,
                payload=payload,
            )
            self._event_emitter(self.workflow_id, event)

