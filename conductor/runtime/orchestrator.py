"""
orchestrator.py - Workflow Orchestrator: drives one request from goal to outcome.

The orchestrator is the single logical driver of each workflow. It owns the
workflow state machine (through a WorkflowSession) and coordinates the
components:

1. Planning: fetch market signals (only when the request opts in), snapshot
   the history aggregate and build the ActionPlan.
2. Executing <-> Adapting: stream results from the ExecutionEngine; at
   each checkpoint (every ``checkpoint_batch`` results, and immediately on a
   structural failure) run the Adaptation Loop, which may rewrite the
   plan's unexecuted suffix.
3. Evolving (optional): when evolution cycles were requested and the
   collaborators support it, run the Evolution Controller over the
   execution artifact. Evolution failures never fail the workflow.
4. Completed | Failed: compute PerformanceMetrics, append the outcome to
   the Metrics & History Store and assemble the WorkflowResult.

Cancellation:
    ``session.cancel()`` (or ``orchestrator.cancel(workflow_id)``) stops
    dispatch at the next suspension point (or, while evolving, before the
    next generation); Pending/Running steps are Abandoned and a partial
    outcome is recorded. Cancelling the asyncio task running ``run()`` does
    the same and then re-raises CancelledError.

Concurrent workflows are independent apart from the shared command-step
bound and read access to the history store; each has its own session and
its own interactive session.

Usage:
    from conductor.runtime.orchestrator import WorkflowOrchestrator

    orchestrator = WorkflowOrchestrator(Collaborators(command_executor=executor))
    result = await orchestrator.run(WorkflowRequest(goal="build then test"))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config.runtime_config import RuntimeConfig, get_runtime_config
from .adaptation import AdaptationLoop
from .collaborators import Collaborators
from .engine import ExecutionEngine
from .errors import ConductorError, ErrorKind, HistoryError
from .evolution import EvolutionController
from .history import HistoryStore
from .planner import PlanBuilder, extract_domain
from .reporting import build_recommendations, suggest_next_actions
from .session import WorkflowSession
from .types import (
    ActionPlan,
    EvolutionOutcome,
    ExecutionResult,
    MarketContext,
    MarketSignal,
    OutcomeStatus,
    PerformanceMetrics,
    StepStatus,
    WorkflowEvent,
    WorkflowId,
    WorkflowOutcome,
    WorkflowRequest,
    WorkflowResult,
    WorkflowState,
    decision_to_dict,
    evolution_generation_to_dict,
)
from .types._time import _utcnow

logger = logging.getLogger(__name__)

EventEmitter = Callable[[WorkflowId, WorkflowEvent], None]


@dataclass
class _WorkflowRun:
    """Mutable bookkeeping for one in-progress ``run()`` call."""

    session: WorkflowSession
    started_at: datetime
    started: float
    plan: Optional[ActionPlan] = None
    engine: Optional[ExecutionEngine] = None
    adaptation: Optional[AdaptationLoop] = None
    market_signals: List[MarketSignal] = field(default_factory=list)
    results: List[ExecutionResult] = field(default_factory=list)
    evolution: Optional[EvolutionOutcome] = None
    error: Optional[str] = None


class WorkflowOrchestrator:
    """Runs WorkflowRequests against a set of collaborators."""

    def __init__(
        self,
        collaborators: Optional[Collaborators] = None,
        *,
        history: Optional[HistoryStore] = None,
        config: Optional[RuntimeConfig] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        """Initialize the orchestrator.

        Args:
            collaborators: Executors and oracles used by workflows.
            history: Metrics & History Store (in-memory DuckDB if omitted,
                or the configured ``history.db_path``).
            config: Runtime configuration (loaded from runtime.yaml if omitted).
            event_emitter: Optional callback receiving every WorkflowEvent.
        """
        self._collaborators = collaborators or Collaborators()
        self._config = config or get_runtime_config()
        self._history = history if history is not None else HistoryStore(self._config.history_db_path)
        self._event_emitter = event_emitter
        self._active: Dict[WorkflowId, WorkflowSession] = {}
        self._command_slots: Optional[Tuple[asyncio.AbstractEventLoop, asyncio.Semaphore]] = None

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    def _slots(self) -> asyncio.Semaphore:
        """Command-step semaphore shared by every workflow on the running loop."""
        loop = asyncio.get_running_loop()
        if self._command_slots is None or self._command_slots[0] is not loop:
            self._command_slots = (loop, asyncio.Semaphore(self._config.max_command_concurrency))
        return self._command_slots[1]

    # =========================================================================
    # Sessions
    # =========================================================================

    def create_session(
        self, request: WorkflowRequest, workflow_id: Optional[WorkflowId] = None
    ) -> WorkflowSession:
        """Accept a request and create its session (state Planning)."""
        session = WorkflowSession(
            request,
            policy=self._config.mode_policy(request.mode),
            workflow_id=workflow_id,
            session_factory=self._collaborators.session_factory,
            event_emitter=self._event_emitter,
            open_timeout=self._config.session_open_timeout_seconds,
        )
        self._active[session.workflow_id] = session
        logger.info(
            "Accepted workflow %s (mode=%s, environment=%s): %s",
            session.workflow_id,
            request.mode.value,
            request.environment.value,
            request.goal,
        )
        return session

    def cancel(self, workflow_id: WorkflowId, reason: str = "cancelled by caller") -> bool:
        """Cancel an active workflow. Returns False if it is not active."""
        session = self._active.get(workflow_id)
        if session is None:
            return False
        session.cancel(reason)
        return True

    def status(self) -> Dict[str, Any]:
        """Snapshot of active workflows and the history aggregate."""
        summary = self._history.aggregate()
        return {
            "active_workflows": sorted(self._active),
            "history_size": summary.workflows,
            "summary": summary,
        }

    # =========================================================================
    # Run
    # =========================================================================

    async def run(
        self, request: WorkflowRequest, session: Optional[WorkflowSession] = None
    ) -> WorkflowResult:
        """Run a workflow to a terminal state.

        Args:
            request: The validated request.
            session: Session from ``create_session`` (created if omitted).

        Returns:
            The WorkflowResult. Only fatal failures yield state Failed;
            cancellation yields Failed with ``cancelled`` set.
        """
        if session is None:
            session = self.create_session(request)
        else:
            self._active[session.workflow_id] = session

        loop = asyncio.get_running_loop()
        run = _WorkflowRun(session=session, started_at=_utcnow(), started=loop.time())
        try:
            try:
                await self._drive(run)
            except ConductorError as exc:
                run.error = str(exc) or type(exc).__name__
                logger.error("Workflow %s failed: %s", session.workflow_id, run.error)
                await self._stop(run, "workflow failed")
                if not session.is_terminal:
                    session.transition(WorkflowState.FAILED, run.error)
            return await self._finalize(run)
        except asyncio.CancelledError:
            session.cancel("workflow task cancelled")
            await self._stop(run, "cancelled")
            if not session.is_terminal:
                session.transition(WorkflowState.FAILED, "cancelled")
            await self._finalize(run)
            raise
        finally:
            await session.close()
            self._active.pop(session.workflow_id, None)

    async def _drive(self, run: _WorkflowRun) -> None:
        session = run.session
        request = session.request

        run.market_signals = await self._fetch_market_signals(request)
        loop = asyncio.get_running_loop()
        summary = await loop.run_in_executor(None, self._history.aggregate)
        builder = PlanBuilder(history=summary, bias_min_samples=self._config.bias_min_samples)
        plan = builder.build_plan(request, run.market_signals, workflow_id=session.workflow_id)
        run.plan = plan
        session.emit(
            "plan_built",
            plan_id=plan.id,
            steps=[s.id for s in plan.steps],
            intent=plan.intent,
            domain=plan.domain,
        )

        run.engine = ExecutionEngine(
            session.workflow_id,
            command_executor=self._collaborators.command_executor,
            session_provider=session.interactive_session,
            config=self._config,
            command_slots=self._slots(),
            cancel_event=session.cancel_event,
            is_terminal=lambda: session.is_terminal,
            event_emitter=session.record_event,
        )
        run.adaptation = AdaptationLoop(
            session.workflow_id,
            request,
            session.policy,
            oracle=self._collaborators.decision_oracle,
            analyzer=self._collaborators.evidence_analyzer,
            config=self._config,
            market_context=(
                MarketContext(domain=plan.domain, signals=tuple(run.market_signals))
                if run.market_signals
                else None
            ),
            event_emitter=session.record_event,
        )

        session.transition(WorkflowState.EXECUTING)
        await self._execute(run)

        if session.cancelled:
            await self._stop(run, session.cancel_reason or "cancelled")
            session.transition(WorkflowState.FAILED, f"cancelled: {session.cancel_reason}")
            return
        if run.engine.has_fatal_failure:
            run.error = run.engine.fatal_result.error
            await self._stop(run, "fatal failure")
            session.transition(WorkflowState.FAILED, run.error or "fatal failure")
            return

        if request.evolution_cycles > 0:
            await self._evolve(run)
            if session.cancelled:
                session.transition(WorkflowState.FAILED, f"cancelled: {session.cancel_reason}")
                return
        session.transition(WorkflowState.COMPLETED)

    async def _execute(self, run: _WorkflowRun) -> None:
        session = run.session
        plan, engine = run.plan, run.engine
        adaptive = session.request.adaptation_enabled
        batch: List[ExecutionResult] = []

        stream = engine.execute(plan)
        try:
            async for result in stream:
                run.results.append(result)
                if not adaptive or result.error_kind == ErrorKind.FATAL:
                    continue
                batch.append(result)
                idle = not plan.with_status(StepStatus.RUNNING) and not plan.ready_steps()
                if not result.succeeded or len(batch) >= session.policy.checkpoint_batch or idle:
                    await self._checkpoint(run, batch)
                    batch = []
        finally:
            await stream.aclose()

    async def _checkpoint(self, run: _WorkflowRun, batch: List[ExecutionResult]) -> None:
        session = run.session
        session.transition(WorkflowState.ADAPTING, f"checkpoint at {batch[-1].step_id}")
        outcome = await run.adaptation.maybe_adapt(run.plan, batch)
        if outcome.abandon:
            reason = "adaptation aborted plan" if outcome.aborted else "adaptation"
            run.engine.abandon(run.plan, outcome.abandon, reason)
        session.transition(WorkflowState.EXECUTING)

    async def _stop(self, run: _WorkflowRun, reason: str) -> None:
        if run.engine is not None and run.plan is not None:
            await run.engine.shutdown(run.plan, reason)

    async def _fetch_market_signals(self, request: WorkflowRequest) -> List[MarketSignal]:
        provider = self._collaborators.market_provider
        if not request.market_intelligence or provider is None:
            return []
        domain = extract_domain(request.goal)
        try:
            signals = await asyncio.wait_for(
                provider.signals(domain), self._config.market_timeout_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Market signals unavailable for domain %s: %s", domain, exc)
            return []
        logger.info("Received %d market signal(s) for domain %s", len(signals), domain)
        return list(signals)

    async def _evolve(self, run: _WorkflowRun) -> None:
        session = run.session
        if not self._collaborators.supports_evolution:
            logger.warning(
                "Workflow %s requested %d evolution cycle(s) but no mutation oracle "
                "and metrics evaluator are configured",
                session.workflow_id,
                session.request.evolution_cycles,
            )
            return

        session.transition(WorkflowState.EVOLVING)
        controller = EvolutionController(
            self._collaborators.mutation_oracle,
            self._collaborators.metrics_evaluator,
            config=self._config,
            workflow_id=session.workflow_id,
            market_signals=run.market_signals,
            event_emitter=session.record_event,
            cancel_event=session.cancel_event,
        )
        baseline = _execution_artifact(run)
        try:
            baseline_metrics = await controller.evaluate(baseline)
            run.evolution = await controller.run_evolution(
                baseline, baseline_metrics, session.request.evolution_cycles
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Evolution for workflow %s stopped: %s", session.workflow_id, str(exc) or type(exc).__name__
            )

    # =========================================================================
    # Results
    # =========================================================================

    def _compute_metrics(self, run: _WorkflowRun) -> PerformanceMetrics:
        plan, engine, adaptation = run.plan, run.engine, run.adaptation
        loop = asyncio.get_running_loop()
        metrics = PerformanceMetrics(duration_ms=int((loop.time() - run.started) * 1000))

        if plan is not None:
            metrics.steps_total = len(plan)
            metrics.steps_succeeded = plan.count(StepStatus.SUCCEEDED)
            metrics.steps_failed = plan.count(StepStatus.FAILED)
            metrics.steps_abandoned = plan.count(StepStatus.ABANDONED)
            if metrics.steps_total:
                metrics.success_rate = metrics.steps_succeeded / metrics.steps_total
            for step in plan.steps:
                env = step.environment.value
                metrics.environment_utilization[env] = metrics.environment_utilization.get(env, 0) + 1

        if engine is not None:
            metrics.errors_detected = len(engine.errors)
            for record in engine.errors:
                key = record.kind.value
                metrics.errors_by_kind[key] = metrics.errors_by_kind.get(key, 0) + 1
            metrics.recovery_attempts = engine.retries

        if adaptation is not None:
            metrics.adaptations = adaptation.adaptations_applied
            metrics.recovery_attempts += adaptation.recovery_attempts
            metrics.visual_insights = sum(1 for e in adaptation.evidence if e.analysis is not None)
            confidences = [d.confidence for d in adaptation.decisions]
            if confidences:
                metrics.confidence_mean = sum(confidences) / len(confidences)
                metrics.confidence_min = min(confidences)
                metrics.confidence_max = max(confidences)

        if run.evolution is not None:
            metrics.evolution_generations = len(run.evolution.generations)
        return metrics

    async def _finalize(self, run: _WorkflowRun) -> WorkflowResult:
        session = run.session
        request = session.request
        plan = run.plan
        metrics = self._compute_metrics(run)
        decisions = list(run.adaptation.decisions) if run.adaptation else []
        generations = list(run.evolution.generations) if run.evolution else []

        if session.cancelled:
            status = OutcomeStatus.PARTIAL
        elif session.state == WorkflowState.FAILED:
            status = OutcomeStatus.FAILED
        else:
            status = OutcomeStatus.COMPLETED

        outcome = WorkflowOutcome(
            workflow_id=session.workflow_id,
            goal=request.goal,
            mode=request.mode.value,
            status=status,
            metrics=metrics,
            step_statuses=tuple(
                (s.id, s.environment.value, s.status.value) for s in (plan.steps if plan else [])
            ),
            decisions=tuple(decision_to_dict(d) for d in decisions),
            generations=tuple(evolution_generation_to_dict(g) for g in generations),
            started_at=run.started_at,
            completed_at=_utcnow(),
        )
        # DuckDB calls block; run them in the default executor.
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._history.record, outcome)
        except HistoryError as exc:
            logger.error("Could not record outcome for workflow %s: %s", session.workflow_id, exc)

        summary = await loop.run_in_executor(None, self._history.aggregate)
        result = WorkflowResult(
            workflow_id=session.workflow_id,
            request=request,
            state=session.state,
            plan=plan,
            results=list(run.results),
            decisions=decisions,
            evidence=list(run.adaptation.evidence) if run.adaptation else [],
            generations=generations,
            best_artifact=run.evolution.best_artifact if run.evolution else None,
            best_metrics=run.evolution.best_metrics if run.evolution else None,
            metrics=metrics,
            recommendations=build_recommendations(request, metrics, plan),
            next_actions=suggest_next_actions(request, metrics, plan, summary),
            error=run.error,
            cancelled=session.cancelled,
            events=list(session.events) if request.debug else [],
        )
        logger.info(
            "Workflow %s finished: state=%s steps=%d/%d succeeded adaptations=%d generations=%d",
            session.workflow_id,
            result.state.value,
            metrics.steps_succeeded,
            metrics.steps_total,
            metrics.adaptations,
            metrics.evolution_generations,
        )
        return result


def _execution_artifact(run: _WorkflowRun) -> Dict[str, Any]:
    """Artifact handed to evolution: the plan's id plus succeeded step outputs."""
    return {
        "ref": run.plan.id if run.plan else run.session.workflow_id,
        "workflow_id": run.session.workflow_id,
        "outputs": {r.step_id: r.output for r in run.results if r.succeeded},
    }
