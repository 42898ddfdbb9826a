"""
adaptation.py - Adaptation Loop: rewrite the unexecuted plan suffix on feedback.

At each checkpoint the loop gathers evidence for the most recent
interactive-session step, builds a DecisionContext from typed fragments
(terminal, visual, market) and asks the Decision Oracle for a judgment.

Success checkpoints:
    The plan is rewritten only when the decision's confidence is below the
    mode's threshold or its risk is high. The rewrite is the decision's own
    proposal (insert a corrective step, replace the next pending step, skip
    it, or abort the remaining plan); a triggered decision that proposes no
    rewrite gets the mode's default corrective. Deferred decisions are
    recorded without changing the plan.

Failure checkpoints (structural failures):
    The failed step always needs a rewrite. The oracle is consulted up to
    ``max_attempts_per_checkpoint`` times; the first decision at or above the
    confidence floor is applied. If none is usable (timeouts, low
    confidence, or the workflow's adaptation budget is spent), every step
    downstream of the failure is abandoned.

Every oracle answer (and the fallback recorded for a timeout) becomes a
Decision entry, whether or not the plan changed. Terminal and running steps
are never rewritten; status changes are requested from the engine through
``AdaptationOutcome.abandon``.

Usage:
    loop = AdaptationLoop(workflow_id, request, policy, oracle=oracle, analyzer=analyzer)
    outcome = await loop.maybe_adapt(plan, recent_results)
    engine.abandon(plan, outcome.abandon, reason="adaptation")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config.runtime_config import ModePolicy, RuntimeConfig
from .collaborators import DecisionOracle, EvidenceAnalyzer
from .errors import ErrorKind, OracleTimeout, PlanMutationError, PlanValidationError
from .types import (
    ActionPlan,
    AdaptationKind,
    ContextFragment,
    Decision,
    DecisionContext,
    Environment,
    Evidence,
    ExecutionResult,
    ExecutionStrategy,
    MarketContext,
    ProposedAction,
    RiskLevel,
    Step,
    StepId,
    StepStatus,
    TerminalContext,
    VisualContext,
    WorkflowEvent,
    WorkflowId,
    WorkflowRequest,
)
from .types._time import _utcnow

logger = logging.getLogger(__name__)

# Confidence of the fallback decision recorded when the oracle times out.
FALLBACK_CONFIDENCE = 0.3

FALLBACK_ALTERNATIVES = (
    "retry the step with adjusted parameters",
    "skip the step and continue",
    "abort the remaining plan",
)


def should_adapt(decision: Decision, threshold: float) -> bool:
    """Adaptation trigger: low confidence or high risk."""
    return decision.confidence < threshold or decision.risk == RiskLevel.HIGH


def fallback_decision(checkpoint_step_id: StepId, reason: str, attempt: int) -> Decision:
    """Decision recorded when the oracle cannot answer."""
    return Decision(
        action=ProposedAction(kind=AdaptationKind.CONTINUE, description="wait for more evidence"),
        confidence=FALLBACK_CONFIDENCE,
        rationale=f"Fallback decision: {reason}",
        risk=RiskLevel.HIGH,
        strategy=ExecutionStrategy.DEFERRED,
        alternatives=FALLBACK_ALTERNATIVES,
        checkpoint_step_id=checkpoint_step_id,
        attempt=attempt,
        synthetic=True,
    )


@dataclass
class AdaptationOutcome:
    """What one checkpoint decided and what the engine must do about it.

    Attributes:
        decisions: Decisions recorded at this checkpoint.
        applied: Rewrite applied to the plan, if any.
        abandon: Pending steps the engine must mark Abandoned.
        aborted: True when the remaining plan was aborted.
        evidence: Evidence gathered for the checkpoint, if any.
    """

    decisions: List[Decision] = field(default_factory=list)
    applied: Optional[AdaptationKind] = None
    abandon: List[StepId] = field(default_factory=list)
    aborted: bool = False
    evidence: Optional[Evidence] = None

    @property
    def changed(self) -> bool:
        return self.applied is not None or bool(self.abandon)


class AdaptationLoop:
    """Per-workflow adaptation checkpoints driven by the Decision Oracle."""

    def __init__(
        self,
        workflow_id: WorkflowId,
        request: WorkflowRequest,
        policy: ModePolicy,
        *,
        oracle: Optional[DecisionOracle] = None,
        analyzer: Optional[EvidenceAnalyzer] = None,
        config: Optional[RuntimeConfig] = None,
        market_context: Optional[MarketContext] = None,
        event_emitter: Optional[Callable[[WorkflowId, WorkflowEvent], None]] = None,
    ):
        self.workflow_id = workflow_id
        self.request = request
        self.policy = policy
        self._oracle = oracle
        self._analyzer = analyzer
        self._config = config or RuntimeConfig()
        self._market_context = market_context
        self._event_emitter = event_emitter

        self.decisions: List[Decision] = []
        self.evidence: List[Evidence] = []
        self.adaptations_applied = 0
        self.recovery_attempts = 0

    @property
    def budget_exhausted(self) -> bool:
        return self.adaptations_applied >= self.policy.max_adaptations

    # =========================================================================
    # Checkpoint
    # =========================================================================

    async def maybe_adapt(
        self,
        plan: ActionPlan,
        recent_results: Sequence[ExecutionResult],
        evidence: Optional[Evidence] = None,
    ) -> AdaptationOutcome:
        """Run one adaptation checkpoint.

        Args:
            plan: The workflow's plan (its pending suffix may be rewritten).
            recent_results: Results since the previous checkpoint; the last
                one is the checkpoint step.
            evidence: Pre-gathered evidence; gathered here when omitted.

        Returns:
            AdaptationOutcome describing recorded decisions and rewrites.
        """
        if not recent_results:
            return AdaptationOutcome()

        checkpoint = recent_results[-1]
        failed = not checkpoint.succeeded and checkpoint.error_kind != ErrorKind.FATAL
        outcome = AdaptationOutcome()

        if evidence is None:
            evidence = await self._gather_evidence(plan, recent_results)
        if evidence is not None:
            outcome.evidence = evidence
            self.evidence.append(evidence)

        if self._oracle is None:
            if failed:
                logger.warning(
                    "No decision oracle configured; abandoning work downstream of %s",
                    checkpoint.step_id,
                )
                outcome.abandon = self._downstream_pending(plan, checkpoint.step_id)
            return outcome

        if failed:
            await self._recover_failure(plan, recent_results, evidence, outcome)
        else:
            await self._review_success(plan, recent_results, evidence, outcome)
        return outcome

    async def _review_success(
        self,
        plan: ActionPlan,
        recent_results: Sequence[ExecutionResult],
        evidence: Optional[Evidence],
        outcome: AdaptationOutcome,
    ) -> None:
        checkpoint = recent_results[-1]
        if self.budget_exhausted:
            logger.debug(
                "Adaptation budget (%d) spent; skipping checkpoint at %s",
                self.policy.max_adaptations,
                checkpoint.step_id,
            )
            return

        context = self._build_context(plan, recent_results, evidence)
        decision = await self._consult(context, checkpoint.step_id, attempt=1)
        triggered = should_adapt(decision, self.policy.confidence_threshold)

        applied: Optional[AdaptationKind] = None
        if triggered and decision.strategy != ExecutionStrategy.DEFERRED:
            applied = self._apply(plan, plan.get(checkpoint.step_id), decision, outcome, failed=False)

        self._record(decision, triggered, applied, outcome)

    async def _recover_failure(
        self,
        plan: ActionPlan,
        recent_results: Sequence[ExecutionResult],
        evidence: Optional[Evidence],
        outcome: AdaptationOutcome,
    ) -> None:
        checkpoint = recent_results[-1]
        failed_step = plan.get(checkpoint.step_id)

        if self.budget_exhausted:
            logger.warning(
                "Adaptation budget (%d) spent; cannot recover %s",
                self.policy.max_adaptations,
                failed_step.id,
            )
            outcome.abandon = self._downstream_pending(plan, failed_step.id)
            return

        context = self._build_context(plan, recent_results, evidence)
        for attempt in range(1, self.policy.max_attempts_per_checkpoint + 1):
            self.recovery_attempts += 1
            decision = await self._consult(context, failed_step.id, attempt)
            usable = (
                not decision.synthetic
                and decision.confidence >= self.policy.confidence_floor
                and decision.strategy != ExecutionStrategy.DEFERRED
            )
            if not usable:
                self._record(decision, True, None, outcome)
                context = replace(context, history=tuple(self.decisions))
                continue

            applied = self._apply(plan, failed_step, decision, outcome, failed=True)
            self._record(decision, True, applied, outcome)
            if applied is not None:
                return
            context = replace(context, history=tuple(self.decisions))

        logger.warning(
            "No usable decision for %s after %d attempt(s); abandoning downstream steps",
            failed_step.id,
            self.policy.max_attempts_per_checkpoint,
        )
        outcome.abandon = self._downstream_pending(plan, failed_step.id)

    def _record(
        self,
        decision: Decision,
        triggered: bool,
        applied: Optional[AdaptationKind],
        outcome: AdaptationOutcome,
    ) -> None:
        recorded = replace(decision, triggered=triggered, applied=applied)
        self.decisions.append(recorded)
        outcome.decisions.append(recorded)
        if applied is not None:
            outcome.applied = applied
            self.adaptations_applied += 1
        logger.info(
            "Checkpoint %s: confidence=%.2f risk=%s strategy=%s triggered=%s applied=%s",
            recorded.checkpoint_step_id,
            recorded.confidence,
            recorded.risk.value,
            recorded.strategy.value,
            triggered,
            applied.value if applied else None,
        )
        self._emit(
            "adaptation",
            recorded.checkpoint_step_id,
            confidence=recorded.confidence,
            risk=recorded.risk.value,
            triggered=triggered,
            applied=applied.value if applied else None,
        )

    # =========================================================================
    # Oracle and Evidence
    # =========================================================================

    async def _consult(self, context: DecisionContext, step_id: StepId, attempt: int) -> Decision:
        try:
            decision = await asyncio.wait_for(
                self._oracle.decide(context), self._config.oracle_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Decision oracle timed out after %.1fs at %s",
                self._config.oracle_timeout_seconds,
                step_id,
            )
            return fallback_decision(step_id, str(OracleTimeout("oracle timed out")), attempt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Decision oracle failed at %s: %s", step_id, exc)
            return fallback_decision(step_id, f"oracle error: {exc}", attempt)
        return replace(decision, checkpoint_step_id=step_id, attempt=attempt)

    async def _gather_evidence(
        self, plan: ActionPlan, recent_results: Sequence[ExecutionResult]
    ) -> Optional[Evidence]:
        source = None
        for result in reversed(recent_results):
            if result.environment == Environment.INTERACTIVE and result.evidence_ref:
                source = result
                break
        if source is None:
            return None
        if self._analyzer is None:
            return Evidence(ref=source.evidence_ref, step_id=source.step_id)

        try:
            analysis = await asyncio.wait_for(
                self._analyzer.analyze(source.evidence_ref, self.request.goal),
                self._config.analyzer_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Evidence analysis failed for %s: %s", source.evidence_ref, message)
            return Evidence(ref=source.evidence_ref, step_id=source.step_id, error=message)
        return Evidence(ref=source.evidence_ref, step_id=source.step_id, analysis=analysis)

    def _build_context(
        self,
        plan: ActionPlan,
        recent_results: Sequence[ExecutionResult],
        evidence: Optional[Evidence],
    ) -> DecisionContext:
        checkpoint = recent_results[-1]
        fragments: List[ContextFragment] = [
            TerminalContext(
                recent_results=tuple(_result_summary(r) for r in recent_results),
                failed_step_id=None if checkpoint.succeeded else checkpoint.step_id,
                error_kind=checkpoint.error_kind.value if checkpoint.error_kind else None,
                error=checkpoint.error,
            )
        ]
        if evidence is not None:
            fragments.append(VisualContext(evidence_ref=evidence.ref, analysis=evidence.analysis))
        if self._market_context is not None:
            fragments.append(self._market_context)

        return DecisionContext(
            workflow_id=self.workflow_id,
            goal=self.request.goal,
            mode=self.request.mode.value,
            checkpoint_step_id=checkpoint.step_id,
            fragments=tuple(fragments),
            history=tuple(self.decisions),
            remaining_step_ids=tuple(s.id for s in plan.pending_steps()),
        )

    # =========================================================================
    # Plan Rewrites
    # =========================================================================

    def _apply(
        self,
        plan: ActionPlan,
        anchor: Step,
        decision: Decision,
        outcome: AdaptationOutcome,
        failed: bool,
    ) -> Optional[AdaptationKind]:
        kind = decision.action.kind
        if decision.strategy == ExecutionStrategy.ABORT or kind == AdaptationKind.ABORT:
            outcome.abandon = [s.id for s in plan.pending_steps()]
            outcome.aborted = True
            return AdaptationKind.ABORT
        if kind == AdaptationKind.CONTINUE:
            kind = AdaptationKind(self.policy.default_corrective)

        try:
            if kind == AdaptationKind.INSERT:
                return self._insert_corrective(plan, anchor, decision.action, failed)
            if kind == AdaptationKind.REPLACE:
                return self._replace(plan, anchor, decision.action, failed, outcome)
            if kind == AdaptationKind.SKIP:
                return self._skip(plan, anchor, failed, outcome)
        except (PlanMutationError, PlanValidationError) as exc:
            logger.warning("Rewrite %s after %s rejected: %s", kind.value, anchor.id, exc)
        return None

    def _new_step(
        self,
        plan: ActionPlan,
        anchor: Step,
        action: ProposedAction,
        origin: str,
        default_kind: str,
        default_instruction: str,
    ) -> Step:
        descriptor: Dict[str, Any] = dict(action.descriptor)
        descriptor.setdefault("kind", default_kind)
        descriptor.setdefault("instruction", action.description or default_instruction)
        return Step(
            id=plan.next_step_id(),
            environment=action.environment or anchor.environment,
            action=descriptor,
            origin=origin,
            supersedes=anchor.id,
        )

    def _insert_corrective(
        self, plan: ActionPlan, anchor: Step, action: ProposedAction, failed: bool
    ) -> AdaptationKind:
        corrective = self._new_step(
            plan, anchor, action, "corrective", "recover", f"corrective action for {anchor.id}"
        )
        if not failed:
            corrective.depends_on = [anchor.id]
            plan.insert_after(anchor.id, corrective, adopt_dependents=True)
            logger.info("Inserted corrective %s after %s", corrective.id, anchor.id)
            return AdaptationKind.INSERT

        # Corrective step, then a retry of the failed action that takes over
        # the failed step's dependents.
        corrective.depends_on = list(anchor.depends_on)
        plan.insert_after(anchor.id, corrective, adopt_dependents=False)
        retry = Step(
            id=plan.next_step_id(),
            environment=anchor.environment,
            action=dict(anchor.action),
            depends_on=[corrective.id],
            origin="retry",
        )
        plan.insert_replacement(anchor.id, retry)
        logger.info(
            "Inserted corrective %s and retry %s for failed %s", corrective.id, retry.id, anchor.id
        )
        return AdaptationKind.INSERT

    def _replace(
        self,
        plan: ActionPlan,
        anchor: Step,
        action: ProposedAction,
        failed: bool,
        outcome: AdaptationOutcome,
    ) -> Optional[AdaptationKind]:
        target = anchor if failed else plan.next_pending(after=anchor.id)
        if target is None:
            logger.debug("No pending step after %s to replace", anchor.id)
            return None
        if not failed:
            plan.require_pending(target.id)

        default_descriptor = dict(target.action)
        default_descriptor["revised"] = True
        replacement = self._new_step(
            plan,
            target,
            action if action.descriptor else replace(action, descriptor=default_descriptor),
            "replacement",
            target.kind,
            target.instruction,
        )
        plan.insert_replacement(target.id, replacement)
        if not failed:
            outcome.abandon.append(target.id)
        logger.info("Replaced %s with %s", target.id, replacement.id)
        return AdaptationKind.REPLACE

    def _skip(
        self, plan: ActionPlan, anchor: Step, failed: bool, outcome: AdaptationOutcome
    ) -> Optional[AdaptationKind]:
        target = anchor if failed else plan.next_pending(after=anchor.id)
        if target is None:
            return None
        if not failed:
            plan.require_pending(target.id)
            outcome.abandon.append(target.id)
        rewired = plan.bypass(target.id)
        logger.info("Skipped %s; rewired dependents %s", target.id, rewired)
        return AdaptationKind.SKIP

    def _downstream_pending(self, plan: ActionPlan, step_id: StepId) -> List[StepId]:
        return [s.id for s in plan.downstream(step_id) if s.status == StepStatus.PENDING]

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


def _result_summary(result: ExecutionResult) -> Dict[str, Any]:
    return {
        "step_id": result.step_id,
        "status": result.status.value,
        "environment": result.environment.value if result.environment else None,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "error": result.error,
    }
