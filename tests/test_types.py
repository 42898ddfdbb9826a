"""
Tests for core types, the plan graph guards and the workflow state machine.
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeSessionFactory, HangingSessionFactory, make_decision

from conductor.config.runtime_config import ModePolicy
from conductor.runtime.errors import (
    ErrorKind,
    InvalidTransitionError,
    PlanMutationError,
    PlanValidationError,
    SessionUnavailableError,
    StructuralStepError,
    TransientStepError,
    classify_failure,
)
from conductor.runtime.session import WorkflowSession
from conductor.runtime.types import (
    ActionPlan,
    Environment,
    Step,
    StepStatus,
    WorkflowRequest,
    WorkflowState,
    action_plan_from_dict,
    action_plan_to_dict,
    decision_from_dict,
    decision_to_dict,
    generate_workflow_id,
    workflow_request_from_dict,
    workflow_request_to_dict,
)


def _step(step_id, deps=()):
    return Step(
        id=step_id,
        environment=Environment.COMMAND,
        action={"kind": "run", "instruction": step_id},
        depends_on=list(deps),
    )


class TestPlanValidation:
    """Tests for the acyclic-by-construction plan graph."""

    def test_duplicate_ids_rejected(self):
        with pytest.raises(PlanValidationError):
            ActionPlan(id="p", workflow_id="w", steps=[_step("a"), _step("a")])

    def test_forward_dependency_rejected(self):
        with pytest.raises(PlanValidationError):
            ActionPlan(id="p", workflow_id="w", steps=[_step("a", ["b"]), _step("b")])

    def test_unknown_dependency_rejected(self):
        with pytest.raises(PlanValidationError):
            ActionPlan(id="p", workflow_id="w", steps=[_step("a", ["ghost"])])

    def test_downstream_is_transitive(self):
        plan = ActionPlan(
            id="p",
            workflow_id="w",
            steps=[_step("a"), _step("b", ["a"]), _step("c"), _step("d", ["b", "c"])],
        )
        assert [s.id for s in plan.downstream("a")] == ["b", "d"]


class TestPlanMutation:
    """Tests for status and rewrite guards."""

    def test_terminal_step_cannot_change(self):
        plan = ActionPlan(id="p", workflow_id="w", steps=[_step("a")])
        plan.set_status("a", StepStatus.RUNNING)
        plan.set_status("a", StepStatus.SUCCEEDED)

        with pytest.raises(PlanMutationError):
            plan.set_status("a", StepStatus.ABANDONED)

    def test_pending_cannot_jump_to_succeeded(self):
        plan = ActionPlan(id="p", workflow_id="w", steps=[_step("a")])
        with pytest.raises(PlanMutationError):
            plan.set_status("a", StepStatus.SUCCEEDED)

    def test_running_step_cannot_be_replaced(self):
        plan = ActionPlan(id="p", workflow_id="w", steps=[_step("a"), _step("b", ["a"])])
        plan.set_status("a", StepStatus.RUNNING)

        with pytest.raises(PlanMutationError):
            plan.insert_replacement("a", _step("a2"))

    def test_insert_with_forward_dependency_rejected(self):
        plan = ActionPlan(id="p", workflow_id="w", steps=[_step("a"), _step("b", ["a"])])
        with pytest.raises(PlanValidationError):
            plan.insert_after("a", _step("x", ["b"]))

    def test_round_trip_preserves_graph(self):
        plan = ActionPlan(id="p", workflow_id="w", steps=[_step("a"), _step("b", ["a"])])
        restored = action_plan_from_dict(action_plan_to_dict(plan))
        assert restored.edges == {("a", "b")}


class TestSerialization:
    def test_request_uses_camel_case(self):
        request = WorkflowRequest(goal="build", evolutionCycles=2, marketIntelligence=True)
        data = workflow_request_to_dict(request)

        assert data["evolutionCycles"] == 2
        assert data["marketIntelligence"] is True
        assert workflow_request_from_dict(data) == request

    def test_decision_dict(self):
        decision = make_decision(0.4)
        restored = decision_from_dict(decision_to_dict(decision))
        assert restored.confidence == 0.4
        assert restored.action.kind == decision.action.kind

    def test_workflow_ids_are_unique(self):
        assert generate_workflow_id() != generate_workflow_id()


class TestFailureClassification:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (TransientStepError("x"), ErrorKind.TRANSIENT),
            (StructuralStepError("x"), ErrorKind.STRUCTURAL),
            (asyncio.TimeoutError(), ErrorKind.TRANSIENT),
            (ConnectionResetError(), ErrorKind.TRANSIENT),
            (KeyError("x"), ErrorKind.STRUCTURAL),
        ],
    )
    def test_classify(self, exc, kind):
        assert classify_failure(exc) == kind


class TestWorkflowSession:
    """Tests for the per-workflow state machine and resources."""

    def _session(self, **kwargs):
        return WorkflowSession(WorkflowRequest(goal="build"), policy=ModePolicy(), **kwargs)

    def test_happy_path_transitions(self):
        session = self._session()
        session.transition(WorkflowState.EXECUTING)
        session.transition(WorkflowState.ADAPTING)
        session.transition(WorkflowState.EXECUTING)
        session.transition(WorkflowState.EVOLVING)
        session.transition(WorkflowState.COMPLETED)

        assert session.is_terminal
        assert [e.payload["to_state"] for e in session.events] == [
            "executing",
            "adapting",
            "executing",
            "evolving",
            "completed",
        ]

    def test_invalid_transition_rejected(self):
        session = self._session()
        with pytest.raises(InvalidTransitionError):
            session.transition(WorkflowState.EVOLVING)

    def test_terminal_state_is_final(self):
        session = self._session()
        session.transition(WorkflowState.FAILED)

        with pytest.raises(InvalidTransitionError):
            session.transition(WorkflowState.EXECUTING)

    def test_cancel_after_terminal_is_ignored(self):
        session = self._session()
        session.transition(WorkflowState.FAILED)
        session.cancel()
        assert not session.cancelled

    def test_interactive_session_opened_once(self):
        factory = FakeSessionFactory()
        session = self._session(session_factory=factory, workflow_id="wf-1")

        async def run():
            first, second = await asyncio.gather(
                session.interactive_session(), session.interactive_session()
            )
            await session.close()
            await session.close()
            return first, second

        first, second = asyncio.run(run())

        assert first is second
        assert factory.opened == ["wf-1"]
        assert factory.closed == 1

    def test_interactive_session_open_is_bounded(self):
        factory = HangingSessionFactory()
        session = self._session(session_factory=factory, open_timeout=0.05)

        with pytest.raises(SessionUnavailableError, match="timed out"):
            asyncio.run(session.interactive_session())

        assert factory.attempts == 1
        assert not session.has_interactive_session
