"""
Tests for the Workflow Orchestrator.

These tests drive complete workflows against deterministic fakes:
1. Command checks followed by interactive verification
2. Recovery from a structural failure through adaptation
3. Evolution cycles retaining improving artifacts
4. Cancellation mid-execution with a partial outcome
5. Fatal failures, market opt-in, reporting and the sync entry point
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import (
    BlockingCommandExecutor,
    CancellingMutationOracle,
    FakeCommandExecutor,
    FakeSessionFactory,
    FixedMarketProvider,
    HangingSessionFactory,
    ImprovingMutationOracle,
    ScoreEvaluator,
    ScriptedOracle,
    make_decision,
)

from conductor.runtime import (
    Collaborators,
    CommandOutcome,
    WorkflowOrchestrator,
    WorkflowRequest,
    WorkflowState,
)
from conductor.runtime.async_utils import run_workflow_sync
from conductor.runtime.types import (
    AdaptationKind,
    Environment,
    MarketSignal,
    OutcomeStatus,
    StepStatus,
    workflow_result_to_dict,
)


def _orchestrator(history, config, **collaborators):
    return WorkflowOrchestrator(Collaborators(**collaborators), history=history, config=config)


class TestScenarioA:
    """Command checks, then verification in an interactive session."""

    def test_completes_with_both_environments(self, history, fast_config):
        executor = FakeCommandExecutor()
        factory = FakeSessionFactory()
        orchestrator = _orchestrator(
            history, fast_config, command_executor=executor, session_factory=factory
        )
        request = WorkflowRequest(
            goal="run checks then verify in an interactive session", debug=True
        )

        result = asyncio.run(orchestrator.run(request))

        assert result.state == WorkflowState.COMPLETED
        assert result.succeeded
        assert [r.environment for r in result.results] == [
            Environment.COMMAND,
            Environment.INTERACTIVE,
        ]
        assert result.metrics.success_rate == 1.0
        assert result.metrics.environment_utilization == {"command": 1, "interactive": 1}
        assert result.decisions == []
        command_step, interactive_step = result.plan.steps
        assert command_step.environment == Environment.COMMAND
        assert interactive_step.environment == Environment.INTERACTIVE
        assert command_step.id in interactive_step.depends_on
        assert factory.opened == [result.workflow_id]
        assert factory.closed == 1

    def test_debug_retains_event_trail(self, history, fast_config):
        orchestrator = _orchestrator(
            history,
            fast_config,
            command_executor=FakeCommandExecutor(),
            session_factory=FakeSessionFactory(),
        )
        request = WorkflowRequest(goal="run checks then verify in an interactive session", debug=True)

        result = asyncio.run(orchestrator.run(request))

        kinds = [e.kind for e in result.events]
        assert kinds[0] == "plan_built"
        assert "step_dispatched" in kinds
        transitions = [e.payload["to_state"] for e in result.events if e.kind == "state_changed"]
        assert transitions == ["executing", "completed"]

    def test_events_omitted_without_debug(self, history, fast_config):
        events = []
        orchestrator = WorkflowOrchestrator(
            Collaborators(command_executor=FakeCommandExecutor()),
            history=history,
            config=fast_config,
            event_emitter=lambda wid, event: events.append(event),
        )

        result = asyncio.run(orchestrator.run(WorkflowRequest(goal="build the package")))

        assert result.events == []
        assert events
        assert all(e.workflow_id == result.workflow_id for e in events)


class TestScenarioB:
    """A structural failure recovered by a replacement step."""

    def test_failed_step_replaced(self, history, fast_config):
        executor = FakeCommandExecutor(script={"test": [CommandOutcome(exit_status=1, output="3 failed")]})
        oracle = ScriptedOracle(
            [make_decision(0.9), make_decision(0.8, AdaptationKind.REPLACE)]
        )
        orchestrator = _orchestrator(
            history, fast_config, command_executor=executor, decision_oracle=oracle
        )
        request = WorkflowRequest(goal="build then test then deploy then verify", adaptiveFeedback=True)

        result = asyncio.run(orchestrator.run(request))

        plan = result.plan
        assert result.state == WorkflowState.COMPLETED
        assert plan.get("step-2").status == StepStatus.ABANDONED
        replacement = plan.get("step-5")
        assert replacement.supersedes == "step-2"
        assert replacement.status == StepStatus.SUCCEEDED
        assert plan.get("step-3").depends_on == ["step-5"]
        assert plan.get("step-4").status == StepStatus.SUCCEEDED

        at_failure = [d for d in result.decisions if d.checkpoint_step_id == "step-2"]
        assert len(at_failure) == 1
        assert at_failure[0].applied == AdaptationKind.REPLACE
        assert result.metrics.errors_detected >= 1
        assert result.metrics.errors_by_kind == {"structural": 1}
        assert result.metrics.adaptations == 1
        assert result.metrics.recovery_attempts >= 1

    def test_unrecovered_failure_still_completes(self, history, fast_config):
        executor = FakeCommandExecutor(script={"test": [CommandOutcome(exit_status=1)]})
        orchestrator = _orchestrator(history, fast_config, command_executor=executor)
        request = WorkflowRequest(goal="build then test then deploy", adaptiveFeedback=True)

        result = asyncio.run(orchestrator.run(request))

        assert result.state == WorkflowState.COMPLETED
        assert result.steps_with_status(StepStatus.ABANDONED) == ["step-2", "step-3"]
        assert result.metrics.success_rate == pytest.approx(1 / 3)
        assert history.query_recent()[0].status == OutcomeStatus.COMPLETED


class TestScenarioC:
    """Evolution cycles over the execution artifact."""

    def test_three_improving_generations(self, history, fast_config):
        orchestrator = _orchestrator(
            history,
            fast_config,
            command_executor=FakeCommandExecutor(),
            session_factory=FakeSessionFactory(),
            mutation_oracle=ImprovingMutationOracle(step=0.1),
            metrics_evaluator=ScoreEvaluator(),
        )
        request = WorkflowRequest(goal="build the package", evolutionCycles=3)

        result = asyncio.run(orchestrator.run(request))

        assert result.state == WorkflowState.COMPLETED
        assert len(result.generations) == 3
        assert all(g.accepted for g in result.generations)
        scores = [g.metrics.code_quality for g in result.generations]
        assert scores == pytest.approx([0.6, 0.7, 0.8])
        assert result.best_artifact["ref"] == "candidate-3"
        assert result.metrics.evolution_generations == 3
        assert Environment.INTERACTIVE in result.plan.environments

    def test_evolution_skipped_without_collaborators(self, history, fast_config):
        orchestrator = _orchestrator(
            history,
            fast_config,
            command_executor=FakeCommandExecutor(),
            session_factory=FakeSessionFactory(),
        )
        request = WorkflowRequest(goal="build the package", evolutionCycles=2)

        result = asyncio.run(orchestrator.run(request))

        assert result.state == WorkflowState.COMPLETED
        assert result.generations == []
        assert result.best_artifact is None


class TestScenarioD:
    """Cancellation while the third of five steps is running."""

    def test_cancel_mid_execution(self, history, fast_config):
        executor = BlockingCommandExecutor(succeed=2)
        orchestrator = _orchestrator(history, fast_config, command_executor=executor)
        request = WorkflowRequest(goal="setup then build then test then deploy then check")

        async def run():
            session = orchestrator.create_session(request)
            task = asyncio.ensure_future(orchestrator.run(request, session))
            await executor.blocked.wait()
            assert orchestrator.status()["active_workflows"] == [session.workflow_id]
            assert orchestrator.cancel(session.workflow_id, "user stopped the run")
            return await task

        result = asyncio.run(run())

        assert result.cancelled
        assert result.state == WorkflowState.FAILED
        assert len(result.steps_with_status(StepStatus.SUCCEEDED)) == 2
        assert result.steps_with_status(StepStatus.ABANDONED) == ["step-3", "step-4", "step-5"]
        assert executor.cancelled_calls == 1
        assert history.count() == 1
        assert history.query_recent()[0].status == OutcomeStatus.PARTIAL
        assert orchestrator.status()["active_workflows"] == []

    def test_task_cancellation_records_partial_outcome(self, history, fast_config):
        executor = BlockingCommandExecutor(succeed=1)
        orchestrator = _orchestrator(history, fast_config, command_executor=executor)
        request = WorkflowRequest(goal="build then test then deploy")

        async def run():
            task = asyncio.ensure_future(orchestrator.run(request))
            await executor.blocked.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(run())

        (outcome,) = history.query_recent()
        assert outcome.status == OutcomeStatus.PARTIAL
        assert [s[2] for s in outcome.step_statuses] == ["succeeded", "abandoned", "abandoned"]

    def test_cancel_during_evolution_stops_generations(self, history, fast_config):
        workflow = {}
        oracle = CancellingMutationOracle(
            lambda: orchestrator.cancel(workflow["id"], "stop evolving")
        )
        orchestrator = _orchestrator(
            history,
            fast_config,
            command_executor=FakeCommandExecutor(),
            session_factory=FakeSessionFactory(),
            mutation_oracle=oracle,
            metrics_evaluator=ScoreEvaluator(),
        )
        request = WorkflowRequest(goal="build the package", evolutionCycles=20)

        async def run():
            session = orchestrator.create_session(request)
            workflow["id"] = session.workflow_id
            return await orchestrator.run(request, session)

        result = asyncio.run(run())

        assert oracle.proposals == 1
        assert len(result.generations) == 1
        assert result.best_artifact["ref"] == "candidate-1"
        assert result.cancelled
        assert result.state == WorkflowState.FAILED
        assert history.query_recent()[0].status == OutcomeStatus.PARTIAL

    def test_cancel_unknown_workflow(self, history, fast_config):
        orchestrator = _orchestrator(history, fast_config)
        assert orchestrator.cancel("wf-missing") is False


class TestFailures:
    """Fatal failures end the workflow in Failed."""

    def test_session_open_failure_fails_workflow(self, history, fast_config):
        orchestrator = _orchestrator(
            history,
            fast_config,
            command_executor=FakeCommandExecutor(),
            session_factory=FakeSessionFactory(fail_open=True),
        )
        request = WorkflowRequest(goal="open the website then build the package")

        result = asyncio.run(orchestrator.run(request))

        assert result.state == WorkflowState.FAILED
        assert not result.cancelled
        assert "Could not open interactive session" in result.error
        assert result.plan.get("step-1").status == StepStatus.FAILED
        assert result.plan.get("step-2").status == StepStatus.ABANDONED
        assert result.metrics.errors_by_kind == {"fatal": 1}
        assert history.query_recent()[0].status == OutcomeStatus.FAILED

    def test_hanging_session_open_times_out(self, history, fast_config):
        factory = HangingSessionFactory()
        config = fast_config.with_overrides(session_open_timeout_seconds=0.1)
        orchestrator = _orchestrator(
            history, config, command_executor=FakeCommandExecutor(), session_factory=factory
        )
        request = WorkflowRequest(goal="open the website")

        result = asyncio.run(asyncio.wait_for(orchestrator.run(request), 5.0))

        assert factory.attempts == 1
        assert result.state == WorkflowState.FAILED
        assert "timed out" in result.error
        assert result.metrics.errors_by_kind == {"fatal": 1}
        assert history.query_recent()[0].status == OutcomeStatus.FAILED

    def test_missing_command_executor_fails_workflow(self, history, fast_config):
        orchestrator = _orchestrator(history, fast_config)

        result = asyncio.run(orchestrator.run(WorkflowRequest(goal="build the package")))

        assert result.state == WorkflowState.FAILED
        assert result.error


class TestMarketSignals:
    """The market provider is consulted only when the request opts in."""

    def test_provider_not_called_without_opt_in(self, history, fast_config):
        provider = FixedMarketProvider([MarketSignal("pwa", "rising", 0.9)])
        orchestrator = _orchestrator(
            history, fast_config, command_executor=FakeCommandExecutor(), market_provider=provider
        )

        asyncio.run(orchestrator.run(WorkflowRequest(goal="build the website bundle")))

        assert provider.domains == []

    def test_strong_signal_adds_research_step(self, history, fast_config):
        provider = FixedMarketProvider([MarketSignal("pwa", "rising", 0.9)])
        orchestrator = _orchestrator(
            history,
            fast_config,
            command_executor=FakeCommandExecutor(),
            session_factory=FakeSessionFactory(),
            market_provider=provider,
        )
        request = WorkflowRequest(goal="build the website bundle", marketIntelligence=True)

        result = asyncio.run(orchestrator.run(request))

        assert provider.domains == ["web"]
        assert result.plan.steps[0].origin == "research"
        assert result.state == WorkflowState.COMPLETED
        assert result.next_actions[0].command == "market-analysis"


class TestReporting:
    """Recommendations, next actions and status."""

    def test_recommendations_and_next_actions(self, history, fast_config):
        executor = FakeCommandExecutor(script={"test": [CommandOutcome(exit_status=1)]})
        orchestrator = _orchestrator(history, fast_config, command_executor=executor)

        result = asyncio.run(orchestrator.run(WorkflowRequest(goal="build then test")))

        assert result.metrics.success_rate == 0.5
        assert any(r.startswith("Break the goal into smaller steps") for r in result.recommendations)
        assert "Enable evolution cycles for continuous improvement" in result.recommendations
        assert [a.command for a in result.next_actions] == ["evolve"]

    def test_status_reports_history(self, history, fast_config):
        orchestrator = _orchestrator(history, fast_config, command_executor=FakeCommandExecutor())
        assert orchestrator.status()["history_size"] == 0

        asyncio.run(orchestrator.run(WorkflowRequest(goal="build the package")))

        status = orchestrator.status()
        assert status["history_size"] == 1
        assert status["summary"].success_rate == 1.0
        assert status["active_workflows"] == []

    def test_result_serializes(self, history, fast_config):
        orchestrator = _orchestrator(history, fast_config, command_executor=FakeCommandExecutor())

        result = asyncio.run(orchestrator.run(WorkflowRequest(goal="build then test")))
        data = workflow_result_to_dict(result)

        assert data["state"] == "completed"
        assert data["request"]["goal"] == "build then test"
        assert [s["status"] for s in data["plan"]["steps"]] == ["succeeded", "succeeded"]


class TestConcurrentWorkflows:
    """Concurrent workflows share only the command bound."""

    def test_command_bound_spans_workflows(self, history, fast_config):
        config = fast_config.with_overrides(max_command_concurrency=2)
        executor = FakeCommandExecutor(delay=0.02)
        factory = FakeSessionFactory()
        orchestrator = _orchestrator(
            history, config, command_executor=executor, session_factory=factory
        )
        request = WorkflowRequest(goal="lint and test and check the repo", environment="hybrid")

        async def run():
            return await asyncio.gather(orchestrator.run(request), orchestrator.run(request))

        first, second = asyncio.run(run())

        assert first.state == second.state == WorkflowState.COMPLETED
        assert executor.max_active <= 2
        assert sorted(factory.opened) == sorted([first.workflow_id, second.workflow_id])
        assert factory.closed == 2
        assert history.count() == 2


class TestSyncEntryPoint:
    def test_run_workflow_sync(self, history, fast_config):
        orchestrator = _orchestrator(history, fast_config, command_executor=FakeCommandExecutor())

        result = run_workflow_sync(orchestrator, WorkflowRequest(goal="build then test"))

        assert result.state == WorkflowState.COMPLETED
        assert history.count() == 1
