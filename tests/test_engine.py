"""
Tests for the Execution Engine.

These tests verify:
1. Dependency-ordered dispatch and independent fan-out
2. The global command-step bound and interactive-step serialization
3. Transient retries with escalation to structural handling
4. Structural and fatal failure handling
5. Cancellation and late-result discarding
"""

from __future__ import annotations

import asyncio
from typing import List

from conftest import BlockingCommandExecutor, FakeCommandExecutor, FakeSessionFactory

from conductor.config.runtime_config import ModePolicy
from conductor.runtime.collaborators import CommandOutcome
from conductor.runtime.engine import ExecutionEngine
from conductor.runtime.errors import ErrorKind, TransientStepError
from conductor.runtime.session import WorkflowSession
from conductor.runtime.types import (
    ActionPlan,
    Environment,
    ExecutionResult,
    Step,
    StepStatus,
    WorkflowRequest,
)


def _cmd(step_id: str, instruction: str, deps=()) -> Step:
    return Step(
        id=step_id,
        environment=Environment.COMMAND,
        action={"kind": "run", "instruction": instruction},
        depends_on=list(deps),
    )


def _ui(step_id: str, instruction: str, deps=()) -> Step:
    return Step(
        id=step_id,
        environment=Environment.INTERACTIVE,
        action={"kind": "interact", "instruction": instruction},
        depends_on=list(deps),
    )


def _plan(*steps: Step) -> ActionPlan:
    return ActionPlan(id="plan-test", workflow_id="wf-test", steps=list(steps))


async def _collect(engine: ExecutionEngine, plan: ActionPlan) -> List[ExecutionResult]:
    return [result async for result in engine.execute(plan)]


class TestDispatchOrder:
    """Tests for dependency-ordered dispatch."""

    def test_chain_runs_in_dependency_order(self, fast_config):
        executor = FakeCommandExecutor()
        plan = _plan(_cmd("a", "first"), _cmd("b", "second", ["a"]), _cmd("c", "third", ["b"]))

        async def run():
            engine = ExecutionEngine("wf-test", command_executor=executor, config=fast_config)
            return await _collect(engine, plan)

        results = asyncio.run(run())

        assert executor.instructions == ["first", "second", "third"]
        assert [r.step_id for r in results] == ["a", "b", "c"]
        assert all(s.status == StepStatus.SUCCEEDED for s in plan.steps)

    def test_result_fields(self, fast_config):
        executor = FakeCommandExecutor()
        plan = _plan(_cmd("a", "first"))

        async def run():
            engine = ExecutionEngine("wf-test", command_executor=executor, config=fast_config)
            return await _collect(engine, plan)

        (result,) = asyncio.run(run())

        assert result.succeeded
        assert result.environment == Environment.COMMAND
        assert result.exit_status == 0
        assert result.output == "ok: first"
        assert result.attempts == 1


class TestConcurrencyPolicy:
    """Tests for the command bound and interactive serialization."""

    def test_command_steps_bounded(self, fast_config):
        config = fast_config.with_overrides(max_command_concurrency=2)
        executor = FakeCommandExecutor(delay=0.02)
        plan = _plan(*[_cmd(f"s{i}", f"job {i}") for i in range(6)])

        async def run():
            engine = ExecutionEngine("wf-test", command_executor=executor, config=config)
            return await _collect(engine, plan)

        results = asyncio.run(run())

        assert len(results) == 6
        assert executor.max_active == 2

    def test_shared_semaphore_bounds_across_engines(self, fast_config):
        executor = FakeCommandExecutor(delay=0.02)
        plan_a = _plan(*[_cmd(f"a{i}", f"a {i}") for i in range(3)])
        plan_b = ActionPlan(
            id="plan-b", workflow_id="wf-b", steps=[_cmd(f"b{i}", f"b {i}") for i in range(3)]
        )

        async def run():
            slots = asyncio.Semaphore(2)
            one = ExecutionEngine("wf-a", command_executor=executor, config=fast_config, command_slots=slots)
            two = ExecutionEngine("wf-b", command_executor=executor, config=fast_config, command_slots=slots)
            await asyncio.gather(_collect(one, plan_a), _collect(two, plan_b))

        asyncio.run(run())
        assert executor.max_active <= 2
        assert len(executor.calls) == 6

    def test_one_interactive_step_in_flight(self, fast_config):
        factory = FakeSessionFactory(delay=0.02)
        plan = _plan(_ui("u1", "click a"), _ui("u2", "click b"), _ui("u3", "click c"))

        async def run():
            session = WorkflowSession(
                WorkflowRequest(goal="click things"),
                policy=ModePolicy(),
                workflow_id="wf-test",
                session_factory=factory,
            )
            engine = ExecutionEngine(
                "wf-test", session_provider=session.interactive_session, config=fast_config
            )
            results = await _collect(engine, plan)
            await session.close()
            return results

        results = asyncio.run(run())

        assert len(results) == 3
        assert factory.max_active == 1
        assert factory.opened == ["wf-test"]
        assert factory.closed == 1
        assert [r.evidence_ref for r in results] == ["snapshot-1", "snapshot-2", "snapshot-3"]

    def test_interactive_and_command_steps_overlap(self, fast_config):
        executor = FakeCommandExecutor(delay=0.02)
        factory = FakeSessionFactory(delay=0.02)
        plan = _plan(_cmd("c1", "build"), _ui("u1", "open page"))

        async def run():
            session = WorkflowSession(
                WorkflowRequest(goal="x"), policy=ModePolicy(), session_factory=factory
            )
            engine = ExecutionEngine(
                "wf-test",
                command_executor=executor,
                session_provider=session.interactive_session,
                config=fast_config,
            )
            return await _collect(engine, plan)

        results = asyncio.run(run())
        assert {r.step_id for r in results} == {"c1", "u1"}


class TestTransientFailures:
    """Tests for bounded retries with backoff."""

    def test_transient_failure_retried(self, fast_config):
        executor = FakeCommandExecutor(script={"flaky": [TransientStepError("blip")]})
        plan = _plan(_cmd("a", "flaky"))

        async def run():
            engine = ExecutionEngine("wf-test", command_executor=executor, config=fast_config)
            return engine, await _collect(engine, plan)

        engine, (result,) = asyncio.run(run())

        assert result.succeeded
        assert result.attempts == 2
        assert engine.retries == 1
        assert plan.get("a").retry_count == 1
        assert [e.kind for e in engine.errors] == [ErrorKind.TRANSIENT]

    def test_connection_error_is_transient(self, fast_config):
        executor = FakeCommandExecutor(script={"net": [ConnectionError("reset")]})
        plan = _plan(_cmd("a", "net"))

        async def run():
            engine = ExecutionEngine("wf-test", command_executor=executor, config=fast_config)
            return await _collect(engine, plan)

        (result,) = asyncio.run(run())
        assert result.succeeded
        assert len(executor.calls) == 2

    def test_exhausted_retries_escalate_to_structural(self, fast_config):
        errors = [TransientStepError("blip") for _ in range(3)]
        executor = FakeCommandExecutor(script={"flaky": errors})
        plan = _plan(_cmd("a", "flaky"), _cmd("b", "after", ["a"]))

        async def run():
            engine = ExecutionEngine("wf-test", command_executor=executor, config=fast_config)
            return await _collect(engine, plan)

        (result,) = asyncio.run(run())

        assert result.status == StepStatus.FAILED
        assert result.error_kind == ErrorKind.STRUCTURAL
        assert result.attempts == 3
        assert plan.get("a").status == StepStatus.ABANDONED
        assert plan.get("b").status == StepStatus.ABANDONED
        assert executor.instructions == ["flaky"] * 3


class TestStructuralAndFatal:
    """Tests for non-retried failures."""

    def test_nonzero_exit_is_structural(self, fast_config):
        executor = FakeCommandExecutor(
            script={"broken": [CommandOutcome(exit_status=2, output="boom")]}
        )
        plan = _plan(_cmd("a", "broken"), _cmd("b", "independent"), _cmd("c", "after", ["a"]))

        async def run():
            engine = ExecutionEngine("wf-test", command_executor=executor, config=fast_config)
            return engine, await _collect(engine, plan)

        engine, results = asyncio.run(run())

        failed = [r for r in results if not r.succeeded]
        assert len(failed) == 1
        assert failed[0].error_kind == ErrorKind.STRUCTURAL
        assert failed[0].output == "boom"
        assert plan.get("b").status == StepStatus.SUCCEEDED
        assert plan.get("c").status == StepStatus.ABANDONED
        assert not engine.has_fatal_failure
        assert executor.instructions.count("broken") == 1

    def test_session_open_failure_is_fatal(self, fast_config):
        factory = FakeSessionFactory(fail_open=True)
        plan = _plan(_ui("u1", "open page"), _cmd("c1", "build", ["u1"]))

        async def run():
            session = WorkflowSession(
                WorkflowRequest(goal="x"), policy=ModePolicy(), session_factory=factory
            )
            engine = ExecutionEngine(
                "wf-test", session_provider=session.interactive_session, config=fast_config
            )
            results = await _collect(engine, plan)
            abandoned = await engine.shutdown(plan, "fatal failure")
            return engine, results, abandoned

        engine, results, abandoned = asyncio.run(run())

        assert results[0].error_kind == ErrorKind.FATAL
        assert engine.has_fatal_failure
        assert plan.get("u1").status == StepStatus.FAILED
        assert plan.get("c1").status == StepStatus.ABANDONED
        assert abandoned == ["c1"]

    def test_missing_executor_is_fatal(self, fast_config):
        plan = _plan(_cmd("a", "build"))

        async def run():
            engine = ExecutionEngine("wf-test", config=fast_config)
            return engine, await _collect(engine, plan)

        engine, (result,) = asyncio.run(run())
        assert result.error_kind == ErrorKind.FATAL
        assert engine.has_fatal_failure


class TestCancellation:
    """Tests for cancellation and late results."""

    def test_cancelled_before_start_dispatches_nothing(self, fast_config):
        executor = FakeCommandExecutor()
        plan = _plan(_cmd("a", "build"))

        async def run():
            cancel = asyncio.Event()
            cancel.set()
            engine = ExecutionEngine(
                "wf-test", command_executor=executor, config=fast_config, cancel_event=cancel
            )
            results = await _collect(engine, plan)
            await engine.shutdown(plan, "cancelled")
            return results

        assert asyncio.run(run()) == []
        assert executor.calls == []
        assert plan.get("a").status == StepStatus.ABANDONED

    def test_cancel_mid_flight_abandons_running_step(self, fast_config):
        executor = BlockingCommandExecutor(succeed=1)
        plan = _plan(_cmd("a", "one"), _cmd("b", "two", ["a"]), _cmd("c", "three", ["b"]))

        async def run():
            cancel = asyncio.Event()
            engine = ExecutionEngine(
                "wf-test", command_executor=executor, config=fast_config, cancel_event=cancel
            )
            results = []
            async for result in engine.execute(plan):
                results.append(result)
                asyncio.get_running_loop().call_soon(cancel.set)
            await engine.shutdown(plan, "cancelled")
            return results

        results = asyncio.run(run())

        assert [r.step_id for r in results] == ["a"]
        assert plan.get("a").status == StepStatus.SUCCEEDED
        assert plan.get("b").status == StepStatus.ABANDONED
        assert plan.get("c").status == StepStatus.ABANDONED
        assert executor.cancelled_calls == 1

    def test_late_result_discarded_after_terminal(self, fast_config):
        terminal = {"value": False}
        events = []

        class FinishingExecutor:
            async def run(self, action):
                terminal["value"] = True
                return CommandOutcome(exit_status=0)

        plan = _plan(_cmd("a", "build"))

        async def run():
            engine = ExecutionEngine(
                "wf-test",
                command_executor=FinishingExecutor(),
                config=fast_config,
                is_terminal=lambda: terminal["value"],
                event_emitter=lambda wid, event: events.append(event),
            )
            return await _collect(engine, plan)

        assert asyncio.run(run()) == []
        assert "late_result_discarded" in [e.kind for e in events]
