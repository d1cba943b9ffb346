"""Tests for the pipeline controller phase machine."""

import asyncio

import pytest

from conftest import BlockingInvoker, ScriptedInvoker, SleepRecorder
from pipeline_orchestrator.config import LoopLimits, RetryConfig
from pipeline_orchestrator.core import checkpoints as checkpoints_mod
from pipeline_orchestrator.core import jobs as jobs_mod
from pipeline_orchestrator.core import requirements as requirements_mod
from pipeline_orchestrator.core import sessions as sessions_mod
from pipeline_orchestrator.core import tasks as tasks_mod
from pipeline_orchestrator.core.activity import ActivityChannel
from pipeline_orchestrator.core.agents import AgentResult
from pipeline_orchestrator.core.errors import (
    AgentFailedError,
    CallBudgetExceeded,
    LoopExhaustedError,
    NotFoundError,
)
from pipeline_orchestrator.core.pipeline import ControllerOptions, PipelineController
from pipeline_orchestrator.core.results import Err, Ok


@pytest.fixture
def requirement(db, session):
    return requirements_mod.create_requirement(db, session.id, "Add a login page")


def make_controller(db, session, invoker, sleep=None, activity=None, **options):
    return PipelineController(
        db,
        session.id,
        invoker,
        ControllerOptions(working_path=session.project_path, **options),
        activity=activity,
        sleep=sleep or SleepRecorder(),
    )


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_runs_every_phase_in_order(self, db, session, requirement):
        invoker = ScriptedInvoker()
        controller = make_controller(db, session, invoker)

        await controller.run(requirement.id)

        assert invoker.agent_types() == ["planner", "architect", "coder", "reviewer", "tester"]
        req = requirements_mod.get_requirement(db, requirement.id)
        assert req.status == "completed"
        assert req.structured_spec.title == "Login"
        assert req.structured_spec.acceptance_criteria == ["user can log in"]
        assert sessions_mod.get_session(db, session.id).current_phase == "completed"

    @pytest.mark.asyncio
    async def test_checkpoint_per_phase(self, db, session, requirement):
        controller = make_controller(db, session, ScriptedInvoker())
        await controller.run(requirement.id)

        checkpoints = checkpoints_mod.list_checkpoints(db, session.id)
        assert [c.phase for c in checkpoints] == ["planning", "architecting", "coding", "reviewing", "testing"]
        last = checkpoints[-1]
        assert last.state["context"] == {"requirement_id": requirement.id}
        assert len(last.state["completed_tasks"]) == 4
        assert last.task_id == last.state["completed_tasks"][-1]

    @pytest.mark.asyncio
    async def test_agents_run_in_working_path(self, db, session, requirement, tmp_project):
        invoker = ScriptedInvoker()
        worktree = tmp_project / "wt"
        controller = PipelineController(
            db, session.id, invoker, ControllerOptions(working_path=worktree), sleep=SleepRecorder()
        )
        await controller.run(requirement.id)

        assert {cwd for _, _, cwd in invoker.calls} == {str(worktree)}
        architect_input = invoker.calls[1][1]
        assert architect_input["projectPath"] == str(worktree)
        assert architect_input["structuredSpec"]["title"] == "Login"

    @pytest.mark.asyncio
    async def test_skip_phase_updates_leaves_session_phase(self, db, session, requirement):
        job = jobs_mod.create_job(db, session.id, requirement.id)
        controller = make_controller(
            db, session, ScriptedInvoker(), skip_phase_updates=True, job_id=job.id
        )
        await controller.run(requirement.id)

        assert sessions_mod.get_session(db, session.id).current_phase == "init"
        assert jobs_mod.get_job(db, job.id).phase == "completed"

    @pytest.mark.asyncio
    async def test_publishes_phase_events(self, db, session, requirement):
        activity = ActivityChannel()
        controller = make_controller(db, session, ScriptedInvoker(), activity=activity)
        await controller.run(requirement.id)

        phases = [e.data["phase"] for e in activity.drain_nowait() if e.kind == "phase_changed"]
        assert phases == ["planning", "architecting", "coding", "reviewing", "testing", "completed"]


class TestReviewLoop:
    @pytest.mark.asyncio
    async def test_exhaustion_is_not_fatal(self, db, session, requirement):
        invoker = ScriptedInvoker({"reviewer": [{"passed": False, "issues": ["x"]}]})
        activity = ActivityChannel()
        controller = make_controller(db, session, invoker, activity=activity)

        await controller.run(requirement.id)

        assert invoker.agent_types() == [
            "planner", "architect", "coder",
            "reviewer", "coder", "reviewer", "coder", "reviewer",
            "tester",
        ]
        assert requirements_mod.get_requirement(db, requirement.id).status == "completed"
        assert any(e.kind == "review_exhausted" for e in activity.drain_nowait())

    @pytest.mark.asyncio
    async def test_fix_task_carries_review_output(self, db, session, requirement):
        review = {"passed": False, "issues": [{"file": "a.py", "severity": "critical"}]}
        invoker = ScriptedInvoker({"reviewer": [review, {"passed": True}]})
        controller = make_controller(db, session, invoker)

        await controller.run(requirement.id)

        fixes = [c[1] for c in invoker.calls if c[1].get("mode") == "fix"]
        assert len(fixes) == 1
        assert fixes[0]["issues"] == review
        assert fixes[0]["techStack"] == session.tech_stack

    @pytest.mark.asyncio
    async def test_only_literal_true_passes(self, db, session, requirement):
        invoker = ScriptedInvoker({"reviewer": [{"passed": "yes"}, {"passed": True}]})
        controller = make_controller(db, session, invoker)
        await controller.run(requirement.id)
        assert invoker.agent_types().count("reviewer") == 2


class TestTestingLoop:
    @pytest.mark.asyncio
    async def test_exhaustion_fails_requirement(self, db, session, requirement):
        invoker = ScriptedInvoker({"tester": [{"allPassed": False}]})
        controller = make_controller(db, session, invoker, loop_limits=LoopLimits(test_to_coder=2))

        with pytest.raises(LoopExhaustedError, match=r"Test loop limit reached \(2\)"):
            await controller.run(requirement.id)

        tasks = tasks_mod.list_tasks_for_requirement(db, requirement.id)
        assert len([t for t in tasks if t.agent_type == "tester"]) == 2
        assert len([t for t in tasks if t.input.get("mode") == "fix"]) == 1
        assert requirements_mod.get_requirement(db, requirement.id).status == "failed"
        assert sessions_mod.get_session(db, session.id).current_phase == "failed"

    @pytest.mark.asyncio
    async def test_recovers_after_fix(self, db, session, requirement):
        invoker = ScriptedInvoker({"tester": [{"allPassed": False}, {"allPassed": True}]})
        controller = make_controller(db, session, invoker)
        await controller.run(requirement.id)
        assert invoker.agent_types()[-3:] == ["tester", "coder", "tester"]
        assert requirements_mod.get_requirement(db, requirement.id).status == "completed"


class TestRunAgent:
    @pytest.mark.asyncio
    async def test_call_budget(self, db, session, requirement):
        invoker = ScriptedInvoker()
        controller = make_controller(
            db, session, invoker, loop_limits=LoopLimits(total_agent_calls_per_requirement=3)
        )

        with pytest.raises(CallBudgetExceeded):
            await controller.run(requirement.id)

        assert invoker.agent_types() == ["planner", "architect", "coder"]
        reviewer = tasks_mod.list_tasks(db, session.id, agent_type="reviewer")[0]
        assert reviewer.status == "failed"
        assert "limit" in reviewer.error_message
        assert requirements_mod.get_requirement(db, requirement.id).status == "failed"

    @pytest.mark.asyncio
    async def test_budget_returns_tagged_error(self, db, session, requirement):
        controller = make_controller(
            db, session, ScriptedInvoker(), loop_limits=LoopLimits(total_agent_calls_per_requirement=0)
        )
        task = tasks_mod.create_task(db, session.id, "coder", {})
        result = await controller.run_agent(task)
        assert isinstance(result, Err)
        assert result.kind == "call_budget_exceeded"

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_succeeds(self, db, session):
        sleep = SleepRecorder()
        invoker = ScriptedInvoker({"coder": [RuntimeError("a"), RuntimeError("b"), {"summary": "ok"}]})
        controller = make_controller(db, session, invoker, sleep=sleep)
        task = tasks_mod.create_task(db, session.id, "coder", {})

        result = await controller.run_agent(task)

        assert isinstance(result, Ok)
        assert result.value.output == {"summary": "ok"}
        assert sleep.delays == [1.0, 2.0]
        stored = tasks_mod.get_task(db, task.id)
        assert stored.status == "completed"
        assert stored.retry_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, db, session):
        sleep = SleepRecorder()
        invoker = ScriptedInvoker({"coder": [RuntimeError("boom")]})
        controller = make_controller(db, session, invoker, sleep=sleep)
        task = tasks_mod.create_task(db, session.id, "coder", {})

        result = await controller.run_agent(task)

        assert isinstance(result, Err)
        assert result.kind == "agent_failed"
        assert len(invoker.calls) == 3
        assert sleep.delays == [1.0, 2.0]
        stored = tasks_mod.get_task(db, task.id)
        assert stored.status == "failed"
        assert stored.retry_count == 3
        assert stored.error_message == "boom"

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, db, session):
        sleep = SleepRecorder()
        retry = RetryConfig(max_retries=5, initial_delay=10.0, max_delay=15.0, backoff_multiplier=2.0)
        controller = make_controller(
            db, session, ScriptedInvoker({"coder": [RuntimeError("x")]}), sleep=sleep, retry=retry
        )
        await controller.run_agent(tasks_mod.create_task(db, session.id, "coder", {}))
        assert sleep.delays == [10.0, 15.0, 15.0, 15.0]

    @pytest.mark.asyncio
    async def test_unsuccessful_result_counts_as_failure(self, db, session, requirement):
        invoker = ScriptedInvoker({"architect": [AgentResult(success=False)]})
        controller = make_controller(db, session, invoker)

        with pytest.raises(AgentFailedError):
            await controller.run(requirement.id)

        assert invoker.agent_types().count("architect") == 3
        assert requirements_mod.get_requirement(db, requirement.id).status == "failed"


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_requirement(self, db, session):
        controller = make_controller(db, session, ScriptedInvoker())
        with pytest.raises(NotFoundError):
            await controller.run("ghost")

    @pytest.mark.asyncio
    async def test_unknown_session(self, db, session, requirement):
        controller = PipelineController(
            db, "ghost", ScriptedInvoker(), ControllerOptions(working_path=session.project_path)
        )
        with pytest.raises(NotFoundError, match="Session not found"):
            await controller.run(requirement.id)
        assert requirements_mod.get_requirement(db, requirement.id).status == "pending"

    @pytest.mark.asyncio
    async def test_cancellation_marks_task_and_requirement_failed(self, db, session, requirement):
        invoker = BlockingInvoker("architect")
        controller = make_controller(db, session, invoker)

        run = asyncio.create_task(controller.run(requirement.id))
        await asyncio.wait_for(invoker.started.wait(), timeout=5)

        assert await controller.kill_all() is True
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run

        architect = tasks_mod.list_tasks(db, session.id, agent_type="architect")[0]
        assert architect.status == "failed"
        assert architect.error_message == "cancelled"
        assert invoker.killed == [architect.id]
        assert requirements_mod.get_requirement(db, requirement.id).status == "failed"

    @pytest.mark.asyncio
    async def test_kill_all_when_idle(self, db, session):
        controller = make_controller(db, session, ScriptedInvoker())
        assert await controller.kill_all() is False
