"""Pipeline controller: drives one requirement through the build phases.

planning -> architecting -> coding -> reviewing* -> testing* -> completed

Each phase runs one or more agent tasks. Every task attempt is persisted
as its own Task row, and a checkpoint is written before each phase and
before each review/test loop iteration.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from pipeline_orchestrator.config import LoopLimits, RetryConfig
from pipeline_orchestrator.core.activity import ActivityChannel
from pipeline_orchestrator.core.agents import AgentInvoker, AgentResult
from pipeline_orchestrator.core.checkpoints import create_checkpoint
from pipeline_orchestrator.core.errors import (
    AgentFailedError,
    CallBudgetExceeded,
    LoopExhaustedError,
    NotFoundError,
)
from pipeline_orchestrator.core.jobs import update_job
from pipeline_orchestrator.core.requirements import (
    get_requirement,
    update_requirement_status,
    update_structured_spec,
)
from pipeline_orchestrator.core.results import Err, Ok
from pipeline_orchestrator.core.sessions import get_session, update_session
from pipeline_orchestrator.core.tasks import create_task, list_tasks, update_task
from pipeline_orchestrator.db.models import Requirement, Session, StructuredSpec, Task

logger = logging.getLogger(__name__)


@dataclass
class ControllerOptions:
    working_path: str | Path
    skip_phase_updates: bool = False
    job_id: str | None = None
    loop_limits: LoopLimits = field(default_factory=LoopLimits)
    retry: RetryConfig = field(default_factory=RetryConfig)


class PipelineController:
    def __init__(
        self,
        db: sqlite3.Connection,
        session_id: str,
        invoker: AgentInvoker,
        options: ControllerOptions,
        activity: ActivityChannel | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.session_id = session_id
        self.invoker = invoker
        self.options = options
        self.activity = activity
        self._sleep = sleep

        self.review_loop_count = 0
        self.test_loop_count = 0
        self.total_agent_calls = 0
        self._active_task_id: str | None = None
        self._requirement_id: str | None = None

    @property
    def working_path(self) -> str:
        return str(self.options.working_path)

    async def run(self, requirement_id: str) -> None:
        """Run every phase for a requirement.

        On success the requirement is completed. Any exception marks it
        failed, moves the phase to failed, and is re-raised.
        """
        requirement = get_requirement(self.db, requirement_id)
        if not requirement:
            raise NotFoundError("Requirement", requirement_id)
        session = get_session(self.db, self.session_id)
        if not session:
            raise NotFoundError("Session", self.session_id)

        self.review_loop_count = 0
        self.test_loop_count = 0
        self.total_agent_calls = 0
        self._requirement_id = requirement_id

        update_requirement_status(self.db, requirement_id, "in_progress")

        try:
            await self._run_planning(session, requirement)
            await self._run_architecting(session, requirement)
            await self._run_coding(session, requirement)
            await self._run_reviewing(session, requirement)
            await self._run_testing(session, requirement)
        except BaseException:
            update_requirement_status(self.db, requirement_id, "failed")
            self._update_phase("failed")
            raise

        update_requirement_status(self.db, requirement_id, "completed")
        self._update_phase("completed")
        logger.info("Requirement %s completed", requirement_id)

    async def kill_all(self) -> bool:
        """Terminate the agent process for the task currently running, if any."""
        if self._active_task_id is None:
            return False
        return await self.invoker.kill(self._active_task_id)

    # ── Phases ──────────────────────────────────────────────────────────

    async def _run_planning(self, session: Session, requirement: Requirement):
        self._enter_phase("planning")
        task = self._create_task(
            "planner",
            {
                "rawRequirement": requirement.raw_input,
                "techStack": session.tech_stack,
                "projectName": session.project_name,
            },
        )
        result = self._unwrap("planner", await self.run_agent(task))
        spec = StructuredSpec.from_agent_output(result.output)
        update_structured_spec(self.db, requirement.id, spec)
        logger.info("Planned requirement %s: %s", requirement.id, spec.title)

    async def _run_architecting(self, session: Session, requirement: Requirement):
        self._enter_phase("architecting")
        task = self._create_task(
            "architect",
            {
                "structuredSpec": self._spec_dict(requirement.id),
                "techStack": session.tech_stack,
                "projectPath": self.working_path,
            },
        )
        self._unwrap("architect", await self.run_agent(task))

    async def _run_coding(self, session: Session, requirement: Requirement):
        self._enter_phase("coding")
        task = self._create_task(
            "coder",
            {
                "structuredSpec": self._spec_dict(requirement.id),
                "techStack": session.tech_stack,
                "projectPath": self.working_path,
            },
        )
        self._unwrap("coder", await self.run_agent(task))

    async def _run_reviewing(self, session: Session, requirement: Requirement):
        limit = self.options.loop_limits.review_to_coder
        self._update_phase("reviewing")

        while self.review_loop_count < limit:
            self.review_loop_count += 1
            self._checkpoint("reviewing")
            logger.info("Reviewing %s (attempt %d/%d)", requirement.id, self.review_loop_count, limit)

            task = self._create_task(
                "reviewer",
                {"projectPath": self.working_path, "techStack": session.tech_stack},
            )
            result = self._unwrap("reviewer", await self.run_agent(task))
            if result.output.get("passed") is True:
                logger.info("Review passed for %s", requirement.id)
                return

            if self.review_loop_count < limit:
                await self._run_coding_fix(session, result)

        logger.warning("Review loop limit reached (%d) for %s; proceeding to testing", limit, requirement.id)
        self._publish("review_exhausted", f"Review loop limit reached ({limit})", limit=limit)

    async def _run_testing(self, session: Session, requirement: Requirement):
        limit = self.options.loop_limits.test_to_coder
        self._update_phase("testing")

        while self.test_loop_count < limit:
            self.test_loop_count += 1
            self._checkpoint("testing")
            logger.info("Testing %s (attempt %d/%d)", requirement.id, self.test_loop_count, limit)

            task = self._create_task(
                "tester",
                {
                    "structuredSpec": self._spec_dict(requirement.id),
                    "projectPath": self.working_path,
                    "techStack": session.tech_stack,
                },
            )
            result = self._unwrap("tester", await self.run_agent(task))
            if result.output.get("allPassed") is True:
                logger.info("Tests passed for %s", requirement.id)
                return

            if self.test_loop_count < limit:
                await self._run_coding_fix(session, result)

        raise LoopExhaustedError("test", limit)

    async def _run_coding_fix(self, session: Session, previous: AgentResult):
        task = self._create_task(
            "coder",
            {
                "mode": "fix",
                "issues": previous.output,
                "projectPath": self.working_path,
                "techStack": session.tech_stack,
            },
        )
        self._unwrap("coder", await self.run_agent(task))

    # ── Agent execution ─────────────────────────────────────────────────

    async def run_agent(self, task: Task) -> Ok[AgentResult] | Err:
        """Invoke the agent for a task with retries and exponential backoff.

        Returns Ok(AgentResult) on success, Err("call_budget_exceeded") when
        the per-requirement call budget is spent, or Err("agent_failed")
        once every attempt has failed. The Task row reflects the outcome.
        """
        self.total_agent_calls += 1
        budget = self.options.loop_limits.total_agent_calls_per_requirement
        if self.total_agent_calls > budget:
            detail = f"Total agent call limit reached ({budget})"
            update_task(self.db, task.id, status="failed", error_message=detail)
            return Err("call_budget_exceeded", detail)

        retry = self.options.retry
        update_task(self.db, task.id, status="running")
        self._active_task_id = task.id
        last_error: BaseException | None = None

        try:
            for attempt in range(1, retry.max_retries + 1):
                try:
                    result = await self.invoker.invoke(task, cwd=self.working_path)
                    if not result.success:
                        raise AgentFailedError(task.agent_type, "agent reported failure")
                except asyncio.CancelledError:
                    update_task(self.db, task.id, status="failed", error_message="cancelled")
                    raise
                except Exception as e:
                    last_error = e
                    logger.warning(
                        "%s attempt %d/%d for task %s failed: %s",
                        task.agent_type, attempt, retry.max_retries, task.id, e,
                    )
                    if attempt < retry.max_retries:
                        delay = retry.delay_for(attempt)
                        self._publish(
                            "agent_retry",
                            f"{task.agent_type} attempt {attempt} failed, retrying in {delay:.1f}s",
                            task_id=task.id, attempt=attempt, delay=delay,
                        )
                        await self._sleep(delay)
                    continue

                result.retry_count = attempt - 1
                update_task(self.db, task.id, status="completed", output=result.output, retry_count=attempt - 1)
                return Ok(result)
        finally:
            self._active_task_id = None

        detail = str(last_error) if last_error else "Unknown error"
        update_task(
            self.db, task.id,
            status="failed",
            error_message=detail,
            retry_count=retry.max_retries,
        )
        return Err("agent_failed", detail, last_error)

    def _unwrap(self, agent_type: str, result: Ok[AgentResult] | Err) -> AgentResult:
        if isinstance(result, Ok):
            return result.value
        if result.kind == "call_budget_exceeded":
            raise CallBudgetExceeded(self.options.loop_limits.total_agent_calls_per_requirement)
        raise AgentFailedError(agent_type, result.detail) from result.error

    # ── Helpers ─────────────────────────────────────────────────────────

    def _create_task(self, agent_type: str, input: dict) -> Task:
        return create_task(self.db, self.session_id, agent_type, input, requirement_id=self._requirement_id)

    def _spec_dict(self, requirement_id: str) -> dict | None:
        requirement = get_requirement(self.db, requirement_id)
        if requirement and requirement.structured_spec:
            return requirement.structured_spec.to_dict()
        return None

    def _enter_phase(self, phase: str):
        self._update_phase(phase)
        self._checkpoint(phase)
        logger.info("Phase %s for requirement %s", phase, self._requirement_id)

    def _update_phase(self, phase: str):
        if not self.options.skip_phase_updates:
            update_session(self.db, self.session_id, current_phase=phase)
        if self.options.job_id:
            update_job(self.db, self.options.job_id, phase=phase)
        self._publish("phase_changed", f"Phase: {phase}", phase=phase)

    def _checkpoint(self, phase: str):
        tasks = list_tasks(self.db, self.session_id)
        create_checkpoint(
            self.db,
            self.session_id,
            phase,
            {
                "completed_tasks": [t.id for t in tasks if t.status == "completed"],
                "pending_tasks": [t.id for t in tasks if t.status == "pending"],
                "context": {"requirement_id": self._requirement_id},
            },
            task_id=tasks[-1].id if tasks else None,
        )

    def _publish(self, kind: str, message: str, **data):
        if self.activity is not None:
            self.activity.publish(kind, self._requirement_id, message, **data)
