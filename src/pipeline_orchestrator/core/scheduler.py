"""Dependency-aware scheduler that runs requirement pipelines concurrently.

Each started requirement gets a Job row, optionally its own git worktree,
and a PipelineController running as an asyncio task. Finished tasks report
back through a single completion queue; the scheduling loop is the only
consumer.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from pipeline_orchestrator.config import LoopLimits, RetryConfig
from pipeline_orchestrator.core.activity import ActivityChannel
from pipeline_orchestrator.core.agents import AgentInvoker
from pipeline_orchestrator.core.errors import (
    CircularDependencyError,
    InvalidTransitionError,
    JobsFailedError,
    NotFoundError,
    OrchestratorError,
)
from pipeline_orchestrator.core.jobs import create_job, update_job
from pipeline_orchestrator.core.pipeline import ControllerOptions, PipelineController
from pipeline_orchestrator.core.requirements import (
    get_requirement,
    log_requirement_event,
    update_requirement_status,
)
from pipeline_orchestrator.core.results import Err, Ok
from pipeline_orchestrator.core.sessions import get_session
from pipeline_orchestrator.core.worktrees import WorktreeManager
from pipeline_orchestrator.db.models import Job, Session

logger = logging.getLogger(__name__)


@dataclass
class SchedulerOptions:
    max_concurrency: int = 3
    use_worktrees: bool = True
    loop_limits: LoopLimits = field(default_factory=LoopLimits)
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass
class RequirementItem:
    id: str
    dependencies: list[str] = field(default_factory=list)


@dataclass
class JobOutcome:
    requirement_id: str
    result: Ok[str] | Err


@dataclass
class RunSummary:
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.completed) + len(self.failed) + len(self.skipped) + len(self.cancelled)

    @property
    def ok(self) -> bool:
        return not (self.failed or self.skipped or self.cancelled)


@dataclass
class _RunningJob:
    requirement_id: str
    job: Job
    controller: PipelineController
    task: asyncio.Task | None = None


class ConcurrentScheduler:
    def __init__(
        self,
        db: sqlite3.Connection,
        session_id: str,
        invoker: AgentInvoker,
        worktree_manager: WorktreeManager | None = None,
        options: SchedulerOptions | None = None,
        activity: ActivityChannel | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.session_id = session_id
        self.invoker = invoker
        self.worktree_manager = worktree_manager
        self.options = options or SchedulerOptions()
        self.activity = activity
        self._sleep = sleep

        self._max_concurrency = max(1, self.options.max_concurrency)
        self._isolation = False
        self._running: dict[str, _RunningJob] = {}
        self._tasks: list[asyncio.Task] = []
        self._completions: asyncio.Queue[JobOutcome | None] = asyncio.Queue()
        self._worktree_ids: list[str] = []
        self._cancelled = False

    @property
    def worktree_ids(self) -> list[str]:
        """Worktrees created during the run, for merging afterwards."""
        return list(self._worktree_ids)

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def running_jobs(self) -> list[Job]:
        return [rj.job for rj in self._running.values()]

    async def run_all(self, requirement_ids: list[str]) -> RunSummary:
        """Run independent requirements with bounded concurrency."""
        return await self._execute([RequirementItem(rid) for rid in requirement_ids])

    async def run_with_dependencies(self, items: list[RequirementItem]) -> RunSummary:
        """Run requirements so none starts before all of its dependencies completed."""
        return await self._execute(items)

    async def cancel_all(self) -> None:
        """Stop every in-flight job and stop scheduling new ones.

        Agent processes are signalled but not waited for.
        """
        self._cancelled = True
        in_flight = [rj for rj in self._running.values() if rj.task is not None and not rj.task.done()]

        results = await asyncio.gather(
            *(rj.controller.kill_all() for rj in in_flight), return_exceptions=True
        )
        for rj, result in zip(in_flight, results):
            if isinstance(result, Exception):
                logger.warning("Failed to kill agent for %s: %s", rj.requirement_id, result)
            if rj.task.done():
                continue
            update_job(self.db, rj.job.id, status="cancelled", error_message="Cancelled")
            update_requirement_status(self.db, rj.requirement_id, "failed")
            rj.task.cancel()
            self._publish("job_cancelled", rj.requirement_id, "Job cancelled")
            logger.info("Cancelled job %s for requirement %s", rj.job.id, rj.requirement_id)

        self._running.clear()
        self._completions.put_nowait(None)

    # ── Scheduling loop ─────────────────────────────────────────────────

    async def _execute(self, items: list[RequirementItem]) -> RunSummary:
        session = get_session(self.db, self.session_id)
        if not session:
            raise NotFoundError("Session", self.session_id)

        await self._prepare()
        summary = RunSummary()
        pending = {item.id: item for item in items}
        done: set[str] = set()
        bad: set[str] = set()
        self._seed_external_dependencies(items, done, bad)

        logger.info(
            "Starting %d job(s) with max concurrency %d", len(pending), self._max_concurrency
        )

        while pending or self._running:
            if self._cancelled:
                break

            self._skip_blocked(pending, bad, summary)

            ready = [item for item in pending.values() if all(d in done for d in item.dependencies)]
            for item in ready:
                if len(self._running) >= self._max_concurrency:
                    break
                del pending[item.id]
                try:
                    await self._start_job(session, item.id)
                except OrchestratorError as e:
                    logger.error("Could not start %s: %s", item.id, e)
                    summary.failed[item.id] = str(e)
                    bad.add(item.id)
                    self._publish("job_failed", item.id, str(e))

            if self._cancelled:
                break
            if not self._running:
                if not pending:
                    break
                if ready:
                    continue
                stuck = sorted(pending)
                logger.error("Circular or unsatisfiable dependencies: %s", ", ".join(stuck))
                raise CircularDependencyError(stuck)

            outcome = await self._completions.get()
            if outcome is None:
                continue
            self._record(outcome, summary, done, bad)

        if self._cancelled:
            await self._drain(summary, done, bad)
            summary.cancelled.extend(rid for rid in pending if rid not in summary.cancelled)

        self._finish(summary)
        return summary

    async def _prepare(self):
        """Decide whether jobs get isolated worktrees.

        Without isolation, jobs share the project directory and run one at
        a time.
        """
        self._isolation = False
        self._max_concurrency = max(1, self.options.max_concurrency)

        if self.options.use_worktrees and self.worktree_manager is not None:
            try:
                self._isolation = await self.worktree_manager.is_git_repo()
            except Exception as e:
                logger.warning("Git repository check failed: %s", e)
            if not self._isolation:
                logger.warning("Not a git repository; worktree isolation disabled")

        if not self._isolation and self._max_concurrency > 1:
            logger.warning("Running sequentially without git worktrees")
            self._max_concurrency = 1

    def _seed_external_dependencies(self, items: list[RequirementItem], done: set[str], bad: set[str]):
        submitted = {item.id for item in items}
        for item in items:
            for dep_id in item.dependencies:
                if dep_id in submitted or dep_id in done or dep_id in bad:
                    continue
                dep = get_requirement(self.db, dep_id)
                if dep is None:
                    continue
                if dep.status == "completed":
                    done.add(dep_id)
                elif dep.status == "failed":
                    bad.add(dep_id)

    def _skip_blocked(self, pending: dict[str, RequirementItem], bad: set[str], summary: RunSummary):
        """Skip every pending item with a failed or skipped dependency, transitively."""
        changed = True
        while changed:
            changed = False
            for rid, item in list(pending.items()):
                failed_deps = [d for d in item.dependencies if d in bad]
                if not failed_deps:
                    continue
                del pending[rid]
                bad.add(rid)
                summary.skipped.append(rid)
                changed = True
                reason = f"dependency failed: {', '.join(failed_deps)}"
                if get_requirement(self.db, rid):
                    log_requirement_event(self.db, rid, "skipped", None, reason)
                logger.warning("Skipped %s (%s)", rid, reason)
                self._publish("job_skipped", rid, reason, dependencies=failed_deps)

    async def _start_job(self, session: Session, requirement_id: str):
        requirement = get_requirement(self.db, requirement_id)
        if not requirement:
            raise NotFoundError("Requirement", requirement_id)
        if requirement.status not in ("pending", "in_progress"):
            raise InvalidTransitionError(requirement_id, requirement.status, "in_progress")

        working_path = session.project_path
        worktree_id = None
        if self._isolation:
            try:
                worktree = await self.worktree_manager.create(
                    session.id, requirement_id, requirement.raw_input[:30]
                )
                working_path = worktree.worktree_path
                worktree_id = worktree.id
                self._worktree_ids.append(worktree.id)
            except Exception as e:
                logger.warning(
                    "Worktree creation failed for %s, using project directory: %s", requirement_id, e
                )
                self._publish("worktree_fallback", requirement_id, str(e))

        job = create_job(self.db, session.id, requirement_id, worktree_id=worktree_id)
        update_requirement_status(self.db, requirement_id, "in_progress")
        job = update_job(self.db, job.id, status="running")

        controller = PipelineController(
            self.db,
            session.id,
            self.invoker,
            ControllerOptions(
                working_path=working_path,
                skip_phase_updates=self._max_concurrency > 1,
                job_id=job.id,
                loop_limits=self.options.loop_limits,
                retry=self.options.retry,
            ),
            activity=self.activity,
            sleep=self._sleep,
        )
        running = _RunningJob(requirement_id, job, controller)
        running.task = asyncio.create_task(self._run_job(running))
        self._running[requirement_id] = running
        self._tasks.append(running.task)

        self._publish("job_started", requirement_id, requirement.raw_input[:40], job_id=job.id)
        logger.info("Started job %s for requirement %s in %s", job.id, requirement_id, working_path)

    async def _run_job(self, running: _RunningJob):
        """Run one pipeline and report exactly one outcome, however it ends."""
        rid = running.requirement_id
        outcome = None
        try:
            await running.controller.run(rid)
            update_job(self.db, running.job.id, status="completed")
            outcome = JobOutcome(rid, Ok(rid))
        except asyncio.CancelledError:
            outcome = JobOutcome(rid, Err("cancelled", "Job cancelled"))
            raise
        except Exception as e:
            logger.error("Job for %s failed: %s", rid, e)
            outcome = JobOutcome(rid, Err("job_failed", str(e), e))
            try:
                update_job(self.db, running.job.id, status="failed", error_message=str(e))
                update_requirement_status(self.db, rid, "failed")
            except OrchestratorError as store_error:
                logger.error("Could not record failure of %s: %s", rid, store_error)
        finally:
            if outcome is None:
                outcome = JobOutcome(rid, Err("job_failed", "Job exited unexpectedly"))
            self._completions.put_nowait(outcome)

    def _record(self, outcome: JobOutcome, summary: RunSummary, done: set[str], bad: set[str]):
        rid = outcome.requirement_id
        self._running.pop(rid, None)
        result = outcome.result
        if isinstance(result, Ok):
            done.add(rid)
            summary.completed.append(rid)
            logger.info("Requirement %s completed", rid)
            self._publish("job_completed", rid, "Job completed")
        elif result.kind == "cancelled":
            bad.add(rid)
            summary.cancelled.append(rid)
        else:
            bad.add(rid)
            summary.failed[rid] = result.detail
            self._publish("job_failed", rid, result.detail)

    async def _drain(self, summary: RunSummary, done: set[str], bad: set[str]):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        while not self._completions.empty():
            outcome = self._completions.get_nowait()
            if outcome is not None:
                self._record(outcome, summary, done, bad)

    def _finish(self, summary: RunSummary):
        logger.info(
            "Run finished: %d completed, %d failed, %d skipped, %d cancelled",
            len(summary.completed), len(summary.failed), len(summary.skipped), len(summary.cancelled),
        )
        self._publish(
            "run_summary",
            None,
            f"{len(summary.completed)}/{summary.total} completed",
            completed=list(summary.completed),
            failed=dict(summary.failed),
            skipped=list(summary.skipped),
            cancelled=list(summary.cancelled),
        )
        if not summary.ok:
            raise JobsFailedError(summary)

    def _publish(self, kind: str, requirement_id: str | None, message: str, **data):
        if self.activity is not None:
            self.activity.publish(kind, requirement_id, message, **data)
