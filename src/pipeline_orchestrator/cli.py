"""CLI entry point for the pipeline orchestrator."""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from pipeline_orchestrator.config import Config, get_config
from pipeline_orchestrator.core import checkpoints as checkpoints_mod
from pipeline_orchestrator.core import jobs as jobs_mod
from pipeline_orchestrator.core import plans as plans_mod
from pipeline_orchestrator.core import requirements as requirements_mod
from pipeline_orchestrator.core import sessions as sessions_mod
from pipeline_orchestrator.core import tasks as tasks_mod
from pipeline_orchestrator.core import worktrees as worktrees_mod
from pipeline_orchestrator.core.activity import ActivityChannel, ActivityEvent
from pipeline_orchestrator.core.agents import ClaudeCliInvoker
from pipeline_orchestrator.core.errors import JobsFailedError, OrchestratorError
from pipeline_orchestrator.core.scheduler import (
    ConcurrentScheduler,
    RequirementItem,
    RunSummary,
    SchedulerOptions,
)
from pipeline_orchestrator.db.engine import get_db
from pipeline_orchestrator.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _require_session(db, config: Config):
    session = sessions_mod.get_session_by_path(db, config.project_path)
    if not session:
        _fail(f"No session for {config.project_path.resolve()}. Run `po init` first.")
    return session


def _resolve_requirement(db, session_id: str, ref: str):
    """Find a requirement by full id or unique id prefix."""
    requirement = requirements_mod.get_requirement(db, ref)
    if requirement:
        return requirement
    matches = [r for r in requirements_mod.list_requirements(db, session_id) if r.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        _fail(f"Requirement not found: {ref}")
    _fail(f"Ambiguous requirement id {ref}: {', '.join(m.id[:12] for m in matches)}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """po - Pipeline Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Session Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.option("--name", default=None, help="Project name (defaults to the directory name)")
@click.option("--tech", multiple=True, help="Tech stack entry as KEY=VALUE, repeatable")
def init_session(name, tech):
    """Create a session for the project directory."""
    config = get_config()
    stack = {}
    for entry in tech:
        key, sep, value = entry.partition("=")
        if not sep:
            _fail(f"Invalid --tech entry (expected KEY=VALUE): {entry}")
        stack[key.strip()] = value.strip()

    with _get_db() as db:
        try:
            session = sessions_mod.create_session(db, config.project_path, name, stack or None)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Session created: {session.id}")
        click.echo(f"  Project: {session.project_name} ({session.project_path})")
        click.echo(f"  Tech stack: {', '.join(f'{k}={v}' for k, v in session.tech_stack.items())}")


@main.command("status")
def status():
    """Show session phase, requirement counts and running jobs."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        requirements = requirements_mod.list_requirements(db, session.id)
        counts: dict[str, int] = {}
        for r in requirements:
            counts[r.status] = counts.get(r.status, 0) + 1

        click.echo(f"Session: {session.project_name} ({session.id[:8]})")
        click.echo(f"  Status: {session.status} | Phase: {session.current_phase}")
        click.echo(
            "  Requirements: "
            + " | ".join(f"{s}: {counts.get(s, 0)}" for s in ("pending", "in_progress", "completed", "failed"))
        )

        running = jobs_mod.get_running_jobs(db, session.id)
        if running:
            click.echo("  Running jobs:")
            for job in running:
                click.echo(f"    {job.id[:8]} {job.requirement_id[:8]} phase={job.phase}")

        checkpoint = checkpoints_mod.get_latest_checkpoint(db, session.id)
        if checkpoint:
            click.echo(f"  Last checkpoint: {checkpoint.phase} at {checkpoint.created_at:%Y-%m-%d %H:%M:%S}")


# ── Requirement Commands ──────────────────────────────────────────────────────


@main.command("add")
@click.argument("raw_input")
@click.option("--priority", "-p", default=0, type=int, help="Higher runs first")
@click.option("--depends-on", default=None, help="Comma-separated requirement IDs this depends on")
def add_requirement(raw_input, priority, depends_on):
    """Add a requirement to the session."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        deps = []
        if depends_on:
            deps = [_resolve_requirement(db, session.id, d.strip()).id for d in depends_on.split(",")]
        requirement = requirements_mod.create_requirement(
            db, session.id, raw_input, priority=priority, depends_on=deps
        )
        click.echo(f"Created requirement: {requirement.id}")
        click.echo(f"  Priority: {requirement.priority}")
        if requirement.depends_on:
            click.echo(f"  Depends on: {', '.join(d[:8] for d in requirement.depends_on)}")


@main.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def list_requirements(status, json_output):
    """List requirements."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        requirements = requirements_mod.list_requirements(db, session.id, status=status)

        if json_output:
            click.echo(json.dumps([_requirement_dict(r) for r in requirements], indent=2))
            return

        if not requirements:
            click.echo("No requirements found.")
            return

        status_icons = {
            "pending": "○",
            "in_progress": "●",
            "completed": "✓",
            "failed": "✗",
        }
        for r in requirements:
            icon = status_icons.get(r.status, "?")
            title = r.structured_spec.title if r.structured_spec else r.raw_input[:50]
            deps = f" [depends: {', '.join(d[:8] for d in r.depends_on)}]" if r.depends_on else ""
            click.echo(f"  {icon} {r.id[:8]} {title} ({r.status}){deps}")


@main.command("show")
@click.argument("requirement_id")
def show_requirement(requirement_id):
    """Show requirement details, tasks and history."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        r = _resolve_requirement(db, session.id, requirement_id)

        click.echo(f"Requirement: {r.id}")
        click.echo(f"  Status: {r.status}")
        click.echo(f"  Priority: {r.priority}")
        click.echo(f"  Input: {r.raw_input}")
        if r.depends_on:
            click.echo(f"  Depends on: {', '.join(r.depends_on)}")
        if r.structured_spec:
            spec = r.structured_spec
            click.echo(f"  Title: {spec.title} [{spec.priority}]")
            if spec.description:
                click.echo(f"  Description: {spec.description}")
            for criterion in spec.acceptance_criteria:
                click.echo(f"    - {criterion}")

        tasks = tasks_mod.list_tasks_for_requirement(db, r.id)
        if tasks:
            click.echo("  Tasks:")
            for t in tasks:
                retry = f" retries={t.retry_count}" if t.retry_count else ""
                error = f" error={t.error_message}" if t.error_message else ""
                click.echo(f"    {t.agent_type:<9} {t.status}{retry}{error}")

        jobs = jobs_mod.get_jobs_for_requirement(db, r.id)
        if jobs:
            click.echo("  Jobs:")
            for j in jobs:
                click.echo(f"    {j.id[:8]} {j.status} phase={j.phase}")

        events = requirements_mod.get_requirement_events(db, r.id)
        if events:
            click.echo("  History:")
            for e in events:
                change = f"{e.old_value or ''} -> {e.new_value or ''}"
                click.echo(f"    {e.created_at:%Y-%m-%d %H:%M:%S} {e.event_type}: {change}")


# ── Run Commands ──────────────────────────────────────────────────────────────


@main.command("run")
@click.argument("requirement_ids", nargs=-1)
@click.option("--concurrency", "-c", default=None, type=int, help="Max jobs in parallel")
@click.option("--sequential", is_flag=True, help="Run one requirement at a time")
@click.option("--no-worktrees", is_flag=True, help="Run in the project directory without git worktrees")
def run(requirement_ids, concurrency, sequential, no_worktrees):
    """Run pending requirements (or the given ones) through the pipeline."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        if requirement_ids:
            requirements = [_resolve_requirement(db, session.id, ref) for ref in requirement_ids]
        else:
            requirements = requirements_mod.get_pending_requirements(db, session.id)

        if not requirements:
            click.echo("No pending requirements.")
            return

        max_concurrency = 1 if sequential else (concurrency or config.max_concurrency)
        _run_requirements(db, config, session, requirements, max_concurrency, not no_worktrees)


@main.command("resume")
@click.option("--concurrency", "-c", default=None, type=int, help="Max jobs in parallel")
def resume(concurrency):
    """Reactivate the session and run whatever is pending or was interrupted."""
    config = get_config()
    with _get_db() as db:
        session = sessions_mod.resume_session(db, config.project_path)
        if not session:
            _fail(f"No session for {config.project_path.resolve()}. Run `po init` first.")

        checkpoint = checkpoints_mod.get_latest_checkpoint(db, session.id)
        if checkpoint:
            click.echo(f"Resuming after {checkpoint.phase} checkpoint from {checkpoint.created_at:%Y-%m-%d %H:%M:%S}")

        closed = jobs_mod.close_interrupted_jobs(db, session.id)
        if closed:
            click.echo(f"Closed {len(closed)} interrupted job(s)")

        requirements = requirements_mod.get_resumable_requirements(db, session.id)
        if not requirements:
            click.echo("No pending requirements.")
            return
        _run_requirements(
            db, config, session, requirements, concurrency or config.max_concurrency, config.use_worktrees
        )


def _run_requirements(db, config: Config, session, requirements, max_concurrency: int, use_worktrees: bool):
    items = [RequirementItem(r.id, list(r.depends_on)) for r in requirements]
    click.echo(f"Starting {len(items)} requirement(s), max concurrency {max_concurrency}")

    try:
        summary = asyncio.run(_run_scheduler(db, config, session, items, max_concurrency, use_worktrees))
    except JobsFailedError as e:
        _echo_summary(e.summary)
        _fail(str(e))
    except OrchestratorError as e:
        _fail(str(e))

    _echo_summary(summary)


async def _run_scheduler(
    db, config: Config, session, items: list[RequirementItem], max_concurrency: int, use_worktrees: bool
) -> RunSummary:
    activity = ActivityChannel()
    invoker = ClaudeCliInvoker(
        config.agent_command,
        log_dir=config.log_dir,
        model=config.agent_model,
        max_turns=config.agent_max_turns,
    )
    manager = worktrees_mod.WorktreeManager(db, session.project_path, config.worktree_dir)
    scheduler = ConcurrentScheduler(
        db,
        session.id,
        invoker,
        manager,
        SchedulerOptions(
            max_concurrency=max_concurrency,
            use_worktrees=use_worktrees,
            loop_limits=config.loop_limits,
            retry=config.retry,
        ),
        activity,
    )

    notifier = None
    if config.slack_bot_token and config.slack_channel:
        notifier = SlackNotifier(config.slack_bot_token, config.slack_channel, session.project_name)
    observer = asyncio.create_task(_observe(activity, notifier))

    loop = asyncio.get_running_loop()
    cancellations: list[asyncio.Task] = []

    def _on_sigint():
        click.secho("\nCancelling running jobs...", fg="yellow", err=True)
        cancellations.append(asyncio.ensure_future(scheduler.cancel_all()))

    loop.add_signal_handler(signal.SIGINT, _on_sigint)
    try:
        return await scheduler.run_with_dependencies(items)
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        if cancellations:
            await asyncio.gather(*cancellations, return_exceptions=True)
        activity.close()
        await observer


async def _observe(activity: ActivityChannel, notifier: SlackNotifier | None):
    async for event in activity.events():
        _echo_event(event)
        if notifier is not None:
            await notifier.handle(event)


def _echo_event(event: ActivityEvent):
    rid = (event.requirement_id or "")[:8]
    if event.kind == "job_started":
        click.secho(f"  ▶ Started: {rid} - {event.message}", fg="blue")
    elif event.kind == "job_completed":
        click.secho(f"  ✓ {rid} completed", fg="green")
    elif event.kind == "job_failed":
        click.secho(f"  ✗ {rid} failed: {event.message}", fg="red")
    elif event.kind == "job_skipped":
        click.secho(f"  ⊘ {rid} skipped - {event.message}", fg="red")
    elif event.kind == "job_cancelled":
        click.secho(f"  ⊘ {rid} cancelled", fg="yellow")
    elif event.kind in ("agent_retry", "review_exhausted", "worktree_fallback"):
        click.secho(f"  ⚠ {rid} {event.message}", fg="yellow")
    elif event.kind == "phase_changed":
        logger.debug("%s %s", rid, event.message)


def _echo_summary(summary: RunSummary):
    click.echo("─" * 50)
    click.echo(
        f"Completed: {len(summary.completed)} | Failed: {len(summary.failed)} | "
        f"Skipped: {len(summary.skipped)} | Cancelled: {len(summary.cancelled)}"
    )


# ── Worktree Commands ─────────────────────────────────────────────────────────


@main.group("worktree")
def worktree_group():
    """Manage requirement worktrees."""
    pass


@worktree_group.command("list")
@click.option("--status", default=None, help="Filter by status (active, merged, abandoned)")
def worktree_list(status):
    """List worktrees created for this session."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        worktrees = worktrees_mod.list_worktrees(db, session.id, status=status)
        if not worktrees:
            click.echo("No worktrees found.")
            return
        for wt in worktrees:
            req = wt.requirement_id[:8] if wt.requirement_id else "-"
            click.echo(f"  {wt.id[:8]} {wt.status:<9} {wt.branch_name} (requirement {req})")
            click.echo(f"           {wt.worktree_path}")


@worktree_group.command("merge")
@click.argument("worktree_id")
@click.option("--target", default=None, help="Branch to merge into (defaults to the checked-out branch)")
def worktree_merge(worktree_id, target):
    """Merge a worktree's branch and remove the worktree."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        wt = _resolve_worktree(db, session.id, worktree_id)
        manager = worktrees_mod.WorktreeManager(db, session.project_path, config.worktree_dir)
        result = asyncio.run(manager.merge(wt.id, target))
        if not result.success:
            if result.conflict_files:
                click.echo("Conflicting files:", err=True)
                for path in result.conflict_files:
                    click.echo(f"  {path}", err=True)
            _fail(result.error or "Merge failed")
        click.echo(f"Merged {wt.branch_name}")


@worktree_group.command("clean")
@click.argument("worktree_ids", nargs=-1)
@click.option("--all", "clean_all", is_flag=True, help="Remove every active worktree")
def worktree_clean(worktree_ids, clean_all):
    """Remove worktrees from disk, marking unmerged ones abandoned."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        if clean_all:
            targets = worktrees_mod.get_active_worktrees(db, session.id)
        else:
            targets = [_resolve_worktree(db, session.id, ref) for ref in worktree_ids]
        if not targets:
            click.echo("Nothing to clean.")
            return

        manager = worktrees_mod.WorktreeManager(db, session.project_path, config.worktree_dir)

        async def _clean():
            for wt in targets:
                await manager.cleanup(wt.id)
                click.echo(f"Removed {wt.worktree_path}")

        asyncio.run(_clean())


def _resolve_worktree(db, session_id: str, ref: str):
    matches = [wt for wt in worktrees_mod.list_worktrees(db, session_id) if wt.id.startswith(ref)]
    if len(matches) != 1:
        _fail(f"Worktree not found: {ref}" if not matches else f"Ambiguous worktree id: {ref}")
    return matches[0]


# ── Plan Commands ─────────────────────────────────────────────────────────────


@main.group("plan")
def plan_group():
    """Store plans and turn them into requirements."""
    pass


@plan_group.command("import")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--approve", is_flag=True, help="Mark the plan approved on import")
def plan_import(plan_file, approve):
    """Import a plan from a JSON document."""
    config = get_config()
    try:
        document = json.loads(plan_file.read_text())
    except json.JSONDecodeError as e:
        _fail(f"Invalid plan JSON: {e}")

    with _get_db() as db:
        session = _require_session(db, config)
        plan = plans_mod.plan_from_document(db, session.id, document)
        if approve:
            plan = plans_mod.update_plan(db, plan.id, status="approved")
        click.echo(f"Imported plan: {plan.id}")
        click.echo(f"  Goal: {plan.high_level_goal}")
        click.echo(f"  Requirements: {len(plan.requirements)} | Status: {plan.status}")


@plan_group.command("show")
@click.argument("plan_id", required=False)
def plan_show(plan_id):
    """Show a plan (defaults to the active one)."""
    config = get_config()
    with _get_db() as db:
        session = _require_session(db, config)
        plan = plans_mod.get_plan(db, plan_id) if plan_id else plans_mod.get_active_plan(db, session.id)
        if not plan:
            _fail(f"Plan not found: {plan_id}" if plan_id else "No active plan.")

        click.echo(f"Plan: {plan.id}")
        click.echo(f"  Goal: {plan.high_level_goal}")
        click.echo(f"  Status: {plan.status}")
        if plan.overview:
            click.echo(f"  Overview: {plan.overview}")
        by_id = {r.get("id"): r for r in plan.requirements}
        click.echo("  Implementation order:")
        for i, planned_id in enumerate(plan.implementation_order, 1):
            item = by_id.get(planned_id, {})
            deps = item.get("dependencies") or []
            dep_text = f" (after {', '.join(deps)})" if deps else ""
            click.echo(f"    {i}. {planned_id}: {item.get('title', '?')}{dep_text}")


@plan_group.command("materialize")
@click.argument("plan_id")
def plan_materialize(plan_id):
    """Create requirements from an approved plan."""
    with _get_db() as db:
        try:
            created = plans_mod.materialize_plan(db, plan_id)
        except OrchestratorError as e:
            _fail(str(e))
        click.echo(f"Created {len(created)} requirement(s):")
        for rid in created:
            click.echo(f"  {rid}")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _requirement_dict(r) -> dict:
    return {
        "id": r.id,
        "status": r.status,
        "priority": r.priority,
        "raw_input": r.raw_input,
        "structured_spec": r.structured_spec.to_dict() if r.structured_spec else None,
        "depends_on": r.depends_on,
    }


if __name__ == "__main__":
    main()
