"""Tests for the CLI."""

import json
import os
import stat
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from pipeline_orchestrator.cli import main
from pipeline_orchestrator.core import jobs as jobs_mod
from pipeline_orchestrator.core import requirements as requirements_mod
from pipeline_orchestrator.db.engine import init_db

PASSING_AGENT = (
    "printf '%s' '{\"type\":\"result\",\"result\":"
    "\"{\\\"title\\\": \\\"Greeting\\\", \\\"passed\\\": true, \\\"allPassed\\\": true}\"}'"
)


@pytest.fixture
def cli_env(monkeypatch):
    """Set up a temp project and database for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        project = Path(tmp) / "shop"
        project.mkdir()
        monkeypatch.setenv("PO_PROJECT_PATH", str(project))
        monkeypatch.setenv("PO_DB_PATH", str(Path(tmp) / "test.db"))
        monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)
        monkeypatch.delenv("PO_SLACK_CHANNEL", raising=False)
        yield CliRunner(), project


def use_agent(monkeypatch, project: Path, body: str):
    script = project.parent / "fake-claude"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    monkeypatch.setenv("PO_AGENT_COMMAND", str(script))


def requirement_ids(runner) -> list[str]:
    result = runner.invoke(main, ["list", "--json"])
    assert result.exit_code == 0
    return [r["id"] for r in json.loads(result.output)]


class TestSessionCommands:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Pipeline Orchestrator" in result.output

    def test_init(self, cli_env):
        runner, project = cli_env
        result = runner.invoke(main, ["init", "--tech", "backend=go", "--tech", "database=sqlite"])
        assert result.exit_code == 0
        assert "Session created" in result.output
        assert f"shop ({project.resolve()})" in result.output
        assert "backend=go" in result.output
        assert "database=sqlite" in result.output

    def test_init_twice_fails(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_bad_tech_entry(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["init", "--tech", "backend"])
        assert result.exit_code == 1
        assert "KEY=VALUE" in result.output

    def test_commands_need_session(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 1
        assert "po init" in result.output

    def test_status(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init", "--name", "storefront"])
        runner.invoke(main, ["add", "Add a cart"])
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "Session: storefront" in result.output
        assert "Phase: init" in result.output
        assert "pending: 1" in result.output


class TestRequirementCommands:
    def test_add_list_show(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])

        result = runner.invoke(main, ["add", "Add a login page", "--priority", "5"])
        assert result.exit_code == 0
        assert "Priority: 5" in result.output

        [rid] = requirement_ids(runner)
        result = runner.invoke(main, ["add", "Add logout", "--depends-on", rid[:8]])
        assert result.exit_code == 0
        assert f"Depends on: {rid[:8]}" in result.output

        result = runner.invoke(main, ["list"])
        assert result.exit_code == 0
        assert "Add a login page (pending)" in result.output
        assert f"[depends: {rid[:8]}]" in result.output

        result = runner.invoke(main, ["show", rid[:8]])
        assert result.exit_code == 0
        assert f"Requirement: {rid}" in result.output
        assert "Input: Add a login page" in result.output
        assert "created" in result.output

    def test_list_filters_by_status(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        runner.invoke(main, ["add", "Something"])
        result = runner.invoke(main, ["list", "--status", "completed"])
        assert "No requirements found." in result.output

    def test_unknown_dependency(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["add", "Orphan", "--depends-on", "deadbeef"])
        assert result.exit_code == 1
        assert "Requirement not found: deadbeef" in result.output

    def test_show_unknown(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["show", "nope"])
        assert result.exit_code == 1


class TestRunCommands:
    def test_run_with_nothing_pending(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["run"])
        assert result.exit_code == 0
        assert "No pending requirements." in result.output

    def test_run_completes_requirement(self, cli_env, monkeypatch):
        runner, project = cli_env
        use_agent(monkeypatch, project, PASSING_AGENT)
        runner.invoke(main, ["init"])
        runner.invoke(main, ["add", "Say hello"])

        result = runner.invoke(main, ["run", "--no-worktrees"])

        assert result.exit_code == 0, result.output
        assert "Completed: 1 | Failed: 0" in result.output
        result = runner.invoke(main, ["list"])
        assert "Greeting (completed)" in result.output
        assert len(list((project / ".orchestrator" / "logs").glob("agent-*.json"))) == 5

    def test_run_reports_failure(self, cli_env, monkeypatch):
        runner, project = cli_env
        use_agent(monkeypatch, project, "echo 'agent crashed' >&2\nexit 2")
        monkeypatch.setenv("PO_RETRY_MAX", "1")
        runner.invoke(main, ["init"])
        runner.invoke(main, ["add", "Doomed"])

        result = runner.invoke(main, ["run", "--sequential"])

        assert result.exit_code == 1
        assert "Completed: 0 | Failed: 1" in result.output
        assert "1 failed of 1 jobs" in result.output
        [rid] = requirement_ids(runner)
        result = runner.invoke(main, ["show", rid])
        assert "Status: failed" in result.output
        assert "agent crashed" in result.output

    def test_resume_without_session(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["resume"])
        assert result.exit_code == 1

    def test_resume_picks_up_interrupted_requirement(self, cli_env, monkeypatch):
        runner, project = cli_env
        use_agent(monkeypatch, project, PASSING_AGENT)
        monkeypatch.setenv("PO_USE_WORKTREES", "0")
        runner.invoke(main, ["init"])
        runner.invoke(main, ["add", "Say hello"])
        [rid] = requirement_ids(runner)
        db_path = Path(os.environ["PO_DB_PATH"])

        db = init_db(db_path)
        try:
            session_id = requirements_mod.get_requirement(db, rid).session_id
            requirements_mod.update_requirement_status(db, rid, "in_progress")
            stale = jobs_mod.create_job(db, session_id, rid)
            jobs_mod.update_job(db, stale.id, status="running")
        finally:
            db.close()

        result = runner.invoke(main, ["resume"])

        assert result.exit_code == 0, result.output
        assert "Closed 1 interrupted job(s)" in result.output
        assert "Completed: 1 | Failed: 0" in result.output
        db = init_db(db_path)
        try:
            stale = jobs_mod.get_job(db, stale.id)
            assert stale.status == "failed"
            assert "Interrupted" in stale.error_message
            assert jobs_mod.count_running_jobs(db, session_id) == 0
            assert requirements_mod.get_requirement(db, rid).status == "completed"
        finally:
            db.close()


class TestWorktreeCommands:
    def test_list_empty(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["worktree", "list"])
        assert result.exit_code == 0
        assert "No worktrees found." in result.output

    def test_clean_nothing(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["worktree", "clean", "--all"])
        assert "Nothing to clean." in result.output

    def test_merge_unknown(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["worktree", "merge", "abc"])
        assert result.exit_code == 1
        assert "Worktree not found: abc" in result.output


class TestPlanCommands:
    PLAN = {
        "highLevelGoal": "Checkout flow",
        "requirements": [
            {"id": "R1", "title": "Cart", "description": "Cart model", "estimatedComplexity": "high"},
            {"id": "R2", "title": "Pay", "description": "Payment step", "dependencies": ["R1"]},
        ],
        "implementationOrder": ["R1", "R2"],
    }

    def write_plan(self, project: Path) -> Path:
        path = project.parent / "plan.json"
        path.write_text(json.dumps(self.PLAN))
        return path

    def test_import_show_materialize(self, cli_env):
        runner, project = cli_env
        runner.invoke(main, ["init"])

        result = runner.invoke(main, ["plan", "import", str(self.write_plan(project)), "--approve"])
        assert result.exit_code == 0
        assert "Goal: Checkout flow" in result.output
        assert "Status: approved" in result.output
        plan_id = result.output.split("Imported plan: ")[1].split()[0]

        result = runner.invoke(main, ["plan", "show"])
        assert result.exit_code == 0
        assert "1. R1: Cart" in result.output
        assert "2. R2: Pay (after R1)" in result.output

        result = runner.invoke(main, ["plan", "materialize", plan_id])
        assert result.exit_code == 0
        assert "Created 2 requirement(s)" in result.output

        listed = json.loads(runner.invoke(main, ["list", "--json"]).output)
        by_title = {r["structured_spec"]["title"]: r for r in listed}
        assert by_title["Pay"]["depends_on"] == [by_title["Cart"]["id"]]
        assert by_title["Cart"]["structured_spec"]["priority"] == "high"

    def test_materialize_requires_approval(self, cli_env):
        runner, project = cli_env
        runner.invoke(main, ["init"])
        result = runner.invoke(main, ["plan", "import", str(self.write_plan(project))])
        plan_id = result.output.split("Imported plan: ")[1].split()[0]

        result = runner.invoke(main, ["plan", "materialize", plan_id])
        assert result.exit_code == 1
        assert "drafting -> executing" in result.output

    def test_import_invalid_json(self, cli_env):
        runner, project = cli_env
        runner.invoke(main, ["init"])
        bad = project.parent / "bad.json"
        bad.write_text("{not json")
        result = runner.invoke(main, ["plan", "import", str(bad)])
        assert result.exit_code == 1
        assert "Invalid plan JSON" in result.output
