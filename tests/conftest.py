"""Shared fixtures and fake agent invokers."""

import asyncio
import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from pipeline_orchestrator.core import sessions as sessions_mod
from pipeline_orchestrator.core.agents import AgentResult
from pipeline_orchestrator.db.engine import init_db

DEFAULT_OUTPUTS = {
    "planner": {"title": "Login", "acceptanceCriteria": ["user can log in"]},
    "architect": {"files": []},
    "coder": {"summary": "implemented"},
    "reviewer": {"passed": True},
    "tester": {"allPassed": True},
}

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


class ScriptedInvoker:
    """Fake invoker returning scripted results per agent type.

    Each script entry is an output dict, an AgentResult, or an exception to
    raise. Entries are consumed in order; the last one repeats.
    """

    def __init__(self, script: dict | None = None, delay: float = 0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls: list[tuple[str, dict, str]] = []
        self.killed: list[str] = []
        self.active = 0
        self.peak = 0

    async def invoke(self, task, *, cwd):
        self.calls.append((task.agent_type, task.input, str(cwd)))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        queue = self.script.get(task.agent_type)
        if queue:
            step = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            step = DEFAULT_OUTPUTS[task.agent_type]
        if callable(step) and not isinstance(step, type):
            step = step(task)
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, AgentResult):
            return step
        return AgentResult(success=True, output=dict(step))

    async def kill(self, task_id):
        self.killed.append(task_id)
        return True

    def agent_types(self) -> list[str]:
        return [c[0] for c in self.calls]


class BlockingInvoker(ScriptedInvoker):
    """Invoker whose calls for `block_type` never return until cancelled."""

    def __init__(self, block_type: str = "architect"):
        super().__init__()
        self.block_type = block_type
        self.started = asyncio.Event()

    async def invoke(self, task, *, cwd):
        if task.agent_type == self.block_type:
            self.calls.append((task.agent_type, task.input, str(cwd)))
            self.started.set()
            await asyncio.Event().wait()
        return await super().invoke(task, cwd=cwd)


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def tmp_project():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def db(tmp_project):
    conn = init_db(tmp_project / ".orchestrator" / "orchestrator.db")
    yield conn
    conn.close()


@pytest.fixture
def session(db, tmp_project):
    return sessions_mod.create_session(db, tmp_project, "demo")


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit on main."""
    with tempfile.TemporaryDirectory() as tmp:
        subprocess.run(["git", "init"], cwd=tmp, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=tmp, capture_output=True, check=True)
        readme = Path(tmp) / "README.md"
        readme.write_text("# Test")
        subprocess.run(["git", "add", "."], cwd=tmp, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=tmp,
            capture_output=True,
            check=True,
            env={**os.environ, **GIT_ENV},
        )
        yield Path(tmp)
