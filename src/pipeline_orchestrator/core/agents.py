"""Agent invocation: prompt building, the claude CLI runner, and output parsing."""

import asyncio
import json
import logging
import re
import signal
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pipeline_orchestrator.db.models import Task

logger = logging.getLogger(__name__)


class AgentInvocationError(Exception):
    """Raised when an agent process cannot be started or exits non-zero."""


@dataclass
class AgentResult:
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    raw_output: str = ""


class AgentInvoker(Protocol):
    async def invoke(self, task: Task, *, cwd: str | Path) -> AgentResult: ...

    async def kill(self, task_id: str) -> bool: ...


@dataclass(frozen=True)
class AgentConfig:
    model: str
    tools: tuple[str, ...]


AGENT_CONFIGS = {
    "planner": AgentConfig("opus", ("Read", "Grep", "Glob")),
    "architect": AgentConfig("opus", ("Read", "Write", "Bash", "Grep", "Glob")),
    "coder": AgentConfig("sonnet", ("Read", "Write", "Edit", "Bash", "Grep", "Glob")),
    "reviewer": AgentConfig("sonnet", ("Read", "Grep", "Glob", "Bash")),
    "tester": AgentConfig("sonnet", ("Read", "Write", "Bash", "Grep", "Glob")),
}


# ── Prompts ─────────────────────────────────────────────────────────────────


def _tech_stack_lines(tech_stack: dict | None) -> list[str]:
    lines = ["\n## Tech Stack"]
    for key, value in (tech_stack or {}).items():
        lines.append(f"- {key.replace('_', ' ').capitalize()}: {value}")
    return lines


def build_agent_prompt(agent_type: str, input: dict[str, Any]) -> str:
    """Build the prompt for one agent task from its input payload."""
    parts: list[str] = []
    spec = input.get("structuredSpec")
    project_path = input.get("projectPath")

    if agent_type == "planner":
        parts.append(f"# Project: {input.get('projectName', '')}")
        parts += _tech_stack_lines(input.get("techStack"))
        parts.append(f"\n## User Requirement\n{input.get('rawRequirement', '')}")
        parts.append(
            "\n## Your Task\n"
            "Analyze this requirement and produce a structured specification with "
            "a title, description, userStories, acceptanceCriteria, technicalNotes, "
            "dependencies and priority (low, medium or high)."
        )
    elif agent_type == "architect":
        parts.append("# Architecture Design Task")
        parts.append(f"\n## Structured Specification\n{json.dumps(spec, indent=2)}")
        parts += _tech_stack_lines(input.get("techStack"))
        parts.append(
            "\n## Your Task\n"
            "Explore the existing codebase, then design the file structure, components, "
            "interfaces and data changes for this feature, with an ordered implementation plan."
        )
    elif agent_type == "coder" and input.get("mode") == "fix":
        parts.append("# Code Fix Task")
        parts.append(f"\n## Issues to Fix\n{json.dumps(input.get('issues'), indent=2)}")
        parts += _tech_stack_lines(input.get("techStack"))
        parts.append(
            "\n## Your Task\n"
            "Read the files mentioned in the issues and fix each one without breaking "
            "other functionality. Summarize the changes you made."
        )
    elif agent_type == "coder":
        parts.append("# Implementation Task")
        parts.append(f"\n## Structured Specification\n{json.dumps(spec, indent=2)}")
        parts += _tech_stack_lines(input.get("techStack"))
        parts.append(
            "\n## Your Task\n"
            "Implement the feature according to the specification, following existing "
            "code patterns. Summarize what was implemented."
        )
    elif agent_type == "reviewer":
        parts.append("# Code Review Task")
        parts += _tech_stack_lines(input.get("techStack"))
        parts.append(
            "\n## Your Task\n"
            "Review recently modified files for correctness, security, performance and "
            "error handling, and run the project's linters. Report `passed` (true/false), "
            "a list of `issues` with severity, file and suggestion, and `positives`. "
            "Only set passed=false for critical or multiple warning-level issues."
        )
    elif agent_type == "tester":
        criteria = (spec or {}).get("acceptanceCriteria", [])
        parts.append("# Testing Task")
        parts.append(f"\n## Acceptance Criteria to Test\n{json.dumps(criteria, indent=2)}")
        parts += _tech_stack_lines(input.get("techStack"))
        parts.append(
            "\n## Your Task\n"
            "Write and run tests covering each acceptance criterion. Report `testsRun`, "
            "`failedCriteria` and `allPassed`."
        )
    else:
        raise ValueError(f"Unknown agent type: {agent_type}")

    if project_path:
        parts.append(f"\n## Project Path\n{project_path}")

    parts.append("\nRespond with a single JSON object in a ```json fenced block.")
    return "\n".join(parts)


# ── Output parsing ──────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def extract_json(text: str) -> dict[str, Any]:
    """Pull a JSON object out of agent prose.

    Tries a ```json fence, then the outermost {...}, then the whole text.
    Falls back to {"rawOutput": text, "parsed": False}.
    """
    candidates = []
    if m := _FENCE_RE.search(text):
        candidates.append(m.group(1))
    if m := _OBJECT_RE.search(text):
        candidates.append(m.group(0))
    candidates.append(text)

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return {"rawOutput": text, "parsed": False}


def parse_cli_output(stdout: str) -> dict[str, Any]:
    """Parse `claude --output-format json` output into the agent's JSON reply."""
    try:
        envelope = json.loads(stdout)
    except json.JSONDecodeError:
        return extract_json(stdout)
    if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
        return extract_json(envelope["result"])
    if isinstance(envelope, dict):
        return envelope
    return {"rawOutput": stdout, "parsed": False}


# ── CLI invoker ─────────────────────────────────────────────────────────────


class ClaudeCliInvoker:
    """Runs each task as a `claude -p` subprocess in the task's working directory."""

    def __init__(
        self,
        command: str = "claude",
        log_dir: str | Path | None = None,
        model: str | None = None,
        max_turns: int | None = None,
        permission_mode: str | None = "acceptEdits",
    ):
        self.command = command
        self.log_dir = Path(log_dir) if log_dir else None
        self.model = model
        self.max_turns = max_turns
        self.permission_mode = permission_mode
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def build_command(self, task: Task) -> list[str]:
        config = AGENT_CONFIGS[task.agent_type]
        prompt = build_agent_prompt(task.agent_type, task.input)
        cmd = [self.command, "-p", prompt, "--output-format", "json"]
        cmd += ["--model", self.model or config.model]
        cmd += ["--allowedTools", ",".join(config.tools)]
        if self.max_turns:
            cmd += ["--max-turns", str(self.max_turns)]
        if self.permission_mode:
            cmd += ["--permission-mode", self.permission_mode]
        return cmd

    async def invoke(self, task: Task, *, cwd: str | Path) -> AgentResult:
        cmd = self.build_command(task)
        logger.info("Invoking %s agent for task %s in %s", task.agent_type, task.id, cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AgentInvocationError(f"Failed to start {self.command}: {e}") from e

        self._processes[task.id] = proc
        try:
            stdout_b, stderr_b = await proc.communicate()
        finally:
            self._processes.pop(task.id, None)

        stdout = stdout_b.decode(errors="replace")
        stderr = stderr_b.decode(errors="replace")
        self._write_transcript(task, stdout, stderr, proc.returncode)

        if proc.returncode != 0:
            raise AgentInvocationError(
                f"{task.agent_type} agent exited with code {proc.returncode}: {stderr.strip()[:500]}"
            )

        return AgentResult(success=True, output=parse_cli_output(stdout), raw_output=stdout)

    async def kill(self, task_id: str) -> bool:
        proc = self._processes.get(task_id)
        if proc is None or proc.returncode is not None:
            return False
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return False
        logger.info("Sent SIGTERM to agent for task %s (pid %s)", task_id, proc.pid)
        return True

    def _write_transcript(self, task: Task, stdout: str, stderr: str, returncode: int | None):
        if not self.log_dir:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        path = self.log_dir / f"agent-{task.id}-{timestamp}.json"
        path.write_text(
            json.dumps(
                {
                    "task_id": task.id,
                    "agent_type": task.agent_type,
                    "returncode": returncode,
                    "stdout": stdout,
                    "stderr": stderr,
                },
                indent=2,
            )
        )
