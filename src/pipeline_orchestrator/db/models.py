"""Data models for the pipeline orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

PHASES = ("init", "planning", "architecting", "coding", "reviewing", "testing", "completed", "failed")
SESSION_STATUSES = ("active", "paused", "completed", "failed")
REQUIREMENT_STATUSES = ("pending", "in_progress", "completed", "failed")
AGENT_TYPES = ("planner", "architect", "coder", "reviewer", "tester")
TASK_STATUSES = ("pending", "running", "completed", "failed")
JOB_STATUSES = ("queued", "running", "completed", "failed", "cancelled")
WORKTREE_STATUSES = ("active", "merged", "abandoned")
PLAN_STATUSES = ("drafting", "questioning", "pending_approval", "approved", "executing", "completed", "rejected")

DEFAULT_TECH_STACK = {
    "frontend": "vue",
    "backend": "python",
    "database": "sqlite",
    "testing": "pytest",
    "unit_testing": "pytest",
    "styling": "tailwind",
}


@dataclass
class Session:
    id: str
    project_path: str
    project_name: str
    tech_stack: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_TECH_STACK))
    current_phase: str = "init"
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class StructuredSpec:
    """Planner output normalized into a requirement specification."""

    title: str = "Untitled"
    description: str = ""
    user_stories: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    technical_notes: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    priority: str = "medium"

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "userStories": list(self.user_stories),
            "acceptanceCriteria": list(self.acceptance_criteria),
            "technicalNotes": list(self.technical_notes),
            "dependencies": list(self.dependencies),
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StructuredSpec":
        """Build a spec from a camelCase or snake_case dict, defaulting missing fields."""
        data = data or {}

        def _list(*keys: str) -> list[str]:
            for key in keys:
                value = data.get(key)
                if isinstance(value, list):
                    return [
                        str(v.get("description", v)) if isinstance(v, dict) else str(v)
                        for v in value
                    ]
            return []

        return cls(
            title=str(data.get("title") or "Untitled"),
            description=str(data.get("description") or ""),
            user_stories=_list("userStories", "user_stories"),
            acceptance_criteria=_list("acceptanceCriteria", "acceptance_criteria"),
            technical_notes=_list("technicalNotes", "technical_notes"),
            dependencies=_list("dependencies"),
            priority=str(data.get("priority") or "medium"),
        )

    @classmethod
    def from_agent_output(cls, output: dict[str, Any]) -> "StructuredSpec":
        """Planner replies either nest the spec under "requirement" or return it flat."""
        nested = output.get("requirement")
        if isinstance(nested, dict):
            return cls.from_dict(nested)
        return cls.from_dict(output)


@dataclass
class Requirement:
    id: str
    session_id: str
    raw_input: str
    structured_spec: StructuredSpec | None = None
    status: str = "pending"
    priority: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass
class RequirementEvent:
    id: int | None = None
    requirement_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Task:
    id: str
    session_id: str
    agent_type: str
    input: dict[str, Any] = field(default_factory=dict)
    requirement_id: str | None = None
    output: dict[str, Any] | None = None
    status: str = "pending"
    retry_count: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Checkpoint:
    id: str
    session_id: str
    phase: str
    state: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Worktree:
    id: str
    session_id: str
    branch_name: str
    worktree_path: str
    requirement_id: str | None = None
    status: str = "active"
    created_at: datetime | None = None
    merged_at: datetime | None = None


@dataclass
class Job:
    id: str
    session_id: str
    requirement_id: str
    worktree_id: str | None = None
    phase: str = "init"
    status: str = "queued"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None


@dataclass
class Plan:
    id: str
    session_id: str
    high_level_goal: str
    status: str = "drafting"
    questions: list[dict[str, Any]] = field(default_factory=list)
    requirements: list[dict[str, Any]] = field(default_factory=list)
    architectural_decisions: list[dict[str, Any]] = field(default_factory=list)
    implementation_order: list[str] = field(default_factory=list)
    overview: str | None = None
    assumptions: list[str] = field(default_factory=list)
    out_of_scope: list[str] = field(default_factory=list)
    risks: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    approved_at: datetime | None = None
