"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

STATE_DIR = ".orchestrator"


@dataclass(frozen=True)
class LoopLimits:
    """Revision-loop ceilings for one requirement run."""

    review_to_coder: int = 3
    test_to_coder: int = 5
    total_agent_calls_per_requirement: int = 10


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff applied to a single agent task."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return min(
            self.initial_delay * self.backoff_multiplier ** (attempt - 1),
            self.max_delay,
        )


@dataclass
class Config:
    project_path: Path = field(default_factory=lambda: Path.cwd())
    db_path_override: Path | None = None
    worktree_dir: str = f"{STATE_DIR}/worktrees"
    max_concurrency: int = 3
    use_worktrees: bool = True
    agent_command: str = "claude"
    agent_model: str | None = None
    agent_max_turns: int | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    loop_limits: LoopLimits = field(default_factory=LoopLimits)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def state_dir(self) -> Path:
        return self.project_path / STATE_DIR

    @property
    def db_path(self) -> Path:
        if self.db_path_override is not None:
            return self.db_path_override
        return self.state_dir / "orchestrator.db"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if project := os.environ.get("PO_PROJECT_PATH"):
            config.project_path = Path(project)

        if db := os.environ.get("PO_DB_PATH"):
            config.db_path_override = Path(db)

        if wt_dir := os.environ.get("PO_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if concurrency := os.environ.get("PO_MAX_CONCURRENCY"):
            config.max_concurrency = max(1, int(concurrency))

        if use_wt := os.environ.get("PO_USE_WORKTREES"):
            config.use_worktrees = use_wt.lower() not in ("0", "false", "no", "off")

        if command := os.environ.get("PO_AGENT_COMMAND"):
            config.agent_command = command

        if model := os.environ.get("PO_AGENT_MODEL"):
            config.agent_model = model

        if max_turns := os.environ.get("PO_AGENT_MAX_TURNS"):
            config.agent_max_turns = int(max_turns)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("PO_SLACK_CHANNEL")

        defaults = LoopLimits()
        config.loop_limits = LoopLimits(
            review_to_coder=int(os.environ.get("PO_REVIEW_LOOP_LIMIT", defaults.review_to_coder)),
            test_to_coder=int(os.environ.get("PO_TEST_LOOP_LIMIT", defaults.test_to_coder)),
            total_agent_calls_per_requirement=int(
                os.environ.get("PO_AGENT_CALL_LIMIT", defaults.total_agent_calls_per_requirement)
            ),
        )

        retry_defaults = RetryConfig()
        config.retry = RetryConfig(
            max_retries=int(os.environ.get("PO_RETRY_MAX", retry_defaults.max_retries)),
            initial_delay=float(os.environ.get("PO_RETRY_INITIAL_DELAY", retry_defaults.initial_delay)),
            max_delay=float(os.environ.get("PO_RETRY_MAX_DELAY", retry_defaults.max_delay)),
            backoff_multiplier=float(os.environ.get("PO_RETRY_BACKOFF", retry_defaults.backoff_multiplier)),
        )

        return config


def get_config() -> Config:
    return Config.from_env()
