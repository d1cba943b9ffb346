"""Posts job results and run summaries to Slack through the Web API."""

import asyncio
import logging
from dataclasses import dataclass

from pipeline_orchestrator.core.activity import ActivityEvent

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when Slack is not configured or rejects a message."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """WebClient for `token`, or None when no token is configured."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Post `text` (with optional blocks) to `channel`. Blocking call."""
    from slack_sdk.errors import SlackApiError

    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack rejected message to {channel}: {e.response.get('error')}") from e
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def _section(text: str) -> list[dict]:
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def format_job_notification(requirement_id: str, status: str, detail: str = "") -> list[dict]:
    """Blocks announcing that one requirement's job finished."""
    emoji = {
        "completed": ":white_check_mark:",
        "failed": ":x:",
        "skipped": ":fast_forward:",
        "cancelled": ":no_entry_sign:",
    }.get(status, ":grey_question:")
    detail_line = f"\n{detail}" if detail else ""
    return _section(f"{emoji} *Requirement {status}*\n`{requirement_id[:8]}`{detail_line}")


def format_run_summary(project: str, summary: dict) -> list[dict]:
    """Blocks for a run_summary event's data."""
    completed = len(summary.get("completed", []))
    failed = len(summary.get("failed", {}))
    skipped = len(summary.get("skipped", []))
    cancelled = len(summary.get("cancelled", []))
    total = completed + failed + skipped + cancelled
    progress = completed / total * 100 if total > 0 else 0

    return _section(
        f":bar_chart: *Pipeline Run: {project}*\n"
        f":white_check_mark: Completed: {completed} | "
        f":x: Failed: {failed} | "
        f":fast_forward: Skipped: {skipped} | "
        f":no_entry_sign: Cancelled: {cancelled}\n"
        f"Progress: {progress:.0f}% ({completed}/{total})"
    )


class SlackNotifier:
    """Activity observer that posts job results and run summaries to a channel.

    Slack failures are logged and never interrupt a run.
    """

    def __init__(self, token: str, channel: str, project: str):
        self.token = token
        self.channel = channel
        self.project = project

    async def handle(self, event: ActivityEvent) -> SlackMessage | None:
        if event.kind == "job_completed":
            blocks = format_job_notification(event.requirement_id or "", "completed")
        elif event.kind == "job_failed":
            blocks = format_job_notification(event.requirement_id or "", "failed", event.message)
        elif event.kind == "run_summary":
            blocks = format_run_summary(self.project, event.data)
        else:
            return None

        text = f"[{self.project}] {event.kind.replace('_', ' ')}: {event.message}"
        try:
            return await asyncio.to_thread(send_message, self.token, self.channel, text, blocks)
        except Exception as e:
            logger.warning("Slack notification failed: %s", e)
            return None
