"""In-process activity events published by the scheduler and pipeline."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

EVENT_KINDS = (
    "job_started",
    "job_completed",
    "job_failed",
    "job_skipped",
    "job_cancelled",
    "phase_changed",
    "agent_retry",
    "review_exhausted",
    "worktree_fallback",
    "run_summary",
)


@dataclass
class ActivityEvent:
    kind: str
    requirement_id: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


_CLOSED = object()


class ActivityChannel:
    """Unbounded queue of ActivityEvents with a single consumer.

    Publishing never blocks. `close()` ends the `events()` iteration once
    everything published before it has been delivered.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def publish(self, kind: str, requirement_id: str | None = None, message: str = "", **data) -> None:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown activity event: {kind}")
        if self._closed:
            logger.debug("Dropping %s event on closed channel", kind)
            return
        self._queue.put_nowait(ActivityEvent(kind, requirement_id, message, data))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[ActivityEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def drain_nowait(self) -> list[ActivityEvent]:
        """Return every queued event without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                events.append(item)
        return events
