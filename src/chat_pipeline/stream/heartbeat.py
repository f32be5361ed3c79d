"""Stall detection for a streaming response.

The monitor runs on its own task and never yields events itself: it
posts at most one synthetic event into a pending slot and sets an
attention flag.  The read loop picks the event up at the top of its next
iteration.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from chat_pipeline.errors import StallTimeout
from chat_pipeline.types import ConnectionActivity, StreamEvent

_logger = logging.getLogger(__name__)

PLACEHOLDER_PROGRESS = "Processing your request..."

# Returns (content, reasoning) streamed so far
SnapshotFn = Callable[[], tuple[str, str]]


class HeartbeatMonitor:
    """Watch *activity* and post progress / timeout events."""

    def __init__(
        self,
        activity: ConnectionActivity,
        snapshot: SnapshotFn,
        *,
        check_interval: float = 30,
        progress_min_gap: float = 15,
        attention: asyncio.Event | None = None,
    ) -> None:
        self.activity = activity
        self._snapshot = snapshot
        self._check_interval = check_interval
        self._progress_min_gap = progress_min_gap
        self.attention = attention or asyncio.Event()
        self._pending: StreamEvent | None = None
        self._last_progress_at: float | None = None
        self._timed_out = False
        self._task: asyncio.Task[None] | None = None

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        """Stop ticking.  Safe to call more than once."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while not self._timed_out:
            await asyncio.sleep(self._check_interval)
            self.tick()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def tick(self, now: float | None = None) -> None:
        """Run one liveness check."""
        if self._timed_out:
            return
        now = time.monotonic() if now is None else now
        inactive = self.activity.inactive_for(now)
        _logger.debug("Heartbeat check: %.1fs since last activity", inactive)
        content, reasoning = self._snapshot()

        if inactive > self.activity.max_inactive:
            self._timed_out = True
            self._post(StreamEvent.failure(
                f"Error: connection timed out, no response from server "
                f"within {self.activity.max_inactive:g}s. "
                f"Content received so far: {content or 'none'}",
                reasoning=reasoning,
                timeout=True,
                error=str(StallTimeout(f"no activity for {inactive:.0f}s")),
            ))
            return

        if inactive > self.activity.heartbeat_interval and (
            self._last_progress_at is None
            or now - self._last_progress_at > self._progress_min_gap
        ):
            self._last_progress_at = now
            self._post(StreamEvent.progress(
                content or PLACEHOLDER_PROGRESS,
                reasoning=reasoning,
                inactive_time=inactive,
            ))

    def take_pending(self) -> StreamEvent | None:
        """Pop the pending synthetic event, if any."""
        event, self._pending = self._pending, None
        return event

    def _post(self, event: StreamEvent) -> None:
        # A timeout always replaces an unread progress notice
        if self._pending is not None and self._pending.timeout:
            return
        self._pending = event
        self.attention.set()
