"""Per-read timeout around an async text iterator.

``httpx`` read timeouts abort the whole response; here a slow read is
only reported as :class:`ReadTimeout` and the same in-flight read is
awaited again on the next call, so no data is lost.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import AsyncIterator

from chat_pipeline.errors import ReadTimeout

_logger = logging.getLogger(__name__)


class ReadOutcome(enum.Enum):
    INTERRUPTED = "interrupted"
    EOF = "eof"


class ReadGuard:
    """Owns an async iterator and bounds each read by *timeout* seconds."""

    def __init__(self, source: AsyncIterator[str], timeout: float = 60) -> None:
        self._source = source
        self._timeout = timeout
        self._pending: asyncio.Task[str] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, interrupt: asyncio.Event | None = None) -> str | ReadOutcome:
        """Return the next chunk, ``ReadOutcome.EOF`` or ``INTERRUPTED``.

        Raises :class:`ReadTimeout` when nothing arrived within the
        timeout.  Transport errors from the source propagate.
        """
        if self._closed:
            return ReadOutcome.EOF
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._source.__anext__())

        waiters: set[asyncio.Future] = {self._pending}
        interrupt_task: asyncio.Task | None = None
        if interrupt is not None:
            if interrupt.is_set():
                return ReadOutcome.INTERRUPTED
            interrupt_task = asyncio.ensure_future(interrupt.wait())
            waiters.add(interrupt_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self._timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if interrupt_task is not None and not interrupt_task.done():
                interrupt_task.cancel()

        if self._pending in done:
            task, self._pending = self._pending, None
            try:
                return task.result()
            except StopAsyncIteration:
                return ReadOutcome.EOF
        if interrupt_task is not None and interrupt_task in done:
            return ReadOutcome.INTERRUPTED
        _logger.warning("Read operation timed out after %.1fs, retrying", self._timeout)
        raise ReadTimeout(f"no data within {self._timeout}s")

    async def cancel(self) -> None:
        """Abandon the in-flight read and close the source.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._pending is not None:
            self._pending.cancel()
            try:
                await self._pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            except Exception as e:
                _logger.debug("Pending read ended with %r during cancel", e)
            self._pending = None
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                _logger.warning("Error closing reader: %s", e)
