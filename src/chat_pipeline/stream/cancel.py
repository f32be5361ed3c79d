"""Explicit cancellation token checked at every suspension point."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

_logger = logging.getLogger(__name__)


class CancellationToken:
    """Idempotent, awaitable cancellation signal.

    The first ``cancel()`` wins; later calls are no-ops.  Callbacks
    registered with :meth:`on_cancel` run once, synchronously, when the
    token fires (or immediately if it already has).
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        _logger.debug("Cancellation requested: %s", reason)
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                _logger.exception("Cancellation callback %r raised", cb)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait up to *timeout* seconds; return ``True`` if cancelled."""
        if self._event.is_set():
            return True
        if timeout is not None and timeout <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
