"""Async pub/sub EventBus for fanning notifications out to subscribers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from chat_pipeline.types import Notification

_logger = logging.getLogger(__name__)

# Handlers may be sync or async callables taking a Notification
Handler = Callable[[Notification], Any]


class EventBus:
    """Lightweight async pub/sub bus keyed by channel name.

    - ``subscribe()`` returns an unsubscribe handle.
    - Handlers can be sync or async; sync handlers are called inline.
    - ``publish()`` fans out to a channel's handlers concurrently; a
      failing handler is logged and never breaks the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* on *channel*; call the result to remove it."""
        self._handlers.setdefault(channel, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(channel, handler)

        return _unsubscribe

    def unsubscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._handlers.get(channel, [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    def count(self, channel: str) -> int:
        return len(self._handlers.get(channel, []))

    async def publish(self, channel: str, notification: Notification) -> None:
        handlers = list(self._handlers.get(channel, []))
        if not handlers:
            return
        await asyncio.gather(
            *(self._call_handler(h, notification) for h in handlers),
            return_exceptions=True,
        )

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _call_handler(handler: Handler, notification: Notification) -> None:
        try:
            result = handler(notification)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for %s",
                getattr(handler, "__name__", handler),
                notification.type.value,
            )
