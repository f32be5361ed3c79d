"""Long-lived notification channel over typed server-sent events.

An :class:`EventStreamSession` is opened on demand: callers register a
*reason* (chatting, training, switching versions, ...) and the session
stays connected while any reason remains.  Once the last reason is
removed it closes itself after ``idle_disconnect`` seconds without
traffic; every received frame re-arms that timer.

Usage::

    session = EventStreamSession(config)
    unsubscribe = session.subscribe(on_notification)
    session.connect_for_reason(REASON_CHAT)
    ...
    unsubscribe()
    await session.aclose()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable
from urllib.parse import unquote

import httpx

from chat_pipeline.config import PipelineConfig
from chat_pipeline.errors import HttpError
from chat_pipeline.events.bus import EventBus, Handler
from chat_pipeline.sse.decoder import FrameDecoder
from chat_pipeline.sse.parser import parse_frame
from chat_pipeline.types import (
    Notification,
    NotificationType,
    ServerEvent,
    ServerEventType,
)

_logger = logging.getLogger(__name__)

CHAT_CHANNEL = "chat"
TRAINING_CHANNEL = "training"

REASON_CHAT = "chat"
REASON_TRAINING = "training"
REASON_VERSION_SWITCH = "version_switch"
REASON_SAMPLES = "samples"


def decode_escaped(text: Any) -> str:
    """Undo ``\\uXXXX`` and percent escaping in server messages.

    Returns the raw text if it does not decode.
    """
    if not text:
        return ""
    raw = str(text)
    try:
        return unquote(json.loads(f'"{raw}"'))
    except json.JSONDecodeError:
        _logger.debug("Could not decode message %r", raw)
        return raw


class EventStreamSession:
    """Owned connection to the server's notification stream."""

    def __init__(
        self,
        config: PipelineConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                None, connect=config.stream.connect_timeout,
            ),
            transport=transport,
        )
        self._task: asyncio.Task[None] | None = None
        self._reasons: set[str] = set()
        self._idle_handle: asyncio.TimerHandle | None = None
        self._reconnect_attempts = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def reasons(self) -> set[str]:
        return set(self._reasons)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def open(self) -> None:
        """Start reading the stream.  No-op while already open."""
        if self.is_open:
            return
        _logger.info("Connecting to event stream: %s", self.config.events_url)
        self._task = asyncio.ensure_future(self._run())

    async def close(self) -> None:
        """Disconnect and forget subscribers and reasons.  Idempotent."""
        self._cancel_idle_timer()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.bus.clear()
        self._reasons.clear()
        self._reconnect_attempts = 0

    async def aclose(self) -> None:
        """Close the session and its HTTP client."""
        await self.close()
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Receive chat and version notifications.

        Removing the last such subscriber closes the session.
        """
        remove = self.bus.subscribe(CHAT_CHANNEL, handler)

        def _unsubscribe() -> None:
            remove()
            if self.bus.count(CHAT_CHANNEL) == 0:
                asyncio.ensure_future(self.close())

        return _unsubscribe

    def subscribe_training(self, handler: Handler) -> Callable[[], None]:
        """Receive training / optimization notifications."""
        return self.bus.subscribe(TRAINING_CHANNEL, handler)

    # ------------------------------------------------------------------
    # Reason-counted connection
    # ------------------------------------------------------------------

    def connect_for_reason(self, reason: str) -> None:
        _logger.info("Event stream requested for: %s", reason)
        self._reasons.add(reason)
        self.open()
        self._reset_idle_timer()

    def remove_reason(self, reason: str) -> None:
        self._reasons.discard(reason)
        _logger.info(
            "Removed event stream reason %s, remaining: %s",
            reason, sorted(self._reasons),
        )
        if not self._reasons:
            self._schedule_idle_close()

    def _reset_idle_timer(self) -> None:
        self._cancel_idle_timer()
        self._schedule_idle_close()

    def _schedule_idle_close(self) -> None:
        self._cancel_idle_timer()
        if self._reasons:
            return
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(
            self.config.session.idle_disconnect, self._on_idle,
        )

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        _logger.info("Event stream idle, disconnecting")
        asyncio.ensure_future(self.close())

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        spec = self.config.session
        while True:
            try:
                await self._consume()
                failure = "stream closed by server"
            except HttpError as e:
                failure = str(e)
            except httpx.HTTPError as e:
                failure = str(e) or type(e).__name__

            if self._reconnect_attempts >= spec.max_reconnect_attempts:
                _logger.warning(
                    "Max event stream reconnection attempts reached (%s)", failure,
                )
                lost = {"error": failure, "attempts": self._reconnect_attempts}
                await self.bus.publish(
                    CHAT_CHANNEL, Notification(NotificationType.CONNECTION_LOST, lost),
                )
                await self.bus.publish(
                    TRAINING_CHANNEL,
                    Notification(NotificationType.CONNECTION_LOST, lost),
                )
                return

            self._reconnect_attempts += 1
            delay = spec.reconnect_delay * self._reconnect_attempts
            _logger.warning(
                "Event stream error (%s), reconnecting in %.1fs (attempt %d/%d)",
                failure, delay, self._reconnect_attempts, spec.max_reconnect_attempts,
            )
            await asyncio.sleep(delay)

    async def _consume(self) -> None:
        async with self._client.stream(
            "GET",
            self.config.events_url,
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
        ) as resp:
            if not resp.is_success:
                raise HttpError(resp.status_code, resp.reason_phrase)
            _logger.info("Event stream connected")
            self._reconnect_attempts = 0

            decoder = FrameDecoder()
            async for chunk in resp.aiter_text():
                for frame in decoder.feed(chunk):
                    await self._dispatch_frame(frame)
            for frame in decoder.flush():
                await self._dispatch_frame(frame)

    async def _dispatch_frame(self, frame: str) -> None:
        event = parse_frame(frame)
        if event is None:
            return
        self._reset_idle_timer()
        await self.dispatch(event)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, event: ServerEvent) -> None:
        """Route one server event to subscribers."""
        data = event.data
        kind = event.type

        if kind is ServerEventType.CONNECTED:
            self._reconnect_attempts = 0
            _logger.info("Event stream confirmed: %s", data.get("message", ""))
        elif kind is ServerEventType.HEARTBEAT:
            _logger.debug("Event stream heartbeat: %s", data.get("timestamp"))
        elif kind is ServerEventType.VERSION_UPDATE:
            await self._on_version_update(data)
        elif kind is ServerEventType.TRAINING_STATUS:
            await self._on_training_status(data)
        elif kind is ServerEventType.OPTIMIZATION_STATUS:
            await self._on_optimization_status(data)
        elif kind is ServerEventType.OPTIMIZATION_FAILED:
            await self._on_optimization_status({**data, "status": "failed"})
        elif kind is ServerEventType.OPTIMIZATION_CREATED:
            _logger.info("Optimization task created: %s", data.get("task_id", data))
        elif kind is ServerEventType.CHAT_STREAM:
            await self.bus.publish(CHAT_CHANNEL, Notification(
                NotificationType.CHAT_STREAM,
                {
                    "reasoning": data.get("reasoning") or "",
                    "answer": data.get("answer") or "",
                    "step_type": data.get("step_type") or "unknown",
                    "tool_calls": data.get("tool_calls") or [],
                },
            ))
        elif kind is ServerEventType.COMPLETION:
            await self.bus.publish(
                CHAT_CHANNEL, Notification(NotificationType.CHAT_COMPLETION, data),
            )
            self.remove_reason(REASON_CHAT)
        elif kind is ServerEventType.ERROR:
            _logger.warning("Event stream reported an error: %s", data)
        else:
            _logger.debug("Unhandled %s message on event stream", kind.value)

    async def _on_version_update(self, data: dict[str, Any]) -> None:
        decoded = {
            **data,
            "description": decode_escaped(data.get("description")),
            "message": decode_escaped(data.get("message")),
        }
        _logger.info(
            "Version update: %s -> %s",
            data.get("old_version"), data.get("new_version"),
        )
        await self.bus.publish(
            CHAT_CHANNEL, Notification(NotificationType.VERSION_UPDATE, decoded),
        )
        if data.get("training_ids"):
            await self._notify_training_completed(decoded)

    async def _on_training_status(self, data: dict[str, Any]) -> None:
        status = data.get("status")
        message = decode_escaped(data.get("message"))
        _logger.info("Training status update: %s %s", status, message)
        await self.bus.publish(TRAINING_CHANNEL, Notification(
            NotificationType.TRAINING_STATUS,
            {"status": status, "message": message},
        ))
        if status == "failed":
            await self._notify_training_completed({"error": message or "unknown error"})

    async def _on_optimization_status(self, data: dict[str, Any]) -> None:
        status = data.get("status")
        message = decode_escaped(data.get("message"))
        _logger.info(
            "Optimization status update: task=%s status=%s progress=%s",
            data.get("task_id"), status, data.get("progress"),
        )
        await self.bus.publish(TRAINING_CHANNEL, Notification(
            NotificationType.OPTIMIZATION_STATUS,
            {
                "task_id": data.get("task_id"),
                "status": status,
                "progress": data.get("progress"),
                "message": message,
            },
        ))
        if status == "failed":
            await self._notify_training_completed({"error": message or "unknown error"})

    async def _notify_training_completed(self, data: dict[str, Any]) -> None:
        await self.bus.publish(
            TRAINING_CHANNEL, Notification(NotificationType.TRAINING_COMPLETED, data),
        )
        self.remove_reason(REASON_TRAINING)
