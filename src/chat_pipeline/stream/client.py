"""Streaming chat client with retry, stall detection and record rebuild.

``ChatStreamClient.send_message()`` is an async generator of
:class:`StreamEvent`.  It always ends with exactly one terminal event,
``complete`` or ``error``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator

import httpx

from chat_pipeline.config import PipelineConfig
from chat_pipeline.errors import (
    HttpError,
    NetworkError,
    ReadTimeout,
    ServerRetryable,
    StreamError,
)
from chat_pipeline.record.reconstructor import reconstruct
from chat_pipeline.sse.decoder import FrameDecoder
from chat_pipeline.sse.parser import parse_frame
from chat_pipeline.types import (
    ConnectionActivity,
    RetryState,
    ServerEvent,
    ServerEventType,
    StreamEvent,
)

from .cancel import CancellationToken
from .heartbeat import HeartbeatMonitor
from .read_guard import ReadGuard, ReadOutcome

_logger = logging.getLogger(__name__)

_STREAM_KEYS = ("answer", "reasoning")


@dataclass
class _StreamState:
    """What one attempt has seen so far."""

    answer: str = ""
    reasoning: str = ""
    snapshot: Any = None
    content_yielded: bool = False
    finished: bool = False
    terminal: bool = False


class ChatStreamClient:
    """Client for the streaming chat endpoint."""

    def __init__(
        self,
        config: PipelineConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        spec = config.stream
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={"Content-Type": "application/json"},
            # The per-read guard fires long before the socket read timeout
            timeout=httpx.Timeout(
                spec.request_timeout, connect=spec.connect_timeout,
            ),
            transport=transport,
        )

    async def __aenter__(self) -> ChatStreamClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Outer request lifecycle
    # ------------------------------------------------------------------

    async def send_message(
        self,
        prompt: str,
        version: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Send *prompt* and yield stream events until a terminal one."""
        spec = self.config.stream
        version = version or self.config.version
        token = cancel or CancellationToken()
        retry = RetryState(max_attempts=spec.max_attempts, base_delay=spec.backoff_base)
        payload = {"prompt": prompt, "stream": 1, "version": version}
        started = time.monotonic()

        while True:
            if token.cancelled:
                yield StreamEvent.failure(f"Request cancelled: {token.reason}")
                return

            state = _StreamState()
            try:
                resp = await self._open(payload, token)
                if resp is None:
                    yield StreamEvent.failure(f"Request cancelled: {token.reason}")
                    return
                try:
                    await self._check_status(resp, retry)
                    events = self._read_loop(
                        resp, state, token,
                        question=prompt, version=version, started=started,
                    )
                    async with aclosing(events):
                        async for event in events:
                            yield event
                finally:
                    await resp.aclose()
                return
            except (HttpError, ServerRetryable, NetworkError) as e:
                failure: StreamError = e
            except httpx.HTTPError as e:
                failure = NetworkError(str(e) or type(e).__name__)

            if state.content_yielded:
                _logger.warning("Stream interrupted after partial content: %s", failure)
                yield StreamEvent.failure(
                    f"Error while streaming, partial content received: {state.answer}",
                    reasoning=state.reasoning,
                    error=str(failure),
                )
                return

            if retry.exhausted:
                _logger.warning(
                    "Chat request failed after %d retries: %s", retry.attempt, failure,
                )
                yield StreamEvent.failure(
                    f"Error: {failure}",
                    error=str(failure),
                    attempts=retry.attempt,
                    status=failure.status if isinstance(failure, HttpError) else None,
                )
                return

            delay = retry.advance()
            _logger.warning(
                "Chat request failed (%s), retry %d/%d in %.1fs",
                failure, retry.attempt, retry.max_attempts, delay,
            )
            if isinstance(failure, ServerRetryable):
                notice = "Server ran into a problem handling the request"
            else:
                notice = "Request failed"
            yield StreamEvent.progress(
                f"{notice}, retrying ({retry.attempt}/{retry.max_attempts})...",
                retrying=True,
                error=str(failure),
            )
            if await token.wait(delay):
                yield StreamEvent.failure(f"Request cancelled: {token.reason}")
                return

    async def _open(
        self, payload: dict[str, Any], token: CancellationToken,
    ) -> httpx.Response | None:
        """Send the request; ``None`` if *token* fires before the headers arrive."""
        request = self._client.build_request("POST", self.config.chat_path, json=payload)
        sending = asyncio.ensure_future(self._client.send(request, stream=True))
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({sending, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not sending.done():
                sending.cancel()
                try:
                    await sending
                except (asyncio.CancelledError, httpx.HTTPError):
                    pass

        if not token.cancelled:
            return sending.result()
        # Response arrived together with the cancel
        if not sending.cancelled() and sending.exception() is None:
            await sending.result().aclose()
        return None

    async def _check_status(self, resp: httpx.Response, retry: RetryState) -> None:
        if resp.status_code >= 500:
            _logger.warning(
                "Chat API returned %d (attempt %d/%d)",
                resp.status_code, retry.attempt + 1, retry.max_attempts + 1,
            )
            raise ServerRetryable(resp.status_code)
        if resp.is_success:
            return
        detail = ""
        try:
            await resp.aread()
            body = resp.json()
            if isinstance(body, dict):
                detail = str(body.get("detail") or body.get("message") or "")
        except ValueError:
            pass
        raise HttpError(resp.status_code, detail or resp.reason_phrase)

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------

    async def _read_loop(
        self,
        resp: httpx.Response,
        state: _StreamState,
        token: CancellationToken,
        *,
        question: str,
        version: str,
        started: float,
    ) -> AsyncGenerator[StreamEvent, None]:
        spec = self.config.stream
        activity = ConnectionActivity(
            heartbeat_interval=spec.heartbeat_interval,
            max_inactive=spec.max_inactive,
        )
        decoder = FrameDecoder()
        guard = ReadGuard(resp.aiter_text(), timeout=spec.read_timeout)
        monitor = HeartbeatMonitor(
            activity,
            lambda: (state.answer, state.reasoning),
            check_interval=spec.check_interval,
            progress_min_gap=spec.progress_min_gap,
        )
        attention = monitor.attention
        unregister = token.on_cancel(attention.set)
        monitor.start()

        try:
            while not state.finished:
                attention.clear()
                if token.cancelled:
                    yield StreamEvent.failure(
                        f"Request cancelled: {token.reason}. "
                        f"Content received so far: {state.answer or 'none'}",
                        reasoning=state.reasoning,
                    )
                    return

                pending = monitor.take_pending()
                if pending is not None:
                    yield pending
                    if pending.timeout:
                        _logger.warning(
                            "Stream stalled for %.0fs, giving up",
                            activity.inactive_for(),
                        )
                        return

                try:
                    chunk = await guard.read(attention)
                except ReadTimeout:
                    activity.touch()
                    continue
                except httpx.HTTPError as e:
                    raise NetworkError(str(e) or type(e).__name__) from e

                if chunk is ReadOutcome.INTERRUPTED:
                    continue
                if chunk is ReadOutcome.EOF:
                    break

                activity.touch()
                for frame in decoder.feed(chunk):
                    for event in self._handle_frame(frame, state):
                        yield event
                    if state.terminal:
                        return
                    if state.finished:
                        break

            # Anything after the end-of-stream marker is ignored
            tail = [] if state.finished else decoder.flush()
            for frame in tail:
                for event in self._handle_frame(frame, state):
                    yield event
                if state.terminal:
                    return
                if state.finished:
                    break

            record, parse_error = reconstruct(
                state.snapshot,
                state.answer,
                state.reasoning,
                question=question,
                version=version,
                processing_time=time.monotonic() - started,
            )
            yield StreamEvent.complete(
                record.answer or state.answer,
                record.reasoning or state.reasoning,
                debug=record,
                parse_error=parse_error,
            )
        finally:
            unregister()
            await monitor.stop()
            await guard.cancel()

    def _handle_frame(
        self, frame: str, state: _StreamState,
    ) -> list[StreamEvent]:
        event = parse_frame(frame)
        if event is None:
            return []
        return self._apply(event, state)

    def _apply(self, event: ServerEvent, state: _StreamState) -> list[StreamEvent]:
        data = event.data
        kind = event.type

        if kind is ServerEventType.DONE:
            _logger.debug("Received end-of-stream marker")
            state.finished = True
            return []

        if kind is ServerEventType.SNAPSHOT:
            if data.get("prompt_history"):
                _logger.debug("Received full prompt_history snapshot")
                state.snapshot = data["prompt_history"]
                return []
            return [self._update(state, data, deltas=None)]

        if kind is ServerEventType.CHAT_STREAM:
            deltas = {k: v for k, v in data.items() if k not in _STREAM_KEYS}
            return [self._update(state, data, deltas=deltas or None)]

        if kind is ServerEventType.COMPLETION:
            if data.get("prompt_history"):
                state.snapshot = data["prompt_history"]
            self._merge(state, data)
            state.finished = True
            return []

        if kind is ServerEventType.ERROR:
            message = str(data.get("message") or data.get("detail") or "server error")
            _logger.warning("Server reported an error mid-stream: %s", message)
            state.terminal = True
            return [StreamEvent.failure(
                f"Error: {message}. Content received so far: {state.answer or 'none'}",
                reasoning=state.reasoning,
                error=message,
            )]

        _logger.debug("Ignoring %s event on chat stream", kind.value)
        return []

    @staticmethod
    def _merge(state: _StreamState, data: dict[str, Any]) -> None:
        # Payloads carry full current values; empty values keep the last ones
        answer = data.get("answer")
        reasoning = data.get("reasoning")
        if isinstance(answer, str) and answer:
            state.answer = answer
        if isinstance(reasoning, str) and reasoning:
            state.reasoning = reasoning

    def _update(
        self,
        state: _StreamState,
        data: dict[str, Any],
        deltas: dict[str, Any] | None,
    ) -> StreamEvent:
        self._merge(state, data)
        state.content_yielded = True
        return StreamEvent.stream(state.answer, state.reasoning, deltas=deltas)


async def collect(events: AsyncGenerator[StreamEvent, None]) -> list[StreamEvent]:
    """Drain *events* into a list."""
    return [event async for event in events]


__all__ = ["ChatStreamClient", "collect"]
