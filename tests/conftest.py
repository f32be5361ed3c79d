"""Shared fixtures: fast pipeline config and fake SSE servers."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

import httpx
import pytest

from chat_pipeline.config import PipelineConfig, SessionSpec, StreamSpec


def sse_response(
    chunks: list[str],
    status: int = 200,
    delay: float = 0.0,
    hang: float = 0.0,
    fail_with: Exception | None = None,
) -> httpx.Response:
    """Build a streaming response that yields *chunks*.

    *delay* sleeps before each chunk, *hang* sleeps after the last one,
    *fail_with* is raised once the chunks are exhausted.
    """

    async def body():
        for chunk in chunks:
            if delay:
                await asyncio.sleep(delay)
            yield chunk.encode("utf-8")
        if hang:
            await asyncio.sleep(hang)
        if fail_with is not None:
            raise fail_with

    return httpx.Response(
        status,
        headers={"Content-Type": "text/event-stream; charset=utf-8"},
        content=body(),
    )


class FakeServer:
    """Records requests and answers them from a list of responders."""

    def __init__(self, responders: list[Callable[[httpx.Request], Any]]) -> None:
        self._responders = responders
        self.requests: list[httpx.Request] = []

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        idx = min(len(self.requests), len(self._responders)) - 1
        result = self._responders[idx](request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def fast_config() -> PipelineConfig:
    return PipelineConfig(
        base_url="http://test",
        stream=StreamSpec(
            max_attempts=2,
            backoff_base=0,
            read_timeout=5,
            heartbeat_interval=1,
            check_interval=0.5,
            progress_min_gap=1,
            max_inactive=10,
        ),
        session=SessionSpec(
            max_reconnect_attempts=2,
            reconnect_delay=0.01,
            idle_disconnect=0.05,
        ),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll *predicate* until it holds or *timeout* elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.fixture
def make_server() -> Callable[..., FakeServer]:
    return FakeServer


@pytest.fixture
def respond() -> Callable[..., httpx.Response]:
    return sse_response


@pytest.fixture
def waiter() -> Callable[..., Any]:
    return wait_until
