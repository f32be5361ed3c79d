"""Tests for CancellationToken."""

from __future__ import annotations

import asyncio

import pytest

from chat_pipeline.stream.cancel import CancellationToken


class TestCancellationToken:
    def test_first_cancel_wins(self):
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert calls == [1]

    def test_callback_removed(self):
        token = CancellationToken()
        calls = []
        remove = token.on_cancel(lambda: calls.append(1))
        remove()
        remove()
        token.cancel()
        assert calls == []

    def test_late_registration_fires_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        assert calls == [1]

    def test_failing_callback_does_not_block_others(self):
        token = CancellationToken()
        calls = []

        def bad():
            raise RuntimeError("boom")

        token.on_cancel(bad)
        token.on_cancel(lambda: calls.append(1))
        token.cancel()
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_wait_timeout(self):
        token = CancellationToken()
        assert await token.wait(0.01) is False
        assert await token.wait(0) is False

    @pytest.mark.asyncio
    async def test_wait_wakes_on_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        assert await asyncio.wait_for(token.wait(10), timeout=2) is True

    @pytest.mark.asyncio
    async def test_wait_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        assert await token.wait(0) is True
