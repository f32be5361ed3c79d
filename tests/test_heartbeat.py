"""Tests for HeartbeatMonitor liveness checks."""

from __future__ import annotations

import asyncio

import pytest

from chat_pipeline.stream.heartbeat import PLACEHOLDER_PROGRESS, HeartbeatMonitor
from chat_pipeline.types import ConnectionActivity, EventKind


def _monitor(content: str = "", reasoning: str = "", **kwargs) -> HeartbeatMonitor:
    activity = ConnectionActivity(
        heartbeat_interval=30, max_inactive=600, last_activity_at=0.0,
    )
    kwargs.setdefault("check_interval", 30)
    kwargs.setdefault("progress_min_gap", 15)
    return HeartbeatMonitor(activity, lambda: (content, reasoning), **kwargs)


class TestTick:
    def test_quiet_when_active(self):
        monitor = _monitor()
        monitor.tick(now=10)
        assert monitor.take_pending() is None
        assert not monitor.attention.is_set()

    def test_progress_after_heartbeat_interval(self):
        monitor = _monitor("partial", "thinking")
        monitor.tick(now=31)

        event = monitor.take_pending()
        assert event is not None
        assert event.kind is EventKind.PROGRESS
        assert event.content == "partial"
        assert event.reasoning == "thinking"
        assert event.inactive_time == 31
        assert monitor.attention.is_set()
        assert monitor.take_pending() is None

    def test_placeholder_without_content(self):
        monitor = _monitor()
        monitor.tick(now=45)
        assert monitor.take_pending().content == PLACEHOLDER_PROGRESS

    def test_progress_rate_limited(self):
        monitor = _monitor("x")
        monitor.tick(now=31)
        assert monitor.take_pending() is not None

        monitor.tick(now=40)
        assert monitor.take_pending() is None

        monitor.tick(now=47)
        assert monitor.take_pending() is not None

    def test_timeout(self):
        monitor = _monitor("so far")
        monitor.tick(now=601)

        event = monitor.take_pending()
        assert event.kind is EventKind.ERROR
        assert event.timeout
        assert "600s" in event.content
        assert "so far" in event.content
        assert "no activity for 601s" in event.error
        assert monitor.timed_out

    def test_nothing_after_timeout(self):
        monitor = _monitor()
        monitor.tick(now=700)
        monitor.take_pending()
        monitor.tick(now=800)
        assert monitor.take_pending() is None

    def test_timeout_replaces_unread_progress(self):
        monitor = _monitor()
        monitor.tick(now=31)
        monitor.tick(now=601)

        event = monitor.take_pending()
        assert event.timeout
        assert monitor.take_pending() is None

    def test_activity_resets_inactivity(self):
        monitor = _monitor()
        monitor.activity.last_activity_at = 100
        monitor.tick(now=120)
        assert monitor.take_pending() is None


class TestTask:
    @pytest.mark.asyncio
    async def test_periodic_checks(self):
        activity = ConnectionActivity(heartbeat_interval=0.05, max_inactive=10)
        monitor = HeartbeatMonitor(
            activity, lambda: ("", ""), check_interval=0.02, progress_min_gap=1,
        )
        monitor.start()
        try:
            await asyncio.wait_for(monitor.attention.wait(), timeout=2)
        finally:
            await monitor.stop()

        assert monitor.take_pending().kind is EventKind.PROGRESS

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        monitor = _monitor()
        monitor.start()
        await monitor.stop()
        await monitor.stop()
