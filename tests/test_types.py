"""Tests for shared pipeline types."""

from datetime import datetime, timezone

import pytest

from chat_pipeline.errors import HttpError
from chat_pipeline.types import (
    ConnectionActivity,
    EventKind,
    InteractionRecord,
    RetryState,
    StreamEvent,
)


class TestStreamEvent:
    def test_terminal_kinds(self):
        assert StreamEvent.complete("a").is_terminal
        assert StreamEvent.failure("e").is_terminal
        assert not StreamEvent.progress("p").is_terminal
        assert not StreamEvent.stream("s").is_terminal
        assert not StreamEvent.done().is_terminal

    def test_failure_fields(self):
        event = StreamEvent.failure("x", timeout=True, attempts=2, status=500)
        assert event.kind is EventKind.ERROR
        assert event.timeout
        assert event.attempts == 2
        assert event.status == 500


class TestRetryState:
    def test_linear_backoff(self):
        state = RetryState(max_attempts=3, base_delay=2.0)
        assert state.advance() == 2.0
        assert state.advance() == 4.0
        assert state.advance() == 6.0
        assert state.exhausted

    def test_advance_past_budget(self):
        state = RetryState(max_attempts=0)
        assert state.exhausted
        with pytest.raises(RuntimeError):
            state.advance()


class TestConnectionActivity:
    def test_inactive_for(self):
        activity = ConnectionActivity(last_activity_at=100.0)
        assert activity.inactive_for(now=130.0) == 30.0

    def test_touch(self):
        activity = ConnectionActivity(last_activity_at=0.0)
        activity.touch()
        assert activity.inactive_for() < 1


class TestInteractionRecord:
    def test_to_dict(self):
        record = InteractionRecord(
            id="r1", timestamp=datetime(2024, 1, 2, tzinfo=timezone.utc), answer="a",
        )
        data = record.to_dict()
        assert data["id"] == "r1"
        assert data["timestamp"] == "2024-01-02T00:00:00+00:00"
        assert data["tokens"] == {"prompt": 0, "completion": 0, "total": 0}


class TestErrors:
    def test_http_error_message(self):
        err = HttpError(404, "missing")
        assert str(err) == "HTTP error! status: 404, detail: missing"
        assert err.status == 404

    def test_http_error_without_detail(self):
        assert str(HttpError(400)) == "HTTP error! status: 400"
