"""Tests for the chat-pipeline CLI."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from chat_pipeline import cli
from chat_pipeline.types import InteractionRecord, StreamEvent


class FakeClient:
    """Stands in for ChatStreamClient; replays a fixed event list."""

    events: list[StreamEvent] = []
    calls: list[tuple] = []

    def __init__(self, config):
        self.config = config

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def send_message(self, prompt, version=None, cancel=None):
        FakeClient.calls.append((prompt, version, self.config.base_url))
        for event in FakeClient.events:
            yield event


@pytest.fixture
def fake_client():
    FakeClient.calls = []
    with patch.object(cli, "ChatStreamClient", FakeClient):
        yield FakeClient


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "chat_pipeline.yaml"
    path.write_text(yaml.dump({"base_url": "http://cli-test"}))
    return str(path)


class TestSend:
    def test_complete(self, fake_client, config_file):
        record = InteractionRecord(
            id="rec-9", timestamp=datetime.now(timezone.utc), model="DiModel",
            version="1.0.0", answer="Hello",
        )
        fake_client.events = [
            StreamEvent.progress("waiting", inactive_time=31),
            StreamEvent.stream("Hel"),
            StreamEvent.stream("Hello"),
            StreamEvent.complete("Hello", "because", debug=record),
        ]
        result = CliRunner().invoke(
            cli.main, ["-c", config_file, "send", "hi", "--version", "2.0"],
        )

        assert result.exit_code == 0, result.output
        assert "Hello" in result.output
        assert "because" in result.output
        assert "rec-9" in result.output
        assert fake_client.calls == [("hi", "2.0", "http://cli-test")]

    def test_error_exit_code(self, fake_client, config_file):
        fake_client.events = [
            StreamEvent.progress("retrying (1/2)...", retrying=True),
            StreamEvent.failure("Error: HTTP error! status: 404", status=404),
        ]
        result = CliRunner().invoke(cli.main, ["-c", config_file, "send", "hi"])

        assert result.exit_code == 1
        assert "status: 404" in result.output
        assert "retry" in result.output


class TestMain:
    def test_version(self):
        result = CliRunner().invoke(cli.main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli.main, ["--help"])
        assert "send" in result.output
        assert "listen" in result.output
