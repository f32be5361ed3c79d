"""Streaming chat client, retry controller and liveness checks."""

from chat_pipeline.stream.cancel import CancellationToken
from chat_pipeline.stream.client import ChatStreamClient, collect
from chat_pipeline.stream.heartbeat import HeartbeatMonitor
from chat_pipeline.stream.read_guard import ReadGuard, ReadOutcome

__all__ = [
    "CancellationToken",
    "ChatStreamClient",
    "HeartbeatMonitor",
    "ReadGuard",
    "ReadOutcome",
    "collect",
]
