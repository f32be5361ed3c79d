"""Streaming chat-response pipeline: SSE decoding, retry, stall detection
and interaction record reconstruction."""

from chat_pipeline.config import PipelineConfig, SessionSpec, StreamSpec, load_config
from chat_pipeline.session import EventStreamSession
from chat_pipeline.stream import CancellationToken, ChatStreamClient
from chat_pipeline.types import (
    EventKind,
    InteractionRecord,
    Notification,
    NotificationType,
    StreamEvent,
)

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "ChatStreamClient",
    "EventKind",
    "EventStreamSession",
    "InteractionRecord",
    "Notification",
    "NotificationType",
    "PipelineConfig",
    "SessionSpec",
    "StreamEvent",
    "StreamSpec",
    "load_config",
]
