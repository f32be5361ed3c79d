"""Shared data types for the chat pipeline."""

from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


# ---------------------------------------------------------------------------
# Wire-level types
# ---------------------------------------------------------------------------

class ServerEventType(enum.Enum):
    """Event names understood on the wire."""

    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    VERSION_UPDATE = "version_update"
    OPTIMIZATION_STATUS = "optimization_status"
    OPTIMIZATION_CREATED = "optimization_created"
    OPTIMIZATION_FAILED = "optimization_failed"
    TRAINING_STATUS = "training_status"
    CHAT_STREAM = "chat_stream"
    COMPLETION = "completion"
    ERROR = "error"

    # ``data: [DONE]`` sentinel (both variants)
    DONE = "done"
    # Bare ``data: {...}`` full snapshot (legacy variant)
    SNAPSHOT = "snapshot"


@dataclass
class ServerEvent:
    """One interpreted wire frame."""

    type: ServerEventType
    data: dict[str, Any] = field(default_factory=dict)
    raw: str = ""


# ---------------------------------------------------------------------------
# Caller-visible stream events
# ---------------------------------------------------------------------------

class EventKind(enum.Enum):
    """Variants of :class:`StreamEvent`."""

    PROGRESS = "progress"
    STREAM = "stream"
    COMPLETE = "complete"
    ERROR = "error"
    DONE = "done"


@dataclass
class StreamEvent:
    """Event yielded by ``ChatStreamClient.send_message()``.

    ``complete`` and ``error`` are terminal: a stream lifecycle ends with
    exactly one of them.
    """

    kind: EventKind
    content: str = ""
    reasoning: str = ""
    retrying: bool = False
    timeout: bool = False
    inactive_time: float | None = None
    deltas: dict[str, Any] | None = None
    debug: InteractionRecord | None = None
    error: str = ""
    attempts: int | None = None
    status: int | None = None
    parse_error: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.kind in (EventKind.COMPLETE, EventKind.ERROR)

    @classmethod
    def progress(
        cls,
        content: str,
        *,
        reasoning: str = "",
        retrying: bool = False,
        inactive_time: float | None = None,
        error: str = "",
    ) -> StreamEvent:
        return cls(
            EventKind.PROGRESS,
            content=content,
            reasoning=reasoning,
            retrying=retrying,
            inactive_time=inactive_time,
            error=error,
        )

    @classmethod
    def stream(
        cls,
        content: str,
        reasoning: str = "",
        deltas: dict[str, Any] | None = None,
    ) -> StreamEvent:
        return cls(EventKind.STREAM, content=content, reasoning=reasoning, deltas=deltas)

    @classmethod
    def complete(
        cls,
        content: str,
        reasoning: str = "",
        debug: InteractionRecord | None = None,
        parse_error: str = "",
    ) -> StreamEvent:
        return cls(
            EventKind.COMPLETE,
            content=content,
            reasoning=reasoning,
            debug=debug,
            parse_error=parse_error,
        )

    @classmethod
    def failure(
        cls,
        content: str,
        *,
        reasoning: str = "",
        timeout: bool = False,
        error: str = "",
        attempts: int | None = None,
        status: int | None = None,
    ) -> StreamEvent:
        return cls(
            EventKind.ERROR,
            content=content,
            reasoning=reasoning,
            timeout=timeout,
            error=error,
            attempts=attempts,
            status=status,
        )

    @classmethod
    def done(cls) -> StreamEvent:
        return cls(EventKind.DONE)


# ---------------------------------------------------------------------------
# Interaction record
# ---------------------------------------------------------------------------

@dataclass
class ChatMessage:
    role: str
    content: str


@dataclass
class RecallMethod:
    """A tool/function invocation recovered from model markers."""

    method: str
    args: Any


@dataclass
class TokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0


@dataclass
class InteractionRecord:
    """Normalized representation of one question/answer exchange."""

    id: str
    timestamp: datetime
    question: str = ""
    model: str = ""
    version: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    recall_methods: list[RecallMethod] = field(default_factory=list)
    prompt: str = ""
    answer: str = ""
    reasoning: str = ""
    processing_time: float = 0
    tokens: TokenUsage = field(default_factory=TokenUsage)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


# ---------------------------------------------------------------------------
# Per-attempt state
# ---------------------------------------------------------------------------

@dataclass
class RetryState:
    """Retry bookkeeping for one ``send_message()`` call."""

    attempt: int = 0
    max_attempts: int = 2
    base_delay: float = 2.0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def advance(self) -> float:
        """Consume one retry and return the delay to wait before it."""
        if self.exhausted:
            raise RuntimeError("retry budget exhausted")
        self.attempt += 1
        return self.next_delay()

    def next_delay(self) -> float:
        return self.base_delay * self.attempt


@dataclass
class ConnectionActivity:
    """Liveness bookkeeping shared between the read loop and the monitor.

    Times are ``time.monotonic()`` seconds.
    """

    heartbeat_interval: float = 30
    max_inactive: float = 600
    last_activity_at: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity_at = time.monotonic()

    def inactive_for(self, now: float | None = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_activity_at


# ---------------------------------------------------------------------------
# Notification session types
# ---------------------------------------------------------------------------

class NotificationType(enum.Enum):
    """Notifications published by ``EventStreamSession``."""

    VERSION_UPDATE = "version_update"
    TRAINING_STATUS = "training_status"
    OPTIMIZATION_STATUS = "optimization_status"
    TRAINING_COMPLETED = "training_completed"
    CHAT_STREAM = "chat_stream"
    CHAT_COMPLETION = "chat_completion"
    CONNECTION_LOST = "connection_lost"


@dataclass
class Notification:
    """Message fanned out to session subscribers."""

    type: NotificationType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
