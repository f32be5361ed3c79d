"""Interpret decoded frames as typed server events.

Two wire variants share one entry point, :func:`parse_frame`:

* typed frames -- ``event: <name>`` plus one or more ``data:`` lines whose
  values are concatenated and decoded as JSON;
* legacy frames -- a bare ``data: <json>`` snapshot
  ``{answer, reasoning, prompt_history?}`` where ``prompt_history`` is
  itself a JSON-encoded string.

``data: [DONE]`` ends the stream in either variant.  A frame that cannot
be interpreted is logged and returns ``None``; it never raises.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from chat_pipeline.errors import ParseError
from chat_pipeline.types import ServerEvent, ServerEventType

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

_EVENT_NAMES = {
    t.value: t
    for t in ServerEventType
    if t not in (ServerEventType.DONE, ServerEventType.SNAPSHOT)
}


def _split_fields(frame: str) -> tuple[str | None, list[str]]:
    """Return ``(event_name, data_lines)`` for a frame.

    Comment lines (``:``) and unknown fields are skipped; a single space
    after the colon is stripped as in the SSE format.
    """
    event_name: str | None = None
    data_lines: list[str] = []
    for line in frame.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if not sep:
            # Continuation of a payload split across lines (legacy servers)
            if data_lines:
                data_lines[-1] += line
            continue
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip()
        elif name == "data":
            data_lines.append(value)
        elif data_lines and name not in ("id", "retry"):
            # A JSON fragment that happened to contain a colon
            data_lines[-1] += line
    return event_name, data_lines


def decode_prompt_history(value: Any) -> Any:
    """Second decode pass for a JSON-encoded ``prompt_history`` string.

    Failure is non-fatal: the raw string is kept.
    """
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        _logger.warning("Failed to parse prompt_history: %s", e)
        return value


def _decode_json(payload: str) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise ParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_frame(frame: str) -> ServerEvent | None:
    """Interpret one frame, or return ``None`` if it is unusable."""
    if not frame or not frame.strip():
        return None

    event_name, data_lines = _split_fields(frame.strip("\n"))
    payload = "".join(data_lines).strip()

    if payload == DONE_SENTINEL:
        return ServerEvent(ServerEventType.DONE, raw=frame)

    try:
        if event_name is None:
            if not data_lines:
                raise ParseError("frame has neither event nor data")
            data = _decode_json(payload)
            if "prompt_history" in data:
                data["prompt_history"] = decode_prompt_history(data["prompt_history"])
            return ServerEvent(ServerEventType.SNAPSHOT, data=data, raw=frame)

        event_type = _EVENT_NAMES.get(event_name)
        if event_type is None:
            raise ParseError(f"unknown event name {event_name!r}")
        data = _decode_json(payload) if payload else {}
        if event_type is ServerEventType.COMPLETION and "prompt_history" in data:
            data["prompt_history"] = decode_prompt_history(data["prompt_history"])
        return ServerEvent(event_type, data=data, raw=frame)
    except ParseError as e:
        _logger.warning("Skipping frame: %s (%.120r)", e, frame)
        return None
