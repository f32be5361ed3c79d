"""Build the final :class:`InteractionRecord` when a stream completes.

Two paths:

* full snapshot -- the server sent a ``prompt_history`` object with the
  whole exchange (question, messages, raw model content, token counts);
* incremental fallback -- only the last streamed ``answer``/``reasoning``
  values are known.

A snapshot that cannot be used degrades to the fallback; it is never
fatal.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any

from chat_pipeline.errors import ReconstructionError
from chat_pipeline.types import (
    ChatMessage,
    InteractionRecord,
    RecallMethod,
    TokenUsage,
)

_logger = logging.getLogger(__name__)

REASONING_MARKER = "[[ ## reasoning ## ]]"
ANSWER_MARKER = "[[ ## answer ## ]]"
COMPLETED_MARKER = "[[ ## completed ## ]]"

OMITTED_PLACEHOLDER = "...(earlier messages omitted)..."

DEFAULT_MODEL = "DiModel"
DEFAULT_VERSION = "1.0.0"

_TOOL_CALL_RE = re.compile(
    r"\[\[\s*##\s*tool_name_(\d+)\s*##\s*\]\]\s*([^\n]+)"
    r"[\s\S]*?"
    r"\[\[\s*##\s*tool_args_\1\s*##\s*\]\]\s*([\s\S]*?)(?=\[\[|\Z)"
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def estimate_tokens(text: str | None) -> int:
    """Heuristic token count: one token per four characters."""
    return math.ceil(len(text or "") / 4)


def extract_section(content: str, start_marker: str, end_marker: str | None) -> str:
    """Text between *start_marker* and *end_marker* (or end of string)."""
    if not content:
        return ""
    start = content.find(start_marker)
    if start == -1:
        return ""
    body_start = start + len(start_marker)
    if end_marker is None:
        return content[body_start:].strip()
    end = content.find(end_marker, body_start)
    if end == -1:
        return content[body_start:].strip()
    return content[body_start:end].strip()


def split_content(content: str | None) -> tuple[str, str]:
    """Return ``(reasoning, answer)`` from marker-delimited model output."""
    if not content:
        return "", ""
    reasoning = extract_section(content, REASONING_MARKER, ANSWER_MARKER)
    answer = extract_section(content, ANSWER_MARKER, COMPLETED_MARKER)
    return reasoning, answer


def _as_message(raw: Any) -> ChatMessage | None:
    if not isinstance(raw, dict):
        return None
    content = raw.get("content", "")
    if not isinstance(content, str):
        content = json.dumps(content, ensure_ascii=False)
    return ChatMessage(role=str(raw.get("role", "")), content=content)


def filter_messages(messages: list[Any]) -> list[ChatMessage]:
    """Keep system messages and the last user message.

    Anything else is collapsed into one placeholder system message placed
    before the user message.
    """
    parsed = [m for m in (_as_message(raw) for raw in messages) if m is not None]
    system = [m for m in parsed if m.role == "system"]
    users = [m for m in parsed if m.role == "user"]
    last_user = users[-1] if users else None

    kept = len(system) + (1 if last_user else 0)
    result = list(system)
    if len(messages) > kept:
        result.append(ChatMessage(role="system", content=OMITTED_PLACEHOLDER))
    if last_user is not None:
        result.append(last_user)
    return result


def extract_recall_methods(messages: list[Any]) -> list[RecallMethod]:
    """Parse ``tool_name_N`` / ``tool_args_N`` pairs from the last user message."""
    last_user = None
    for raw in messages:
        msg = _as_message(raw)
        if msg is not None and msg.role == "user":
            last_user = msg
    if last_user is None or not last_user.content:
        return []

    methods: list[RecallMethod] = []
    for match in _TOOL_CALL_RE.finditer(last_user.content):
        name = match.group(2).strip()
        args_str = match.group(3).strip()
        try:
            args: Any = json.loads(args_str)
        except json.JSONDecodeError:
            args = args_str
        methods.append(RecallMethod(method=name, args=args))
    return methods


def _as_count(value: Any) -> int | None:
    """Positive int from a server-supplied count, or None."""
    try:
        count = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return count if count > 0 else None


def compute_tokens(
    provided: Any,
    prompt: str | None,
    content: str | None,
) -> TokenUsage:
    """Use server-supplied counts where present, estimate the rest."""
    provided = provided if isinstance(provided, dict) else {}
    prompt_tokens = _as_count(provided.get("prompt_tokens"))
    if prompt_tokens is None:
        prompt_tokens = estimate_tokens(prompt)
    completion_tokens = _as_count(provided.get("completion_tokens"))
    if completion_tokens is None:
        completion_tokens = estimate_tokens(content)
    total = _as_count(provided.get("total_tokens"))
    if total is None:
        total = prompt_tokens + completion_tokens
    return TokenUsage(prompt=prompt_tokens, completion=completion_tokens, total=total)


def _timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)) and value > 0:
        # Milliseconds from JS clients, seconds otherwise
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            _logger.debug("Timestamp out of range: %r", value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            _logger.debug("Unparseable timestamp %r", value)
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Reconstruction paths
# ---------------------------------------------------------------------------

def from_snapshot(
    history: Any,
    *,
    processing_time: float = 0,
) -> InteractionRecord:
    """Full snapshot path.  Raises :class:`ReconstructionError`."""
    if not isinstance(history, dict):
        raise ReconstructionError(
            f"prompt_history is {type(history).__name__}, expected an object"
        )
    messages = history.get("messages") or []
    if not isinstance(messages, list):
        raise ReconstructionError("prompt_history.messages is not a list")
    if not history.get("question") and not messages and not history.get("content"):
        raise ReconstructionError("prompt_history carries no exchange")

    content = history.get("content") or ""
    if not isinstance(content, str):
        raise ReconstructionError("prompt_history.content is not a string")
    try:
        reasoning, answer = split_content(content)
        prompt = history.get("prompt") or ""
        return InteractionRecord(
            id=str(history.get("uuid") or uuid.uuid4()),
            timestamp=_timestamp(history.get("timestamp")),
            question=history.get("question") or "",
            model=history.get("model") or DEFAULT_MODEL,
            version=history.get("version") or DEFAULT_VERSION,
            messages=filter_messages(messages),
            recall_methods=extract_recall_methods(messages),
            prompt=prompt,
            answer=answer,
            reasoning=reasoning,
            processing_time=processing_time,
            tokens=compute_tokens(history.get("tokens"), prompt, content),
        )
    except (ValueError, TypeError, OverflowError, OSError) as e:
        raise ReconstructionError(f"unusable prompt_history value: {e}") from e


def from_stream(
    answer: str,
    reasoning: str,
    *,
    question: str = "",
    version: str = DEFAULT_VERSION,
    processing_time: float = 0,
) -> InteractionRecord:
    """Incremental fallback path."""
    return InteractionRecord(
        id=str(uuid.uuid4()),
        timestamp=datetime.now(timezone.utc),
        question=question,
        model=DEFAULT_MODEL,
        version=version,
        messages=[ChatMessage(role="user", content=question)] if question else [],
        recall_methods=[],
        prompt=question,
        answer=answer,
        reasoning=reasoning,
        processing_time=processing_time,
        tokens=compute_tokens(None, question, answer + reasoning),
    )


def reconstruct(
    snapshot: Any,
    streamed_answer: str,
    streamed_reasoning: str,
    *,
    question: str = "",
    version: str = DEFAULT_VERSION,
    processing_time: float = 0,
) -> tuple[InteractionRecord, str]:
    """Return ``(record, parse_error)``.

    *parse_error* is empty unless the snapshot was present but unusable.
    """
    if snapshot is not None:
        try:
            return from_snapshot(snapshot, processing_time=processing_time), ""
        except ReconstructionError as e:
            _logger.warning(
                "Failed to build interaction record from snapshot, "
                "using streamed content: %s", e,
            )
            parse_error = str(e)
    else:
        parse_error = ""
    record = from_stream(
        streamed_answer,
        streamed_reasoning,
        question=question,
        version=version,
        processing_time=processing_time,
    )
    return record, parse_error
