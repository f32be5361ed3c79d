"""Incremental frame decoder for server-sent event streams.

Frames are delimited by a blank line.  The decoder keeps the trailing,
not-yet-terminated part of the buffer between calls, so feeding a stream
in any chunking yields the same frames.

Legacy servers sometimes pack several ``data: `` payloads into one
blank-line-delimited block; such blocks (no ``event:`` line) are split
into one frame per ``data: `` marker.
"""

from __future__ import annotations

import logging

_logger = logging.getLogger(__name__)

_DELIMITER = "\n\n"
_DATA_MARKER = "data: "


def _normalize(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_legacy_frame(frame: str) -> list[str]:
    """Split a bare-data frame holding several ``data: `` markers.

    Lines that do not start a new marker are continuation lines of the
    previous payload.  Typed frames (with an ``event:`` line) are returned
    unchanged.
    """
    lines = frame.split("\n")
    if any(line.startswith("event:") for line in lines):
        return [frame]
    if sum(1 for line in lines if line.startswith(_DATA_MARKER)) <= 1:
        return [frame]

    parts: list[list[str]] = []
    for line in lines:
        if line.startswith(_DATA_MARKER) or not parts:
            parts.append([line])
        elif line.strip():
            parts[-1].append(line)
    return ["\n".join(p) for p in parts]


class FrameDecoder:
    """Split a growing text buffer into complete frames."""

    def __init__(self) -> None:
        self._buffer = ""
        # A lone "\r" at the end of a chunk may be half of "\r\n"
        self._pending_cr = False

    @property
    def remainder(self) -> str:
        """Carry-over text not yet terminated by a blank line."""
        return self._buffer

    def feed(self, chunk: str) -> list[str]:
        """Append *chunk* and return every frame it completes."""
        if self._pending_cr:
            chunk = "\r" + chunk
            self._pending_cr = False
        if chunk.endswith("\r"):
            chunk = chunk[:-1]
            self._pending_cr = True

        self._buffer += _normalize(chunk)
        *complete, self._buffer = self._buffer.split(_DELIMITER)
        return self._expand(complete)

    def flush(self) -> list[str]:
        """Return the best-effort final frame(s) and reset the buffer."""
        tail = self._buffer
        if self._pending_cr:
            tail += "\n"
            self._pending_cr = False
        self._buffer = ""
        if not tail.strip():
            return []
        _logger.debug("Flushing unterminated frame (%d chars)", len(tail))
        return self._expand(tail.split(_DELIMITER))

    @staticmethod
    def _expand(blocks: list[str]) -> list[str]:
        frames: list[str] = []
        for block in blocks:
            if not block.strip():
                continue
            frames.extend(split_legacy_frame(block))
        return frames
