"""Exception taxonomy for the streaming pipeline.

Only exhausted ``HttpError``/``ServerRetryable``/``NetworkError`` and
``StallTimeout`` ever reach the caller, and then only as terminal
``error`` events; everything else is absorbed inside the pipeline.
"""

from __future__ import annotations


class StreamError(Exception):
    """Base class for pipeline failures."""


class NetworkError(StreamError):
    """Connection or transport failure."""


class HttpError(StreamError):
    """Non-2xx, non-5xx response."""

    def __init__(self, status: int, detail: str = "") -> None:
        self.status = status
        self.detail = detail
        msg = f"HTTP error! status: {status}"
        if detail:
            msg += f", detail: {detail}"
        super().__init__(msg)


class ServerRetryable(StreamError):
    """5xx response; retried up to the budget."""

    def __init__(self, status: int = 500) -> None:
        self.status = status
        super().__init__(f"server returned {status}")


class ParseError(StreamError):
    """Malformed frame or JSON payload."""


class ReadTimeout(StreamError):
    """A single read did not complete in time."""


class StallTimeout(StreamError):
    """No activity on the stream for longer than the stall limit."""


class ReconstructionError(StreamError):
    """The final snapshot could not be turned into an interaction record."""
