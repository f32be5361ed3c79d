"""Configuration for the chat pipeline.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./chat_pipeline.yaml``
  3. ``~/.config/chat-pipeline/config.yaml``
  4. Built-in defaults

Durations are in seconds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class StreamSpec:
    """Retry, heartbeat and timeout settings for chat streaming."""

    max_attempts: int = 2
    backoff_base: float = 2.0  # linear: 2, 4, ...
    request_timeout: float = 300
    connect_timeout: float = 30
    read_timeout: float = 60
    heartbeat_interval: float = 30
    check_interval: float = 30
    progress_min_gap: float = 15
    max_inactive: float = 600


@dataclass
class SessionSpec:
    """Notification channel settings."""

    max_reconnect_attempts: int = 3
    reconnect_delay: float = 1.0
    idle_disconnect: float = 60


@dataclass
class PipelineConfig:
    """Top-level config."""

    base_url: str = "http://localhost:8080"
    chat_path: str = "/api/chat"
    events_path: str = "/events"
    version: str = "1.0.0"

    stream: StreamSpec = field(default_factory=StreamSpec)
    session: SessionSpec = field(default_factory=SessionSpec)

    @property
    def events_url(self) -> str:
        return self.base_url.rstrip("/") + self.events_path


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./chat_pipeline.yaml"),
    Path.home() / ".config" / "chat-pipeline" / "config.yaml",
]


def _known(cls: type, raw: Any) -> dict[str, Any]:
    """Keep only keys that are fields of dataclass *cls*."""
    if not raw:
        return {}
    if not isinstance(raw, dict):
        _logger.warning(
            "Ignoring %s section: expected a mapping, got %s",
            cls.__name__, type(raw).__name__,
        )
        return {}
    names = {f.name for f in fields(cls)}
    unknown = set(raw) - names
    if unknown:
        _logger.warning(
            "Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)),
        )
    return {k: v for k, v in raw.items() if k in names and v is not None}


def _parse_stream(raw: Any) -> StreamSpec:
    spec = StreamSpec(**_known(StreamSpec, raw))
    if spec.max_attempts < 0:
        _logger.warning("stream.max_attempts < 0, clamping to 0")
        spec.max_attempts = 0
    return spec


def _parse_session(raw: Any) -> SessionSpec:
    return SessionSpec(**_known(SessionSpec, raw))


def load_config(path: str | Path | None = None) -> PipelineConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    PipelineConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return PipelineConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return PipelineConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        _logger.warning(
            "Config file %s is not a mapping, using defaults", config_path,
        )
        return PipelineConfig()

    top = {
        k: v for k, v in raw.items()
        if k in ("base_url", "chat_path", "events_path", "version") and v is not None
    }
    # ``version: 1.0`` in YAML is a float
    if "version" in top:
        top["version"] = str(top["version"])
    return PipelineConfig(
        **top,
        stream=_parse_stream(raw.get("stream")),
        session=_parse_session(raw.get("session")),
    )
