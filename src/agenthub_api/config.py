from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _int_env(name: str, default: int) -> int:
    raw = _env_or_default(name, str(default))
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring %s=%r: not an integer, using %s", name, raw, default)
        return default


def _float_env(name: str, default: float) -> float:
    raw = _env_or_default(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        logger.warning("ignoring %s=%r: not a number, using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("ignoring %s=%r: must be positive, using %s", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    state_dir: str = "project_state"
    default_project_id: str = "default"
    event_replay_limit: int = 100
    recent_items_limit: int = 50
    log_level: str = "INFO"
    cors_allow_origins: list[str] = field(default_factory=lambda: ["null"])
    cors_allow_origin_regex: str = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
    inspector_url: str | None = None
    inspector_token: str | None = None
    inspector_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            state_dir=_env_or_default("API_STATE_DIR", defaults.state_dir),
            default_project_id=_env_or_default("API_DEFAULT_PROJECT_ID", defaults.default_project_id),
            event_replay_limit=_int_env("API_EVENT_REPLAY_LIMIT", defaults.event_replay_limit),
            recent_items_limit=_int_env("API_RECENT_ITEMS_LIMIT", defaults.recent_items_limit),
            log_level=_env_or_default("API_LOG_LEVEL", defaults.log_level).upper(),
            cors_allow_origins=_parse_csv_env("API_CORS_ALLOW_ORIGINS", default="null"),
            cors_allow_origin_regex=_env_or_default(
                "API_CORS_ALLOW_ORIGIN_REGEX",
                defaults.cors_allow_origin_regex,
            ),
            inspector_url=_optional_env("INSPECTOR_URL"),
            inspector_token=_optional_env("INSPECTOR_TOKEN"),
            inspector_timeout_seconds=_float_env(
                "INSPECTOR_TIMEOUT_SECONDS",
                defaults.inspector_timeout_seconds,
            ),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    resolved = logging.getLevelName(level.upper())
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
