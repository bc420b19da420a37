from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIMEZONE = "UTC"
DEFAULT_DB_PATH = "data/homedash.db"
DEFAULT_CLOCK_INTERVAL_SECONDS = 60.0
DEFAULT_EVALUATOR_WORKERS = 4
DEFAULT_BACKPRESSURE_POLICY = "coalesce"
BACKPRESSURE_POLICIES = ("coalesce", "queue", "drop")


def env_text(name: str, default: str | None = None) -> str | None:
    configured = os.getenv(name)
    if isinstance(configured, str) and configured.strip():
        return configured.strip()
    return default


def env_int(name: str, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        value = int(os.getenv(name) or "")
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    try:
        value = float(os.getenv(name) or "")
    except ValueError:
        value = default
    return max(minimum, value) if minimum is not None else value


def get_timezone() -> str:
    tz_name = env_text("HOMEDASH_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return DEFAULT_TIMEZONE
    return tz_name


def get_db_path() -> Path:
    raw = env_text("HOMEDASH_DB_PATH", DEFAULT_DB_PATH)
    path = Path(raw)
    if raw != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_default_enabled() -> bool:
    configured = env_text("HOMEDASH_AUTOMATION_DEFAULT_ENABLED")
    if configured is None:
        return True
    return configured.lower() in {"1", "true", "yes", "on"}


def get_clock_interval_seconds() -> float:
    return env_float("HOMEDASH_CLOCK_INTERVAL_SECONDS", DEFAULT_CLOCK_INTERVAL_SECONDS, minimum=1.0)


def get_evaluator_workers() -> int:
    return env_int("HOMEDASH_EVALUATOR_WORKERS", DEFAULT_EVALUATOR_WORKERS, minimum=1, maximum=64)


def get_backpressure_policy() -> str:
    configured = (env_text("HOMEDASH_BACKPRESSURE_POLICY") or "").lower()
    if configured in BACKPRESSURE_POLICIES:
        return configured
    return DEFAULT_BACKPRESSURE_POLICY


def get_log_level() -> str:
    return (env_text("HOMEDASH_LOG_LEVEL") or "INFO").upper()


def get_api_host() -> str:
    return env_text("HOMEDASH_API_HOST", "0.0.0.0")


def get_api_port() -> int:
    return env_int("HOMEDASH_API_PORT", 8000, minimum=1, maximum=65535)
