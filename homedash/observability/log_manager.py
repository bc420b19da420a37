from __future__ import annotations

import json
import logging
import re
import traceback
from typing import Any, Callable

LOGGER_NAME = "homedash"
_REDACTED = "***"
_SECRET_KEYS = frozenset({"code", "token", "access_token", "password", "authorization"})
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _as_int_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_text_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# Promoted to top-level event keys when found in a message or in `extra`.
_CONTEXT_FIELDS: dict[str, Callable[[Any], Any]] = {
    "automation_id": _as_int_or_none,
    "trigger_id": _as_int_or_none,
    "action_id": _as_int_or_none,
    "status": _as_text_or_none,
    "error_code": _as_text_or_none,
    "latency_ms": _as_int_or_none,
}


class LogManager:
    """Writes engine events as single-line JSON on the ``homedash`` logger.

    Every line has the form ``event {json}`` so it can be grepped out of a
    plain text log and parsed back. Secret-looking keys are masked before
    serialization, which keeps alarm codes and tokens out of the output.
    """

    def __init__(self, logger_name: str = LOGGER_NAME) -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(
        self,
        event: str,
        *,
        level: str = "info",
        component: str | None = None,
        message: str | None = None,
        context: dict[str, Any] | None = None,
        fields: dict[str, Any] | None = None,
        exc: BaseException | None = None,
    ) -> None:
        level_name = level.lower() if level.lower() in _LEVELS else "info"
        record: dict[str, Any] = {"level": level_name, "event": event or "unknown_event", "component": component}
        record.update({key: (context or {}).get(key) for key in _CONTEXT_FIELDS})
        record["message"] = message
        if fields:
            record["fields"] = fields
        if exc is not None:
            record["exception_type"] = type(exc).__name__
            record["exception_message"] = str(exc)
            record["stack_excerpt"] = "".join(traceback.format_exception(exc, limit=10))
            record["error_code"] = record["error_code"] or type(exc).__name__
        line = json.dumps(redact(record), ensure_ascii=False, separators=(",", ":"), default=str)
        self._logger.log(_LEVELS[level_name], "event %s", line)


class StructuredLoggerAdapter:
    """Logger-style facade bound to one component name."""

    def __init__(self, *, manager: LogManager, component: str) -> None:
        self._manager = manager
        self._component = component

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log("debug", msg, args, kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log("info", msg, args, kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log("warning", msg, args, kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log("error", msg, args, kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        exc = kwargs.get("exc_info")
        if not isinstance(exc, BaseException):
            kwargs = {**kwargs, "extra": {**(kwargs.get("extra") or {}), "stack_excerpt": traceback.format_exc(limit=10)}}
            exc = None
        self._log("error", msg, args, kwargs, exc=exc)

    def _log(
        self,
        level: str,
        msg: str,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        *,
        exc: BaseException | None = None,
    ) -> None:
        text = _interpolate(msg, args)
        extra = kwargs.get("extra")
        merged: dict[str, Any] = {**_extract_kv_pairs(text), **(extra if isinstance(extra, dict) else {})}
        context = {key: convert(merged.get(key)) for key, convert in _CONTEXT_FIELDS.items()}
        self._manager.emit(
            str(merged.get("event") or f"{self._component}.log"),
            level=level,
            component=self._component,
            message=text,
            context=context,
            fields=merged or None,
            exc=exc,
        )


_manager: LogManager | None = None


def get_log_manager() -> LogManager:
    global _manager
    if _manager is None:
        _manager = LogManager()
    return _manager


def get_component_logger(component: str) -> StructuredLoggerAdapter:
    return StructuredLoggerAdapter(manager=get_log_manager(), component=component)


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: (_REDACTED if str(key).lower() in _SECRET_KEYS and item is not None else redact(item))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def _interpolate(msg: str, args: tuple[Any, ...]) -> str:
    if not args:
        return str(msg)
    try:
        return str(msg) % args
    except (TypeError, ValueError):
        return f"{msg} | args={', '.join(str(v) for v in args)}"


_KV_PATTERN = re.compile(r"([A-Za-z_][A-Za-z0-9_.-]*)=(\S+)")


def _extract_kv_pairs(text: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for key, raw in _KV_PATTERN.findall(text or ""):
        value = raw.strip(",")
        if len(value) >= 2 and value[0] in "'\"" and value[-1] == value[0]:
            value = value[1:-1]
        pairs[key] = value
    return pairs
