"""Structured event helpers shared across the application.

Events are plain log records on the ``learn.events`` logger. The message reads
``[TYPE] message (key=value, ...)`` and the structured fields travel along as
``extra`` attributes so handlers can pick them up without parsing text.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("learn.events")

DB_QUERY = "DB_QUERY"
FILE_OP = "FILE_OP"
TASK_STATE = "TASK_STATE"
APP_EVENT = "APP_EVENT"

_MAX_VALUE_LENGTH = 200

EventLogger = logging.Logger | logging.LoggerAdapter


def sanitize_value(value: Any) -> Any:
    """Return a compact, log-friendly representation for *value*."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return normalize_fields(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        text = ", ".join(str(item) for item in value)
    else:
        text = str(value)
    text = text.strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_LENGTH:
        return text[:_MAX_VALUE_LENGTH] + "…"
    return text


def normalize_fields(values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop empty entries and sanitise the rest."""

    if not values:
        return {}
    normalized: Dict[str, Any] = {}
    for key, raw_value in values.items():
        if not key:
            continue
        value = sanitize_value(raw_value)
        if value is None or value == "" or value == {}:
            continue
        normalized[str(key)] = value
    return normalized


def emit_event(
    event_type: str,
    message: str,
    *,
    fields: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit a structured event as a single log line."""

    base_message = str(message).strip()
    details = {**normalize_fields(correlation), **normalize_fields(fields)}
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 2)
    rendered = ", ".join(f"{key}={value}" for key, value in details.items())
    text = f"[{event_type}] {base_message}" if event_type else base_message
    if rendered:
        text = f"{text} ({rendered})"
    extra: Dict[str, Any] = {
        "event": base_message,
        "event_type": event_type,
        "event_fields": details,
    }
    logger.log(level, text, extra=extra)


def emit_db_event(action: str, **kwargs: Any) -> None:
    """Emit a database event (``DB_QUERY``)."""

    emit_event(DB_QUERY, action, **kwargs)


def emit_file_event(operation: str, **kwargs: Any) -> None:
    """Emit a file-system event (``FILE_OP``)."""

    emit_event(FILE_OP, operation, **kwargs)


def emit_task_event(phase: str, message: str = "", **kwargs: Any) -> None:
    """Emit a background task lifecycle event (``TASK_STATE``)."""

    fields = dict(kwargs.pop("fields", None) or {})
    fields.setdefault("phase", phase)
    emit_event(TASK_STATE, message or phase, fields=fields, **kwargs)


__all__ = [
    "APP_EVENT",
    "DB_QUERY",
    "DEFAULT_EVENT_LOGGER",
    "FILE_OP",
    "TASK_STATE",
    "emit_db_event",
    "emit_event",
    "emit_file_event",
    "emit_task_event",
    "normalize_fields",
    "sanitize_value",
]
