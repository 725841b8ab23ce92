"""Correlation identifiers shared by request handlers and background jobs."""

from __future__ import annotations

import contextvars
import logging
import uuid
from typing import Any, Dict, Optional


REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "learn_request_id",
    default=None,
)
JOB_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "learn_job_id",
    default=None,
)
ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "learn_actor",
    default=None,
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    for key, var in (("request_id", REQUEST_ID_VAR), ("job_id", JOB_ID_VAR), ("actor", ACTOR_VAR)):
        value = var.get()
        if value:
            context[key] = str(value)
    return context


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


__all__ = [
    "ACTOR_VAR",
    "ContextualLoggerAdapter",
    "JOB_ID_VAR",
    "REQUEST_ID_VAR",
    "collect_correlation_context",
    "format_actor_label",
    "new_correlation_id",
]
