"""Structured logging for the engine.

Every event carries the job and scheduler hook it was emitted under, plus a
short correlation id that is fresh for each hook firing. A batch and the
writes, breaker calls and actions it triggers can be grepped out together.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

import structlog

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
job_id_var: ContextVar[str] = ContextVar("job_id", default="")
hook_var: ContextVar[str] = ContextVar("hook", default="")

_CONTEXT_FIELDS = (
    ("correlation_id", correlation_id_var),
    ("job_id", job_id_var),
    ("hook", hook_var),
)

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def current_correlation_id() -> str:
    return correlation_id_var.get()


def set_job_context(job_id: str, hook: str = "") -> None:
    """Tag subsequent events with a job id (and optionally a hook)."""
    job_id_var.set(job_id or "")
    if hook:
        hook_var.set(hook)


def set_hook(hook: str) -> None:
    """
    Enter or leave a scheduler hook.

    Entering a hook starts a new correlation id. Passing an empty name clears
    the hook, job and correlation tags once the handler returns.
    """
    hook_var.set(hook)
    if hook:
        correlation_id_var.set(uuid.uuid4().hex[:8])
    else:
        correlation_id_var.set("")
        job_id_var.set("")


def add_context_info(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key, var in _CONTEXT_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def add_timestamp(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(
    level: str = "info",
    format_type: str = "json",
    stream: Any = None,
) -> None:
    """
    Configure structlog for the engine and the CLI.

    Args:
        level: debug, info, warn or error; unknown names fall back to info
        format_type: 'json' for one object per line, anything else renders
            for a console
        stream: Destination for events (default: sys.stderr, keeping stdout
            free for command output)
    """
    stream = stream or sys.stderr
    log_level = LEVELS.get(level.lower(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=stream, level=log_level)

    renderer: structlog.types.Processor
    if format_type == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=hasattr(stream, "isatty") and stream.isatty())

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            add_timestamp,
            add_context_info,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(stream),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


def log_batch_timing(
    job_id: str,
    units: int,
    duration_seconds: float,
    stop_reason: str,
) -> None:
    """Emit one summary event per batch invocation."""
    get_logger("timing").info(
        "batch_finished",
        job_id=job_id,
        units=units,
        duration_seconds=round(duration_seconds, 3),
        stop_reason=stop_reason,
    )


configure_logging()
