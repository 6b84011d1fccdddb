"""
Structured JSON logging with correlation IDs.

Uses structlog to produce machine-parseable JSON logs in production
and human-readable colored output in development. Every log entry
automatically includes the ``trace_id`` and, inside a pipeline job,
the ``consultation_id`` and ``stage`` being processed.

Usage:
    from src.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("stage_started", consultation_id="c-123", stage="extraction")
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from src.config import get_settings

# Set at the start of an API request or pipeline job so every log
# entry in that context carries the correlation fields.
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
consultation_id_var: ContextVar[str] = ContextVar("consultation_id", default="")
stage_var: ContextVar[str] = ContextVar("stage", default="")


def _inject_context_vars(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Inject trace_id, consultation_id and stage from context vars."""
    trace_id = trace_id_var.get("")
    if trace_id:
        event_dict["trace_id"] = trace_id

    consultation_id = consultation_id_var.get("")
    if consultation_id:
        event_dict.setdefault("consultation_id", consultation_id)

    stage = stage_var.get("")
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def generate_trace_id() -> str:
    """Generate a short, unique trace ID for request/job correlation."""
    return uuid.uuid4().hex[:12]


def setup_logging() -> None:
    """
    Configure structlog and stdlib logging.

    - **Production**: JSON output to stdout (for log aggregators).
    - **Development**: Colored, human-readable console output.
    """
    settings = get_settings()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route third-party stdlib loggers through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for noisy in ("httpx", "httpcore", "hpack", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Return a named, structured logger.

    Args:
        name: Typically ``__name__`` of the calling module.

    Returns:
        A bound structlog logger with all shared processors attached.
    """
    return structlog.get_logger(name)
