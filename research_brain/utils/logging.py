"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys

import structlog

# Library loggers that are chatty at INFO
_QUIET = ("httpx", "anthropic", "apscheduler", "aiohttp.access")


def setup_logging(log_level: str = "INFO", instance: str | None = None) -> None:
    """Configure structlog. Set JSON_LOGS=1 for JSON output (servers), default is console (dev).

    stdlib records from APScheduler, aiohttp and the Anthropic SDK are
    rendered by the same processor chain. When several orchestrator
    instances share one database, pass the instance name so every event
    carries it.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    use_json = os.environ.get("JSON_LOGS", "").strip().lower() in ("1", "true", "yes")
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[*shared, structlog.processors.StackInfoRenderer(), structlog.dev.set_exc_info, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared, structlog.stdlib.add_logger_name],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    if instance:
        structlog.contextvars.bind_contextvars(instance=instance)
