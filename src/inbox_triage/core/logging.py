"""Logging setup for the triage engine.

structlog renders every event; stdlib logging only carries the lines to
stdout. A pipeline run binds its id through a ContextVar and the `add_run_id`
processor copies it onto each event, so the syncer, classifier and store
lines of one run can be grepped together. Background runs are separate
asyncio tasks and each task gets its own copy of the context.

Usage:
    from inbox_triage.core.logging import get_logger, run_context, short_id

    logger = get_logger(__name__)

    with run_context(run.id):
        logger.info("email_classified", email_id=short_id(email_id), category="finance")
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

# Libraries that log every HTTP request or query at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "aiosqlite")

_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)


@contextmanager
def run_context(run_id: str) -> Iterator[None]:
    """Bind a run id to every log event emitted inside the block."""
    token = _run_id.set(run_id)
    try:
        yield
    finally:
        _run_id.reset(token)


def get_correlation_id() -> str | None:
    """Run id bound to the current context, if any."""
    return _run_id.get()


def add_run_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    run_id = _run_id.get()
    if run_id is not None:
        event_dict.setdefault("run_id", run_id)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog over stdlib logging.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines (server, cron) or the console renderer (CLI)
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_run_id,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def short_id(value: str | None, length: int = 20) -> str | None:
    """Truncate an id for log output (provider ids can be very long)."""
    if value is None:
        return None
    return value[:length]
