"""
structlog setup shared by the API process and the Celery workers.

Job handlers run with the envelope id and their stage bound in context
variables, so every entry a job writes can be grouped by `job_id`.
"""

import sys
import time
import asyncio
import logging
import structlog
from typing import Optional, Any, Dict
from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps

from erazor import __version__

job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite", "celery.redirected")


def add_job_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Attach the service version and the current job id / stage."""
    event_dict["version"] = __version__

    job_id = job_id_var.get()
    if job_id:
        event_dict.setdefault("job_id", job_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True):
    """JSON lines in production, colored console output in development."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            add_job_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def log_context(job_id: Optional[str] = None, stage: Optional[str] = None):
    """Bind job id and/or stage for the duration of a block."""
    job_token = job_id_var.set(job_id) if job_id else None
    stage_token = stage_var.set(stage) if stage else None
    try:
        yield
    finally:
        if stage_token:
            stage_var.reset(stage_token)
        if job_token:
            job_id_var.reset(job_token)


def set_job_context(job_id: str, stage: Optional[str] = None):
    """Bind a Celery job for the rest of the task run."""
    job_id_var.set(job_id)
    if stage:
        stage_var.set(stage)


def clear_job_context():
    job_id_var.set(None)
    stage_var.set(None)


def with_logging(stage: str):
    """Log start, duration and failure of an async job handler.

        @with_logging("poll")
        async def handle(self, job): ...
    """
    def decorator(func):
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"with_logging expects a coroutine function, got {func!r}")

        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            token = stage_var.set(stage)
            started = time.perf_counter()
            logger.info("stage_started")

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "stage_failed",
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise
            else:
                logger.info("stage_completed", duration_ms=int((time.perf_counter() - started) * 1000))
                return result
            finally:
                stage_var.reset(token)

        return wrapper

    return decorator
