"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in any log aggregator.
Every log includes: job_id, version, stage, timestamp, and other context.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar
from functools import wraps

# Context variables for job-scoped logging
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

# Application version
APP_VERSION = "1.0.0"


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application context to every log entry."""
    event_dict["version"] = APP_VERSION

    job_id = job_id_var.get()
    if job_id:
        event_dict.setdefault("job_id", job_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
        log_file: Optional file path for log output
    """
    handlers: list = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        handlers=handlers,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    # Silence noisy loggers
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(job_id="abc123", stage="tiling"):
            logger.info("tile_started")
    """

    def __init__(self, job_id: Optional[str] = None, stage: Optional[str] = None):
        self.job_id = job_id
        self.stage = stage
        self._job_id_token = None
        self._stage_token = None

    def __enter__(self):
        if self.job_id:
            self._job_id_token = job_id_var.set(self.job_id)
        if self.stage:
            self._stage_token = stage_var.set(self.stage)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._stage_token:
            stage_var.reset(self._stage_token)
        if self._job_id_token:
            job_id_var.reset(self._job_id_token)
        return False

    def set_stage(self, stage: str):
        """Update the current stage."""
        stage_var.set(stage)


def with_logging(stage: str):
    """
    Decorator to wrap a pipeline step with logging context.

    Usage:
        @with_logging("stitching")
        def stitch(tiles, ...):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            token = stage_var.set(stage)

            logger.info("stage_started", stage=stage)
            start_time = datetime.now(timezone.utc)

            try:
                result = func(*args, **kwargs)
                duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
                logger.info(
                    "stage_completed",
                    stage=stage,
                    duration_ms=duration_ms
                )
                return result
            except Exception as e:
                duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
                logger.error(
                    "stage_failed",
                    stage=stage,
                    duration_ms=duration_ms,
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise
            finally:
                stage_var.reset(token)

        return wrapper

    return decorator


# Example log output structure:
# {
#   "timestamp": "2026-05-20T10:00:00.000000Z",
#   "level": "info",
#   "event": "tile_completed",
#   "stage": "tiling",
#   "job_id": "550e8400-e29b-41d4-a716-446655440000",
#   "version": "1.0.0",
#   "tiles_done": 3,
#   "tiles_total": 6,
#   "eta_seconds": 2
# }
