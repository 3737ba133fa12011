"""
Structured Logging Configuration with structlog

Outputs JSON logs in production and coloured console logs in development.
Every log includes: version, timestamp, and, when set, the session_id and
stage of the edit operation being executed.
"""

import sys
import inspect
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime, timezone
from contextvars import ContextVar
from functools import wraps

# Context variables for session-scoped logging
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
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

    session_id = session_id_var.get()
    if session_id:
        event_dict.setdefault("session_id", session_id)

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
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

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
        with LogContext(session_id="abc123", stage="transform_style"):
            logger.info("session_operation_started")
    """

    def __init__(self, session_id: Optional[str] = None, stage: Optional[str] = None):
        self.session_id = session_id
        self.stage = stage
        self._session_id_token = None
        self._stage_token = None

    def __enter__(self):
        if self.session_id:
            self._session_id_token = session_id_var.set(self.session_id)
        if self.stage:
            self._stage_token = stage_var.set(self.stage)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._stage_token:
            stage_var.reset(self._stage_token)
        if self._session_id_token:
            session_id_var.reset(self._session_id_token)
        return False


def _elapsed_ms(start_time: datetime) -> int:
    return int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)


def with_logging(stage: str):
    """
    Decorator to wrap a function with stage start/complete/fail events.

    Usage:
        @with_logging("extract_transparency")
        def extract_transparency(image: EncodedImage) -> EncodedImage:
            ...
    """
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            logger.debug("stage_started", stage=stage)
            start_time = datetime.now(timezone.utc)

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "stage_failed",
                    stage=stage,
                    duration_ms=_elapsed_ms(start_time),
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise
            logger.debug("stage_completed", stage=stage, duration_ms=_elapsed_ms(start_time))
            return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            logger.debug("stage_started", stage=stage)
            start_time = datetime.now(timezone.utc)

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "stage_failed",
                    stage=stage,
                    duration_ms=_elapsed_ms(start_time),
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise
            logger.debug("stage_completed", stage=stage, duration_ms=_elapsed_ms(start_time))
            return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
