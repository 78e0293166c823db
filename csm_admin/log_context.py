#!/usr/bin/env python3
"""
Logging setup and operation correlation IDs.

Every operation session (and any caller-chosen unit of work) can bind a
correlation ID; it is injected into log records and sent to backends as
an X-Correlation-ID header so server-side logs line up with ours.

Features:
- Unique correlation ID per operation
- Automatic injection into all log messages
- Header propagation to backend requests
- Masking of credentials in logged headers
- Context manager for worker threads

Usage:
    from csm_admin.log_context import init_logging, operation_context

    init_logging(logging.DEBUG)

    with operation_context() as correlation_id:
        orchestrator.run(request)   # every log line carries [correlation_id]
"""

import contextvars
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

# Context variable for correlation ID (thread-safe)
_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)

CORRELATION_ID_HEADER = "X-Correlation-ID"
DEFAULT_LOG_FORMAT = "%(asctime)s [%(correlation_id)s] %(name)s - %(levelname)s - %(message)s"

SENSITIVE_HEADERS = {"authorization", "x-vault-token", "cookie", "proxy-authorization"}
MASK = "***masked***"

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    """
    Generate a new unique correlation ID.

    Format: timestamp-shortuuid (e.g. "1706745600-a1b2c3d4"), roughly
    time-ordered and short enough to read in logs.
    """
    timestamp = int(time.time())
    short_uuid = uuid.uuid4().hex[:8]
    return f"{timestamp}-{short_uuid}"


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str]) -> contextvars.Token:
    return _correlation_id.set(correlation_id)


@contextmanager
def operation_context(correlation_id: str = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of the block."""
    correlation_id = correlation_id or generate_correlation_id()
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


def run_in_context(target, *args, **kwargs) -> threading.Thread:
    """
    Start a daemon thread that inherits the caller's context.

    Context variables do not cross thread boundaries on their own, so
    worker threads started here keep the correlation ID of their parent.
    """
    context = contextvars.copy_context()
    thread = threading.Thread(target=context.run, args=(target, *args), kwargs=kwargs, daemon=True)
    thread.start()
    return thread


def correlation_headers() -> Dict[str, str]:
    correlation_id = get_correlation_id()
    return {CORRELATION_ID_HEADER: correlation_id} if correlation_id else {}


def mask_headers(headers) -> Dict[str, str]:
    """Copy of headers safe to log."""
    return {
        key: (MASK if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in dict(headers or {}).items()
    }


class CorrelationLogFilter(logging.Filter):
    """Adds correlation_id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


def init_logging(level: int = logging.INFO, log_file: str = None, log_format: str = None) -> None:
    """
    Configure the root logger with correlation IDs.

    Args:
        level: Logging level
        log_file: Also write to this file when given
        log_format: Custom format (should include %(correlation_id)s)
    """
    formatter = logging.Formatter(log_format or DEFAULT_LOG_FORMAT)
    correlation_filter = CorrelationLogFilter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    handlers = list(root_logger.handlers)
    if not handlers:
        handler = logging.StreamHandler()
        root_logger.addHandler(handler)
        handlers.append(handler)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        root_logger.addHandler(file_handler)
        handlers.append(file_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        if not any(isinstance(f, CorrelationLogFilter) for f in handler.filters):
            handler.addFilter(correlation_filter)

    # urllib3 is noisy at DEBUG
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))
