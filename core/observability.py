"""
Observability utilities for stooge.
Plain-text logging with a per-webhook correlation ID for debugging.
"""
from __future__ import annotations

import logging
import os
import sys
import uuid
from typing import Optional, Dict, Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NO_ID = "-"
_correlation_id: Optional[str] = None


class CorrelationIDFilter(logging.Filter):
    def filter(self, record):
        record.correlation_id = _correlation_id or _NO_ID
        return True


logger = logging.getLogger("stooge")


def configure_logging(level: str | int = "INFO") -> None:
    """
    Attach a stderr handler to the ``stooge`` logger.

    Safe to call more than once; the handler is only added the first time,
    later calls just change the level.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError("Unknown log level")

    if not any(getattr(h, "_stooge_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        handler.addFilter(CorrelationIDFilter())
        handler._stooge_handler = True
        logger.addHandler(handler)

    logger.setLevel(level)


class CorrelationContext:
    """Context manager for correlation IDs."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        self.old_id = None

    def __enter__(self):
        global _correlation_id
        self.old_id = _correlation_id
        _correlation_id = self.correlation_id
        return self

    def __exit__(self, *args):
        global _correlation_id
        _correlation_id = self.old_id


def current_correlation_id() -> Optional[str]:
    return _correlation_id


def new_correlation_id(delivery_id: Optional[str] = None) -> str:
    """Use the sender's delivery ID when it gave one, else a short random ID."""
    if delivery_id:
        return delivery_id.strip()[:64]
    return f"webhook-{os.urandom(4).hex()}"


def log_webhook_event(
    method: str,
    path: str,
    remote_addr: Optional[str] = None,
    event_type: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> str:
    """
    Log an inbound webhook request.

    Returns:
        Correlation ID for this event
    """
    if not correlation_id:
        correlation_id = new_correlation_id()

    with CorrelationContext(correlation_id):
        details = f" event={event_type}" if event_type else ""
        logger.info(f"Webhook received: {method} {path} from {remote_addr or '?'}{details}")

    return correlation_id


def log_processing_result(
    correlation_id: str,
    status: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
):
    """Log the outcome of handling one webhook."""
    with CorrelationContext(correlation_id):
        suffix = ""
        if metadata:
            suffix = " (" + ", ".join(f"{k}={v}" for k, v in metadata.items()) + ")"

        if status == "error":
            logger.error(f"Processing failed: {message}{suffix}")
        elif status == "denied":
            logger.warning(f"Request denied: {message}{suffix}")
        else:
            logger.info(f"Processing {status}: {message}{suffix}")
