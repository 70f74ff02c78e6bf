"""
Logging utility module for anonsync.

Provides JSON-structured logging with correlation ID propagation, so every line
emitted by one engine run (across its worker threads) can be grouped together.
"""

import json
import logging
import uuid
from typing import Optional, Dict, Any
from contextvars import ContextVar

from .timeutil import utcnow

# Context variable for correlation ID propagation
_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# Attributes every LogRecord carries; anything else was passed through `extra`
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context.

    Returns:
        Current correlation ID or None if not set
    """
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set correlation ID in context.

    Args:
        correlation_id: Optional correlation ID. If None, generates a new UUID.

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def clear_correlation_id():
    """Clear the correlation ID from context."""
    _correlation_id.set(None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            'timestamp': utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'thread': record.threadName,
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_data['correlation_id'] = correlation_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Fields passed via `extra=` land on the record as attributes
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Plain formatter for local runs, with the correlation ID prefixed."""

    def __init__(self):
        super().__init__('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        correlation_id = get_correlation_id()
        if correlation_id:
            return f"[{correlation_id[:8]}] {line}"
        return line


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install a single stream handler on the root logger.

    Module loggers (``logging.getLogger(__name__)``) propagate to it, so this is
    the only place handlers are attached. Calling it again replaces the handler.

    Args:
        level: Log level name
        fmt: ``json`` for structured output, ``text`` for human-readable lines
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, '_anonsync', False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    handler._anonsync = True
    root.addHandler(handler)
    root.setLevel(level.upper())

    # pymongo is chatty at DEBUG
    logging.getLogger('pymongo').setLevel(max(root.level, logging.INFO))


class CorrelationContext:
    """Context manager for correlation ID propagation."""

    def __init__(self, correlation_id: Optional[str] = None):
        """Initialize correlation context.

        Args:
            correlation_id: Optional correlation ID. If None, generates a new UUID.
        """
        self.correlation_id = correlation_id
        self._previous_id: Optional[str] = None

    def __enter__(self) -> str:
        """Enter context and set correlation ID.

        Returns:
            The correlation ID
        """
        self._previous_id = get_correlation_id()
        return set_correlation_id(self.correlation_id)

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and restore previous correlation ID."""
        if self._previous_id is not None:
            set_correlation_id(self._previous_id)
        else:
            clear_correlation_id()
