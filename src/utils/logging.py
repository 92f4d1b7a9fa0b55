"""
Logging utility module for the change-stream trigger.

Provides JSON-structured logging with a per-watch ID so lines emitted by
concurrent watchers in one process can be told apart.
"""

import json
import logging
import uuid
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variable for watch ID propagation
_watch_id: ContextVar[Optional[str]] = ContextVar('watch_id', default=None)

# Attributes every LogRecord has; anything else came in through extra={...}
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord('', logging.INFO, '', 0, '', (), None)).keys()
) | {'message', 'asctime', 'taskName'}


def get_watch_id() -> Optional[str]:
    """Get the current watch ID from context.

    Returns:
        Current watch ID or None if not set
    """
    return _watch_id.get()


def set_watch_id(watch_id: Optional[str] = None) -> str:
    """Set watch ID in context.

    Args:
        watch_id: Optional watch ID. If None, generates a new UUID.

    Returns:
        The watch ID that was set
    """
    if watch_id is None:
        watch_id = str(uuid.uuid4())
    _watch_id.set(watch_id)
    return watch_id


def clear_watch_id():
    """Clear the watch ID from context."""
    _watch_id.set(None)


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
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        watch_id = get_watch_id()
        if watch_id:
            log_data['watch_id'] = watch_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", json_format: bool = True) -> logging.Logger:
    """Install a single stream handler on the root logger.

    Module loggers created with logging.getLogger(__name__) propagate here.
    Calling this again replaces the handler instead of stacking a second one.

    Args:
        level: Level name, e.g. "INFO" or "DEBUG"
        json_format: Emit JSON lines when True, plain text otherwise

    Returns:
        The root logger
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in list(root.handlers):
        if getattr(handler, '_mongo_trigger_handler', False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._mongo_trigger_handler = True
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    root.addHandler(handler)

    return root


class WatchContext:
    """Context manager for watch ID propagation."""

    def __init__(self, watch_id: Optional[str] = None):
        """Initialize watch context.

        Args:
            watch_id: Optional watch ID. If None, generates a new UUID.
        """
        self.watch_id = watch_id
        self._previous_id: Optional[str] = None

    def __enter__(self) -> str:
        """Enter context and set watch ID.

        Returns:
            The watch ID
        """
        self._previous_id = get_watch_id()
        return set_watch_id(self.watch_id)

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and restore previous watch ID."""
        if self._previous_id is not None:
            set_watch_id(self._previous_id)
        else:
            clear_watch_id()
