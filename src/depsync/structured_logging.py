"""
Structured logging configuration for depsync.

Provides consistent, machine-readable logging for synchronization runs so
CI systems can follow which dependency was fetched, updated or failed.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .error_handling import sanitize_message

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "getMessage",
    "exc_info",
    "exc_text",
    "stack_info",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry[key] = sanitize_message(value) if isinstance(value, str) else value

        return json.dumps(log_entry, default=str)


class SyncLogger:
    """Structured logger for synchronization events."""

    def __init__(self, name: str = "depsync"):
        self.logger = logging.getLogger(f"depsync.{name}")
        self._setup_logger()
        self.run_context: Dict[str, Any] = {}

    def _setup_logger(self) -> None:
        """Setup logger with structured formatting."""
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.WARNING)
            self.logger.propagate = False

    def set_run_context(
        self,
        run_id: Optional[str] = None,
        root: Optional[str] = None,
        total_entries: Optional[int] = None,
    ) -> None:
        """Set run context for logging."""
        self.run_context = {}
        if run_id:
            self.run_context["run_id"] = run_id
        if root:
            self.run_context["root"] = root
        if total_entries is not None:
            self.run_context["total_entries"] = total_entries

    def clear_run_context(self) -> None:
        """Clear run context."""
        self.run_context.clear()

    def _log(self, level: str, event_type: str, **kwargs) -> None:
        log_data = {"event_type": event_type, **self.run_context, **kwargs}
        getattr(self.logger, level)(event_type, extra=log_data)

    def info(self, event_type: str, **kwargs) -> None:
        """Log info level event."""
        self._log("info", event_type, **kwargs)

    def warning(self, event_type: str, **kwargs) -> None:
        """Log warning level event."""
        self._log("warning", event_type, **kwargs)

    def error(self, event_type: str, **kwargs) -> None:
        """Log error level event."""
        self._log("error", event_type, **kwargs)

    def debug(self, event_type: str, **kwargs) -> None:
        """Log debug level event."""
        self._log("debug", event_type, **kwargs)


_sync_logger = SyncLogger("sync")
_fetch_logger = SyncLogger("fetch")
_materialize_logger = SyncLogger("materialize")

_ALL_LOGGERS = (_sync_logger, _fetch_logger, _materialize_logger)


def get_sync_logger() -> SyncLogger:
    """Get synchronizer logger."""
    return _sync_logger


def get_fetch_logger() -> SyncLogger:
    """Get backend fetch logger."""
    return _fetch_logger


def get_materialize_logger() -> SyncLogger:
    """Get staging/swap logger."""
    return _materialize_logger


def log_sync_start(run_id: str, root: str, total_entries: int, dry_run: bool) -> None:
    """Log sync start event."""
    set_run_context(run_id, root, total_entries)
    _sync_logger.info("sync_started", dry_run=dry_run)


def log_sync_complete(
    duration_ms: int,
    succeeded: bool,
    counts: Dict[str, int],
) -> None:
    """Log sync completion event."""
    level = "info" if succeeded else "warning"
    getattr(_sync_logger, level)(
        "sync_completed",
        sync_duration_ms=duration_ms,
        succeeded=succeeded,
        **counts,
    )
    clear_run_context()


def log_entry_outcome(
    entry_id: str,
    status: str,
    revision: str,
    reason: Optional[str] = None,
    duration_ms: Optional[int] = None,
) -> None:
    """Log one entry's outcome."""
    log_data: Dict[str, Any] = {
        "entry_id": entry_id,
        "status": status,
        "revision": revision,
    }
    if reason:
        log_data["reason"] = reason
    if duration_ms is not None:
        log_data["duration_ms"] = duration_ms

    if status == "failed":
        _sync_logger.warning("entry_outcome", **log_data)
    else:
        _sync_logger.info("entry_outcome", **log_data)


def set_run_context(
    run_id: Optional[str] = None,
    root: Optional[str] = None,
    total_entries: Optional[int] = None,
) -> None:
    """Set global run context for all loggers."""
    for logger in _ALL_LOGGERS:
        logger.set_run_context(run_id, root, total_entries)


def clear_run_context() -> None:
    """Clear global run context."""
    for logger in _ALL_LOGGERS:
        logger.clear_run_context()


def configure_logging(log_level: str = "WARNING", log_file: Optional[str] = None) -> None:
    """Configure logging for the application."""
    level = getattr(logging, log_level.upper(), logging.WARNING)

    for logger in _ALL_LOGGERS:
        logger.logger.setLevel(level)
        if log_file and not any(
            isinstance(h, logging.FileHandler) for h in logger.logger.handlers
        ):
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(StructuredFormatter())
            logger.logger.addHandler(file_handler)
