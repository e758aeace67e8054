"""
Error taxonomy and centralized error handling for depsync.

Provides the exception hierarchy raised by the synchronizer together with
structured, credential-sanitizing error logging and error callbacks.
"""

import logging
import re
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class DepsyncError(Exception):
    """Base class for all depsync errors."""

    def __init__(self, message: str, *, hint: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} ({self.hint})"
        return self.message


class ConfigurationError(DepsyncError):
    """The dependency table is malformed or self-contradictory.

    Fatal: raised before any filesystem mutation happens.
    """


class FetchError(DepsyncError):
    """A backend failed to materialize one entry."""


class MaterializeError(FetchError):
    """Swapping staged content into a destination failed."""


class CancelledError(DepsyncError):
    """The run was cancelled before the entry started."""


class ErrorLevel(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ErrorCategory(Enum):
    """Error categories for better classification."""

    CONFIGURATION = "CONFIGURATION"
    VALIDATION = "VALIDATION"
    FETCH = "FETCH"
    NETWORK = "NETWORK"
    FILESYSTEM = "FILESYSTEM"
    CANCELLATION = "CANCELLATION"


@dataclass
class ErrorContext:
    """Structured error context information."""

    level: ErrorLevel
    category: ErrorCategory
    message: str
    module: str
    function: str
    details: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[Exception] = None
    traceback_info: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error context to dictionary for logging."""
        return {
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "module": self.module,
            "function": self.function,
            "details": self.details,
            "exception_type": type(self.exception).__name__ if self.exception else None,
            "exception_message": str(self.exception) if self.exception else None,
            "traceback": self.traceback_info,
            "suggestions": self.suggestions,
        }


_SENSITIVE_PATTERNS = [
    (r'token["\s]*[:=]["\s]*([a-zA-Z0-9_\-+=/.]{8,})', 'token="[REDACTED]"'),
    (r'password["\s]*[:=]["\s]*([^\s"\']+)', 'password="[REDACTED]"'),
    (r"((?:https?|ssh|git)://[^@\s/]+:)[^@\s/]+@", r"\1[REDACTED]@"),
    (r"Authorization:\s*\w+\s+([^\s]+)", "Authorization: [REDACTED]"),
]


def sanitize_message(message: str) -> str:
    """
    Remove credentials from a message.

    Locators are free-form and may embed user:password pairs, so every
    string that can contain one goes through here before it is logged.

    Args:
        message: Original message

    Returns:
        str: Sanitized message
    """
    sanitized = message
    for pattern, replacement in _SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)
    return sanitized


class SecureLogger:
    """Secure logger that sanitizes sensitive information."""

    def __init__(self, name: str, level: int = logging.WARNING):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_error_context(self, context: ErrorContext) -> None:
        """
        Log error context with appropriate level.

        Args:
            context: Error context to log
        """
        log_data = {
            "category": context.category.value,
            "module": context.module,
            "function": context.function,
            "details": self._sanitize_dict(context.details),
        }

        if context.exception:
            log_data["exception"] = type(context.exception).__name__

        if context.suggestions:
            log_data["suggestions"] = context.suggestions

        log_message = f"{sanitize_message(context.message)} | {log_data}"
        level = getattr(logging, context.level.value)
        self.logger.log(level, log_message)

    def _sanitize_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Sanitize dictionary values to remove sensitive info."""
        sanitized = {}
        sensitive_keys = {"token", "password", "secret", "credential", "auth"}

        for key, value in data.items():
            if any(sensitive_key in key.lower() for sensitive_key in sensitive_keys):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_dict(value)
            elif isinstance(value, str):
                sanitized[key] = sanitize_message(value)
            else:
                sanitized[key] = value

        return sanitized


ErrorCallback = Callable[[ErrorContext], None]


class ErrorHandler:
    """
    Centralized error handler for consistent error management.

    Provides logging, callbacks, and error statistics for library
    components.
    """

    def __init__(
        self,
        logger_name: str = "depsync",
        log_level: int = logging.WARNING,
        enable_callbacks: bool = True,
    ):
        self.logger = SecureLogger(logger_name, log_level)
        self.enable_callbacks = enable_callbacks
        self.error_callbacks: Dict[ErrorCategory, List[ErrorCallback]] = {}
        self.global_callbacks: List[ErrorCallback] = []
        self.error_stats: Dict[str, int] = {}

    def register_callback(
        self, callback: ErrorCallback, category: Optional[ErrorCategory] = None
    ) -> None:
        """
        Register error callback.

        Args:
            callback: Function to call on errors
            category: Error category to filter, None for all errors
        """
        if not self.enable_callbacks:
            return

        if category is None:
            self.global_callbacks.append(callback)
        else:
            self.error_callbacks.setdefault(category, []).append(callback)

    def handle_error(
        self,
        level: ErrorLevel,
        category: ErrorCategory,
        message: str,
        module: str,
        function: str,
        exception: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ) -> ErrorContext:
        """
        Handle an error with structured logging and callbacks.

        Returns:
            ErrorContext: The created error context
        """
        context = ErrorContext(
            level=level,
            category=category,
            message=message,
            module=module,
            function=function,
            details=details or {},
            exception=exception,
            traceback_info=(
                "".join(traceback.format_exception(exception)) if exception else None
            ),
            suggestions=suggestions or [],
        )

        stat_key = f"{category.value}_{level.value}"
        self.error_stats[stat_key] = self.error_stats.get(stat_key, 0) + 1

        self.logger.log_error_context(context)

        if self.enable_callbacks:
            for callback in self.error_callbacks.get(category, []):
                try:
                    callback(context)
                except Exception as cb_error:
                    self.logger.logger.error(f"Error in callback: {cb_error}")

            for callback in self.global_callbacks:
                try:
                    callback(context)
                except Exception as cb_error:
                    self.logger.logger.error(f"Error in global callback: {cb_error}")

        return context

    def warning(
        self, category: ErrorCategory, message: str, module: str, function: str, **kwargs
    ) -> ErrorContext:
        """Handle warning level error."""
        return self.handle_error(
            ErrorLevel.WARNING, category, message, module, function, **kwargs
        )

    def error(
        self, category: ErrorCategory, message: str, module: str, function: str, **kwargs
    ) -> ErrorContext:
        """Handle error level error."""
        return self.handle_error(
            ErrorLevel.ERROR, category, message, module, function, **kwargs
        )

    def critical(
        self, category: ErrorCategory, message: str, module: str, function: str, **kwargs
    ) -> ErrorContext:
        """Handle critical level error."""
        return self.handle_error(
            ErrorLevel.CRITICAL, category, message, module, function, **kwargs
        )

    def get_error_stats(self) -> Dict[str, int]:
        """Get error statistics."""
        return self.error_stats.copy()

    def reset_stats(self) -> None:
        """Reset error statistics."""
        self.error_stats.clear()


_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def setup_error_handling(
    log_level: int = logging.WARNING,
    enable_callbacks: bool = True,
    logger_name: str = "depsync",
) -> ErrorHandler:
    """
    Setup global error handling configuration.

    Args:
        log_level: Logging level
        enable_callbacks: Whether to enable callbacks
        logger_name: Logger name

    Returns:
        ErrorHandler: Configured error handler
    """
    global _global_error_handler
    _global_error_handler = ErrorHandler(logger_name, log_level, enable_callbacks)
    return _global_error_handler


def log_fetch_error(
    message: str,
    module: str,
    function: str,
    entry_id: Optional[str] = None,
    locator: Optional[str] = None,
    attempt: Optional[int] = None,
    exception: Optional[Exception] = None,
) -> None:
    """
    Convenience function for logging per-entry fetch errors.

    Args:
        message: Error message
        module: Module name
        function: Function name
        entry_id: Dependency identifier
        locator: Source locator (will be sanitized)
        attempt: Attempt number that failed
        exception: Optional exception
    """
    details: Dict[str, Any] = {}
    if entry_id is not None:
        details["entry_id"] = entry_id
    if locator is not None:
        details["locator"] = locator
    if attempt is not None:
        details["attempt"] = attempt

    get_error_handler().error(
        ErrorCategory.FETCH,
        message,
        module,
        function,
        details=details,
        exception=exception,
        suggestions=[
            "Check that the locator is reachable",
            "Verify the pinned revision exists upstream",
        ],
    )


def log_filesystem_error(
    message: str,
    module: str,
    function: str,
    path: Optional[str] = None,
    exception: Optional[Exception] = None,
) -> None:
    """Convenience function for logging filesystem errors."""
    details = {"path": path} if path is not None else {}
    get_error_handler().error(
        ErrorCategory.FILESYSTEM,
        message,
        module,
        function,
        details=details,
        exception=exception,
        suggestions=["Check permissions and free space under the checkout root"],
    )


def log_configuration_error(
    message: str,
    module: str,
    function: str,
    exception: Optional[Exception] = None,
) -> None:
    """Log a fatal table or settings problem; the run stops before any change."""
    get_error_handler().critical(
        ErrorCategory.CONFIGURATION,
        message,
        module,
        function,
        exception=exception,
        suggestions=["Fix the dependency table, nothing on disk was modified"],
    )


def log_validation_error(
    message: str, module: str, function: str, setting: Optional[str] = None
) -> None:
    """Log an invalid configuration value that was replaced by its default."""
    details = {"setting": setting} if setting is not None else {}
    get_error_handler().warning(
        ErrorCategory.VALIDATION,
        message,
        module,
        function,
        details=details,
        suggestions=["Run 'depsync config validate' on the config file"],
    )


def log_network_error(
    message: str,
    module: str,
    function: str,
    url: Optional[str] = None,
    exception: Optional[Exception] = None,
) -> None:
    """Log a transport-level failure talking to a remote."""
    details = {"url": url} if url is not None else {}
    get_error_handler().warning(
        ErrorCategory.NETWORK,
        message,
        module,
        function,
        details=details,
        exception=exception,
        suggestions=["Check network connectivity and proxy settings"],
    )


def log_cancellation(entry_id: str, module: str, function: str) -> None:
    """Log an entry that was skipped because the run was cancelled."""
    get_error_handler().warning(
        ErrorCategory.CANCELLATION,
        f"Entry {entry_id} was not started",
        module,
        function,
        details={"entry_id": entry_id},
    )
