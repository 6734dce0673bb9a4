"""Structured logging for promkit.

Loggers emit LogRecord objects carrying a message plus keyword fields and
the fields of the enclosing LogContext. Records are rendered by a text or
JSON formatter and dispatched to handlers. Loggers have no handlers until
configure_logging() is called, so the library stays silent by default.

Example:
    >>> from promkit.logging import get_logger, LogContext, configure_logging
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> with LogContext(scrape_id="a1b2"):
    ...     logger.debug("Scrape finished", families=12)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from abc import abstractmethod
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    ClassVar,
    Protocol,
    Self,
    runtime_checkable,
)


if TYPE_CHECKING:
    from collections.abc import Callable, Mapping


# =============================================================================
# Levels
# =============================================================================


class LogLevel(Enum):
    """Log severity levels, numerically aligned with the stdlib levels."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def from_string(cls, level: str) -> LogLevel:
        """Create from a level name, falling back to INFO."""
        try:
            return cls[level.upper()]
        except KeyError:
            return cls.INFO


DEFAULT_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_token",
    "authorization",
    "credentials",
})


# =============================================================================
# Context Management
# =============================================================================


@dataclass(frozen=True, slots=True)
class LogContextData:
    """Immutable set of fields attached to every record in a scope."""

    fields: Mapping[str, Any] = field(default_factory=dict)

    def merge(self, other: LogContextData) -> LogContextData:
        """Return a context whose fields are overridden by ``other``."""
        return LogContextData(fields={**self.fields, **other.fields})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return dict(self.fields)


_log_context: ContextVar[LogContextData] = ContextVar(
    "promkit_log_context", default=LogContextData()
)


class LogContext:
    """Context manager that adds fields to all records emitted inside it.

    Nested contexts merge, the innermost value winning.

    Example:
        >>> with LogContext(registry="default"):
        ...     with LogContext(scrape_id="42"):
        ...         logger.info("Collecting")  # carries registry and scrape_id
    """

    def __init__(self, **fields: Any) -> None:
        self._new_context = LogContextData(fields=fields)
        self._token: Any = None

    def __enter__(self) -> Self:
        merged = _log_context.get().merge(self._new_context)
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def get_current_context() -> LogContextData:
    """Get the log context of the current execution scope."""
    return _log_context.get()


# =============================================================================
# Log Record
# =============================================================================


@dataclass(slots=True)
class LogRecord:
    """Structured log record.

    Attributes:
        level: Log severity level.
        message: Log message.
        logger_name: Name of the emitting logger.
        timestamp: When the record was created.
        context: Context fields active when the record was created.
        extra: Keyword fields passed to the logging call.
        exc_info: Exception attached to the record, if any.
    """

    level: LogLevel
    message: str
    logger_name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    context: LogContextData = field(default_factory=LogContextData)
    extra: dict[str, Any] = field(default_factory=dict)
    exc_info: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result = {
            "level": self.level.name,
            "message": self.message,
            "logger": self.logger_name,
            "timestamp": self.timestamp.isoformat(),
            **self.context.to_dict(),
            **self.extra,
        }
        if self.exc_info:
            result["exception"] = str(self.exc_info)
            result["exception_type"] = type(self.exc_info).__name__
        return result


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class LogHandler(Protocol):
    """Protocol for log handlers."""

    @abstractmethod
    def handle(self, record: LogRecord) -> None:
        """Process a log record."""
        ...

    @abstractmethod
    def flush(self) -> None:
        """Flush any buffered output."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release handler resources."""
        ...


@runtime_checkable
class LogFormatter(Protocol):
    """Protocol for log formatters."""

    @abstractmethod
    def format(self, record: LogRecord) -> str:
        """Render a log record as a string."""
        ...


# =============================================================================
# Sensitive Data Masking
# =============================================================================


class SensitiveDataMasker:
    """Replaces the values of sensitive keys in structured fields.

    Example:
        >>> SensitiveDataMasker().mask_dict({"token": "abc", "name": "x"})
        {'token': '***MASKED***', 'name': 'x'}
    """

    MASK_VALUE: ClassVar[str] = "***MASKED***"

    def __init__(
        self,
        sensitive_keys: frozenset[str] | None = None,
        enabled: bool = True,
    ) -> None:
        self.enabled = enabled
        self._sensitive_keys = sensitive_keys or DEFAULT_SENSITIVE_KEYS

    def mask_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Mask sensitive values in a dictionary, recursing into nested dicts.

        Args:
            data: Dictionary to mask.

        Returns:
            New dictionary with sensitive values replaced.
        """
        if not self.enabled:
            return data

        result: dict[str, Any] = {}
        for key, value in data.items():
            if key.lower() in self._sensitive_keys:
                result[key] = self.MASK_VALUE
            elif isinstance(value, dict):
                result[key] = self.mask_dict(value)
            else:
                result[key] = value
        return result


_default_masker = SensitiveDataMasker()


# =============================================================================
# Formatters
# =============================================================================


class TextFormatter:
    """Human-readable formatter.

    Example output:
        2024-01-15T10:30:45.123456+00:00 [DEBUG] promkit.registry: Scrape finished | families=3
    """

    def __init__(self, include_context: bool = True) -> None:
        self.include_context = include_context

    def format(self, record: LogRecord) -> str:
        """Format a record as a single line of text."""
        parts = [
            record.timestamp.isoformat(),
            f"[{record.level.name}]",
            f"{record.logger_name}:",
            record.message,
        ]

        fields = dict(record.extra)
        if self.include_context:
            fields = {**record.context.to_dict(), **fields}
        if fields:
            parts.append("| " + " ".join(f"{k}={v}" for k, v in fields.items()))

        if record.exc_info:
            parts.append(f"| exception={record.exc_info!r}")

        return " ".join(parts)


class JSONFormatter:
    """Formatter producing one JSON object per record."""

    def __init__(
        self,
        masker: SensitiveDataMasker | None = None,
        indent: int | None = None,
    ) -> None:
        self._masker = masker or _default_masker
        self._indent = indent

    def format(self, record: LogRecord) -> str:
        """Format a record as JSON."""
        data = self._masker.mask_dict(record.to_dict())
        return json.dumps(data, indent=self._indent, default=str)


# =============================================================================
# Handlers
# =============================================================================


class StreamHandler:
    """Handler writing formatted records to a stream (stderr by default)."""

    def __init__(
        self,
        stream: Any = None,
        formatter: LogFormatter | None = None,
        level: LogLevel = LogLevel.DEBUG,
    ) -> None:
        self._stream = stream or sys.stderr
        self._formatter = formatter or TextFormatter()
        self._level = level
        self._lock = threading.Lock()
        self._closed = False

    def handle(self, record: LogRecord) -> None:
        """Write the record if it meets the handler level."""
        if self._closed or record.level.value < self._level.value:
            return
        message = self._formatter.format(record)
        with self._lock:
            self._stream.write(message + "\n")

    def flush(self) -> None:
        """Flush the underlying stream."""
        if not self._closed and hasattr(self._stream, "flush"):
            self._stream.flush()

    def close(self) -> None:
        """Flush and stop accepting records."""
        self.flush()
        self._closed = True


class BufferingHandler:
    """Handler keeping records in memory.

    When ``capacity`` is reached the buffer is passed to ``flush_callback``
    (if any) and cleared. Tests use the ``records`` property to assert on
    emitted logs.
    """

    def __init__(
        self,
        capacity: int | None = None,
        flush_callback: Callable[[list[LogRecord]], None] | None = None,
    ) -> None:
        self._capacity = capacity
        self._flush_callback = flush_callback
        self._buffer: list[LogRecord] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def records(self) -> list[LogRecord]:
        """Snapshot of the buffered records."""
        with self._lock:
            return list(self._buffer)

    def handle(self, record: LogRecord) -> None:
        """Buffer the record, flushing when capacity is reached."""
        if self._closed:
            return
        with self._lock:
            self._buffer.append(record)
            full = self._capacity is not None and len(self._buffer) >= self._capacity
        if full:
            self.flush()

    def flush(self) -> None:
        """Hand buffered records to the callback and clear the buffer."""
        with self._lock:
            pending = list(self._buffer)
            self._buffer.clear()
        if pending and self._flush_callback:
            self._flush_callback(pending)

    def close(self) -> None:
        """Flush and stop accepting records."""
        self.flush()
        self._closed = True


# =============================================================================
# Logger
# =============================================================================


class PromkitLogger:
    """Logger emitting structured records to its handlers.

    Example:
        >>> logger = PromkitLogger("promkit.registry")
        >>> logger.warning("Collector name collision", name="http_requests_total")
    """

    def __init__(
        self,
        name: str,
        level: LogLevel = LogLevel.INFO,
        handlers: list[LogHandler] | None = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        self.name = name
        self.level = level
        self._handlers: list[LogHandler] = handlers or []
        self._masker = masker or _default_masker
        self._disabled = False

    @property
    def handlers(self) -> list[LogHandler]:
        """Handlers currently attached to this logger."""
        return list(self._handlers)

    def add_handler(self, handler: LogHandler) -> None:
        """Attach a handler if it is not attached yet."""
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: LogHandler) -> None:
        """Detach a handler if attached."""
        if handler in self._handlers:
            self._handlers.remove(handler)

    def is_enabled_for(self, level: LogLevel) -> bool:
        """Check whether records at ``level`` would be emitted."""
        return not self._disabled and level.value >= self.level.value

    def _log(
        self,
        level: LogLevel,
        message: str,
        exc_info: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        if not self._handlers or not self.is_enabled_for(level):
            return

        record = LogRecord(
            level=level,
            message=message,
            logger_name=self.name,
            context=get_current_context(),
            extra=self._masker.mask_dict(kwargs),
            exc_info=exc_info,
        )
        for handler in self._handlers:
            try:
                handler.handle(record)
            except Exception:  # noqa: BLE001
                # Handler failures never reach the caller.
                continue

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log at DEBUG level."""
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log at INFO level."""
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log at WARNING level."""
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, exc_info: BaseException | None = None, **kwargs: Any) -> None:
        """Log at ERROR level.

        Args:
            message: Log message.
            exc_info: Optional exception to attach.
            **kwargs: Additional structured fields.
        """
        self._log(LogLevel.ERROR, message, exc_info=exc_info, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log at ERROR level, attaching the exception being handled."""
        self._log(LogLevel.ERROR, message, exc_info=sys.exc_info()[1], **kwargs)


# =============================================================================
# Logger Registry
# =============================================================================


class LoggerRegistry:
    """Creates loggers by name and applies the global configuration."""

    def __init__(self) -> None:
        self._loggers: dict[str, PromkitLogger] = {}
        self._root_handlers: list[LogHandler] = []
        self._root_level: LogLevel = LogLevel.from_string(
            os.environ.get("PROMKIT_LOG_LEVEL", "INFO")
        )
        self._lock = threading.Lock()

    def get_logger(self, name: str, level: LogLevel | None = None) -> PromkitLogger:
        """Get or create a logger by name.

        Args:
            name: Logger name.
            level: Optional level override for a newly created logger.

        Returns:
            PromkitLogger instance.
        """
        with self._lock:
            logger = self._loggers.get(name)
            if logger is None:
                logger = PromkitLogger(
                    name=name,
                    level=level or self._root_level,
                    handlers=list(self._root_handlers),
                )
                self._loggers[name] = logger
            return logger

    def configure(
        self,
        level: LogLevel = LogLevel.INFO,
        handlers: list[LogHandler] | None = None,
        format: str = "text",
    ) -> None:
        """Apply level and handlers to all existing and future loggers.

        Args:
            level: Default log level.
            handlers: Handlers to install. When omitted a stderr StreamHandler
                with the requested format is used.
            format: Format type ('text' or 'json').
        """
        if handlers is None:
            formatter: LogFormatter = JSONFormatter() if format == "json" else TextFormatter()
            handlers = [StreamHandler(formatter=formatter, level=level)]

        with self._lock:
            self._root_level = level
            self._root_handlers = list(handlers)
            for logger in self._loggers.values():
                logger.level = level
                logger._handlers = list(handlers)

    def disable(self) -> None:
        """Silence every logger."""
        with self._lock:
            for logger in self._loggers.values():
                logger._disabled = True

    def enable(self) -> None:
        """Re-enable every logger."""
        with self._lock:
            for logger in self._loggers.values():
                logger._disabled = False


_registry = LoggerRegistry()


def get_logger(name: str, level: LogLevel | None = None) -> PromkitLogger:
    """Get a logger by name.

    Args:
        name: Logger name (typically __name__).
        level: Optional level override.

    Returns:
        PromkitLogger instance.
    """
    return _registry.get_logger(name, level)


def configure_logging(
    level: LogLevel | str | None = None,
    handlers: list[LogHandler] | None = None,
    format: str | None = None,
) -> None:
    """Configure global logging.

    Unset arguments fall back to PROMKIT_LOG_LEVEL and PROMKIT_LOG_FORMAT.

    Args:
        level: Default log level (LogLevel or name).
        handlers: Handlers to install.
        format: Format type ('text' or 'json').

    Example:
        >>> configure_logging(level="DEBUG", format="json")
    """
    if level is None:
        level = os.environ.get("PROMKIT_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = LogLevel.from_string(level)
    if format is None:
        format = os.environ.get("PROMKIT_LOG_FORMAT", "text")
    _registry.configure(level=level, handlers=handlers, format=format)


# =============================================================================
# Stdlib Bridge
# =============================================================================


class StdlibLoggerAdapter:
    """Handler forwarding records to Python's standard logging module.

    Lets an application route promkit records through its own ``logging``
    configuration. Without an explicit logger each record goes to the
    stdlib logger of the same name, so ``logging.getLogger("promkit")``
    controls the whole library.

    Example:
        >>> configure_logging(level="DEBUG", handlers=[StdlibLoggerAdapter()])
    """

    def __init__(
        self,
        stdlib_logger: logging.Logger | None = None,
        masker: SensitiveDataMasker | None = None,
    ) -> None:
        self._logger = stdlib_logger
        self._masker = masker or _default_masker

    def handle(self, record: LogRecord) -> None:
        """Forward a record, appending context and extra fields to the message."""
        target = self._logger or logging.getLogger(record.logger_name)
        fields = self._masker.mask_dict({**record.context.to_dict(), **record.extra})

        message = record.message
        if fields:
            message = f"{message} | " + " ".join(f"{k}={v}" for k, v in fields.items())

        exc_info = None
        if record.exc_info is not None:
            exc_info = (type(record.exc_info), record.exc_info, record.exc_info.__traceback__)
        target.log(record.level.value, message, exc_info=exc_info)

    def flush(self) -> None:
        logger = self._logger or logging.getLogger()
        for handler in logger.handlers:
            handler.flush()

    def close(self) -> None:
        pass
