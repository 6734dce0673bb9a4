"""Exception hierarchy for promkit.

Every error raised by the library derives from PromkitError so callers can
catch library failures at a single point, while the metric-model errors
also derive from ValueError where they represent invalid arguments.

Exception Hierarchy:
    PromkitError (base)
    ├── ConfigurationError
    │   ├── InvalidConfigValueError
    │   └── MissingConfigError
    ├── MetricsError
    │   ├── MetricValidationError (also ValueError)
    │   └── MetricRegistrationError
    ├── ScrapeFailedError
    └── SerializationError

Example:
    >>> try:
    ...     families = registry.collect_all()
    ... except ScrapeFailedError:
    ...     respond(503)
    ... except PromkitError as e:
    ...     logger.error(f"Collection error: {e}")
"""

from __future__ import annotations

from typing import Any


class PromkitError(Exception):
    """Base exception for all promkit errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
        cause: Optional original exception that caused this error.

    Example:
        >>> try:
        ...     raise PromkitError("Something went wrong", details={"metric": "x"})
        ... except PromkitError as e:
        ...     print(f"Error: {e.message}, Details: {e.details}")
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        """Return string representation with details if present."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"cause={self.cause!r})"
        )

    def with_context(self, **kwargs: Any) -> PromkitError:
        """Create a new exception with additional context details.

        The original exception is left untouched.

        Args:
            **kwargs: Additional context to add to details.

        Returns:
            New exception instance of the base type with merged details.

        Example:
            >>> e = PromkitError("Error", details={"key": "value"})
            >>> e.with_context(registry="default").details
            {'key': 'value', 'registry': 'default'}
        """
        merged_details = {**self.details, **kwargs}
        return PromkitError(self.message, details=merged_details, cause=self.cause)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PromkitError):
    """Exception for configuration-related errors.

    Attributes:
        config_key: Optional key that caused the configuration error.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize configuration error.

        Args:
            message: Human-readable error description.
            config_key: Optional key that caused the configuration error.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, cause=cause)
        self.config_key = config_key


class InvalidConfigValueError(ConfigurationError):
    """Exception for invalid configuration values.

    Attributes:
        config_key: The configuration key with invalid value.
        value: The invalid value that was provided.
        expected: Description of what was expected.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str,
        value: Any = None,
        expected: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize invalid config value error.

        Args:
            message: Human-readable error description.
            config_key: The configuration key with invalid value.
            value: The invalid value that was provided.
            expected: Description of what was expected.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        details["value"] = value
        if expected:
            details["expected"] = expected
        super().__init__(message, config_key=config_key, details=details, cause=cause)
        self.value = value
        self.expected = expected


class MissingConfigError(ConfigurationError):
    """Exception for missing required configuration."""

    def __init__(
        self,
        config_key: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize missing config error.

        Args:
            config_key: The missing required configuration key.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        message = f"Required configuration key '{config_key}' is missing"
        super().__init__(message, config_key=config_key, details=details, cause=cause)


# =============================================================================
# Metric Model Errors
# =============================================================================


class MetricsError(PromkitError):
    """Base exception for errors in the metric model.

    Attributes:
        metric_name: Name of the metric involved, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        metric_name: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize metrics error.

        Args:
            message: Human-readable error description.
            metric_name: Name of the metric involved.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        if metric_name:
            details["metric_name"] = metric_name
        super().__init__(message, details=details, cause=cause)
        self.metric_name = metric_name


class MetricValidationError(MetricsError, ValueError):
    """Raised when a metric is declared or used with invalid arguments.

    Covers invalid metric and label names, reserved label names, bad bucket
    bounds, invalid quantile objectives, label-count mismatches and negative
    counter increments.
    """


class MetricRegistrationError(MetricsError):
    """Raised when a name is redeclared with an incompatible shape.

    The registration that already exists is left unchanged.

    Attributes:
        existing_type: Kind of the metric that is already registered.
        requested_type: Kind of the metric that was being declared.
    """

    def __init__(
        self,
        message: str,
        *,
        metric_name: str | None = None,
        existing_type: str | None = None,
        requested_type: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize registration error.

        Args:
            message: Human-readable error description.
            metric_name: Name that collided.
            existing_type: Kind of the registered metric.
            requested_type: Kind of the metric being declared.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        if existing_type:
            details["existing_type"] = existing_type
        if requested_type:
            details["requested_type"] = requested_type
        super().__init__(message, metric_name=metric_name, details=details, cause=cause)
        self.existing_type = existing_type
        self.requested_type = requested_type


# =============================================================================
# Collection Errors
# =============================================================================


class ScrapeFailedError(PromkitError):
    """Signals that the current collection pass must not be published.

    Raised from before-collect callbacks or on-demand collectors. The
    registry aborts the whole pass and re-raises it unchanged so that the
    transport can answer with a distinct failure (for example HTTP 503).

    Example:
        >>> def refresh() -> None:
        ...     if not backend.is_reachable():
        ...         raise ScrapeFailedError("backend unreachable")
        >>> registry.add_before_collect_callback(refresh)
    """


class SerializationError(PromkitError):
    """Raised when metric families cannot be rendered.

    Attributes:
        format_name: Name of the exposition format involved.
    """

    def __init__(
        self,
        message: str,
        *,
        format_name: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize serialization error.

        Args:
            message: Human-readable error description.
            format_name: Name of the exposition format involved.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        if format_name:
            details["format"] = format_name
        super().__init__(message, details=details, cause=cause)
        self.format_name = format_name


# =============================================================================
# Utilities
# =============================================================================


def wrap_exception(
    exception: Exception,
    wrapper_class: type[PromkitError] = PromkitError,
    message: str | None = None,
    **kwargs: Any,
) -> PromkitError:
    """Wrap an arbitrary exception in the promkit hierarchy.

    Args:
        exception: The original exception to wrap.
        wrapper_class: The exception class to wrap with.
        message: Optional custom message. Defaults to original exception message.
        **kwargs: Additional arguments to pass to the wrapper class.

    Returns:
        A new exception instance wrapping the original.

    Example:
        >>> try:
        ...     float("abc")
        ... except ValueError as e:
        ...     raise wrap_exception(e, ConfigurationError, config_key="buckets")
    """
    msg = message if message is not None else str(exception)
    return wrapper_class(msg, cause=exception, **kwargs)
