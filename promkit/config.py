"""Configuration for promkit.

Library-wide defaults live in the immutable MetricsConfig. It can be built
from keyword arguments, a dictionary, a JSON/YAML file or environment
variables, and copied with ``with_*`` builder methods.

Configuration Precedence (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Default values

Example:
    >>> from promkit.config import MetricsConfig
    >>> config = MetricsConfig.load("metrics.yaml")
    >>> config = config.with_static_labels(service="checkout")
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Self

from promkit.exceptions import (
    ConfigurationError,
    InvalidConfigValueError,
    MissingConfigError,
    PromkitError,
    wrap_exception,
)
from promkit.labels import KIND_RESERVED_LABEL_NAMES, validate_static_labels
from promkit.metrics import (
    DEFAULT_AGE_BUCKETS,
    DEFAULT_BUCKETS,
    DEFAULT_MAX_AGE_SECONDS,
    validate_buckets,
)
from promkit.quantile import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_OBJECTIVES,
    QuantileEpsilonPair,
    normalize_objectives,
)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_ENV_PREFIX = "PROMKIT"


# =============================================================================
# Environment Variable Utilities
# =============================================================================


class EnvReader:
    """Reads typed environment variables sharing a prefix.

    Example:
        >>> reader = EnvReader(prefix="PROMKIT")
        >>> age_buckets = reader.get_int("AGE_BUCKETS", default=5)
    """

    def __init__(self, prefix: str = DEFAULT_ENV_PREFIX) -> None:
        self.prefix = prefix

    def _make_key(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}_{name}"
        return name

    def get(self, name: str, default: str | None = None) -> str | None:
        """Get a string variable, or ``default`` when unset."""
        return os.environ.get(self._make_key(name), default)

    def get_required(self, name: str) -> str:
        """Get a string variable that must be set.

        Raises:
            MissingConfigError: If the variable is not set.
        """
        key = self._make_key(name)
        value = os.environ.get(key)
        if value is None:
            raise MissingConfigError(key)
        return value

    def _parse(self, name: str, raw: str, parser: Any, expected: str) -> Any:
        try:
            return parser(raw)
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid {expected} value for {self._make_key(name)}",
                config_key=self._make_key(name),
                value=raw,
                expected=expected,
                cause=e,
            ) from e

    def get_int(self, name: str, default: int | None = None) -> int | None:
        """Get an integer variable.

        Raises:
            InvalidConfigValueError: If the value is not an integer.
        """
        value = self.get(name)
        if value is None:
            return default
        return self._parse(name, value, int, "integer")

    def get_float(self, name: str, default: float | None = None) -> float | None:
        """Get a float variable.

        Raises:
            InvalidConfigValueError: If the value is not a number.
        """
        value = self.get(name)
        if value is None:
            return default
        return self._parse(name, value, float, "float")

    def get_bool(self, name: str, default: bool | None = None) -> bool | None:
        """Get a boolean variable.

        Truthy values: "1", "true", "yes", "on" (case-insensitive)
        Falsy values: "0", "false", "no", "off" (case-insensitive)

        Raises:
            InvalidConfigValueError: If the value is not a recognised boolean.
        """
        value = self.get(name)
        if value is None:
            return default
        lower_value = value.strip().lower()
        if lower_value in ("1", "true", "yes", "on"):
            return True
        if lower_value in ("0", "false", "no", "off"):
            return False
        raise InvalidConfigValueError(
            f"Invalid boolean value for {self._make_key(name)}",
            config_key=self._make_key(name),
            value=value,
            expected="boolean (1/0, true/false, yes/no, on/off)",
        )

    def get_list(
        self,
        name: str,
        separator: str = ",",
        default: list[str] | None = None,
    ) -> list[str] | None:
        """Get a separated list variable, items stripped."""
        value = self.get(name)
        if value is None:
            return default
        if not value.strip():
            return []
        return [item.strip() for item in value.split(separator)]

    def get_json(self, name: str, default: Any = None) -> Any:
        """Get a JSON-encoded variable.

        Raises:
            InvalidConfigValueError: If the value is not valid JSON.
        """
        value = self.get(name)
        if value is None:
            return default
        return self._parse(name, value, json.loads, "JSON")


# =============================================================================
# File Configuration Utilities
# =============================================================================


def _load_yaml(path: Path) -> dict[str, Any]:
    import yaml

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e
    return data if isinstance(data, dict) else {}


def _load_json(path: Path) -> dict[str, Any]:
    try:
        with path.open() as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Failed to parse JSON configuration: {path}",
            details={"path": str(path)},
            cause=e,
        ) from e
    return data if isinstance(data, dict) else {}


def load_config_file(path: Path | str) -> dict[str, Any]:
    """Load configuration from a JSON or YAML file.

    Args:
        path: Path to a ``.json``, ``.yaml`` or ``.yml`` file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        ConfigurationError: If the file is missing, unsupported or malformed.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            details={"path": str(path)},
        )

    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return _load_yaml(path)
    if suffix == ".json":
        return _load_json(path)
    raise ConfigurationError(
        f"Unsupported configuration file format: {suffix}",
        details={"path": str(path), "suffix": suffix},
    )


# =============================================================================
# Metrics Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class MetricsConfig:
    """Library-wide metric defaults.

    Attributes:
        static_labels: Labels attached to every series of the registry.
            ``le`` and ``quantile`` are rejected.
        default_buckets: Histogram bounds used when none are given.
        default_objectives: Summary objectives used when none are given.
        max_age_seconds: Summary sliding window length.
        age_buckets: Streams rotating through the summary window.
        buffer_size: Summary observations buffered before merging.
        suppress_initial_value: Hide new series until their first mutation.
        register_process_metrics: Register the process collector on the
            default registry.

    Example:
        >>> config = MetricsConfig(static_labels={"env": "prod"})
        >>> config.with_decay(max_age_seconds=60, age_buckets=3).age_buckets
        3
    """

    static_labels: dict[str, str] = field(default_factory=dict)
    default_buckets: tuple[float, ...] = DEFAULT_BUCKETS
    default_objectives: tuple[QuantileEpsilonPair, ...] = DEFAULT_OBJECTIVES
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS
    age_buckets: int = DEFAULT_AGE_BUCKETS
    buffer_size: int = DEFAULT_BUFFER_SIZE
    suppress_initial_value: bool = False
    register_process_metrics: bool = True

    def __post_init__(self) -> None:
        """Validate and normalize configuration values."""
        if self.max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        if self.age_buckets < 1:
            raise ValueError("age_buckets must be at least 1")
        if self.buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        validate_buckets(self.default_buckets)
        object.__setattr__(self, "default_buckets", tuple(float(b) for b in self.default_buckets))
        object.__setattr__(self, "default_objectives", normalize_objectives(self.default_objectives))
        object.__setattr__(
            self,
            "static_labels",
            validate_static_labels(self.static_labels, reserved=KIND_RESERVED_LABEL_NAMES),
        )

    def with_static_labels(self, **labels: str) -> MetricsConfig:
        """Create config with additional static labels."""
        return replace(self, static_labels={**self.static_labels, **labels})

    def with_default_buckets(self, *buckets: float) -> MetricsConfig:
        """Create config with new default histogram bounds."""
        return replace(self, default_buckets=tuple(buckets))

    def with_objectives(self, objectives: Any) -> MetricsConfig:
        """Create config with new default summary objectives.

        Args:
            objectives: ``{quantile: epsilon}`` mapping or pairs.
        """
        return replace(self, default_objectives=normalize_objectives(objectives))

    def with_decay(
        self,
        max_age_seconds: float | None = None,
        age_buckets: int | None = None,
        buffer_size: int | None = None,
    ) -> MetricsConfig:
        """Create config with new summary window settings."""
        return replace(
            self,
            max_age_seconds=self.max_age_seconds if max_age_seconds is None else max_age_seconds,
            age_buckets=self.age_buckets if age_buckets is None else age_buckets,
            buffer_size=self.buffer_size if buffer_size is None else buffer_size,
        )

    def with_process_metrics(self, enabled: bool) -> MetricsConfig:
        """Create config with process metrics toggled."""
        return replace(self, register_process_metrics=enabled)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "static_labels": dict(self.static_labels),
            "default_buckets": list(self.default_buckets),
            "default_objectives": [[o.quantile, o.epsilon] for o in self.default_objectives],
            "max_age_seconds": self.max_age_seconds,
            "age_buckets": self.age_buckets,
            "buffer_size": self.buffer_size,
            "suppress_initial_value": self.suppress_initial_value,
            "register_process_metrics": self.register_process_metrics,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create MetricsConfig from a dictionary.

        Objectives may be given as pairs or as a ``{quantile: epsilon}``
        mapping whose keys may be strings.

        Raises:
            ConfigurationError: If a value cannot be used.
        """
        objectives = data.get("default_objectives", DEFAULT_OBJECTIVES)
        if isinstance(objectives, dict):
            objectives = [(float(q), float(e)) for q, e in objectives.items()]
        try:
            return cls(
                static_labels=dict(data.get("static_labels") or {}),
                default_buckets=tuple(data.get("default_buckets", DEFAULT_BUCKETS)),
                default_objectives=objectives,
                max_age_seconds=float(data.get("max_age_seconds", DEFAULT_MAX_AGE_SECONDS)),
                age_buckets=int(data.get("age_buckets", DEFAULT_AGE_BUCKETS)),
                buffer_size=int(data.get("buffer_size", DEFAULT_BUFFER_SIZE)),
                suppress_initial_value=bool(data.get("suppress_initial_value", False)),
                register_process_metrics=bool(data.get("register_process_metrics", True)),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, PromkitError):
                raise ConfigurationError(
                    f"Invalid metrics configuration: {e.message}",
                    details=e.details,
                    cause=e,
                ) from e
            raise wrap_exception(
                e,
                ConfigurationError,
                f"Invalid metrics configuration: {e}",
            ) from e

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX) -> Self:
        """Create configuration from environment variables.

        Environment Variables:
            {PREFIX}_STATIC_LABELS: JSON object of static labels
            {PREFIX}_DEFAULT_BUCKETS: Comma-separated histogram bounds
            {PREFIX}_OBJECTIVES: JSON object ``{"0.5": 0.05, ...}``
            {PREFIX}_MAX_AGE_SECONDS: Summary window length (float)
            {PREFIX}_AGE_BUCKETS: Summary age buckets (int)
            {PREFIX}_BUFFER_SIZE: Summary buffer size (int)
            {PREFIX}_SUPPRESS_INITIAL_VALUE: Suppress initial values (bool)
            {PREFIX}_REGISTER_PROCESS_METRICS: Register process metrics (bool)

        Args:
            prefix: Environment variable prefix.

        Returns:
            New MetricsConfig instance.
        """
        return cls.from_dict(_env_overrides(EnvReader(prefix)))

    @classmethod
    def from_file(cls, path: Path | str) -> Self:
        """Create configuration from a JSON or YAML file.

        A top-level ``metrics`` mapping is used when present, otherwise the
        whole document.
        """
        data = load_config_file(path)
        section = data.get("metrics")
        return cls.from_dict(section if isinstance(section, dict) else data)

    @classmethod
    def load(
        cls,
        config_file: Path | str | None = None,
        env_prefix: str = DEFAULT_ENV_PREFIX,
    ) -> Self:
        """Load configuration from an optional file overlaid with the environment.

        Args:
            config_file: Optional JSON or YAML file.
            env_prefix: Environment variable prefix.

        Returns:
            Merged MetricsConfig; environment values win over file values.
        """
        data: dict[str, Any] = {}
        if config_file is not None:
            data = cls.from_file(config_file).to_dict()
        data.update(_env_overrides(EnvReader(env_prefix)))
        return cls.from_dict(data)


def _env_overrides(env: EnvReader) -> dict[str, Any]:
    """Collect the configuration keys that are set in the environment."""
    data: dict[str, Any] = {}

    static_labels = env.get_json("STATIC_LABELS")
    if static_labels is not None:
        if not isinstance(static_labels, dict):
            raise InvalidConfigValueError(
                "Static labels must be a JSON object",
                config_key=env._make_key("STATIC_LABELS"),
                value=static_labels,
                expected="JSON object",
            )
        data["static_labels"] = static_labels

    buckets = env.get_list("DEFAULT_BUCKETS")
    if buckets is not None:
        data["default_buckets"] = [
            env._parse("DEFAULT_BUCKETS", item, float, "float list") for item in buckets
        ]

    objectives = env.get_json("OBJECTIVES")
    if objectives is not None:
        data["default_objectives"] = objectives

    for key, name, getter in (
        ("max_age_seconds", "MAX_AGE_SECONDS", env.get_float),
        ("age_buckets", "AGE_BUCKETS", env.get_int),
        ("buffer_size", "BUFFER_SIZE", env.get_int),
        ("suppress_initial_value", "SUPPRESS_INITIAL_VALUE", env.get_bool),
        ("register_process_metrics", "REGISTER_PROCESS_METRICS", env.get_bool),
    ):
        value = getter(name)
        if value is not None:
            data[key] = value
    return data


DEFAULT_METRICS_CONFIG = MetricsConfig()
