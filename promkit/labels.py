"""Label keys and name validation.

A LabelKey pairs the label names declared by a collector with the values
identifying one child. Equality and hashing use the values only because
all children of a collector share the same names.

Example:
    >>> key = LabelKey(("method", "code"), ("GET", "200"))
    >>> key.pairs()
    (('method', 'GET'), ('code', '200'))
    >>> key == LabelKey(("other", "names"), ("GET", "200"))
    True
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, ClassVar

from promkit.exceptions import MetricValidationError


if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping, Sequence


METRIC_NAME_PATTERN = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
RESERVED_LABEL_PREFIX = "__"

# Labels the histogram and summary formats add to their own lines.
KIND_RESERVED_LABEL_NAMES = ("le", "quantile")


# =============================================================================
# Validation
# =============================================================================


def validate_metric_name(name: str) -> str:
    """Validate a metric family name.

    Args:
        name: Name to validate.

    Returns:
        The name, unchanged.

    Raises:
        MetricValidationError: If the name does not match the metric name pattern.
    """
    if not isinstance(name, str) or not METRIC_NAME_PATTERN.match(name):
        raise MetricValidationError(
            f"Metric name '{name}' does not match regex {METRIC_NAME_PATTERN.pattern}",
            metric_name=str(name),
        )
    return name


def validate_label_name(name: str, *, metric_name: str | None = None) -> str:
    """Validate a single label name.

    Raises:
        MetricValidationError: If the name is malformed or uses the reserved prefix.
    """
    if not isinstance(name, str) or not LABEL_NAME_PATTERN.match(name):
        raise MetricValidationError(
            f"Label name '{name}' does not match regex {LABEL_NAME_PATTERN.pattern}",
            metric_name=metric_name,
            details={"label": str(name)},
        )
    if name.startswith(RESERVED_LABEL_PREFIX):
        raise MetricValidationError(
            f"Label name '{name}' is not valid - labels starting with "
            f"'{RESERVED_LABEL_PREFIX}' are reserved for internal use",
            metric_name=metric_name,
            details={"label": name},
        )
    return name


def validate_label_names(
    names: Iterable[str],
    *,
    reserved: Iterable[str] = (),
    metric_name: str | None = None,
) -> tuple[str, ...]:
    """Validate an ordered collection of label names.

    Args:
        names: Label names in declaration order.
        reserved: Names the metric kind reserves for itself (e.g. ``le``).
        metric_name: Metric the names belong to, for error context.

    Returns:
        The names as a tuple, order preserved.

    Raises:
        MetricValidationError: On a malformed, reserved or duplicated name.
    """
    if isinstance(names, str):
        names = (names,)
    result = tuple(names)
    reserved_names = frozenset(reserved)
    seen: set[str] = set()
    for name in result:
        validate_label_name(name, metric_name=metric_name)
        if name in reserved_names:
            raise MetricValidationError(
                f"'{name}' is a reserved label name",
                metric_name=metric_name,
                details={"label": name},
            )
        if name in seen:
            raise MetricValidationError(
                f"Label name '{name}' is declared more than once",
                metric_name=metric_name,
                details={"label": name},
            )
        seen.add(name)
    return result


def _coerce_value(value: Any) -> str:
    if value is None:
        raise MetricValidationError("Label values must not be None")
    return value if isinstance(value, str) else str(value)


# =============================================================================
# Label Key
# =============================================================================


class LabelKey:
    """Immutable ordered label names and values.

    Attributes:
        names: Label names in declaration order.
        values: Label values, parallel to ``names``.
    """

    __slots__ = ("_names", "_values", "_hash")

    EMPTY: ClassVar[LabelKey]

    def __init__(self, names: Sequence[str] = (), values: Sequence[Any] = ()) -> None:
        """Create a label key.

        Args:
            names: Label names.
            values: Label values; non-string values are converted with str().

        Raises:
            MetricValidationError: If the sequences differ in length or a value is None.
        """
        names = tuple(names)
        values = tuple(_coerce_value(v) for v in values)
        if len(names) != len(values):
            raise MetricValidationError(
                f"Expected {len(names)} label values but got {len(values)}",
                details={"label_names": list(names), "label_values": list(values)},
            )
        object.__setattr__(self, "_names", names)
        object.__setattr__(self, "_values", values)
        object.__setattr__(self, "_hash", hash(values))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    @property
    def values(self) -> tuple[str, ...]:
        return self._values

    @property
    def is_empty(self) -> bool:
        return not self._names

    def pairs(self) -> tuple[tuple[str, str], ...]:
        """Return ``(name, value)`` pairs in declaration order."""
        return tuple(zip(self._names, self._values, strict=True))

    def to_dict(self) -> dict[str, str]:
        return dict(self.pairs())

    def concat(self, other: LabelKey) -> LabelKey:
        """Append ``other``'s pairs after this key's pairs."""
        if other.is_empty:
            return self
        if self.is_empty:
            return other
        return LabelKey(self._names + other._names, self._values + other._values)

    @classmethod
    def from_mapping(cls, labels: Mapping[str, Any]) -> LabelKey:
        """Build a key from a mapping, keeping its iteration order."""
        if not labels:
            return cls.EMPTY
        return cls(tuple(labels.keys()), tuple(labels.values()))

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self.pairs())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LabelKey):
            return NotImplemented
        return self._values == other._values

    def __hash__(self) -> int:
        return self._hash

    def __repr__(self) -> str:
        inner = ", ".join(f"{n}={v!r}" for n, v in self.pairs())
        return f"LabelKey({inner})"


LabelKey.EMPTY = LabelKey()


# =============================================================================
# Static Labels
# =============================================================================


def validate_static_labels(
    labels: Mapping[str, Any] | None,
    *,
    reserved: Iterable[str] = (),
    metric_name: str | None = None,
) -> dict[str, str]:
    """Validate static label names and coerce their values to strings.

    Args:
        labels: Static labels to validate.
        reserved: Names that may not be used as static labels.
        metric_name: Metric the labels belong to, for error context.

    Returns:
        A new dictionary with string values.

    Raises:
        MetricValidationError: On a malformed or reserved name.
    """
    if not labels:
        return {}
    validate_label_names(labels.keys(), reserved=reserved, metric_name=metric_name)
    return {name: _coerce_value(value) for name, value in labels.items()}


def merge_label_sets(
    instance: LabelKey,
    collector_static: Mapping[str, str],
    registry_static: Mapping[str, str],
) -> LabelKey:
    """Combine the exported label set of one child.

    Observation labels win over collector static labels, which win over
    registry static labels. Observation labels come first in their declared
    order, followed by the remaining collector and registry labels.

    Args:
        instance: Label key of the child.
        collector_static: Static labels of the collector.
        registry_static: Static labels of the registry.

    Returns:
        The label key to export.
    """
    if not collector_static and not registry_static:
        return instance

    extra: dict[str, str] = {}
    for static in (collector_static, registry_static):
        for name, value in static.items():
            if name not in instance.names and name not in extra:
                extra[name] = value
    return instance.concat(LabelKey.from_mapping(extra))
