"""Collector and child base classes.

A Collector is one named metric family. It owns a map from label values
to Child instances, each child being one time series. Children are created
on first use and never evicted.

Creating a child uses ``dict.setdefault`` on a dictionary keyed by tuples
of strings, which inserts only if the key is absent and returns the stored
child either way. When two threads race on a new key both receive the same
child and the losing candidate is dropped before anyone sees it.

Example:
    >>> requests = Counter("http_requests_total", "Requests", ("method",))
    >>> requests.labels("GET").inc()
    >>> requests.labels("GET") is requests.labels("GET")
    True
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from promkit.exceptions import MetricValidationError
from promkit.labels import (
    LabelKey,
    merge_label_sets,
    validate_label_names,
    validate_metric_name,
    validate_static_labels,
)
from promkit.records import FamilyRecord, MetricRecord, MetricType


if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from promkit.records import MetricValue


# =============================================================================
# Child
# =============================================================================


class Child(ABC):
    """One time series of a collector.

    A child is exported only while its publish flag is set. The flag starts
    cleared when the collector suppresses initial values and is set by the
    first mutation or an explicit publish() call.
    """

    def __init__(self, parent: Collector[Any], labels: LabelKey, publish: bool) -> None:
        self._parent = parent
        self._labels = labels
        self._published = publish

    @property
    def labels(self) -> LabelKey:
        """Label key identifying this child within its collector."""
        return self._labels

    @property
    def published(self) -> bool:
        return self._published

    def publish(self) -> None:
        """Make the child eligible for export."""
        self._published = True

    def unpublish(self) -> None:
        """Hide the child from export until the next publish()."""
        self._published = False

    def collect(self, exported_labels: LabelKey | None = None) -> MetricRecord | None:
        """Materialize a point-in-time record.

        Args:
            exported_labels: Final label set to attach, including static
                labels. Defaults to the child's own label key.

        Returns:
            The record, or None while the child is unpublished.
        """
        if not self._published:
            return None
        labels = exported_labels if exported_labels is not None else self._labels
        return MetricRecord(labels=labels.pairs(), value=self._populate())

    @abstractmethod
    def _populate(self) -> MetricValue:
        """Read the current cell values into a payload."""
        ...


ChildT = TypeVar("ChildT", bound=Child)


# =============================================================================
# Collector
# =============================================================================


class Collector(ABC, Generic[ChildT]):
    """Base class of metric families.

    Subclasses define ``metric_type``, optional ``reserved_label_names`` and
    ``_new_child()``.

    Args:
        name: Metric family name.
        help: Help text.
        label_names: Ordered label names shared by all children.
        static_labels: Labels attached to every exported child.
        suppress_initial_value: Keep new children unexported until their
            first mutation or publish() call.

    Raises:
        MetricValidationError: If the name, a label name or a static label
            is invalid.
    """

    metric_type: ClassVar[MetricType]
    reserved_label_names: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        *,
        static_labels: Mapping[str, Any] | None = None,
        suppress_initial_value: bool = False,
    ) -> None:
        self._name = validate_metric_name(name)
        self._help = help
        self._label_names = validate_label_names(
            label_names,
            reserved=self.reserved_label_names,
            metric_name=name,
        )
        self._static_labels = validate_static_labels(
            static_labels,
            reserved=self.reserved_label_names,
            metric_name=name,
        )
        self._suppress_initial_value = suppress_initial_value
        self._children: dict[tuple[str, ...], ChildT] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def help(self) -> str:
        return self._help

    @property
    def label_names(self) -> tuple[str, ...]:
        return self._label_names

    @property
    def static_labels(self) -> dict[str, str]:
        return dict(self._static_labels)

    @property
    def suppress_initial_value(self) -> bool:
        return self._suppress_initial_value

    @abstractmethod
    def _new_child(self, labels: LabelKey, publish: bool) -> ChildT:
        ...

    def _get_or_create(self, key: LabelKey) -> ChildT:
        child = self._children.get(key.values)
        if child is None:
            candidate = self._new_child(key, not self._suppress_initial_value)
            child = self._children.setdefault(key.values, candidate)
        return child

    def labels(self, *values: Any, **named: Any) -> ChildT:
        """Return the child for the given label values, creating it if needed.

        Values are given positionally in declaration order, or by name.

        Raises:
            MetricValidationError: If the number of values does not match the
                declared label names or names are mixed with positions.
        """
        if named:
            if values:
                raise MetricValidationError(
                    "Label values must be given either by position or by name, not both",
                    metric_name=self._name,
                )
            if set(named) != set(self._label_names):
                raise MetricValidationError(
                    f"Expected labels {list(self._label_names)} but got {sorted(named)}",
                    metric_name=self._name,
                )
            values = tuple(named[name] for name in self._label_names)

        if len(values) != len(self._label_names):
            raise MetricValidationError(
                f"Expected {len(self._label_names)} label values but got {len(values)}",
                metric_name=self._name,
                details={"label_names": list(self._label_names)},
            )
        if not values:
            return self._unlabelled
        return self._get_or_create(LabelKey(self._label_names, values))

    def with_labels(self, *values: Any, **named: Any) -> ChildT:
        """Alias of labels()."""
        return self.labels(*values, **named)

    @property
    def _unlabelled(self) -> ChildT:
        if self._label_names:
            raise MetricValidationError(
                f"Metric {self._name} has label names {list(self._label_names)}; "
                "use labels() to select a child",
                metric_name=self._name,
            )
        return self._get_or_create(LabelKey.EMPTY)

    @property
    def children(self) -> tuple[ChildT, ...]:
        """Snapshot of the children created so far."""
        return tuple(self._children.copy().values())

    def publish(self) -> None:
        """Publish the unlabelled child."""
        self._unlabelled.publish()

    def unpublish(self) -> None:
        """Unpublish the unlabelled child."""
        self._unlabelled.unpublish()

    def collect(self, registry_static_labels: Mapping[str, str] | None = None) -> FamilyRecord:
        """Materialize all published children into one family record.

        Children created while this runs may or may not be included.

        Args:
            registry_static_labels: Registry-wide labels, overridden by the
                collector's static labels and by the child's own labels.

        Returns:
            FamilyRecord with one MetricRecord per published child.
        """
        if not self._label_names:
            self._get_or_create(LabelKey.EMPTY)

        registry_static = registry_static_labels or {}
        records: list[MetricRecord] = []
        for child in self.children:
            exported = merge_label_sets(child.labels, self._static_labels, registry_static)
            record = child.collect(exported)
            if record is not None:
                records.append(record)

        return FamilyRecord(
            name=self._name,
            help=self._help,
            type=self.metric_type,
            metrics=tuple(records),
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self._name!r}, "
            f"label_names={self._label_names!r})"
        )
