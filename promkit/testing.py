"""Testing utilities for promkit.

This module provides helpers for testing instrumented code:
- ManualClock: a time source advanced explicitly by the test
- iter_samples: flattens families into exposition samples
- sample_value / collect_text: scrape a registry and look at the result

Example:
    >>> from promkit.testing import ManualClock, sample_value
    >>> clock = ManualClock()
    >>> latency = registry.factory.create_summary("latency_seconds", clock=clock)
    >>> latency.observe(0.2)
    >>> clock.advance(700)
    >>> sample_value(registry, "latency_seconds", {"quantile": "0.5"})
    nan
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, NamedTuple

from promkit.exporters.text import TextFormatter, format_value
from promkit.records import CounterValue, GaugeValue, HistogramValue, SummaryValue


if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from promkit.records import FamilyRecord
    from promkit.registry import CollectorRegistry


class ManualClock:
    """Clock returning a time that only moves when advance() is called.

    Args:
        start: Initial time in seconds.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new time."""
        if seconds < 0:
            raise ValueError(f"Cannot move the clock backwards by {seconds}")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, now: float) -> None:
        with self._lock:
            self._now = now


class Sample(NamedTuple):
    """One line of the text exposition."""

    name: str
    labels: dict[str, str]
    value: float


def iter_samples(family: FamilyRecord) -> Iterator[Sample]:
    """Yield the samples a family renders to, in exposition order."""
    name = family.name
    for record in family.metrics:
        labels = record.label_dict()
        value = record.value
        if isinstance(value, (CounterValue, GaugeValue)):
            yield Sample(name, labels, value.value)
        elif isinstance(value, HistogramValue):
            yield Sample(f"{name}_sum", labels, value.sample_sum)
            yield Sample(f"{name}_count", labels, value.sample_count)
            for bucket in value.buckets:
                yield Sample(
                    f"{name}_bucket",
                    {**labels, "le": format_value(bucket.upper_bound)},
                    bucket.cumulative_count,
                )
        elif isinstance(value, SummaryValue):
            yield Sample(f"{name}_sum", labels, value.sample_sum)
            yield Sample(f"{name}_count", labels, value.sample_count)
            for quantile in value.quantiles:
                yield Sample(
                    name,
                    {**labels, "quantile": format_value(quantile.quantile)},
                    quantile.value,
                )


def collect_text(registry: CollectorRegistry) -> str:
    """Collect a registry and render it in the text format."""
    return TextFormatter().format(registry.collect_all())


def sample_value(
    registry: CollectorRegistry,
    name: str,
    labels: Mapping[str, str] | None = None,
) -> float | None:
    """Collect a registry and return the value of one sample.

    Args:
        registry: Registry to collect.
        name: Sample name, including any ``_sum``/``_count``/``_bucket`` suffix.
        labels: Exact label set of the sample, static labels included.

    Returns:
        The value, or None if no such sample was exported.
    """
    wanted = dict(labels or {})
    for family in registry.collect_all():
        if not name.startswith(family.name):
            continue
        for sample in iter_samples(family):
            if sample.name == name and sample.labels == wanted:
                return sample.value
    return None
