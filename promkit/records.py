"""Point-in-time records produced by a collection pass.

Collectors materialize their children into MetricRecord values grouped in
one FamilyRecord per collector. Records are immutable and detached from
the live metric state, so formatters can render them without locking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MetricType(Enum):
    """Kind of a metric family, valued by its exposition name.

    The built-in collectors never produce UNTYPED. It is kept because both
    exposition formats define it, so hand-built records can use it.
    """

    COUNTER = "counter"
    GAUGE = "gauge"
    SUMMARY = "summary"
    UNTYPED = "untyped"
    HISTOGRAM = "histogram"


@dataclass(frozen=True, slots=True)
class CounterValue:
    value: float


@dataclass(frozen=True, slots=True)
class GaugeValue:
    value: float


@dataclass(frozen=True, slots=True)
class Quantile:
    """Estimated value of one summary objective."""

    quantile: float
    value: float


@dataclass(frozen=True, slots=True)
class SummaryValue:
    sample_count: int
    sample_sum: float
    quantiles: tuple[Quantile, ...] = ()


@dataclass(frozen=True, slots=True)
class Bucket:
    """Cumulative count of observations less than or equal to ``upper_bound``."""

    upper_bound: float
    cumulative_count: int


@dataclass(frozen=True, slots=True)
class HistogramValue:
    sample_count: int
    sample_sum: float
    buckets: tuple[Bucket, ...] = ()


MetricValue = CounterValue | GaugeValue | SummaryValue | HistogramValue


@dataclass(frozen=True, slots=True)
class MetricRecord:
    """One exported time series.

    Attributes:
        labels: ``(name, value)`` pairs, declared labels first.
        value: Kind-specific payload.
        timestamp_ms: Optional explicit timestamp in milliseconds. The
            built-in collectors leave it unset and scrapers use the scrape
            time. Both formatters write it for hand-built records.
    """

    labels: tuple[tuple[str, str], ...]
    value: MetricValue
    timestamp_ms: int | None = None

    def label_dict(self) -> dict[str, str]:
        return dict(self.labels)


@dataclass(frozen=True, slots=True)
class FamilyRecord:
    """All exported series of one collector.

    Attributes:
        name: Metric family name.
        help: Help text, rendered literally.
        type: Kind of the family.
        metrics: Records of the published children.
    """

    name: str
    help: str
    type: MetricType
    metrics: tuple[MetricRecord, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary, mainly for debugging output."""
        return {
            "name": self.name,
            "help": self.help,
            "type": self.type.value,
            "metrics": [
                {"labels": record.label_dict(), "value": _value_to_dict(record.value)}
                for record in self.metrics
            ],
        }


def _value_to_dict(value: MetricValue) -> dict[str, Any]:
    if isinstance(value, (CounterValue, GaugeValue)):
        return {"value": value.value}
    if isinstance(value, SummaryValue):
        return {
            "count": value.sample_count,
            "sum": value.sample_sum,
            "quantiles": {q.quantile: q.value for q in value.quantiles},
        }
    return {
        "count": value.sample_count,
        "sum": value.sample_sum,
        "buckets": {b.upper_bound: b.cumulative_count for b in value.buckets},
    }
