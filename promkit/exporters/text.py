"""Prometheus text exposition format, version 0.0.4.

Example:
    >>> formatter = TextFormatter()
    >>> print(formatter.format(registry.collect_all()))
    # HELP requests_total Total requests
    # TYPE requests_total counter
    requests_total{method="POST"} 42
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from promkit.exceptions import SerializationError
from promkit.exporters.base import TEXT_CONTENT_TYPE
from promkit.records import (
    CounterValue,
    GaugeValue,
    HistogramValue,
    SummaryValue,
)


if TYPE_CHECKING:
    from collections.abc import Sequence

    from promkit.records import FamilyRecord, MetricRecord


# Above this magnitude floats are rendered in exponent form.
_MAX_EXACT_INTEGER = 2**53


def escape_label_value(value: str) -> str:
    """Escape a label value for the text format.

    Backslash, newline and double quote are escaped.
    """
    value = value.replace("\\", "\\\\")
    value = value.replace("\n", "\\n")
    value = value.replace('"', '\\"')
    return value


def format_value(value: float) -> str:
    """Render a sample value with '.' as decimal separator.

    Integral values are written without a fraction, other values with the
    shortest representation that round-trips.
    """
    if math.isnan(value):
        return "NaN"
    if value == math.inf:
        return "+Inf"
    if value == -math.inf:
        return "-Inf"
    if value == int(value) and abs(value) < _MAX_EXACT_INTEGER:
        return str(int(value))
    return repr(float(value))


class TextFormatter:
    """Formatter for the Prometheus text exposition format."""

    def content_type(self) -> str:
        return TEXT_CONTENT_TYPE

    def format(self, families: Sequence[FamilyRecord]) -> str:
        """Render families as text, one line per sample.

        Raises:
            SerializationError: If a record carries an unknown payload.
        """
        lines: list[str] = []
        for family in families:
            lines.append(f"# HELP {family.name} {family.help}")
            lines.append(f"# TYPE {family.name} {family.type.value}")
            for record in family.metrics:
                lines.extend(self._format_record(family.name, record))
        return "\n".join(lines) + "\n" if lines else ""

    def serialize(self, families: Sequence[FamilyRecord]) -> bytes:
        return self.format(families).encode("utf-8")

    def _format_record(self, name: str, record: MetricRecord) -> list[str]:
        value = record.value
        labels = record.labels
        timestamp = record.timestamp_ms

        if isinstance(value, (CounterValue, GaugeValue)):
            return [self._line(name, labels, value.value, timestamp)]

        if isinstance(value, HistogramValue):
            lines = [
                self._line(f"{name}_sum", labels, value.sample_sum, timestamp),
                self._line(f"{name}_count", labels, value.sample_count, timestamp),
            ]
            for bucket in value.buckets:
                bucket_labels = (*labels, ("le", format_value(bucket.upper_bound)))
                lines.append(
                    self._line(f"{name}_bucket", bucket_labels, bucket.cumulative_count, timestamp)
                )
            return lines

        if isinstance(value, SummaryValue):
            lines = [
                self._line(f"{name}_sum", labels, value.sample_sum, timestamp),
                self._line(f"{name}_count", labels, value.sample_count, timestamp),
            ]
            for quantile in value.quantiles:
                quantile_labels = (*labels, ("quantile", format_value(quantile.quantile)))
                lines.append(self._line(name, quantile_labels, quantile.value, timestamp))
            return lines

        raise SerializationError(
            f"Cannot render value of type {type(value).__name__}",
            format_name="text",
            details={"metric": name},
        )

    @staticmethod
    def _line(
        name: str,
        labels: Sequence[tuple[str, str]],
        value: float,
        timestamp_ms: int | None,
    ) -> str:
        if labels:
            label_str = ",".join(f'{k}="{escape_label_value(v)}"' for k, v in labels)
            line = f"{name}{{{label_str}}} {format_value(value)}"
        else:
            line = f"{name} {format_value(value)}"
        if timestamp_ms is not None:
            line = f"{line} {timestamp_ms}"
        return line
