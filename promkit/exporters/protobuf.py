"""Delimited protocol buffer exposition format.

Each family is encoded as an ``io.prometheus.client.MetricFamily`` message
prefixed by its length as a base-128 varint. The message classes are built
at import time from a descriptor in a private pool, so no generated code
is needed and another copy of metrics.proto in the process does not clash.

Example:
    >>> data = ProtobufFormatter().serialize(registry.collect_all())
    >>> [family.name for family in parse_delimited(data)]
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from promkit.exceptions import SerializationError
from promkit.exporters.base import PROTOBUF_CONTENT_TYPE
from promkit.records import (
    CounterValue,
    GaugeValue,
    HistogramValue,
    MetricType,
    SummaryValue,
)


if TYPE_CHECKING:
    from collections.abc import Sequence

    from promkit.records import FamilyRecord, MetricRecord


_PACKAGE = "io.prometheus.client"


# =============================================================================
# Descriptor
# =============================================================================


_Field = descriptor_pb2.FieldDescriptorProto


def _field(
    name: str,
    number: int,
    field_type: int,
    *,
    repeated: bool = False,
    type_name: str | None = None,
) -> descriptor_pb2.FieldDescriptorProto:
    field = _Field(
        name=name,
        number=number,
        type=field_type,
        label=_Field.LABEL_REPEATED if repeated else _Field.LABEL_OPTIONAL,
    )
    if type_name is not None:
        field.type_name = f".{_PACKAGE}.{type_name}"
    return field


def _message(name: str, *fields: descriptor_pb2.FieldDescriptorProto) -> descriptor_pb2.DescriptorProto:
    return descriptor_pb2.DescriptorProto(name=name, field=list(fields))


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="promkit/io_prometheus_client_metrics.proto",
        package=_PACKAGE,
        syntax="proto2",
    )
    file_proto.enum_type.add(
        name="MetricType",
        value=[
            descriptor_pb2.EnumValueDescriptorProto(name=name, number=number)
            for number, name in enumerate(("COUNTER", "GAUGE", "SUMMARY", "UNTYPED", "HISTOGRAM"))
        ],
    )
    file_proto.message_type.extend(
        [
            _message(
                "LabelPair",
                _field("name", 1, _Field.TYPE_STRING),
                _field("value", 2, _Field.TYPE_STRING),
            ),
            _message("Gauge", _field("value", 1, _Field.TYPE_DOUBLE)),
            _message("Counter", _field("value", 1, _Field.TYPE_DOUBLE)),
            _message(
                "Quantile",
                _field("quantile", 1, _Field.TYPE_DOUBLE),
                _field("value", 2, _Field.TYPE_DOUBLE),
            ),
            _message(
                "Summary",
                _field("sample_count", 1, _Field.TYPE_UINT64),
                _field("sample_sum", 2, _Field.TYPE_DOUBLE),
                _field("quantile", 3, _Field.TYPE_MESSAGE, repeated=True, type_name="Quantile"),
            ),
            _message("Untyped", _field("value", 1, _Field.TYPE_DOUBLE)),
            _message(
                "Bucket",
                _field("cumulative_count", 1, _Field.TYPE_UINT64),
                _field("upper_bound", 2, _Field.TYPE_DOUBLE),
            ),
            _message(
                "Histogram",
                _field("sample_count", 1, _Field.TYPE_UINT64),
                _field("sample_sum", 2, _Field.TYPE_DOUBLE),
                _field("bucket", 3, _Field.TYPE_MESSAGE, repeated=True, type_name="Bucket"),
            ),
            _message(
                "Metric",
                _field("label", 1, _Field.TYPE_MESSAGE, repeated=True, type_name="LabelPair"),
                _field("gauge", 2, _Field.TYPE_MESSAGE, type_name="Gauge"),
                _field("counter", 3, _Field.TYPE_MESSAGE, type_name="Counter"),
                _field("summary", 4, _Field.TYPE_MESSAGE, type_name="Summary"),
                _field("untyped", 5, _Field.TYPE_MESSAGE, type_name="Untyped"),
                _field("histogram", 7, _Field.TYPE_MESSAGE, type_name="Histogram"),
                _field("timestamp_ms", 6, _Field.TYPE_INT64),
            ),
            _message(
                "MetricFamily",
                _field("name", 1, _Field.TYPE_STRING),
                _field("help", 2, _Field.TYPE_STRING),
                _field("type", 3, _Field.TYPE_ENUM, type_name="MetricType"),
                _field("metric", 4, _Field.TYPE_MESSAGE, repeated=True, type_name="Metric"),
            ),
        ]
    )
    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file_descriptor().SerializeToString())

MetricFamily: Any = message_factory.GetMessageClass(
    _POOL.FindMessageTypeByName(f"{_PACKAGE}.MetricFamily")
)

_TYPE_NUMBERS: dict[MetricType, int] = {
    MetricType.COUNTER: 0,
    MetricType.GAUGE: 1,
    MetricType.SUMMARY: 2,
    MetricType.UNTYPED: 3,
    MetricType.HISTOGRAM: 4,
}


# =============================================================================
# Varint framing
# =============================================================================


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as a base-128 varint."""
    if value < 0:
        raise SerializationError(f"Cannot varint-encode negative value {value}", format_name="protobuf")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, pos: int = 0) -> tuple[int, int]:
    """Decode a varint starting at ``pos``.

    Returns:
        The value and the position just past it.

    Raises:
        SerializationError: If the data ends inside the varint.
    """
    result = 0
    shift = 0
    while pos < len(data):
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 64:
            break
    raise SerializationError("Truncated or oversized varint", format_name="protobuf")


# =============================================================================
# Formatter
# =============================================================================


class ProtobufFormatter:
    """Formatter for the length-delimited MetricFamily format."""

    def content_type(self) -> str:
        return PROTOBUF_CONTENT_TYPE

    def to_message(self, family: FamilyRecord) -> Any:
        """Convert one family into a MetricFamily message.

        Raises:
            SerializationError: If a record carries an unknown payload.
        """
        message = MetricFamily(
            name=family.name,
            help=family.help,
            type=_TYPE_NUMBERS[family.type],
        )
        for record in family.metrics:
            self._fill_metric(message.metric.add(), family.name, record)
        return message

    def serialize(self, families: Sequence[FamilyRecord]) -> bytes:
        chunks: list[bytes] = []
        for family in families:
            payload = self.to_message(family).SerializeToString()
            chunks.append(encode_varint(len(payload)))
            chunks.append(payload)
        return b"".join(chunks)

    @staticmethod
    def _fill_metric(metric: Any, name: str, record: MetricRecord) -> None:
        for label_name, label_value in record.labels:
            metric.label.add(name=label_name, value=label_value)
        if record.timestamp_ms is not None:
            metric.timestamp_ms = record.timestamp_ms

        value = record.value
        if isinstance(value, CounterValue):
            metric.counter.value = value.value
        elif isinstance(value, GaugeValue):
            metric.gauge.value = value.value
        elif isinstance(value, SummaryValue):
            metric.summary.sample_count = value.sample_count
            metric.summary.sample_sum = value.sample_sum
            for quantile in value.quantiles:
                metric.summary.quantile.add(quantile=quantile.quantile, value=quantile.value)
        elif isinstance(value, HistogramValue):
            metric.histogram.sample_count = value.sample_count
            metric.histogram.sample_sum = value.sample_sum
            for bucket in value.buckets:
                metric.histogram.bucket.add(
                    cumulative_count=bucket.cumulative_count,
                    upper_bound=bucket.upper_bound,
                )
        else:
            raise SerializationError(
                f"Cannot encode value of type {type(value).__name__}",
                format_name="protobuf",
                details={"metric": name},
            )


def parse_delimited(data: bytes) -> list[Any]:
    """Decode a length-delimited stream into MetricFamily messages.

    Raises:
        SerializationError: If the stream is truncated or a message is invalid.
    """
    messages: list[Any] = []
    pos = 0
    while pos < len(data):
        length, pos = decode_varint(data, pos)
        end = pos + length
        if end > len(data):
            raise SerializationError(
                "Message extends past end of data",
                format_name="protobuf",
                details={"offset": pos, "length": length},
            )
        message = MetricFamily()
        try:
            message.ParseFromString(data[pos:end])
        except DecodeError as e:
            raise SerializationError(
                "Invalid MetricFamily message",
                format_name="protobuf",
                details={"offset": pos},
                cause=e,
            ) from e
        messages.append(message)
        pos = end
    return messages
