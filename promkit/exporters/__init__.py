"""Exposition formats for collected metric families.

Features:
    - Prometheus text format, version 0.0.4
    - Length-delimited protocol buffer format
    - Accept-header based format selection
"""

from __future__ import annotations

from promkit.exporters.base import (
    PROTOBUF_CONTENT_TYPE,
    TEXT_CONTENT_TYPE,
    MetricFormatter,
    accepts_protobuf,
    generate_latest,
    select_formatter,
)
from promkit.exporters.protobuf import (
    MetricFamily,
    ProtobufFormatter,
    decode_varint,
    encode_varint,
    parse_delimited,
)
from promkit.exporters.text import TextFormatter, escape_label_value, format_value


__all__ = [
    "PROTOBUF_CONTENT_TYPE",
    "TEXT_CONTENT_TYPE",
    "MetricFormatter",
    "accepts_protobuf",
    "generate_latest",
    "select_formatter",
    "MetricFamily",
    "ProtobufFormatter",
    "decode_varint",
    "encode_varint",
    "parse_delimited",
    "TextFormatter",
    "escape_label_value",
    "format_value",
]
