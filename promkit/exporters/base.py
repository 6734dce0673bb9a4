"""Formatter protocol, content negotiation and one-shot rendering."""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable


if TYPE_CHECKING:
    from collections.abc import Sequence

    from promkit.records import FamilyRecord
    from promkit.registry import CollectorRegistry


TEXT_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
PROTOBUF_CONTENT_TYPE = (
    "application/vnd.google.protobuf; "
    "proto=io.prometheus.client.MetricFamily; encoding=delimited"
)


@runtime_checkable
class MetricFormatter(Protocol):
    """Renders collected families into one exposition format."""

    @abstractmethod
    def serialize(self, families: Sequence[FamilyRecord]) -> bytes:
        """Render families in collection order.

        Args:
            families: Families returned by a collection pass.

        Returns:
            The encoded snapshot.
        """
        ...

    @abstractmethod
    def content_type(self) -> str:
        """Get the MIME content type of serialize() output."""
        ...


def _parse_media_range(media_range: str) -> tuple[str, dict[str, str]]:
    media_type, *params = (part.strip() for part in media_range.split(";"))
    parameters: dict[str, str] = {}
    for param in params:
        key, sep, value = param.partition("=")
        if sep:
            parameters[key.strip().lower()] = value.strip().strip('"')
    return media_type.lower(), parameters


def accepts_protobuf(accept: str | None) -> bool:
    """Check whether an Accept header asks for delimited MetricFamily protobuf."""
    if not accept:
        return False
    for media_range in accept.split(","):
        media_type, params = _parse_media_range(media_range)
        if (
            media_type == "application/vnd.google.protobuf"
            and params.get("proto") == "io.prometheus.client.MetricFamily"
            and params.get("encoding") == "delimited"
        ):
            return True
    return False


def select_formatter(accept: str | None = None) -> MetricFormatter:
    """Pick the formatter for an HTTP Accept header.

    Returns:
        ProtobufFormatter when the header names the delimited protobuf
        format, TextFormatter otherwise.
    """
    from promkit.exporters.protobuf import ProtobufFormatter
    from promkit.exporters.text import TextFormatter

    if accepts_protobuf(accept):
        return ProtobufFormatter()
    return TextFormatter()


def generate_latest(
    registry: CollectorRegistry | None = None,
    formatter: MetricFormatter | None = None,
) -> bytes:
    """Collect a registry and render the snapshot.

    Args:
        registry: Registry to collect; defaults to the process-wide one.
        formatter: Output format; defaults to the text format.

    Raises:
        ScrapeFailedError: If a callback or on-demand collector refused
            the pass.
    """
    from promkit.exporters.text import TextFormatter
    from promkit.registry import get_default_registry

    registry = registry or get_default_registry()
    formatter = formatter or TextFormatter()
    return formatter.serialize(registry.collect_all())
