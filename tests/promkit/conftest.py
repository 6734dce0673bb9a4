"""Pytest fixtures for promkit tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

import promkit.registry as registry_module
from promkit.config import MetricsConfig
from promkit.logging import BufferingHandler, configure_logging
from promkit.registry import CollectorRegistry, MetricFactory
from promkit.testing import ManualClock


@pytest.fixture
def registry() -> Iterator[CollectorRegistry]:
    """Create an empty registry, closed after the test."""
    with CollectorRegistry() as reg:
        yield reg


@pytest.fixture
def factory(registry: CollectorRegistry) -> MetricFactory:
    """Create a factory bound to the test registry."""
    return registry.factory


@pytest.fixture
def manual_clock() -> ManualClock:
    """Create a clock starting at t=1000s."""
    return ManualClock(start=1000.0)


@pytest.fixture
def log_buffer() -> Iterator[BufferingHandler]:
    """Capture every record emitted at DEBUG level or above."""
    handler = BufferingHandler()
    configure_logging(level="DEBUG", handlers=[handler])
    yield handler
    configure_logging(level="INFO", handlers=[])


@pytest.fixture
def default_registry(monkeypatch: pytest.MonkeyPatch) -> Iterator[CollectorRegistry]:
    """Install a fresh default registry without process metrics."""
    monkeypatch.setattr(registry_module, "_default_registry", None)
    reg = registry_module.configure_metrics(MetricsConfig(register_process_metrics=False))
    yield reg
    reg.close()
