"""Collector registry and metric factory.

The registry is the aggregation root of a collection pass. It keeps the
canonical collector for every metric name, refreshes on-demand collectors,
runs before-collect callbacks and then materializes every collector into a
FamilyRecord.

A pass is all-or-nothing: if any callback or on-demand collector raises,
the exception propagates out of collect_all() and no families are returned.
ScrapeFailedError is the deliberate way to skip publishing a pass.

Example:
    >>> registry = CollectorRegistry()
    >>> factory = registry.factory
    >>> jobs = factory.create_counter("jobs_total", "Jobs run", ("queue",))
    >>> jobs.labels("default").inc()
    >>> families = registry.collect_all()
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
import time
from abc import abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    Self,
    TypeVar,
    runtime_checkable,
)

from promkit.collector import Collector
from promkit.config import MetricsConfig
from promkit.exceptions import MetricRegistrationError, MetricsError, ScrapeFailedError
from promkit.labels import KIND_RESERVED_LABEL_NAMES, validate_static_labels
from promkit.logging import LogContext, get_logger
from promkit.metrics import (
    Counter,
    CounterConfiguration,
    Gauge,
    GaugeConfiguration,
    Histogram,
    HistogramConfiguration,
    Summary,
    SummaryConfiguration,
)


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from promkit.records import FamilyRecord


logger = get_logger(__name__)

CollectorT = TypeVar("CollectorT", bound=Collector[Any])


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class OnDemandCollector(Protocol):
    """Component that refreshes its own metrics right before each pass."""

    @abstractmethod
    def register_metrics(self, factory: MetricFactory) -> None:
        """Create the metrics this collector maintains.

        Args:
            factory: Factory bound to the registry being joined.
        """
        ...

    @abstractmethod
    def update_metrics(self) -> None:
        """Push fresh values into the metrics created in register_metrics()."""
        ...


# =============================================================================
# Registry
# =============================================================================


class CollectorRegistry:
    """Set of live collectors keyed by metric name.

    Args:
        config: Defaults for metrics created through this registry's factory
            and the registry-wide static labels.
    """

    def __init__(self, config: MetricsConfig | None = None) -> None:
        self._config = config or MetricsConfig()
        self._collectors: dict[str, Collector[Any]] = {}
        self._on_demand_collectors: list[OnDemandCollector] = []
        self._callbacks: list[Callable[[], Any]] = []
        self._static_labels: dict[str, str] = dict(self._config.static_labels)
        self._lock = threading.Lock()
        self._scrape_ids = itertools.count(1)
        self._closed = False

    @property
    def config(self) -> MetricsConfig:
        return self._config

    @property
    def static_labels(self) -> dict[str, str]:
        """Registry-wide static labels."""
        return dict(self._static_labels)

    @property
    def factory(self) -> MetricFactory:
        """Factory creating metrics in this registry."""
        return MetricFactory(self)

    @property
    def names(self) -> list[str]:
        """Names of the registered collectors, in registration order."""
        with self._lock:
            return list(self._collectors)

    def set_static_labels(self, labels: Mapping[str, Any]) -> None:
        """Replace the registry-wide static labels.

        Raises:
            MetricValidationError: If a label name is invalid or is one of
                ``le`` and ``quantile``.
        """
        self._static_labels = validate_static_labels(labels, reserved=KIND_RESERVED_LABEL_NAMES)

    def get(self, name: str) -> Collector[Any] | None:
        with self._lock:
            return self._collectors.get(name)

    def get_or_add(self, collector: CollectorT) -> CollectorT:
        """Return the canonical collector for ``collector.name``.

        The supplied collector becomes canonical if the name is free.
        Otherwise the registered one is returned when kind and label names
        match.

        Raises:
            MetricRegistrationError: If the name is registered with another
                kind or other label names. The registration is kept.
        """
        self._ensure_open()
        with self._lock:
            existing = self._collectors.setdefault(collector.name, collector)

        if existing is collector:
            logger.debug(
                "Collector registered",
                name=collector.name,
                type=collector.metric_type.value,
            )
            return collector

        if type(existing) is not type(collector):
            logger.warning(
                "Collector name collision",
                name=collector.name,
                existing_type=existing.metric_type.value,
                requested_type=collector.metric_type.value,
            )
            raise MetricRegistrationError(
                f"Collector {collector.name} is already registered as a "
                f"{existing.metric_type.value}",
                metric_name=collector.name,
                existing_type=existing.metric_type.value,
                requested_type=collector.metric_type.value,
            )
        if existing.label_names != collector.label_names:
            logger.warning(
                "Collector label names mismatch",
                name=collector.name,
                existing_labels=list(existing.label_names),
                requested_labels=list(collector.label_names),
            )
            raise MetricRegistrationError(
                f"Collector {collector.name} is already registered with label names "
                f"{list(existing.label_names)}",
                metric_name=collector.name,
                details={
                    "existing_labels": list(existing.label_names),
                    "requested_labels": list(collector.label_names),
                },
            )
        return existing  # type: ignore[return-value]

    def remove(self, collector: Collector[Any] | str) -> bool:
        """Unregister a collector, given itself or its name.

        Returns:
            True if something was removed.
        """
        name = collector if isinstance(collector, str) else collector.name
        with self._lock:
            existing = self._collectors.get(name)
            if existing is None:
                return False
            if not isinstance(collector, str) and existing is not collector:
                return False
            del self._collectors[name]
        logger.debug("Collector removed", name=name)
        return True

    def clear(self) -> None:
        """Unregister every collector and on-demand collector."""
        with self._lock:
            self._collectors.clear()
            self._on_demand_collectors.clear()
        logger.debug("Registry cleared")

    def register_on_demand_collector(self, collector: OnDemandCollector) -> None:
        """Let ``collector`` create its metrics and refresh them before each pass."""
        self._ensure_open()
        collector.register_metrics(self.factory)
        with self._lock:
            self._on_demand_collectors.append(collector)
        logger.debug("On-demand collector registered", collector=type(collector).__name__)

    def add_before_collect_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` before every pass.

        The callback may be a plain function or a coroutine function. Keep
        it fast: the pass waits for it.
        """
        self._ensure_open()
        with self._lock:
            self._callbacks.append(callback)

    # -------------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------------

    def collect_all(self) -> list[FamilyRecord]:
        """Run one collection pass.

        Asynchronous callbacks are driven with asyncio.run(); use
        collect_all_async() from inside a running event loop.

        Returns:
            One FamilyRecord per registered collector.

        Raises:
            ScrapeFailedError: If a callback or on-demand collector refused
                the pass.
            MetricsError: If the registry is closed, or if an asynchronous
                callback is registered and an event loop is already running
                in this thread.
        """
        self._ensure_open()
        with LogContext(scrape_id=next(self._scrape_ids)):
            start = time.perf_counter()
            callbacks, on_demand = self._snapshot_hooks()
            try:
                for callback in callbacks:
                    result = callback()
                    if inspect.isawaitable(result):
                        _run_awaitable(result)
                self._update_on_demand(on_demand)
            except ScrapeFailedError as e:
                logger.warning("Scrape failed", reason=e.message)
                raise
            except Exception:
                logger.exception("Before-collect callback raised")
                raise
            return self._collect_families(start)

    async def collect_all_async(self) -> list[FamilyRecord]:
        """Run one collection pass, awaiting asynchronous callbacks.

        Raises:
            ScrapeFailedError: If a callback or on-demand collector refused
                the pass.
            MetricsError: If the registry is closed.
        """
        self._ensure_open()
        with LogContext(scrape_id=next(self._scrape_ids)):
            start = time.perf_counter()
            callbacks, on_demand = self._snapshot_hooks()
            try:
                for callback in callbacks:
                    result = callback()
                    if inspect.isawaitable(result):
                        await result
                self._update_on_demand(on_demand)
            except ScrapeFailedError as e:
                logger.warning("Scrape failed", reason=e.message)
                raise
            except Exception:
                logger.exception("Before-collect callback raised")
                raise
            return self._collect_families(start)

    def _snapshot_hooks(self) -> tuple[list[Callable[[], Any]], list[OnDemandCollector]]:
        with self._lock:
            return list(self._callbacks), list(self._on_demand_collectors)

    @staticmethod
    def _update_on_demand(collectors: Sequence[OnDemandCollector]) -> None:
        for collector in collectors:
            collector.update_metrics()

    def _collect_families(self, start: float) -> list[FamilyRecord]:
        with self._lock:
            collectors = list(self._collectors.values())
        static_labels = self._static_labels
        families = [collector.collect(static_labels) for collector in collectors]
        logger.debug(
            "Scrape finished",
            families=len(families),
            duration_ms=round((time.perf_counter() - start) * 1000, 3),
        )
        return families

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Drop all registrations and callbacks.

        A closed registry rejects new registrations and collection passes.
        Closing twice is a no-op.
        """
        if self._closed:
            return
        self.clear()
        with self._lock:
            self._callbacks.clear()
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise MetricsError("Registry is closed")

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._collectors)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._collectors


def _run_awaitable(awaitable: Awaitable[Any]) -> Any:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        pass
    else:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise MetricsError(
            "Asynchronous before-collect callbacks cannot run inside a running "
            "event loop; use collect_all_async()",
        )

    async def _await() -> Any:
        return await awaitable

    return asyncio.run(_await())


# =============================================================================
# Factory
# =============================================================================


class MetricFactory:
    """Creates metrics in a registry, returning existing ones by name.

    Options missing from a configuration fall back to the registry's
    MetricsConfig. Static labels given to the factory are attached to every
    metric it creates; a metric's own static labels win on conflict.

    Example:
        >>> factory = MetricFactory(registry).with_labels({"component": "db"})
        >>> queries = factory.create_counter("queries_total", "Queries run")
    """

    def __init__(
        self,
        registry: CollectorRegistry,
        static_labels: Mapping[str, Any] | None = None,
    ) -> None:
        self._registry = registry
        self._static_labels = validate_static_labels(static_labels)

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    @property
    def static_labels(self) -> dict[str, str]:
        return dict(self._static_labels)

    def with_labels(self, labels: Mapping[str, Any]) -> MetricFactory:
        """Return a factory adding ``labels`` to every metric it creates."""
        return MetricFactory(self._registry, {**self._static_labels, **labels})

    def _common(
        self,
        label_names: Sequence[str] | None,
        configuration: CounterConfiguration
        | GaugeConfiguration
        | HistogramConfiguration
        | SummaryConfiguration,
    ) -> dict[str, Any]:
        names = configuration.label_names if label_names is None else label_names
        return {
            "label_names": tuple(names),
            "static_labels": {**self._static_labels, **configuration.static_labels},
            "suppress_initial_value": (
                configuration.suppress_initial_value
                or self._registry.config.suppress_initial_value
            ),
        }

    def create_counter(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] | None = None,
        configuration: CounterConfiguration | None = None,
    ) -> Counter:
        """Create or get a counter."""
        configuration = configuration or CounterConfiguration()
        candidate = Counter(name, help, **self._common(label_names, configuration))
        return self._registry.get_or_add(candidate)

    def create_gauge(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] | None = None,
        configuration: GaugeConfiguration | None = None,
    ) -> Gauge:
        """Create or get a gauge."""
        configuration = configuration or GaugeConfiguration()
        candidate = Gauge(name, help, **self._common(label_names, configuration))
        return self._registry.get_or_add(candidate)

    def create_histogram(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] | None = None,
        configuration: HistogramConfiguration | None = None,
    ) -> Histogram:
        """Create or get a histogram.

        Raises:
            MetricValidationError: If the bucket bounds are invalid.
        """
        configuration = configuration or HistogramConfiguration()
        buckets = configuration.buckets
        if buckets is None:
            buckets = self._registry.config.default_buckets
        candidate = Histogram(
            name,
            help,
            buckets=buckets,
            **self._common(label_names, configuration),
        )
        return self._registry.get_or_add(candidate)

    def create_summary(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] | None = None,
        configuration: SummaryConfiguration | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> Summary:
        """Create or get a summary.

        Args:
            name: Metric family name.
            help: Help text.
            label_names: Label names, overriding the configuration's.
            configuration: Summary options.
            clock: Time source for the sliding window, mainly for tests.

        Raises:
            MetricValidationError: If the objectives or window are invalid.
        """
        configuration = configuration or SummaryConfiguration()
        defaults = self._registry.config

        def pick(value: Any, default: Any) -> Any:
            return default if value is None else value

        candidate = Summary(
            name,
            help,
            objectives=pick(configuration.objectives, defaults.default_objectives),
            max_age_seconds=pick(configuration.max_age_seconds, defaults.max_age_seconds),
            age_buckets=pick(configuration.age_buckets, defaults.age_buckets),
            buffer_size=pick(configuration.buffer_size, defaults.buffer_size),
            clock=clock,
            **self._common(label_names, configuration),
        )
        return self._registry.get_or_add(candidate)


# =============================================================================
# Default Registry
# =============================================================================

_default_registry: CollectorRegistry | None = None
_default_registry_lock = threading.Lock()


def _build_registry(config: MetricsConfig) -> CollectorRegistry:
    from promkit.process import ProcessCollector

    registry = CollectorRegistry(config)
    if config.register_process_metrics:
        registry.register_on_demand_collector(ProcessCollector())
    return registry


def get_default_registry() -> CollectorRegistry:
    """Get the process-wide registry, creating it from the environment if needed."""
    global _default_registry
    with _default_registry_lock:
        if _default_registry is None:
            _default_registry = _build_registry(MetricsConfig.from_env())
        return _default_registry


def configure_metrics(config: MetricsConfig | None = None) -> CollectorRegistry:
    """Replace the process-wide registry.

    Args:
        config: Metrics configuration; defaults to MetricsConfig().

    Returns:
        The new default registry.
    """
    global _default_registry
    registry = _build_registry(config or MetricsConfig())
    with _default_registry_lock:
        _default_registry = registry
    return registry


# =============================================================================
# Convenience Functions
# =============================================================================


def counter(
    name: str,
    help: str = "",
    label_names: Sequence[str] | None = None,
    configuration: CounterConfiguration | None = None,
) -> Counter:
    """Create or get a counter in the default registry."""
    return get_default_registry().factory.create_counter(name, help, label_names, configuration)


def gauge(
    name: str,
    help: str = "",
    label_names: Sequence[str] | None = None,
    configuration: GaugeConfiguration | None = None,
) -> Gauge:
    """Create or get a gauge in the default registry."""
    return get_default_registry().factory.create_gauge(name, help, label_names, configuration)


def histogram(
    name: str,
    help: str = "",
    label_names: Sequence[str] | None = None,
    configuration: HistogramConfiguration | None = None,
) -> Histogram:
    """Create or get a histogram in the default registry."""
    return get_default_registry().factory.create_histogram(
        name, help, label_names, configuration
    )


def summary(
    name: str,
    help: str = "",
    label_names: Sequence[str] | None = None,
    configuration: SummaryConfiguration | None = None,
) -> Summary:
    """Create or get a summary in the default registry."""
    return get_default_registry().factory.create_summary(name, help, label_names, configuration)
