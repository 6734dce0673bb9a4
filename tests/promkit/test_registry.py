"""Tests for promkit.registry module.

This module tests:
- get-or-add semantics and name collisions
- MetricFactory defaults and static labels
- before-collect callbacks and on-demand collectors
- scrape failure propagation
- the default registry and convenience functions
"""

from __future__ import annotations

import asyncio
import importlib.util
import math

import pytest

from promkit.config import MetricsConfig
from promkit.exceptions import (
    MetricRegistrationError,
    MetricsError,
    MetricValidationError,
    ScrapeFailedError,
)
from promkit.logging import LogLevel
from promkit.metrics import (
    Counter,
    CounterConfiguration,
    Gauge,
    GaugeConfiguration,
    HistogramConfiguration,
    SummaryConfiguration,
)
from promkit.registry import (
    CollectorRegistry,
    MetricFactory,
    OnDemandCollector,
    configure_metrics,
    counter,
    gauge,
    get_default_registry,
    histogram,
    summary,
)
from promkit.testing import sample_value


# Check if pytest-asyncio is available
HAS_PYTEST_ASYNCIO = importlib.util.find_spec("pytest_asyncio") is not None

asyncio_test = pytest.mark.skipif(
    not HAS_PYTEST_ASYNCIO,
    reason="pytest-asyncio not installed"
)


class RecordingCollector:
    """On-demand collector that counts its refreshes."""

    def __init__(self) -> None:
        self.updates = 0
        self.gauge: Gauge | None = None

    def register_metrics(self, factory: MetricFactory) -> None:
        self.gauge = factory.create_gauge("refresh_count", "Refreshes")

    def update_metrics(self) -> None:
        self.updates += 1
        assert self.gauge is not None
        self.gauge.set(self.updates)


# =============================================================================
# Registration Tests
# =============================================================================


class TestGetOrAdd:
    """Tests for collector registration."""

    def test_first_registration_wins(self, registry: CollectorRegistry) -> None:
        """Test the supplied collector becomes canonical."""
        original = Counter("jobs_total", "Jobs")
        assert registry.get_or_add(original) is original
        assert registry.get("jobs_total") is original
        assert "jobs_total" in registry
        assert len(registry) == 1

    def test_same_shape_returns_existing(self, factory: MetricFactory) -> None:
        """Test redeclaring with the same shape returns the same collector."""
        first = factory.create_counter("jobs_total", "Jobs", ("queue",))
        second = factory.create_counter("jobs_total", "Other help", ("queue",))
        assert second is first

    def test_different_kind_collides(self, registry: CollectorRegistry) -> None:
        """Test a kind mismatch raises and keeps the original."""
        original = registry.factory.create_counter("jobs_total", "Jobs")
        with pytest.raises(MetricRegistrationError) as exc_info:
            registry.factory.create_gauge("jobs_total", "Jobs")
        assert exc_info.value.existing_type == "counter"
        assert exc_info.value.requested_type == "gauge"
        assert registry.get("jobs_total") is original

    def test_different_label_names_collide(self, registry: CollectorRegistry) -> None:
        """Test a label shape mismatch raises and keeps the original."""
        original = registry.factory.create_counter("requests_total", "Requests", ("method",))
        original.labels("GET").inc()
        with pytest.raises(MetricRegistrationError, match="label names"):
            registry.factory.create_counter("requests_total", "Requests", ("method", "code"))
        assert registry.get("requests_total") is original
        assert sample_value(registry, "requests_total", {"method": "GET"}) == 1.0

    def test_names_in_registration_order(self, factory: MetricFactory) -> None:
        """Test names keep registration order."""
        factory.create_gauge("b", "B")
        factory.create_gauge("a", "A")
        assert factory.registry.names == ["b", "a"]

    def test_remove(self, registry: CollectorRegistry) -> None:
        """Test removal by object and by name."""
        first = registry.factory.create_gauge("first", "First")
        registry.factory.create_gauge("second", "Second")
        assert registry.remove(first) is True
        assert registry.remove("second") is True
        assert registry.remove("missing") is False
        assert len(registry) == 0

    def test_remove_other_instance_is_noop(self, registry: CollectorRegistry) -> None:
        """Test removing a non-canonical instance leaves the registration."""
        registry.factory.create_gauge("up", "Up")
        assert registry.remove(Gauge("up", "Up")) is False
        assert "up" in registry


# =============================================================================
# Factory Tests
# =============================================================================


class TestMetricFactory:
    """Tests for MetricFactory."""

    def test_creates_every_kind(self, factory: MetricFactory) -> None:
        """Test all four kinds are created and registered."""
        factory.create_counter("c_total", "C")
        factory.create_gauge("g", "G")
        factory.create_histogram("h", "H")
        factory.create_summary("s", "S")
        assert factory.registry.names == ["c_total", "g", "h", "s"]

    def test_label_names_from_configuration(self, factory: MetricFactory) -> None:
        """Test configuration label names are used when none are given."""
        config = CounterConfiguration(label_names=("queue",))
        created = factory.create_counter("jobs_total", "Jobs", configuration=config)
        assert created.label_names == ("queue",)

    def test_histogram_uses_registry_default_buckets(self) -> None:
        """Test default buckets come from the registry configuration."""
        registry = CollectorRegistry(MetricsConfig(default_buckets=(1.0, 5.0)))
        created = registry.factory.create_histogram("h", "H")
        assert created.buckets == (1.0, 5.0, math.inf)

    def test_histogram_configuration_overrides_default(self, factory: MetricFactory) -> None:
        """Test explicit buckets win over the registry default."""
        created = factory.create_histogram(
            "h", "H", configuration=HistogramConfiguration(buckets=(0.1,))
        )
        assert created.buckets == (0.1, math.inf)

    def test_summary_uses_registry_defaults(self) -> None:
        """Test summary window settings come from the registry configuration."""
        config = MetricsConfig().with_decay(max_age_seconds=60, age_buckets=3, buffer_size=10)
        registry = CollectorRegistry(config.with_objectives({0.75: 0.01}))
        created = registry.factory.create_summary("s", "S")
        assert created.max_age_seconds == 60
        assert created.age_buckets == 3
        assert created.buffer_size == 10
        assert [o.quantile for o in created.objectives] == [0.75]

    def test_summary_configuration_overrides_default(self, factory: MetricFactory) -> None:
        """Test explicit summary options win."""
        created = factory.create_summary(
            "s", "S", configuration=SummaryConfiguration(age_buckets=2)
        )
        assert created.age_buckets == 2

    def test_suppression_from_registry_config(self) -> None:
        """Test suppression can be switched on registry-wide."""
        registry = CollectorRegistry(MetricsConfig(suppress_initial_value=True))
        registry.factory.create_counter("jobs_total", "Jobs")
        assert registry.collect_all()[0].metrics == ()

    def test_factory_static_labels(self, factory: MetricFactory) -> None:
        """Test factory labels are attached and metric labels win."""
        db = factory.with_labels({"component": "db", "tier": "factory"})
        config = GaugeConfiguration().with_static_labels(tier="metric")
        created = db.create_gauge("connections", "Connections", configuration=config)
        assert created.static_labels == {"component": "db", "tier": "metric"}

    def test_invalid_factory_labels(self, registry: CollectorRegistry) -> None:
        """Test factory label names are validated."""
        with pytest.raises(MetricValidationError):
            MetricFactory(registry, {"bad-name": "x"})


# =============================================================================
# Collection Tests
# =============================================================================


class TestCollectAll:
    """Tests for collection passes."""

    def test_families_in_registration_order(self, factory: MetricFactory) -> None:
        """Test one family per collector."""
        factory.create_counter("a_total", "A").inc()
        factory.create_gauge("b", "B").set(2)
        families = factory.registry.collect_all()
        assert [f.name for f in families] == ["a_total", "b"]

    def test_registry_static_labels(self) -> None:
        """Test registry labels are attached to every series."""
        registry = CollectorRegistry(MetricsConfig(static_labels={"service": "api"}))
        registry.factory.create_gauge("up", "Up").set(1)
        assert sample_value(registry, "up", {"service": "api"}) == 1.0

        registry.set_static_labels({"service": "worker"})
        assert sample_value(registry, "up", {"service": "worker"}) == 1.0

    @pytest.mark.parametrize("label", ["le", "quantile"])
    def test_registry_static_labels_reject_bucket_and_quantile(self, label: str) -> None:
        """Test labels the formats add themselves cannot be registry-wide."""
        with pytest.raises(MetricValidationError, match="reserved"):
            CollectorRegistry(MetricsConfig(static_labels={label: "x"}))

        registry = CollectorRegistry()
        registry.factory.create_histogram(
            "h", "H", configuration=HistogramConfiguration(buckets=(1.0,))
        ).observe(1)
        with pytest.raises(MetricValidationError, match="reserved"):
            registry.set_static_labels({label: "x"})
        assert registry.static_labels == {}
        assert sample_value(registry, "h_bucket", {"le": "1"}) == 1

    def test_callbacks_run_before_collection(self, registry: CollectorRegistry) -> None:
        """Test callbacks can update metrics for the same pass."""
        temperature = registry.factory.create_gauge("temperature", "Temperature")
        registry.add_before_collect_callback(lambda: temperature.set(21.5))
        assert sample_value(registry, "temperature") == 21.5

    def test_async_callback_in_sync_collection(self, registry: CollectorRegistry) -> None:
        """Test coroutine callbacks are driven to completion."""
        temperature = registry.factory.create_gauge("temperature", "Temperature")

        async def refresh() -> None:
            await asyncio.sleep(0)
            temperature.set(3.0)

        registry.add_before_collect_callback(refresh)
        assert sample_value(registry, "temperature") == 3.0

    def test_on_demand_collector(self, registry: CollectorRegistry) -> None:
        """Test on-demand collectors refresh before every pass."""
        collector = RecordingCollector()
        registry.register_on_demand_collector(collector)
        assert isinstance(collector, OnDemandCollector)
        assert "refresh_count" in registry
        assert sample_value(registry, "refresh_count") == 1.0
        assert sample_value(registry, "refresh_count") == 2.0

    def test_scrape_failure_propagates(self, registry: CollectorRegistry) -> None:
        """Test a refusing callback aborts the pass."""
        registry.factory.create_counter("jobs_total", "Jobs").inc()
        collector = RecordingCollector()
        registry.register_on_demand_collector(collector)
        failure = ScrapeFailedError("backend unreachable")

        def refuse() -> None:
            raise failure

        registry.add_before_collect_callback(refuse)
        families = None
        with pytest.raises(ScrapeFailedError) as exc_info:
            families = registry.collect_all()
        assert exc_info.value is failure
        assert families is None
        assert collector.updates == 0

    def test_on_demand_failure_propagates(self, registry: CollectorRegistry) -> None:
        """Test a refusing on-demand collector aborts the pass."""

        class Refusing(RecordingCollector):
            def update_metrics(self) -> None:
                raise ScrapeFailedError("not ready")

        registry.register_on_demand_collector(Refusing())
        with pytest.raises(ScrapeFailedError, match="not ready"):
            registry.collect_all()

    def test_other_errors_propagate_unchanged(self, registry: CollectorRegistry) -> None:
        """Test unexpected callback errors are not wrapped."""

        def broken() -> None:
            raise RuntimeError("bug")

        registry.add_before_collect_callback(broken)
        with pytest.raises(RuntimeError, match="bug"):
            registry.collect_all()

    def test_failure_logging(self, registry: CollectorRegistry, log_buffer) -> None:
        """Test refusals log a warning and faults log an error."""
        outcomes = iter([ScrapeFailedError("refused"), RuntimeError("bug")])

        def callback() -> None:
            raise next(outcomes)

        registry.add_before_collect_callback(callback)
        with pytest.raises(ScrapeFailedError):
            registry.collect_all()
        with pytest.raises(RuntimeError):
            registry.collect_all()

        levels = {r.message: r.level for r in log_buffer.records}
        assert levels["Scrape failed"] is LogLevel.WARNING
        assert levels["Before-collect callback raised"] is LogLevel.ERROR
        error_record = next(r for r in log_buffer.records if r.level is LogLevel.ERROR)
        assert isinstance(error_record.exc_info, RuntimeError)

    def test_scrape_logs_carry_scrape_id(self, registry: CollectorRegistry, log_buffer) -> None:
        """Test every pass runs in its own log context."""
        registry.collect_all()
        registry.collect_all()
        finished = [r for r in log_buffer.records if r.message == "Scrape finished"]
        assert [r.context.fields["scrape_id"] for r in finished] == [1, 2]
        assert finished[0].extra["families"] == 0

    def test_registration_logs(self, factory: MetricFactory, log_buffer) -> None:
        """Test registration and collisions are logged."""
        factory.create_counter("jobs_total", "Jobs")
        with pytest.raises(MetricRegistrationError):
            factory.create_gauge("jobs_total", "Jobs")
        messages = [r.message for r in log_buffer.records]
        assert "Collector registered" in messages
        assert "Collector name collision" in messages

    @asyncio_test
    @pytest.mark.asyncio
    async def test_collect_all_async(self, registry: CollectorRegistry) -> None:
        """Test async collection awaits coroutine callbacks."""
        temperature = registry.factory.create_gauge("temperature", "Temperature")
        calls: list[str] = []

        async def refresh() -> None:
            await asyncio.sleep(0)
            calls.append("async")
            temperature.set(7.0)

        registry.add_before_collect_callback(lambda: calls.append("sync"))
        registry.add_before_collect_callback(refresh)
        families = await registry.collect_all_async()
        assert calls == ["sync", "async"]
        assert families[0].metrics[0].value.value == 7.0

    @asyncio_test
    @pytest.mark.asyncio
    async def test_sync_collection_inside_loop(self, registry: CollectorRegistry) -> None:
        """Test sync collection refuses coroutine callbacks inside a loop."""

        async def refresh() -> None:
            await asyncio.sleep(0)

        registry.add_before_collect_callback(refresh)
        with pytest.raises(MetricsError, match="collect_all_async"):
            registry.collect_all()

    @asyncio_test
    @pytest.mark.asyncio
    async def test_async_scrape_failure(self, registry: CollectorRegistry) -> None:
        """Test async collection propagates refusals."""

        async def refuse() -> None:
            raise ScrapeFailedError("refused")

        registry.add_before_collect_callback(refuse)
        with pytest.raises(ScrapeFailedError):
            await registry.collect_all_async()


# =============================================================================
# Lifecycle Tests
# =============================================================================


class TestLifecycle:
    """Tests for clear and close."""

    def test_clear_keeps_callbacks(self, registry: CollectorRegistry) -> None:
        """Test clear drops collectors but not callbacks."""
        calls: list[int] = []
        registry.factory.create_gauge("up", "Up")
        registry.register_on_demand_collector(RecordingCollector())
        registry.add_before_collect_callback(lambda: calls.append(1))
        registry.clear()
        assert len(registry) == 0
        assert registry.collect_all() == []
        assert calls == [1]

    def test_close(self) -> None:
        """Test close drops callbacks and marks the registry closed."""
        calls: list[int] = []
        with CollectorRegistry() as registry:
            registry.add_before_collect_callback(lambda: calls.append(1))
        assert registry.closed
        assert calls == []

    def test_closed_registry_rejects_use(self) -> None:
        """Test registrations and passes fail after close."""
        registry = CollectorRegistry()
        registry.close()
        registry.close()

        with pytest.raises(MetricsError, match="closed"):
            registry.get_or_add(Counter("jobs_total", "Jobs"))
        with pytest.raises(MetricsError, match="closed"):
            registry.register_on_demand_collector(RecordingCollector())
        with pytest.raises(MetricsError, match="closed"):
            registry.add_before_collect_callback(lambda: None)
        with pytest.raises(MetricsError, match="closed"):
            registry.collect_all()
        assert len(registry) == 0

    @asyncio_test
    @pytest.mark.asyncio
    async def test_closed_registry_rejects_async_collection(self) -> None:
        """Test the async pass also fails after close."""
        registry = CollectorRegistry()
        registry.close()
        with pytest.raises(MetricsError, match="closed"):
            await registry.collect_all_async()


# =============================================================================
# Default Registry Tests
# =============================================================================


class TestDefaultRegistry:
    """Tests for the process-wide registry."""

    def test_convenience_functions(self, default_registry: CollectorRegistry) -> None:
        """Test module-level helpers use the default registry."""
        assert get_default_registry() is default_registry
        counter("jobs_total", "Jobs").inc()
        gauge("up", "Up").set(1)
        histogram("latency_seconds", "Latency").observe(0.1)
        summary("payload_bytes", "Payload").observe(10)
        assert default_registry.names == [
            "jobs_total",
            "up",
            "latency_seconds",
            "payload_bytes",
        ]
        assert counter("jobs_total", "Jobs").get() == 1.0

    def test_configure_metrics_replaces_registry(self, default_registry: CollectorRegistry) -> None:
        """Test configure_metrics installs a new registry."""
        replacement = configure_metrics(MetricsConfig(register_process_metrics=False))
        try:
            assert replacement is not default_registry
            assert get_default_registry() is replacement
        finally:
            replacement.close()

    def test_process_metrics_registered(self, default_registry: CollectorRegistry) -> None:
        """Test the process collector joins when enabled."""
        registry = configure_metrics(MetricsConfig(register_process_metrics=True))
        try:
            assert "process_cpu_seconds_total" in registry
            registry.clear()
            assert "process_cpu_seconds_total" not in registry
        finally:
            registry.close()

    def test_lazy_creation_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the default registry is built from the environment once."""
        import promkit.registry as registry_module

        monkeypatch.setattr(registry_module, "_default_registry", None)
        monkeypatch.setenv("PROMKIT_REGISTER_PROCESS_METRICS", "false")
        monkeypatch.setenv("PROMKIT_STATIC_LABELS", '{"env": "test"}')
        registry = get_default_registry()
        try:
            assert get_default_registry() is registry
            assert registry.static_labels == {"env": "test"}
            assert len(registry) == 0
        finally:
            registry.close()
