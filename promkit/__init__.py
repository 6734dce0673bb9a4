"""promkit: in-process Prometheus metrics.

Counters, gauges, histograms and summaries live in a collector registry.
A collection pass turns them into family records, which the exporters
render in the text or protocol buffer exposition format.

Quick Start:
    >>> from promkit import CollectorRegistry, generate_latest
    >>> registry = CollectorRegistry()
    >>> requests = registry.factory.create_counter(
    ...     "http_requests_total", "HTTP requests", ("method",)
    ... )
    >>> requests.labels("GET").inc()
    >>> print(generate_latest(registry).decode())

Default Registry:
    >>> from promkit import counter, configure_metrics, MetricsConfig
    >>> configure_metrics(MetricsConfig(static_labels={"service": "api"}))
    >>> jobs = counter("jobs_total", "Jobs run")
    >>> jobs.inc()

Scrape Refusal:
    >>> from promkit import ScrapeFailedError
    >>> def check_backend() -> None:
    ...     if not backend.ready:
    ...         raise ScrapeFailedError("Backend not ready")
    >>> registry.add_before_collect_callback(check_backend)

Logging:
    >>> from promkit import configure_logging
    >>> configure_logging(level="debug", format="json")
"""

from __future__ import annotations

from promkit.atomic import AtomicDouble, AtomicLong
from promkit.collector import Child, Collector
from promkit.config import (
    DEFAULT_METRICS_CONFIG,
    EnvReader,
    MetricsConfig,
    load_config_file,
)
from promkit.exceptions import (
    ConfigurationError,
    InvalidConfigValueError,
    MetricRegistrationError,
    MetricsError,
    MetricValidationError,
    MissingConfigError,
    PromkitError,
    ScrapeFailedError,
    SerializationError,
)
from promkit.exporters import (
    PROTOBUF_CONTENT_TYPE,
    TEXT_CONTENT_TYPE,
    MetricFormatter,
    ProtobufFormatter,
    TextFormatter,
    generate_latest,
    parse_delimited,
    select_formatter,
)
from promkit.labels import LabelKey
from promkit.logging import (
    LogContext,
    LogLevel,
    StdlibLoggerAdapter,
    configure_logging,
    get_logger,
)
from promkit.metrics import (
    DEFAULT_BUCKETS,
    Counter,
    CounterConfiguration,
    Gauge,
    GaugeConfiguration,
    Histogram,
    HistogramConfiguration,
    Summary,
    SummaryConfiguration,
    exponential_buckets,
    linear_buckets,
)
from promkit.process import ProcessCollector
from promkit.quantile import QuantileEpsilonPair, QuantileStream
from promkit.records import (
    Bucket,
    CounterValue,
    FamilyRecord,
    GaugeValue,
    HistogramValue,
    MetricRecord,
    MetricType,
    Quantile,
    SummaryValue,
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


__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Registry
    "CollectorRegistry",
    "MetricFactory",
    "OnDemandCollector",
    "configure_metrics",
    "get_default_registry",
    "counter",
    "gauge",
    "histogram",
    "summary",
    # Metrics
    "Collector",
    "Child",
    "Counter",
    "Gauge",
    "Histogram",
    "Summary",
    "CounterConfiguration",
    "GaugeConfiguration",
    "HistogramConfiguration",
    "SummaryConfiguration",
    "DEFAULT_BUCKETS",
    "exponential_buckets",
    "linear_buckets",
    "LabelKey",
    "QuantileEpsilonPair",
    "QuantileStream",
    "AtomicDouble",
    "AtomicLong",
    "ProcessCollector",
    # Records
    "FamilyRecord",
    "MetricRecord",
    "MetricType",
    "CounterValue",
    "GaugeValue",
    "HistogramValue",
    "SummaryValue",
    "Bucket",
    "Quantile",
    # Exporters
    "MetricFormatter",
    "TextFormatter",
    "ProtobufFormatter",
    "TEXT_CONTENT_TYPE",
    "PROTOBUF_CONTENT_TYPE",
    "generate_latest",
    "parse_delimited",
    "select_formatter",
    # Configuration
    "MetricsConfig",
    "DEFAULT_METRICS_CONFIG",
    "EnvReader",
    "load_config_file",
    # Exceptions
    "PromkitError",
    "ConfigurationError",
    "InvalidConfigValueError",
    "MissingConfigError",
    "MetricsError",
    "MetricValidationError",
    "MetricRegistrationError",
    "ScrapeFailedError",
    "SerializationError",
    # Logging
    "LogContext",
    "LogLevel",
    "StdlibLoggerAdapter",
    "configure_logging",
    "get_logger",
]
