"""Counter, Gauge, Histogram and Summary metrics.

Each metric is a Collector whose children hold atomic cells. Collectors
without label names forward their operations to the unlabelled child.

Example:
    >>> from promkit.metrics import Counter, Histogram
    >>> requests = Counter("requests_total", "Total requests", ("method",))
    >>> requests.labels("POST").inc()

    >>> latency = Histogram("request_duration_seconds", "Request duration")
    >>> with latency.time():
    ...     process_request()
"""

from __future__ import annotations

import bisect
import contextlib
import math
import threading
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, ClassVar, Self

from promkit.atomic import AtomicDouble, AtomicLong
from promkit.collector import Child, Collector
from promkit.exceptions import MetricValidationError
from promkit.quantile import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_OBJECTIVES,
    QuantileStream,
    normalize_objectives,
)
from promkit.records import (
    Bucket,
    CounterValue,
    GaugeValue,
    HistogramValue,
    MetricType,
    Quantile,
    SummaryValue,
)


if TYPE_CHECKING:
    from collections.abc import Callable, Generator, Mapping, Sequence

    from promkit.labels import LabelKey
    from promkit.quantile import QuantileEpsilonPair


DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0
)
DEFAULT_MAX_AGE_SECONDS = 600.0
DEFAULT_AGE_BUCKETS = 5


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class MetricConfiguration:
    """Options shared by every metric kind.

    Attributes:
        label_names: Ordered label names of the metric.
        static_labels: Labels attached to every exported child.
        suppress_initial_value: Hide children until their first mutation.
    """

    label_names: tuple[str, ...] = ()
    static_labels: Mapping[str, str] = field(default_factory=dict)
    suppress_initial_value: bool = False

    def with_label_names(self, *label_names: str) -> Self:
        """Return a copy with the given label names."""
        return replace(self, label_names=tuple(label_names))

    def with_static_labels(self, **labels: str) -> Self:
        """Return a copy with additional static labels."""
        return replace(self, static_labels={**self.static_labels, **labels})

    def with_suppress_initial_value(self, suppress: bool = True) -> Self:
        """Return a copy with initial-value suppression toggled."""
        return replace(self, suppress_initial_value=suppress)


@dataclass(frozen=True, slots=True)
class CounterConfiguration(MetricConfiguration):
    pass


@dataclass(frozen=True, slots=True)
class GaugeConfiguration(MetricConfiguration):
    pass


@dataclass(frozen=True, slots=True)
class HistogramConfiguration(MetricConfiguration):
    """Histogram options.

    Attributes:
        buckets: Upper bucket bounds; None selects the registry default.
    """

    buckets: tuple[float, ...] | None = None


@dataclass(frozen=True, slots=True)
class SummaryConfiguration(MetricConfiguration):
    """Summary options. None values select the registry defaults.

    Attributes:
        objectives: Quantiles to report with their allowed error.
        max_age_seconds: Length of the sliding window quantiles cover.
        age_buckets: Number of rotating streams within the window.
        buffer_size: Observations buffered before they are merged.
    """

    objectives: Any = None
    max_age_seconds: float | None = None
    age_buckets: int | None = None
    buffer_size: int | None = None


# =============================================================================
# Counter
# =============================================================================


class CounterChild(Child):
    """One series of a counter."""

    def __init__(self, parent: Counter, labels: LabelKey, publish: bool) -> None:
        super().__init__(parent, labels, publish)
        self._value = AtomicDouble()

    def inc(self, amount: float = 1.0) -> None:
        """Increment the counter.

        Raises:
            MetricValidationError: If ``amount`` is negative.
        """
        if amount < 0:
            raise MetricValidationError(
                f"Counter increment must be non-negative, got {amount}",
                metric_name=self._parent.name,
            )
        self._value.add(amount)
        self.publish()

    def inc_to(self, target: float) -> None:
        """Raise the counter to ``target``; lower targets are ignored."""
        self._value.inc_to(target)
        self.publish()

    def get(self) -> float:
        return self._value.get()

    @contextlib.contextmanager
    def count_exceptions(
        self,
        *exception_types: type[BaseException],
    ) -> Generator[None, None, None]:
        """Count exceptions raised inside the block, then re-raise them.

        Usable as a context manager or a decorator.

        Args:
            *exception_types: Exception types to count (default: Exception).
        """
        types = exception_types or (Exception,)
        try:
            yield
        except types:
            self.inc()
            raise

    def _populate(self) -> CounterValue:
        return CounterValue(self._value.get())


class Counter(Collector[CounterChild]):
    """A cumulative value that only goes up.

    Example:
        >>> errors = Counter("errors_total", "Errors seen")
        >>> with errors.count_exceptions(ValueError):
        ...     parse(payload)
    """

    metric_type: ClassVar[MetricType] = MetricType.COUNTER

    def _new_child(self, labels: LabelKey, publish: bool) -> CounterChild:
        return CounterChild(self, labels, publish)

    def inc(self, amount: float = 1.0) -> None:
        self._unlabelled.inc(amount)

    def inc_to(self, target: float) -> None:
        self._unlabelled.inc_to(target)

    def get(self) -> float:
        return self._unlabelled.get()

    def count_exceptions(
        self,
        *exception_types: type[BaseException],
    ) -> contextlib.AbstractContextManager[None]:
        return self._unlabelled.count_exceptions(*exception_types)


# =============================================================================
# Gauge
# =============================================================================


class GaugeChild(Child):
    """One series of a gauge."""

    def __init__(self, parent: Gauge, labels: LabelKey, publish: bool) -> None:
        super().__init__(parent, labels, publish)
        self._value = AtomicDouble()

    def set(self, value: float) -> None:
        self._value.set(value)
        self.publish()

    def inc(self, amount: float = 1.0) -> None:
        self._value.add(amount)
        self.publish()

    def dec(self, amount: float = 1.0) -> None:
        self._value.add(-amount)
        self.publish()

    def inc_to(self, target: float) -> None:
        """Raise the gauge to ``target`` if it is currently lower."""
        self._value.inc_to(target)
        self.publish()

    def dec_to(self, target: float) -> None:
        """Lower the gauge to ``target`` if it is currently higher."""
        self._value.dec_to(target)
        self.publish()

    def set_to_current_time(self) -> None:
        """Set the gauge to the current Unix time in seconds."""
        self.set(time.time())

    def get(self) -> float:
        return self._value.get()

    @contextlib.contextmanager
    def track_inprogress(self) -> Generator[None, None, None]:
        """Increment on entry and decrement on exit.

        Usable as a context manager or a decorator.
        """
        self.inc()
        try:
            yield
        finally:
            self.dec()

    def _populate(self) -> GaugeValue:
        return GaugeValue(self._value.get())


class Gauge(Collector[GaugeChild]):
    """A value that can go up and down.

    Example:
        >>> in_flight = Gauge("jobs_in_flight", "Jobs being processed")
        >>> @in_flight.track_inprogress()
        ... def run_job() -> None:
        ...     ...
    """

    metric_type: ClassVar[MetricType] = MetricType.GAUGE

    def _new_child(self, labels: LabelKey, publish: bool) -> GaugeChild:
        return GaugeChild(self, labels, publish)

    def set(self, value: float) -> None:
        self._unlabelled.set(value)

    def inc(self, amount: float = 1.0) -> None:
        self._unlabelled.inc(amount)

    def dec(self, amount: float = 1.0) -> None:
        self._unlabelled.dec(amount)

    def inc_to(self, target: float) -> None:
        self._unlabelled.inc_to(target)

    def dec_to(self, target: float) -> None:
        self._unlabelled.dec_to(target)

    def set_to_current_time(self) -> None:
        self._unlabelled.set_to_current_time()

    def get(self) -> float:
        return self._unlabelled.get()

    def track_inprogress(self) -> contextlib.AbstractContextManager[None]:
        return self._unlabelled.track_inprogress()


# =============================================================================
# Histogram
# =============================================================================


def exponential_buckets(start: float, factor: float, count: int) -> tuple[float, ...]:
    """Create ``count`` bounds starting at ``start``, each ``factor`` times the last.

    Raises:
        MetricValidationError: If start <= 0, factor <= 1 or count < 1.
    """
    if count < 1:
        raise MetricValidationError(f"exponential_buckets needs a positive count, got {count}")
    if start <= 0:
        raise MetricValidationError(f"exponential_buckets needs a positive start, got {start}")
    if factor <= 1:
        raise MetricValidationError(
            f"exponential_buckets needs a factor greater than 1, got {factor}"
        )
    buckets: list[float] = []
    for _ in range(count):
        buckets.append(start)
        start *= factor
    return tuple(buckets)


def linear_buckets(start: float, width: float, count: int) -> tuple[float, ...]:
    """Create ``count`` bounds starting at ``start``, spaced ``width`` apart.

    Raises:
        MetricValidationError: If width <= 0 or count < 1.
    """
    if count < 1:
        raise MetricValidationError(f"linear_buckets needs a positive count, got {count}")
    if width <= 0:
        raise MetricValidationError(f"linear_buckets needs a positive width, got {width}")
    buckets: list[float] = []
    for _ in range(count):
        buckets.append(start)
        start += width
    return tuple(buckets)


def validate_buckets(buckets: Sequence[float], metric_name: str | None = None) -> tuple[float, ...]:
    """Check that bounds are non-empty and strictly increasing.

    Returns:
        The bounds as floats, ending with +Inf.

    Raises:
        MetricValidationError: If the bounds are empty, unordered or NaN.
    """
    bounds = [float(b) for b in buckets]
    if not bounds:
        raise MetricValidationError("Histogram must have at least one bucket", metric_name=metric_name)
    if any(math.isnan(b) for b in bounds):
        raise MetricValidationError("Bucket bounds must not be NaN", metric_name=metric_name)
    if bounds[-1] != math.inf:
        bounds.append(math.inf)
    for lower, upper in zip(bounds, bounds[1:]):
        if upper <= lower:
            raise MetricValidationError(
                "Bucket bounds must be strictly increasing",
                metric_name=metric_name,
                details={"buckets": bounds},
            )
    return tuple(bounds)


class HistogramChild(Child):
    """One series of a histogram.

    Each bucket cell counts only the observations that fall into it; the
    cumulative counts are built when the child is collected. The exported
    count is the total over all bucket cells, so it always equals the +Inf
    bucket even while observations are in flight.
    """

    def __init__(self, parent: Histogram, labels: LabelKey, publish: bool) -> None:
        super().__init__(parent, labels, publish)
        self._upper_bounds = parent.buckets
        self._bucket_counts = tuple(AtomicLong() for _ in self._upper_bounds)
        self._sum = AtomicDouble()

    def observe(self, value: float, count: int = 1) -> None:
        """Record ``count`` observations of ``value``.

        A NaN value is counted in the +Inf bucket and turns the sum into NaN.

        Raises:
            MetricValidationError: If ``count`` is negative.
        """
        if count < 0:
            raise MetricValidationError(
                f"Observation count must be non-negative, got {count}",
                metric_name=self._parent.name,
            )
        if math.isnan(value):
            index = len(self._upper_bounds) - 1
        else:
            index = bisect.bisect_left(self._upper_bounds, value)
        self._bucket_counts[index].add(count)
        self._sum.add(value * count)
        self.publish()

    @contextlib.contextmanager
    def time(self) -> Generator[None, None, None]:
        """Observe the duration of the block in seconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start)

    @property
    def sample_count(self) -> int:
        return sum(cell.get() for cell in self._bucket_counts)

    @property
    def sample_sum(self) -> float:
        return self._sum.get()

    def _populate(self) -> HistogramValue:
        cumulative = 0
        buckets: list[Bucket] = []
        for bound, cell in zip(self._upper_bounds, self._bucket_counts):
            cumulative += cell.get()
            buckets.append(Bucket(bound, cumulative))
        return HistogramValue(
            sample_count=cumulative,
            sample_sum=self._sum.get(),
            buckets=tuple(buckets),
        )


class Histogram(Collector[HistogramChild]):
    """Counts observations in configurable cumulative buckets.

    Args:
        name: Metric family name.
        help: Help text.
        label_names: Ordered label names; ``le`` is reserved.
        buckets: Upper bounds, strictly increasing. +Inf is appended when
            missing. Defaults to DEFAULT_BUCKETS.
        static_labels: Labels attached to every exported child.
        suppress_initial_value: Hide children until their first observation.
    """

    metric_type: ClassVar[MetricType] = MetricType.HISTOGRAM
    reserved_label_names: ClassVar[tuple[str, ...]] = ("le",)

    def __init__(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        *,
        buckets: Sequence[float] | None = None,
        static_labels: Mapping[str, Any] | None = None,
        suppress_initial_value: bool = False,
    ) -> None:
        super().__init__(
            name,
            help,
            label_names,
            static_labels=static_labels,
            suppress_initial_value=suppress_initial_value,
        )
        self._buckets = validate_buckets(
            DEFAULT_BUCKETS if buckets is None else buckets,
            metric_name=name,
        )

    @property
    def buckets(self) -> tuple[float, ...]:
        """Upper bounds including the final +Inf."""
        return self._buckets

    def _new_child(self, labels: LabelKey, publish: bool) -> HistogramChild:
        return HistogramChild(self, labels, publish)

    def observe(self, value: float, count: int = 1) -> None:
        self._unlabelled.observe(value, count)

    def time(self) -> contextlib.AbstractContextManager[None]:
        return self._unlabelled.time()

    @property
    def sample_count(self) -> int:
        return self._unlabelled.sample_count

    @property
    def sample_sum(self) -> float:
        return self._unlabelled.sample_sum


# =============================================================================
# Summary
# =============================================================================


class SummaryChild(Child):
    """One series of a summary.

    Observations go to a hot buffer. When the buffer fills or its time
    window closes, it is swapped with the cold buffer, whose values are
    inserted into every stream of the age ring. Each stream in the ring
    was reset at a different time; the head stream is the one that has
    been accumulating for the full window and answers queries. Once the
    head's window expires it is reset and the next stream becomes head.
    """

    def __init__(self, parent: Summary, labels: LabelKey, publish: bool) -> None:
        super().__init__(parent, labels, publish)
        self._objectives = parent.objectives
        self._clock = parent.clock
        self._buffer_size = parent.buffer_size
        self._stream_duration = parent.max_age_seconds / parent.age_buckets

        self._streams = [
            QuantileStream.targeted(self._objectives, self._buffer_size)
            for _ in range(parent.age_buckets)
        ]
        self._head_index = 0
        self._head_stream = self._streams[0]
        self._head_stream_expiry = self._clock() + self._stream_duration
        self._hot_buffer_expiry = self._head_stream_expiry

        self._hot_buffer: list[float] = []
        self._cold_buffer: list[float] = []
        self._sum = AtomicDouble()
        self._count = AtomicLong()

        # Lock order: _buffer_lock, then _lock.
        self._buffer_lock = threading.Lock()
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        """Record one observation. NaN values are ignored."""
        if math.isnan(value):
            return

        now = self._clock()
        with self._buffer_lock:
            if now > self._hot_buffer_expiry:
                self._flush(now)
            self._hot_buffer.append(value)
            if len(self._hot_buffer) >= self._buffer_size:
                self._flush(now)
        self.publish()

    @contextlib.contextmanager
    def time(self) -> Generator[None, None, None]:
        """Observe the duration of the block in seconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start)

    def _flush(self, now: float) -> None:
        with self._lock:
            self._swap_buffers(now)
            self._flush_cold_buffer()

    def _swap_buffers(self, now: float) -> None:
        self._hot_buffer, self._cold_buffer = self._cold_buffer, self._hot_buffer
        while now > self._hot_buffer_expiry:
            self._hot_buffer_expiry += self._stream_duration

    def _flush_cold_buffer(self) -> None:
        for value in self._cold_buffer:
            self._sum.add(value)
        self._count.add(len(self._cold_buffer))
        # Without objectives only sum and count are exported.
        if self._objectives:
            for value in self._cold_buffer:
                for stream in self._streams:
                    stream.insert(value)
        self._cold_buffer.clear()
        self._maybe_rotate_streams()

    def _maybe_rotate_streams(self) -> None:
        while self._head_stream_expiry < self._hot_buffer_expiry:
            self._head_stream.reset()
            self._head_index = (self._head_index + 1) % len(self._streams)
            self._head_stream = self._streams[self._head_index]
            self._head_stream_expiry += self._stream_duration

    @property
    def sample_count(self) -> int:
        """Observations merged so far; buffered values are counted on collect."""
        return self._count.get()

    @property
    def sample_sum(self) -> float:
        return self._sum.get()

    def _populate(self) -> SummaryValue:
        now = self._clock()
        with self._buffer_lock, self._lock:
            self._swap_buffers(now)
            self._flush_cold_buffer()
            head = self._head_stream
            quantiles = tuple(
                Quantile(o.quantile, math.nan if head.count == 0 else head.query(o.quantile))
                for o in self._objectives
            )
            return SummaryValue(
                sample_count=self._count.get(),
                sample_sum=self._sum.get(),
                quantiles=quantiles,
            )


class Summary(Collector[SummaryChild]):
    """Tracks sum, count and sliding-window quantiles of observations.

    Args:
        name: Metric family name.
        help: Help text.
        label_names: Ordered label names; ``quantile`` is reserved.
        objectives: ``{quantile: epsilon}`` mapping or pairs. Defaults to
            ``{0.5: 0.05, 0.9: 0.05, 0.99: 0.001}``; an empty collection
            exports only sum and count.
        max_age_seconds: Window covered by the quantiles.
        age_buckets: Number of streams rotating through the window.
        buffer_size: Observations buffered before merging.
        clock: Monotonic time source in seconds.
        static_labels: Labels attached to every exported child.
        suppress_initial_value: Hide children until their first observation.
    """

    metric_type: ClassVar[MetricType] = MetricType.SUMMARY
    reserved_label_names: ClassVar[tuple[str, ...]] = ("quantile",)

    def __init__(
        self,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        *,
        objectives: Any = None,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        age_buckets: int = DEFAULT_AGE_BUCKETS,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        clock: Callable[[], float] | None = None,
        static_labels: Mapping[str, Any] | None = None,
        suppress_initial_value: bool = False,
    ) -> None:
        super().__init__(
            name,
            help,
            label_names,
            static_labels=static_labels,
            suppress_initial_value=suppress_initial_value,
        )
        if max_age_seconds <= 0:
            raise MetricValidationError(
                f"max_age_seconds must be positive, got {max_age_seconds}",
                metric_name=name,
            )
        if age_buckets < 1:
            raise MetricValidationError(
                f"age_buckets must be at least 1, got {age_buckets}",
                metric_name=name,
            )
        if buffer_size < 1:
            raise MetricValidationError(
                f"buffer_size must be at least 1, got {buffer_size}",
                metric_name=name,
            )
        self._objectives = normalize_objectives(
            DEFAULT_OBJECTIVES if objectives is None else objectives
        )
        self._max_age_seconds = float(max_age_seconds)
        self._age_buckets = age_buckets
        self._buffer_size = buffer_size
        self._clock = clock or time.monotonic

    @property
    def objectives(self) -> tuple[QuantileEpsilonPair, ...]:
        return self._objectives

    @property
    def max_age_seconds(self) -> float:
        return self._max_age_seconds

    @property
    def age_buckets(self) -> int:
        return self._age_buckets

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def _new_child(self, labels: LabelKey, publish: bool) -> SummaryChild:
        return SummaryChild(self, labels, publish)

    def observe(self, value: float) -> None:
        self._unlabelled.observe(value)

    def time(self) -> contextlib.AbstractContextManager[None]:
        return self._unlabelled.time()
