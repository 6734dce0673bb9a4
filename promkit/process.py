"""Process and interpreter metrics.

ProcessCollector is an on-demand collector: it creates its metrics once
when registered and samples the current process with psutil right before
every collection pass.

Example:
    >>> registry = CollectorRegistry()
    >>> registry.register_on_demand_collector(ProcessCollector())
    >>> names = [family.name for family in registry.collect_all()]
"""

from __future__ import annotations

import gc
import platform
import threading
from typing import TYPE_CHECKING

import psutil

from promkit.logging import get_logger


if TYPE_CHECKING:
    from promkit.metrics import Counter, CounterChild, Gauge
    from promkit.registry import MetricFactory


logger = get_logger(__name__)


class ProcessCollector:
    """Samples CPU, memory, threads, file descriptors and GC activity.

    Args:
        process: Process to sample; defaults to the current process.
    """

    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process or psutil.Process()
        self._lock = threading.Lock()
        self._cpu_seconds: Counter | None = None
        self._start_time: Gauge | None = None
        self._virtual_memory: Gauge | None = None
        self._resident_memory: Gauge | None = None
        self._open_fds: Gauge | None = None
        self._num_threads: Gauge | None = None
        self._gc_collections: list[CounterChild] = []

    def register_metrics(self, factory: MetricFactory) -> None:
        """Create the process metrics in the factory's registry."""
        self._cpu_seconds = factory.create_counter(
            "process_cpu_seconds_total",
            "Total user and system CPU time spent in seconds.",
        )
        self._start_time = factory.create_gauge(
            "process_start_time_seconds",
            "Start time of the process since unix epoch in seconds.",
        )
        self._virtual_memory = factory.create_gauge(
            "process_virtual_memory_bytes",
            "Virtual memory size in bytes.",
        )
        self._resident_memory = factory.create_gauge(
            "process_resident_memory_bytes",
            "Resident memory size in bytes.",
        )
        self._open_fds = factory.create_gauge(
            "process_open_fds",
            "Number of open file descriptors or handles.",
        )
        self._num_threads = factory.create_gauge(
            "process_num_threads",
            "Total number of threads.",
        )

        collections = factory.create_counter(
            "python_gc_collections_total",
            "Number of times this generation was collected.",
            ("generation",),
        )
        self._gc_collections = [
            collections.labels(str(generation)) for generation in range(len(gc.get_stats()))
        ]

        info = factory.create_gauge(
            "python_info",
            "Python platform information.",
            ("implementation", "version"),
        )
        info.labels(platform.python_implementation(), platform.python_version()).set(1)

        self._start_time.set(self._process.create_time())

    def update_metrics(self) -> None:
        """Sample the process and update the metrics."""
        if self._cpu_seconds is None:
            return

        with self._lock:
            for child, stats in zip(self._gc_collections, gc.get_stats()):
                child.inc_to(stats["collections"])

            with self._process.oneshot():
                cpu = self._process.cpu_times()
                self._cpu_seconds.inc_to(cpu.user + cpu.system)

                memory = self._process.memory_info()
                self._virtual_memory.set(memory.vms)
                self._resident_memory.set(memory.rss)
                self._num_threads.set(self._process.num_threads())

                try:
                    if hasattr(self._process, "num_fds"):
                        self._open_fds.set(self._process.num_fds())
                    else:
                        self._open_fds.set(self._process.num_handles())
                except psutil.AccessDenied:
                    logger.debug("Open descriptor count not accessible", pid=self._process.pid)
