from __future__ import annotations

import resource
import sys
import time
from threading import Lock

from reqpulse.observability.metrics import MetricDescriptor, MetricRegistry


PROCESS_CPU_SECONDS = "process_cpu_seconds_total"
PROCESS_MAX_RSS_BYTES = "process_max_resident_memory_bytes"
PROCESS_START_TIME = "process_start_time_seconds"
APP_INFO = "app_info"


def process_usage() -> dict[str, float]:
    """CPU seconds and peak resident memory of this process, from getrusage."""

    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is bytes on macOS, kilobytes elsewhere.
    scale = 1 if sys.platform == "darwin" else 1024
    return {
        "user_s": float(usage.ru_utime),
        "system_s": float(usage.ru_stime),
        "max_rss_bytes": float(usage.ru_maxrss) * scale,
    }


class ProcessCollector:
    """Refreshes process-level metrics each time the registry is read."""

    def __init__(self, registry: MetricRegistry) -> None:
        self._cpu = registry.register(
            MetricDescriptor.counter(PROCESS_CPU_SECONDS, "Total user and system CPU time spent in seconds")
        )
        self._rss = registry.register(
            MetricDescriptor.gauge(PROCESS_MAX_RSS_BYTES, "Peak resident memory size in bytes")
        )
        self._start = registry.register(
            MetricDescriptor.gauge(PROCESS_START_TIME, "Start time of the process since unix epoch in seconds")
        )
        self._start.set(None, time.time())
        self._last_cpu = 0.0
        self._lock = Lock()

    def __call__(self, registry: MetricRegistry) -> None:
        _ = registry
        usage = process_usage()
        cpu = usage["user_s"] + usage["system_s"]
        with self._lock:
            delta = cpu - self._last_cpu
            if delta > 0:
                self._last_cpu = cpu
        if delta > 0:
            self._cpu.inc(delta=delta)
        self._rss.set(None, usage["max_rss_bytes"])


def register_process_metrics(registry: MetricRegistry) -> ProcessCollector:
    collector = ProcessCollector(registry)
    registry.add_collector(collector)
    return collector


def register_app_info(registry: MetricRegistry, name: str, version: str, environment: str) -> None:
    info = registry.register(
        MetricDescriptor.gauge(APP_INFO, "Application information", labels=("name", "version", "environment"))
    )
    info.set({"name": name, "version": version, "environment": environment}, 1)
