"""Process-local metric registry with a text exposition renderer.

Counters, gauges, histograms and summaries live for the lifetime of the
registry. Each labeled series carries its own lock so unrelated label
combinations never serialize on each other, and readers always see a
histogram's buckets, sum and count from the same update.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any

from reqpulse.observability.errors import (
    ConfigurationError,
    DuplicateMetricError,
    InvalidMutationError,
    LabelMismatchError,
    MetricMutationError,
    UnknownMetricError,
)
from reqpulse.observability.snapshot import DistributionSample, ScalarSample, Snapshot
from reqpulse.observability.traces import TraceRecord


logger = logging.getLogger(__name__)

CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"

DEFAULT_BUCKETS: tuple[float, ...] = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0)
DEFAULT_QUANTILES: tuple[float, ...] = (0.5, 0.9, 0.95, 0.99)
DEFAULT_SUMMARY_WINDOW = 500

_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"


@dataclass(frozen=True)
class MetricDescriptor:
    name: str
    kind: MetricKind
    help: str = ""
    label_names: tuple[str, ...] = ()
    buckets: tuple[float, ...] = ()
    quantiles: tuple[float, ...] = ()
    max_samples: int = DEFAULT_SUMMARY_WINDOW

    def __post_init__(self) -> None:
        try:
            kind = MetricKind(self.kind)
        except ValueError as exc:
            raise ConfigurationError(f"unknown metric kind {self.kind!r}") from exc
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "label_names", tuple(self.label_names))

        if not _NAME_RE.match(self.name or ""):
            raise ConfigurationError(f"invalid metric name {self.name!r}")
        if len(set(self.label_names)) != len(self.label_names):
            raise ConfigurationError(f"duplicate label names for {self.name!r}: {list(self.label_names)}")
        for label in self.label_names:
            if not _LABEL_RE.match(label) or label.startswith("__"):
                raise ConfigurationError(f"invalid label name {label!r} for {self.name!r}")

        if kind is MetricKind.HISTOGRAM:
            if "le" in self.label_names:
                raise ConfigurationError("'le' is reserved for histogram buckets")
            buckets = tuple(float(b) for b in (self.buckets or DEFAULT_BUCKETS))
            if buckets and buckets[-1] == math.inf:
                buckets = buckets[:-1]
            if not buckets:
                raise ConfigurationError(f"histogram {self.name!r} needs at least one finite bucket")
            if any(not math.isfinite(b) for b in buckets):
                raise ConfigurationError(f"histogram {self.name!r} buckets must be finite")
            if any(b2 <= b1 for b1, b2 in zip(buckets, buckets[1:])):
                raise ConfigurationError(f"histogram {self.name!r} buckets must be strictly increasing")
            object.__setattr__(self, "buckets", buckets)
        elif self.buckets:
            raise ConfigurationError(f"buckets only apply to histograms, not {kind.value}")

        if kind is MetricKind.SUMMARY:
            if "quantile" in self.label_names:
                raise ConfigurationError("'quantile' is reserved for summaries")
            quantiles = tuple(sorted(float(q) for q in (self.quantiles or DEFAULT_QUANTILES)))
            if any(not 0.0 < q < 1.0 for q in quantiles):
                raise ConfigurationError(f"summary {self.name!r} quantiles must lie in (0, 1)")
            if self.max_samples <= 0:
                raise ConfigurationError(f"summary {self.name!r} max_samples must be positive")
            object.__setattr__(self, "quantiles", quantiles)
        elif self.quantiles:
            raise ConfigurationError(f"quantiles only apply to summaries, not {kind.value}")

    @classmethod
    def counter(cls, name: str, help: str = "", labels: Iterable[str] = ()) -> "MetricDescriptor":
        return cls(name=name, kind=MetricKind.COUNTER, help=help, label_names=tuple(labels))

    @classmethod
    def gauge(cls, name: str, help: str = "", labels: Iterable[str] = ()) -> "MetricDescriptor":
        return cls(name=name, kind=MetricKind.GAUGE, help=help, label_names=tuple(labels))

    @classmethod
    def histogram(
        cls,
        name: str,
        help: str = "",
        labels: Iterable[str] = (),
        buckets: Iterable[float] = DEFAULT_BUCKETS,
    ) -> "MetricDescriptor":
        return cls(name=name, kind=MetricKind.HISTOGRAM, help=help, label_names=tuple(labels), buckets=tuple(buckets))

    @classmethod
    def summary(
        cls,
        name: str,
        help: str = "",
        labels: Iterable[str] = (),
        quantiles: Iterable[float] = DEFAULT_QUANTILES,
        max_samples: int = DEFAULT_SUMMARY_WINDOW,
    ) -> "MetricDescriptor":
        return cls(
            name=name,
            kind=MetricKind.SUMMARY,
            help=help,
            label_names=tuple(labels),
            quantiles=tuple(quantiles),
            max_samples=max_samples,
        )


class _ScalarSeries:
    __slots__ = ("lock", "value")

    def __init__(self) -> None:
        self.lock = Lock()
        self.value = 0.0

    def read(self) -> float:
        with self.lock:
            return self.value


class _HistogramSeries:
    __slots__ = ("lock", "bounds", "counts", "sum", "count")

    def __init__(self, bounds: tuple[float, ...]) -> None:
        self.lock = Lock()
        self.bounds = bounds
        self.counts = [0] * len(bounds)
        self.sum = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        with self.lock:
            # Cumulative: every bucket whose upper bound admits the value.
            for i, bound in enumerate(self.bounds):
                if value <= bound:
                    self.counts[i] += 1
            self.sum += value
            self.count += 1

    def read(self) -> tuple[tuple[tuple[float, int], ...], float, int]:
        with self.lock:
            buckets = tuple(zip(self.bounds, self.counts)) + ((math.inf, self.count),)
            return buckets, self.sum, self.count


class _SummarySeries:
    __slots__ = ("lock", "quantiles", "samples", "sum", "count")

    def __init__(self, quantiles: tuple[float, ...], max_samples: int) -> None:
        self.lock = Lock()
        self.quantiles = quantiles
        self.samples: deque[float] = deque(maxlen=max_samples)
        self.sum = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        with self.lock:
            self.samples.append(value)
            self.sum += value
            self.count += 1

    def read(self) -> tuple[tuple[tuple[float, float | None], ...], float, int]:
        with self.lock:
            window = sorted(self.samples)
            total, count = self.sum, self.count
        return tuple((q, _nearest_rank(window, q)) for q in self.quantiles), total, count


def _nearest_rank(window: list[float], q: float) -> float | None:
    if not window:
        return None
    idx = max(0, min(len(window) - 1, math.ceil(q * len(window)) - 1))
    return window[idx]


@dataclass
class _Entry:
    descriptor: MetricDescriptor
    handle: "Metric"
    series: dict[tuple[str, ...], Any] = field(default_factory=dict)


class Metric:
    """Handle returned by ``MetricRegistry.register``.

    Every method follows the registry failure policy: problems are logged, never raised.
    """

    def __init__(self, registry: "MetricRegistry", descriptor: MetricDescriptor) -> None:
        self._registry = registry
        self.descriptor = descriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    def inc(self, labels: Mapping[str, Any] | None = None, delta: float = 1.0) -> None:
        self._registry.increment(self.name, labels, delta)

    def dec(self, labels: Mapping[str, Any] | None = None, delta: float = 1.0) -> None:
        self._registry.decrement(self.name, labels, delta)

    def set(self, labels: Mapping[str, Any] | None, value: float) -> None:
        self._registry.set(self.name, labels, value)

    def observe(self, labels: Mapping[str, Any] | None, value: float) -> None:
        self._registry.observe(self.name, labels, value)

    def time(self, labels: Mapping[str, Any] | None = None) -> Any:
        return self._registry.time(self.name, labels)

    def __repr__(self) -> str:
        return f"Metric({self.name!r}, {self.descriptor.kind.value})"


class MetricRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, _Entry] = {}
        self._collectors: list[Callable[["MetricRegistry"], None]] = []

    # -- registration -----------------------------------------------------

    def register(self, descriptor: MetricDescriptor) -> Metric:
        with self._lock:
            existing = self._entries.get(descriptor.name)
            if existing is None:
                entry = _Entry(descriptor=descriptor, handle=Metric(self, descriptor))
                self._entries[descriptor.name] = entry
                return entry.handle

        current = existing.descriptor
        if current.kind is not descriptor.kind:
            raise DuplicateMetricError(descriptor.name, f"kind {current.kind.value} != {descriptor.kind.value}")
        if current.label_names != descriptor.label_names:
            raise DuplicateMetricError(
                descriptor.name, f"label names {list(current.label_names)} != {list(descriptor.label_names)}"
            )
        if current.buckets != descriptor.buckets:
            raise DuplicateMetricError(descriptor.name, "histogram buckets differ")
        if current.quantiles != descriptor.quantiles or current.max_samples != descriptor.max_samples:
            raise DuplicateMetricError(descriptor.name, "summary configuration differs")
        return existing.handle

    def get(self, name: str) -> Metric | None:
        with self._lock:
            entry = self._entries.get(name)
        return entry.handle if entry else None

    def names(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def add_collector(self, collector: Callable[["MetricRegistry"], None]) -> None:
        """Run ``collector(registry)`` before every render/snapshot to refresh pulled values."""

        with self._lock:
            self._collectors.append(collector)

    # -- mutation ---------------------------------------------------------

    def increment(self, name: str, labels: Mapping[str, Any] | None = None, delta: float = 1.0) -> None:
        try:
            entry, series = self._resolve(name, labels, (MetricKind.COUNTER, MetricKind.GAUGE), "increment")
            amount = _as_number(name, delta)
            if entry.descriptor.kind is MetricKind.COUNTER and (amount < 0 or not math.isfinite(amount)):
                raise InvalidMutationError(f"counter {name!r} cannot be incremented by {delta!r}")
            with series.lock:
                series.value += amount
        except MetricMutationError as exc:
            _log_skipped("increment", exc)

    def decrement(self, name: str, labels: Mapping[str, Any] | None = None, delta: float = 1.0) -> None:
        try:
            _, series = self._resolve(name, labels, (MetricKind.GAUGE,), "decrement")
            amount = _as_number(name, delta)
            with series.lock:
                series.value -= amount
        except MetricMutationError as exc:
            _log_skipped("decrement", exc)

    def set(self, name: str, labels: Mapping[str, Any] | None, value: float) -> None:
        try:
            _, series = self._resolve(name, labels, (MetricKind.GAUGE,), "set")
            number = _as_number(name, value)
            with series.lock:
                series.value = number
        except MetricMutationError as exc:
            _log_skipped("set", exc)

    def observe(self, name: str, labels: Mapping[str, Any] | None, value: float) -> None:
        try:
            _, series = self._resolve(name, labels, (MetricKind.HISTOGRAM, MetricKind.SUMMARY), "observe")
            number = _as_number(name, value)
            if math.isnan(number):
                raise InvalidMutationError(f"cannot observe NaN into {name!r}")
            series.observe(number)
        except MetricMutationError as exc:
            _log_skipped("observe", exc)

    @contextmanager
    def time(self, name: str, labels: Mapping[str, Any] | None = None) -> Iterator[None]:
        """Observe the elapsed seconds of the block, however it exits."""

        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, labels, time.perf_counter() - start)

    def _resolve(
        self,
        name: str,
        labels: Mapping[str, Any] | None,
        kinds: tuple[MetricKind, ...],
        operation: str,
    ) -> tuple[_Entry, Any]:
        labels = labels if labels is not None else {}
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                raise UnknownMetricError(name)
            descriptor = entry.descriptor
            if descriptor.kind not in kinds:
                raise InvalidMutationError(f"{operation} is not supported by {descriptor.kind.value} {name!r}")
            if not isinstance(labels, Mapping):
                raise LabelMismatchError(name, descriptor.label_names, (type(labels).__name__,))
            if set(labels) != set(descriptor.label_names):
                raise LabelMismatchError(name, descriptor.label_names, tuple(sorted(map(str, labels))))
            try:
                key = tuple(str(labels[label]) for label in descriptor.label_names)
            except Exception as exc:
                raise InvalidMutationError(f"unusable label values for {name!r}: {exc!r}") from exc
            series = entry.series.get(key)
            if series is None:
                series = _new_series(descriptor)
                entry.series[key] = series
        return entry, series

    # -- reading ----------------------------------------------------------

    def _run_collectors(self) -> None:
        with self._lock:
            collectors = list(self._collectors)
        for collector in collectors:
            try:
                collector(self)
            except Exception:
                logger.exception("metric collector %r failed", collector)

    def _collect(self) -> list[tuple[MetricDescriptor, list[tuple[tuple[str, ...], Any]]]]:
        self._run_collectors()
        with self._lock:
            tables = [(entry.descriptor, list(entry.series.items())) for entry in self._entries.values()]

        families = []
        for descriptor, items in tables:
            items.sort(key=lambda item: item[0])
            families.append((descriptor, [(key, series.read()) for key, series in items]))
        return families

    def snapshot(self, traces: Iterable[TraceRecord] = ()) -> Snapshot:
        scalars: list[ScalarSample] = []
        distributions: list[DistributionSample] = []
        for descriptor, rows in self._collect():
            kind = descriptor.kind.value
            for key, state in rows:
                pairs = tuple(zip(descriptor.label_names, key))
                if descriptor.kind in (MetricKind.COUNTER, MetricKind.GAUGE):
                    scalars.append(ScalarSample(name=descriptor.name, kind=kind, labels=pairs, value=state))
                elif descriptor.kind is MetricKind.HISTOGRAM:
                    buckets, total, count = state
                    distributions.append(
                        DistributionSample(
                            name=descriptor.name, kind=kind, labels=pairs, count=count, sum=total, buckets=buckets
                        )
                    )
                else:
                    quantiles, total, count = state
                    distributions.append(
                        DistributionSample(
                            name=descriptor.name, kind=kind, labels=pairs, count=count, sum=total, quantiles=quantiles
                        )
                    )
        return Snapshot(
            timestamp=time.time(),
            scalars=tuple(scalars),
            distributions=tuple(distributions),
            traces=tuple(traces),
        )

    def render(self) -> str:
        lines: list[str] = []
        for descriptor, rows in self._collect():
            name = descriptor.name
            lines.append(f"# HELP {name} {_escape_help(descriptor.help)}")
            lines.append(f"# TYPE {name} {descriptor.kind.value}")
            for key, state in rows:
                pairs = list(zip(descriptor.label_names, key))
                if descriptor.kind in (MetricKind.COUNTER, MetricKind.GAUGE):
                    lines.append(f"{name}{_format_labels(pairs)} {_format_value(state)}")
                elif descriptor.kind is MetricKind.HISTOGRAM:
                    buckets, total, count = state
                    for bound, n in buckets:
                        lines.append(f"{name}_bucket{_format_labels(pairs + [('le', _format_value(bound))])} {n}")
                    lines.append(f"{name}_sum{_format_labels(pairs)} {_format_value(total)}")
                    lines.append(f"{name}_count{_format_labels(pairs)} {count}")
                else:
                    quantiles, total, count = state
                    for q, value in quantiles:
                        label = _format_labels(pairs + [("quantile", repr(q))])
                        lines.append(f"{name}{label} {_format_value(math.nan if value is None else value)}")
                    lines.append(f"{name}_sum{_format_labels(pairs)} {_format_value(total)}")
                    lines.append(f"{name}_count{_format_labels(pairs)} {count}")
        return "\n".join(lines) + "\n" if lines else ""


def _new_series(descriptor: MetricDescriptor) -> Any:
    if descriptor.kind is MetricKind.HISTOGRAM:
        return _HistogramSeries(descriptor.buckets)
    if descriptor.kind is MetricKind.SUMMARY:
        return _SummarySeries(descriptor.quantiles, descriptor.max_samples)
    return _ScalarSeries()


def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidMutationError(f"{name!r} expects a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidMutationError(f"{name!r} expects a number, got {value!r}") from exc


def _log_skipped(operation: str, exc: MetricMutationError) -> None:
    logger.warning("metric %s skipped: %s", operation, exc)


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label_value(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(pairs: list[tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape_label_value(v)}"' for k, v in pairs) + "}"
