from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from reqpulse.observability.traces import TraceRecord


LabelPairs = tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class ScalarSample:
    """Point-in-time value of one counter or gauge series."""

    name: str
    kind: str
    labels: LabelPairs
    value: float

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "kind": self.kind, "labels": dict(self.labels), "value": self.value}


@dataclass(frozen=True)
class DistributionSample:
    """Point-in-time copy of one histogram or summary series.

    ``buckets`` holds cumulative ``(upper_bound, count)`` pairs ending with
    ``+Inf``; ``quantiles`` holds ``(quantile, value)`` pairs where value is
    None while the window is empty.
    """

    name: str
    kind: str
    labels: LabelPairs
    count: int
    sum: float
    buckets: tuple[tuple[float, int], ...] = ()
    quantiles: tuple[tuple[float, float | None], ...] = ()

    @property
    def mean(self) -> float | None:
        if self.count == 0:
            return None
        return self.sum / self.count

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "labels": dict(self.labels),
            "count": self.count,
            "sum": self.sum,
        }
        if self.buckets:
            # JSON has no Infinity; the last bucket is always +Inf.
            payload["buckets"] = [["+Inf" if bound == float("inf") else bound, n] for bound, n in self.buckets]
        if self.quantiles:
            payload["quantiles"] = {str(q): v for q, v in self.quantiles}
        return payload


@dataclass(frozen=True)
class Snapshot:
    timestamp: float
    scalars: tuple[ScalarSample, ...] = ()
    distributions: tuple[DistributionSample, ...] = ()
    traces: tuple[TraceRecord, ...] = field(default=())

    def scalar(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        wanted = tuple(sorted((labels or {}).items()))
        for sample in self.scalars:
            if sample.name == name and tuple(sorted(sample.labels)) == wanted:
                return sample.value
        return None

    def total(self, name: str) -> float:
        """Sum of every scalar series of ``name``."""

        return sum(s.value for s in self.scalars if s.name == name)

    def distributions_named(self, name: str) -> list[DistributionSample]:
        return [d for d in self.distributions if d.name == name]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "scalars": [s.to_dict() for s in self.scalars],
            "distributions": [d.to_dict() for d in self.distributions],
            "traces": [t.to_dict() for t in self.traces],
        }
