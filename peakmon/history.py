"""Bounded rolling history of metric samples."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from itertools import islice
from types import MappingProxyType

DEFAULT_CAPACITY = 300  # 5 min at 1s intervals


@dataclass(frozen=True, slots=True)
class MetricSample:
    timestamp: float
    value: float


class MetricSeries:
    """Fixed-capacity FIFO of samples for one metric.

    The oldest sample is evicted when a new one arrives at capacity.
    Timestamps never decrease: appending an older sample raises ValueError
    and leaves the series untouched.
    """

    __slots__ = ("_samples",)

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._samples: deque[MetricSample] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    @property
    def latest(self) -> MetricSample | None:
        return self._samples[-1] if self._samples else None

    def append(self, sample: MetricSample) -> None:
        last = self.latest
        if last is not None and sample.timestamp < last.timestamp:
            raise ValueError(
                f"sample at {sample.timestamp} is older than newest at {last.timestamp}"
            )
        self._samples.append(sample)

    def window(self, n: int) -> tuple[MetricSample, ...]:
        """Return the last n samples in insertion order (all if fewer exist)."""
        if n <= 0:
            return ()
        if n >= len(self._samples):
            return tuple(self._samples)
        return tuple(islice(self._samples, len(self._samples) - n, None))

    def values(self, n: int | None = None) -> tuple[float, ...]:
        samples = self._samples if n is None else self.window(n)
        return tuple(s.value for s in samples)

    def max(self) -> float:
        return max((s.value for s in self._samples), default=0.0)

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[MetricSample]:
        return iter(tuple(self._samples))


class HistoryStore:
    """One bounded series per metric id, created lazily on first write."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._series: dict[str, MetricSeries] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, metric_id: str, sample: MetricSample) -> None:
        series = self._series.get(metric_id)
        if series is None:
            series = self._series[metric_id] = MetricSeries(self._capacity)
        series.append(sample)

    def window(self, metric_id: str, n: int) -> tuple[MetricSample, ...]:
        series = self._series.get(metric_id)
        return series.window(n) if series is not None else ()

    def values(self, metric_id: str, n: int | None = None) -> tuple[float, ...]:
        series = self._series.get(metric_id)
        return series.values(n) if series is not None else ()

    def series_ids(self) -> list[str]:
        return sorted(self._series)

    def snapshot(self, n: int | None = None) -> Mapping[str, tuple[float, ...]]:
        """Read-only mapping of metric id to its most recent values."""
        return MappingProxyType({key: s.values(n) for key, s in self._series.items()})

    def __contains__(self, metric_id: object) -> bool:
        return metric_id in self._series

    def __len__(self) -> int:
        return len(self._series)
