"""Bounded in-memory time series for one metric stream.

Each appended value becomes an immutable :class:`MetricSample` stamped with a
logical timestamp (0, 1, 2, ...). Wall-clock time is not used for ordering;
the source's own timestamp, when present, travels in ``aux``.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

DEFAULT_CAPACITY = 60


def _frozen(aux: Mapping[str, str | float] | None) -> Mapping[str, str | float]:
    return MappingProxyType(dict(aux or {}))


@dataclass(frozen=True, slots=True)
class MetricSample:
    """A single point of a metric stream."""

    timestamp_logical: int
    value: float
    aux: Mapping[str, str | float] = field(default_factory=lambda: _frozen(None))


class StreamBuffer:
    """Fixed-capacity append-only sample history; oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._samples: deque[MetricSample] = deque(maxlen=capacity)
        self._next_ts = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[MetricSample]:
        return iter(tuple(self._samples))

    def __bool__(self) -> bool:
        return bool(self._samples)

    def append(self, value: float, aux: Mapping[str, str | float] | None = None) -> MetricSample:
        """Record *value* and return the sample that now holds it."""
        sample = MetricSample(timestamp_logical=self._next_ts, value=float(value), aux=_frozen(aux))
        self._next_ts += 1
        self._samples.append(sample)
        return sample

    @property
    def latest(self) -> MetricSample | None:
        """The most recent sample, or ``None`` when empty."""
        return self._samples[-1] if self._samples else None

    def snapshot(self) -> tuple[MetricSample, ...]:
        """Immutable copy of the current window, oldest first."""
        return tuple(self._samples)

    def values(self) -> list[float]:
        """Sample values oldest first (what a chart sink consumes)."""
        return [s.value for s in self._samples]

    def reset(self) -> None:
        """Clear the window and rewind the logical clock.

        Only for explicit stream restarts; transient reconnects keep history.
        """
        self._samples.clear()
        self._next_ts = 0
