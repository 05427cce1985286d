"""In-process timings and counters for sessions, repositories and seeding."""

from __future__ import annotations

import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from time import perf_counter
from typing import Dict, Iterator

from ormkit.core.config import settings


@dataclass(slots=True)
class TimingStats:
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0

    def observe(self, elapsed_ms: float) -> None:
        elapsed_ms = float(elapsed_ms)
        self.min_ms = elapsed_ms if self.count == 0 else min(self.min_ms, elapsed_ms)
        self.max_ms = max(self.max_ms, elapsed_ms)
        self.total_ms += elapsed_ms
        self.count += 1

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "count": float(self.count),
            "total_ms": self.total_ms,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "avg_ms": self.avg_ms,
        }


class MetricsRegistry:
    """Thread-safe store of timing stats and counters keyed by dotted labels.

    Labels in use: ``db.session.*``, ``db.transaction.*``,
    ``repository.query.<operation>``, ``repository.save.*``,
    ``repository.cache.hits`` and ``migrations.seed.*``.
    """

    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self._lock = threading.Lock()
        self._timings: Dict[str, TimingStats] = {}
        self._counters: Counter[str] = Counter()

    def observe(self, label: str, elapsed_ms: float) -> None:
        if not (self.enabled and label):
            return
        with self._lock:
            stats = self._timings.get(label)
            if stats is None:
                stats = self._timings[label] = TimingStats()
            stats.observe(elapsed_ms)

    def increment(self, label: str, amount: float = 1.0) -> None:
        if not (self.enabled and label):
            return
        with self._lock:
            self._counters[label] += float(amount)

    def timings(self, *, clear: bool = False) -> Dict[str, Dict[str, float]]:
        with self._lock:
            data = {label: stats.as_dict() for label, stats in self._timings.items()}
            if clear:
                self._timings = {}
        return data

    def counters(self, *, clear: bool = False) -> Dict[str, float]:
        with self._lock:
            data = dict(self._counters)
            if clear:
                self._counters = Counter()
        return data

    def clear(self) -> None:
        with self._lock:
            self._timings = {}
            self._counters = Counter()


metrics_registry = MetricsRegistry(enabled=settings.instrumentation_enabled)


def set_instrumentation_enabled(enabled: bool) -> None:
    metrics_registry.enabled = bool(enabled)


def instrumentation_enabled() -> bool:
    return metrics_registry.enabled


@contextmanager
def timer(label: str) -> Iterator[None]:
    """Record the wall time of the block under ``label``, even when it raises."""
    started = perf_counter()
    try:
        yield
    finally:
        metrics_registry.observe(label, (perf_counter() - started) * 1000.0)


def inc_counter(label: str, amount: float = 1.0) -> None:
    metrics_registry.increment(label, amount)


def get_metrics(reset: bool = False) -> Dict[str, Dict[str, float]]:
    return metrics_registry.timings(clear=reset)


def get_counters(reset: bool = False) -> Dict[str, float]:
    return metrics_registry.counters(clear=reset)


__all__ = [
    "MetricsRegistry",
    "TimingStats",
    "get_counters",
    "get_metrics",
    "inc_counter",
    "instrumentation_enabled",
    "metrics_registry",
    "set_instrumentation_enabled",
    "timer",
]
