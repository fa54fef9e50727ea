"""Lightweight in-process metrics for the job queue."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Union


@dataclass
class _BaseMetric:
    name: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {self.name: float(self._value)}


class Counter(_BaseMetric):
    """Monotonically increasing counter."""

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._value += amount


class Gauge(_BaseMetric):
    """Point-in-time value."""

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)


@dataclass
class Summary(_BaseMetric):
    """Count, sum and max of observed values (e.g. job durations)."""

    _count: int = 0
    _max: float = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._value += value
            self._max = max(self._max, value)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {
                f"{self.name}.count": float(self._count),
                f"{self.name}.sum": float(self._value),
                f"{self.name}.max": float(self._max),
            }


Metric = Union[Counter, Gauge, Summary]


class MetricsRegistry:
    """Thread-safe registry storing metrics by name."""

    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, kind: type) -> Metric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is not None:
                if not isinstance(metric, kind):
                    raise TypeError(f"Metric {name} is already registered as {type(metric).__name__}")
                return metric
            created = kind(name=name)
            self._metrics[name] = created
            return created

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)  # type: ignore[return-value]

    def gauge(self, name: str) -> Gauge:
        return self._get_or_create(name, Gauge)  # type: ignore[return-value]

    def summary(self, name: str) -> Summary:
        return self._get_or_create(name, Summary)  # type: ignore[return-value]

    def get(self, name: str) -> Optional[Metric]:
        with self._lock:
            return self._metrics.get(name)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            metrics = list(self._metrics.values())
        merged: Dict[str, float] = {}
        for metric in metrics:
            merged.update(metric.snapshot())
        return merged


_DEFAULT_REGISTRY = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return _DEFAULT_REGISTRY


__all__ = [
    "Counter",
    "Gauge",
    "MetricsRegistry",
    "Summary",
    "get_registry",
]
