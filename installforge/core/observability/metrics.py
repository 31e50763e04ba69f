"""
Build metrics — in-process counters, gauges and duration histograms.

Shared by the orchestrator (build lifecycle) and the image packager
(per-image fetch durations).  Builds run on worker threads, so every
mutation goes through the registry lock.  Exported as JSON by the
``/api/metrics`` endpoint.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any

# ── Metric names ────────────────────────────────────────────────

BUILDS_SUBMITTED = "builds_submitted"
BUILDS_COMPLETED = "builds_completed"
BUILDS_FAILED = "builds_failed"            # label: stage
BUILDS_BUILDING = "builds_building"
BUILD_DURATION_MS = "build_duration_ms"
IMAGE_FETCH_MS = "image_fetch_ms"
IMAGES_FETCHED = "images_fetched"
IMAGE_FAILURES = "image_failures"


def _key(name: str, labels: dict[str, str]) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


@dataclass
class Counter:
    """Count that only goes up."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": "counter", "labels": self.labels, "value": self.value}


@dataclass
class Gauge:
    """Current level (e.g. builds in the building state)."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": "gauge", "labels": self.labels, "value": self.value}


@dataclass
class Histogram:
    """Observed durations, summarized as count/total/mean/max/p95."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    samples: list[float] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def mean(self) -> float:
        return sum(self.samples) / len(self.samples) if self.samples else 0.0

    @property
    def p95(self) -> float:
        if not self.samples:
            return 0.0
        ordered = sorted(self.samples)
        return ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": "histogram",
            "labels": self.labels,
            "count": self.count,
            "total": round(sum(self.samples), 2),
            "mean": round(self.mean, 2),
            "max": max(self.samples) if self.samples else 0.0,
            "p95": self.p95,
        }


class MetricsRegistry:
    """Thread-safe registry of named metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

    def inc(self, name: str, n: int = 1, **labels: str) -> None:
        with self._lock:
            key = _key(name, labels)
            counter = self._counters.setdefault(key, Counter(name=name, labels=labels))
            counter.value += n

    def add(self, name: str, delta: float, **labels: str) -> None:
        """Move a gauge by *delta* (negative to decrease)."""
        with self._lock:
            key = _key(name, labels)
            gauge = self._gauges.setdefault(key, Gauge(name=name, labels=labels))
            gauge.value += delta

    def observe(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            key = _key(name, labels)
            hist = self._histograms.setdefault(key, Histogram(name=name, labels=labels))
            hist.samples.append(value)

    def timer(self, name: str, **labels: str) -> Timer:
        """Context manager recording elapsed milliseconds into a histogram."""
        return Timer(self, name, labels)

    def value(self, name: str, **labels: str) -> float:
        """Current counter or gauge value (0 if never touched)."""
        key = _key(name, labels)
        with self._lock:
            if key in self._counters:
                return self._counters[key].value
            if key in self._gauges:
                return self._gauges[key].value
        return 0

    def histogram(self, name: str, **labels: str) -> Histogram | None:
        with self._lock:
            return self._histograms.get(_key(name, labels))

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        with self._lock:
            return {
                "counters": [c.to_dict() for c in self._counters.values()],
                "gauges": [g.to_dict() for g in self._gauges.values()],
                "histograms": [h.to_dict() for h in self._histograms.values()],
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


class Timer:
    """See ``MetricsRegistry.timer``."""

    def __init__(self, registry: MetricsRegistry, name: str, labels: dict[str, str]):
        self._registry = registry
        self._name = name
        self._labels = labels
        self._start = 0.0

    def __enter__(self) -> Timer:
        self._start = time.monotonic()
        return self

    def __exit__(self, *args: Any) -> None:
        self._registry.observe(
            self._name, (time.monotonic() - self._start) * 1000, **self._labels,
        )
