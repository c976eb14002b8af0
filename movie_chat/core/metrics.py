from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Mapping


class MetricRegistry:
    """Process-local counters and latency summaries, read by ``GET /metrics``."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._latency: dict[str, dict[str, float]] = {}
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def observe_ms(self, name: str, took_ms: float, labels: Mapping[str, str] | None = None) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            summary = self._latency.setdefault(key, {"count": 0, "sum": 0.0, "max": 0.0})
            summary["count"] += 1
            summary["sum"] += float(took_ms)
            summary["max"] = max(summary["max"], float(took_ms))

    @contextmanager
    def timed(self, name: str, labels: Mapping[str, str] | None = None) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe_ms(name, (time.perf_counter() - started) * 1000.0, labels)

    def snapshot(self) -> dict[str, float | int]:
        with self._lock:
            merged: dict[str, float | int] = dict(self._counters)
            for key, summary in self._latency.items():
                merged[f"{key}:count"] = int(summary["count"])
                merged[f"{key}:sum"] = round(summary["sum"], 3)
                merged[f"{key}:max"] = round(summary["max"], 3)
            return merged

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._latency.clear()

    @staticmethod
    def _format_key(name: str, labels: Mapping[str, str] | None) -> str:
        if not labels:
            return name
        parts = [f"{k}={labels[k]}" for k in sorted(labels.keys())]
        return f"{name}{{{','.join(parts)}}}"


metrics = MetricRegistry()
