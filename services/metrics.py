"""In-process counters and latencies for notification sends and webhook deliveries."""
from __future__ import annotations

import threading
import time
from collections import defaultdict
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

# Latency samples kept per series.
MAX_SAMPLES = 200


class MetricsCollector:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._counters: dict[str, float] = defaultdict(float)
        self._samples: dict[str, list[float]] = defaultdict(list)

    @staticmethod
    def _key(name: str, labels: dict[str, str] | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment(self, name: str, value: float = 1.0, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[self._key(name, labels)] += value

    def observe(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._key(name, labels)
        with self._lock:
            samples = self._samples[key]
            samples.append(value)
            if len(samples) > MAX_SAMPLES:
                del samples[: len(samples) - MAX_SAMPLES]

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None) -> Generator[None, None, None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(f"{name}_ms", (time.perf_counter() - start) * 1000, labels)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get(self._key(name, labels), 0.0)

    def latency_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, float]:
        with self._lock:
            values = sorted(self._samples.get(self._key(name, labels), []))
        if not values:
            return {}
        count = len(values)
        return {
            "count": count,
            "avg": sum(values) / count,
            "p50": values[int(count * 0.5)],
            "p95": values[min(count - 1, int(count * 0.95))],
            "max": values[-1],
        }

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            series = list(self._samples)
        return {
            "counters": counters,
            "latencies": {key: self._stats_for_key(key) for key in series},
            "collected_at": datetime.now(timezone.utc).isoformat(),
        }

    def _stats_for_key(self, key: str) -> dict[str, float]:
        with self._lock:
            values = sorted(self._samples.get(key, []))
        if not values:
            return {}
        return {"count": len(values), "avg": sum(values) / len(values), "max": values[-1]}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._samples.clear()


metrics = MetricsCollector()


def record_notification(kind: str) -> None:
    metrics.increment("notifications_total", labels={"kind": kind})


def record_webhook_delivery(outcome: str) -> None:
    """outcome: accepted | rejected | error"""
    metrics.increment("webhook_deliveries_total", labels={"outcome": outcome})


def record_correlation(matched: bool) -> None:
    metrics.increment("correlations_total", labels={"matched": str(matched).lower()})


def record_status_receipt(status: str) -> None:
    metrics.increment("message_status_receipts_total", labels={"status": status or "unknown"})
