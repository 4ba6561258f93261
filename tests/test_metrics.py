import threading
from unittest.mock import patch

import pytest

from services.metrics import (
    MAX_SAMPLES,
    MetricsCollector,
    metrics as global_metrics,
    record_correlation,
    record_notification,
    record_webhook_delivery,
)


class TestMetricsCollector:
    def test_increment(self):
        collector = MetricsCollector()
        collector.increment("test_counter")
        assert collector.get_counter("test_counter") == 1.0

        collector.increment("test_counter", 2.5)
        assert collector.get_counter("test_counter") == 3.5

        collector.increment("labeled_counter", labels={"kind": "sent"})
        assert collector.get_counter("labeled_counter", labels={"kind": "sent"}) == 1.0
        assert collector.get_counter("labeled_counter", labels={"kind": "failed"}) == 0.0

    def test_latency_window(self):
        collector = MetricsCollector()
        for v in [10, 20, 30, 40, 50]:
            collector.observe("send_ms", v)

        stats = collector.latency_stats("send_ms")
        assert stats["count"] == 5
        assert stats["avg"] == 30.0
        assert stats["p50"] == 30
        assert stats["max"] == 50

        for i in range(MAX_SAMPLES + 50):
            collector.observe("rolling_ms", i)
        stats = collector.latency_stats("rolling_ms")
        assert stats["count"] == MAX_SAMPLES
        assert stats["max"] == MAX_SAMPLES + 49

    def test_timer(self):
        collector = MetricsCollector()
        with patch("services.metrics.time.perf_counter", side_effect=[0.0, 0.1]):
            with collector.timer("delivery_notification"):
                pass

        stats = collector.latency_stats("delivery_notification_ms")
        assert stats["count"] == 1
        assert stats["avg"] == pytest.approx(100.0)

    def test_timer_records_on_error(self):
        collector = MetricsCollector()
        with pytest.raises(RuntimeError):
            with collector.timer("boom"):
                raise RuntimeError("x")
        assert collector.latency_stats("boom_ms")["count"] == 1

    def test_thread_safety(self):
        collector = MetricsCollector()

        def worker():
            for _ in range(100):
                collector.increment("thread_counter")

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert collector.get_counter("thread_counter") == 1000.0

    def test_snapshot_and_reset(self):
        collector = MetricsCollector()
        collector.increment("foo", labels={"a": "1"})
        collector.observe("bar_ms", 5.0)

        snap = collector.snapshot()
        assert snap["counters"] == {"foo{a=1}": 1.0}
        assert snap["latencies"]["bar_ms"]["count"] == 1
        assert "collected_at" in snap

        collector.reset()
        assert collector.get_counter("foo", labels={"a": "1"}) == 0.0
        assert collector.latency_stats("bar_ms") == {}


def test_convenience_recorders():
    global_metrics.reset()

    record_notification("failed")
    record_webhook_delivery("accepted")
    record_correlation(False)

    assert global_metrics.get_counter("notifications_total", labels={"kind": "failed"}) == 1.0
    assert global_metrics.get_counter("webhook_deliveries_total", labels={"outcome": "accepted"}) == 1.0
    assert global_metrics.get_counter("correlations_total", labels={"matched": "false"}) == 1.0


def test_transition_records_notification_outcome(store, force_status, sender):
    from services.transitions import OrderTransitionService

    global_metrics.reset()
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, "ready")

    OrderTransitionService(store, sender).transition(order.id, "outForDelivery")

    assert global_metrics.get_counter("notifications_total", labels={"kind": "sent"}) == 1.0
    assert global_metrics.latency_stats("delivery_notification_ms")["count"] == 1
