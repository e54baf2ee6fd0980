from fiqh_assistant.utils.observability import RequestMetrics, time_phase


def test_request_metrics_snapshot():
    metrics = RequestMetrics()
    metrics.record("/v1/chat", 10.0)
    metrics.record("/v1/chat", 20.0)
    metrics.record("/v1/sessions", 5.0)
    metrics.record_phase("reconcile", 12.0)
    metrics.record_phase("generation", 25.0)
    metrics.increment_counter("sync_remote::update_failed")
    metrics.increment_counter("sync_remote::update_failed")

    with time_phase(metrics, "synthesis"):
        pass

    snapshot = metrics.snapshot()
    assert snapshot["/v1/chat"]["count"] == 2
    assert snapshot["/v1/chat"]["avg_latency_ms"] == 15.0
    assert snapshot["/v1/chat"]["p50_latency_ms"] == 10.0
    assert snapshot["/v1/chat"]["p95_latency_ms"] == 20.0
    assert snapshot["/v1/sessions"]["count"] == 1

    phases = snapshot["phases"]
    assert phases["reconcile"]["avg_latency_ms"] == 12.0
    assert phases["generation"]["count"] == 1
    assert phases["synthesis"]["count"] == 1

    assert snapshot["counters"]["sync_remote::update_failed"] == 2
    assert metrics.counter("sync_remote::update_failed") == 2
    assert metrics.counter("never") == 0

    metrics.reset()
    assert metrics.snapshot() == {}
