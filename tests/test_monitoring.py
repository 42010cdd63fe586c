"""Tests for the performance monitor."""

import json

from xsd_engine.monitoring import PerformanceMonitor, get_monitor, initialize_monitor


def test_cache_counters_and_hit_rate():
    monitor = PerformanceMonitor()
    monitor.record_cache_hit(0.002)
    monitor.record_cache_hit(0.004)
    monitor.record_cache_miss(0.006)
    monitor.record_cache_eviction()
    monitor.update_cache_size(3)

    analytics = monitor.get_cache_analytics()
    assert analytics["hits"] == 2
    assert analytics["misses"] == 1
    assert analytics["evictions"] == 1
    assert analytics["total_requests"] == 3
    assert analytics["hit_rate_percent"] == 66.67
    assert analytics["average_response_time_ms"] == 4.0
    assert analytics["cache_size"] == 3
    assert analytics["recommendations"] == []


def test_low_hit_rate_is_flagged():
    monitor = PerformanceMonitor()
    monitor.record_cache_miss()
    monitor.record_cache_miss()
    monitor.record_cache_eviction()

    recommendations = monitor.get_cache_analytics()["recommendations"]
    assert len(recommendations) == 2


def test_operations_are_aggregated_by_name():
    monitor = PerformanceMonitor()
    monitor.record_operation("validate", 0.010)
    monitor.record_operation("validate", 0.030, success=False)
    monitor.record_operation("build", 0.5)

    operations = monitor.get_performance_summary()["operations"]
    assert list(operations) == ["build", "validate"]
    validate = operations["validate"]
    assert validate["count"] == 2
    assert validate["failures"] == 1
    assert validate["failure_rate_percent"] == 50.0
    assert validate["average_time_ms"] == 20.0
    assert validate["max_recent_time_ms"] == 30.0
    assert validate["last_seen"] is not None


def test_detailed_tracking_can_be_disabled():
    monitor = PerformanceMonitor(enable_detailed_tracking=False)
    monitor.record_operation("decode", 0.25)
    decode = monitor.get_performance_summary()["operations"]["decode"]
    assert decode["count"] == 1
    assert decode["max_recent_time_ms"] == 0.0


def test_endpoint_requests_and_errors():
    monitor = PerformanceMonitor()
    monitor.record_endpoint_request("GET /health", 0.001)
    monitor.record_endpoint_request("GET /health", 0.001)
    monitor.record_endpoint_request("GET /schemas/{schema_id}", 0.002, 404)
    monitor.record_endpoint_request("POST /schemas", 0.02, 422)

    summary = monitor.get_performance_summary()
    assert summary["api"]["total_requests"] == 4
    top = summary["api"]["top_endpoints"][0]
    assert top["endpoint"] == "GET /health"
    assert top["count"] == 2
    assert summary["errors"] == {
        "recent_errors_by_status": {404: 1, 422: 1},
        "total_recent_errors": 2,
    }


def test_reset_metrics():
    monitor = PerformanceMonitor()
    monitor.record_cache_hit()
    monitor.record_operation("build", 1.0)
    monitor.record_endpoint_request("GET /health", 0.1, 500)

    monitor.reset_metrics()
    summary = monitor.get_performance_summary()
    assert summary["cache"]["total_requests"] == 0
    assert summary["operations"] == {}
    assert summary["api"]["total_requests"] == 0
    assert summary["errors"]["total_recent_errors"] == 0


def test_export_metrics(tmp_path):
    monitor = PerformanceMonitor()
    monitor.record_operation("encode", 0.001)
    target = tmp_path / "metrics.json"

    monitor.export_metrics(target)
    exported = json.loads(target.read_text())
    assert exported["operations"]["encode"]["count"] == 1
    assert "uptime_seconds" in exported


def test_global_monitor_is_replaced_by_initialize():
    first = get_monitor()
    assert get_monitor() is first
    second = initialize_monitor(enable_detailed_tracking=False)
    assert get_monitor() is second
    assert second is not first
    assert not second.enable_detailed_tracking
