"""
Tests for Prometheus Metrics

Ensures metrics are recorded into the service's own registry.
"""

from prometheus_client import generate_latest

from note_importer.services.prometheus_metrics import PrometheusMetricsService


def test_instances_do_not_share_registries():
    first = PrometheusMetricsService()
    second = PrometheusMetricsService()

    first.record_upload_attempt("success")

    assert first.get_sample("note_importer_upload_attempts_total", {"outcome": "success"}) == 1
    assert second.get_sample("note_importer_upload_attempts_total", {"outcome": "success"}) is None


def test_record_item_processed(metrics):
    metrics.record_item_processed("analysis", "success")
    metrics.record_item_processed("analysis", "success")
    metrics.record_item_processed("upload", "error")

    assert metrics.get_sample(
        "note_importer_items_processed_total", {"stage": "analysis", "outcome": "success"}
    ) == 2
    assert metrics.get_sample(
        "note_importer_items_processed_total", {"stage": "upload", "outcome": "error"}
    ) == 1


def test_gauges(metrics):
    metrics.set_upload_queue_depth(4)
    metrics.set_active_analysis_items(2)

    assert metrics.get_sample("note_importer_upload_queue_depth") == 4
    assert metrics.get_sample("note_importer_active_analysis_items") == 2


def test_histograms(metrics):
    metrics.record_rate_limit_wait(62.0)
    metrics.record_retry_delay(5.0)
    metrics.record_retry_delay(10.0)
    metrics.observe_analysis_duration(0.4)

    assert metrics.get_sample("note_importer_rate_limit_wait_seconds_count") == 1
    assert metrics.get_sample("note_importer_retry_delay_seconds_sum") == 15.0
    assert metrics.get_sample("note_importer_analysis_duration_seconds_count") == 1


def test_cache_lookup_and_exposition(metrics):
    metrics.record_cache_lookup(True)
    metrics.record_cache_lookup(False)
    metrics.set_build_info("1.0.0")

    output = generate_latest(metrics.registry).decode()
    assert 'note_importer_analysis_cache_lookups_total{result="hit"} 1.0' in output
    assert 'version="1.0.0"' in output
