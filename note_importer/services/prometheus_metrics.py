"""
Prometheus Metrics Service

Instrumentation for the import pipeline:
- Counters for events (items finished per stage, upload attempts, cache lookups)
- Gauges for current state (upload backlog, active analysis items)
- Histograms for timing (analysis duration, rate-limit waits, retry delays)
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

from note_importer.core.logging_config import get_logger

logger = get_logger(__name__)


class PrometheusMetricsService:
    """
    Prometheus metrics for the Note Importer pipeline.

    Each instance owns its registry so several pipelines (e.g. in tests)
    can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = CollectorRegistry() if registry is None else registry

        # ===== COUNTERS (cumulative) =====

        self.items_processed_total = Counter(
            'note_importer_items_processed_total',
            'Items that left a pipeline stage',
            ['stage', 'outcome'],  # stage: analysis, upload; outcome: success, error
            registry=self.registry
        )

        self.upload_attempts_total = Counter(
            'note_importer_upload_attempts_total',
            'Upload attempts by outcome',
            ['outcome'],  # success, rate_limited, failed, critical
            registry=self.registry
        )

        self.analysis_cache_lookups_total = Counter(
            'note_importer_analysis_cache_lookups_total',
            'Analysis cache lookups for remote notes',
            ['result'],  # hit, miss
            registry=self.registry
        )

        # ===== GAUGES (current value) =====

        self.upload_queue_depth = Gauge(
            'note_importer_upload_queue_depth',
            'Entries waiting in the upload queue',
            registry=self.registry
        )

        self.active_analysis_items = Gauge(
            'note_importer_active_analysis_items',
            'Items currently extracting or analyzing',
            registry=self.registry
        )

        # ===== HISTOGRAMS (distributions) =====

        self.analysis_duration = Histogram(
            'note_importer_analysis_duration_seconds',
            'Time taken to extract and analyze one item',
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=self.registry
        )

        self.rate_limit_wait = Histogram(
            'note_importer_rate_limit_wait_seconds',
            'Waits imposed by the remote rate limiter (including buffer)',
            buckets=[1, 5, 15, 30, 60, 300, 900, 3600],
            registry=self.registry
        )

        self.retry_delay = Histogram(
            'note_importer_retry_delay_seconds',
            'Backoff delays before upload retries',
            buckets=[1, 5, 10, 20, 40, 80, 160],
            registry=self.registry
        )

        # ===== INFO (static metadata) =====

        self.build_info = Info(
            'note_importer_build',
            'Build information for Note Importer',
            registry=self.registry
        )

        logger.debug("PrometheusMetricsService initialized")

    # ===== HELPER METHODS =====

    def record_item_processed(self, stage: str, outcome: str):
        """
        Record an item leaving a stage.

        Args:
            stage: analysis or upload
            outcome: success or error
        """
        self.items_processed_total.labels(stage=stage, outcome=outcome).inc()

    def record_upload_attempt(self, outcome: str):
        self.upload_attempts_total.labels(outcome=outcome).inc()

    def record_cache_lookup(self, hit: bool):
        self.analysis_cache_lookups_total.labels(result="hit" if hit else "miss").inc()

    def record_rate_limit_wait(self, seconds: float):
        self.rate_limit_wait.observe(seconds)

    def record_retry_delay(self, seconds: float):
        self.retry_delay.observe(seconds)

    def observe_analysis_duration(self, seconds: float):
        self.analysis_duration.observe(seconds)

    def set_upload_queue_depth(self, depth: int):
        self.upload_queue_depth.set(depth)

    def set_active_analysis_items(self, count: int):
        self.active_analysis_items.set(count)

    def set_build_info(self, version: str):
        self.build_info.info({'version': version})

    def get_sample(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Current value of a sample in this registry (None if absent)"""
        return self.registry.get_sample_value(name, labels or {})
