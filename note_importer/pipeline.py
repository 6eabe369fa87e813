"""
Import Pipeline

Builds and owns one instance of every pipeline component for a process:
queue store, state manager, scheduler, analysis stage, upload worker and
cleanup service. The CLI and the HTTP app both work through this object.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from sqlalchemy.engine import Engine

from note_importer.config import Settings, settings as default_settings
from note_importer.core.exceptions import ConfigurationException
from note_importer.core.logging_config import ContextManager, get_logger
from note_importer.database import create_db_and_tables, create_db_engine
from note_importer.models.queue_item import FileStatus, QueueItem, IN_FLIGHT_ANALYSIS
from note_importer.repositories.analysis_cache import AnalysisCacheRepository
from note_importer.repositories.queue_store import QueueStats, QueueStore
from note_importer.services.analysis_stage import AnalysisStage
from note_importer.services.cleanup_service import CleanupResult, CleanupService
from note_importer.services.contracts import ContentAnalyzer, ContentExtractor, NoteUploader, NoteVerifier
from note_importer.services.processing_scheduler import ProcessingScheduler
from note_importer.services.progress_reporter import LoggingProgressReporter, ProgressReporter
from note_importer.services.prometheus_metrics import PrometheusMetricsService
from note_importer.services.state_manager import ItemStateManager
from note_importer.worker.upload_worker import UploadWorker

logger = get_logger(__name__)


class ImportPipeline:
    """Explicitly constructed owner of the two-stage pipeline"""

    def __init__(
        self,
        extractor: Optional[ContentExtractor] = None,
        analyzer: Optional[ContentAnalyzer] = None,
        uploader: Optional[NoteUploader] = None,
        config: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        reporter: Optional[ProgressReporter] = None,
        metrics: Optional[PrometheusMetricsService] = None,
        tag_hints: Optional[Callable[[], Sequence[str]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or default_settings
        self.engine = engine or create_db_engine(self.config.database_url)
        create_db_and_tables(self.engine)

        self.uploader = uploader
        self.reporter = reporter or LoggingProgressReporter()
        if metrics is None and self.config.metrics_enabled:
            metrics = PrometheusMetricsService()
        self.metrics = metrics

        self.store = QueueStore(self.engine)
        self.state = ItemStateManager(self.store, self.reporter)
        self.cache = AnalysisCacheRepository(self.engine, self.config.analysis_cache_ttl_hours, clock=clock)
        self.scheduler = ProcessingScheduler(self.config.max_concurrent_analysis)

        self.upload_worker = UploadWorker(
            uploader,
            self.state,
            retry_base_delay=self.config.upload_retry_base_delay,
            max_retries=self.config.max_upload_retries,
            rate_limit_buffer=self.config.rate_limit_buffer,
            poll_interval=self.config.poll_interval,
            keep_completed_records=self.config.keep_completed_records,
            metrics=self.metrics,
            sleep=sleep,
            clock=clock
        )
        self.analysis = AnalysisStage(
            extractor,
            analyzer,
            self.state,
            self.upload_worker,
            scheduler=self.scheduler,
            cache=self.cache,
            tag_hints=tag_hints,
            metrics=self.metrics
        )
        self._sleep = sleep

    @property
    def can_process(self) -> bool:
        """True when the collaborators needed to run both stages are wired in"""
        return None not in (self.analysis.extractor, self.analysis.analyzer, self.uploader)

    def _require_processing(self) -> None:
        if not self.can_process:
            raise ConfigurationException(
                "collaborators",
                "extractor, analyzer and uploader are required to process items"
            )

    # ----- lifecycle -----

    def recover_interrupted(self) -> int:
        """
        Return items left in ``extracting``/``analyzing`` by a previous
        process to ``pending``; nothing is running them any more.
        """
        recovered = 0
        for item in self.store.list_all():
            if item.status in IN_FLIGHT_ANALYSIS and self.store.reset_item(item.file_path):
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} interrupted analysis item(s)")
        return recovered

    async def start(self) -> None:
        """Resume persisted work and start both stages"""
        self._require_processing()
        ContextManager.set_context(run_id=ContextManager.generate_run_id())
        self.recover_interrupted()
        self.cache.purge_expired()
        self.upload_worker.restore_from_store()
        self.upload_worker.start()
        self.analysis.pump()
        logger.info("Import pipeline started")

    async def stop(self) -> None:
        """Let in-flight work finish, then stop the upload loop"""
        await self.analysis.run_until_idle()
        self.upload_worker.stop()
        await self.upload_worker.join()
        logger.info("Import pipeline stopped")

    async def wait_until_drained(self) -> None:
        """Block until Stage 1 is idle and the upload queue is empty"""
        while True:
            await self.analysis.run_until_idle()
            if self.upload_worker.get_queue_length() == 0 and self.analysis.active_count == 0:
                return
            await self._sleep(self.config.poll_interval)

    # ----- admission -----

    def admit(self, keys: Sequence[str]) -> List[str]:
        """Admit keys and start processing; returns the keys that were newly added"""
        self._require_processing()
        admitted = [key for key in keys if self.analysis.admit(key)]
        self.analysis.pump()
        return admitted

    async def admit_folder(self, folder: str) -> int:
        self._require_processing()
        return await self.analysis.admit_folder(folder)

    # ----- operator surface -----

    def list_items(self, status: Optional[FileStatus] = None) -> List[QueueItem]:
        if status is None:
            return self.store.list_all()
        return self.store.list_by_status(status)

    def get_stats(self) -> QueueStats:
        return self.store.stats()

    def requeue(self, key: str) -> QueueItem:
        """Reset an errored item to pending and, when running, start it again"""
        item = self.state.requeue(key)
        if self.can_process and self.upload_worker.is_running:
            self.analysis.pump()
        return item

    def purge_completed(self) -> int:
        return self.store.delete_by_status(FileStatus.COMPLETE)

    def purge_all(self) -> int:
        self.upload_worker.clear_queue()
        return self.store.delete_all()

    async def cleanup(self, verifier: Optional[NoteVerifier] = None) -> CleanupResult:
        """Verify kept completed records against the remote service and drop confirmed ones"""
        verifier = verifier or self.uploader
        if verifier is None or not hasattr(verifier, "note_exists"):
            raise ConfigurationException("verifier", "an uploader with note_exists() is required for cleanup")

        self.cache.purge_expired()

        service = CleanupService(
            verifier,
            self.state,
            batch_size=self.config.cleanup_batch_size,
            batch_delay=self.config.cleanup_batch_delay,
            sleep=self._sleep
        )
        return await service.verify_and_remove_uploaded()
