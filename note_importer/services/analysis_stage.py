"""
Analysis Stage - Stage 1 of the import pipeline

Admits items into the queue store and runs extraction + analysis for up to
``max_concurrent`` items at a time. Admission is decided by the scheduler
from persisted statuses; each selected item is moved to ``extracting``
before its task is created so overlapping ``pump()`` calls cannot pick the
same item twice. Finished items are handed to the upload worker.
"""

import asyncio
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set

from note_importer.core.exceptions import AnalysisError, ItemNotFoundException
from note_importer.core.logging_config import get_logger, with_logging_context
from note_importer.domain.progress import AugmentProgress, BatchProgress, extract_error_message, is_supported_file_type
from note_importer.models.queue_item import FileStatus
from note_importer.repositories.analysis_cache import AnalysisCacheRepository, content_hash
from note_importer.services.contracts import AnalysisResult, ContentAnalyzer, ContentExtractor, ExtractedContent
from note_importer.services.processing_scheduler import ProcessingScheduler
from note_importer.services.prometheus_metrics import PrometheusMetricsService
from note_importer.services.state_manager import ItemStateManager
from note_importer.worker.upload_worker import UploadWorker

logger = get_logger(__name__)

NOTE_KIND = "note"


class AnalysisStage:
    """Bounded-concurrency extraction and analysis driver"""

    def __init__(
        self,
        extractor: ContentExtractor,
        analyzer: ContentAnalyzer,
        state: ItemStateManager,
        upload_worker: UploadWorker,
        scheduler: Optional[ProcessingScheduler] = None,
        cache: Optional[AnalysisCacheRepository] = None,
        tag_hints: Optional[Callable[[], Sequence[str]]] = None,
        metrics: Optional[PrometheusMetricsService] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.extractor = extractor
        self.analyzer = analyzer
        self.state = state
        self.store = state.store
        self.upload_worker = upload_worker
        self.scheduler = scheduler or ProcessingScheduler()
        self.cache = cache
        self.tag_hints = tag_hints or (lambda: [])
        self.metrics = metrics
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    # ----- admission -----

    def admit(self, key: str) -> bool:
        """
        Add ``key`` to the queue as pending.

        Items that were already analysed are not re-analysed; one left in
        ``ready-to-upload`` is handed straight to the upload worker.

        Returns:
            True if a new pending item was created
        """
        existing = self.store.get(key)
        if existing is not None:
            if self.store.is_already_processed(key):
                logger.info(f"Skipping already processed item: {key}", item_key=key)
                if existing.status == FileStatus.READY_TO_UPLOAD:
                    self.upload_worker.add_to_queue(key, key)
            else:
                logger.debug(f"Item already queued: {key}", item_key=key)
            return False

        return self.state.add_item(key)

    async def admit_folder(self, folder: str) -> int:
        """
        Recursively admit every supported file under ``folder`` and start
        processing. Reports batch progress while scanning and admitting.

        Returns:
            Number of newly admitted items
        """
        root = Path(folder)
        reporter = self.state.reporter
        reporter.report_batch_progress(BatchProgress(total_files=0, processed=0, status="scanning"))

        files = await asyncio.to_thread(
            lambda: sorted(
                str(path.resolve()) for path in root.rglob("*")
                if path.is_file() and is_supported_file_type(path.name)
            )
        )
        logger.info(f"Found {len(files)} supported file(s) in {folder}")

        admitted = 0
        for index, path in enumerate(files):
            reporter.report_batch_progress(
                BatchProgress(total_files=len(files), processed=index, current_file=path, status="processing")
            )
            if self.admit(path):
                admitted += 1

        reporter.report_batch_progress(
            BatchProgress(total_files=len(files), processed=len(files), status="complete")
        )
        self.pump()
        return admitted

    # ----- scheduling -----

    def pump(self) -> List[str]:
        """
        Start as many pending items as the concurrency limit allows.

        Returns:
            Keys that were started
        """
        selected = self.scheduler.select_next(self.store.list_all())
        started = []

        for item in selected:
            key = item.file_path
            try:
                self.state.update_status(key, FileStatus.EXTRACTING)
            except Exception as e:
                logger.error(f"Could not start {key}: {e}", item_key=key)
                continue

            task = asyncio.create_task(self._process(key), name=f"analyze:{key}")
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
            started.append(key)

        self._update_active()
        return started

    async def run_until_idle(self) -> None:
        """Wait until no Stage 1 task is running and none can be started"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._update_active()
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Analysis task {task.get_name()} crashed: {task.exception()}")

    def _update_active(self) -> None:
        if self.metrics:
            self.metrics.set_active_analysis_items(len(self._tasks))

    # ----- processing -----

    @with_logging_context(operation="analysis")
    async def _process(self, key: str) -> None:
        started_at = self._clock()
        try:
            item = self.store.get(key)
            if item is not None and item.title is not None:
                # Re-admitted after an upload failure: reuse the stored analysis
                self.state.update_status(key, FileStatus.ANALYZING, message="Using existing analysis")
            else:
                content = await self.extractor.extract(key)
                self._report_augment(key, content, "extracting", 20)

                self.state.update_status(key, FileStatus.ANALYZING)
                self._report_augment(key, content, "analyzing", 50)

                result = await self._analyze(key, content)
                self.state.update_analysis(key, result.title, result.description, result.tags, result.content_hash)

            self.state.update_status(key, FileStatus.READY_TO_UPLOAD)
            self.upload_worker.add_to_queue(key, key)

            if self.metrics:
                self.metrics.record_item_processed("analysis", "success")
                self.metrics.observe_analysis_duration(self._clock() - started_at)
            logger.info(f"Analysis complete: {key}", item_key=key, stage=FileStatus.READY_TO_UPLOAD.value)

        except ItemNotFoundException:
            # Purged while in flight; nothing left to hand to the upload worker
            logger.info(f"Abandoning analysis of removed item: {key}", item_key=key)
        except AnalysisError as e:
            self._fail(key, e.message)
        except Exception as e:
            self._fail(key, extract_error_message(e))
        finally:
            self.pump()

    async def _analyze(self, key: str, content: ExtractedContent) -> AnalysisResult:
        hints = list(self.tag_hints())
        hash_value = content_hash(content.text)
        use_cache = self.cache is not None and content.kind == NOTE_KIND

        if use_cache:
            cached = self.cache.get_cached_analysis(key, hash_value)
            if self.metrics:
                self.metrics.record_cache_lookup(cached is not None)
            if cached is not None:
                logger.info(f"Using cached analysis for {key}", item_key=key)
                return AnalysisResult(
                    title=cached.ai_title,
                    description=cached.ai_description,
                    tags=AnalysisCacheRepository.filter_tags(cached.ai_tags, hints),
                    content_hash=hash_value
                )

        raw = await self.analyzer.analyze(content.text, content.name, content.kind, hints)
        tags = AnalysisCacheRepository.filter_tags(raw.tags, hints)

        if use_cache:
            self.cache.save_analysis(key, raw.title, raw.description, tags, hash_value)

        return AnalysisResult(
            title=raw.title,
            description=raw.description,
            tags=tags,
            content_hash=raw.content_hash or hash_value
        )

    def _report_augment(self, key: str, content: ExtractedContent, status: str, progress: int) -> None:
        if content.kind != NOTE_KIND:
            return
        self.state.reporter.report_augment_progress(
            AugmentProgress(note_guid=key, status=status, progress=progress)
        )

    def _fail(self, key: str, message: str) -> None:
        logger.error(f"Analysis failed for {key}: {message}", item_key=key)
        if self.metrics:
            self.metrics.record_item_processed("analysis", "error")
        self.state.set_error(key, message)
