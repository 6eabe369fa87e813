"""
Upload Worker - Stage 2 of the import pipeline

Drains a FIFO of analysed items one upload at a time. The head entry stays
at the front while it is rate-limited or being retried, so later items never
overtake it. Every transition is persisted through the state manager before
the worker waits, which lets a restarted process resume where it stopped.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from note_importer.core.exceptions import ItemNotFoundException, RateLimitException, UploadError
from note_importer.core.logging_config import get_logger, with_logging_context
from note_importer.domain.progress import extract_error_message, format_rate_limit_duration
from note_importer.models.queue_item import FileStatus
from note_importer.services.contracts import NoteUploader
from note_importer.services.prometheus_metrics import PrometheusMetricsService
from note_importer.services.rate_limit import (
    DEFAULT_RATE_LIMIT_SECONDS, extract_rate_limit_duration, is_rate_limit_error, parse_rate_limit_error
)
from note_importer.services.state_manager import ItemStateManager

logger = get_logger(__name__)

RESTORABLE_STATES = (
    FileStatus.READY_TO_UPLOAD,
    FileStatus.UPLOADING,
    FileStatus.RATE_LIMITED,
    FileStatus.RETRYING,
)


@dataclass
class UploadQueueEntry:
    artifact_ref: str
    original_key: str
    retry_count: int = 0
    not_before_ms: Optional[int] = None  # epoch ms; no attempt before this


class UploadWorker:
    """Single-consumer upload loop with rate-limit waits and exponential backoff"""

    def __init__(
        self,
        uploader: NoteUploader,
        state: ItemStateManager,
        retry_base_delay: float = 5.0,
        max_retries: int = 3,
        rate_limit_buffer: float = 2.0,
        poll_interval: float = 1.0,
        keep_completed_records: bool = False,
        metrics: Optional[PrometheusMetricsService] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time
    ):
        self.uploader = uploader
        self.state = state
        self.retry_base_delay = retry_base_delay
        self.max_retries = max_retries
        self.rate_limit_buffer = rate_limit_buffer
        self.poll_interval = poll_interval
        self.keep_completed_records = keep_completed_records
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock

        self._queue: List[UploadQueueEntry] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ----- control -----

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the loop as a task on the running event loop"""
        if self._running:
            logger.warning("UploadWorker already running")
            return

        self._running = True
        if self._task is not None and not self._task.done():
            # A stopped loop still finishing its attempt picks the flag back up
            logger.info("UploadWorker resumed before previous loop exited")
            return

        self._task = asyncio.create_task(self._loop(), name="upload-worker")
        logger.info("UploadWorker started")

    def stop(self) -> None:
        """Ask the loop to exit; an attempt already in flight completes first"""
        if not self._running:
            return
        self._running = False
        logger.info("UploadWorker stopping")

    async def join(self) -> None:
        if self._task is not None:
            await self._task
            self._task = None

    # ----- queue -----

    def add_to_queue(self, artifact_ref: str, original_key: str, not_before_ms: Optional[int] = None) -> bool:
        """
        Append an entry unless ``original_key`` is already queued.

        Returns:
            True if the entry was appended
        """
        if any(entry.original_key == original_key for entry in self._queue):
            logger.debug(f"Already in upload queue: {original_key}", item_key=original_key)
            return False

        self._queue.append(UploadQueueEntry(artifact_ref, original_key, 0, not_before_ms))
        self._update_depth()
        logger.info(
            f"Added to upload queue: {original_key} (queue size: {len(self._queue)})",
            item_key=original_key
        )
        return True

    def get_queue_length(self) -> int:
        return len(self._queue)

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            "queue_length": len(self._queue),
            "current_file": self._queue[0].original_key if self._queue else None,
            "running": self._running,
        }

    def clear_queue(self) -> int:
        """Drop every waiting entry (an attempt already in flight still completes)"""
        count = len(self._queue)
        self._queue.clear()
        self._update_depth()
        return count

    def restore_from_store(self) -> int:
        """
        Re-enqueue persisted items that were waiting for or in the middle of
        an upload when the process stopped. A persisted ``retry_after`` is
        honoured before the first new attempt.
        """
        restored = 0
        for item in self.state.store.list_all():
            if item.status not in RESTORABLE_STATES:
                continue
            not_before = item.retry_after if item.status in (FileStatus.RATE_LIMITED, FileStatus.RETRYING) else None
            if self.add_to_queue(item.file_path, item.file_path, not_before):
                restored += 1

        if restored:
            logger.info(f"Restored {restored} item(s) into the upload queue")
        return restored

    # ----- loop -----

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _update_depth(self) -> None:
        if self.metrics:
            self.metrics.set_upload_queue_depth(len(self._queue))

    def _pop_head(self, entry: UploadQueueEntry) -> None:
        if self._queue and self._queue[0] is entry:
            self._queue.pop(0)
        self._update_depth()

    async def _pause(self, seconds: float) -> None:
        """Sleep up to ``seconds`` in poll-sized slices, returning early on stop"""
        deadline = self._clock() + seconds
        while self._running:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(self.poll_interval, remaining))

    @with_logging_context(operation="upload")
    async def _loop(self) -> None:
        while self._running:
            if not self._queue:
                await self._sleep(self.poll_interval)
                continue

            try:
                await self._process_head()
            except Exception as e:
                # Store or reporter failure outside an attempt; keep the loop alive
                logger.error(f"Upload loop error: {e}", exc_info=True)
                await self._sleep(self.poll_interval)

        logger.info("UploadWorker stopped")

    async def _process_head(self) -> None:
        entry = self._queue[0]

        if entry.not_before_ms is not None:
            remaining_ms = entry.not_before_ms - self._now_ms()
            if remaining_ms > 0:
                await self._pause(remaining_ms / 1000)
                return
            entry.not_before_ms = None

        try:
            await self._attempt(entry)
        except ItemNotFoundException:
            self._drop_removed(entry)

    async def _attempt(self, entry: UploadQueueEntry) -> None:
        """One upload attempt for the head entry, routed to its outcome handler"""
        key = entry.original_key
        try:
            self.state.update_status(key, FileStatus.UPLOADING)
            result = await self.uploader.upload(entry.artifact_ref)
        except ItemNotFoundException:
            raise
        except RateLimitException as e:
            self._on_rate_limited(entry, e.retry_after or 0)
            return
        except UploadError as e:
            self._on_failure(entry, e.message)
            return
        except Exception as e:
            if not is_rate_limit_error(e):
                self._on_critical(entry, e)
                return
            duration = extract_rate_limit_duration(e)
            if duration is None:
                duration = DEFAULT_RATE_LIMIT_SECONDS
            logger.warning(f"{key}: {parse_rate_limit_error(e) or 'Rate limit exceeded'}", item_key=key)
            self._on_rate_limited(entry, duration)
            return

        if result.success:
            self._on_success(entry, result.note_url, result.note_guid)
        elif result.rate_limit_duration is not None:
            self._on_rate_limited(entry, result.rate_limit_duration)
        else:
            self._on_failure(entry, result.error or "Unknown error")

    def _drop_removed(self, entry: UploadQueueEntry) -> None:
        """The record was purged while queued; forget the entry without uploading"""
        self._pop_head(entry)
        logger.info(f"Dropped removed item from upload queue: {entry.original_key}", item_key=entry.original_key)

    def _on_critical(self, entry: UploadQueueEntry, error: Exception) -> None:
        key = entry.original_key
        self._pop_head(entry)
        message = extract_error_message(error)
        logger.error(f"Critical error uploading {key}: {message}", item_key=key, exc_info=True)
        if self.metrics:
            self.metrics.record_upload_attempt("critical")
            self.metrics.record_item_processed("upload", "error")
        self.state.set_error(key, message)

    def _on_success(self, entry: UploadQueueEntry, note_url: Optional[str], note_guid: Optional[str]) -> None:
        key = entry.original_key
        self._pop_head(entry)
        self.state.mark_uploaded(key, note_url or "", note_guid)
        logger.info(f"Upload successful: {key}", item_key=key, stage=FileStatus.COMPLETE.value)

        if self.metrics:
            self.metrics.record_upload_attempt("success")
            self.metrics.record_item_processed("upload", "success")

        if not self.keep_completed_records:
            self.state.remove(key)
            logger.debug(f"Removed from queue store: {key}", item_key=key)

    def _on_rate_limited(self, entry: UploadQueueEntry, duration: int) -> None:
        key = entry.original_key
        wait_s = duration + self.rate_limit_buffer
        retry_at = self._now_ms() + int(wait_s * 1000)

        logger.warning(
            f"Rate limited: {key}, waiting {format_rate_limit_duration(duration)}",
            item_key=key,
            stage=FileStatus.RATE_LIMITED.value
        )
        self.state.schedule_retry(key, FileStatus.RATE_LIMITED, retry_at, rate_limit_duration=duration)
        entry.not_before_ms = retry_at

        if self.metrics:
            self.metrics.record_upload_attempt("rate_limited")
            self.metrics.record_rate_limit_wait(wait_s)

    def _on_failure(self, entry: UploadQueueEntry, error: str) -> None:
        key = entry.original_key
        entry.retry_count += 1

        if self.metrics:
            self.metrics.record_upload_attempt("failed")

        if entry.retry_count >= self.max_retries:
            self._pop_head(entry)
            message = f"Upload failed after {self.max_retries} retries: {error}"
            logger.error(f"Max retries reached for {key}: {error}", item_key=key, retry_count=entry.retry_count)
            if self.metrics:
                self.metrics.record_item_processed("upload", "error")
            self.state.set_error(key, message)
            return

        delay = self.retry_base_delay * (2 ** (entry.retry_count - 1))
        retry_at = self._now_ms() + int(delay * 1000)
        logger.warning(
            f"Upload failed for {key}, retrying in {delay:g}s (attempt {entry.retry_count}/{self.max_retries})",
            item_key=key,
            retry_count=entry.retry_count
        )
        self.state.schedule_retry(
            key,
            FileStatus.RETRYING,
            retry_at,
            message=f"Retrying in {delay:g}s... ({entry.retry_count}/{self.max_retries})",
            error=error
        )
        entry.not_before_ms = retry_at

        if self.metrics:
            self.metrics.record_retry_delay(delay)
