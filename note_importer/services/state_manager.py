"""
Item State Manager

Issues the store write and the matching progress event together, so the
persisted status and what observers see never drift apart. Every status
change is checked against the lifecycle table first.
"""

from typing import Optional, Sequence

from note_importer.core.exceptions import InvalidTransitionError, ItemNotFoundException
from note_importer.core.logging_config import get_logger
from note_importer.domain.progress import ItemResult, create_progress_data
from note_importer.domain.state_machine import TERMINAL_STATES, is_valid_transition
from note_importer.models.queue_item import FileStatus, QueueItem
from note_importer.repositories.queue_store import QueueStore
from note_importer.services.progress_reporter import ProgressReporter

logger = get_logger(__name__)


def _result_of(item: Optional[QueueItem]) -> Optional[ItemResult]:
    if item is None or item.title is None:
        return None
    return ItemResult(
        title=item.title,
        description=item.description,
        tags=list(item.tags or []),
        note_url=item.note_url
    )


class ItemStateManager:
    """Couples ``QueueStore`` writes with ``ProgressReporter`` emissions"""

    def __init__(self, store: QueueStore, reporter: ProgressReporter):
        self.store = store
        self.reporter = reporter

    def add_item(self, key: str) -> bool:
        """Admit ``key`` as pending; duplicates return False and emit nothing"""
        if not self.store.add_item(key):
            return False
        self.reporter.report_item_progress(
            create_progress_data(key, "pending", custom_message="Added to queue")
        )
        return True

    def update_status(
        self,
        key: str,
        status: FileStatus,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        rate_limit_duration: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        """
        Move ``key`` to ``status`` and report it.

        ``error`` is the failure that caused a ``retrying`` move; it is
        reported with the event and kept on the record until the next move.

        Raises:
            ItemNotFoundException: if ``key`` is no longer in the store
            InvalidTransitionError: if the persisted status cannot move to ``status``
        """
        status = FileStatus(status)
        item = self.store.get(key)

        if item is None:
            raise ItemNotFoundException(key)
        if item.status != status and not is_valid_transition(item.status, status):
            raise InvalidTransitionError(FileStatus(item.status).value, status.value)

        event = create_progress_data(
            key,
            status.value,
            rate_limit_duration=rate_limit_duration,
            custom_message=message,
            error=error,
            progress=progress,
            result=_result_of(item)
        )

        self.store.update_status(key, status, event.progress, error)
        self.reporter.report_item_progress(event)

    def schedule_retry(
        self,
        key: str,
        status: FileStatus,
        retry_after_ms: int,
        message: Optional[str] = None,
        rate_limit_duration: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        """Move to ``rate-limited``/``retrying`` and persist the next eligible attempt time"""
        self.update_status(key, status, message=message, rate_limit_duration=rate_limit_duration, error=error)
        self.store.update_retry_info(key, retry_after_ms)

    def update_analysis(
        self,
        key: str,
        title: str,
        description: str,
        tags: Sequence[str],
        content_hash: Optional[str] = None
    ) -> None:
        """Store the analysis result; status is left unchanged"""
        self.store.update_analysis(key, title, description, tags, content_hash)
        item = self.store.get(key)
        if item is None:
            return
        self.reporter.report_item_progress(
            create_progress_data(
                key,
                FileStatus(item.status).value,
                custom_message="Saving analysis...",
                progress=item.progress,
                result=_result_of(item)
            )
        )

    def mark_uploaded(self, key: str, note_url: str, note_guid: Optional[str] = None) -> None:
        """Record a successful upload as ``complete`` and report it"""
        item = self.store.get(key)
        if item is not None and item.status != FileStatus.COMPLETE \
                and not is_valid_transition(item.status, FileStatus.COMPLETE):
            raise InvalidTransitionError(FileStatus(item.status).value, FileStatus.COMPLETE.value)

        result = _result_of(item) or ItemResult()
        result.note_url = note_url

        if item is not None:
            self.store.update_upload(key, note_url, note_guid)
        self.reporter.report_item_progress(create_progress_data(key, "complete", result=result))

    def set_error(self, key: str, message: str) -> None:
        """
        Freeze ``key`` in ``error`` with ``message``.

        Any non-terminal status may fail; an item already complete is left alone.
        """
        item = self.store.get(key)
        if item is None:
            logger.info(f"Ignoring failure for removed item {key}: {message}", item_key=key)
            return
        if item.status == FileStatus.COMPLETE:
            logger.warning(f"Ignoring failure for completed item {key}: {message}", item_key=key)
            return

        self.store.update_status(key, FileStatus.ERROR, 0, message)
        self.reporter.report_item_progress(create_progress_data(key, "error", error=message))
        logger.error(f"Item failed: {message}", item_key=key, stage=FileStatus.ERROR.value)

    def remove(self, key: str) -> bool:
        """Delete the record and announce its removal"""
        removed = self.store.delete(key)
        self.reporter.report_item_removed(key)
        return removed

    def requeue(self, key: str) -> QueueItem:
        """
        Re-admit an errored item as ``pending``.

        Raises:
            ItemNotFoundException: if ``key`` is unknown
            InvalidTransitionError: if the item is not in ``error``
        """
        item = self.store.get(key)
        if item is None:
            raise ItemNotFoundException(key)
        if item.status != FileStatus.ERROR:
            raise InvalidTransitionError(FileStatus(item.status).value, FileStatus.PENDING.value)

        self.store.reset_item(key)
        self.reporter.report_item_progress(
            create_progress_data(key, "pending", custom_message="Re-queued")
        )
        logger.info(f"Re-queued errored item: {key}", item_key=key)
        return self.store.get(key)

    def is_terminal(self, key: str) -> bool:
        item = self.store.get(key)
        return item is not None and item.status in TERMINAL_STATES
