"""
Processing Scheduler

Pure admission policy for Stage 1: given a snapshot of the queue, decide
which pending items may start without exceeding the concurrency limit.
"""

from typing import List, Optional, Sequence

from note_importer.models.queue_item import FileStatus, QueueItem, IN_FLIGHT_ANALYSIS, UPLOAD_ACTIVE
from note_importer.repositories.queue_store import QueueStats


class ProcessingScheduler:
    """Stateless apart from its configured limit; never mutates the items it is given."""

    def __init__(self, max_concurrent: int = 3):
        self.max_concurrent = max_concurrent

    @staticmethod
    def _pending(items: Sequence[QueueItem]) -> List[QueueItem]:
        return [item for item in items if item.status == FileStatus.PENDING]

    @staticmethod
    def _in_flight(items: Sequence[QueueItem]) -> int:
        return sum(1 for item in items if item.status in IN_FLIGHT_ANALYSIS)

    def select_next(self, items: Sequence[QueueItem], limit: Optional[int] = None) -> List[QueueItem]:
        """
        Pending items that may start now, in the order given.

        Args:
            items: Snapshot of the queue in insertion order
            limit: Override for the configured concurrency limit

        Returns:
            At most ``limit - in_flight`` pending items (never negative)
        """
        limit = self.max_concurrent if limit is None else limit
        slots = max(0, limit - self._in_flight(items))
        return self._pending(items)[:slots]

    def should_process_more(self, items: Sequence[QueueItem]) -> bool:
        return bool(self._pending(items)) and self._in_flight(items) < self.max_concurrent

    def get_stats(self, items: Sequence[QueueItem]) -> QueueStats:
        def count(*statuses: FileStatus) -> int:
            return sum(1 for item in items if item.status in statuses)

        return QueueStats(
            total=len(items),
            pending=count(FileStatus.PENDING),
            processing=count(*IN_FLIGHT_ANALYSIS),
            ready_to_upload=count(FileStatus.READY_TO_UPLOAD),
            uploading=count(*UPLOAD_ACTIVE),
            complete=count(FileStatus.COMPLETE),
            error=count(FileStatus.ERROR),
        )
