"""
Progress Reporter

Decouples the pipeline from whatever displays progress. Stages emit
``ItemProgress`` / ``AugmentProgress`` / ``BatchProgress`` events to a
reporter; emission is fire-and-forget and never affects control flow.
"""

from typing import List, Optional, Protocol, Sequence

from note_importer.core.logging_config import get_logger
from note_importer.domain.progress import AugmentProgress, BatchProgress, ItemProgress

logger = get_logger(__name__)


class ProgressReporter(Protocol):
    def report_item_progress(self, data: ItemProgress) -> None:
        ...

    def report_item_removed(self, key: str) -> None:
        ...

    def report_augment_progress(self, data: AugmentProgress) -> None:
        ...

    def report_batch_progress(self, data: BatchProgress) -> None:
        ...


class NullProgressReporter:
    """Discards every event"""

    def report_item_progress(self, data: ItemProgress) -> None:
        pass

    def report_item_removed(self, key: str) -> None:
        pass

    def report_augment_progress(self, data: AugmentProgress) -> None:
        pass

    def report_batch_progress(self, data: BatchProgress) -> None:
        pass


class LoggingProgressReporter:
    """Writes progress events to the structured log"""

    def report_item_progress(self, data: ItemProgress) -> None:
        log = logger.error if data.status == "error" else logger.info
        log(
            f"{data.file_path}: {data.status} ({data.progress}%) {data.error or data.message or ''}".rstrip(),
            item_key=data.file_path,
            stage=data.status
        )

    def report_item_removed(self, key: str) -> None:
        logger.info(f"Removed from queue: {key}", item_key=key)

    def report_augment_progress(self, data: AugmentProgress) -> None:
        logger.info(
            f"Note {data.note_guid}: {data.status} ({data.progress}%)",
            item_key=data.note_guid,
            stage=data.status
        )

    def report_batch_progress(self, data: BatchProgress) -> None:
        logger.info(
            f"Batch {data.status}: {data.processed}/{data.total_files}",
            stage=data.status
        )


class RecordingProgressReporter:
    """Captures every event in memory; used by tests and the CLI"""

    def __init__(self):
        self.item_progress: List[ItemProgress] = []
        self.removed: List[str] = []
        self.augment_progress: List[AugmentProgress] = []
        self.batch_progress: List[BatchProgress] = []

    def report_item_progress(self, data: ItemProgress) -> None:
        self.item_progress.append(data)

    def report_item_removed(self, key: str) -> None:
        self.removed.append(key)

    def report_augment_progress(self, data: AugmentProgress) -> None:
        self.augment_progress.append(data)

    def report_batch_progress(self, data: BatchProgress) -> None:
        self.batch_progress.append(data)

    def reset(self) -> None:
        self.item_progress.clear()
        self.removed.clear()
        self.augment_progress.clear()
        self.batch_progress.clear()

    def last_item_progress(self, key: Optional[str] = None) -> Optional[ItemProgress]:
        for event in reversed(self.item_progress):
            if key is None or event.file_path == key:
                return event
        return None

    def statuses_for(self, key: str) -> List[str]:
        """Ordered status sequence emitted for one key"""
        return [event.status for event in self.item_progress if event.file_path == key]


class CompositeProgressReporter:
    """Fans each event out to several reporters"""

    def __init__(self, reporters: Sequence[ProgressReporter]):
        self.reporters = list(reporters)

    def report_item_progress(self, data: ItemProgress) -> None:
        for reporter in self.reporters:
            reporter.report_item_progress(data)

    def report_item_removed(self, key: str) -> None:
        for reporter in self.reporters:
            reporter.report_item_removed(key)

    def report_augment_progress(self, data: AugmentProgress) -> None:
        for reporter in self.reporters:
            reporter.report_augment_progress(data)

    def report_batch_progress(self, data: BatchProgress) -> None:
        for reporter in self.reporters:
            reporter.report_batch_progress(data)
