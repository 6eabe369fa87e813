"""Models package for the Note Importer queue."""

from .queue_item import (
    FileStatus,
    QueueItem,
    NoteAnalysisCache,
    IN_FLIGHT_ANALYSIS,
    UPLOAD_ACTIVE,
    utc_now,
)

__all__ = [
    "FileStatus",
    "QueueItem",
    "NoteAnalysisCache",
    "IN_FLIGHT_ANALYSIS",
    "UPLOAD_ACTIVE",
    "utc_now",
]
