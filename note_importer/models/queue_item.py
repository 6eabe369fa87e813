"""
Queue Models

Database models for the file processing queue and the note analysis cache.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import BigInteger, DateTime, Enum as SAEnum


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp"""
    return datetime.now(timezone.utc)


class FileStatus(str, Enum):
    """Lifecycle states of a queue item"""
    PENDING = "pending"
    EXTRACTING = "extracting"
    ANALYZING = "analyzing"
    READY_TO_UPLOAD = "ready-to-upload"
    UPLOADING = "uploading"
    RATE_LIMITED = "rate-limited"
    RETRYING = "retrying"
    COMPLETE = "complete"
    ERROR = "error"


IN_FLIGHT_ANALYSIS = (FileStatus.EXTRACTING, FileStatus.ANALYZING)
UPLOAD_ACTIVE = (FileStatus.UPLOADING, FileStatus.RATE_LIMITED, FileStatus.RETRYING)


def _status_column() -> Column:
    # Persist the hyphenated values, not the member names
    return Column(
        SAEnum(
            FileStatus,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=32,
            name="file_status"
        ),
        index=True,
        nullable=False,
        default=FileStatus.PENDING.value
    )


class QueueItem(SQLModel, table=True):
    """
    One unit of work flowing through the pipeline.

    Keyed by ``file_path``: an absolute source file path, or a remote note
    identifier when an existing note is being augmented.
    """
    __tablename__ = "files"

    id: Optional[int] = Field(default=None, primary_key=True)
    file_path: str = Field(unique=True, index=True)

    # Analysis output (Stage 1)
    title: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    tags: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    content_hash: Optional[str] = Field(default=None)

    # Lifecycle
    status: FileStatus = Field(default=FileStatus.PENDING, sa_column=_status_column())
    progress: int = Field(default=0)
    error_message: Optional[str] = Field(default=None)

    # Timing
    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))
    last_attempt_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    retry_after: Optional[int] = Field(default=None, sa_column=Column(BigInteger, index=True))  # epoch ms
    uploaded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    # Remote note (Stage 2)
    note_url: Optional[str] = Field(default=None)
    note_guid: Optional[str] = Field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "file_path": self.file_path,
            "title": self.title,
            "description": self.description,
            "tags": list(self.tags or []),
            "status": FileStatus(self.status).value,
            "progress": self.progress,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "retry_after": self.retry_after,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "note_url": self.note_url,
            "note_guid": self.note_guid,
            "content_hash": self.content_hash
        }


class NoteAnalysisCache(SQLModel, table=True):
    """
    Cached analysis of an existing remote note.

    Lets a re-augmentation of unchanged content skip the analysis call.
    Rows expire after a TTL; ``expires_at`` is epoch milliseconds.
    """
    __tablename__ = "note_augmentation_cache"

    note_guid: str = Field(primary_key=True)
    ai_title: str
    ai_description: str
    ai_tags: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    analyzed_at: datetime = Field(default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False))
    content_hash: str
    expires_at: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
