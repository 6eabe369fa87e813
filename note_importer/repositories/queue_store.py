"""
Queue Store

Durable, path-keyed record of every item's status, progress, analysis
result, retry timers and remote identifiers. This is the only component that
persists item state; every call runs in its own session so each write is
atomic per item.
"""

import time
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select, func, or_

from note_importer.core.exceptions import DatabaseException
from note_importer.core.logging_config import get_logger
from note_importer.models.queue_item import (
    FileStatus, QueueItem, IN_FLIGHT_ANALYSIS, UPLOAD_ACTIVE, utc_now
)

logger = get_logger(__name__)


class QueueStats(BaseModel):
    """Aggregate counts per status bucket"""
    total: int = 0
    pending: int = 0
    processing: int = 0
    ready_to_upload: int = 0
    uploading: int = 0
    complete: int = 0
    error: int = 0


def now_ms() -> int:
    return int(time.time() * 1000)


def dedupe_tags(tags: Sequence[str]) -> List[str]:
    """Ordered set semantics: keep first occurrence, drop blanks"""
    seen = set()
    result = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


class QueueStore:
    """Repository for the ``files`` queue table"""

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Queue store error: {e}")
            raise DatabaseException(str(e), operation="queue_store") from e
        finally:
            session.close()

    @staticmethod
    def _find(session: Session, key: str) -> Optional[QueueItem]:
        return session.exec(select(QueueItem).where(QueueItem.file_path == key)).first()

    # ----- writes -----

    def add_item(self, key: str) -> bool:
        """
        Insert a new item as ``pending`` with progress 0.

        Returns:
            True if inserted, False if the key already exists
        """
        with self._session() as session:
            session.add(QueueItem(file_path=key, status=FileStatus.PENDING, progress=0))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug(f"Item already queued: {key}")
                return False

        logger.info(f"Added to queue: {key}")
        return True

    def update_status(self, key: str, status: FileStatus, progress: int, message: Optional[str] = None) -> bool:
        """Overwrite status and progress; only ``error`` and ``retrying`` keep a failure message"""
        status = FileStatus(status)
        with self._session() as session:
            item = self._find(session, key)
            if item is None:
                logger.warning(f"Cannot update status for unknown item: {key}")
                return False

            item.status = status
            item.progress = max(0, min(100, progress))
            item.error_message = message if status in (FileStatus.ERROR, FileStatus.RETRYING) else None
            session.add(item)
            session.commit()
            return True

    def update_analysis(
        self,
        key: str,
        title: str,
        description: str,
        tags: Sequence[str],
        content_hash: Optional[str] = None
    ) -> bool:
        """Record Stage 1 output. Status is left to the caller."""
        with self._session() as session:
            item = self._find(session, key)
            if item is None:
                logger.warning(f"Cannot store analysis for unknown item: {key}")
                return False

            item.title = title
            item.description = description
            item.tags = dedupe_tags(tags)
            if content_hash is not None:
                item.content_hash = content_hash
            session.add(item)
            session.commit()
            return True

    def update_upload(self, key: str, note_url: str, note_guid: Optional[str] = None) -> bool:
        """Mark an item uploaded: complete, progress 100, retry timer cleared"""
        with self._session() as session:
            item = self._find(session, key)
            if item is None:
                logger.warning(f"Cannot mark unknown item uploaded: {key}")
                return False

            item.status = FileStatus.COMPLETE
            item.progress = 100
            item.error_message = None
            item.uploaded_at = utc_now()
            item.note_url = note_url
            item.note_guid = note_guid
            item.retry_after = None
            session.add(item)
            session.commit()
            return True

    def update_retry_info(self, key: str, retry_after_ms: int) -> bool:
        """Record the attempt time and the next eligible retry time (epoch ms)"""
        with self._session() as session:
            item = self._find(session, key)
            if item is None:
                logger.warning(f"Cannot update retry info for unknown item: {key}")
                return False

            item.last_attempt_at = utc_now()
            item.retry_after = int(retry_after_ms)
            session.add(item)
            session.commit()
            return True

    def reset_item(self, key: str) -> bool:
        """Put an item back to ``pending`` with all failure and retry state cleared"""
        with self._session() as session:
            item = self._find(session, key)
            if item is None:
                return False

            item.status = FileStatus.PENDING
            item.progress = 0
            item.error_message = None
            item.retry_after = None
            item.last_attempt_at = None
            session.add(item)
            session.commit()
            return True

    def delete(self, key: str) -> bool:
        with self._session() as session:
            item = self._find(session, key)
            if item is None:
                return False
            session.delete(item)
            session.commit()
            return True

    def delete_by_status(self, status: FileStatus) -> int:
        with self._session() as session:
            items = session.exec(select(QueueItem).where(QueueItem.status == FileStatus(status))).all()
            for item in items:
                session.delete(item)
            session.commit()
            count = len(items)

        if count:
            logger.info(f"Deleted {count} item(s) with status {FileStatus(status).value}")
        return count

    def delete_all(self) -> int:
        with self._session() as session:
            items = session.exec(select(QueueItem)).all()
            for item in items:
                session.delete(item)
            session.commit()
            count = len(items)

        logger.info(f"Deleted all {count} item(s) from queue")
        return count

    # ----- reads -----

    def get(self, key: str) -> Optional[QueueItem]:
        with self._session() as session:
            return self._find(session, key)

    def list_all(self) -> List[QueueItem]:
        """All items in insertion order"""
        with self._session() as session:
            return list(session.exec(select(QueueItem).order_by(QueueItem.id)).all())

    def list_by_status(self, status: FileStatus) -> List[QueueItem]:
        with self._session() as session:
            return list(session.exec(
                select(QueueItem)
                .where(QueueItem.status == FileStatus(status))
                .order_by(QueueItem.id)
            ).all())

    def list_ready_to_retry(self, now: Optional[int] = None) -> List[QueueItem]:
        """Rate-limited or retrying items whose retry time has passed (or was never set)"""
        current = now_ms() if now is None else now
        with self._session() as session:
            return list(session.exec(
                select(QueueItem)
                .where(QueueItem.status.in_([FileStatus.RATE_LIMITED, FileStatus.RETRYING]))
                .where(or_(QueueItem.retry_after.is_(None), QueueItem.retry_after <= current))
                .order_by(QueueItem.id)
            ).all())

    def list_completed_with_guids(self) -> List[QueueItem]:
        with self._session() as session:
            return list(session.exec(
                select(QueueItem)
                .where(QueueItem.status == FileStatus.COMPLETE)
                .where(QueueItem.note_guid.is_not(None))
                .order_by(QueueItem.id)
            ).all())

    def is_already_processed(self, key: str) -> bool:
        """True once an item carries analysis output or has reached ready-to-upload/complete"""
        item = self.get(key)
        return item is not None and (
            item.title is not None
            or item.status in (FileStatus.COMPLETE, FileStatus.READY_TO_UPLOAD)
        )

    def stats(self) -> QueueStats:
        with self._session() as session:
            rows = session.exec(
                select(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status)
            ).all()

        counts = {FileStatus(status): count for status, count in rows}
        return QueueStats(
            total=sum(counts.values()),
            pending=counts.get(FileStatus.PENDING, 0),
            processing=sum(counts.get(s, 0) for s in IN_FLIGHT_ANALYSIS),
            ready_to_upload=counts.get(FileStatus.READY_TO_UPLOAD, 0),
            uploading=sum(counts.get(s, 0) for s in UPLOAD_ACTIVE),
            complete=counts.get(FileStatus.COMPLETE, 0),
            error=counts.get(FileStatus.ERROR, 0),
        )

    @staticmethod
    def parse_tags(item: QueueItem) -> List[str]:
        return list(item.tags or [])
