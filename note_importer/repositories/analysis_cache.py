"""
Analysis Cache Repository

Caches the AI analysis of existing remote notes, keyed by note guid and
validated against a content hash. Entries expire after a TTL.
"""

import hashlib
import time
from typing import List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from note_importer.core.logging_config import get_logger
from note_importer.models.queue_item import NoteAnalysisCache, utc_now

logger = get_logger(__name__)

MS_PER_HOUR = 60 * 60 * 1000


def content_hash(content: str) -> str:
    """MD5 hex digest of the extracted content"""
    return hashlib.md5(content.encode("utf-8")).hexdigest()


class AnalysisCacheRepository:
    """TTL-bounded cache of note analysis results"""

    def __init__(self, engine: Engine, ttl_hours: float = 24.0, clock=time.time):
        self.engine = engine
        self.ttl_ms = int(ttl_hours * MS_PER_HOUR)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get_cached_analysis(self, note_guid: str, hash_value: str) -> Optional[NoteAnalysisCache]:
        """
        Return the cached analysis if it exists, matches ``hash_value`` and
        has not expired. Stale or mismatched rows are treated as misses.
        """
        with Session(self.engine, expire_on_commit=False) as session:
            entry = session.get(NoteAnalysisCache, note_guid)

        if entry is None:
            return None

        if entry.content_hash != hash_value:
            logger.debug(f"Cache hash mismatch for note {note_guid}")
            return None

        if entry.expires_at <= self._now_ms():
            logger.debug(f"Cache entry expired for note {note_guid}")
            return None

        return entry

    def save_analysis(
        self,
        note_guid: str,
        title: str,
        description: str,
        tags: Sequence[str],
        hash_value: str
    ) -> NoteAnalysisCache:
        """Insert or replace the cache row for ``note_guid``"""
        with Session(self.engine, expire_on_commit=False) as session:
            entry = session.get(NoteAnalysisCache, note_guid)
            if entry is None:
                entry = NoteAnalysisCache(
                    note_guid=note_guid,
                    ai_title=title,
                    ai_description=description,
                    ai_tags=list(tags),
                    content_hash=hash_value,
                    expires_at=self._now_ms() + self.ttl_ms
                )
            else:
                entry.ai_title = title
                entry.ai_description = description
                entry.ai_tags = list(tags)
                entry.content_hash = hash_value
                entry.analyzed_at = utc_now()
                entry.expires_at = self._now_ms() + self.ttl_ms

            session.add(entry)
            session.commit()

        logger.debug(f"Cached analysis for note {note_guid}")
        return entry

    def purge_expired(self) -> int:
        """Delete expired rows, returning how many were removed"""
        with Session(self.engine) as session:
            expired = session.exec(
                select(NoteAnalysisCache).where(NoteAnalysisCache.expires_at <= self._now_ms())
            ).all()
            for entry in expired:
                session.delete(entry)
            session.commit()
            count = len(expired)

        if count:
            logger.info(f"Purged {count} expired analysis cache entries")
        return count

    @staticmethod
    def filter_tags(cached_tags: Sequence[str], available_tags: Optional[Sequence[str]]) -> List[str]:
        """Drop cached tags that are no longer among the available tags (case-insensitive)"""
        if not available_tags:
            return list(cached_tags)
        allowed = {tag.lower() for tag in available_tags}
        return [tag for tag in cached_tags if tag.lower() in allowed]
