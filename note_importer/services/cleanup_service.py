"""
Cleanup Service

Verifies that completed records kept as an audit trail really exist on the
remote note service, and removes the verified ones from the queue store.
Lookups are made in batches with a pause between batches to stay under the
remote rate limit.
"""

import asyncio
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from note_importer.core.logging_config import get_logger
from note_importer.services.contracts import NoteVerifier
from note_importer.services.state_manager import ItemStateManager

logger = get_logger(__name__)


class CleanupResult(BaseModel):
    checked: int = 0
    verified: int = 0
    removed: int = 0
    failed: int = 0


class CleanupService:

    def __init__(
        self,
        verifier: NoteVerifier,
        state: ItemStateManager,
        batch_size: int = 10,
        batch_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.verifier = verifier
        self.state = state
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._sleep = sleep

    async def verify_and_remove_uploaded(self) -> CleanupResult:
        """
        Check every completed record that has a remote guid.

        A record is removed only when the remote note is confirmed to exist;
        missing notes and lookup errors leave the record in place and count
        as failed.
        """
        result = CleanupResult()
        records = self.state.store.list_completed_with_guids()

        if not records:
            logger.info("No completed items to verify")
            return result

        logger.info(f"Verifying {len(records)} completed item(s)")

        for start in range(0, len(records), self.batch_size):
            for record in records[start:start + self.batch_size]:
                result.checked += 1
                try:
                    exists = await self.verifier.note_exists(record.note_guid)
                except Exception as e:
                    logger.error(f"Error verifying {record.file_path}: {e}", item_key=record.file_path)
                    result.failed += 1
                    continue

                if not exists:
                    logger.warning(
                        f"Note not found remotely: {record.file_path} (guid: {record.note_guid})",
                        item_key=record.file_path
                    )
                    result.failed += 1
                    continue

                result.verified += 1
                if self.state.remove(record.file_path):
                    result.removed += 1

            if start + self.batch_size < len(records):
                await self._sleep(self.batch_delay)

        logger.info(
            f"Cleanup finished: checked={result.checked} verified={result.verified} "
            f"removed={result.removed} failed={result.failed}"
        )
        return result
