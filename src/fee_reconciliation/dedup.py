"""Duplicate suppression for bank notifications.

The unique index on ``notifications.duplicate_hash`` decides which of several
concurrent deliveries of the same alert wins; everything else is a read-side
shortcut.
"""

import enum
import logging
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .database.models import Notification

logger = logging.getLogger(__name__)


class DedupOutcome(str, enum.Enum):
    """Result of claiming a duplicate hash."""
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


class DuplicateFilter:
    """Claims notification fingerprints exactly once."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_holder(self, duplicate_hash: str, exclude_id: Optional[str] = None) -> Optional[str]:
        """Id of the notification holding the hash, if any."""
        conditions = [Notification.duplicate_hash == duplicate_hash]
        if exclude_id is not None:
            conditions.append(Notification.id != exclude_id)
        result = await self.session.execute(
            select(Notification.id).where(and_(*conditions)).limit(1)
        )
        return result.scalar_one_or_none()

    async def is_duplicate(self, duplicate_hash: str) -> bool:
        return await self.find_holder(duplicate_hash) is not None

    async def insert_if_new(self, duplicate_hash: str, notification: Notification) -> DedupOutcome:
        """Store the hash on the notification unless another row already has it.

        The claim is committed immediately together with any pending changes
        in the session. When a concurrent writer got there first the unique
        constraint rejects the commit; the session is rolled back and the
        notification reloaded from the database.

        Args:
            duplicate_hash: Notification fingerprint.
            notification: Persisted notification row claiming the hash.

        Returns:
            INSERTED if this notification now owns the hash, ALREADY_EXISTS otherwise.
        """
        if await self.find_holder(duplicate_hash, exclude_id=notification.id) is not None:
            return DedupOutcome.ALREADY_EXISTS

        notification.duplicate_hash = duplicate_hash
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            await self.session.refresh(notification)
            logger.info(f"Notification {notification.id} lost the race for hash {duplicate_hash}")
            return DedupOutcome.ALREADY_EXISTS
        return DedupOutcome.INSERTED
