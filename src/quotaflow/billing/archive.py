"""Append-only history of superseded quota records."""

from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quotaflow.billing.models import QuotaArchiveEntry, QuotaRecord
from quotaflow.core.logging import LoggerMixin


class QuotaArchive(LoggerMixin):
    """Writes one ``quota_archive`` row per superseded record."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.db = db
        self.clock = clock

    async def archive_record(
        self,
        record: QuotaRecord,
        *,
        reason: str | None = None,
    ) -> QuotaArchiveEntry:
        """Append a full copy of ``record`` to the user's archive.

        Args:
            record: The quota record about to be superseded
            reason: Why the record is being replaced

        Returns:
            The new archive entry
        """
        sequence = await self.next_sequence(record.user_id)
        entry = QuotaArchiveEntry(
            sequence=sequence,
            archived_at=self.clock(),
            reason=reason,
            **record.snapshot(),
        )
        self.db.add(entry)
        await self.db.flush()

        self.logger.info(
            "quota_record_archived",
            user_id=record.user_id,
            tier_id=record.tier_id,
            sequence=sequence,
            reason=reason,
        )
        return entry

    async def next_sequence(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(QuotaArchiveEntry.sequence), 0)).where(
                QuotaArchiveEntry.user_id == user_id,
            ),
        )
        return int(result.scalar_one()) + 1

    async def list_entries(
        self,
        user_id: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[QuotaArchiveEntry]:
        """Archive entries for a user, oldest first."""
        query = (
            select(QuotaArchiveEntry)
            .where(QuotaArchiveEntry.user_id == user_id)
            .order_by(QuotaArchiveEntry.sequence)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def latest_entry(self, user_id: str) -> QuotaArchiveEntry | None:
        result = await self.db.execute(
            select(QuotaArchiveEntry)
            .where(QuotaArchiveEntry.user_id == user_id)
            .order_by(QuotaArchiveEntry.sequence.desc())
            .limit(1),
        )
        return result.scalar_one_or_none()

    async def count_entries(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(QuotaArchiveEntry).where(
                QuotaArchiveEntry.user_id == user_id,
            ),
        )
        return int(result.scalar_one())
