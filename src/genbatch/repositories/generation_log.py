"""GenerationLog repository.

Provides append and read access to the durable generation log.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genbatch.models.generation_log import GenerationLogEntry


class GenerationLogRepository:
    """Repository for GenerationLogEntry entities.

    The log is append-only: there is no update or delete.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def append(self, entry: GenerationLogEntry) -> GenerationLogEntry:
        """Persist a new log entry.

        Args:
            entry: Entry describing one terminal item outcome

        Returns:
            Persisted entry with generated ID
        """
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def read(self, batch_id: str, log_date: str | None = None) -> list[GenerationLogEntry]:
        """Retrieve all entries of a batch, oldest first.

        Args:
            batch_id: Batch identifier
            log_date: Optional date partition (YYYY-MM-DD); all partitions when omitted

        Returns:
            List of entries ordered by creation time
        """
        stmt = select(GenerationLogEntry).where(
            GenerationLogEntry.batch_id == batch_id  # type: ignore[arg-type]
        )
        if log_date is not None:
            stmt = stmt.where(GenerationLogEntry.log_date == log_date)  # type: ignore[arg-type]
        stmt = stmt.order_by(
            GenerationLogEntry.created_at.asc(),  # type: ignore[attr-defined]
            GenerationLogEntry.item_index.asc(),  # type: ignore[attr-defined]
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_date(
        self, log_date: str, batch_id: str | None = None
    ) -> list[GenerationLogEntry]:
        """Retrieve one date partition, optionally narrowed to a batch, oldest first."""
        stmt = select(GenerationLogEntry).where(
            GenerationLogEntry.log_date == log_date  # type: ignore[arg-type]
        )
        if batch_id is not None:
            stmt = stmt.where(GenerationLogEntry.batch_id == batch_id)  # type: ignore[arg-type]
        stmt = stmt.order_by(
            GenerationLogEntry.created_at.asc(),  # type: ignore[attr-defined]
            GenerationLogEntry.item_index.asc(),  # type: ignore[attr-defined]
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
