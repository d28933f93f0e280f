"""BatchSnapshot repository.

Stores the latest serialized state of a batch so that polling loops can be
stopped and resumed from another process.
"""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genbatch.models.batch import Batch
from genbatch.models.batch_snapshot import BatchSnapshot


class BatchSnapshotRepository:
    """Repository for BatchSnapshot entities (one row per batch, overwritten)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, batch_id: str) -> Batch | None:
        """Load the latest saved state of a batch, or None if never saved."""
        snapshot = await self.session.get(BatchSnapshot, batch_id)
        return snapshot.to_batch() if snapshot else None

    async def save(self, batch: Batch) -> None:
        """Insert or overwrite the snapshot of a batch."""
        payload = batch.model_dump(mode="json")
        snapshot = await self.session.get(BatchSnapshot, batch.id)
        if snapshot is None:
            snapshot = BatchSnapshot(
                batch_id=batch.id,
                kind=batch.kind.value,
                status=batch.status.value,
                payload=payload,
            )
        else:
            snapshot.kind = batch.kind.value
            snapshot.status = batch.status.value
            snapshot.payload = payload
            snapshot.updated_at = datetime.now(timezone.utc)
        self.session.add(snapshot)
        await self.session.flush()

    async def list_recent(self, kind: str | None = None, limit: int = 50) -> list[Batch]:
        """Most recently updated batches, newest first."""
        stmt = select(BatchSnapshot)
        if kind is not None:
            stmt = stmt.where(BatchSnapshot.kind == kind)  # type: ignore[arg-type]
        stmt = stmt.order_by(
            BatchSnapshot.updated_at.desc()  # type: ignore[attr-defined]
        ).limit(limit)
        result = await self.session.execute(stmt)
        return [snapshot.to_batch() for snapshot in result.scalars().all()]
