"""BatchSnapshot entity - last persisted state of a batch."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from genbatch.models.batch import Batch


class BatchSnapshot(SQLModel, table=True):
    """Serialized batch, overwritten on every save."""

    __tablename__ = "batch_snapshots"  # type: ignore[assignment]

    batch_id: str = Field(primary_key=True, max_length=64)
    kind: str = Field(max_length=16)
    status: str = Field(index=True, max_length=16)
    payload: dict = Field(sa_column=Column(JSON, nullable=False))
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    def to_batch(self) -> Batch:
        return Batch.model_validate(self.payload)
