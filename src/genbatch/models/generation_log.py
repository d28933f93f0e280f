"""GenerationLogEntry entity - append-only record of terminal item outcomes."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class GenerationLogStatus(str, Enum):
    """Terminal outcome recorded in the log."""

    COMPLETED = "completed"
    FAILED = "failed"


class GenerationLogEntry(SQLModel, table=True):
    """One completed or failed item.

    Written once per terminal transition and never updated. Holds enough to
    rebuild the item's terminal state without calling the provider again.
    """

    __tablename__ = "generation_log"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    batch_id: str = Field(index=True, max_length=64)
    item_index: int = Field(ge=0)
    log_date: str = Field(index=True, max_length=10)
    status: GenerationLogStatus
    prompt: str = Field(default="")
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON))
    duration_ms: int = Field(default=0, ge=0)
    result_url: Optional[str] = Field(default=None)
    content_type: Optional[str] = Field(default=None, max_length=100)
    width: Optional[int] = Field(default=None)
    height: Optional[int] = Field(default=None)
    error: Optional[str] = Field(default=None, max_length=2000)
    request_id: Optional[str] = Field(default=None, max_length=255)
    cost: float = Field(default=0.0, ge=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
