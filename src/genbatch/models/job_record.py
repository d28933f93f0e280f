"""Distributed job records held in the shared key-value store."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from genbatch.models.batch import BatchStatus, ItemStatus, MediaResult
from genbatch.models.generation import GenerationConfig


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchMeta(BaseModel):
    """Batch-level metadata written once when a distributed batch starts."""

    batch_id: str
    name: str
    total: int = Field(ge=1)
    config: GenerationConfig
    prompts: list[str]
    created_at: datetime = Field(default_factory=_utcnow)


class JobRecord(BaseModel):
    """Per-item state, owned by whichever handler currently processes the item."""

    index: int = Field(ge=0)
    status: ItemStatus = ItemStatus.PENDING
    result: Optional[MediaResult] = None
    seed: Optional[int] = None
    request_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    deliveries: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (ItemStatus.COMPLETED, ItemStatus.FAILED)


class ItemJobPayload(BaseModel):
    """Body of one queued message: everything a stateless handler needs."""

    batch_id: str
    index: int = Field(ge=0)
    prompt: str
    config: GenerationConfig


class BatchProgress(BaseModel):
    """Aggregated view of all job records of a batch."""

    batch_id: str
    name: str
    total: int
    pending: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    status: BatchStatus
    items: list[JobRecord] = Field(default_factory=list)
