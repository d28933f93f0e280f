"""Domain entities.

Table models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genbatch.models.batch import (
    Batch,
    BatchKind,
    BatchStatus,
    InvalidStateTransition,
    Item,
    ItemStatus,
    ItemVersion,
    MediaResult,
)
from genbatch.models.batch_snapshot import BatchSnapshot
from genbatch.models.generation import GenerationConfig, VideoConfig
from genbatch.models.generation_log import GenerationLogEntry, GenerationLogStatus
from genbatch.models.job_record import BatchMeta, BatchProgress, ItemJobPayload, JobRecord

__all__ = [
    "Batch",
    "BatchKind",
    "BatchStatus",
    "InvalidStateTransition",
    "Item",
    "ItemStatus",
    "ItemVersion",
    "MediaResult",
    "BatchSnapshot",
    "GenerationConfig",
    "VideoConfig",
    "GenerationLogEntry",
    "GenerationLogStatus",
    "BatchMeta",
    "BatchProgress",
    "ItemJobPayload",
    "JobRecord",
]
