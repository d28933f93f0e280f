"""Repository layer.

Provides data access abstractions for the durable log, batch snapshots and the
shared job store. No base classes - each repository is self-contained.
"""

from genbatch.repositories.batch_snapshot import BatchSnapshotRepository
from genbatch.repositories.generation_log import GenerationLogRepository
from genbatch.repositories.job_store import JobStore

__all__ = [
    "BatchSnapshotRepository",
    "GenerationLogRepository",
    "JobStore",
]
