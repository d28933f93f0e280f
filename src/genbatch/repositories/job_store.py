"""Redis-backed store for distributed job records and batch metadata.

Key layout (every key expires after the batch TTL):
    {namespace}:{batch_id}:meta        BatchMeta JSON
    {namespace}:{batch_id}:item:{n}    JobRecord JSON

Each item key is only written by the handler that currently owns the item, so
updates are a plain read-modify-write of a single key.
"""

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
import structlog

from genbatch.models.batch import BatchStatus, ItemStatus
from genbatch.models.job_record import BatchMeta, BatchProgress, JobRecord
from genbatch.services.exceptions import BatchExistsError

logger = structlog.get_logger(__name__)


class JobStore:
    """Shared key-value store used by the distributed fan-out mode."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_seconds: int = 86400,
        namespace: str = "batch",
    ) -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "JobStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _meta_key(self, batch_id: str) -> str:
        return f"{self._namespace}:{batch_id}:meta"

    def _item_key(self, batch_id: str, index: int) -> str:
        return f"{self._namespace}:{batch_id}:item:{index}"

    async def create_batch(self, meta: BatchMeta) -> None:
        """Claim the batch id, then write one pending record per item in a single pipeline.

        Raises:
            BatchExistsError: The metadata key already exists (id reused or collided)
        """
        claimed = await self._client.set(
            self._meta_key(meta.batch_id), meta.model_dump_json(), ex=self._ttl, nx=True
        )
        if not claimed:
            logger.warning("job_store.batch_exists", batch_id=meta.batch_id)
            raise BatchExistsError(meta.batch_id)

        async with self._client.pipeline(transaction=True) as pipe:
            for index in range(meta.total):
                record = JobRecord(index=index)
                pipe.set(
                    self._item_key(meta.batch_id, index), record.model_dump_json(), ex=self._ttl
                )
            await pipe.execute()

        logger.info("job_store.batch_created", batch_id=meta.batch_id, total=meta.total)

    async def get_meta(self, batch_id: str) -> BatchMeta | None:
        payload = await self._client.get(self._meta_key(batch_id))
        if payload is None:
            return None
        return BatchMeta.model_validate_json(payload)

    async def get_item(self, batch_id: str, index: int) -> JobRecord | None:
        payload = await self._client.get(self._item_key(batch_id, index))
        if payload is None:
            return None
        return JobRecord.model_validate_json(payload)

    async def update_item(self, batch_id: str, index: int, **changes: Any) -> JobRecord:
        """Read-modify-write one item record and refresh its TTL.

        A missing record (expired or never created) is recreated from the changes.
        """
        record = await self.get_item(batch_id, index) or JobRecord(index=index)
        updated = JobRecord.model_validate(
            {**record.model_dump(), **changes, "updated_at": datetime.now(timezone.utc)}
        )
        await self._client.set(
            self._item_key(batch_id, index), updated.model_dump_json(), ex=self._ttl
        )
        return updated

    async def get_progress(self, batch_id: str) -> BatchProgress | None:
        """Aggregate all item records of a batch.

        Returns:
            Progress counts, or None if the batch metadata has expired or never existed
        """
        meta = await self.get_meta(batch_id)
        if meta is None:
            return None

        async with self._client.pipeline(transaction=False) as pipe:
            for index in range(meta.total):
                pipe.get(self._item_key(batch_id, index))
            payloads = await pipe.execute()

        records = [
            JobRecord.model_validate_json(payload) if payload is not None else JobRecord(index=i)
            for i, payload in enumerate(payloads)
        ]
        counts = {status: 0 for status in ItemStatus}
        for record in records:
            counts[record.status] += 1

        finished = counts[ItemStatus.COMPLETED] + counts[ItemStatus.FAILED]
        return BatchProgress(
            batch_id=batch_id,
            name=meta.name,
            total=meta.total,
            pending=counts[ItemStatus.PENDING],
            queued=counts[ItemStatus.QUEUED] + counts[ItemStatus.CREATING],
            processing=counts[ItemStatus.PROCESSING],
            completed=counts[ItemStatus.COMPLETED],
            failed=counts[ItemStatus.FAILED],
            status=BatchStatus.COMPLETED if finished >= meta.total else BatchStatus.RUNNING,
            items=records,
        )

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()
