"""Durable generation log writer.

Every terminal item outcome is appended once, with the cost attached, so that
clients can rebuild batch state after losing the progress stream.
"""

import re
from datetime import datetime, timezone
from typing import Optional

import structlog

from genbatch.core.timezone import date_partition
from genbatch.models.batch import MediaResult
from genbatch.models.generation import GenerationConfig
from genbatch.models.generation_log import GenerationLogEntry, GenerationLogStatus
from genbatch.models.reconciliation import BatchStatusReport

logger = structlog.get_logger(__name__)

BATCH_ID_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})-\d{6}")


def log_partition_for(batch_id: str, now: Optional[datetime] = None) -> str:
    """Date partition for a batch's entries.

    Time-derived batch ids pin all entries to the batch's start date, so a batch
    running past midnight stays in one partition. Other ids use the write date.
    """
    match = BATCH_ID_DATE.match(batch_id)
    if match:
        return "-".join(match.groups())
    return date_partition(now)


class GenerationLogService:
    """Appends and reads durable log entries through a UnitOfWork factory."""

    def __init__(self, uow_factory, usd_to_ils: float = 1.0):
        self.uow_factory = uow_factory
        self.usd_to_ils = usd_to_ils

    def cost_for(self, config: GenerationConfig, image_count: int) -> float:
        return round(config.unit_price_usd() * image_count * self.usd_to_ils, 4)

    async def append(self, entry: GenerationLogEntry) -> GenerationLogEntry:
        async with await self.uow_factory() as uow:
            await uow.generation_logs.append(entry)
        return entry

    async def record_completed(
        self,
        batch_id: str,
        index: int,
        prompt: str,
        config: GenerationConfig,
        result: MediaResult,
        *,
        duration_ms: int,
        request_id: Optional[str] = None,
        image_count: int = 1,
    ) -> GenerationLogEntry:
        entry = GenerationLogEntry(
            batch_id=batch_id,
            item_index=index,
            log_date=log_partition_for(batch_id),
            status=GenerationLogStatus.COMPLETED,
            prompt=prompt,
            parameters=config.log_parameters(),
            duration_ms=max(duration_ms, 0),
            result_url=result.url,
            content_type=result.content_type,
            width=result.width,
            height=result.height,
            request_id=request_id,
            cost=self.cost_for(config, image_count),
            created_at=datetime.now(timezone.utc),
        )
        return await self.append(entry)

    async def record_failed(
        self,
        batch_id: str,
        index: int,
        prompt: str,
        config: GenerationConfig,
        error: str,
        *,
        duration_ms: int,
        request_id: Optional[str] = None,
    ) -> GenerationLogEntry:
        entry = GenerationLogEntry(
            batch_id=batch_id,
            item_index=index,
            log_date=log_partition_for(batch_id),
            status=GenerationLogStatus.FAILED,
            prompt=prompt,
            parameters=config.log_parameters(),
            duration_ms=max(duration_ms, 0),
            error=error[:2000],
            request_id=request_id,
            cost=0.0,
            created_at=datetime.now(timezone.utc),
        )
        return await self.append(entry)

    async def status_report(
        self, batch_id: str, log_date: Optional[str] = None
    ) -> BatchStatusReport:
        """Read a batch's log entries and fold them into a status report."""
        async with await self.uow_factory() as uow:
            entries = await uow.generation_logs.read(batch_id, log_date)
        report = BatchStatusReport.from_entries(batch_id, entries)
        logger.debug(
            "generation_log.status_read",
            batch_id=batch_id,
            log_date=log_date,
            completed=len(report.completed_indices),
            failed=len(report.failed_indices),
        )
        return report

    async def entries_for_date(
        self, log_date: Optional[str] = None, batch_id: Optional[str] = None
    ) -> list[GenerationLogEntry]:
        """Raw entries of one date partition (today when omitted)."""
        log_date = log_date or date_partition()
        async with await self.uow_factory() as uow:
            return await uow.generation_logs.list_for_date(log_date, batch_id)
