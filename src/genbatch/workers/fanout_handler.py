"""Stateless per-item handler for the distributed fan-out mode.

One invocation processes one queued message. The item's record in the shared
store is the only coordination point:

1. Already terminal -> acknowledge without calling the provider (redelivery guard)
2. Mark processing, call the provider
3. Persist completed/failed to the store and the durable log
4. Acknowledge application-level failures so the queue does not retry them

Only transient failures ask for redelivery, and only until the delivery budget
is used up; after that the item is dead-lettered as failed.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from genbatch.models.batch import ItemStatus
from genbatch.models.job_record import ItemJobPayload
from genbatch.repositories.job_store import JobStore
from genbatch.services.exceptions import ConfigurationError, TransientError
from genbatch.services.generation_log import GenerationLogService
from genbatch.services.providers.base import GenerationProvider
from genbatch.services.storage.pinata_storage import PinataStorage

logger = structlog.get_logger(__name__)


class HandlerOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRY = "retry"


@dataclass
class HandlerResult:
    outcome: HandlerOutcome
    index: int
    error: Optional[str] = None

    @property
    def acknowledge(self) -> bool:
        """True when the queue should consider the message delivered."""
        return self.outcome != HandlerOutcome.RETRY


async def process_item_job(
    payload: ItemJobPayload,
    *,
    store: JobStore,
    provider: GenerationProvider,
    log_service: Optional[GenerationLogService] = None,
    storage: Optional[PinataStorage] = None,
    delivery_attempt: int = 1,
    max_deliveries: int = 4,
) -> HandlerResult:
    """Process one item delivered by the queue.

    Args:
        payload: Verified message body
        store: Shared job store
        provider: Generation provider
        log_service: Durable log writer
        storage: Optional permanent storage for results
        delivery_attempt: 1 for the first delivery, incremented on each redelivery
        max_deliveries: Delivery budget before a transient failure is dead-lettered

    Returns:
        HandlerResult; ``acknowledge`` is False only when redelivery is wanted

    Raises:
        ConfigurationError: Provider credentials missing (the record is put back to queued)
    """
    batch_id, index = payload.batch_id, payload.index
    log = logger.bind(batch_id=batch_id, item_index=index, delivery_attempt=delivery_attempt)

    record = await store.get_item(batch_id, index)
    if record is not None and record.is_terminal:
        log.info("fanout.item.skipped", status=record.status.value)
        return HandlerResult(outcome=HandlerOutcome.SKIPPED, index=index)

    await store.update_item(
        batch_id, index, status=ItemStatus.PROCESSING, deliveries=delivery_attempt, error=None
    )
    log.info("fanout.item.started")
    started = time.monotonic()

    try:
        provider.ensure_configured()
        result = await provider.generate(payload.prompt, payload.config)

    except ConfigurationError:
        await store.update_item(batch_id, index, status=ItemStatus.QUEUED)
        raise

    except TransientError as e:
        if delivery_attempt < max_deliveries:
            await store.update_item(batch_id, index, status=ItemStatus.QUEUED, error=str(e))
            log.warning("fanout.item.retry", error=str(e), max_deliveries=max_deliveries)
            return HandlerResult(outcome=HandlerOutcome.RETRY, index=index, error=str(e))
        error = f"Dead-lettered after {delivery_attempt} deliveries: {e}"
        return await _record_failure(payload, store, log_service, error, started, log)

    except Exception as e:
        # Provider rejected the item; redelivering would not help
        error = str(e) or type(e).__name__
        return await _record_failure(payload, store, log_service, error, started, log)

    media = result.primary
    if storage is not None:
        permanent_url = await storage.persist(media.url, "images", media.content_type)
        if permanent_url:
            media = media.model_copy(update={"url": permanent_url})

    duration_ms = int((time.monotonic() - started) * 1000)
    await store.update_item(
        batch_id,
        index,
        status=ItemStatus.COMPLETED,
        result=media,
        seed=result.seed,
        request_id=result.request_id,
        duration_ms=duration_ms,
        error=None,
    )
    log.info("fanout.item.completed", duration_ms=duration_ms, request_id=result.request_id)

    if log_service is not None:
        try:
            await log_service.record_completed(
                batch_id,
                index,
                payload.prompt,
                payload.config,
                media,
                duration_ms=duration_ms,
                request_id=result.request_id,
                image_count=len(result.media),
            )
        except Exception as e:
            log.error("generation_log.append_failed", error=str(e), error_type=type(e).__name__)

    return HandlerResult(outcome=HandlerOutcome.COMPLETED, index=index)


async def _record_failure(
    payload: ItemJobPayload,
    store: JobStore,
    log_service: Optional[GenerationLogService],
    error: str,
    started: float,
    log,
) -> HandlerResult:
    duration_ms = int((time.monotonic() - started) * 1000)
    await store.update_item(
        payload.batch_id,
        payload.index,
        status=ItemStatus.FAILED,
        error=error,
        duration_ms=duration_ms,
    )
    log.warning("fanout.item.failed", error=error, duration_ms=duration_ms)

    if log_service is not None:
        try:
            await log_service.record_failed(
                payload.batch_id,
                payload.index,
                payload.prompt,
                payload.config,
                error,
                duration_ms=duration_ms,
            )
        except Exception as e:
            log.error("generation_log.append_failed", error=str(e), error_type=type(e).__name__)

    return HandlerResult(outcome=HandlerOutcome.FAILED, index=payload.index, error=error)
