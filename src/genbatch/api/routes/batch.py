"""Distributed (queue fan-out) batch endpoints.

- POST /api/batch/start - Write batch records to the shared store, enqueue one message per item
- POST /api/batch/process-item - QStash delivery target, processes exactly one item
- GET /api/batch/progress - Aggregated item records of a distributed batch

The queue owns retries: process-item answers 200 for anything that must not be
redelivered and 503 only for transient failures within the delivery budget.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from genbatch.api.dependencies import (
    get_job_store,
    get_log_service,
    get_providers,
    get_publisher,
    get_settings,
    get_storage,
    validate_qstash_signature,
)
from genbatch.core.config import Settings
from genbatch.models.generation import GenerationConfig, generate_batch_id
from genbatch.models.job_record import BatchMeta, BatchProgress, ItemJobPayload
from genbatch.repositories.job_store import JobStore
from genbatch.services.exceptions import (
    BatchExistsError,
    ConfigurationError,
    QueuePublishError,
)
from genbatch.services.generation_log import GenerationLogService
from genbatch.services.prompt_validator import validate_prompts
from genbatch.services.providers.base import GenerationProvider
from genbatch.services.providers.registry import get_provider
from genbatch.services.qstash import QStashPublisher
from genbatch.services.storage.pinata_storage import PinataStorage
from genbatch.workers.fanout_handler import HandlerOutcome, process_item_job

logger = structlog.get_logger()
router = APIRouter(prefix="/api/batch", tags=["batch"])


# Request/Response Models


class StartBatchRequest(BaseModel):
    """Request model for starting a distributed batch."""

    batch_id: Optional[str] = Field(
        default=None,
        description="Client-chosen batch id (defaults to a time-derived one)",
        max_length=64,
    )
    name: Optional[str] = Field(default=None, description="Display name", max_length=200)
    prompts: list[str] = Field(..., description="Source prompts, in order", min_length=1)
    config: GenerationConfig = Field(default_factory=GenerationConfig)


class StartBatchResponse(BaseModel):
    batch_id: str
    total: int
    messages: int


@router.post("/start", response_model=StartBatchResponse, status_code=status.HTTP_200_OK)
async def start_batch(
    body: StartBatchRequest,
    settings: Settings = Depends(get_settings),
    store: JobStore = Depends(get_job_store),
    publisher: QStashPublisher = Depends(get_publisher),
    providers: dict[str, GenerationProvider] = Depends(get_providers),
) -> StartBatchResponse:
    """Create the batch records, then publish one queue message per item.

    Raises:
        HTTPException: 501 if the queue is not configured, 400 for invalid input
            or a misconfigured provider, 409 if the batch id is already taken,
            502 if publishing failed
    """
    if not publisher.enabled:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Queue not configured"
        )

    try:
        prompts = validate_prompts(body.prompts)
        provider = get_provider(providers, body.config.provider, settings.default_provider)
        provider.ensure_configured()
    except (ValueError, ConfigurationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    batch_id = body.batch_id or generate_batch_id()
    meta = BatchMeta(
        batch_id=batch_id,
        name=body.name or f"Batch {batch_id}",
        total=len(prompts),
        config=body.config,
        prompts=prompts,
    )
    try:
        await store.create_batch(meta)
    except BatchExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    try:
        message_ids = await publisher.publish_batch(batch_id, prompts, body.config)
    except (QueuePublishError, ConfigurationError) as e:
        logger.error("batch.publish_failed", batch_id=batch_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    logger.info("batch.started", batch_id=batch_id, total=len(prompts))
    return StartBatchResponse(batch_id=batch_id, total=len(prompts), messages=len(message_ids))


@router.post("/process-item")
async def process_item(
    raw_body: bytes = Depends(validate_qstash_signature),
    upstash_retried: int = Header(default=0),
    settings: Settings = Depends(get_settings),
    store: JobStore = Depends(get_job_store),
    providers: dict[str, GenerationProvider] = Depends(get_providers),
    storage: PinataStorage = Depends(get_storage),
    log_service: GenerationLogService = Depends(get_log_service),
) -> JSONResponse:
    """Process one queued item.

    Returns:
        200 with the outcome for completed, failed, dead-lettered, skipped or
        malformed messages,
        503 when a transient failure should be redelivered

    Raises:
        HTTPException: 500 for provider misconfiguration (redelivered until fixed)
    """
    try:
        payload = ItemJobPayload.model_validate_json(raw_body)
    except ValidationError as e:
        # A malformed message never becomes valid; acknowledge it so it is not redelivered
        logger.error("batch.process_item.invalid_payload", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_200_OK, content={"status": "rejected", "error": str(e)}
        )

    try:
        provider = get_provider(providers, payload.config.provider, settings.default_provider)
        result = await process_item_job(
            payload,
            store=store,
            provider=provider,
            log_service=log_service,
            storage=storage,
            delivery_attempt=upstash_retried + 1,
            max_deliveries=settings.max_deliveries,
        )
    except ConfigurationError as e:
        logger.error("batch.process_item.misconfigured", batch_id=payload.batch_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e

    body = {"status": result.outcome.value, "index": result.index}
    if result.error:
        body["error"] = result.error

    if result.outcome == HandlerOutcome.RETRY:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return JSONResponse(status_code=status.HTTP_200_OK, content=body)


@router.get("/progress", response_model=BatchProgress)
async def batch_progress(
    batch_id: str = Query(..., min_length=1, max_length=64),
    store: JobStore = Depends(get_job_store),
) -> BatchProgress:
    """Aggregated counts and per-item records of a distributed batch.

    Raises:
        HTTPException: 404 if the batch is unknown or expired
    """
    progress = await store.get_progress(batch_id)
    if progress is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return progress
