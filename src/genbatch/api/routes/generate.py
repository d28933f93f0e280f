"""In-process generation stream and batch reconciliation endpoints.

- POST /api/generate - Run prompts through the worker pool, streaming NDJSON progress
- GET /api/batch-status - What the durable log recorded for a batch
- GET /api/logs - Raw log entries of one day with their cost

The stream is a convenience view. The durable log is the source of truth: a
client whose stream was cut asks /api/batch-status what actually finished.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from genbatch.api.dependencies import get_log_service, get_providers, get_settings, get_storage
from genbatch.core.config import Settings
from genbatch.core.timezone import date_partition
from genbatch.models.events import (
    NDJSON_MEDIA_TYPE,
    BatchErrorEvent,
    ProgressEvent,
    encode_frame,
)
from genbatch.models.generation import GenerationRequest
from genbatch.models.generation_log import GenerationLogEntry
from genbatch.models.reconciliation import BatchStatusReport
from genbatch.services.exceptions import ConfigurationError
from genbatch.services.generation_log import GenerationLogService
from genbatch.services.prompt_validator import validate_prompts
from genbatch.services.providers.base import GenerationProvider
from genbatch.services.providers.registry import get_provider
from genbatch.services.storage.pinata_storage import PinataStorage
from genbatch.workers.executor import WorkerPoolExecutor

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["generation"])


def track_background_task(request: Request, task: asyncio.Task) -> None:
    """Keep a reference to a task that must outlive the request that started it."""
    tasks: set[asyncio.Task] = request.app.state.background_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)


@router.post("/generate")
async def generate(
    body: GenerationRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    providers: dict[str, GenerationProvider] = Depends(get_providers),
    storage: PinataStorage = Depends(get_storage),
    log_service: GenerationLogService = Depends(get_log_service),
) -> StreamingResponse:
    """Generate every prompt and stream one NDJSON frame per item transition.

    The run continues in the background if the client disconnects: no new items
    are claimed, calls already in flight finish and are written to the durable log.

    Raises:
        HTTPException: 400 for invalid prompts or an unknown provider
    """
    try:
        prompts = validate_prompts(body.prompts)
        provider = get_provider(providers, body.config.provider, settings.default_provider)
    except (ValueError, ConfigurationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    executor = WorkerPoolExecutor(
        provider,
        max_concurrency=settings.max_concurrency,
        log_service=log_service,
        storage=storage,
    )
    queue: asyncio.Queue[Optional[ProgressEvent]] = asyncio.Queue()
    cancel_event = asyncio.Event()

    async def emit(event: ProgressEvent) -> None:
        await queue.put(event)

    async def run() -> None:
        try:
            await executor.run(
                body.batch_id,
                prompts,
                body.config,
                emit,
                cancel_event=cancel_event,
                item_indices=body.item_indices,
            )
        except Exception as e:
            logger.error(
                "generate.execution_failed",
                batch_id=body.batch_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=e,
            )
            await queue.put(BatchErrorEvent(error=str(e) or type(e).__name__))
        finally:
            await queue.put(None)

    task = asyncio.create_task(run())
    track_background_task(request, task)

    async def frames():
        try:
            while (event := await queue.get()) is not None:
                yield encode_frame(event)
        finally:
            if not task.done():
                # Client went away; stop claiming new items
                cancel_event.set()
                logger.info("generate.client_disconnected", batch_id=body.batch_id)

    logger.info(
        "generate.stream_started",
        batch_id=body.batch_id,
        prompts=len(prompts),
        provider=provider.name,
        resumed=body.item_indices is not None,
    )
    return StreamingResponse(frames(), media_type=NDJSON_MEDIA_TYPE)


@router.get("/batch-status", response_model=BatchStatusReport)
async def batch_status(
    batch_id: str = Query(..., min_length=1, max_length=64),
    date: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    log_service: GenerationLogService = Depends(get_log_service),
) -> BatchStatusReport:
    """Completed and failed indices recorded for a batch.

    Without ``date`` every partition is searched.
    """
    return await log_service.status_report(batch_id, date)


class GenerationLogResponse(BaseModel):
    date: str
    batch_id: Optional[str] = None
    count: int
    total_cost: float
    entries: list[GenerationLogEntry]


@router.get("/logs", response_model=GenerationLogResponse)
async def generation_logs(
    date: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    batch_id: Optional[str] = Query(default=None, min_length=1, max_length=64),
    log_service: GenerationLogService = Depends(get_log_service),
) -> GenerationLogResponse:
    """Cost and history view: every log entry of one day, optionally for one batch.

    ``date`` defaults to today (UTC).
    """
    log_date = date or date_partition()
    entries = await log_service.entries_for_date(log_date, batch_id)
    return GenerationLogResponse(
        date=log_date,
        batch_id=batch_id,
        count=len(entries),
        total_cost=round(sum(entry.cost for entry in entries), 4),
        entries=entries,
    )
