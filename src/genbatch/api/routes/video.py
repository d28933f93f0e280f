"""Image-to-video endpoints.

- POST /api/generate-video/start - Create one provider task, return its id immediately
- GET /api/generate-video/poll - Poll many task ids in one request
- POST /api/video-batches - Create a video batch driven by a server-side bounded-slot poller
- GET /api/video-batches/{batch_id} - Current batch state (live poller or last snapshot)
- POST /api/video-batches/{batch_id}/stop - Stop polling, persist as interrupted
- POST /api/video-batches/{batch_id}/resume - Continue an interrupted batch

Video tasks run for minutes, so nothing here holds a request open while a
task runs. Stopped batches keep their provider task ids and resume polling
them instead of creating new tasks.
"""

import asyncio
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from genbatch.api.dependencies import (
    get_settings,
    get_storage,
    get_uow_factory,
    get_video_provider,
)
from genbatch.core.config import Settings
from genbatch.models.batch import Batch, BatchKind, BatchStatus, InvalidStateTransition, ItemStatus
from genbatch.models.generation import VideoConfig
from genbatch.services.exceptions import ConfigurationError, ServiceError
from genbatch.services.providers.base import TaskState
from genbatch.services.providers.kie_provider import KieProvider
from genbatch.services.storage.pinata_storage import PinataStorage
from genbatch.workers.video_poller import VideoTaskPoller

logger = structlog.get_logger()
router = APIRouter(tags=["video"])

MAX_POLL_TASK_IDS = 50


# Request/Response Models


class VideoTaskRequest(BaseModel):
    """Request model for creating a single video task."""

    index: int = Field(..., ge=0, description="Caller's item index, echoed back")
    image_url: str = Field(..., description="Source image URL", min_length=1)
    prompt: str = Field(..., description="Motion prompt", min_length=1, max_length=4000)
    duration: Literal["6", "10"] = "6"
    resolution: Literal["768P", "1080P"] = "768P"
    model: Optional[str] = None


class VideoTaskResponse(BaseModel):
    index: int
    task_id: str


class VideoTaskResult(BaseModel):
    task_id: str
    state: TaskState
    video_url: Optional[str] = None
    error: Optional[str] = None


class VideoPollResponse(BaseModel):
    results: list[VideoTaskResult]


class VideoBatchItemRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    image_url: str = Field(..., min_length=1)


class CreateVideoBatchRequest(BaseModel):
    """Request model for creating a server-driven video batch."""

    name: Optional[str] = Field(default=None, max_length=200)
    items: list[VideoBatchItemRequest] = Field(..., min_length=1, max_length=200)
    video: VideoConfig = Field(default_factory=VideoConfig)


class VideoBatchResponse(BaseModel):
    batch: Batch
    polling: bool = Field(..., description="True while a server-side poller drives the batch")


def _pollers(request: Request) -> dict[str, VideoTaskPoller]:
    return request.app.state.video_pollers


def make_snapshot_saver(uow_factory):
    async def save_snapshot(batch: Batch) -> None:
        async with await uow_factory() as uow:
            await uow.batch_snapshots.save(batch)

    return save_snapshot


def launch_poller(request: Request, poller: VideoTaskPoller) -> None:
    """Start a poller in the background and drop it from the registry when it ends."""
    pollers = _pollers(request)
    batch_id = poller.batch.id
    pollers[batch_id] = poller
    task = poller.start()

    def on_done(done: asyncio.Task) -> None:
        if pollers.get(batch_id) is poller:
            del pollers[batch_id]
        if not done.cancelled() and done.exception() is not None:
            exc = done.exception()
            logger.error(
                "video_batch.poller_crashed",
                batch_id=batch_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    task.add_done_callback(on_done)


def build_poller(
    batch: Batch,
    provider: KieProvider,
    storage: PinataStorage,
    settings: Settings,
    uow_factory,
) -> VideoTaskPoller:
    return VideoTaskPoller(
        batch,
        provider,
        make_snapshot_saver(uow_factory),
        slots=settings.video_slots,
        poll_interval=settings.video_poll_interval_seconds,
        max_duration=settings.video_poll_max_duration_seconds,
        storage=storage,
    )


@router.post(
    "/api/generate-video/start",
    response_model=VideoTaskResponse,
    status_code=status.HTTP_200_OK,
)
async def start_video_task(
    body: VideoTaskRequest,
    provider: KieProvider = Depends(get_video_provider),
) -> VideoTaskResponse:
    """Create one image-to-video task without waiting for it.

    Raises:
        HTTPException: 500 if the provider is not configured, 502 if it refused the task
    """
    try:
        task_id = await provider.create_task(
            {
                "prompt": body.prompt,
                "image_url": body.image_url,
                "duration": body.duration,
                "resolution": body.resolution,
            },
            model=body.model,
        )
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    except ServiceError as e:
        logger.warning("video.task_create_failed", index=body.index, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    return VideoTaskResponse(index=body.index, task_id=task_id)


@router.get("/api/generate-video/poll", response_model=VideoPollResponse)
async def poll_video_tasks(
    task_ids: str = Query(..., description="Comma-separated provider task ids"),
    provider: KieProvider = Depends(get_video_provider),
    storage: PinataStorage = Depends(get_storage),
) -> VideoPollResponse:
    """Poll several tasks in one request; finished videos are copied to permanent storage.

    Raises:
        HTTPException: 400 if no task id (or too many) is given
    """
    ids = [task_id.strip() for task_id in task_ids.split(",") if task_id.strip()]
    if not ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="task_ids required")
    if len(ids) > MAX_POLL_TASK_IDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {MAX_POLL_TASK_IDS} task ids per request",
        )

    statuses = await provider.poll_tasks(ids)

    async def to_result(task_status) -> VideoTaskResult:
        video_url = task_status.result_url
        if task_status.state == TaskState.SUCCESS and video_url:
            video_url = await storage.persist(video_url, "videos", "video/mp4") or video_url
        return VideoTaskResult(
            task_id=task_status.task_id,
            state=task_status.state,
            video_url=video_url,
            error=task_status.error,
        )

    results = await asyncio.gather(*(to_result(task_status) for task_status in statuses))
    return VideoPollResponse(results=list(results))


@router.post(
    "/api/video-batches",
    response_model=VideoBatchResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_video_batch(
    body: CreateVideoBatchRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    provider: KieProvider = Depends(get_video_provider),
    storage: PinataStorage = Depends(get_storage),
    uow_factory=Depends(get_uow_factory),
) -> VideoBatchResponse:
    """Create a video batch and start polling it on the server.

    Raises:
        HTTPException: 400 if the video provider is not configured, 409 if the
            generated batch id is already in use
    """
    try:
        provider.ensure_configured()
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    batch = Batch.create(
        [item.prompt for item in body.items],
        name=body.name,
        kind=BatchKind.VIDEO,
        video=body.video,
        source_urls=[item.image_url for item in body.items],
    )
    async with await uow_factory() as uow:
        existing = await uow.batch_snapshots.get(batch.id)
    if existing is not None or batch.id in _pollers(request):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=f"Batch {batch.id} already exists"
        )
    await make_snapshot_saver(uow_factory)(batch)

    launch_poller(request, build_poller(batch, provider, storage, settings, uow_factory))
    logger.info("video_batch.created", batch_id=batch.id, items=len(batch.items))
    return VideoBatchResponse(batch=batch, polling=True)


@router.get("/api/video-batches/{batch_id}", response_model=VideoBatchResponse)
async def get_video_batch(
    batch_id: str,
    request: Request,
    uow_factory=Depends(get_uow_factory),
) -> VideoBatchResponse:
    """Current state of a video batch.

    Raises:
        HTTPException: 404 if the batch is unknown
    """
    poller = _pollers(request).get(batch_id)
    if poller is not None:
        return VideoBatchResponse(batch=poller.batch, polling=poller.running)

    async with await uow_factory() as uow:
        batch = await uow.batch_snapshots.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return VideoBatchResponse(batch=batch, polling=False)


@router.post("/api/video-batches/{batch_id}/stop", response_model=VideoBatchResponse)
async def stop_video_batch(
    batch_id: str,
    request: Request,
    uow_factory=Depends(get_uow_factory),
) -> VideoBatchResponse:
    """Stop polling; the batch is persisted as interrupted (or completed).

    Raises:
        HTTPException: 404 if the batch is unknown
    """
    poller = _pollers(request).pop(batch_id, None)
    if poller is not None:
        await poller.stop()
        logger.info("video_batch.stopped", batch_id=batch_id, status=poller.batch.status.value)
        return VideoBatchResponse(batch=poller.batch, polling=False)

    async with await uow_factory() as uow:
        batch = await uow.batch_snapshots.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return VideoBatchResponse(batch=batch, polling=False)


@router.post("/api/video-batches/{batch_id}/resume", response_model=VideoBatchResponse)
async def resume_video_batch(
    batch_id: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    provider: KieProvider = Depends(get_video_provider),
    storage: PinataStorage = Depends(get_storage),
    uow_factory=Depends(get_uow_factory),
) -> VideoBatchResponse:
    """Resume polling a stopped batch; failed items are retried.

    Items that already hold a provider task id keep it and are polled again.

    Raises:
        HTTPException: 404 if unknown, 409 if already polling or nothing to resume
    """
    if batch_id in _pollers(request):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Batch is already polling")

    async with await uow_factory() as uow:
        batch = await uow.batch_snapshots.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")

    try:
        provider.ensure_configured()
        if batch.status in (BatchStatus.COMPLETED, BatchStatus.ERROR):
            batch.reopen()
        elif batch.status == BatchStatus.RUNNING:
            # Process stopped without persisting interrupted (e.g. crash)
            batch.mark_interrupted()
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    if batch.status != BatchStatus.INTERRUPTED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot resume batch from {batch.status.value}",
        )

    for item in batch.items:
        if item.status == ItemStatus.FAILED:
            item.reset_for_retry()

    launch_poller(request, build_poller(batch, provider, storage, settings, uow_factory))
    logger.info("video_batch.resumed", batch_id=batch_id, unfinished=len(batch.unfinished_items()))
    return VideoBatchResponse(batch=batch, polling=True)
