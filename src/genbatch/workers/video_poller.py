"""Bounded-slot poller for long-running provider tasks (video).

At most ``slots`` provider tasks are open at any time. Each cycle:

1. count active items (provider task id assigned, not finished)
2. fill free slots with the next pending items: pending -> creating -> queued
3. poll every active task id in one batch request
4. apply results: success -> completed, fail -> failed, generating -> processing,
   queuing/waiting -> queued; poll errors are logged and retried next cycle
5. finish as completed when every item is terminal, as interrupted when the
   maximum duration is exceeded, otherwise save a snapshot

The next cycle is scheduled only after the previous one has fully finished
(fixed delay, not fixed rate), so cycles never overlap on the same items.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog

from genbatch.models.batch import Batch, BatchStatus, Item, ItemStatus, MediaResult
from genbatch.models.generation import VideoConfig
from genbatch.services.exceptions import ServiceError, TransientError
from genbatch.services.providers.base import AsyncTaskProvider, TaskState, TaskStatus
from genbatch.services.storage.pinata_storage import PinataStorage

logger = structlog.get_logger(__name__)

SaveSnapshot = Callable[[Batch], Awaitable[None]]


class VideoTaskPoller:
    """Drives a video batch to completion with a bounded number of open provider tasks."""

    def __init__(
        self,
        batch: Batch,
        provider: AsyncTaskProvider,
        save_snapshot: SaveSnapshot,
        *,
        slots: int = 2,
        poll_interval: float = 5.0,
        max_duration: float = 1800.0,
        storage: Optional[PinataStorage] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.batch = batch
        self.provider = provider
        self.save_snapshot = save_snapshot
        self.slots = max(1, slots)
        self.poll_interval = poll_interval
        self.max_duration = max_duration
        self.storage = storage
        self.clock = clock

        self.max_active_observed = 0
        self._started_at: Optional[float] = None
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.log = logger.bind(batch_id=batch.id)

    @property
    def video(self) -> VideoConfig:
        return self.batch.video or VideoConfig()

    def active_items(self) -> list[Item]:
        """Items occupying a slot: task created (or being created) and not finished."""
        return [
            item
            for item in self.batch.items
            if item.has_active_task or item.status == ItemStatus.CREATING
        ]

    def _task_input(self, item: Item) -> dict:
        return {
            "prompt": item.prompt,
            "image_url": item.source_url,
            "duration": self.video.duration,
            "resolution": self.video.resolution,
        }

    async def fill_slots(self) -> None:
        free = self.slots - len(self.active_items())
        if free <= 0:
            return

        pending = [item for item in self.batch.items if item.status == ItemStatus.PENDING]
        for item in pending[:free]:
            item.mark_creating()
            try:
                task_id = await self.provider.create_task(
                    self._task_input(item), model=self.video.model
                )
            except TransientError as e:
                # Slot stays free; the item is picked up again next cycle
                item.reset_for_retry()
                self.log.warning("poller.create_task_retry", item_index=item.index, error=str(e))
                break
            except ServiceError as e:
                item.mark_failed(str(e))
                self.log.warning("poller.create_task_failed", item_index=item.index, error=str(e))
                continue

            item.mark_queued(request_id=task_id)
            self.log.info("poller.task_created", item_index=item.index, task_id=task_id)

    async def poll_active(self) -> None:
        items = [item for item in self.batch.items if item.has_active_task]
        if not items:
            return

        try:
            statuses = await self.provider.poll_tasks([item.request_id for item in items])
        except ServiceError as e:
            self.log.warning("poller.poll_failed", error=str(e), active=len(items))
            return

        for item, status in zip(items, statuses):
            await self._apply(item, status)

    async def _apply(self, item: Item, status: TaskStatus) -> None:
        if status.state == TaskState.SUCCESS and status.result_url:
            url = status.result_url
            if self.storage is not None:
                url = await self.storage.persist(url, "videos", "video/mp4") or url
            duration_ms = None
            if item.queued_at is not None:
                elapsed = datetime.now(timezone.utc) - item.queued_at
                duration_ms = int(elapsed.total_seconds() * 1000)
            item.mark_completed(
                MediaResult(url=url, content_type="video/mp4"),
                request_id=status.task_id,
                duration_ms=duration_ms,
            )
            self.log.info("poller.task_completed", item_index=item.index, task_id=status.task_id)

        elif status.state == TaskState.FAIL:
            item.mark_failed(status.error or "Video generation failed")
            self.log.warning(
                "poller.task_failed", item_index=item.index, task_id=status.task_id,
                error=status.error,
            )

        elif status.state == TaskState.GENERATING:
            if item.status != ItemStatus.PROCESSING:
                item.mark_processing()

        elif status.state in (TaskState.QUEUING, TaskState.WAITING):
            if item.status != ItemStatus.QUEUED:
                item.mark_queued()

        else:
            self.log.warning(
                "poller.task_poll_error", item_index=item.index, task_id=status.task_id,
                error=status.error,
            )

    async def run_cycle(self) -> bool:
        """Run one fill/poll/apply cycle.

        Returns:
            True when the batch reached a final state and polling should stop
        """
        await self.fill_slots()
        self.max_active_observed = max(self.max_active_observed, len(self.active_items()))
        await self.poll_active()

        if self.batch.all_terminal:
            self.batch.mark_completed()
            await self.save_snapshot(self.batch)
            self.log.info("poller.batch_completed", counts=self.batch.counts())
            return True

        if self._started_at is not None and self.clock() - self._started_at > self.max_duration:
            self.batch.mark_interrupted()
            await self.save_snapshot(self.batch)
            self.log.warning("poller.max_duration_exceeded", max_duration=self.max_duration)
            return True

        await self.save_snapshot(self.batch)
        return False

    async def run(self) -> BatchStatus:
        """Poll until the batch finishes, times out, or stop() is called."""
        # A crash between "creating" and "queued" loses the task id; create it again
        for item in self.batch.items:
            if item.status == ItemStatus.CREATING:
                item.reset_for_retry()

        if self.batch.status != BatchStatus.RUNNING:
            self.batch.start()
        self._started_at = self.clock()
        await self.save_snapshot(self.batch)
        self.log.info("poller.started", slots=self.slots, items=len(self.batch.items))

        while not self._stop_event.is_set():
            try:
                finished = await self.run_cycle()
            except Exception as e:
                await self._persist_after_crash(e)
                raise
            if finished:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        return self.batch.status

    async def _persist_after_crash(self, error: Exception) -> None:
        # Leave a resumable snapshot instead of a batch stuck in running
        self.log.error("poller.cycle_failed", error=str(error), error_type=type(error).__name__)
        if self.batch.status == BatchStatus.RUNNING:
            self.batch.settle()
            await self.save_snapshot(self.batch)

    def start(self) -> asyncio.Task:
        """Run the loop in the background."""
        self._task = asyncio.create_task(self.run())
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> BatchStatus:
        """Stop polling and persist the batch so it can be resumed later.

        Waits for the cycle in progress, then saves ``interrupted`` (or
        ``completed`` if every item already finished).
        """
        self._stop_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

        if self.batch.status == BatchStatus.RUNNING:
            self.batch.settle()
            await self.save_snapshot(self.batch)
            self.log.info("poller.stopped", status=self.batch.status.value)
        return self.batch.status
