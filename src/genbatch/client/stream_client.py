"""HTTP client for the batch server and the runner that drives a local session.

The runner treats a stream that ends without ``batch_complete``/``batch_error``
as a lost connection, never as an error: it asks the server's durable log what
actually finished and settles the batch from that.
"""

import asyncio
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx
import structlog

from genbatch.client.session import BatchSession, ResumePlan
from genbatch.client.sleep_detector import SleepDetector
from genbatch.models.batch import Batch, BatchStatus, InvalidStateTransition, ItemStatus
from genbatch.models.events import (
    NDJSON_MEDIA_TYPE,
    BatchCompleteEvent,
    BatchErrorEvent,
    MalformedFrameError,
    ProgressEvent,
    parse_frame,
)
from genbatch.models.generation import GenerationConfig, GenerationRequest
from genbatch.models.reconciliation import BatchStatusReport
from genbatch.services.exceptions import BatchApiError

logger = structlog.get_logger(__name__)

OnChange = Callable[[Batch], Awaitable[None]]


class BatchApiClient:
    """Talks to the generation stream and batch-status endpoints."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        stream_idle_timeout: float = 300.0,
    ):
        """Initialize the client.

        Args:
            base_url: Server root, e.g. http://localhost:8000
            client: Optional shared HTTP client (tests inject an ASGI/mock transport)
            stream_idle_timeout: Longest gap between two frames before the stream
                is considered lost
        """
        self.base_url = base_url.rstrip("/")
        self.stream_idle_timeout = stream_idle_timeout
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def stream_generate(self, request: GenerationRequest) -> AsyncIterator[ProgressEvent]:
        """POST a generation request and yield progress events as frames arrive.

        Raises:
            BatchApiError: Server rejected the request
            MalformedFrameError: A frame could not be parsed
            httpx.HTTPError: Transport failure or idle timeout
        """
        timeout = httpx.Timeout(30.0, read=self.stream_idle_timeout)
        async with self._http().stream(
            "POST",
            f"{self.base_url}/api/generate",
            json=request.model_dump(mode="json"),
            headers={"Accept": NDJSON_MEDIA_TYPE},
            timeout=timeout,
        ) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise BatchApiError(
                    f"Generate request failed ({response.status_code}): {body}",
                    status_code=response.status_code,
                )
            async for line in response.aiter_lines():
                if line.strip():
                    yield parse_frame(line)

    async def fetch_status(
        self, batch_id: str, log_date: Optional[str] = None
    ) -> BatchStatusReport:
        """Read what the durable log recorded for a batch."""
        params = {"batch_id": batch_id}
        if log_date:
            params["date"] = log_date
        response = await self._http().get(f"{self.base_url}/api/batch-status", params=params)
        if response.status_code != 200:
            raise BatchApiError(
                f"Batch status request failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        return BatchStatusReport.model_validate(response.json())


class BatchRunner:
    """Runs, pauses, resumes and cancels the session's active batch against a server."""

    def __init__(
        self,
        api: BatchApiClient,
        session: Optional[BatchSession] = None,
        *,
        on_change: Optional[OnChange] = None,
        sleep_threshold: float = 10.0,
        stale_window: timedelta = timedelta(minutes=5),
    ):
        self.api = api
        self.session = session or BatchSession()
        self.on_change = on_change
        self.stale_window = stale_window
        self.sleep_detector = SleepDetector(threshold=sleep_threshold, on_sleep=self._on_sleep)
        self._task: Optional[asyncio.Task] = None
        self._stop_reason: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(
        self,
        prompts: list[str],
        config: Optional[GenerationConfig] = None,
        name: Optional[str] = None,
    ) -> Batch:
        """Create a batch, make it active and stream it to completion (or interruption)."""
        batch = Batch.create(prompts, config, name=name)
        self.session.start_batch(batch)
        await self._notify()

        request = GenerationRequest(
            batch_id=batch.id,
            prompts=[item.raw_prompt for item in batch.items],
            config=batch.config,
        )
        await self._run(request, index_map=None)
        return batch

    async def resume(self) -> Batch:
        """Reconcile, then resubmit every item that did not complete.

        Raises:
            InvalidStateTransition: If there is no active batch or it was cancelled
        """
        batch = self.session.require_batch()
        if self.running:
            return batch
        if batch.status == BatchStatus.CANCELLED:
            raise InvalidStateTransition(f"Batch {batch.id} was cancelled and cannot be resumed.")

        await self.reconcile()
        stale = self.session.stale_items(window=self.stale_window)
        if stale:
            logger.info("runner.stale_items", batch_id=batch.id, count=len(stale))

        if batch.status in (BatchStatus.COMPLETED, BatchStatus.ERROR):
            if batch.status == BatchStatus.COMPLETED and not any(
                item.status == ItemStatus.FAILED for item in batch.items
            ):
                logger.info("runner.nothing_to_resume", batch_id=batch.id)
                return batch
            batch.reopen()

        plan: ResumePlan = self.session.plan_resume()
        if not plan:
            batch.settle()
            await self._notify()
            return batch

        self.session.start_batch(batch)
        await self._notify()
        request = GenerationRequest(
            batch_id=batch.id,
            prompts=plan.prompts,
            config=batch.config,
            item_indices=plan.index_map,
        )
        logger.info("runner.resuming", batch_id=batch.id, items=len(plan.prompts))
        await self._run(request, index_map=plan.index_map)
        return batch

    async def pause(self) -> None:
        """Close the stream; the server stops claiming new items. Resumable."""
        await self._abort("pause")

    async def cancel(self) -> None:
        """Close the stream and mark the batch cancelled. Not resumable."""
        await self._abort("cancel")

    async def _abort(self, reason: str) -> None:
        self._stop_reason = reason
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait({self._task})
        elif reason == "cancel" and self.session.batch is not None:
            if not self.session.batch.is_final:
                self.session.batch.mark_cancelled()
                await self._notify()

    async def reconcile(self) -> Optional[BatchStatus]:
        """Settle local state from the server's durable log."""
        batch = self.session.batch
        if batch is None:
            return None
        try:
            report = await self.api.fetch_status(batch.id)
        except (BatchApiError, httpx.HTTPError) as e:
            # Without the log the best we know is that the batch is unfinished
            logger.warning("runner.reconcile_failed", batch_id=batch.id, error=str(e))
            if batch.status == BatchStatus.RUNNING:
                batch.settle()
            await self._notify()
            return batch.status

        result = self.session.reconcile(report)
        await self._notify()
        return result.status

    async def _run(self, request: GenerationRequest, index_map: Optional[list[int]]) -> None:
        self._stop_reason = None
        self._task = asyncio.create_task(self._consume(request, index_map))
        self.sleep_detector.start()
        try:
            await asyncio.wait({self._task})
        finally:
            await self.sleep_detector.stop()
            if not self._task.done():
                self._task.cancel()

        saw_terminal = False if self._task.cancelled() else self._task.result()
        self._task = None
        batch = self.session.batch

        if not saw_terminal:
            logger.info(
                "runner.stream_ended_without_terminal_frame",
                batch_id=request.batch_id,
                reason=self._stop_reason or "connection_lost",
            )
            await self.reconcile()

        if self._stop_reason == "cancel" and batch is not None and not batch.is_final:
            batch.mark_cancelled()
            await self._notify()

    async def _consume(self, request: GenerationRequest, index_map: Optional[list[int]]) -> bool:
        """Apply stream events; returns True if a terminal frame was received."""
        try:
            async for event in self.api.stream_generate(request):
                if self.session.apply_event(event, index_map):
                    await self._notify()
                if isinstance(event, (BatchCompleteEvent, BatchErrorEvent)):
                    return True
        except (BatchApiError, MalformedFrameError, httpx.HTTPError) as e:
            logger.warning(
                "runner.stream_lost",
                batch_id=request.batch_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return False

    async def _on_sleep(self, gap: float) -> None:
        # A suspended process usually means a dead connection; reconcile from the log
        if self.running:
            logger.info("runner.sleep_detected", gap_seconds=round(gap, 1))
            self._stop_reason = "sleep"
            self._task.cancel()

    async def _notify(self) -> None:
        if self.on_change is not None and self.session.batch is not None:
            await self.on_change(self.session.batch)
