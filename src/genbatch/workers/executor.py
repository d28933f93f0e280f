"""Worker-pool executor for in-process batch generation.

C workers share one "next index" counter. Each worker claims the next unclaimed
index, runs it against the provider, emits progress and appends the outcome to
the durable log, then claims again until the prompts run out or cancellation is
observed. Pulling from a shared counter keeps every worker busy until the last
item, because provider latency varies by several seconds per call.

Cancellation is cooperative: the flag is checked before each claim, and calls
already in flight finish and are still recorded.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import structlog

from genbatch.models.batch import ItemStatus
from genbatch.models.events import (
    BatchCompleteEvent,
    BatchErrorEvent,
    ItemUpdateEvent,
    ProgressEvent,
)
from genbatch.models.generation import GenerationConfig, compose_prompt
from genbatch.services.exceptions import ConfigurationError
from genbatch.services.generation_log import GenerationLogService
from genbatch.services.providers.base import GenerationProvider
from genbatch.services.storage.pinata_storage import PinataStorage

logger = structlog.get_logger(__name__)

Emit = Callable[[ProgressEvent], Awaitable[None]]


@dataclass
class ExecutionSummary:
    """What a run did, by local index."""

    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    not_started: list[int] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def processed(self) -> int:
        return len(self.completed) + len(self.failed)


class WorkerPoolExecutor:
    """Runs a list of prompts against a provider with bounded concurrency."""

    def __init__(
        self,
        provider: GenerationProvider,
        *,
        max_concurrency: int,
        log_service: Optional[GenerationLogService] = None,
        storage: Optional[PinataStorage] = None,
    ):
        self.provider = provider
        self.max_concurrency = max(1, max_concurrency)
        self.log_service = log_service
        self.storage = storage

    def clamp_concurrency(self, requested: int, item_count: int) -> int:
        """Caller-requested concurrency, bounded by the operator maximum and the item count."""
        return max(1, min(requested, self.max_concurrency, item_count))

    async def run(
        self,
        batch_id: str,
        prompts: list[str],
        config: GenerationConfig,
        emit: Emit,
        cancel_event: Optional[asyncio.Event] = None,
        item_indices: Optional[list[int]] = None,
    ) -> ExecutionSummary:
        """Execute every prompt and emit one event per state transition.

        Args:
            batch_id: Batch identifier used for durable log entries
            prompts: Source prompts; prefix/suffix from config are applied here
            config: Generation settings (config.concurrency is clamped)
            emit: Async callback receiving progress events
            cancel_event: Set to stop claiming new items
            item_indices: Original item index of each prompt, for resumed runs.
                Events always use the position in ``prompts``; log entries use the
                original index so reconciliation lands on the right item.

        Returns:
            ExecutionSummary with completed/failed/not-started local indices
        """
        total = len(prompts)
        summary = ExecutionSummary()
        cancel_event = cancel_event or asyncio.Event()

        if item_indices is not None and len(item_indices) != total:
            raise ValueError(f"item_indices has {len(item_indices)} entries, expected {total}")

        # Misconfiguration fails the whole batch before any item is touched
        try:
            self.provider.ensure_configured()
        except ConfigurationError as e:
            logger.error("batch.configuration_error", batch_id=batch_id, error=str(e))
            summary.error = str(e)
            summary.not_started = list(range(total))
            await emit(BatchErrorEvent(error=str(e)))
            return summary

        concurrency = self.clamp_concurrency(config.concurrency, total)
        next_index = 0

        def claim() -> Optional[int]:
            # Runs without awaiting, so claims are atomic on the event loop
            nonlocal next_index
            if cancel_event.is_set() or next_index >= total:
                return None
            index = next_index
            next_index += 1
            return index

        async def worker(worker_id: int) -> None:
            while (index := claim()) is not None:
                original_index = item_indices[index] if item_indices is not None else index
                succeeded = await self._process_item(
                    batch_id, index, original_index, prompts[index], config, emit
                )
                (summary.completed if succeeded else summary.failed).append(index)

        logger.info(
            "batch.execution.started",
            batch_id=batch_id,
            total=total,
            concurrency=concurrency,
            provider=self.provider.name,
        )

        await asyncio.gather(*(worker(worker_id) for worker_id in range(concurrency)))

        summary.not_started = list(range(next_index, total))
        summary.cancelled = cancel_event.is_set() and bool(summary.not_started)

        logger.info(
            "batch.execution.finished",
            batch_id=batch_id,
            completed=len(summary.completed),
            failed=len(summary.failed),
            not_started=len(summary.not_started),
            cancelled=summary.cancelled,
        )

        if not summary.cancelled:
            await emit(
                BatchCompleteEvent(completed=len(summary.completed), failed=len(summary.failed))
            )
        return summary

    async def _process_item(
        self,
        batch_id: str,
        index: int,
        original_index: int,
        raw_prompt: str,
        config: GenerationConfig,
        emit: Emit,
    ) -> bool:
        prompt = compose_prompt(config.prompt_prefix, raw_prompt, config.prompt_suffix)
        started = time.monotonic()

        await emit(ItemUpdateEvent(index=index, status=ItemStatus.QUEUED))

        async def on_status(status: str) -> None:
            await emit(ItemUpdateEvent(index=index, status=ItemStatus(status)))

        logger.info("item.generation.started", batch_id=batch_id, item_index=original_index)

        try:
            result = await self.provider.generate(prompt, config, on_status)
        except Exception as e:
            # Per-item failures are recorded and never abort the batch
            duration_ms = int((time.monotonic() - started) * 1000)
            error = str(e) or type(e).__name__
            logger.warning(
                "item.generation.failed",
                batch_id=batch_id,
                item_index=original_index,
                error=error,
                error_type=type(e).__name__,
                duration_ms=duration_ms,
            )
            await emit(
                ItemUpdateEvent(
                    index=index, status=ItemStatus.FAILED, error=error, duration_ms=duration_ms
                )
            )
            if self.log_service is not None:
                await self._append_log(
                    batch_id,
                    original_index,
                    self.log_service.record_failed(
                        batch_id, original_index, prompt, config, error, duration_ms=duration_ms
                    ),
                )
            return False

        media = result.primary
        if self.storage is not None:
            permanent_url = await self.storage.persist(media.url, "images", media.content_type)
            if permanent_url:
                media = media.model_copy(update={"url": permanent_url})

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "item.generation.succeeded",
            batch_id=batch_id,
            item_index=original_index,
            request_id=result.request_id,
            duration_ms=duration_ms,
        )
        await emit(
            ItemUpdateEvent(
                index=index,
                status=ItemStatus.COMPLETED,
                result=media,
                seed=result.seed,
                request_id=result.request_id,
                duration_ms=duration_ms,
            )
        )
        if self.log_service is not None:
            await self._append_log(
                batch_id,
                original_index,
                self.log_service.record_completed(
                    batch_id,
                    original_index,
                    prompt,
                    config,
                    media,
                    duration_ms=duration_ms,
                    request_id=result.request_id,
                    image_count=len(result.media),
                ),
            )
        return True

    async def _append_log(self, batch_id: str, index: int, write: Awaitable) -> None:
        try:
            await write
        except Exception as e:
            # The outcome was already emitted; a lost entry only weakens reconciliation
            logger.error(
                "generation_log.append_failed",
                batch_id=batch_id,
                item_index=index,
                error=str(e),
                error_type=type(e).__name__,
            )
