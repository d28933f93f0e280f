"""Client-side batch state: applies stream events, reconciles, plans resumes.

The session is the only writer of local batch state. Every change goes through
the guarded Item/Batch transitions, so a late or duplicated event can never
overwrite a terminal item.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from genbatch.models.batch import (
    Batch,
    BatchStatus,
    InvalidStateTransition,
    Item,
    ItemStatus,
    MediaResult,
)
from genbatch.models.events import (
    BatchCompleteEvent,
    BatchErrorEvent,
    ItemUpdateEvent,
    ProgressEvent,
)
from genbatch.models.generation import compose_prompt
from genbatch.models.reconciliation import BatchStatusReport

logger = structlog.get_logger(__name__)

HISTORY_LIMIT = 20


@dataclass
class ResumePlan:
    """Prompts to resubmit and where their events belong.

    ``index_map[i]`` is the batch index of ``prompts[i]``.
    """

    prompts: list[str] = field(default_factory=list)
    index_map: list[int] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.prompts)


@dataclass
class ReconcileResult:
    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    status: Optional[BatchStatus] = None


class SessionState(BaseModel):
    """Serialized form of a session (active batch plus history)."""

    batch: Optional[Batch] = None
    history: list[Batch] = Field(default_factory=list)


class BatchSession:
    """Holds the active batch and the archive of earlier ones."""

    def __init__(self, batch: Optional[Batch] = None, history: Optional[list[Batch]] = None):
        self.batch = batch
        self.history: list[Batch] = history or []

    def require_batch(self) -> Batch:
        if self.batch is None:
            raise InvalidStateTransition("No active batch")
        return self.batch

    def start_batch(self, batch: Batch) -> Batch:
        """Make ``batch`` the active batch and mark it running.

        Raises:
            InvalidStateTransition: If another batch is still running
        """
        if self.batch is not None and self.batch.id != batch.id:
            if self.batch.status == BatchStatus.RUNNING:
                raise InvalidStateTransition(
                    f"Batch {self.batch.id} is still running. Pause or cancel it first."
                )
            self.history.insert(0, self.batch)
            del self.history[HISTORY_LIMIT:]

        batch.start()
        self.batch = batch
        logger.info("session.batch_started", batch_id=batch.id, items=len(batch.items))
        return batch

    def apply_event(self, event: ProgressEvent, index_map: Optional[list[int]] = None) -> bool:
        """Apply one progress event to the active batch.

        Args:
            event: Parsed stream event
            index_map: Local position -> batch index table of a resumed run

        Returns:
            True if local state changed, False if the event was stale or unknown
        """
        batch = self.require_batch()

        if isinstance(event, ItemUpdateEvent):
            return self._apply_item_update(batch, event, index_map)

        if isinstance(event, BatchCompleteEvent):
            if batch.is_final:
                return False
            status = batch.settle()
            logger.info(
                "session.batch_settled",
                batch_id=batch.id,
                status=status.value,
                completed=event.completed,
                failed=event.failed,
            )
            return True

        if isinstance(event, BatchErrorEvent):
            if batch.is_final:
                return False
            batch.mark_error(event.error)
            logger.warning("session.batch_error", batch_id=batch.id, error=event.error)
            return True

        return False

    def _apply_item_update(
        self, batch: Batch, event: ItemUpdateEvent, index_map: Optional[list[int]]
    ) -> bool:
        index = event.index
        if index_map is not None:
            if index >= len(index_map):
                logger.warning("session.event_out_of_range", batch_id=batch.id, index=index)
                return False
            index = index_map[index]

        try:
            item = batch.item(index)
        except IndexError:
            logger.warning("session.event_unknown_item", batch_id=batch.id, index=index)
            return False

        if item.is_settled:
            logger.info(
                "session.stale_event_ignored",
                batch_id=batch.id,
                item_index=index,
                current=item.status.value,
                incoming=event.status.value,
            )
            return False

        if event.status == ItemStatus.QUEUED:
            item.mark_queued(request_id=event.request_id)
        elif event.status == ItemStatus.PROCESSING:
            item.mark_processing()
        elif event.status == ItemStatus.COMPLETED:
            item.mark_completed(
                event.result,
                request_id=event.request_id,
                seed=event.seed,
                duration_ms=event.duration_ms,
            )
        elif event.status == ItemStatus.FAILED:
            item.mark_failed(event.error, duration_ms=event.duration_ms)
        else:
            logger.warning(
                "session.event_status_ignored", batch_id=batch.id, status=event.status.value
            )
            return False
        return True

    def reconcile(self, report: BatchStatusReport) -> ReconcileResult:
        """Apply logged outcomes that local state has not seen, then settle the batch.

        A logged completion also replaces a local failure: the item was retried
        on the server and the retry succeeded.
        """
        batch = self.require_batch()
        result = ReconcileResult()

        for completed in report.completed_indices:
            try:
                item = batch.item(completed.index)
            except IndexError:
                continue
            if item.status in (ItemStatus.COMPLETED, ItemStatus.EDITING):
                continue
            if item.status == ItemStatus.FAILED:
                item.reset_for_retry()
            item.mark_completed(
                MediaResult(
                    url=completed.url,
                    content_type=completed.content_type or "image/png",
                    width=completed.width,
                    height=completed.height,
                ),
                request_id=completed.request_id,
                duration_ms=completed.duration_ms,
            )
            result.completed.append(completed.index)

        for failed in report.failed_indices:
            try:
                item = batch.item(failed.index)
            except IndexError:
                continue
            if item.is_settled:
                continue
            item.mark_failed(failed.error or "Generation failed")
            result.failed.append(failed.index)

        if not batch.is_final:
            batch.settle()
        result.status = batch.status

        logger.info(
            "session.reconciled",
            batch_id=batch.id,
            applied_completed=len(result.completed),
            applied_failed=len(result.failed),
            status=batch.status.value,
        )
        return result

    def stale_items(
        self, now: Optional[datetime] = None, window: timedelta = timedelta(minutes=5)
    ) -> list[Item]:
        """In-flight items that have produced no event within the window."""
        batch = self.require_batch()
        now = now or datetime.now(timezone.utc)
        return [item for item in batch.items if item.is_stale(now, window)]

    def plan_resume(self) -> ResumePlan:
        """Reset every unfinished or failed item to pending and list them for resubmission.

        Completed items (and items being edited) are never resubmitted.
        """
        batch = self.require_batch()
        plan = ResumePlan()

        for item in batch.items:
            if item.status in (ItemStatus.COMPLETED, ItemStatus.EDITING):
                continue
            if item.status != ItemStatus.PENDING:
                item.reset_for_retry()
            plan.prompts.append(item.raw_prompt)
            plan.index_map.append(item.index)

        logger.info("session.resume_planned", batch_id=batch.id, items=len(plan.prompts))
        return plan

    def begin_edit(self, index: int) -> Item:
        item = self.require_batch().item(index)
        item.begin_edit()
        return item

    def complete_edit(self, index: int, result: MediaResult, edit_prompt: str) -> Item:
        item = self.require_batch().item(index)
        item.finish_edit(result, edit_prompt)
        return item

    def fail_edit(self, index: int, error: str) -> Item:
        item = self.require_batch().item(index)
        item.abort_edit(error)
        return item

    def insert_placeholder(self, prompt: str) -> Item:
        """Append an optimistic pending item (e.g. an edited duplicate) to the batch.

        The placeholder receives exactly one terminal update via ``resolve_placeholder``.
        """
        batch = self.require_batch()
        item = Item(
            index=len(batch.items),
            raw_prompt=prompt,
            prompt=compose_prompt(batch.config.prompt_prefix, prompt, batch.config.prompt_suffix),
        )
        item.mark_processing()
        batch.items.append(item)
        return item

    def resolve_placeholder(
        self,
        index: int,
        result: Optional[MediaResult] = None,
        error: Optional[str] = None,
    ) -> Item:
        item = self.require_batch().item(index)
        if result is not None:
            item.mark_completed(result)
        else:
            item.mark_failed(error or "Edit failed")
        return item

    def to_state(self) -> SessionState:
        return SessionState(batch=self.batch, history=self.history)

    def save(self, path: Path) -> None:
        path.write_text(self.to_state().model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "BatchSession":
        state = SessionState.model_validate_json(path.read_text(encoding="utf-8"))
        return cls(batch=state.batch, history=state.history)
