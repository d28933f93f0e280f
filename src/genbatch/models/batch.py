"""Batch and Item entities with lifecycle status tracking.

Items move through ``pending -> queued -> processing -> {completed | failed}``.
The bounded-slot poller additionally passes through ``creating`` between
``pending`` and ``queued``, and ``editing`` is a transient sub-state of an
already completed item.

Terminal item states are final: the first terminal write wins and every later
transition raises ``InvalidStateTransition``. The only way out of ``failed`` is
an explicit ``reset_for_retry``.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from genbatch.models.generation import (
    GenerationConfig,
    VideoConfig,
    compose_prompt,
    generate_batch_id,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemStatus(str, Enum):
    """Item lifecycle status."""

    PENDING = "pending"
    CREATING = "creating"
    QUEUED = "queued"
    PROCESSING = "processing"
    EDITING = "editing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED})


class BatchStatus(str, Enum):
    """Batch lifecycle status.

    ``interrupted`` means unfinished and not cancelled: the stream was lost or the
    process stopped. It is resumable, unlike ``error``.
    """

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"
    INTERRUPTED = "interrupted"


FINAL_BATCH_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.CANCELLED, BatchStatus.ERROR})


class BatchKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid item or batch state transition."""

    pass


class MediaResult(BaseModel):
    """Generated media descriptor."""

    url: str
    content_type: str = "image/png"
    width: Optional[int] = None
    height: Optional[int] = None


class ItemVersion(BaseModel):
    """A previous result of an item, replaced by an edit."""

    version: int
    result: MediaResult
    edit_prompt: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Item(BaseModel):
    """One prompt's unit of generation work."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    index: int = Field(ge=0)
    raw_prompt: str
    prompt: str
    status: ItemStatus = ItemStatus.PENDING
    result: Optional[MediaResult] = None
    versions: list[ItemVersion] = Field(default_factory=list)
    request_id: Optional[str] = None
    seed: Optional[int] = None
    source_url: Optional[str] = None
    error: Optional[str] = None
    queued_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES

    @property
    def is_settled(self) -> bool:
        """Terminal, or completed and currently being edited."""
        return self.is_terminal or self.status == ItemStatus.EDITING

    @property
    def has_active_task(self) -> bool:
        """Holds a provider task id and has not finished yet."""
        return self.request_id is not None and not self.is_settled

    def _guard(self, target: ItemStatus) -> None:
        if self.is_settled:
            raise InvalidStateTransition(
                f"Cannot mark {target.value} from {self.status.value}. "
                f"Item {self.index} has already finished."
            )

    def _touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or _utcnow()

    def mark_queued(self, request_id: Optional[str] = None) -> None:
        """Transition a non-terminal item to queued.

        Args:
            request_id: Provider task/request id, when the provider assigned one

        Raises:
            InvalidStateTransition: If the item is already terminal
        """
        self._guard(ItemStatus.QUEUED)
        if request_id is not None:
            self.request_id = request_id
        if self.queued_at is None:
            self.queued_at = _utcnow()
        self.status = ItemStatus.QUEUED
        self._touch()

    def mark_creating(self) -> None:
        """Transition from pending to creating (provider task being created).

        Raises:
            InvalidStateTransition: If current status is not pending
        """
        if self.status != ItemStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark creating from {self.status.value}. Item must be pending."
            )
        self.status = ItemStatus.CREATING
        self._touch()

    def mark_processing(self) -> None:
        """Transition a non-terminal item to processing.

        Raises:
            InvalidStateTransition: If the item is already terminal
        """
        self._guard(ItemStatus.PROCESSING)
        self.status = ItemStatus.PROCESSING
        self._touch()

    def mark_completed(
        self,
        result: MediaResult,
        *,
        request_id: Optional[str] = None,
        seed: Optional[int] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        """Record the item's result.

        Raises:
            InvalidStateTransition: If the item is already terminal (first write wins)
        """
        self._guard(ItemStatus.COMPLETED)
        self.result = result
        if request_id is not None:
            self.request_id = request_id
        if seed is not None:
            self.seed = seed
        self.duration_ms = duration_ms
        self.error = None
        self.status = ItemStatus.COMPLETED
        self.completed_at = _utcnow()
        self._touch(self.completed_at)

    def mark_failed(self, error: str, *, duration_ms: Optional[int] = None) -> None:
        """Record a terminal failure.

        Raises:
            InvalidStateTransition: If the item is already terminal (first write wins)
        """
        self._guard(ItemStatus.FAILED)
        self.error = error
        self.duration_ms = duration_ms
        self.status = ItemStatus.FAILED
        self.completed_at = _utcnow()
        self._touch(self.completed_at)

    def reset_for_retry(self) -> None:
        """Return a failed or unfinished item to pending so it can be resubmitted.

        Raises:
            InvalidStateTransition: If the item completed (or is being edited)
        """
        if self.status in (ItemStatus.COMPLETED, ItemStatus.EDITING):
            raise InvalidStateTransition(
                f"Cannot reset item {self.index} from {self.status.value}."
            )
        self.status = ItemStatus.PENDING
        self.error = None
        self.completed_at = None
        self.duration_ms = None
        self.request_id = None
        self._touch()

    def is_stale(self, now: datetime, window: timedelta) -> bool:
        """Processing item that has not produced an event within the window.

        A stale item is eligible for retry; it is not reported as failed.
        """
        if self.status not in (ItemStatus.QUEUED, ItemStatus.PROCESSING):
            return False
        return now - self.updated_at > window

    def begin_edit(self) -> None:
        """Transition from completed to editing.

        Raises:
            InvalidStateTransition: If current status is not completed
        """
        if self.status != ItemStatus.COMPLETED or self.result is None:
            raise InvalidStateTransition(
                f"Cannot edit item {self.index} from {self.status.value}. Item must be completed."
            )
        self.status = ItemStatus.EDITING
        self._touch()

    def finish_edit(self, result: MediaResult, edit_prompt: str) -> None:
        """Replace the result with an edited one, keeping the previous one as a version.

        Raises:
            InvalidStateTransition: If the item is not being edited
        """
        if self.status != ItemStatus.EDITING or self.result is None:
            raise InvalidStateTransition(
                f"Cannot finish edit of item {self.index} from {self.status.value}."
            )
        self.versions.append(
            ItemVersion(version=len(self.versions) + 1, result=self.result, edit_prompt=edit_prompt)
        )
        self.result = result
        self.error = None
        self.status = ItemStatus.COMPLETED
        self._touch()

    def abort_edit(self, error: str) -> None:
        """Return to completed with the previous result after a failed edit."""
        if self.status != ItemStatus.EDITING:
            raise InvalidStateTransition(
                f"Cannot abort edit of item {self.index} from {self.status.value}."
            )
        self.error = error
        self.status = ItemStatus.COMPLETED
        self._touch()


class Batch(BaseModel):
    """A named collection of items created and tracked together."""

    id: str
    name: str
    kind: BatchKind = BatchKind.IMAGE
    status: BatchStatus = BatchStatus.IDLE
    items: list[Item]
    config: GenerationConfig = Field(default_factory=GenerationConfig)
    video: Optional[VideoConfig] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    estimated_cost: float = 0.0
    error: Optional[str] = None

    @classmethod
    def create(
        cls,
        prompts: list[str],
        config: Optional[GenerationConfig] = None,
        *,
        name: Optional[str] = None,
        kind: BatchKind = BatchKind.IMAGE,
        video: Optional[VideoConfig] = None,
        source_urls: Optional[list[str]] = None,
        batch_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Batch":
        """Create a batch with one pending item per prompt.

        Args:
            prompts: Source prompts, in order
            config: Generation settings snapshot (prefix/suffix applied to every prompt)
            name: Display name (defaults to "Batch <id>")
            kind: image or video
            video: Video settings, for video batches
            source_urls: Per-item input image URLs, for video batches
            batch_id: Explicit id (defaults to a time-derived one)
            now: Creation time

        Raises:
            ValueError: If prompts is empty or source_urls does not match prompts
        """
        if not prompts:
            raise ValueError("A batch needs at least one prompt")
        if source_urls is not None and len(source_urls) != len(prompts):
            raise ValueError(
                f"Expected {len(prompts)} source URLs, got {len(source_urls)}"
            )

        config = config or GenerationConfig()
        now = now or _utcnow()
        batch_id = batch_id or generate_batch_id(now)

        items = [
            Item(
                index=index,
                raw_prompt=prompt,
                prompt=compose_prompt(config.prompt_prefix, prompt, config.prompt_suffix),
                source_url=source_urls[index] if source_urls else None,
            )
            for index, prompt in enumerate(prompts)
        ]
        estimated_cost = config.estimate_cost(len(items)) if kind == BatchKind.IMAGE else 0.0

        return cls(
            id=batch_id,
            name=name or f"Batch {batch_id}",
            kind=kind,
            items=items,
            config=config,
            video=video or (VideoConfig() if kind == BatchKind.VIDEO else None),
            created_at=now,
            estimated_cost=estimated_cost,
        )

    def item(self, index: int) -> Item:
        """Look up an item by its stable position index.

        Raises:
            IndexError: If no item has that index
        """
        if 0 <= index < len(self.items) and self.items[index].index == index:
            return self.items[index]
        for item in self.items:
            if item.index == index:
                return item
        raise IndexError(f"Batch {self.id} has no item {index}")

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_BATCH_STATUSES

    @property
    def all_terminal(self) -> bool:
        return all(item.is_settled for item in self.items)

    @property
    def date_partition(self) -> str:
        return self.created_at.astimezone(timezone.utc).strftime("%Y-%m-%d")

    def unfinished_items(self) -> list[Item]:
        return [item for item in self.items if not item.is_settled]

    def counts(self) -> dict[str, int]:
        """Number of items per status, with every status present."""
        counts = {status.value: 0 for status in ItemStatus}
        for item in self.items:
            counts[item.status.value] += 1
        return counts

    def start(self) -> None:
        """Transition from idle or interrupted to running.

        Raises:
            InvalidStateTransition: If the batch is already running or final
        """
        if self.status not in (BatchStatus.IDLE, BatchStatus.INTERRUPTED):
            raise InvalidStateTransition(
                f"Cannot start batch {self.id} from {self.status.value}."
            )
        self.status = BatchStatus.RUNNING
        self.completed_at = None
        self.error = None

    def mark_completed(self) -> None:
        """Transition to completed.

        Raises:
            InvalidStateTransition: If any item is still unfinished
        """
        if not self.all_terminal:
            raise InvalidStateTransition(
                f"Cannot complete batch {self.id}: "
                f"{len(self.unfinished_items())} item(s) are not finished."
            )
        self.status = BatchStatus.COMPLETED
        self.completed_at = _utcnow()

    def mark_interrupted(self) -> None:
        """Transition to interrupted (resumable).

        Raises:
            InvalidStateTransition: If every item is finished or the batch is final
        """
        if self.is_final:
            raise InvalidStateTransition(
                f"Cannot interrupt batch {self.id} from {self.status.value}."
            )
        if self.all_terminal:
            raise InvalidStateTransition(
                f"Cannot interrupt batch {self.id}: every item has finished."
            )
        self.status = BatchStatus.INTERRUPTED

    def settle(self) -> BatchStatus:
        """Move to completed when every item finished, otherwise to interrupted."""
        if self.all_terminal:
            self.mark_completed()
        else:
            self.mark_interrupted()
        return self.status

    def reopen(self) -> None:
        """Make a completed batch with failed items, or an errored batch, resumable again.

        Raises:
            InvalidStateTransition: If there is nothing to retry or the batch was cancelled
        """
        retryable = any(item.status == ItemStatus.FAILED for item in self.items)
        if self.status == BatchStatus.ERROR or (
            self.status == BatchStatus.COMPLETED and retryable
        ):
            self.status = BatchStatus.INTERRUPTED
            self.completed_at = None
            self.error = None
            return
        raise InvalidStateTransition(f"Cannot reopen batch {self.id} from {self.status.value}.")

    def mark_cancelled(self) -> None:
        if self.is_final:
            raise InvalidStateTransition(
                f"Cannot cancel batch {self.id} from {self.status.value}."
            )
        self.status = BatchStatus.CANCELLED
        self.completed_at = _utcnow()

    def mark_error(self, error: str) -> None:
        if self.is_final:
            raise InvalidStateTransition(
                f"Cannot mark batch {self.id} as error from {self.status.value}."
            )
        self.error = error
        self.status = BatchStatus.ERROR
        self.completed_at = _utcnow()
