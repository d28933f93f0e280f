"""Batch status report returned by the reconciliation endpoint."""

from typing import Iterable, Optional

from pydantic import BaseModel, Field

from genbatch.models.generation_log import GenerationLogEntry, GenerationLogStatus


class CompletedIndex(BaseModel):
    index: int
    url: str
    content_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    request_id: Optional[str] = None
    duration_ms: Optional[int] = None


class FailedIndex(BaseModel):
    index: int
    error: Optional[str] = None


class BatchStatusReport(BaseModel):
    """What the durable log says finished, independent of what a client observed."""

    batch_id: str
    completed_indices: list[CompletedIndex] = Field(default_factory=list)
    failed_indices: list[FailedIndex] = Field(default_factory=list)
    total_logged: int = 0

    @classmethod
    def from_entries(
        cls, batch_id: str, entries: Iterable[GenerationLogEntry]
    ) -> "BatchStatusReport":
        """Fold log entries into one outcome per index.

        An index can be logged more than once when a failed item is resumed. A
        completion always wins over a failure; among completions the first one wins.
        """
        completed: dict[int, CompletedIndex] = {}
        failed: dict[int, FailedIndex] = {}
        total = 0

        for entry in entries:
            total += 1
            if entry.status == GenerationLogStatus.COMPLETED and entry.result_url:
                if entry.item_index not in completed:
                    completed[entry.item_index] = CompletedIndex(
                        index=entry.item_index,
                        url=entry.result_url,
                        content_type=entry.content_type,
                        width=entry.width,
                        height=entry.height,
                        request_id=entry.request_id,
                        duration_ms=entry.duration_ms,
                    )
            elif entry.status == GenerationLogStatus.FAILED:
                # Latest failure text is the most useful one to show
                failed[entry.item_index] = FailedIndex(index=entry.item_index, error=entry.error)

        return cls(
            batch_id=batch_id,
            completed_indices=sorted(completed.values(), key=lambda c: c.index),
            failed_indices=sorted(
                (f for index, f in failed.items() if index not in completed),
                key=lambda f: f.index,
            ),
            total_logged=total,
        )
