"""Progress stream events and NDJSON framing.

Each frame is a single JSON object followed by a newline. Frames are validated
at the stream boundary against a tagged union on ``type``; anything that does
not match is rejected with ``MalformedFrameError`` instead of being coerced.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from genbatch.models.batch import ItemStatus, MediaResult

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class MalformedFrameError(ValueError):
    """A stream frame is not valid JSON or not a known event."""

    pass


class ItemUpdateEvent(BaseModel):
    """An item changed status."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["item_update"] = "item_update"
    index: int = Field(ge=0)
    status: ItemStatus
    result: Optional[MediaResult] = None
    seed: Optional[int] = None
    request_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    @model_validator(mode="after")
    def check_payload(self) -> "ItemUpdateEvent":
        if self.status == ItemStatus.COMPLETED and self.result is None:
            raise ValueError("completed item_update requires a result")
        if self.status == ItemStatus.FAILED and not self.error:
            raise ValueError("failed item_update requires an error")
        return self


class BatchCompleteEvent(BaseModel):
    """Every claimed item reached a terminal state."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["batch_complete"] = "batch_complete"
    completed: int = 0
    failed: int = 0


class BatchErrorEvent(BaseModel):
    """The batch could not run at all (e.g. provider misconfiguration)."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["batch_error"] = "batch_error"
    error: str


ProgressEvent = Annotated[
    Union[ItemUpdateEvent, BatchCompleteEvent, BatchErrorEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[ProgressEvent] = TypeAdapter(ProgressEvent)


def encode_frame(event: ItemUpdateEvent | BatchCompleteEvent | BatchErrorEvent) -> bytes:
    """Serialize an event as one NDJSON frame."""
    return event.model_dump_json(exclude_none=True).encode("utf-8") + b"\n"


def parse_frame(line: str | bytes) -> ItemUpdateEvent | BatchCompleteEvent | BatchErrorEvent:
    """Parse one NDJSON frame.

    Raises:
        MalformedFrameError: If the line is empty, not JSON, or not a known event
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        raise MalformedFrameError("Empty frame")
    try:
        return _event_adapter.validate_json(line)
    except ValidationError as e:
        raise MalformedFrameError(f"Invalid progress frame: {e.errors()[0]['msg']}") from e
