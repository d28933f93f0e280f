"""Provider contracts shared by all generation backends."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from genbatch.models.batch import MediaResult
from genbatch.models.generation import GenerationConfig

# Invoked with "queued" or "processing" when the provider reports progress
OnStatusUpdate = Callable[[str], Awaitable[None]]


@dataclass
class ProviderResult:
    """Outcome of a successful generate/edit call."""

    media: list[MediaResult]
    seed: Optional[int] = None
    request_id: Optional[str] = None

    @property
    def primary(self) -> MediaResult:
        return self.media[0]


class TaskState(str, Enum):
    """State of a long-running provider task."""

    WAITING = "waiting"
    QUEUING = "queuing"
    GENERATING = "generating"
    SUCCESS = "success"
    FAIL = "fail"
    # Poll request itself failed; the task state is unknown
    ERROR = "error"


@dataclass
class TaskStatus:
    task_id: str
    state: TaskState
    result_url: Optional[str] = None
    error: Optional[str] = None
    extra: dict = field(default_factory=dict)


class GenerationProvider(Protocol):
    """Synchronous-ish provider: one call returns the finished media."""

    name: str

    def ensure_configured(self) -> None:
        """Raise ConfigurationError if credentials are missing."""
        ...

    async def generate(
        self,
        prompt: str,
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult: ...

    async def edit(
        self,
        prompt: str,
        source_urls: list[str],
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult: ...


class AsyncTaskProvider(Protocol):
    """Provider whose jobs are long-running tasks polled by id."""

    name: str

    def ensure_configured(self) -> None: ...

    async def create_task(self, input: dict, model: Optional[str] = None) -> str: ...

    async def poll_task(self, task_id: str) -> TaskStatus: ...

    async def poll_tasks(self, task_ids: list[str]) -> list[TaskStatus]: ...
