"""Kie AI provider: task-based image and video generation over REST."""

import asyncio
import json
from typing import Any, Optional

import httpx
import structlog

from genbatch.models.batch import MediaResult
from genbatch.models.generation import GenerationConfig
from genbatch.services.exceptions import (
    ConfigurationError,
    ProviderRejectedError,
    ProviderTransientError,
)
from genbatch.services.providers.base import OnStatusUpdate, ProviderResult, TaskState, TaskStatus

logger = structlog.get_logger(__name__)

MAX_CONSECUTIVE_POLL_ERRORS = 5

# Keys under which Kie reports result URLs, in lookup order
RESULT_LIST_KEYS = ("resultUrls", "result_urls", "urls", "images")
RESULT_URL_KEYS = ("video_url", "videoUrl", "url")


def map_output_format(output_format: str) -> str:
    """Kie supports png and jpg only."""
    if output_format == "webp":
        return "png"
    if output_format == "jpeg":
        return "jpg"
    return output_format


def parse_result_json(raw: Any) -> dict:
    """resultJson arrives either as a JSON string or an already parsed object."""
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProviderRejectedError(f"Kie AI returned invalid resultJson: {e}") from e
        if not isinstance(parsed, dict):
            raise ProviderRejectedError("Kie AI resultJson is not an object")
        return parsed
    if isinstance(raw, dict):
        return raw
    raise ProviderRejectedError(f"Unexpected resultJson type: {type(raw).__name__}")


def extract_result_urls(raw: Any) -> list[str]:
    """Collect result URLs from a resultJson payload.

    Raises:
        ProviderRejectedError: If the payload holds no URL
    """
    data = parse_result_json(raw)
    for key in RESULT_LIST_KEYS:
        value = data.get(key)
        if isinstance(value, list) and value:
            return [str(url) for url in value]
    for key in RESULT_URL_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return [value]
    raise ProviderRejectedError(
        f"Kie AI returned success but no result URLs. Keys: {', '.join(sorted(data))}"
    )


class KieProvider:
    """Kie AI jobs API client.

    ``generate``/``edit`` create a task and poll it to completion, which suits the
    worker-pool executor. ``create_task``/``poll_tasks`` expose the raw task API
    for the bounded-slot video poller.
    """

    name = "kie"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai/api/v1/jobs",
        image_model: str = "google/nano-banana",
        edit_model: str = "google/nano-banana-edit",
        video_model: str = "kling/v2-1-pro-image-to-video",
        poll_interval: float = 3.0,
        max_poll_attempts: int = 200,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.image_model = image_model
        self.edit_model = edit_model
        self.video_model = video_model
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._client = client

    def ensure_configured(self) -> None:
        if not self.api_key:
            raise ConfigurationError("KIE_API_KEY not configured")

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def create_task(self, input: dict, model: Optional[str] = None) -> str:
        """Create a provider task and return its id without waiting.

        Raises:
            ProviderTransientError: Network error, 429, 5xx or a non-JSON reply
            ProviderRejectedError: Any other rejection, or a reply without a task id
        """
        self.ensure_configured()
        try:
            response = await self._http().post(
                f"{self.base_url}/createTask",
                headers=self._headers,
                json={"model": model or self.video_model, "input": input},
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Kie AI createTask timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Kie AI createTask network error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"Kie AI createTask failed ({response.status_code}): {response.text}"
            )
        if response.status_code in (401, 403):
            raise ConfigurationError(f"Kie AI rejected credentials ({response.status_code})")
        if response.status_code != 200:
            raise ProviderRejectedError(
                f"Kie AI createTask failed ({response.status_code}): {response.text}"
            )

        try:
            body = response.json()
        except ValueError as e:
            # Gateways answer with HTML pages while the API is down
            raise ProviderTransientError(f"Kie AI createTask returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise ProviderRejectedError("Kie AI createTask returned an unexpected body")
        if body.get("code") != 200:
            # Kie reports throttling inside a 200 response body as well
            if body.get("code") == 429:
                raise ProviderTransientError(f"Kie AI createTask throttled: {body.get('msg')}")
            raise ProviderRejectedError(f"Kie AI createTask error: {body.get('msg')}")

        data = body.get("data")
        task_id = data.get("taskId") if isinstance(data, dict) else None
        if not task_id:
            raise ProviderRejectedError("Kie AI createTask response has no data.taskId")
        logger.info("kie.task_created", task_id=task_id, model=model or self.video_model)
        return task_id

    async def poll_task(self, task_id: str) -> TaskStatus:
        """Check a task once.

        Network, HTTP and malformed-reply problems are reported as state ``error``.
        """
        try:
            response = await self._http().get(
                f"{self.base_url}/recordInfo",
                headers=self._headers,
                params={"taskId": task_id},
            )
        except httpx.HTTPError as e:
            return TaskStatus(
                task_id=task_id, state=TaskState.ERROR, error=str(e) or "Network error"
            )

        if response.status_code != 200:
            return TaskStatus(
                task_id=task_id, state=TaskState.ERROR, error=f"HTTP {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError:
            return TaskStatus(task_id=task_id, state=TaskState.ERROR, error="Invalid JSON response")
        data = (body.get("data") if isinstance(body, dict) else None) or {}
        if not isinstance(data, dict):
            return TaskStatus(task_id=task_id, state=TaskState.ERROR, error="Unexpected response")
        state = data.get("state") or TaskState.WAITING.value

        if state == TaskState.SUCCESS.value:
            try:
                urls = extract_result_urls(data.get("resultJson"))
            except ProviderRejectedError as e:
                return TaskStatus(task_id=task_id, state=TaskState.ERROR, error=str(e))
            return TaskStatus(
                task_id=task_id, state=TaskState.SUCCESS, result_url=urls[0], extra={"urls": urls}
            )

        if state == TaskState.FAIL.value:
            return TaskStatus(
                task_id=task_id,
                state=TaskState.FAIL,
                error=f"{data.get('failMsg') or 'Unknown error'} (code: {data.get('failCode')})",
            )

        try:
            return TaskStatus(task_id=task_id, state=TaskState(state))
        except ValueError:
            return TaskStatus(task_id=task_id, state=TaskState.WAITING)

    async def poll_tasks(self, task_ids: list[str]) -> list[TaskStatus]:
        """Poll several tasks concurrently; results keep the order of task_ids."""
        if not task_ids:
            return []
        return list(await asyncio.gather(*(self.poll_task(task_id) for task_id in task_ids)))

    async def generate(
        self,
        prompt: str,
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult:
        if config.reference_image_urls:
            return await self.edit(prompt, config.reference_image_urls, config, on_status)

        kie_input = {
            "prompt": prompt,
            "resolution": config.resolution,
            "aspect_ratio": config.aspect_ratio,
            "output_format": map_output_format(config.output_format),
        }
        return await self._create_and_wait(self.image_model, kie_input, config, on_status)

    async def edit(
        self,
        prompt: str,
        source_urls: list[str],
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult:
        if not source_urls:
            raise ProviderRejectedError("Edit requires at least one source image")
        kie_input = {
            "prompt": prompt,
            "image_urls": source_urls,
            "output_format": map_output_format(config.output_format),
        }
        return await self._create_and_wait(self.edit_model, kie_input, config, on_status)

    async def _create_and_wait(
        self,
        model: str,
        kie_input: dict,
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate],
    ) -> ProviderResult:
        task_id = await self.create_task(kie_input, model=model)
        if on_status is not None:
            await on_status("queued")

        consecutive_errors = 0
        reported_processing = False
        for _ in range(self.max_poll_attempts):
            await asyncio.sleep(self.poll_interval)
            status = await self.poll_task(task_id)

            if status.state == TaskState.ERROR:
                consecutive_errors += 1
                logger.warning(
                    "kie.poll_error",
                    task_id=task_id,
                    error=status.error,
                    attempt=consecutive_errors,
                )
                if consecutive_errors >= MAX_CONSECUTIVE_POLL_ERRORS:
                    raise ProviderTransientError(
                        f"Kie AI polling failed: {MAX_CONSECUTIVE_POLL_ERRORS} consecutive "
                        f"errors for task {task_id} (last: {status.error})"
                    )
                continue

            consecutive_errors = 0
            if status.state == TaskState.GENERATING:
                if on_status is not None and not reported_processing:
                    await on_status("processing")
                    reported_processing = True
            elif status.state == TaskState.SUCCESS:
                urls = status.extra.get("urls") or [status.result_url]
                content_type = "image/jpeg" if config.output_format == "jpeg" else "image/png"
                return ProviderResult(
                    media=[MediaResult(url=url, content_type=content_type) for url in urls],
                    request_id=task_id,
                )
            elif status.state == TaskState.FAIL:
                raise ProviderRejectedError(f"Kie AI task failed: {status.error}")

        raise ProviderTransientError(
            f"Kie AI task {task_id} timed out after "
            f"{self.max_poll_attempts * self.poll_interval:.0f}s"
        )
