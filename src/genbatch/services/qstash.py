"""QStash publisher for the distributed fan-out mode."""

from typing import Optional

import httpx
import structlog

from genbatch.models.generation import GenerationConfig, compose_prompt
from genbatch.models.job_record import ItemJobPayload
from genbatch.services.exceptions import ConfigurationError, QueuePublishError

logger = structlog.get_logger(__name__)

PROCESS_ITEM_PATH = "/api/batch/process-item"


class QStashPublisher:
    """Publishes one message per item; QStash delivers each with at-least-once semantics."""

    def __init__(
        self,
        token: str,
        base_url: str,
        public_base_url: str,
        retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/")
        self.retries = retries
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.public_base_url)

    @property
    def destination(self) -> str:
        return f"{self.public_base_url}{PROCESS_ITEM_PATH}"

    async def publish(self, destination: str, payload: dict, retries: int | None = None) -> str:
        """Publish a JSON payload to a destination URL.

        Returns:
            QStash message id

        Raises:
            ConfigurationError: Token missing or rejected
            QueuePublishError: Network error or QStash refused the message
        """
        if not self.token:
            raise ConfigurationError("QSTASH_TOKEN not configured")

        client = self._client or httpx.AsyncClient(timeout=30.0)
        try:
            response = await client.post(
                f"{self.base_url}/v2/publish/{destination}",
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                    "Upstash-Retries": str(self.retries if retries is None else retries),
                },
                json=payload,
            )
        except httpx.HTTPError as e:
            raise QueuePublishError(f"QStash publish failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code in (401, 403):
            raise ConfigurationError(f"QStash rejected token ({response.status_code})")
        if response.status_code >= 300:
            raise QueuePublishError(
                f"QStash publish failed ({response.status_code}): {response.text}"
            )
        return response.json().get("messageId", "")

    async def publish_items(self, payloads: list[ItemJobPayload]) -> list[str]:
        """Enqueue one message per item to the process-item endpoint."""
        message_ids = []
        for payload in payloads:
            message_id = await self.publish(self.destination, payload.model_dump(mode="json"))
            message_ids.append(message_id)

        logger.info(
            "qstash.batch_published",
            batch_id=payloads[0].batch_id if payloads else None,
            messages=len(message_ids),
            destination=self.destination,
        )
        return message_ids

    async def publish_batch(
        self, batch_id: str, prompts: list[str], config: GenerationConfig
    ) -> list[str]:
        """Enqueue every prompt of a batch, with prefix/suffix already applied."""
        payloads = [
            ItemJobPayload(
                batch_id=batch_id,
                index=index,
                prompt=compose_prompt(config.prompt_prefix, prompt, config.prompt_suffix),
                config=config,
            )
            for index, prompt in enumerate(prompts)
        ]
        return await self.publish_items(payloads)
