"""Replicate provider for image generation and editing with error classification."""

import asyncio
import time
from typing import Any, Optional

import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from genbatch.models.batch import MediaResult
from genbatch.models.generation import GenerationConfig
from genbatch.services.exceptions import (
    ConfigurationError,
    ContentPolicyError,
    ProviderError,
    ProviderRejectedError,
    ProviderTransientError,
    ServiceError,
)
from genbatch.services.providers.base import OnStatusUpdate, ProviderResult

logger = structlog.get_logger(__name__)

CONTENT_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "webp": "image/webp",
}

# Replicate prediction status -> item status reported through the callback
STATUS_MAP = {"starting": "queued", "processing": "processing"}


def classify_error(exception: Exception) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified ProviderError subclass instance, or ConfigurationError for
        rejected credentials

    Classification rules:
        - Timeout errors → ProviderTransientError
        - 429 (rate limit) → ProviderTransientError
        - 5xx / service unavailable → ProviderTransientError
        - 401/403 (authentication) → ConfigurationError
        - Content policy violations → ContentPolicyError
        - Connection errors → ProviderTransientError
        - Anything else → ProviderRejectedError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower or "timed out" in error_message_lower:
        return ProviderTransientError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return ProviderTransientError(f"Rate limit exceeded: {error_message}")

    if (
        "502" in error_message
        or "503" in error_message
        or "504" in error_message
        or "service unavailable" in error_message_lower
    ):
        return ProviderTransientError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        # Bad credentials fail every item alike, so they surface as misconfiguration
        return ConfigurationError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return ContentPolicyError(f"Content policy violation: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return ProviderTransientError(f"Connection error: {error_message}")

    return ProviderRejectedError(f"Generation failed: {error_message}")


def _extract_urls(output: Any) -> list[str]:
    """Output format varies by model: a URL, a list of URLs, or a dict with one."""
    if isinstance(output, str):
        return [output]
    if isinstance(output, list):
        return [str(item) for item in output if item]
    if isinstance(output, dict):
        for key in ("images", "urls", "output"):
            if isinstance(output.get(key), list):
                return [str(item) for item in output[key]]
        for key in ("image", "url"):
            if isinstance(output.get(key), str):
                return [output[key]]
    return []


class ReplicateProvider:
    """Generation provider backed by Replicate predictions.

    Predictions are created and polled through the synchronous SDK in a worker
    thread, so status changes can be reported while the call is in flight.
    """

    name = "replicate"

    def __init__(
        self,
        api_token: str,
        model: str = "black-forest-labs/flux-schnell",
        edit_model: str = "black-forest-labs/flux-kontext-pro",
        poll_interval: float = 1.0,
        timeout: float = 600.0,
        client: Optional[Any] = None,
    ):
        self.api_token = api_token
        self.model = model
        self.edit_model = edit_model
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._client = client

    def ensure_configured(self) -> None:
        if not self.api_token and self._client is None:
            raise ConfigurationError("REPLICATE_API_TOKEN not configured")

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = replicate.Client(api_token=self.api_token)
        return self._client

    async def generate(
        self,
        prompt: str,
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult:
        """Generate images for a prompt.

        Raises:
            ConfigurationError: Token missing or rejected
            ProviderTransientError: Temporary failure, may succeed on retry
            ContentPolicyError: Prompt rejected by the safety filter
            ProviderRejectedError: Permanent failure
        """
        if config.reference_image_urls:
            return await self.edit(prompt, config.reference_image_urls, config, on_status)

        model_input: dict[str, Any] = {
            "prompt": prompt,
            "aspect_ratio": config.aspect_ratio,
            "output_format": "jpg" if config.output_format == "jpeg" else config.output_format,
            "num_outputs": config.num_images,
        }
        if config.seed is not None:
            model_input["seed"] = config.seed

        return await self._predict(self.model, model_input, config, on_status)

    async def edit(
        self,
        prompt: str,
        source_urls: list[str],
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate] = None,
    ) -> ProviderResult:
        """Edit a source image according to the prompt."""
        if not source_urls:
            raise ProviderRejectedError("Edit requires at least one source image")

        model_input: dict[str, Any] = {
            "prompt": prompt,
            "input_image": source_urls[0],
            "aspect_ratio": "match_input_image",
            "output_format": "jpg" if config.output_format == "jpeg" else config.output_format,
            "safety_tolerance": min(config.safety_tolerance, 6),
        }
        if config.seed is not None:
            model_input["seed"] = config.seed

        return await self._predict(self.edit_model, model_input, config, on_status)

    async def _predict(
        self,
        model: str,
        model_input: dict[str, Any],
        config: GenerationConfig,
        on_status: Optional[OnStatusUpdate],
    ) -> ProviderResult:
        self.ensure_configured()

        try:
            prediction = await asyncio.to_thread(self._create_prediction, model, model_input)
            last_status = None
            deadline = time.monotonic() + self.timeout

            while prediction.status not in ("succeeded", "failed", "canceled"):
                mapped = STATUS_MAP.get(prediction.status)
                if on_status is not None and mapped and mapped != last_status:
                    await on_status(mapped)
                    last_status = mapped
                if time.monotonic() > deadline:
                    raise ProviderTransientError(
                        f"Prediction {prediction.id} timed out after {self.timeout:.0f}s"
                    )
                await asyncio.sleep(self.poll_interval)
                await asyncio.to_thread(prediction.reload)

        except ProviderError:
            raise

        except ReplicateAPIError as e:
            raise classify_error(e) from e

        except (ConnectionError, OSError, TimeoutError) as e:
            raise classify_error(e) from e

        if prediction.status != "succeeded":
            error = prediction.error or f"Prediction {prediction.status}"
            logger.warning(
                "replicate.prediction_failed",
                prediction_id=prediction.id,
                status=prediction.status,
                error=str(error),
            )
            raise classify_error(Exception(str(error)))

        urls = _extract_urls(prediction.output)
        if not urls:
            raise ProviderRejectedError(
                f"Unexpected output format from Replicate: {type(prediction.output).__name__}"
            )

        content_type = CONTENT_TYPES.get(config.output_format, "image/png")
        return ProviderResult(
            media=[MediaResult(url=url, content_type=content_type) for url in urls],
            seed=config.seed,
            request_id=prediction.id,
        )

    def _create_prediction(self, model: str, model_input: dict[str, Any]) -> Any:
        # "owner/name:version" pins a version, "owner/name" uses the latest one
        if ":" in model:
            _, version = model.split(":", 1)
            return self.client.predictions.create(version=version, input=model_input)
        return self.client.predictions.create(model=model, input=model_input)
