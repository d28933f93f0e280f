"""Image edit endpoint.

- POST /api/edit - Edit one image with one prompt, or with several labelled
  variation prompts in parallel

Edits are one-off calls outside any batch run; the client records the result as
a new version of the item (or as a new placeholder item for duplicates).
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from genbatch.api.dependencies import get_providers, get_settings, get_storage
from genbatch.core.config import Settings
from genbatch.models.batch import MediaResult
from genbatch.models.generation import GenerationConfig
from genbatch.services.exceptions import ConfigurationError, ServiceError
from genbatch.services.providers.base import GenerationProvider, ProviderResult
from genbatch.services.providers.registry import get_provider
from genbatch.services.storage.pinata_storage import PinataStorage

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["edit"])

MAX_VARIATIONS = 8


# Request/Response Models


class EditVariation(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    label: str = Field(..., min_length=1, max_length=100)


class EditRequest(BaseModel):
    """Single edit (``prompt``) or parallel variations (``variations``), not both."""

    image_url: str = Field(..., min_length=1)
    prompt: Optional[str] = Field(default=None, min_length=1, max_length=4000)
    variations: Optional[list[EditVariation]] = Field(
        default=None, min_length=1, max_length=MAX_VARIATIONS
    )
    config: GenerationConfig = Field(default_factory=GenerationConfig)

    @model_validator(mode="after")
    def check_mode(self) -> "EditRequest":
        if (self.prompt is None) == (self.variations is None):
            raise ValueError("Provide either prompt or variations")
        return self


class EditResult(BaseModel):
    label: Optional[str] = None
    prompt: str
    image: MediaResult
    seed: Optional[int] = None
    request_id: Optional[str] = None


class EditError(BaseModel):
    label: str
    error: str


class EditResponse(BaseModel):
    results: list[EditResult] = Field(default_factory=list)
    errors: list[EditError] = Field(default_factory=list)


async def _run_edit(
    provider: GenerationProvider,
    storage: PinataStorage,
    image_url: str,
    prompt: str,
    config: GenerationConfig,
    label: Optional[str] = None,
) -> EditResult:
    result: ProviderResult = await provider.edit(prompt, [image_url], config)
    media = result.primary
    permanent_url = await storage.persist(media.url, "edits", media.content_type)
    if permanent_url:
        media = media.model_copy(update={"url": permanent_url})
    return EditResult(
        label=label, prompt=prompt, image=media, seed=result.seed, request_id=result.request_id
    )


@router.post("/edit", response_model=EditResponse, status_code=status.HTTP_200_OK)
async def edit_image(
    body: EditRequest,
    settings: Settings = Depends(get_settings),
    providers: dict[str, GenerationProvider] = Depends(get_providers),
    storage: PinataStorage = Depends(get_storage),
) -> EditResponse:
    """Edit an image.

    A single edit fails the request on error. Parallel variations succeed or fail
    independently and are reported in ``results`` and ``errors``.

    Raises:
        HTTPException: 400 if the provider is unknown or not configured,
            502 if a single edit failed
    """
    try:
        provider = get_provider(providers, body.config.provider, settings.default_provider)
        provider.ensure_configured()
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    if body.prompt is not None:
        try:
            result = await _run_edit(provider, storage, body.image_url, body.prompt, body.config)
        except ServiceError as e:
            logger.warning("edit.failed", error=str(e), error_type=type(e).__name__)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
        logger.info("edit.completed", request_id=result.request_id)
        return EditResponse(results=[result])

    variations = body.variations or []
    outcomes = await asyncio.gather(
        *(
            _run_edit(
                provider, storage, body.image_url, variation.prompt, body.config, variation.label
            )
            for variation in variations
        ),
        return_exceptions=True,
    )

    response = EditResponse()
    for variation, outcome in zip(variations, outcomes):
        if isinstance(outcome, EditResult):
            response.results.append(outcome)
        elif isinstance(outcome, ServiceError):
            response.errors.append(EditError(label=variation.label, error=str(outcome)))
        else:
            raise outcome

    logger.info(
        "edit.variations_completed",
        succeeded=len(response.results),
        failed=len(response.errors),
    )
    return response
