"""Generation configuration snapshot and prompt helpers."""

from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

# Provider list prices in USD per output image, keyed by resolution
PRICING: dict[str, float] = {
    "1K": 0.15,
    "2K": 0.15,
    "4K": 0.30,
}
DEFAULT_UNIT_PRICE = 0.15
WEB_SEARCH_ADDON_PRICE = 0.015


class GenerationConfig(BaseModel):
    """Settings shared by every item of an image batch."""

    provider: Optional[str] = None
    resolution: Literal["1K", "2K", "4K"] = "1K"
    aspect_ratio: str = "1:1"
    output_format: Literal["png", "jpeg", "webp"] = "png"
    safety_tolerance: int = Field(default=4, ge=1, le=6)
    num_images: int = Field(default=1, ge=1, le=4)
    seed: Optional[int] = None
    enable_web_search: bool = False
    prompt_prefix: str = ""
    prompt_suffix: str = ""
    reference_image_urls: list[str] = Field(default_factory=list)
    concurrency: int = Field(default=3, ge=1)

    def unit_price_usd(self) -> float:
        """List price of a single output image."""
        price = PRICING.get(self.resolution, DEFAULT_UNIT_PRICE)
        if self.enable_web_search:
            price += WEB_SEARCH_ADDON_PRICE
        return price

    def estimate_cost(self, prompt_count: int) -> float:
        """Estimated USD cost of running prompt_count prompts."""
        return round(prompt_count * self.num_images * self.unit_price_usd(), 4)

    def log_parameters(self) -> dict:
        """Parameters recorded alongside each durable log entry."""
        return {
            "resolution": self.resolution,
            "aspect_ratio": self.aspect_ratio,
            "output_format": self.output_format,
            "safety_tolerance": self.safety_tolerance,
            "num_images": self.num_images,
            "seed": self.seed,
            "enable_web_search": self.enable_web_search,
            "has_reference_images": bool(self.reference_image_urls),
        }


class VideoConfig(BaseModel):
    """Settings for an image-to-video batch."""

    duration: Literal["6", "10"] = "6"
    resolution: Literal["768P", "1080P"] = "768P"
    model: Optional[str] = None


def compose_prompt(prefix: str, prompt: str, suffix: str) -> str:
    """Join prefix, prompt and suffix with single spaces, skipping empty parts."""
    parts = [part.strip() for part in (prefix, prompt, suffix) if part and part.strip()]
    return " ".join(parts).strip()


def parse_prompts(text: str) -> list[str]:
    """Split a prompt file into prompts.

    One prompt per line; blank lines and lines starting with '#' are skipped.
    """
    prompts = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            prompts.append(line)
    return prompts


def generate_batch_id(now: Optional[datetime] = None) -> str:
    """Batch identifier sortable by creation time (YYYYMMDD-HHMMSS-xxxxxx, UTC).

    The random suffix keeps ids of batches created in the same second apart.
    """
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y%m%d-%H%M%S}-{uuid4().hex[:6]}"


class GenerationRequest(BaseModel):
    """Body of POST /api/generate.

    ``item_indices`` is set on resumed runs: entry i is the batch index of
    ``prompts[i]``. Progress events still use positions in ``prompts``.
    """

    batch_id: str = Field(min_length=1, max_length=64)
    prompts: list[str] = Field(min_length=1)
    config: GenerationConfig = Field(default_factory=GenerationConfig)
    item_indices: Optional[list[int]] = None

    @model_validator(mode="after")
    def check_indices(self) -> "GenerationRequest":
        if self.item_indices is None:
            return self
        if len(self.item_indices) != len(self.prompts):
            raise ValueError("item_indices must have one entry per prompt")
        if any(index < 0 for index in self.item_indices):
            raise ValueError("item_indices must be non-negative")
        if len(set(self.item_indices)) != len(self.item_indices):
            raise ValueError("item_indices must not repeat an index")
        return self
