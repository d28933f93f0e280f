"""Provider construction from settings."""

from genbatch.core.config import Settings
from genbatch.services.exceptions import ConfigurationError
from genbatch.services.providers.base import GenerationProvider
from genbatch.services.providers.kie_provider import KieProvider
from genbatch.services.providers.replicate_provider import ReplicateProvider

PROVIDER_NAMES = ("replicate", "kie")


def build_kie_provider(settings: Settings) -> KieProvider:
    return KieProvider(
        api_key=settings.kie_api_key,
        base_url=settings.kie_api_base,
        image_model=settings.kie_image_model,
        edit_model=settings.kie_edit_model,
        video_model=settings.kie_video_model,
        poll_interval=settings.kie_poll_interval_seconds,
        max_poll_attempts=settings.kie_max_poll_attempts,
    )


def build_providers(settings: Settings) -> dict[str, GenerationProvider]:
    """Instantiate every known provider; credentials are checked lazily per call."""
    return {
        "replicate": ReplicateProvider(
            api_token=settings.replicate_api_token,
            model=settings.replicate_model_version,
            edit_model=settings.replicate_edit_model,
            poll_interval=settings.replicate_poll_interval_seconds,
        ),
        "kie": build_kie_provider(settings),
    }


def get_provider(
    providers: dict[str, GenerationProvider], name: str | None, default: str
) -> GenerationProvider:
    """Pick a provider by name, falling back to the configured default.

    Raises:
        ConfigurationError: If the name is unknown
    """
    key = (name or default).lower()
    try:
        return providers[key]
    except KeyError as e:
        raise ConfigurationError(
            f"Unknown provider '{key}'. Expected one of: {', '.join(sorted(providers))}"
        ) from e
