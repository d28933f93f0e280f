"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Access to services created in the application lifespan
- QStash delivery signature validation
"""

from typing import Annotated, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from genbatch.core.config import Settings
from genbatch.repositories.job_store import JobStore
from genbatch.services.exceptions import SignatureVerificationError
from genbatch.services.generation_log import GenerationLogService
from genbatch.services.providers.base import GenerationProvider
from genbatch.services.providers.kie_provider import KieProvider
from genbatch.services.qstash import QStashPublisher
from genbatch.services.qstash_signature import verify_qstash_signature
from genbatch.services.storage.pinata_storage import PinataStorage
from genbatch.uow import UnitOfWork


def get_settings(request: Request) -> Settings:
    """Get the settings instance loaded during application startup.

    Returns:
        Settings instance loaded from environment variables.
    """
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.batch_snapshots.get(batch_id)
    """
    return request.app.state.uow_factory


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_providers(request: Request) -> dict[str, GenerationProvider]:
    return request.app.state.providers


def get_video_provider(request: Request) -> KieProvider:
    return request.app.state.video_provider


def get_storage(request: Request) -> PinataStorage:
    return request.app.state.storage


def get_publisher(request: Request) -> QStashPublisher:
    return request.app.state.publisher


def get_log_service(request: Request) -> GenerationLogService:
    return request.app.state.log_service


async def validate_qstash_signature(
    request: Request,
    upstash_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate the QStash delivery signature before processing a queued message.

    The signed subject is the public destination URL, so it is rebuilt from
    PUBLIC_BASE_URL rather than from the request (which may sit behind a proxy).

    Returns:
        Raw request body bytes (exactly the bytes the signature covers)

    Raises:
        HTTPException: 401 Unauthorized if the signature is missing or invalid
    """
    if not upstash_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Upstash-Signature header"
        )

    raw_body = await request.body()
    destination = f"{settings.public_base_url.rstrip('/')}{request.url.path}"

    try:
        verify_qstash_signature(
            signature=upstash_signature,
            raw_body=raw_body,
            url=destination,
            current_signing_key=settings.qstash_current_signing_key,
            next_signing_key=settings.qstash_next_signing_key,
        )
    except SignatureVerificationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e

    return raw_body
