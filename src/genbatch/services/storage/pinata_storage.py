"""Pinata-backed durable storage for generated media."""

import json
import mimetypes
from typing import Optional
from uuid import uuid4

import httpx
import structlog

from genbatch.services.exceptions import (
    ServiceError,
    StorageAuthError,
    StorageNetworkError,
    StorageRateLimitError,
    StorageValidationError,
)

logger = structlog.get_logger(__name__)

CATEGORIES = ("images", "videos", "edits", "uploads")


def _extension_for(content_type: str) -> str:
    if content_type == "image/jpeg":
        return ".jpg"
    return mimetypes.guess_extension(content_type) or ".bin"


class PinataStorage:
    """Copies temporary provider URLs to permanent IPFS storage via Pinata."""

    def __init__(
        self,
        jwt_token: str,
        gateway_domain: str = "gateway.pinata.cloud",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        """Initialize Pinata storage.

        Args:
            jwt_token: Pinata API JWT token (from PINATA_JWT env var)
            gateway_domain: Gateway domain for URL generation (default: public gateway)
            client: Optional shared HTTP client (tests inject a mock transport)
            timeout: Per-request timeout in seconds
        """
        self.jwt_token = jwt_token
        self.gateway_domain = gateway_domain
        self.base_url = "https://api.pinata.cloud"
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.jwt_token)

    async def persist(self, temporary_url: str, category: str, content_type: str) -> str | None:
        """Persist media permanently.

        Failure never propagates: the caller keeps using the temporary URL.

        Args:
            temporary_url: Provider URL that will expire
            category: One of images, videos, edits, uploads
            content_type: MIME type of the media

        Returns:
            Gateway URL of the stored file, or None if storage is disabled or failed
        """
        if not self.enabled:
            return None

        try:
            cid = await self.upload(temporary_url, category, content_type)
        except (ServiceError, httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(
                "storage.persist_failed",
                category=category,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        url = self.get_gateway_url(cid)
        logger.info("storage.persisted", category=category, url=url)
        return url

    async def upload(self, source_url: str, category: str, content_type: str) -> str:
        """Download media from a URL and pin it to IPFS.

        Returns:
            IPFS CID of the pinned file

        Raises:
            StorageRateLimitError: Rate limit exceeded (429)
            StorageNetworkError: Network timeout, 5xx
            StorageAuthError: Invalid API key (401), forbidden (403)
            StorageValidationError: Bad request (400) or unknown category
        """
        if category not in CATEGORIES:
            raise StorageValidationError(f"Unknown storage category: {category}")

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            source = await client.get(source_url, follow_redirects=True)
            if source.status_code >= 400:
                raise StorageNetworkError(
                    f"Could not download source media ({source.status_code})"
                )

            filename = f"{category}/{uuid4().hex}{_extension_for(content_type)}"
            response = await client.post(
                f"{self.base_url}/pinning/pinFileToIPFS",
                headers={"Authorization": f"Bearer {self.jwt_token}"},
                files={"file": (filename, source.content, content_type)},
                data={
                    "pinataOptions": '{"cidVersion": 1}',
                    "pinataMetadata": json.dumps(
                        {"name": filename, "keyvalues": {"category": category}}
                    ),
                },
            )

            if response.status_code == 429:
                raise StorageRateLimitError(f"Rate limit exceeded: {response.text}")
            elif response.status_code >= 500:
                raise StorageNetworkError(
                    f"Service unavailable ({response.status_code}): {response.text}"
                )
            elif response.status_code in (401, 403):
                raise StorageAuthError(
                    f"Pinata rejected credentials ({response.status_code}). "
                    "Check PINATA_JWT configuration."
                )
            elif response.status_code == 400:
                raise StorageValidationError(f"Bad request: {response.text}")

            response.raise_for_status()
            return response.json()["IpfsHash"]

        except httpx.TimeoutException as e:
            raise StorageNetworkError(f"Request timeout after {self.timeout:.0f}s: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

    def get_gateway_url(self, cid: str) -> str:
        """Convert CID to gateway URL for browser access."""
        return f"https://{self.gateway_domain}/ipfs/{cid}"
