"""
Irys/Arweave gateway client for market metadata and images
"""
from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from config import Config
from models.sync import MarketMetadata
from utils.logger import get_logger

logger = get_logger(__name__)


class MetadataError(Exception):
    """Metadata could not be fetched or is missing required fields"""


class MetadataClient:
    """Reads content-addressed documents from the gateway"""

    def __init__(
        self,
        gateway: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        self.gateway = (gateway or Config.IRYS_GATEWAY).rstrip("/")
        self._client = http_client
        self._timeout = timeout or Config.HTTP_TIMEOUT_SECONDS

    def url_for(self, content_hash: str) -> str:
        return f"{self.gateway}/{content_hash}"

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url)
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            return await client.get(url)

    async def fetch_metadata(self, arweave_hash: str) -> Tuple[MarketMetadata, Dict[str, Any]]:
        """
        Fetch and validate a market metadata document

        Returns:
            (validated model, raw document) - the raw document is what gets stored

        Raises:
            MetadataError: on HTTP failure or missing name/slug/event
        """
        url = self.url_for(arweave_hash)
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            raise MetadataError(f"Failed to fetch metadata from {url}: {e}") from e

        if response.status_code >= 400:
            raise MetadataError(f"Failed to fetch metadata from {url}: {response.reason_phrase}")

        try:
            raw = response.json()
        except ValueError as e:
            raise MetadataError(f"Metadata at {url} is not valid JSON") from e

        if not isinstance(raw, dict) or not raw.get("name") or not raw.get("slug") or not raw.get("event"):
            keys = list(raw.keys()) if isinstance(raw, dict) else []
            raise MetadataError(f"Invalid metadata: missing required fields. Got: {keys}")

        try:
            return MarketMetadata.model_validate(raw), raw
        except ValidationError as e:
            raise MetadataError(f"Invalid metadata for {arweave_hash}: {e}") from e

    async def download(self, content_hash: str) -> Optional[bytes]:
        """Download raw bytes (e.g. an icon). Returns None on any failure."""
        url = self.url_for(content_hash)
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            logger.error(f"Failed to download {url}: {e}")
            return None

        if response.status_code >= 400:
            logger.error(f"Failed to download image: {response.reason_phrase}")
            return None
        return response.content
