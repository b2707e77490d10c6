"""Blob store HTTP client for checking proof-of-payment references"""

import httpx
from settlement_gateway.domain.exceptions import BlobStoreError
from settlement_gateway.config import settings


class BlobStoreClient:
    """Client for the external store holding proof-of-payment images"""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.blob_store_base).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds

    async def exists(self, ref: str) -> bool:
        """
        Check that an uploaded blob exists.

        Raises:
            BlobStoreError: On timeout or any non-404 HTTP error
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.head(f"{self.base_url}/blobs/{ref}")
                if response.status_code == 404:
                    return False
                response.raise_for_status()
                return True

            except httpx.TimeoutException as e:
                raise BlobStoreError(f"Blob store timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise BlobStoreError(f"Blob store error: {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise BlobStoreError(f"Blob store unreachable: {e}") from e
