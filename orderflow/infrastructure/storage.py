import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from orderflow.domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    url: str
    path: str


class StorageClient:
    """Object storage for proofs, final artwork and images."""

    def __init__(self, base_url: str, bucket: str, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.timeout = timeout
        self.transport = transport

    def object_path(self, order_number: str, file_type: str, file_name: str) -> str:
        return f"{order_number}/{file_type}/{uuid.uuid4().hex}-{file_name}"

    async def upload(self, content: bytes, order_number: str, file_type: str, file_name: str,
                     content_type: str = "application/octet-stream") -> StoredFile:
        path = self.object_path(order_number, file_type, file_name)
        url = f"{self.base_url}/object/{self.bucket}/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, content=content, headers={"Content-Type": content_type})
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"File upload failed: {e}", title="Upload Failed") from e
        logger.info(f"Stored {path} ({len(content)} bytes)")
        return StoredFile(url=f"{self.base_url}/object/public/{self.bucket}/{path}", path=path)

    async def delete(self, path: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.delete(f"{self.base_url}/object/{self.bucket}/{path}")
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"File delete failed: {e}", title="Delete Failed") from e
        logger.info(f"Deleted {path}")
