import os
from pathlib import Path
from typing import Optional

import httpx

from verimark import config
from verimark.exceptions import StorageError
from verimark.utils.logging_config import get_logger

logger = get_logger(__name__)


class StorageClient:
    """Blob storage for uploaded templates and generated export archives.

    Objects are written below a local directory and served from
    ``public_base_url``; anything outside that prefix is fetched over HTTP.
    """

    def __init__(
        self,
        base_dir: Optional[str] = None,
        public_base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_dir = Path(base_dir or config.STORAGE_DIR).resolve()
        self.public_base_url = (public_base_url or config.STORAGE_PUBLIC_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.STORAGE_FETCH_TIMEOUT_SECONDS

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path.lstrip("/")).resolve()
        if target != self.base_dir and self.base_dir not in target.parents:
            raise StorageError(f"Invalid storage path: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Store an object and return its public URL.

        Args:
            path: Object key, e.g. ``designs/12/download_1700000000000/designs.zip``
            data: Object content
            content_type: MIME type of the content

        Returns:
            The public retrieval URL.

        Raises:
            StorageError: If the path escapes the storage root or the write fails
        """
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.error(f"Error saving object {path}: {e}")
            raise StorageError(f"Failed to store {path}: {e}") from e
        logger.info(f"Stored {len(data)} bytes at {path} ({content_type})")
        return f"{self.public_base_url}/{path.lstrip('/')}"

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def fetch(self, url: str) -> bytes:
        """
        Retrieve an object by its public URL.

        Raises:
            StorageError: If the object is missing or the download fails
        """
        if not url:
            raise StorageError("Template URL is required")

        if url.startswith(self.public_base_url + "/"):
            target = self._resolve(url[len(self.public_base_url) + 1:])
            try:
                return target.read_bytes()
            except OSError as e:
                raise StorageError(f"Failed to read stored object: {e}") from e

        if not url.startswith(("http://", "https://")):
            raise StorageError("Invalid template URL format")

        try:
            response = httpx.get(url, timeout=self.timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch {url}: {e}")
            raise StorageError(f"Failed to fetch template file: {e}") from e
        return response.content


def get_storage_client() -> StorageClient:
    """FastAPI dependency returning a storage client built from configuration."""
    os.makedirs(config.STORAGE_DIR, exist_ok=True)
    return StorageClient()
