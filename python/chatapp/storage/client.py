"""Blob storage client abstraction.

Chat images and profile images are uploaded as raw bytes under a path and
handed back to the core as a fetchable URL string. Retry policy lives in the
calling flow (chatapp.services.uploads), not here.

All methods receive the full object path directly - no prefix manipulation.
"""

from abc import ABC, abstractmethod

import httpx

from chatapp.config import Settings, get_settings
from chatapp.logging import get_logger

logger = get_logger(__name__)

# Download URLs are embedded in stored messages, so they must outlive the session
DOWNLOAD_URL_EXPIRES_IN = 10 * 365 * 24 * 60 * 60


class StorageError(Exception):
    """Storage operation error."""

    def __init__(self, message: str, code: str = "E_STORAGE_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class BlobStorageBase(ABC):
    """Abstract base class for blob storage implementations."""

    @abstractmethod
    def upload_object(self, path: str, data: bytes, *, content_type: str) -> None:
        """Upload an object, replacing any existing object at path.

        Raises:
            StorageError: If the upload fails.
        """
        ...

    @abstractmethod
    def get_download_url(self, path: str) -> str:
        """Return a fetchable URL for an uploaded object.

        Raises:
            StorageError: If the URL cannot be produced.
        """
        ...

    @abstractmethod
    def delete_object(self, path: str) -> None:
        """Delete an object from storage.

        Best-effort operation - logs errors but doesn't raise.
        """
        ...


class StorageClient(BlobStorageBase):
    """Supabase Storage client.

    Uses httpx for HTTP operations against the Supabase Storage API.
    """

    def __init__(
        self,
        supabase_url: str,
        service_key: str,
        bucket: str = "chat-media",
        timeout_s: float = 30.0,
    ):
        self._base_url = supabase_url.rstrip("/")
        self._bucket = bucket
        self._timeout_s = timeout_s
        self._storage_url = f"{self._base_url}/storage/v1"
        self._headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        }

    def _object_url(self, path: str) -> str:
        return f"{self._storage_url}/object/{self._bucket}/{path}"

    def upload_object(self, path: str, data: bytes, *, content_type: str) -> None:
        """Upload via POST /object/{bucket}/{path} with upsert."""
        headers = {**self._headers, "Content-Type": content_type, "x-upsert": "true"}
        try:
            with httpx.Client() as client:
                response = client.post(
                    self._object_url(path),
                    headers=headers,
                    content=data,
                    timeout=self._timeout_s,
                )
        except httpx.HTTPError as e:
            raise StorageError(f"Upload failed: {e}", code="E_UPLOAD_FAILED") from e

        if response.status_code not in (200, 201):
            raise StorageError(
                f"Upload failed: {response.status_code} {response.text}",
                code="E_UPLOAD_FAILED",
            )

    def get_download_url(self, path: str) -> str:
        """Create a long-lived signed download URL via POST /object/sign/{bucket}/{path}."""
        url = f"{self._storage_url}/object/sign/{self._bucket}/{path}"
        try:
            with httpx.Client() as client:
                response = client.post(
                    url,
                    headers=self._headers,
                    json={"expiresIn": DOWNLOAD_URL_EXPIRES_IN},
                    timeout=self._timeout_s,
                )
        except httpx.HTTPError as e:
            raise StorageError(
                f"Failed to sign download: {e}", code="E_SIGN_DOWNLOAD_FAILED"
            ) from e

        if response.status_code != 200:
            raise StorageError(
                f"Failed to sign download: {response.status_code} {response.text}",
                code="E_SIGN_DOWNLOAD_FAILED",
            )

        data = response.json()
        signed_path = data.get("signedURL") or data.get("signedUrl") or ""
        if not signed_path:
            raise StorageError(
                "Failed to sign download: missing signed URL",
                code="E_SIGN_DOWNLOAD_FAILED",
            )

        # Supabase may return relative paths (with or without /storage/v1).
        if signed_path.startswith(("http://", "https://")):
            return signed_path
        if signed_path.startswith("/storage/"):
            return f"{self._base_url}{signed_path}"
        return f"{self._storage_url}/{signed_path.lstrip('/')}"

    def delete_object(self, path: str) -> None:
        """Delete object from storage (best-effort)."""
        try:
            with httpx.Client() as client:
                response = client.delete(
                    self._object_url(path), headers=self._headers, timeout=self._timeout_s
                )
        except httpx.HTTPError as e:
            logger.warning("storage_delete_error", path=path, error=str(e))
            return

        if response.status_code not in (200, 204, 404):
            logger.warning(
                "storage_delete_failed",
                path=path,
                status_code=response.status_code,
                body=response.text,
            )


class FakeStorageClient(BlobStorageBase):
    """Fake storage client for tests and local development.

    Stores objects in memory. Failure injection lets tests exercise the
    upload retry policy deterministically.
    """

    def __init__(self):
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._upload_failures = 0
        self._url_failures = 0
        self.upload_attempts = 0

    def upload_object(self, path: str, data: bytes, *, content_type: str) -> None:
        self.upload_attempts += 1
        if self._upload_failures:
            self._upload_failures -= 1
            raise StorageError(f"Injected upload failure for {path}", code="E_UPLOAD_FAILED")
        self._objects[path] = (data, content_type)

    def get_download_url(self, path: str) -> str:
        if self._url_failures:
            self._url_failures -= 1
            raise StorageError(
                f"Injected download URL failure for {path}", code="E_SIGN_DOWNLOAD_FAILED"
            )
        if path not in self._objects:
            raise StorageError(f"Object not found: {path}", code="E_STORAGE_MISSING")
        return f"https://fake-storage.test/download/{path}"

    def delete_object(self, path: str) -> None:
        self._objects.pop(path, None)

    # Test helper methods

    def fail_next_uploads(self, count: int) -> None:
        """Make the next count uploads raise StorageError (test helper)."""
        self._upload_failures = count

    def fail_next_download_urls(self, count: int) -> None:
        """Make the next count URL requests raise StorageError (test helper)."""
        self._url_failures = count

    def put_object(self, path: str, content: bytes, content_type: str = "image/jpeg") -> None:
        """Store an object directly (test helper)."""
        self._objects[path] = (content, content_type)

    def get_object(self, path: str) -> bytes | None:
        """Get object content directly (test helper)."""
        if path not in self._objects:
            return None
        return self._objects[path][0]

    def paths(self) -> list[str]:
        """Sorted paths of stored objects (test helper)."""
        return sorted(self._objects)

    def clear(self) -> None:
        """Clear all stored objects (test helper)."""
        self._objects.clear()


def get_storage_client(settings: Settings | None = None) -> BlobStorageBase:
    """Get the configured storage client.

    Returns:
        StorageClient if SUPABASE_URL and SUPABASE_SERVICE_KEY are set,
        FakeStorageClient otherwise.
    """
    settings = settings or get_settings()

    if settings.has_remote_storage:
        return StorageClient(
            supabase_url=settings.supabase_url,
            service_key=settings.supabase_service_key,
            bucket=settings.storage_bucket,
        )

    # Fake client for local dev / tests without Supabase
    return FakeStorageClient()
