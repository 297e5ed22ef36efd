"""Image upload flow.

Uploads chat and profile images to blob storage and returns the URL string the
message or profile record stores. The retry policy is owned here, not by the
storage client: bounded attempts with a fixed backoff, then a terminal
UploadFailedError.

Each attempt covers both the upload and the URL retrieval, so a failed URL
request re-uploads to the same path (uploads upsert).
"""

import time
from collections.abc import Callable
from uuid import uuid4

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from chatapp.config import get_settings
from chatapp.errors import InvalidRequestError, UploadFailedError
from chatapp.logging import get_logger
from chatapp.storage.client import BlobStorageBase, StorageError
from chatapp.store import paths
from chatapp.store.base import join_path

logger = get_logger(__name__)

# Content type validation
IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}


def _validate_image(data: bytes, content_type: str) -> str:
    """Validate an image upload and return its file extension.

    Raises:
        InvalidRequestError: If the payload is empty or not a supported image type.
    """
    if not data:
        raise InvalidRequestError("Image data must not be empty")
    extension = IMAGE_EXTENSIONS.get(content_type)
    if extension is None:
        raise InvalidRequestError(
            f"Invalid content type '{content_type}'. "
            f"Expected one of: {', '.join(sorted(IMAGE_EXTENSIONS))}"
        )
    return extension


def _log_failed_attempt(object_path: str) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            "upload_attempt_failed",
            path=object_path,
            attempt=retry_state.attempt_number,
            error_code=getattr(error, "code", None),
            error=str(error),
        )

    return log


def upload_with_retry(
    storage: BlobStorageBase,
    object_path: str,
    data: bytes,
    content_type: str,
    max_retries: int | None = None,
    backoff_s: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Upload data to object_path and return its download URL.

    Args:
        max_retries: Retries after the first attempt; UPLOAD_MAX_RETRIES if None.
        backoff_s: Fixed delay between attempts; UPLOAD_RETRY_BACKOFF_S if None.
        sleep: Injected for tests.

    Raises:
        UploadFailedError: When every attempt failed.
    """
    settings = get_settings()
    if max_retries is None:
        max_retries = settings.upload_max_retries
    if backoff_s is None:
        backoff_s = settings.upload_retry_backoff_s

    retrying = Retrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_fixed(backoff_s),
        retry=retry_if_exception_type(StorageError),
        sleep=sleep,
        before_sleep=_log_failed_attempt(object_path),
    )

    def attempt() -> str:
        storage.upload_object(object_path, data, content_type=content_type)
        return storage.get_download_url(object_path)

    try:
        url = retrying(attempt)
    except RetryError as e:
        attempts = e.last_attempt.attempt_number
        last_error = e.last_attempt.exception()
        logger.warning("upload_failed", path=object_path, attempts=attempts, error=str(last_error))
        raise UploadFailedError(
            f"Upload of {object_path} failed after {attempts} attempts: {last_error}",
            attempts=attempts,
        ) from last_error

    logger.info("upload_succeeded", path=object_path, size_bytes=len(data))
    return url


def upload_image(
    storage: BlobStorageBase,
    prefix: str,
    data: bytes,
    content_type: str = "image/jpeg",
    max_retries: int | None = None,
    backoff_s: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Upload an image under prefix with a unique file name and return its URL.

    Raises:
        InvalidRequestError: If the image is empty or of an unsupported type.
        UploadFailedError: When every attempt failed.
    """
    extension = _validate_image(data, content_type)
    object_path = join_path(prefix, f"{uuid4().hex}.{extension}")
    return upload_with_retry(
        storage, object_path, data, content_type, max_retries, backoff_s, sleep
    )


def upload_chat_image(
    storage: BlobStorageBase,
    conversation_id: str,
    data: bytes,
    content_type: str = "image/jpeg",
    **retry_kwargs,
) -> str:
    """Upload an image attached to a message in conversation_id."""
    return upload_image(
        storage, paths.chat_image_prefix(conversation_id), data, content_type, **retry_kwargs
    )


def upload_profile_image(
    storage: BlobStorageBase,
    user_id: str,
    data: bytes,
    content_type: str = "image/jpeg",
    **retry_kwargs,
) -> str:
    """Upload a user's profile image to its fixed path, replacing the previous one."""
    _validate_image(data, content_type)
    return upload_with_retry(
        storage, paths.profile_image_path(user_id), data, content_type, **retry_kwargs
    )
