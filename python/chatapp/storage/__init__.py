"""Blob storage for chat and profile images.

Provides:
- StorageClient for Supabase Storage
- FakeStorageClient for local development and tests
"""

from chatapp.storage.client import (
    BlobStorageBase,
    FakeStorageClient,
    StorageClient,
    StorageError,
    get_storage_client,
)

__all__ = [
    "BlobStorageBase",
    "StorageClient",
    "FakeStorageClient",
    "StorageError",
    "get_storage_client",
]
