"""Blob backend factory for blobvault."""

from __future__ import annotations

from blobvault.config import Settings, settings
from blobvault.errors import ConfigurationError
from blobvault.persistence.db import get_engine
from blobvault.storage.base import BlobBackend, TransformFn
from blobvault.storage.directory import DirectoryBackend
from blobvault.storage.document import DocumentStoreBackend

_backend: BlobBackend | None = None


def create_blob_backend(
    config: Settings | None = None,
    transform_write: TransformFn | None = None,
) -> BlobBackend:
    """Build a backend from settings.

    The database backend shares the module-level engine; its tables are
    created by ``await backend.ensure_schema()``.
    """
    config = config or settings
    backend_type = config.backend.lower()

    if backend_type == "directory":
        return DirectoryBackend(
            absolute_path=config.storage_path,
            transform_write=transform_write,
            queue_size=config.write_queue_size,
        )
    if backend_type == "database":
        return DocumentStoreBackend(
            get_engine(),
            name=config.bucket_name,
            transform_write=transform_write,
            chunk_size=config.chunk_size,
            queue_size=config.write_queue_size,
        )
    raise ConfigurationError(
        f"Unsupported backend {config.backend!r}. Supported values: directory, database."
    )


def get_blob_backend() -> BlobBackend:
    """Return a singleton BlobBackend based on settings."""
    global _backend
    if _backend is None:
        _backend = create_blob_backend()
    return _backend
