"""Error taxonomy for blobvault.

Only absence and configuration problems get their own types. Failures from
the database driver or the filesystem propagate unmodified.
"""

from __future__ import annotations


class StorageError(Exception):
    """Base class for blobvault errors."""


class BlobNotFoundError(StorageError):
    """Raised when a blob does not exist in a backend."""

    def __init__(self, name: str, detail: str | None = None) -> None:
        self.name = name
        super().__init__(detail or f"Blob not found: {name}")


class ConfigurationError(StorageError):
    """Raised when a backend cannot be constructed from its configuration."""


class InvalidBlobNameError(StorageError, ValueError):
    """Raised when a blob name cannot be mapped into a backend namespace."""

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid blob name {name!r}: {reason}")


class InvalidDataURIError(StorageError, ValueError):
    """Raised when a string is not a base64 data URI."""


class StreamClosedError(StorageError):
    """Raised when writing to a stream that no longer accepts data."""
