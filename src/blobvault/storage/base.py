"""Blob backend contract.

Both storage engines implement :class:`BlobBackend` structurally. They do
not share a base class; common behaviour lives in :mod:`blobvault.streams`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import TracebackType
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class FileDescriptor:
    """What a write transform is told about the blob being written."""

    file_name: str
    content_type: str | None = None
    bucket: str | None = None


@dataclass(frozen=True)
class BlobInfo:
    """Metadata for a stored blob.

    ``length`` and ``upload_date`` are derived from storage. ``id`` is the
    backend's internal identifier (the blob name for the directory backend).
    """

    id: str
    name: str
    length: int
    content_type: str | None = None
    upload_date: datetime | None = None
    chunk_size: int | None = None


@dataclass(frozen=True)
class BlobStat:
    """Size and modification time of a stored blob."""

    size: int
    mtime: datetime | None = None


class LookupStatus(str, Enum):
    """Outcome of a blob lookup."""

    FOUND = "found"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass(frozen=True)
class Lookup:
    """Typed lookup result.

    Keeps "the blob is not there" apart from "the backend could not tell".
    The convenience accessors collapse this into ``None``; callers that need
    the distinction call ``lookup()`` directly.
    """

    status: LookupStatus
    info: BlobInfo | None = None
    error: Exception | None = None

    @classmethod
    def of(cls, info: BlobInfo) -> Lookup:
        return cls(status=LookupStatus.FOUND, info=info)

    @classmethod
    def absent(cls) -> Lookup:
        return cls(status=LookupStatus.ABSENT)

    @classmethod
    def failure(cls, error: Exception) -> Lookup:
        return cls(status=LookupStatus.FAILED, error=error)

    @property
    def is_found(self) -> bool:
        return self.status is LookupStatus.FOUND

    @property
    def is_absent(self) -> bool:
        return self.status is LookupStatus.ABSENT

    @property
    def is_failed(self) -> bool:
        return self.status is LookupStatus.FAILED


class BlobWriter(Protocol):
    """Writable sink for a blob.

    ``finished`` resolves exactly once: with ``None`` after a successful
    ``close()``, or with the error that ended the write.
    """

    @property
    def finished(self) -> asyncio.Future[None]: ...

    @property
    def closed(self) -> bool: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...

    async def abort(self) -> None: ...

    async def __aenter__(self) -> BlobWriter: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


class BlobReader(Protocol):
    """Readable source for a blob, iterated as ``bytes`` chunks."""

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def __anext__(self) -> bytes: ...

    async def read(self) -> bytes: ...

    async def aclose(self) -> None: ...


TransformFn = Callable[[FileDescriptor, AsyncIterator[bytes], BlobWriter], Awaitable[None]]
"""Write interceptor.

Called once per write with the blob descriptor, the caller's bytes and the
backend sink. It writes whatever should be persisted into the sink; the
pipeline closes the sink when the transform returns and aborts it when the
transform raises.
"""


@dataclass
class BlobStream:
    """An open read stream together with the blob's metadata."""

    read_stream: BlobReader
    length: int
    content_type: str | None = None
    upload_date: datetime | None = None

    async def to_file(self) -> BlobFile:
        """Drain the stream into memory. No size cap is applied."""
        buffer = await self.read_stream.read()
        return BlobFile(
            buffer=buffer,
            length=self.length,
            content_type=self.content_type,
            upload_date=self.upload_date,
        )


@dataclass
class BlobFile:
    """A blob materialized in memory."""

    buffer: bytes
    length: int
    content_type: str | None = None
    upload_date: datetime | None = None


@runtime_checkable
class BlobBackend(Protocol):
    """Capability contract shared by every storage engine."""

    transform_write: TransformFn | None

    def create_write_stream(self, name: str, content_type: str | None = None) -> BlobWriter:
        """Open a sink for ``name``. I/O is deferred to the first write."""
        ...

    def create_read_stream(self, name: str) -> BlobReader:
        """Open a source for ``name``. A missing blob fails on first read."""
        ...

    async def find_one(self, name: str) -> BlobInfo | None:
        """Return metadata for ``name`` or ``None``."""
        ...

    async def lookup(self, name: str) -> Lookup:
        """Return a typed lookup result for ``name``."""
        ...

    async def stat(self, name: str) -> BlobStat:
        """Return size and mtime.

        Raises:
            BlobNotFoundError: If the blob does not exist
        """
        ...

    async def get_file_with_read_stream(self, name: str) -> BlobStream | None:
        """Return an open stream plus metadata, or ``None`` if absent."""
        ...

    async def get_file(self, name: str) -> BlobFile | None:
        """Return the blob materialized in memory, or ``None`` if absent."""
        ...

    async def delete_file(self, name: str) -> bool:
        """Delete ``name``. Returns ``False`` when there was nothing to delete."""
        ...
