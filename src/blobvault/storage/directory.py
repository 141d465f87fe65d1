"""Local directory blob backend.

Stores each blob as a file directly under the configured root:
    {absolute_path}/{name}

Writes go to a temporary sibling file that is renamed into place on close,
so readers see either the previous content or the new content. Content
types are not persisted.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any
from uuid import uuid4

import aiofiles  # type: ignore[import-untyped]
import aiofiles.os  # type: ignore[import-untyped]

from blobvault.errors import (
    BlobNotFoundError,
    ConfigurationError,
    InvalidBlobNameError,
    StorageError,
    StreamClosedError,
)
from blobvault.observability.logging import LogContext
from blobvault.storage.base import (
    BlobFile,
    BlobInfo,
    BlobStat,
    BlobStream,
    BlobWriter,
    FileDescriptor,
    Lookup,
    TransformFn,
)
from blobvault.streams import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_QUEUE_SIZE,
    Completion,
    add_pass_through,
    read_all,
)

logger = logging.getLogger(__name__)

# Checked in order; the first non-empty one wins
HOME_ENV_VARS = ("HOME", "HOMEPATH", "USERPROFILE")


def resolve_root(path: str, environ: Mapping[str, str] | None = None) -> Path:
    """Expand a leading ``~`` and return an absolute, normalized path.

    Raises:
        ConfigurationError: If the path starts with ``~`` and no home
            variable is set
    """
    env = os.environ if environ is None else environ
    if path.split(os.sep)[0] == "~":
        home = next((env[var] for var in HOME_ENV_VARS if env.get(var)), None)
        if home is None:
            raise ConfigurationError('Unable to resolve "~" in path')
        path = home + path[1:]
    return Path(os.path.abspath(path))


def blob_path(root: Path, name: str) -> Path:
    """Map a blob name to a path under ``root``.

    Raises:
        InvalidBlobNameError: If the name is empty or resolves outside ``root``
    """
    if not name:
        raise InvalidBlobNameError(name, "name is empty")
    path = Path(os.path.normpath(root / name))
    if root not in path.parents:
        raise InvalidBlobNameError(name, "resolves outside the storage root")
    return path


class FileWriter:
    """Writes one blob through a temporary file.

    The name is checked and the temporary file created on the first write
    or on close.
    """

    def __init__(self, root: Path, name: str) -> None:
        self.root = root
        self.name = name
        self.path: Path | None = None
        self._tmp_path: Path | None = None
        self._file: Any | None = None
        self._closed = False
        self._completion = Completion()

    @property
    def finished(self) -> asyncio.Future[None]:
        return self._completion.future

    @property
    def closed(self) -> bool:
        return self._closed

    async def _open(self) -> Any:
        if self._file is None:
            self.path = blob_path(self.root, self.name)
            self._tmp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.part")
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            self._file = await aiofiles.open(self._tmp_path, "wb")
        return self._file

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise StreamClosedError(f"Write to closed stream for {self.name}")
        f = await self._open()
        await f.write(data)

    async def close(self) -> None:
        if self._closed:
            await self._completion.wait()
            return
        self._closed = True

        try:
            f = await self._open()
            await f.close()
            await aiofiles.os.replace(self._tmp_path, self.path)
        except BaseException as exc:
            await self._discard()
            self._completion.set_error(exc)
            raise

        logger.debug(f"Wrote blob to {self.path}")
        self._completion.set_done()

    async def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._discard()
        self._completion.set_error(StreamClosedError(f"Write of {self.name} aborted"))

    async def _discard(self) -> None:
        if self._file is None:
            return
        await self._file.close()
        try:
            await aiofiles.os.remove(self._tmp_path)
        except FileNotFoundError:
            pass

    async def __aenter__(self) -> FileWriter:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.abort()


class FileReader:
    """Reads one blob in chunks.

    The name is checked and the file opened on the first read.
    """

    def __init__(self, root: Path, name: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.root = root
        self.name = name
        self.chunk_size = chunk_size
        self._file: Any | None = None
        self._closed = False

    async def _open(self) -> Any:
        if self._file is None:
            try:
                self._file = await aiofiles.open(blob_path(self.root, self.name), "rb")
            except InvalidBlobNameError:
                self._closed = True
                raise
            except FileNotFoundError as exc:
                self._closed = True
                raise BlobNotFoundError(self.name) from exc
        return self._file

    def __aiter__(self) -> FileReader:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        f = await self._open()
        chunk = await f.read(self.chunk_size)
        if not chunk:
            await self.aclose()
            raise StopAsyncIteration
        return bytes(chunk)

    async def read(self) -> bytes:
        return await read_all(self)

    async def aclose(self) -> None:
        self._closed = True
        if self._file is not None:
            await self._file.close()
            self._file = None

    async def __aenter__(self) -> FileReader:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


class DirectoryBackend:
    """Blob backend on a local directory."""

    def __init__(
        self,
        absolute_path: str | Path = "~/uploads",
        transform_write: TransformFn | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        """Initialize the backend and create the root directory if needed.

        Args:
            absolute_path: Root directory; a leading ``~`` is expanded
            transform_write: Optional interceptor for written bytes
            chunk_size: Read chunk size
            queue_size: Chunks buffered between a writer and its transform

        Raises:
            ConfigurationError: If ``~`` cannot be resolved
        """
        self.transform_write = transform_write
        self.chunk_size = chunk_size
        self.queue_size = queue_size
        self.absolute_path = resolve_root(str(absolute_path))
        self.absolute_path.mkdir(parents=True, exist_ok=True)

    def _blob_path(self, name: str) -> Path:
        return blob_path(self.absolute_path, name)

    def create_write_stream(self, name: str, content_type: str | None = None) -> BlobWriter:
        """Open a sink for ``name``. ``content_type`` is not stored.

        Never raises; an invalid name fails the first write or the close.
        """
        writer: BlobWriter = FileWriter(self.absolute_path, name)
        if self.transform_write is not None:
            writer = add_pass_through(
                writer,
                self.transform_write,
                FileDescriptor(file_name=name, content_type=content_type),
                queue_size=self.queue_size,
            )
        return writer

    def create_read_stream(self, name: str) -> FileReader:
        return FileReader(self.absolute_path, name, chunk_size=self.chunk_size)

    async def stat(self, name: str) -> BlobStat:
        try:
            result = await aiofiles.os.stat(self._blob_path(name))
        except FileNotFoundError as exc:
            raise BlobNotFoundError(name) from exc
        return BlobStat(
            size=result.st_size,
            mtime=datetime.fromtimestamp(result.st_mtime, tz=UTC),
        )

    async def remove(self, name: str) -> None:
        try:
            await aiofiles.os.remove(self._blob_path(name))
        except FileNotFoundError as exc:
            raise BlobNotFoundError(name) from exc

    async def lookup(self, name: str) -> Lookup:
        """Stat ``name``.

        Invalid names and filesystem errors other than absence are reported
        as failed.
        """
        try:
            stat = await self.stat(name)
        except BlobNotFoundError:
            return Lookup.absent()
        except (OSError, InvalidBlobNameError) as exc:
            return Lookup.failure(exc)

        return Lookup.of(
            BlobInfo(id=name, name=name, length=stat.size, upload_date=stat.mtime)
        )

    async def find_one(self, name: str) -> BlobInfo | None:
        result = await self.lookup(name)
        if result.is_failed:
            assert result.error is not None
            raise result.error
        return result.info

    async def get_file_with_read_stream(self, name: str) -> BlobStream | None:
        """Return an open stream for ``name``.

        Every stat failure counts as absent here; failures other than a
        missing file are logged.
        """
        result = await self.lookup(name)
        if not result.is_found:
            if result.is_failed:
                with LogContext(backend="directory", blob=name):
                    logger.warning(f"Treating blob {name} as absent: {result.error}")
            return None

        assert result.info is not None
        return BlobStream(
            read_stream=self.create_read_stream(name),
            length=result.info.length,
            upload_date=result.info.upload_date,
        )

    async def get_file(self, name: str) -> BlobFile | None:
        stream = await self.get_file_with_read_stream(name)
        if stream is None:
            return None
        return await stream.to_file()

    async def delete_file(self, name: str) -> bool:
        """Delete ``name``. Never raises; failures are logged and give False."""
        with LogContext(backend="directory", blob=name):
            try:
                await self.remove(name)
            except BlobNotFoundError:
                return False
            except (OSError, StorageError) as exc:
                logger.warning(f"Failed to delete blob {name} from {self.absolute_path}: {exc}")
                return False

            logger.debug(f"Deleted blob {name} from {self.absolute_path}")
            return True
