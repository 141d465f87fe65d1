"""Chunked binary object bucket on SQLAlchemy.

Each bucket owns two tables:
    {bucket}_files   one row per stored object (filename, length, content type)
    {bucket}_chunks  the object's bytes split into fixed size chunks

Chunks are inserted while the upload is in progress and the files row is
inserted last, so readers never observe a partially uploaded object. A
completed upload supersedes older objects with the same filename. Superseded
objects are deleted right away unless a download stream in this process holds
the filename; then they are pruned when the last such stream closes.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from types import TracebackType
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from blobvault.errors import (
    BlobNotFoundError,
    ConfigurationError,
    StorageError,
    StreamClosedError,
)
from blobvault.streams import Completion, read_all

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 255 * 1024  # 255KB, small enough for one row per chunk

_BUCKET_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class BucketFile:
    """Row of a bucket's files table."""

    id: str
    filename: str
    length: int
    chunk_size: int
    upload_date: datetime
    content_type: str | None = None


def bucket_tables(metadata: MetaData, bucket_name: str) -> tuple[Table, Table]:
    """Declare the files and chunks tables for ``bucket_name``."""
    files = Table(
        f"{bucket_name}_files",
        metadata,
        Column("id", String(32), primary_key=True),
        Column("filename", Text, nullable=False),
        Column("length", BigInteger, nullable=False),
        Column("chunk_size", Integer, nullable=False),
        Column("content_type", String(255), nullable=True),
        Column("upload_date", DateTime(timezone=True), nullable=False),
    )
    Index(f"idx_{bucket_name}_files_filename", files.c.filename, files.c.upload_date)
    chunks = Table(
        f"{bucket_name}_chunks",
        metadata,
        Column("files_id", String(32), nullable=False),
        Column("n", Integer, nullable=False),
        Column("data", LargeBinary, nullable=False),
        PrimaryKeyConstraint("files_id", "n"),
    )
    return files, chunks


class ChunkedBucket:
    """A named bucket of chunked binary objects.

    Usage:
        bucket = ChunkedBucket(engine, "avatars")
        await bucket.ensure_schema()

        async with bucket.open_upload_stream("a.png", "image/png") as upload:
            await upload.write(data)

        content = await bucket.open_download_stream_by_name("a.png").read()
    """

    def __init__(
        self,
        engine: AsyncEngine,
        bucket_name: str = "fs",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if not _BUCKET_NAME.fullmatch(bucket_name):
            raise ConfigurationError(
                f"Bucket name {bucket_name!r} must be a letter or underscore "
                "followed by letters, digits or underscores"
            )
        if chunk_size <= 0:
            raise ConfigurationError("Bucket chunk size must be positive")

        self.engine = engine
        self.bucket_name = bucket_name
        self.chunk_size = chunk_size
        self.metadata = MetaData()
        self.files, self.chunks = bucket_tables(self.metadata, bucket_name)
        # Open download streams per filename, and filenames with deferred pruning
        self._readers: dict[str, int] = {}
        self._stale: set[str] = set()

    async def ensure_schema(self) -> None:
        """Create the bucket tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)

    def _to_file(self, row: Any) -> BucketFile:
        return BucketFile(
            id=row["id"],
            filename=row["filename"],
            length=row["length"],
            chunk_size=row["chunk_size"],
            upload_date=row["upload_date"],
            content_type=row["content_type"],
        )

    async def find(self, filename: str, limit: int | None = None) -> list[BucketFile]:
        """Return objects named ``filename``, newest first."""
        stmt = (
            select(self.files)
            .where(self.files.c.filename == filename)
            .order_by(self.files.c.upload_date.desc(), self.files.c.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [self._to_file(row) for row in result.mappings()]

    async def get(self, file_id: str) -> BucketFile | None:
        """Return the object with internal id ``file_id``."""
        stmt = select(self.files).where(self.files.c.id == file_id)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            row = result.mappings().first()
        return self._to_file(row) if row is not None else None

    async def delete(self, file_id: str) -> None:
        """Delete an object and its chunks by internal id.

        Raises:
            BlobNotFoundError: If no object has this id
        """
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(self.files).where(self.files.c.id == file_id))
            await conn.execute(delete(self.chunks).where(self.chunks.c.files_id == file_id))

        if result.rowcount == 0:
            raise BlobNotFoundError(file_id, f"File not found for id {file_id}")
        logger.debug(f"Deleted object {file_id} from bucket {self.bucket_name}")

    async def delete_by_name(self, filename: str) -> int:
        """Delete every object named ``filename``, superseded ones included."""
        self._stale.discard(filename)
        async with self.engine.begin() as conn:
            result = await conn.execute(
                select(self.files.c.id).where(self.files.c.filename == filename)
            )
            ids = list(result.scalars())
            if ids:
                await conn.execute(delete(self.chunks).where(self.chunks.c.files_id.in_(ids)))
                await conn.execute(delete(self.files).where(self.files.c.id.in_(ids)))
        return len(ids)

    def open_upload_stream(self, filename: str, content_type: str | None = None) -> UploadStream:
        """Open a stream that stores a new object named ``filename``."""
        return UploadStream(self, filename, content_type)

    def open_download_stream(self, file_id: str) -> DownloadStream:
        """Open a stream over the object with internal id ``file_id``."""
        return DownloadStream(self, file_id=file_id)

    def open_download_stream_by_name(self, filename: str) -> DownloadStream:
        """Open a stream over the newest object named ``filename``."""
        return DownloadStream(self, filename=filename)

    async def _insert_chunk(self, files_id: str, n: int, data: bytes) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(insert(self.chunks).values(files_id=files_id, n=n, data=data))

    async def _discard_chunks(self, files_id: str) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(delete(self.chunks).where(self.chunks.c.files_id == files_id))

    async def _commit_file(self, file: BucketFile) -> int:
        """Insert the files row and drop older objects with the same name.

        Dropping is deferred while a download stream holds the filename.
        """
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(self.files).values(
                    id=file.id,
                    filename=file.filename,
                    length=file.length,
                    chunk_size=file.chunk_size,
                    content_type=file.content_type,
                    upload_date=file.upload_date,
                )
            )
            if file.filename in self._readers:
                self._stale.add(file.filename)
                return 0
            return await self._drop_older(conn, file.filename, file.id)

    async def _drop_older(self, conn: AsyncConnection, filename: str, keep_id: str) -> int:
        result = await conn.execute(
            select(self.files.c.id).where(
                self.files.c.filename == filename,
                self.files.c.id != keep_id,
            )
        )
        stale = list(result.scalars())
        if not stale:
            return 0
        await conn.execute(delete(self.chunks).where(self.chunks.c.files_id.in_(stale)))
        await conn.execute(delete(self.files).where(self.files.c.id.in_(stale)))
        return len(stale)

    def _hold(self, filename: str) -> None:
        self._readers[filename] = self._readers.get(filename, 0) + 1

    async def _release(self, filename: str) -> None:
        remaining = self._readers.get(filename, 0) - 1
        if remaining > 0:
            self._readers[filename] = remaining
            return
        self._readers.pop(filename, None)
        if filename in self._stale:
            self._stale.discard(filename)
            await self._prune(filename)

    async def _prune(self, filename: str) -> None:
        """Delete every object named ``filename`` except the newest."""
        try:
            newest = await self.find(filename, limit=1)
            if not newest:
                return
            async with self.engine.begin() as conn:
                dropped = await self._drop_older(conn, filename, newest[0].id)
        except Exception as exc:
            logger.warning(f"Failed to prune superseded objects named {filename}: {exc}")
            return
        logger.debug(f"Pruned {dropped} superseded objects named {filename}")

    async def _read_chunk(self, files_id: str, n: int) -> bytes:
        stmt = select(self.chunks.c.data).where(
            self.chunks.c.files_id == files_id,
            self.chunks.c.n == n,
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            data = result.scalar_one_or_none()
        if data is None:
            raise StorageError(f"Chunk {n} is missing for object {files_id}")
        return bytes(data)


class UploadStream:
    """Writes one object into a bucket.

    Bytes are buffered up to the bucket's chunk size and inserted chunk by
    chunk. ``close()`` writes the files row; ``abort()`` removes any chunks
    already written.
    """

    def __init__(self, bucket: ChunkedBucket, filename: str, content_type: str | None) -> None:
        self.id = uuid4().hex
        self.filename = filename
        self.content_type = content_type
        self._bucket = bucket
        self._buffer = bytearray()
        self._chunks_written = 0
        self._length = 0
        self._closed = False
        self._completion = Completion()

    @property
    def finished(self) -> asyncio.Future[None]:
        return self._completion.future

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def length(self) -> int:
        return self._length

    async def _flush(self, data: bytes) -> None:
        await self._bucket._insert_chunk(self.id, self._chunks_written, data)
        self._chunks_written += 1

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise StreamClosedError(f"Write to closed upload stream for {self.filename}")

        self._buffer.extend(data)
        self._length += len(data)

        chunk_size = self._bucket.chunk_size
        while len(self._buffer) >= chunk_size:
            chunk = bytes(self._buffer[:chunk_size])
            del self._buffer[:chunk_size]
            await self._flush(chunk)

    async def close(self) -> None:
        if self._closed:
            await self._completion.wait()
            return
        self._closed = True

        try:
            if self._buffer:
                await self._flush(bytes(self._buffer))
                self._buffer.clear()
            replaced = await self._bucket._commit_file(
                BucketFile(
                    id=self.id,
                    filename=self.filename,
                    length=self._length,
                    chunk_size=self._bucket.chunk_size,
                    upload_date=datetime.now(UTC),
                    content_type=self.content_type,
                )
            )
        except BaseException as exc:
            await self._cleanup()
            self._completion.set_error(exc)
            raise

        logger.debug(
            f"Stored {self.filename} as {self.id} in bucket {self._bucket.bucket_name} "
            f"({self._length} bytes, replaced {replaced})"
        )
        self._completion.set_done()

    async def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        await self._cleanup()
        self._completion.set_error(StreamClosedError(f"Upload of {self.filename} aborted"))

    async def _cleanup(self) -> None:
        if not self._chunks_written:
            return
        try:
            await self._bucket._discard_chunks(self.id)
        except Exception as exc:
            logger.warning(f"Failed to discard chunks of aborted upload {self.id}: {exc}")

    async def __aenter__(self) -> UploadStream:
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


class DownloadStream:
    """Reads one object from a bucket, one chunk per iteration.

    The object is resolved on the first read; a missing object raises
    BlobNotFoundError at that point. Until the stream is exhausted or
    closed it holds the object's filename, so a newer upload under that
    name does not delete the chunks being read.
    """

    def __init__(
        self,
        bucket: ChunkedBucket,
        filename: str | None = None,
        file_id: str | None = None,
    ) -> None:
        if filename is None and file_id is None:
            raise ValueError("Either filename or file_id is required")
        self._bucket = bucket
        self._filename = filename
        self._file_id = file_id
        self._file: BucketFile | None = None
        self._held: str | None = None
        self._next = 0
        self._closed = False
        if filename is not None:
            bucket._hold(filename)
            self._held = filename

    @property
    def file(self) -> BucketFile | None:
        """The resolved object, once the stream has been read from."""
        return self._file

    async def find(self) -> BucketFile | None:
        """Resolve and pin the object without reading, or return ``None``."""
        if self._file is None and not self._closed:
            if self._file_id is not None:
                file = await self._bucket.get(self._file_id)
            else:
                assert self._filename is not None
                found = await self._bucket.find(self._filename, limit=1)
                file = found[0] if found else None
            if file is not None and self._held is None:
                self._bucket._hold(file.filename)
                self._held = file.filename
            self._file = file
        return self._file

    async def _resolve(self) -> BucketFile:
        file = await self.find()
        if file is None:
            raise BlobNotFoundError(self._file_id or self._filename or "")
        return file

    def __aiter__(self) -> DownloadStream:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        file = await self._resolve()
        if self._next * file.chunk_size >= file.length:
            await self.aclose()
            raise StopAsyncIteration
        data = await self._bucket._read_chunk(file.id, self._next)
        self._next += 1
        return data

    async def read(self) -> bytes:
        return await read_all(self)

    async def aclose(self) -> None:
        self._closed = True
        if self._held is not None:
            held, self._held = self._held, None
            await self._bucket._release(held)

    async def __aenter__(self) -> DownloadStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
