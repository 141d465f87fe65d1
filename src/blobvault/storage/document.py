"""Document store blob backend.

Stores blobs in a ChunkedBucket: chunk rows plus one metadata row per blob,
keyed by name. The content type is kept in the metadata row.

Lookups go through ``find_one``. ``get_file_with_read_stream`` resolves the
object through the stream itself and pins it, so the bytes always belong to
the metadata returned with them, even when the blob is overwritten while
the stream is open.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from blobvault.errors import BlobNotFoundError
from blobvault.observability.logging import LogContext
from blobvault.persistence.bucket import (
    DEFAULT_CHUNK_SIZE,
    BucketFile,
    ChunkedBucket,
    DownloadStream,
)
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
from blobvault.streams import DEFAULT_QUEUE_SIZE, add_pass_through

logger = logging.getLogger(__name__)


def _to_info(file: BucketFile) -> BlobInfo:
    return BlobInfo(
        id=file.id,
        name=file.filename,
        length=file.length,
        content_type=file.content_type,
        upload_date=file.upload_date,
        chunk_size=file.chunk_size,
    )


class DocumentStoreBackend:
    """Blob backend on a database bucket.

    Call ``ensure_schema()`` once before first use unless the bucket tables
    are managed elsewhere.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        name: str = "file",
        transform_write: TransformFn | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.name = name
        self.transform_write = transform_write
        self.queue_size = queue_size
        self.bucket = ChunkedBucket(engine, bucket_name=name, chunk_size=chunk_size)

    async def ensure_schema(self) -> None:
        await self.bucket.ensure_schema()

    async def find_one(self, name: str) -> BlobInfo | None:
        files = await self.bucket.find(name, limit=1)
        if not files:
            return None
        return _to_info(files[0])

    async def lookup(self, name: str) -> Lookup:
        """Look up ``name``. Database errors propagate rather than being reported as failed."""
        info = await self.find_one(name)
        if info is None:
            return Lookup.absent()
        return Lookup.of(info)

    async def remove(self, file_id: str) -> None:
        """Delete by internal id.

        Raises:
            BlobNotFoundError: If no blob has this id
        """
        await self.bucket.delete(file_id)

    def create_write_stream(self, name: str, content_type: str | None = None) -> BlobWriter:
        writer: BlobWriter = self.bucket.open_upload_stream(name, content_type=content_type)
        if self.transform_write is not None:
            writer = add_pass_through(
                writer,
                self.transform_write,
                FileDescriptor(file_name=name, content_type=content_type, bucket=self.name),
                queue_size=self.queue_size,
            )
        return writer

    def create_read_stream(self, name: str) -> DownloadStream:
        return self.bucket.open_download_stream_by_name(name)

    async def stat(self, name: str) -> BlobStat:
        info = await self.find_one(name)
        if info is None:
            raise BlobNotFoundError(name)
        return BlobStat(size=info.length, mtime=info.upload_date)

    async def get_file_with_read_stream(self, name: str) -> BlobStream | None:
        """Return a stream pinned to the newest object named ``name``.

        The stream holds the name from before the lookup, so an upload
        finishing meanwhile cannot delete the object it returns.
        """
        stream = self.bucket.open_download_stream_by_name(name)
        try:
            file = await stream.find()
        except BaseException:
            await stream.aclose()
            raise
        if file is None:
            await stream.aclose()
            return None
        return BlobStream(
            read_stream=stream,
            length=file.length,
            content_type=file.content_type,
            upload_date=file.upload_date,
        )

    async def get_file(self, name: str) -> BlobFile | None:
        stream = await self.get_file_with_read_stream(name)
        if stream is None:
            return None
        return await stream.to_file()

    async def delete_file(self, name: str) -> bool:
        """Delete ``name`` if present. Removal errors propagate.

        Superseded objects kept alive for open readers go too, so an older
        revision never resurfaces.
        """
        with LogContext(backend="database", blob=name):
            info = await self.find_one(name)
            if info is None:
                return False
            await self.remove(info.id)
            await self.bucket.delete_by_name(name)
            logger.debug(f"Deleted blob {name} ({info.id}) from bucket {self.name}")
            return True
