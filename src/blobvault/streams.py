"""Stream helpers shared by the storage backends.

- Completion: a write's one-shot completion signal
- PassThroughWriter: interposes a write transform in front of a backend sink
- buffer_to_stream / read_all / pipe: bridges between buffers and streams
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from types import TracebackType
from typing import TYPE_CHECKING

from blobvault.errors import StreamClosedError

if TYPE_CHECKING:
    from blobvault.storage.base import BlobBackend, BlobWriter, FileDescriptor, TransformFn

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024  # 64KB
DEFAULT_QUEUE_SIZE = 16

_EOF = object()


class Completion:
    """Resolves exactly once, whichever way a stream finishes.

    The future is created on first access so that streams can be built
    outside a running event loop.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[None] | None = None
        self._resolved = False
        self._error: BaseException | None = None

    @property
    def future(self) -> asyncio.Future[None]:
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            if self._resolved:
                self._apply()
        return self._future

    @property
    def resolved(self) -> bool:
        return self._resolved

    def set_done(self) -> None:
        self._resolve(None)

    def set_error(self, error: BaseException) -> None:
        self._resolve(error)

    async def wait(self) -> None:
        await asyncio.shield(self.future)

    def _resolve(self, error: BaseException | None) -> None:
        if self._resolved:
            return
        self._resolved = True
        self._error = error
        if self._future is not None:
            self._apply()

    def _apply(self) -> None:
        assert self._future is not None
        if self._future.done():
            return
        if self._error is None:
            self._future.set_result(None)
        else:
            self._future.set_exception(self._error)
            # The error has already been raised to whoever closed the stream.
            self._future.exception()


class PassThroughWriter:
    """Writer handed to callers when a write transform is configured.

    Bytes written here are queued for the transform, which runs as a task
    and writes into the backend sink. The queue is bounded, so ``write``
    suspends while the transform falls behind.
    """

    def __init__(
        self,
        sink: BlobWriter,
        transform: TransformFn,
        file: FileDescriptor,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.sink = sink
        self.file = file
        self._transform = transform
        self._queue_size = queue_size
        self._queue: asyncio.Queue[object] | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._completion = Completion()

    @property
    def finished(self) -> asyncio.Future[None]:
        return self._completion.future

    @property
    def closed(self) -> bool:
        return self._closed

    def _start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._queue = asyncio.Queue(maxsize=self._queue_size)
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _source(self) -> AsyncIterator[bytes]:
        assert self._queue is not None
        while True:
            chunk = await self._queue.get()
            if chunk is _EOF:
                return
            assert isinstance(chunk, bytes)
            yield chunk

    async def _run(self) -> None:
        source = self._source()
        try:
            await self._transform(self.file, source, self.sink)
        except BaseException:
            await self.sink.abort()
            raise
        finally:
            await source.aclose()
        await self.sink.close()

    def _stopped(self, task: asyncio.Task[None]) -> BaseException:
        self._closed = True
        error: BaseException | None
        if task.cancelled():
            error = StreamClosedError(f"Transform for {self.file.file_name} was cancelled")
        else:
            error = task.exception()
        if error is None:
            error = StreamClosedError(
                f"Transform for {self.file.file_name} stopped consuming input"
            )
        self._completion.set_error(error)
        return error

    async def _feed(self, item: object) -> None:
        task = self._start()
        if task.done():
            raise self._stopped(task)
        assert self._queue is not None
        put = asyncio.ensure_future(self._queue.put(item))
        try:
            done, _ = await asyncio.wait({put, task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            put.cancel()
            raise
        if put not in done:
            put.cancel()
            raise self._stopped(task)

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise StreamClosedError(f"Write to closed stream for {self.file.file_name}")
        if not data:
            return
        await self._feed(bytes(data))

    async def close(self) -> None:
        if self._closed:
            await self._completion.wait()
            return
        await self._feed(_EOF)
        self._closed = True
        task = self._start()
        try:
            await task
        except BaseException as exc:
            self._completion.set_error(exc)
            raise
        self._completion.set_done()

    async def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            await self.sink.abort()
        elif not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug(f"Transform for {self.file.file_name} failed during abort: {exc}")
            # A task cancelled before it started never reached its own abort.
            await self.sink.abort()
        self._completion.set_error(StreamClosedError(f"Write of {self.file.file_name} aborted"))

    async def __aenter__(self) -> PassThroughWriter:
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


def add_pass_through(
    sink: BlobWriter,
    transform: TransformFn,
    file: FileDescriptor,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> PassThroughWriter:
    """Put ``transform`` between the caller and ``sink``."""
    return PassThroughWriter(sink, transform, file, queue_size=queue_size)


async def buffer_to_stream(
    data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> AsyncIterator[bytes]:
    """Yield ``data`` in chunks of at most ``chunk_size`` bytes."""
    view = memoryview(data)
    for offset in range(0, len(view), chunk_size):
        yield bytes(view[offset : offset + chunk_size])


async def read_all(source: AsyncIterable[bytes]) -> bytes:
    """Drain ``source`` into a single buffer, closing it afterwards."""
    chunks: list[bytes] = []
    try:
        async for chunk in source:
            chunks.append(chunk)
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
    return b"".join(chunks)


async def pipe(source: AsyncIterable[bytes], writer: BlobWriter) -> None:
    """Copy ``source`` into ``writer``.

    The writer is closed once the source is exhausted and aborted if
    anything fails on the way.
    """
    try:
        async for chunk in source:
            await writer.write(chunk)
    except BaseException:
        await writer.abort()
        raise
    await writer.close()


async def write_bytes(
    backend: BlobBackend,
    name: str,
    data: bytes,
    content_type: str | None = "application/octet-stream",
) -> None:
    """Store an in-memory buffer as ``name``."""
    await pipe(buffer_to_stream(data), backend.create_write_stream(name, content_type))
