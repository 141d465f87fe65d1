"""Tests for the document store backend on SQLite."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from blobvault.errors import BlobNotFoundError, ConfigurationError
from blobvault.storage.base import BlobBackend, BlobWriter, FileDescriptor
from blobvault.storage.document import DocumentStoreBackend
from blobvault.streams import write_bytes


class TestDocumentStoreBackend:
    """Tests for DocumentStoreBackend."""

    @pytest.mark.asyncio
    async def test_satisfies_contract(self, document_backend: DocumentStoreBackend) -> None:
        assert isinstance(document_backend, BlobBackend)

    @pytest.mark.asyncio
    async def test_rejects_unsafe_bucket_name(self, engine: AsyncEngine) -> None:
        with pytest.raises(ConfigurationError):
            DocumentStoreBackend(engine, name="files; drop table x")

    @pytest.mark.asyncio
    async def test_roundtrip_keeps_content_type(
        self, document_backend: DocumentStoreBackend
    ) -> None:
        await write_bytes(document_backend, "report.pdf", b"%PDF-1.7", "application/pdf")

        file = await document_backend.get_file("report.pdf")

        assert file is not None
        assert file.buffer == b"%PDF-1.7"
        assert file.length == 8
        assert file.content_type == "application/pdf"
        assert file.upload_date is not None

    @pytest.mark.asyncio
    async def test_multi_chunk_roundtrip(self, engine: AsyncEngine) -> None:
        backend = DocumentStoreBackend(engine, name="small", chunk_size=3)
        await backend.ensure_schema()
        content = bytes(range(256)) * 4

        await write_bytes(backend, "blob.bin", content)

        chunks = [chunk async for chunk in backend.create_read_stream("blob.bin")]
        assert b"".join(chunks) == content
        assert all(len(chunk) == 3 for chunk in chunks[:-1])

    @pytest.mark.asyncio
    async def test_find_one(self, document_backend: DocumentStoreBackend) -> None:
        await write_bytes(document_backend, "a.txt", b"hello", "text/plain")

        info = await document_backend.find_one("a.txt")

        assert info is not None
        assert info.name == "a.txt"
        assert info.length == 5
        assert info.content_type == "text/plain"
        assert info.id != "a.txt"

    @pytest.mark.asyncio
    async def test_stat(self, document_backend: DocumentStoreBackend) -> None:
        await write_bytes(document_backend, "a.txt", b"hello")

        stat = await document_backend.stat("a.txt")

        assert stat.size == 5
        assert stat.mtime is not None

    @pytest.mark.asyncio
    async def test_missing_blob(self, document_backend: DocumentStoreBackend) -> None:
        assert await document_backend.find_one("missing") is None
        assert await document_backend.get_file("missing") is None
        assert await document_backend.get_file_with_read_stream("missing") is None
        assert (await document_backend.lookup("missing")).is_absent

        with pytest.raises(BlobNotFoundError):
            await document_backend.stat("missing")

    @pytest.mark.asyncio
    async def test_missing_blob_fails_on_first_read(
        self, document_backend: DocumentStoreBackend
    ) -> None:
        stream = document_backend.create_read_stream("missing")

        with pytest.raises(BlobNotFoundError):
            await stream.read()

    @pytest.mark.asyncio
    async def test_last_write_wins(self, document_backend: DocumentStoreBackend) -> None:
        await write_bytes(document_backend, "a.txt", b"first", "text/plain")
        await write_bytes(document_backend, "a.txt", b"second version", "text/markdown")

        file = await document_backend.get_file("a.txt")
        assert file is not None
        assert file.buffer == b"second version"
        assert file.content_type == "text/markdown"
        assert len(await document_backend.bucket.find("a.txt")) == 1

    @pytest.mark.asyncio
    async def test_read_stream_follows_returned_metadata(
        self, document_backend: DocumentStoreBackend
    ) -> None:
        """A stream obtained with metadata keeps reading that object."""
        await write_bytes(document_backend, "a.txt", b"old")
        result = await document_backend.get_file_with_read_stream("a.txt")
        assert result is not None

        first = await result.read_stream.__anext__()

        assert first == b"old"
        assert result.length == 3

    @pytest.mark.asyncio
    async def test_empty_blob(self, document_backend: DocumentStoreBackend) -> None:
        writer = document_backend.create_write_stream("empty", "text/plain")
        await writer.close()

        file = await document_backend.get_file("empty")

        assert file is not None
        assert file.buffer == b""
        assert file.length == 0

    @pytest.mark.asyncio
    async def test_delete(self, document_backend: DocumentStoreBackend) -> None:
        await write_bytes(document_backend, "a.txt", b"bye")

        assert await document_backend.delete_file("a.txt") is True
        assert await document_backend.get_file("a.txt") is None
        assert await document_backend.delete_file("a.txt") is False

    @pytest.mark.asyncio
    async def test_delete_removes_chunks(self, document_backend: DocumentStoreBackend) -> None:
        await write_bytes(document_backend, "a.txt", b"bye")

        await document_backend.delete_file("a.txt")

        chunks = document_backend.bucket.chunks
        async with document_backend.bucket.engine.connect() as conn:
            count = (await conn.execute(select(func.count()).select_from(chunks))).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_id_raises(self, document_backend: DocumentStoreBackend) -> None:
        with pytest.raises(BlobNotFoundError):
            await document_backend.remove("0" * 32)

    @pytest.mark.asyncio
    async def test_abort_leaves_nothing(self, document_backend: DocumentStoreBackend) -> None:
        writer = document_backend.create_write_stream("a.txt")
        await writer.write(b"never stored")
        await writer.abort()

        assert await document_backend.get_file("a.txt") is None
        assert writer.finished.done()
        assert writer.finished.exception() is not None

    @pytest.mark.asyncio
    async def test_transform_sees_bucket(self, engine: AsyncEngine) -> None:
        seen: list[FileDescriptor] = []

        async def reverse(
            file: FileDescriptor, source: AsyncIterator[bytes], sink: BlobWriter
        ) -> None:
            seen.append(file)
            data = b"".join([chunk async for chunk in source])
            await sink.write(data[::-1])

        backend = DocumentStoreBackend(engine, name="avatars", transform_write=reverse)
        await backend.ensure_schema()

        await write_bytes(backend, "a.png", b"abc", "image/png")

        file = await backend.get_file("a.png")
        assert file is not None
        assert file.buffer == b"cba"
        assert file.content_type == "image/png"
        assert seen == [
            FileDescriptor(file_name="a.png", content_type="image/png", bucket="avatars")
        ]

    @pytest.mark.asyncio
    async def test_buckets_are_isolated(self, engine: AsyncEngine) -> None:
        first = DocumentStoreBackend(engine, name="first")
        second = DocumentStoreBackend(engine, name="second")
        await first.ensure_schema()
        await second.ensure_schema()

        await write_bytes(first, "a.txt", b"one")

        assert await second.get_file("a.txt") is None

    @pytest.mark.asyncio
    async def test_overwrite_before_first_read_keeps_returned_revision(
        self, engine: AsyncEngine
    ) -> None:
        backend = DocumentStoreBackend(engine, name="file", chunk_size=4)
        await backend.ensure_schema()
        await write_bytes(backend, "a", b"0123456789", "text/plain")

        result = await backend.get_file_with_read_stream("a")
        assert result is not None
        await write_bytes(backend, "a", b"abcdefghijklmnop", "text/markdown")

        assert await result.read_stream.read() == b"0123456789"
        assert result.length == 10
        assert result.content_type == "text/plain"

    @pytest.mark.asyncio
    async def test_superseded_revision_pruned_after_reader_closes(
        self, engine: AsyncEngine
    ) -> None:
        backend = DocumentStoreBackend(engine, name="file", chunk_size=4)
        await backend.ensure_schema()
        await write_bytes(backend, "a", b"0123456789")

        result = await backend.get_file_with_read_stream("a")
        assert result is not None
        await write_bytes(backend, "a", b"new")
        assert len(await backend.bucket.find("a")) == 2

        await result.read_stream.aclose()

        files = await backend.bucket.find("a")
        assert len(files) == 1
        assert files[0].length == 3

    @pytest.mark.asyncio
    async def test_delete_removes_revisions_held_by_readers(
        self, document_backend: DocumentStoreBackend
    ) -> None:
        await write_bytes(document_backend, "a.txt", b"old")
        result = await document_backend.get_file_with_read_stream("a.txt")
        assert result is not None
        await write_bytes(document_backend, "a.txt", b"new")

        assert await document_backend.delete_file("a.txt") is True

        assert await document_backend.get_file("a.txt") is None
        await result.read_stream.aclose()
        assert await document_backend.bucket.find("a.txt") == []

    @pytest.mark.asyncio
    async def test_absent_lookup_releases_stream(
        self, document_backend: DocumentStoreBackend
    ) -> None:
        assert await document_backend.get_file_with_read_stream("missing") is None

        assert document_backend.bucket._readers == {}
