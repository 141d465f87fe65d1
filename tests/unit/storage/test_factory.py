"""Tests for building backends from settings."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from blobvault.config import Settings
from blobvault.errors import ConfigurationError
from blobvault.storage import factory
from blobvault.storage.directory import DirectoryBackend
from blobvault.storage.document import DocumentStoreBackend


async def passthrough(file, source, sink) -> None:
    async for chunk in source:
        await sink.write(chunk)


class TestCreateBlobBackend:
    """Tests for create_blob_backend."""

    def test_directory_backend(self, tmp_path: Path) -> None:
        config = Settings(_env_file=None, backend="directory", storage_path=str(tmp_path / "x"))

        backend = factory.create_blob_backend(config)

        assert isinstance(backend, DirectoryBackend)
        assert backend.absolute_path == tmp_path / "x"
        assert backend.transform_write is None

    def test_backend_name_is_case_insensitive(self, tmp_path: Path) -> None:
        config = Settings(_env_file=None, backend="Directory", storage_path=str(tmp_path))

        assert isinstance(factory.create_blob_backend(config), DirectoryBackend)

    @pytest.mark.asyncio
    async def test_database_backend(
        self, engine: AsyncEngine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(factory, "get_engine", lambda: engine)
        config = Settings(
            _env_file=None, backend="database", bucket_name="avatars", chunk_size=1024
        )

        backend = factory.create_blob_backend(config, transform_write=passthrough)

        assert isinstance(backend, DocumentStoreBackend)
        assert backend.name == "avatars"
        assert backend.bucket.chunk_size == 1024
        assert backend.bucket.engine is engine
        assert backend.transform_write is passthrough

    def test_unknown_backend(self) -> None:
        config = Settings(_env_file=None, backend="s3")

        with pytest.raises(ConfigurationError, match="s3"):
            factory.create_blob_backend(config)


class TestGetBlobBackend:
    """Tests for the shared backend."""

    def test_returns_singleton(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = Settings(_env_file=None, backend="directory", storage_path=str(tmp_path))
        monkeypatch.setattr(factory, "settings", config)
        monkeypatch.setattr(factory, "_backend", None)

        first = factory.get_blob_backend()

        assert first is factory.get_blob_backend()
        assert isinstance(first, DirectoryBackend)
