"""Global pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from blobvault.persistence.db import create_engine
from blobvault.storage.directory import DirectoryBackend
from blobvault.storage.document import DocumentStoreBackend


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine, disposed after the test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'blobs.db'}")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def directory_backend(tmp_path: Path) -> DirectoryBackend:
    return DirectoryBackend(absolute_path=tmp_path / "uploads")


@pytest_asyncio.fixture
async def document_backend(engine: AsyncEngine) -> DocumentStoreBackend:
    backend = DocumentStoreBackend(engine, name="file")
    await backend.ensure_schema()
    return backend
