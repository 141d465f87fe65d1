"""Persistence layer for blobvault.

This module provides:
- Async engine management (PostgreSQL/asyncpg in production)
- ChunkedBucket: chunked binary objects in a pair of tables per bucket
"""

from blobvault.persistence.bucket import (
    BucketFile,
    ChunkedBucket,
    DownloadStream,
    UploadStream,
    bucket_tables,
)
from blobvault.persistence.db import close_db, create_engine, get_engine, health_check

__all__ = [
    # DB
    "create_engine",
    "get_engine",
    "close_db",
    "health_check",
    # Bucket
    "ChunkedBucket",
    "BucketFile",
    "UploadStream",
    "DownloadStream",
    "bucket_tables",
]
