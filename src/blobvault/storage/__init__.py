"""Blob storage for blobvault.

Two interchangeable backends behind one contract (BlobBackend):
- DirectoryBackend: files under a local directory
- DocumentStoreBackend: chunked objects in a database bucket

Both accept an optional write transform that sees every byte before it is
persisted (encryption, compression, digests).
"""

from blobvault.storage.base import (
    BlobBackend,
    BlobFile,
    BlobInfo,
    BlobReader,
    BlobStat,
    BlobStream,
    BlobWriter,
    FileDescriptor,
    Lookup,
    LookupStatus,
    TransformFn,
)
from blobvault.storage.data_uri import DataURI, parse_data_uri, to_data_uri
from blobvault.storage.directory import DirectoryBackend, resolve_root
from blobvault.storage.document import DocumentStoreBackend
from blobvault.storage.factory import create_blob_backend, get_blob_backend

__all__ = [
    # Contract
    "BlobBackend",
    "BlobWriter",
    "BlobReader",
    "TransformFn",
    "FileDescriptor",
    "BlobInfo",
    "BlobStat",
    "BlobStream",
    "BlobFile",
    "Lookup",
    "LookupStatus",
    # Backends
    "DirectoryBackend",
    "DocumentStoreBackend",
    "resolve_root",
    "create_blob_backend",
    "get_blob_backend",
    # Data URIs
    "DataURI",
    "parse_data_uri",
    "to_data_uri",
]
