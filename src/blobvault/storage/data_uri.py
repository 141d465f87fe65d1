"""Helpers for base64 data URIs (``data:<type>;base64,<payload>``)."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from blobvault.errors import InvalidDataURIError

DATA_PREFIX = "data:"
BASE64_MARKER = ";base64,"


@dataclass(frozen=True)
class DataURI:
    """A parsed data URI. ``image`` is the base64 payload, still encoded."""

    image: str
    content_type: str

    def decode(self) -> bytes:
        try:
            return base64.b64decode(self.image, validate=True)
        except binascii.Error as exc:
            raise InvalidDataURIError(f"Invalid base64 payload: {exc}") from exc


def parse_data_uri(data_uri: str) -> DataURI:
    """Split a data URI into payload and content type.

    Raises:
        InvalidDataURIError: If the ``data:`` prefix or the ``;base64,``
            marker is missing
    """
    if not data_uri.startswith(DATA_PREFIX):
        raise InvalidDataURIError("Data URI must start with 'data:'")
    header, sep, payload = data_uri.partition(BASE64_MARKER)
    if not sep:
        raise InvalidDataURIError("Data URI is not base64 encoded")
    return DataURI(image=payload, content_type=header[len(DATA_PREFIX) :])


def to_data_uri(content: bytes, content_type: str = "application/octet-stream") -> str:
    """Encode ``content`` as a base64 data URI."""
    encoded = base64.b64encode(content).decode("ascii")
    return f"{DATA_PREFIX}{content_type}{BASE64_MARKER}{encoded}"
