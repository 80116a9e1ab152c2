"""
Content fingerprints (SHA-256, hex) for deduplication and tamper detection.

Streams are consumed in chunks; nothing here loads a whole document into memory.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import BinaryIO

from app.taxvault.errors import IOFailure

CHUNK_SIZE = 64 * 1024


def _read_chunk(stream: BinaryIO, size: int) -> bytes:
    try:
        return stream.read(size)
    except OSError as e:
        raise IOFailure(f"Failed to read content stream: {e}") from e


def fingerprint(stream: BinaryIO, chunk_size: int = CHUNK_SIZE) -> str:
    h = hashlib.sha256()
    while True:
        chunk = _read_chunk(stream, chunk_size)
        if not chunk:
            break
        h.update(chunk)
    return h.hexdigest()


def verify(stream: BinaryIO, expected: str, chunk_size: int = CHUNK_SIZE) -> bool:
    """
    Recompute the fingerprint of `stream` and compare it with `expected`.

    The whole stream is always read, even when `expected` is obviously malformed.
    """
    return matches(fingerprint(stream, chunk_size), expected)


def matches(actual: str, expected: str) -> bool:
    return hmac.compare_digest(actual.encode("ascii"), (expected or "").strip().lower().encode("utf-8"))


class HashingReader:
    """
    Read-through wrapper: hashes and counts every byte handed to the consumer.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._hash = hashlib.sha256()
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = _read_chunk(self._stream, size)
        if chunk:
            self._hash.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    def hexdigest(self) -> str:
        return self._hash.hexdigest()
