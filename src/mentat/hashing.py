"""Content hashes and chunk identity."""

from __future__ import annotations

import hashlib

HASH_BYTES = 32


def content_hash(data: bytes) -> bytes:
    """Return the 32-byte digest of ``data``; independent of path or time."""
    return hashlib.sha256(data).digest()


def chunk_id(file_hash: bytes, start: int, end: int) -> bytes:
    """Derive the key of a span from the file version and its byte range."""
    if len(file_hash) != HASH_BYTES:
        raise ValueError(f"file_hash must be {HASH_BYTES} bytes, got {len(file_hash)}")
    sha = hashlib.sha256()
    sha.update(file_hash)
    sha.update(start.to_bytes(8, "little"))
    sha.update(end.to_bytes(8, "little"))
    return sha.digest()
