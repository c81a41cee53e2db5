"""Core Mentat data models."""

from __future__ import annotations

from dataclasses import dataclass

# Length of every stored vector.
DIMENSION = 384


@dataclass(slots=True)
class FileMeta:
    """Metadata recorded for one version of a file, keyed by its content hash."""

    path: str
    size: int
    mtime_ns: int


@dataclass(slots=True)
class ChunkMeta:
    """Byte range of a file version, keyed by its chunk id."""

    file_hash: bytes
    start: int
    end: int
    span_hash: bytes


@dataclass(slots=True, frozen=True)
class Span:
    """Half-open byte range ``[start, end)`` produced by the chunker."""

    start: int
    end: int
    span_hash: bytes

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(slots=True)
class ManifestEntry:
    """One enumerated file in an ingest manifest."""

    path: str
    hash: str
    size: int
