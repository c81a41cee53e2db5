"""Fixed-window byte chunker.

Files are split into windows of ``target_bytes`` with a fractional overlap
between neighbours. Anything containing a NUL byte is treated as binary and
yields no spans.
"""

from __future__ import annotations

import logging
from pathlib import Path

from mentat.errors import IoError
from mentat.hashing import content_hash
from mentat.models import Span

LOGGER = logging.getLogger(__name__)

TARGET_BYTES = 6000
OVERLAP_FRACTION = 0.1


def is_binary(data: bytes) -> bool:
    return b"\x00" in data


def chunk_bytes(
    data: bytes,
    *,
    target_bytes: int = TARGET_BYTES,
    overlap_fraction: float = OVERLAP_FRACTION,
) -> list[Span]:
    """Split ``data`` into overlapping spans.

    Windows advance by ``target_bytes - overlap`` and the last one is cut at
    ``len(data)``; iteration stops as soon as a window reaches the end, so
    there is exactly one terminal span.
    """
    if target_bytes <= 0:
        raise ValueError("target_bytes must be positive")
    if not 0.0 <= overlap_fraction < 1.0:
        raise ValueError("overlap_fraction must be in [0, 1)")

    if not data or is_binary(data):
        return []

    overlap = int(target_bytes * overlap_fraction)
    step = max(target_bytes - overlap, 1)
    total = len(data)

    spans: list[Span] = []
    start = 0
    while start < total:
        end = min(start + target_bytes, total)
        spans.append(Span(start=start, end=end, span_hash=content_hash(data[start:end])))
        if end == total:
            break
        start += step
    return spans


def chunk_file(
    path: Path,
    *,
    target_bytes: int = TARGET_BYTES,
    overlap_fraction: float = OVERLAP_FRACTION,
) -> list[Span]:
    """Read ``path`` once and chunk its bytes."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise IoError(f"Unable to read {path}: {exc}") from exc
    spans = chunk_bytes(data, target_bytes=target_bytes, overlap_fraction=overlap_fraction)
    LOGGER.debug("Chunked %s into %d spans", path, len(spans))
    return spans
