"""Incremental indexing pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Sequence, Set

from mentat.embedding.encoder import Embedder
from mentat.errors import EmbeddingError, IoError, MentatError
from mentat.hashing import chunk_id, content_hash
from mentat.index.storage import SQLiteStore
from mentat.ingestion.chunker import OVERLAP_FRACTION, TARGET_BYTES, chunk_bytes
from mentat.models import ChunkMeta, FileMeta
from mentat.utils.files import iter_source_paths

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexStats:
    indexed: int = 0
    skipped: int = 0
    empty: int = 0
    failed: int = 0
    chunks: int = 0
    processed_files: list[Path] = field(default_factory=list)

    def increment(self, status: str, path: Path) -> None:
        if status == "indexed":
            self.indexed += 1
        elif status == "skipped":
            self.skipped += 1
        elif status == "empty":
            self.empty += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


class Indexer:
    """Turns enumerated files into file, chunk and embedding rows.

    A file whose content hash, size and mtime all match a stored record is
    skipped without chunking or embedding, and so is any later file in the same
    run whose content matches one already handled; the first path in walk
    order stays on record. The file row is written before its spans, so an
    interrupted run can leave a known file with missing spans.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: SQLiteStore,
        *,
        target_bytes: int = TARGET_BYTES,
        overlap_fraction: float = OVERLAP_FRACTION,
        continue_on_error: bool = False,
        exclude: Iterable[Path] = (),
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.target_bytes = target_bytes
        self.overlap_fraction = overlap_fraction
        self.continue_on_error = continue_on_error
        self.exclude = list(exclude)

    def index(self, paths: Sequence[Path]) -> IndexStats:
        """Index every file found under the given paths."""
        stats = IndexStats()
        known = self.store.load_file_meta_map()
        # Content hashes already handled this run; later copies share their rows.
        seen: Set[bytes] = set()

        for path in iter_source_paths(paths, exclude=self.exclude):
            try:
                LOGGER.debug("Processing: %s", path)
                status = self._index_single(path, known, seen, stats)
            except MentatError as exc:
                if not self.continue_on_error:
                    LOGGER.error("Indexing aborted at %s: %s", path, exc)
                    raise
                LOGGER.error("Failed to process %s: %s", path, exc)
                status = "failed"
            stats.increment(status, path)

        LOGGER.info(
            "Indexed %d files (%d chunks), skipped %d, empty %d, failed %d",
            stats.indexed,
            stats.chunks,
            stats.skipped,
            stats.empty,
            stats.failed,
        )
        return stats

    def _index_single(
        self,
        path: Path,
        known: Dict[bytes, FileMeta],
        seen: Set[bytes],
        stats: IndexStats,
    ) -> str:
        try:
            data = path.read_bytes()
            stat = path.stat()
        except OSError as exc:
            raise IoError(f"Unable to read {path}: {exc}") from exc

        file_hash = content_hash(data)
        if file_hash in seen:
            LOGGER.debug("Same content as an earlier file, skipping %s", path)
            return "skipped"

        previous = known.get(file_hash)
        if (
            previous is not None
            and previous.size == stat.st_size
            and previous.mtime_ns == stat.st_mtime_ns
        ):
            seen.add(file_hash)
            return "skipped"

        meta = FileMeta(path=str(path), size=stat.st_size, mtime_ns=stat.st_mtime_ns)
        self.store.put_file(file_hash, meta)
        known[file_hash] = meta

        spans = chunk_bytes(
            data, target_bytes=self.target_bytes, overlap_fraction=self.overlap_fraction
        )
        if not spans:
            LOGGER.debug("No spans for %s (empty or binary)", path)
            seen.add(file_hash)
            return "empty"

        texts = [data[span.start : span.end].decode("utf-8", errors="replace") for span in spans]
        embeddings = self.embedder.embed(texts)
        if len(embeddings) != len(spans):
            raise EmbeddingError(
                f"Provider returned {len(embeddings)} vectors for {len(spans)} spans of {path}"
            )

        for span, vector in zip(spans, embeddings):
            key = chunk_id(file_hash, span.start, span.end)
            self.store.put_chunk(
                key,
                ChunkMeta(
                    file_hash=file_hash,
                    start=span.start,
                    end=span.end,
                    span_hash=span.span_hash,
                ),
            )
            self.store.put_embedding(key, vector)
        stats.chunks += len(spans)
        seen.add(file_hash)
        return "indexed"
