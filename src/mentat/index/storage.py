"""SQLite-backed key-value tables for files, chunks and embeddings."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Set, Tuple

import numpy as np

from mentat.errors import StoreError
from mentat.hashing import HASH_BYTES
from mentat.models import DIMENSION, ChunkMeta, FileMeta

LOGGER = logging.getLogger(__name__)

# Vectors are stored as little-endian float32 regardless of host byte order.
_VECTOR_DTYPE = np.dtype("<f4")


def encode_vector(vector: np.ndarray, *, dimension: int = DIMENSION) -> bytes:
    values = np.asarray(vector, dtype=np.float32)
    if values.shape != (dimension,):
        raise StoreError(f"Expected a vector of length {dimension}, got shape {values.shape}")
    return values.astype(_VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes, *, dimension: int = DIMENSION) -> np.ndarray:
    if len(blob) != dimension * _VECTOR_DTYPE.itemsize:
        raise StoreError(
            f"Stored vector has {len(blob)} bytes, expected {dimension * _VECTOR_DTYPE.itemsize}"
        )
    return np.frombuffer(blob, dtype=_VECTOR_DTYPE).astype(np.float32)


def _check_key(key: bytes) -> bytes:
    if len(key) != HASH_BYTES:
        raise StoreError(f"Keys must be {HASH_BYTES} bytes, got {len(key)}")
    return bytes(key)


class SQLiteStore:
    """Persistence layer for file, chunk and embedding records.

    Every ``put_*`` commits on its own. WAL journaling lets readers run
    alongside the single writer.
    """

    def __init__(self, db_path: Path, *, dimension: int = DIMENSION) -> None:
        self.db_path = Path(db_path)
        self.dimension = dimension
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._ensure_schema()
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Unable to open store at {self.db_path}: {exc}") from exc

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StoreError(f"Transaction failed: {exc}") from exc
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    hash BLOB PRIMARY KEY,
                    path TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    mtime_ns INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    chunk_id BLOB PRIMARY KEY,
                    file_hash BLOB NOT NULL,
                    span_start INTEGER NOT NULL,
                    span_end INTEGER NOT NULL,
                    span_hash BLOB NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS embeddings (
                    chunk_id BLOB PRIMARY KEY,
                    vector BLOB NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_chunks_file_hash ON chunks(file_hash)"
            )

    # -- writes -------------------------------------------------------------

    def put_file(self, content_hash: bytes, meta: FileMeta) -> None:
        key = _check_key(content_hash)
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO files(hash, path, size, mtime_ns) VALUES (?, ?, ?, ?)",
                (key, meta.path, meta.size, meta.mtime_ns),
            )

    def put_chunk(self, chunk_id: bytes, meta: ChunkMeta) -> None:
        key = _check_key(chunk_id)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO chunks(chunk_id, file_hash, span_start, span_end, span_hash)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    key,
                    _check_key(meta.file_hash),
                    meta.start,
                    meta.end,
                    _check_key(meta.span_hash),
                ),
            )

    def put_embedding(self, chunk_id: bytes, vector: np.ndarray) -> None:
        key = _check_key(chunk_id)
        blob = encode_vector(vector, dimension=self.dimension)
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO embeddings(chunk_id, vector) VALUES (?, ?)",
                (key, sqlite3.Binary(blob)),
            )

    # -- reads --------------------------------------------------------------

    def list_known_hashes(self) -> Set[bytes]:
        rows = self._read("SELECT hash FROM files")
        return {bytes(row["hash"]) for row in rows}

    def load_file_meta_map(self) -> Dict[bytes, FileMeta]:
        rows = self._read("SELECT hash, path, size, mtime_ns FROM files")
        return {
            bytes(row["hash"]): FileMeta(
                path=row["path"], size=row["size"], mtime_ns=row["mtime_ns"]
            )
            for row in rows
        }

    def get_file(self, content_hash: bytes) -> FileMeta | None:
        rows = self._read(
            "SELECT path, size, mtime_ns FROM files WHERE hash = ?", (bytes(content_hash),)
        )
        if not rows:
            return None
        row = rows[0]
        return FileMeta(path=row["path"], size=row["size"], mtime_ns=row["mtime_ns"])

    def get_chunk(self, chunk_id: bytes) -> ChunkMeta | None:
        rows = self._read(
            "SELECT file_hash, span_start, span_end, span_hash FROM chunks WHERE chunk_id = ?",
            (bytes(chunk_id),),
        )
        if not rows:
            return None
        row = rows[0]
        return ChunkMeta(
            file_hash=bytes(row["file_hash"]),
            start=row["span_start"],
            end=row["span_end"],
            span_hash=bytes(row["span_hash"]),
        )

    def get_embedding(self, chunk_id: bytes) -> np.ndarray | None:
        rows = self._read(
            "SELECT vector FROM embeddings WHERE chunk_id = ?", (bytes(chunk_id),)
        )
        if not rows:
            return None
        return decode_vector(bytes(rows[0]["vector"]), dimension=self.dimension)

    def iter_embeddings(self) -> Iterator[Tuple[bytes, np.ndarray]]:
        """Lazily yield ``(chunk_id, vector)`` in key order."""
        try:
            cursor = self._conn.execute("SELECT chunk_id, vector FROM embeddings ORDER BY chunk_id")
            for row in cursor:
                yield bytes(row["chunk_id"]), decode_vector(
                    bytes(row["vector"]), dimension=self.dimension
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to read embeddings: {exc}") from exc

    def count_embeddings(self) -> int:
        return int(self._read("SELECT COUNT(*) AS n FROM embeddings")[0]["n"])

    def describe_chunk(self, chunk_id: bytes) -> dict | None:
        """Join a chunk with its file row for display."""
        rows = self._read(
            """
            SELECT c.span_start AS span_start, c.span_end AS span_end, f.path AS path
            FROM chunks c
            LEFT JOIN files f ON f.hash = c.file_hash
            WHERE c.chunk_id = ?
            """,
            (bytes(chunk_id),),
        )
        if not rows:
            return None
        row = rows[0]
        return {"path": row["path"], "start": row["span_start"], "end": row["span_end"]}

    def search(self, embedding: np.ndarray, *, top_k: int = 10) -> List[dict]:
        """Exact cosine search over every stored vector."""
        if top_k <= 0:
            return []
        ids: List[bytes] = []
        vectors: List[np.ndarray] = []
        for chunk_id, vector in self.iter_embeddings():
            ids.append(chunk_id)
            vectors.append(vector)
        if not vectors:
            return []

        matrix = np.vstack(vectors)
        query = np.asarray(embedding, dtype="float32")
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1.0)
        norms[norms == 0] = 1.0
        scores = (matrix @ query) / norms

        if top_k < len(scores):
            top_indices = np.argpartition(scores, -top_k)[-top_k:]
            top_indices = top_indices[np.argsort(scores[top_indices])[::-1]]
        else:
            top_indices = np.argsort(scores)[::-1]

        return [{"chunk_id": ids[idx], "score": float(scores[idx])} for idx in top_indices]

    def get_stats(self) -> dict:
        counts = self._read(
            """
            SELECT
                (SELECT COUNT(*) FROM files) AS files,
                (SELECT COUNT(*) FROM chunks) AS chunks,
                (SELECT COUNT(*) FROM embeddings) AS embeddings
            """
        )[0]
        return {
            "file_count": counts["files"],
            "chunk_count": counts["chunks"],
            "embedding_count": counts["embeddings"],
            "db_size_bytes": self.db_path.stat().st_size if self.db_path.exists() else 0,
        }

    # -- compaction ---------------------------------------------------------

    def remove_orphans(self) -> dict:
        """Drop stale file versions and every chunk/embedding no longer reachable.

        A file row is stale when its path no longer exists or a newer row
        (larger mtime) records the same path.
        """
        with self.transaction() as conn:
            rows = conn.execute("SELECT hash, path, mtime_ns FROM files").fetchall()
            newest: Dict[str, int] = {}
            for row in rows:
                newest[row["path"]] = max(newest.get(row["path"], row["mtime_ns"]), row["mtime_ns"])
            stale = [
                row["hash"]
                for row in rows
                if not Path(row["path"]).exists() or row["mtime_ns"] < newest[row["path"]]
            ]
            for file_hash in stale:
                conn.execute("DELETE FROM files WHERE hash = ?", (file_hash,))
            chunks = conn.execute(
                "DELETE FROM chunks WHERE file_hash NOT IN (SELECT hash FROM files)"
            ).rowcount
            embeddings = conn.execute(
                "DELETE FROM embeddings WHERE chunk_id NOT IN (SELECT chunk_id FROM chunks)"
            ).rowcount
        LOGGER.info(
            "Pruned %d files, %d chunks, %d embeddings", len(stale), chunks, embeddings
        )
        return {"files": len(stale), "chunks": chunks, "embeddings": embeddings}

    def _read(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Query failed: {exc}") from exc
