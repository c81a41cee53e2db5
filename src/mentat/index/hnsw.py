"""Approximate nearest-neighbour index over the embedding table.

The graph is an hnswlib index under cosine distance. Internal ids are the
positions ``0..n-1`` in the store's iteration order at build time; the
matching chunk ids are persisted next to the graph so that a reloaded index
resolves to the same chunks it was built from.

Persisted artifacts for a base path ``P``:

- ``P``      hnswlib graph
- ``P.hdr``  JSON header ``{count, dimension, space, m, ef_construction}``
- ``P.ids``  JSON list of hex chunk ids indexed by internal id
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Tuple

import hnswlib
import numpy as np

from mentat.embedding.encoder import Embedder
from mentat.errors import EmptyIndexError, IndexNotReadyError, VectorIndexError
from mentat.index.storage import SQLiteStore
from mentat.models import DIMENSION

LOGGER = logging.getLogger(__name__)

SPACE = "cosine"


def header_path(path: Path) -> Path:
    return Path(f"{path}.hdr")


def ids_path(path: Path) -> Path:
    return Path(f"{path}.ids")


class VectorIndex:
    """Build-once, search-many HNSW graph."""

    def __init__(
        self,
        dimension: int = DIMENSION,
        *,
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 16,
    ) -> None:
        self.dimension = dimension
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self._index: hnswlib.Index | None = None
        self._chunk_ids: List[bytes] = []

    @property
    def is_ready(self) -> bool:
        return self._index is not None

    @property
    def count(self) -> int:
        return len(self._chunk_ids) if self._index is not None else 0

    @classmethod
    def exists(cls, path: Path) -> bool:
        return Path(path).is_file() and header_path(path).is_file()

    def build(self, store: SQLiteStore) -> int:
        """Insert every stored vector, then freeze the graph for searching."""
        chunk_ids: List[bytes] = []
        vectors: List[np.ndarray] = []
        for chunk_id, vector in store.iter_embeddings():
            chunk_ids.append(chunk_id)
            vectors.append(vector)

        if not vectors:
            raise EmptyIndexError()

        LOGGER.info("Building HNSW index for %d vectors...", len(vectors))
        data = np.vstack(vectors).astype(np.float32, copy=False)
        if data.shape[1] != self.dimension:
            raise VectorIndexError(
                f"Stored vectors have dimension {data.shape[1]}, expected {self.dimension}"
            )

        index = hnswlib.Index(space=SPACE, dim=self.dimension)
        index.init_index(
            max_elements=len(vectors),
            ef_construction=self.ef_construction,
            M=self.m,
            random_seed=100,
        )
        # Single-threaded insertion keeps graph construction deterministic.
        index.add_items(data, np.arange(len(vectors)), num_threads=1)
        index.set_ef(self.ef_search)

        self._index = index
        self._chunk_ids = chunk_ids
        return len(chunk_ids)

    def save(self, path: Path) -> Path:
        if self._index is None:
            raise IndexNotReadyError()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_graph = Path(f"{path}.tmp")
        self._index.save_index(str(tmp_graph))
        os.replace(tmp_graph, path)
        ids_path(path).write_text(
            json.dumps([chunk_id.hex() for chunk_id in self._chunk_ids]), encoding="utf-8"
        )
        header = {
            "count": self.count,
            "dimension": self.dimension,
            "space": SPACE,
            "m": self.m,
            "ef_construction": self.ef_construction,
        }
        header_path(path).write_text(json.dumps(header), encoding="utf-8")
        LOGGER.info("Saved HNSW index to %s", path)
        return path

    def load(self, path: Path) -> int:
        """Deserialize a persisted graph; the store is not consulted."""
        path = Path(path)
        if not self.exists(path):
            raise IndexNotReadyError(f"No persisted index at {path}")

        try:
            header = json.loads(header_path(path).read_text(encoding="utf-8"))
            count = int(header["count"])
            dimension = int(header["dimension"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise VectorIndexError(f"Corrupt index header for {path}: {exc}") from exc

        if dimension != self.dimension:
            raise VectorIndexError(
                f"Index at {path} has dimension {dimension}, expected {self.dimension}"
            )

        index = hnswlib.Index(space=SPACE, dim=dimension)
        try:
            index.load_index(str(path), max_elements=count)
        except RuntimeError as exc:
            raise VectorIndexError(f"Unable to load index {path}: {exc}") from exc

        if index.get_current_count() != count:
            raise VectorIndexError(
                f"Index at {path} holds {index.get_current_count()} vectors, header says {count}"
            )

        chunk_ids: List[bytes] = []
        if ids_path(path).is_file():
            chunk_ids = [
                bytes.fromhex(value)
                for value in json.loads(ids_path(path).read_text(encoding="utf-8"))
            ]
        if len(chunk_ids) != count:
            raise VectorIndexError(f"Id map for {path} does not match {count} vectors")

        index.set_ef(self.ef_search)
        self.m = int(header.get("m", self.m))
        self.ef_construction = int(header.get("ef_construction", self.ef_construction))
        self._index = index
        self._chunk_ids = chunk_ids
        LOGGER.info("Loaded HNSW index with %d vectors from %s", count, path)
        return count

    def search_vector(self, vector: np.ndarray, k: int) -> List[Tuple[int, float]]:
        """Return ``(internal_id, cosine_distance)`` pairs, nearest first."""
        if self._index is None:
            raise IndexNotReadyError()
        k = min(int(k), self.count)
        if k <= 0:
            return []

        query = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        if query.shape[1] != self.dimension:
            raise VectorIndexError(
                f"Query has dimension {query.shape[1]}, expected {self.dimension}"
            )
        self._index.set_ef(max(self.ef_search, k))
        try:
            labels, distances = self._index.knn_query(query, k=k, num_threads=1)
        except RuntimeError as exc:
            raise VectorIndexError(f"Search failed: {exc}") from exc
        return [(int(label), float(dist)) for label, dist in zip(labels[0], distances[0])]

    def search(self, query: str, k: int, embedder: Embedder) -> List[Tuple[int, float]]:
        if self._index is None:
            raise IndexNotReadyError()
        return self.search_vector(embedder.embed_query(query), k)

    def chunk_id_for(self, internal_id: int) -> bytes:
        if not 0 <= internal_id < len(self._chunk_ids):
            raise VectorIndexError(f"Unknown internal id {internal_id}")
        return self._chunk_ids[internal_id]

    def __repr__(self) -> str:
        state = "ready" if self.is_ready else "empty"
        return f"VectorIndex(dimension={self.dimension}, count={self.count}, {state})"


def remove_artifacts(path: Path) -> None:
    for artifact in (Path(path), header_path(path), ids_path(path)):
        artifact.unlink(missing_ok=True)
