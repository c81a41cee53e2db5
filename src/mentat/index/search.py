"""Exact (brute-force) semantic search over the store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from mentat.embedding.encoder import Embedder
from mentat.index.storage import SQLiteStore


@dataclass(slots=True)
class SearchResult:
    chunk_id: str
    score: float
    path: str | None
    start: int | None
    end: int | None


class Searcher:
    """High-level API to query the vector store."""

    def __init__(self, embedder: Embedder, store: SQLiteStore) -> None:
        self.embedder = embedder
        self.store = store

    def search(self, query: str, *, top_k: int = 5) -> List[SearchResult]:
        embedding = self.embedder.embed_query(query)
        rows = self.store.search(embedding, top_k=top_k)
        results: List[SearchResult] = []
        for row in rows:
            location = self.store.describe_chunk(row["chunk_id"]) or {}
            results.append(
                SearchResult(
                    chunk_id=row["chunk_id"].hex(),
                    score=float(row["score"]),
                    path=location.get("path"),
                    start=location.get("start"),
                    end=location.get("end"),
                )
            )
        return results
