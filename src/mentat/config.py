"""Application configuration defaults."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from mentat.embedding.encoder import DEFAULT_BACKEND, DEFAULT_MODEL

DB_FILENAME = "kv.sqlite3"
HNSW_FILENAME = "embeds.hnsw"


@dataclass(slots=True)
class AppConfig:
    index_dir: Path = Path("index")
    embedding_backend: str = DEFAULT_BACKEND
    model_name: str = DEFAULT_MODEL
    target_bytes: int = 6000
    overlap_fraction: float = 0.1
    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef_search: int = 16
    host: str = "127.0.0.1"
    port: int = 6667
    max_request_bytes: int = 65536
    workers: int = 8

    def __post_init__(self) -> None:
        self.index_dir = Path(self.index_dir)

    def resolve_index_dir(self, base_dir: Path | None = None) -> Path:
        if self.index_dir.is_absolute() or base_dir is None:
            return self.index_dir
        return base_dir / self.index_dir

    @property
    def db_path(self) -> Path:
        return self.index_dir / DB_FILENAME

    @property
    def hnsw_path(self) -> Path:
        return self.index_dir / HNSW_FILENAME
