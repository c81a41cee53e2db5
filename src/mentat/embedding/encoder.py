"""Embedding providers: a sentence-transformers model and a deterministic stand-in."""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Literal, Protocol, Sequence

import numpy as np

from mentat.errors import EmbeddingError
from mentat.models import DIMENSION

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_BACKEND = "pseudo"

_MASK64 = (1 << 64) - 1
_XORSHIFT_MULTIPLIER = 2685821657736338717

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    dimension: int

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray: ...

    def embed_query(self, text: str) -> np.ndarray: ...


@dataclass(slots=True)
class EmbeddingConfig:
    backend: Literal["pseudo", "sentence-transformers"] = DEFAULT_BACKEND
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    device: str | None = None


def detect_device() -> str:
    """Pick the torch device the sentence-transformer should run on."""
    try:
        import torch
    except ImportError:
        logger.debug("PyTorch not available for device detection")
        return "cpu"

    if torch.cuda.is_available():
        logger.debug("CUDA GPU detected: %s", torch.cuda.get_device_name(0))
        return "cuda"
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        logger.debug("Apple MPS GPU detected")
        return "mps"
    logger.debug("No GPU detected, will use CPU")
    return "cpu"


class EmbeddingModel:
    """Thin wrapper around `SentenceTransformer` producing float32 vectors of length D.

    The model is loaded lazily on first use; loading is guarded so that daemon
    worker threads share one instance.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig(backend="sentence-transformers")
        self.dimension = DIMENSION
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    @property
    def model(self) -> SentenceTransformer:
        if self._model is None:
            with self._lock:
                if self._model is None:
                    self._model = self._load_model()
        return self._model

    def _load_model(self) -> SentenceTransformer:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise EmbeddingError("sentence-transformers is not installed") from exc

        logger.info("Loading embedding model: %s", self.config.model_name)
        try:
            device = self.config.device or detect_device()
            model = SentenceTransformer(self.config.model_name, device=device)
        except Exception as exc:
            raise EmbeddingError(
                f"Unable to load model {self.config.model_name}: {exc}"
            ) from exc

        model_dim = int(model.get_sentence_embedding_dimension() or 0)
        if model_dim != self.dimension:
            raise EmbeddingError(
                f"Model {self.config.model_name} produces {model_dim}-d vectors, "
                f"expected {self.dimension}"
            )
        logger.info("Model loaded on device: %s", model.device)
        return model

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings for input texts."""
        sentences = list(texts)
        if not sentences:
            return np.empty((0, self.dimension), dtype=np.float32)
        try:
            embeddings = self.model.encode(
                sentences,
                batch_size=self.config.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize,
            )
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding failed: {exc}") from exc
        return embeddings.astype("float32", copy=False)

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]

    def __repr__(self) -> str:
        loaded = "loaded" if self._model is not None else "not loaded"
        return f"EmbeddingModel(model={self.config.model_name}, {loaded})"


def pseudo_vector(text: str, dimension: int = DIMENSION) -> np.ndarray:
    """Deterministic vector in [-1, 1] seeded by the SHA-256 of ``text``.

    Values come from an xorshift64* stream whose seed is the first 8 digest
    bytes read little endian, forced odd so the state is never zero.
    """
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    state = int.from_bytes(digest[:8], "little") | 1
    out = np.empty(dimension, dtype=np.float32)
    for i in range(dimension):
        state ^= state >> 12
        state ^= (state << 25) & _MASK64
        state ^= state >> 27
        value = (state * _XORSHIFT_MULTIPLIER) & _MASK64
        out[i] = (value / _MASK64) * 2.0 - 1.0
    return out


class PseudoEmbedder:
    """Model-free provider: identical text always maps to a bit-identical vector."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self.dimension = dimension

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        vectors = [pseudo_vector(text, self.dimension) for text in texts]
        if not vectors:
            return np.empty((0, self.dimension), dtype=np.float32)
        return np.vstack(vectors)

    def embed_query(self, text: str) -> np.ndarray:
        return pseudo_vector(text, self.dimension)

    def __repr__(self) -> str:
        return f"PseudoEmbedder(dimension={self.dimension})"


def create_embedder(config: EmbeddingConfig | None = None) -> Embedder:
    """Instantiate the provider selected by ``config.backend``."""
    config = config or EmbeddingConfig()
    if config.backend == "pseudo":
        return PseudoEmbedder()
    if config.backend == "sentence-transformers":
        return EmbeddingModel(config)
    raise EmbeddingError(f"Unknown embedding backend: {config.backend}")
