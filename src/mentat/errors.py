"""Exception hierarchy shared by the pipeline, the daemon and the CLI."""

from __future__ import annotations


class MentatError(Exception):
    """Base class for every failure the CLI knows how to report."""

    exit_code = 1


class IoError(MentatError):
    """A file or its metadata could not be read."""

    exit_code = 2


class StoreError(MentatError):
    """A transaction or (de)serialization against the persisted tables failed."""

    exit_code = 3


class ProtocolError(MentatError):
    """A daemon request was malformed, oversized or unrecognized."""

    exit_code = 4


class VectorIndexError(MentatError):
    """The ANN index could not be built, loaded or queried."""

    exit_code = 5


class IndexNotReadyError(VectorIndexError):
    """Search attempted before the index was built or loaded."""

    def __init__(self, message: str = "index not ready") -> None:
        super().__init__(message)


class EmptyIndexError(VectorIndexError):
    """Build attempted over an embedding table with zero vectors."""

    def __init__(self, message: str = "cannot build index over zero vectors") -> None:
        super().__init__(message)


class EmbeddingError(MentatError):
    """The embedding provider failed or returned an unusable vector."""

    exit_code = 6
