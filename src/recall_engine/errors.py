"""Exception hierarchy for the recall engine."""


class RecallEngineError(Exception):
    """Base class for all recall engine errors."""

    pass


class EmbeddingError(RecallEngineError):
    """Raised when the embedding backend fails permanently or retries run out."""

    pass


class TransientEmbeddingError(EmbeddingError):
    """Raised by backends for failures worth retrying (timeouts, backend unavailable)."""

    pass


class VectorStoreError(RecallEngineError):
    """Raised when a queued vector store operation fails."""

    pass


class SnapshotFormatError(VectorStoreError):
    """Raised when a persisted ANN snapshot cannot be decoded."""

    pass


class StorageError(RecallEngineError):
    """Raised by document stores when a read or write fails."""

    pass
