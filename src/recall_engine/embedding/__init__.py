"""Embedding layer: backends and the retrying client."""

from .backends import EmbeddingBackend, OllamaEmbeddingBackend
from .client import EmbeddingClient, EmbeddingStats, is_transient

__all__ = [
    "EmbeddingBackend",
    "EmbeddingClient",
    "EmbeddingStats",
    "OllamaEmbeddingBackend",
    "is_transient",
]
