"""Storage layer: durable documents, ANN backend, lexical index and the vector store."""

from .ann import AnnBackend, AnnMatch, NumpyAnnIndex
from .document_store import DocumentStore, InMemoryDocumentStore, RedisDocumentStore
from .lexical import LexicalIndex, tokenize
from .snapshot import decode_snapshot, encode_snapshot
from .vector_store import ANN_SNAPSHOT_KEY, VectorStore, document_namespace

__all__ = [
    "ANN_SNAPSHOT_KEY",
    "AnnBackend",
    "AnnMatch",
    "DocumentStore",
    "InMemoryDocumentStore",
    "LexicalIndex",
    "NumpyAnnIndex",
    "RedisDocumentStore",
    "VectorStore",
    "decode_snapshot",
    "document_namespace",
    "encode_snapshot",
    "tokenize",
]
