"""
Data models shared by the indexing and retrieval layers.

VectorEntry is the indexed unit (normally one chunk of a source). It is
created by the retrieval service, persisted by the vector store, and never
mutated afterwards: re-indexing a source writes fresh entries under the same
stable ids instead of editing existing ones.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class SourceType(str, Enum):
    """Kind of content a source was extracted from."""

    ARTICLE = "article"
    EMAIL = "email"
    PDF = "pdf"


class MatchType(str, Enum):
    """Which retrieval path produced a search result."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class SkipReason(str, Enum):
    """Non-error outcomes of an indexing request."""

    UNCHANGED = "unchanged"
    NO_CHUNKS = "no_chunks"


@dataclass
class EntryMetadata:
    """Provenance carried by every VectorEntry."""

    source_id: str
    source_url: str
    source_type: SourceType
    title: str = ""
    chunk_index: int = 0
    total_chunks: int = 1
    is_summary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_url": self.source_url,
            "source_type": self.source_type.value,
            "title": self.title,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "is_summary": self.is_summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntryMetadata":
        return cls(
            source_id=data["source_id"],
            source_url=data.get("source_url", ""),
            source_type=SourceType(data.get("source_type", SourceType.ARTICLE.value)),
            title=data.get("title", ""),
            chunk_index=int(data.get("chunk_index", 0)),
            total_chunks=int(data.get("total_chunks", 1)),
            is_summary=bool(data.get("is_summary", False)),
        )


@dataclass(frozen=True)
class VectorEntry:
    """
    A single indexed unit.

    Invariants:
    - id is stable per chunk: ``<type>:<source_id>:chunk:<index>``
    - content and metadata never change after creation
    """

    id: str
    type: SourceType
    content: str
    metadata: EntryMetadata
    timestamp: float = field(default_factory=time.time)

    @staticmethod
    def make_id(source_type: SourceType, source_id: str, chunk_index: int) -> str:
        return f"{source_type.value}:{source_id}:chunk:{chunk_index}"

    def to_record(self) -> dict[str, Any]:
        """Serialize for the durable document store."""
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "VectorEntry":
        return cls(
            id=record["id"],
            type=SourceType(record["type"]),
            content=record.get("content", ""),
            metadata=EntryMetadata.from_dict(record.get("metadata", {})),
            timestamp=float(record.get("timestamp", 0.0)),
        )


@dataclass
class SearchResult:
    """A scored, attributable hit. Produced per query, never persisted."""

    entry: VectorEntry
    score: float
    match_type: MatchType


@dataclass
class SourceMetadataRecord:
    """
    Per-source indexing record (one per source, not per chunk).

    A source is up to date iff content_hash equals the hash of its current
    text and the vector store verifiably holds at least one of its entries.
    """

    source_id: str
    content_hash: str
    chunk_count: int
    timestamp: float = field(default_factory=time.time)

    def to_record(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "content_hash": self.content_hash,
            "chunk_count": self.chunk_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "SourceMetadataRecord":
        return cls(
            source_id=record["source_id"],
            content_hash=record["content_hash"],
            chunk_count=int(record.get("chunk_count", 0)),
            timestamp=float(record.get("timestamp", 0.0)),
        )


@dataclass
class ChunkMetadata:
    """Caller-supplied description of a source being indexed."""

    source_id: str
    source_url: str
    source_type: SourceType = SourceType.ARTICLE
    title: str = ""


@dataclass
class IndexingStats:
    """Observability record for the most recent indexing request."""

    source_id: str
    wall_clock_ms: float = 0.0
    chunk_count: int = 0
    embedding_ms: float = 0.0
    storage_ms: float = 0.0
    skipped: bool = False
    skip_reason: Optional[SkipReason] = None
    batches_failed: int = 0
    chunks_removed: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.batches_failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "wall_clock_ms": self.wall_clock_ms,
            "chunk_count": self.chunk_count,
            "embedding_ms": self.embedding_ms,
            "storage_ms": self.storage_ms,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "batches_failed": self.batches_failed,
            "chunks_removed": self.chunks_removed,
            "error": self.error,
        }


@dataclass
class IndexProgress:
    """Progress notification emitted during indexing (percent is 0-100)."""

    stage: str
    percent: int
    message: str = ""


ProgressCallback = Callable[[IndexProgress], None]


@dataclass
class SourceCitation:
    """One numbered entry of a citation list."""

    index: int
    title: str
    url: str
    type: SourceType
    score: float
    snippet: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "title": self.title,
            "url": self.url,
            "type": self.type.value,
            "score": self.score,
            "snippet": self.snippet,
        }


@dataclass
class SourcedContext:
    """Numbered context block plus the matching citation list."""

    context: str = ""
    sources: list[SourceCitation] = field(default_factory=list)
