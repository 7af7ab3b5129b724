# retrieval/session.py
"""
Ephemeral retrieval over the single document currently open.

Everything lives in memory: chunk texts, their embeddings and a local
keyword index. Nothing is persisted and nothing carries over between
sessions. Re-indexing happens only when the document's hash changes.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import numpy as np
from loguru import logger

from ..config import Config
from ..embedding import EmbeddingClient
from ..fingerprints import content_hash
from ..ingestion import Chunker, ParagraphChunker
from ..models import EntryMetadata, SourceType, VectorEntry
from ..storage import LexicalIndex

MIN_CONTENT_CHARS = 50
SESSION_HASH_EDGE_CHARS = 100
VECTOR_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3
SESSION_SOURCE_ID = "session"


@dataclass
class SessionChunk:
    index: int
    text: str
    embedding: np.ndarray


@dataclass
class SessionSearchResult:
    text: str
    score: float
    chunk_index: int


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity between two vectors (0.0 if either is all zeros)."""
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


class SessionRetrievalService:
    """Search within one open document, without persistence, rerank or caching."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        chunker: Optional[Chunker] = None,
        batch_size: int = Config.INDEX_BATCH_SIZE,
    ):
        self.embedder = embedder
        self.chunker = chunker or ParagraphChunker()
        self.batch_size = batch_size

        self._chunks: dict[int, SessionChunk] = {}
        self._keyword_index = LexicalIndex()
        self._indexed = False
        self._content_hash = ""
        self._indexing_task: Optional[asyncio.Task] = None

    async def index_document(self, content: str) -> None:
        """Index the open document; no-op for short or unchanged content."""
        if not content or len(content.strip()) < MIN_CONTENT_CHARS:
            return

        new_hash = content_hash(content, edge_chars=SESSION_HASH_EDGE_CHARS)
        if self._indexed and self._content_hash == new_hash:
            logger.debug("Session content unchanged, skipping re-index")
            return

        if self._indexing_task is not None:
            await asyncio.shield(self._indexing_task)
            if self._content_hash == new_hash:
                return

        task = asyncio.create_task(self._do_index(content, new_hash))
        self._indexing_task = task
        try:
            await asyncio.shield(task)
        finally:
            if self._indexing_task is task:
                self._indexing_task = None

    async def _do_index(self, content: str, new_hash: str) -> None:
        start = time.perf_counter()
        logger.info(f"Indexing session document ({len(content)} chars)")
        self._reset_state()

        chunks = self.chunker.chunk_for_embedding(content)
        if not chunks:
            logger.info("Session document produced no chunks")
            return

        for offset in range(0, len(chunks), self.batch_size):
            batch = chunks[offset : offset + self.batch_size]
            try:
                vectors = await self.embedder.embed_batch([c.text for c in batch])
            except Exception as e:
                logger.error(f"Session embedding batch failed: {e}")
                continue

            for chunk, vector in zip(batch, vectors):
                self._chunks[chunk.index] = SessionChunk(
                    index=chunk.index, text=chunk.text, embedding=np.asarray(vector, dtype=np.float32)
                )
                self._keyword_index.add(self._as_entry(chunk.index, chunk.text))

        self._indexed = True
        self._content_hash = new_hash
        logger.info(
            f"Session indexed {len(self._chunks)} chunks in "
            f"{(time.perf_counter() - start) * 1000:.0f}ms"
        )

    @staticmethod
    def _as_entry(index: int, text: str) -> VectorEntry:
        return VectorEntry(
            id=f"chunk:{index}",
            type=SourceType.ARTICLE,
            content=text,
            metadata=EntryMetadata(
                source_id=SESSION_SOURCE_ID,
                source_url="",
                source_type=SourceType.ARTICLE,
                chunk_index=index,
            ),
        )

    async def search(self, query: str, limit: int = 5) -> list[SessionSearchResult]:
        """Weighted vector + keyword search; failures return an empty list."""
        if not self._indexed or not self._chunks:
            return []

        try:
            query_vec = np.asarray(await self.embedder.embed_query(query), dtype=np.float32)
            vector_scores = {
                index: cosine_similarity(query_vec, chunk.embedding)
                for index, chunk in self._chunks.items()
            }
            keyword_scores = {
                r.entry.metadata.chunk_index: r.score
                for r in self._keyword_index.search(query, limit * 2)
            }
        except Exception as e:
            logger.error(f"Session search failed: {e}")
            return []

        max_vector = max(max(vector_scores.values(), default=0.0), 0.001)
        combined: dict[int, float] = {}
        for index, score in vector_scores.items():
            combined[index] = combined.get(index, 0.0) + (score / max_vector) * VECTOR_WEIGHT
        for index, score in keyword_scores.items():
            combined[index] = combined.get(index, 0.0) + score * KEYWORD_WEIGHT

        ranked = sorted(combined.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            SessionSearchResult(text=self._chunks[index].text, score=score, chunk_index=index)
            for index, score in ranked
            if index in self._chunks and self._chunks[index].text
        ]

    async def search_for_context(self, query: str, limit: int = 5) -> str:
        results = await self.search(query, limit)
        if not results:
            return ""
        return "\n\n---\n\n".join(
            f"[Section {i}]\n{result.text}" for i, result in enumerate(results, start=1)
        )

    def is_indexed(self) -> bool:
        return self._indexed

    def get_chunk_count(self) -> int:
        return len(self._chunks)

    def _reset_state(self) -> None:
        self._chunks = {}
        self._keyword_index.clear()
        self._indexed = False
        self._content_hash = ""

    def clear(self) -> None:
        """Forget the current document."""
        self._reset_state()
