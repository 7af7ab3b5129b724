# retrieval/service.py
"""
Retrieval service: incremental indexing, hybrid search and citation assembly.

Indexing is change-aware (content hash verified against actual index
presence) and de-duplicated per source. Searching fuses semantic and keyword
candidates with weighted RRF, reranks by literal term coverage, and caches
the outcome until the next indexing pass.
"""

import asyncio
import time
from typing import Callable, Optional

from loguru import logger

from ..config import Config
from ..embedding import EmbeddingClient
from ..fingerprints import content_hash
from ..ingestion import Chunker, ParagraphChunker
from ..models import (
    ChunkMetadata,
    EntryMetadata,
    IndexingStats,
    IndexProgress,
    ProgressCallback,
    SearchResult,
    SkipReason,
    SourceCitation,
    SourcedContext,
    SourceMetadataRecord,
    VectorEntry,
)
from ..storage import VectorStore
from .cache import QueryResultCache
from .fusion import adaptive_weights, reciprocal_rank_fusion, rerank, rescale
from .query import preprocess_query

SOURCE_METADATA_NAMESPACE = "source_metadata"
SUMMARY_SUFFIX = ":summary"
CONTEXT_SEPARATOR = "\n\n---\n\n"
SNIPPET_CHARS = 200

# Progress bands (percent)
PROGRESS_HASHING = 5
PROGRESS_CHUNKING = 10
PROGRESS_EMBED_START = 20
PROGRESS_EMBED_END = 90
PROGRESS_SAVING = 95
PROGRESS_DONE = 100


def _strip_query_string(url: str) -> str:
    return url.split("?", 1)[0].split("#", 1)[0].rstrip("/")


def url_matches(candidate: str, scope: str) -> bool:
    """Exact, base (query string stripped), prefix or reverse-prefix match."""
    if not candidate or not scope:
        return False
    if candidate == scope:
        return True
    base_candidate, base_scope = _strip_query_string(candidate), _strip_query_string(scope)
    if not base_candidate or not base_scope:
        return False
    return (
        base_candidate == base_scope
        or base_candidate.startswith(base_scope)
        or base_scope.startswith(base_candidate)
    )


class RetrievalService:
    """
    Main entry point for indexing and querying saved content.

    Build once at process start and share the instance.

    Example:
        service = RetrievalService(vector_store, embedder)
        stats = await service.index_chunks(text, ChunkMetadata("src-1", "https://..."))
        results = await service.search("invoice amount", limit=5)
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingClient,
        chunker: Optional[Chunker] = None,
        batch_size: int = Config.INDEX_BATCH_SIZE,
        cache: Optional[QueryResultCache] = None,
        rrf_k: int = Config.RRF_K,
        rerank_window: int = Config.RERANK_WINDOW,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.vector_store = vector_store
        self.embedder = embedder
        self.chunker = chunker or ParagraphChunker()
        self.batch_size = batch_size
        self.cache = cache or QueryResultCache()
        self.rrf_k = rrf_k
        self.rerank_window = rerank_window

        self._content_hashes: dict[str, str] = {}
        self._metadata: dict[str, SourceMetadataRecord] = {}
        self._metadata_loaded = False
        self._metadata_task: Optional[asyncio.Task] = None
        self._active_indexing: dict[str, asyncio.Task] = {}
        self._last_stats: Optional[IndexingStats] = None

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def _ensure_metadata_loaded(self) -> None:
        if self._metadata_loaded:
            return
        if self._metadata_task is None:
            self._metadata_task = asyncio.create_task(self._load_metadata())
        await asyncio.shield(self._metadata_task)

    async def _load_metadata(self) -> None:
        start = time.perf_counter()
        try:
            records = await self.vector_store.store.get_all(SOURCE_METADATA_NAMESPACE)
            for raw in records:
                record = SourceMetadataRecord.from_record(raw)
                self._metadata[record.source_id] = record
                self._content_hashes[record.source_id] = record.content_hash
            logger.info(
                f"Loaded {len(records)} source metadata records "
                f"({(time.perf_counter() - start) * 1000:.0f}ms)"
            )
        except Exception as e:
            # Proceed without hashes; sources are re-verified on next index
            logger.error(f"Failed to load source metadata: {e}")
        finally:
            self._metadata_loaded = True
            self._metadata_task = None

    async def _persist_metadata(self, record: SourceMetadataRecord) -> None:
        await self.vector_store.store.put(
            SOURCE_METADATA_NAMESPACE, record.source_id, record.to_record()
        )
        self._metadata[record.source_id] = record
        self._content_hashes[record.source_id] = record.content_hash
        logger.debug(f"Persisted metadata for {record.source_id[:50]}")

    async def _verify_indexed(self, source_id: str) -> bool:
        """True if the vector store really holds entries for source_id."""
        try:
            return await self.vector_store.has_document(source_id)
        except Exception as e:
            logger.warning(f"Index verification failed for {source_id[:50]}: {e}")
            return False

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index(self, entry: VectorEntry) -> bool:
        """
        Embed and store one pre-built entry (no hashing or chunking).

        Returns:
            True if the entry was stored, False if embedding or storage failed
        """
        start = time.perf_counter()
        try:
            embedding = await self.embedder.embed_document(entry.content)
            await self.vector_store.add(entry, embedding)
        except Exception as e:
            logger.error(f"Single-entry indexing failed for {entry.id}: {e}")
            return False
        self.cache.clear()
        logger.info(f"Indexed {entry.id} ({(time.perf_counter() - start) * 1000:.0f}ms)")
        return True

    async def index_chunks(
        self,
        text: str,
        metadata: ChunkMetadata,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IndexingStats:
        """
        Chunk, embed and store a source unless its content is unchanged.

        Concurrent calls for the same source_id share one pass and all
        receive its stats.
        """

        def build_entries() -> list[VectorEntry]:
            self._report(on_progress, "chunking", PROGRESS_CHUNKING, "Splitting content")
            chunks = self.chunker.chunk_for_embedding(text, metadata.source_type)
            self._report(on_progress, "chunking", PROGRESS_EMBED_START, f"{len(chunks)} chunks")
            return [
                VectorEntry(
                    id=VectorEntry.make_id(metadata.source_type, metadata.source_id, chunk.index),
                    type=metadata.source_type,
                    content=chunk.text,
                    metadata=EntryMetadata(
                        source_id=metadata.source_id,
                        source_url=metadata.source_url,
                        source_type=metadata.source_type,
                        title=metadata.title,
                        chunk_index=chunk.index,
                        total_chunks=len(chunks),
                    ),
                )
                for chunk in chunks
            ]

        return await self._run_deduplicated(
            metadata.source_id, text, build_entries, on_progress
        )

    async def index_summary(
        self,
        summary_text: str,
        metadata: ChunkMetadata,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IndexingStats:
        """
        Index a short authored summary as one high-priority entry.

        Stored under ``<source_id>:summary`` with is_summary set, so fusion
        boosts it over raw chunks. Skipped if already indexed unchanged.
        """
        source_id = metadata.source_id + SUMMARY_SUFFIX

        def build_entries() -> list[VectorEntry]:
            if not summary_text.strip():
                return []
            return [
                VectorEntry(
                    id=VectorEntry.make_id(metadata.source_type, source_id, 0),
                    type=metadata.source_type,
                    content=summary_text,
                    metadata=EntryMetadata(
                        source_id=source_id,
                        source_url=metadata.source_url,
                        source_type=metadata.source_type,
                        title=metadata.title,
                        chunk_index=0,
                        total_chunks=1,
                        is_summary=True,
                    ),
                )
            ]

        return await self._run_deduplicated(source_id, summary_text, build_entries, on_progress)

    async def _run_deduplicated(
        self,
        source_id: str,
        text: str,
        build_entries: Callable[[], list[VectorEntry]],
        on_progress: Optional[ProgressCallback],
    ) -> IndexingStats:
        wall_clock_start = time.perf_counter()
        await self._ensure_metadata_loaded()

        existing = self._active_indexing.get(source_id)
        if existing is not None:
            logger.info(f"Already indexing {source_id[:50]}, waiting for in-flight pass")
            return await asyncio.shield(existing)

        task = asyncio.create_task(
            self._do_index(source_id, text, build_entries, on_progress, wall_clock_start)
        )
        self._active_indexing[source_id] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._active_indexing.get(source_id) is task:
                del self._active_indexing[source_id]

    async def _do_index(
        self,
        source_id: str,
        text: str,
        build_entries: Callable[[], list[VectorEntry]],
        on_progress: Optional[ProgressCallback],
        wall_clock_start: float,
    ) -> IndexingStats:
        stats = IndexingStats(source_id=source_id)

        def finish() -> IndexingStats:
            stats.wall_clock_ms = (time.perf_counter() - wall_clock_start) * 1000
            self._last_stats = stats
            return stats

        try:
            self._report(on_progress, "hashing", PROGRESS_HASHING, "Checking for changes")
            new_hash = content_hash(text)
            if self._content_hashes.get(source_id) == new_hash:
                if await self._verify_indexed(source_id):
                    stats.skipped = True
                    stats.skip_reason = SkipReason.UNCHANGED
                    self._report(on_progress, "done", PROGRESS_DONE, "Content unchanged")
                    finish()
                    logger.info(
                        f"SKIPPED: {source_id[:50]} (content unchanged, index verified) "
                        f"[{stats.wall_clock_ms:.0f}ms]"
                    )
                    return stats
                logger.warning(f"Metadata says {source_id[:50]} is indexed but index is empty, re-indexing")

            entries = build_entries()
            if not entries:
                stats.skipped = True
                stats.skip_reason = SkipReason.NO_CHUNKS
                self._report(on_progress, "done", PROGRESS_DONE, "Nothing to index")
                finish()
                logger.info(f"SKIPPED: no chunks for {source_id[:50]} [{stats.wall_clock_ms:.0f}ms]")
                return stats

            stats.chunk_count = len(entries)
            logger.info(f"INDEXING: {len(entries)} chunks for {source_id[:50]}")

            embed_start = time.perf_counter()
            await self._embed_and_store(entries, stats, on_progress)
            stats.embedding_ms = (time.perf_counter() - embed_start) * 1000

            self._report(on_progress, "saving", PROGRESS_SAVING, "Saving index")
            persist_start = time.perf_counter()
            if stats.batches_failed == 0:
                stats.chunks_removed = await self._remove_superseded(
                    source_id, {entry.id for entry in entries}
                )
                await self._persist_metadata(
                    SourceMetadataRecord(
                        source_id=source_id, content_hash=new_hash, chunk_count=len(entries)
                    )
                )
            await self.vector_store.force_save()
            stats.storage_ms = (time.perf_counter() - persist_start) * 1000

            self.cache.clear()
            self._report(on_progress, "done", PROGRESS_DONE, "Indexed")
            finish()

            if stats.batches_failed:
                stats.error = f"{stats.batches_failed} batch(es) failed; source left partially indexed"
                logger.error(f"PARTIAL: {source_id[:50]}: {stats.error}")
            else:
                logger.info(
                    f"INDEXED: {len(entries)} chunks for {source_id[:50]} "
                    f"(total={stats.wall_clock_ms:.0f}ms, embed={stats.embedding_ms:.0f}ms, "
                    f"persist={stats.storage_ms:.0f}ms)"
                )
            return stats
        except Exception as e:
            stats.error = str(e)
            finish()
            logger.error(f"Chunk indexing FAILED for {source_id[:50]} after {stats.wall_clock_ms:.0f}ms: {e}")
            return stats

    async def _embed_and_store(
        self,
        entries: list[VectorEntry],
        stats: IndexingStats,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        """Embed in fixed-size batches; a failed batch is counted and skipped."""
        total_batches = (len(entries) + self.batch_size - 1) // self.batch_size
        band = PROGRESS_EMBED_END - PROGRESS_EMBED_START

        for batch_number, offset in enumerate(range(0, len(entries), self.batch_size), start=1):
            batch = entries[offset : offset + self.batch_size]
            try:
                vectors = await self.embedder.embed_batch([e.content for e in batch])
                await self.vector_store.add_batch(zip(batch, vectors), flush=False)
            except Exception as e:
                stats.batches_failed += 1
                logger.error(f"Batch {batch_number}/{total_batches} failed: {e}")

            percent = PROGRESS_EMBED_START + int(band * batch_number / total_batches)
            self._report(
                on_progress, "embedding", percent, f"Embedded batch {batch_number}/{total_batches}"
            )

    async def _remove_superseded(self, source_id: str, current_ids: set[str]) -> int:
        """Delete entries left over from an earlier pass that produced more chunks."""
        stale = await self.vector_store.source_entry_ids(source_id) - current_ids
        for entry_id in sorted(stale):
            await self.vector_store.remove(entry_id)
        if stale:
            logger.info(f"Removed {len(stale)} superseded entries for {source_id[:50]}")
        return len(stale)

    @staticmethod
    def _report(
        on_progress: Optional[ProgressCallback], stage: str, percent: int, message: str
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(IndexProgress(stage=stage, percent=percent, message=message))
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    async def search(self, query: str, limit: int = 5) -> list[SearchResult]:
        """
        Hybrid search with caching.

        Any failure is logged and returned as an empty list.
        """
        cached = self.cache.get(query, limit)
        if cached is not None:
            logger.debug(f"Query cache hit for {query[:50]!r}")
            return cached

        start = time.perf_counter()
        generation = self.cache.generation
        try:
            results = await self._search_uncached(query, limit)
        except Exception as e:
            logger.error(f"Search failed for {query[:50]!r}: {e}")
            return []

        if not self.cache.set(query, limit, results, generation=generation):
            logger.debug(f"Index changed during search for {query[:50]!r}, result not cached")
        logger.debug(
            f"Search {query[:50]!r}: {len(results)} results in "
            f"{(time.perf_counter() - start) * 1000:.0f}ms"
        )
        return results

    async def _search_uncached(self, query: str, limit: int) -> list[SearchResult]:
        processed = preprocess_query(query)
        if not processed or limit <= 0:
            return []

        candidates = limit * 3
        query_embedding = await self.embedder.embed_query(processed)
        semantic, keyword = await asyncio.gather(
            self.vector_store.search(query_embedding, candidates),
            self.vector_store.search_keyword(processed, candidates),
        )

        fused = reciprocal_rank_fusion(
            semantic, keyword, adaptive_weights(processed), k=self.rrf_k
        )
        reranked = rerank(rescale(fused), processed, window=self.rerank_window)
        return reranked[:limit]

    async def search_with_context(
        self, query: str, limit: int = 5, source_url: Optional[str] = None
    ) -> str:
        """
        Search and format results as ``[Source N: title]`` context blocks.

        Returns an empty string when nothing matches.
        """
        try:
            results = await self.search(query, limit * 4)
            if source_url:
                results = [r for r in results if url_matches(r.entry.metadata.source_url, source_url)]
            if not results:
                return ""

            results = sorted(results, key=lambda r: r.score, reverse=True)[:limit]
            blocks = []
            for i, result in enumerate(results, start=1):
                meta = result.entry.metadata
                label = meta.title or meta.source_url or result.entry.id
                blocks.append(f"[Source {i}: {label}]\n{result.entry.content}")
            return CONTEXT_SEPARATOR.join(blocks)
        except Exception as e:
            logger.error(f"Context search failed: {e}")
            return ""

    async def search_with_sources(self, query: str, limit: int = 5) -> SourcedContext:
        """Search and return a numbered context block plus its citation list."""
        try:
            results = await self.search(query, limit * 2)
            results = sorted(results, key=lambda r: r.score, reverse=True)[:limit]

            sources: list[SourceCitation] = []
            blocks: list[str] = []
            for i, result in enumerate(results, start=1):
                entry = result.entry
                title = entry.metadata.title or entry.metadata.source_url or entry.id
                sources.append(
                    SourceCitation(
                        index=i,
                        title=title,
                        url=entry.metadata.source_url,
                        type=entry.type,
                        score=result.score,
                        snippet=entry.content[:SNIPPET_CHARS],
                    )
                )
                blocks.append(f"[{i}] {title}\n{entry.content}")
            return SourcedContext(context=CONTEXT_SEPARATOR.join(blocks), sources=sources)
        except Exception as e:
            logger.error(f"Sourced search failed: {e}")
            return SourcedContext()

    async def has_indexed_content(self, source_url: str) -> bool:
        """
        True if content for source_url is retrievable.

        Checks the metadata record (keyed by source id, which callers usually
        set to the URL) against the vector store, then falls back to a
        keyword lookup for an exact sourceUrl match.
        """
        await self._ensure_metadata_loaded()

        if source_url in self._content_hashes:
            if await self._verify_indexed(source_url):
                return True
            logger.info(f"Metadata exists but index is empty for {source_url[:50]}")

        try:
            results = await self.vector_store.search_keyword(source_url, 1)
        except Exception as e:
            logger.warning(f"Keyword lookup failed for {source_url[:50]}: {e}")
            return False
        return any(r.entry.metadata.source_url == source_url for r in results)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def is_indexing(self, source_id: str) -> bool:
        return source_id in self._active_indexing

    def get_active_indexing_count(self) -> int:
        return len(self._active_indexing)

    def get_last_stats(self) -> Optional[IndexingStats]:
        return self._last_stats

    async def get_metadata_count(self) -> int:
        await self._ensure_metadata_loaded()
        return len(self._metadata)

    def invalidate_cache(self) -> None:
        self.cache.clear()
