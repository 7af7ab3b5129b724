# storage/vector_store.py
"""
Vector store: the single authority on whether content is retrievable.

Mediates between three pieces of state:
- the ANN backend (volatile; may be recreated at any time)
- the lexical index (in memory; rebuilt from documents on load)
- the durable document store (authoritative)

Mutations go through one serial queue consumed by a single worker task, so
adds apply in call order and never interleave. Each queued operation owns a
future; failures are raised to the awaiting caller as VectorStoreError.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from loguru import logger

from ..config import Config
from ..errors import SnapshotFormatError, VectorStoreError
from ..models import MatchType, SearchResult, SourceType, VectorEntry
from .ann import AnnBackend
from .document_store import DocumentStore
from .lexical import LexicalIndex
from .snapshot import decode_snapshot, encode_snapshot

ANN_SNAPSHOT_KEY = "system:ann_index"
DOCUMENT_NAMESPACE_PREFIX = "documents:"

Operation = Callable[[], Awaitable[Any]]


def document_namespace(source_type: SourceType) -> str:
    return f"{DOCUMENT_NAMESPACE_PREFIX}{source_type.value}"


class VectorStore:
    """
    Dual-index store with debounced snapshot persistence.

    Construct once per process and pass it to every caller that needs it.
    """

    def __init__(
        self,
        ann: AnnBackend,
        store: DocumentStore,
        save_debounce_busy: float = Config.SAVE_DEBOUNCE_BUSY,
        save_debounce_idle: float = Config.SAVE_DEBOUNCE_IDLE,
    ):
        self.ann = ann
        self.store = store
        self.save_debounce_busy = save_debounce_busy
        self.save_debounce_idle = save_debounce_idle

        self._lexical = LexicalIndex()
        self._loaded = False
        self._backend_token: Optional[str] = None
        self._load_task: Optional[asyncio.Task] = None

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._pending_adds = 0
        self._save_timer: Optional[asyncio.Task] = None
        self._save_count = 0

    # ------------------------------------------------------------------
    # Serial operation queue
    # ------------------------------------------------------------------

    def _submit(self, operation: Operation) -> asyncio.Future:
        """Enqueue an operation; the returned future resolves with its outcome."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker(), name="vector-store-worker")

        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((operation, future))
        return future

    async def _run_worker(self) -> None:
        assert self._queue is not None
        while True:
            operation, future = await self._queue.get()
            try:
                result = await operation()
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def ensure_index_loaded(self) -> None:
        """
        Load the ANN snapshot and rebuild the lexical index, once.

        Concurrent callers share one in-flight load. If the ANN backend's
        identity token changed since the last load, the backend was recreated
        with empty state and a full reload is forced.
        """
        if self._loaded and self.ann.identity_token() != self._backend_token:
            logger.warning("ANN backend identity changed; reloading index from durable storage")
            self._loaded = False

        if self._loaded:
            return

        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load_index(), name="vector-store-load")
        await asyncio.shield(self._load_task)

    async def _load_index(self) -> None:
        start = time.perf_counter()
        token = self.ann.identity_token()
        try:
            record = await self.store.get_blob(ANN_SNAPSHOT_KEY)
            if record is not None:
                try:
                    backend_name, payload = decode_snapshot(record)
                    if backend_name not in (self.ann.name, "legacy"):
                        logger.warning(
                            f"Snapshot written by backend {backend_name!r}, loading into {self.ann.name!r}"
                        )
                    await self.ann.load(payload)
                except (SnapshotFormatError, ValueError) as e:
                    logger.error(f"Unreadable ANN snapshot, starting with an empty index: {e}")

            await self._rebuild_lexical_index()

            self._backend_token = token
            self._loaded = True
            logger.info(
                f"Index loaded: {self.ann.size()} vectors, {self._lexical.size()} documents "
                f"in {(time.perf_counter() - start) * 1000:.0f}ms"
            )
        except Exception as e:
            logger.error(f"Index load failed: {e}")
            raise VectorStoreError(f"Index load failed: {e}") from e
        finally:
            self._load_task = None

    async def _rebuild_lexical_index(self) -> None:
        self._lexical.clear()
        for source_type in SourceType:
            async for record in self.store.scan(document_namespace(source_type)):
                self._lexical.add(VectorEntry.from_record(record))

    async def force_reload(self) -> None:
        """Discard in-memory state and reload from durable storage, after queued writes."""

        async def _reload() -> None:
            self._loaded = False
            await self.ensure_index_loaded()

        await self._submit(_reload)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, entry: VectorEntry, embedding: list[float]) -> None:
        """
        Persist an entry and index it in both indexes.

        Raises:
            VectorStoreError: If loading, persisting or indexing failed
        """
        self._pending_adds += 1
        await self._submit(lambda: self._apply_add(entry, embedding))

    async def _apply_add(self, entry: VectorEntry, embedding: list[float]) -> None:
        try:
            await self.ensure_index_loaded()
            await self.store.put(document_namespace(entry.type), entry.id, entry.to_record())
            self._lexical.add(entry)
            await self.ann.add(
                entry.id,
                embedding,
                entry.metadata.title or entry.id,
                entry.metadata.source_url,
            )
        except Exception as e:
            logger.error(f"Failed to add {entry.id}: {e}")
            raise VectorStoreError(f"Failed to add {entry.id}: {e}") from e
        finally:
            self._pending_adds -= 1
        self._schedule_save()

    async def remove(self, entry_id: str) -> None:
        """
        Delete an entry from durable storage and both indexes.

        Unknown ids are a no-op.

        Raises:
            VectorStoreError: If the durable delete failed
        """
        await self._submit(lambda: self._apply_remove(entry_id))

    async def _apply_remove(self, entry_id: str) -> None:
        try:
            await self.ensure_index_loaded()
            entry = self._lexical.get(entry_id)
            source_types = [entry.type] if entry is not None else list(SourceType)
            for source_type in source_types:
                await self.store.delete(document_namespace(source_type), entry_id)
            self._lexical.remove(entry_id)
            await self.ann.remove(entry_id)
        except Exception as e:
            logger.error(f"Failed to remove {entry_id}: {e}")
            raise VectorStoreError(f"Failed to remove {entry_id}: {e}") from e
        self._schedule_save()

    async def source_entry_ids(self, source_id: str) -> set[str]:
        """Ids of every indexed entry belonging to source_id."""
        await self.ensure_index_loaded()
        return self._lexical.entry_ids_for_source(source_id)

    async def add_batch(
        self, pairs: Iterable[tuple[VectorEntry, list[float]]], flush: bool = True
    ) -> None:
        """
        Enqueue every pair in order, then optionally force one save.

        All adds are attempted even if some fail.

        Raises:
            VectorStoreError: If any add failed (first error chained)
        """
        outcomes = await asyncio.gather(
            *(self.add(entry, vector) for entry, vector in pairs), return_exceptions=True
        )
        if flush:
            await self.force_save()

        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            raise VectorStoreError(
                f"{len(errors)} of {len(outcomes)} adds failed: {errors[0]}"
            ) from errors[0]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _schedule_save(self) -> None:
        """Restart the debounce timer; the delay is shorter once no adds are pending."""
        if self._save_timer is not None and not self._save_timer.done():
            self._save_timer.cancel()
        delay = self.save_debounce_busy if self._pending_adds > 0 else self.save_debounce_idle
        self._save_timer = asyncio.create_task(self._debounced_save(delay), name="vector-store-save")

    async def _debounced_save(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._save_timer = None
        try:
            await self._submit(self._save_index)
        except VectorStoreError as e:
            logger.error(f"Debounced save failed: {e}")

    async def _save_index(self) -> None:
        start = time.perf_counter()
        try:
            payload = await self.ann.serialize()
            record = encode_snapshot(payload, self.ann.name)
            await self.store.put_blob(ANN_SNAPSHOT_KEY, record)
        except Exception as e:
            raise VectorStoreError(f"Index save failed: {e}") from e
        self._save_count += 1
        logger.debug(
            f"ANN snapshot saved: {len(payload)} bytes -> {len(record['data'])} compressed "
            f"in {(time.perf_counter() - start) * 1000:.0f}ms"
        )

    async def force_save(self) -> None:
        """
        Save the snapshot now, after every already-queued write.

        Raises:
            VectorStoreError: If serialization or the blob write failed
        """
        if self._save_timer is not None and not self._save_timer.done():
            self._save_timer.cancel()
            self._save_timer = None
        await self._submit(self._save_index)

    @property
    def save_count(self) -> int:
        """Number of snapshot writes performed so far."""
        return self._save_count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(self, query_embedding: list[float], limit: int) -> list[SearchResult]:
        """Nearest neighbors hydrated from durable storage; unhydratable ids are dropped."""
        await self.ensure_index_loaded()
        matches = await self.ann.search(query_embedding, limit)
        entries = await asyncio.gather(*(self._retrieve_document(m.id) for m in matches))

        return [
            SearchResult(entry=entry, score=match.score, match_type=MatchType.SEMANTIC)
            for match, entry in zip(matches, entries)
            if entry is not None
        ]

    async def search_keyword(self, query: str, limit: int) -> list[SearchResult]:
        await self.ensure_index_loaded()
        return self._lexical.search(query, limit)

    async def _retrieve_document(self, entry_id: str) -> Optional[VectorEntry]:
        type_prefix = entry_id.split(":", 1)[0]
        try:
            candidates = [SourceType(type_prefix)]
        except ValueError:
            candidates = list(SourceType)

        for source_type in candidates:
            record = await self.store.get(document_namespace(source_type), entry_id)
            if record is not None:
                return VectorEntry.from_record(record)

        logger.debug(f"ANN returned {entry_id} but no stored document exists")
        return None

    async def has_document(self, source_id: str) -> bool:
        """True if at least one entry for source_id is indexed and retrievable."""
        await self.ensure_index_loaded()
        if self.ann.size() == 0:
            return False
        if self._lexical.has_source(source_id):
            return True

        for source_type in SourceType:
            first_chunk = VectorEntry.make_id(source_type, source_id, 0)
            if await self.store.get(document_namespace(source_type), first_chunk) is not None:
                return True
        return False

    def get_doc_count(self) -> int:
        return self._lexical.size()

    def get_stats(self) -> dict:
        return {
            "loaded": self._loaded,
            "ann_backend": self.ann.name,
            "ann_vectors": self.ann.size(),
            "pending_adds": self._pending_adds,
            "save_count": self._save_count,
            **self._lexical.get_index_stats(),
        }

    async def close(self) -> None:
        """Finish queued operations, flush a pending debounced save and stop the worker."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()

        if self._save_timer is not None and not self._save_timer.done():
            self._save_timer.cancel()
            self._save_timer = None
            await self.force_save()

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
