"""
Tests for the vector store.

Tests:
- Serial write queue (call order, per-operation error propagation, drain on close)
- Entry removal across durable storage and both indexes
- Debounced snapshot persistence
- Singleflight index load and backend-restart recovery
- Snapshot compatibility (legacy and corrupt records)
- Existence checks and hydration
"""

import asyncio

import pytest

from src.recall_engine.errors import VectorStoreError
from src.recall_engine.models import MatchType, SourceType
from src.recall_engine.storage import (
    ANN_SNAPSHOT_KEY,
    NumpyAnnIndex,
    VectorStore,
    document_namespace,
)
from tests.test_utils import FlakyDocumentStore, HashingEmbeddingBackend, make_entry

BACKEND = HashingEmbeddingBackend()


def vec(text: str) -> list[float]:
    return BACKEND.vector_for(text)


@pytest.fixture
def flaky_store():
    return FlakyDocumentStore()


@pytest.fixture
async def flaky_vector_store(ann_index, flaky_store):
    store = VectorStore(ann_index, flaky_store, save_debounce_busy=0.05, save_debounce_idle=0.01)
    yield store
    await store.close()


class TestAddAndSearch:
    @pytest.mark.asyncio
    async def test_add_then_semantic_search(self, vector_store):
        entry = make_entry("a", "order shipped via carrier")
        await vector_store.add(entry, vec(entry.content))

        results = await vector_store.search(vec("order shipped"), limit=5)

        assert [r.entry.id for r in results] == [entry.id]
        assert results[0].match_type == MatchType.SEMANTIC
        assert results[0].entry == entry

    @pytest.mark.asyncio
    async def test_add_persists_document_and_keyword_index(self, vector_store, document_store):
        entry = make_entry("a", "invoice paid", source_type=SourceType.EMAIL)
        await vector_store.add(entry, vec(entry.content))

        stored = await document_store.get(document_namespace(SourceType.EMAIL), entry.id)
        assert stored["content"] == "invoice paid"
        keyword = await vector_store.search_keyword("invoice", limit=5)
        assert keyword[0].entry.id == entry.id
        assert vector_store.get_doc_count() == 1

    @pytest.mark.asyncio
    async def test_unhydratable_ids_dropped(self, vector_store, document_store):
        keep = make_entry("keep", "alpha beta gamma")
        gone = make_entry("gone", "alpha beta delta")
        await vector_store.add(keep, vec(keep.content))
        await vector_store.add(gone, vec(gone.content))

        await document_store.delete(document_namespace(SourceType.ARTICLE), gone.id)

        results = await vector_store.search(vec("alpha beta"), limit=5)
        assert [r.entry.id for r in results] == [keep.id]

    @pytest.mark.asyncio
    async def test_remove_drops_entry_everywhere(self, vector_store, document_store, ann_index):
        keep = make_entry("a", "alpha keeper text", chunk_index=0)
        drop = make_entry("a", "alpha outdated text", chunk_index=1)
        await vector_store.add(keep, vec(keep.content))
        await vector_store.add(drop, vec(drop.content))
        assert await vector_store.source_entry_ids("a") == {keep.id, drop.id}

        await vector_store.remove(drop.id)

        assert await document_store.get(document_namespace(SourceType.ARTICLE), drop.id) is None
        assert await vector_store.search_keyword("outdated", 5) == []
        semantic = await vector_store.search(vec(drop.content), limit=5)
        assert [r.entry.id for r in semantic] == [keep.id]
        assert ann_index.size() == 1
        assert await vector_store.source_entry_ids("a") == {keep.id}

    @pytest.mark.asyncio
    async def test_remove_unknown_id_is_noop(self, vector_store):
        entry = make_entry("a", "still here")
        await vector_store.add(entry, vec(entry.content))

        await vector_store.remove("article:missing:chunk:0")

        assert vector_store.get_doc_count() == 1


class TestSerialQueue:
    @pytest.mark.asyncio
    async def test_adds_apply_in_call_order(self, flaky_vector_store, flaky_store):
        """Earlier writes are slower, yet must still land first."""
        entries = [make_entry(f"s{i}", f"text number {i}") for i in range(5)]
        for i, entry in enumerate(entries):
            flaky_store.put_delays[entry.id] = 0.01 * (5 - i)

        await asyncio.gather(*(flaky_vector_store.add(e, vec(e.content)) for e in entries))

        assert flaky_store.put_log == [e.id for e in entries]

    @pytest.mark.asyncio
    async def test_failed_add_raises_and_queue_continues(self, flaky_vector_store, flaky_store):
        bad = make_entry("bad", "will not persist")
        good = make_entry("good", "persists fine")
        flaky_store.fail_keys.add(bad.id)

        with pytest.raises(VectorStoreError, match="disk full"):
            await flaky_vector_store.add(bad, vec(bad.content))
        await flaky_vector_store.add(good, vec(good.content))

        assert flaky_store.put_log == [good.id]
        assert not await flaky_vector_store.has_document("bad")
        assert await flaky_vector_store.has_document("good")

    @pytest.mark.asyncio
    async def test_add_batch_attempts_all_then_raises(self, flaky_vector_store, flaky_store):
        entries = [make_entry(f"b{i}", f"batch item {i}") for i in range(3)]
        flaky_store.fail_keys.add(entries[1].id)

        with pytest.raises(VectorStoreError, match="1 of 3"):
            await flaky_vector_store.add_batch((e, vec(e.content)) for e in entries)

        assert flaky_store.put_log == [entries[0].id, entries[2].id]
        assert flaky_vector_store.save_count == 1

    @pytest.mark.asyncio
    async def test_ann_failure_propagates(self, vector_store):
        first = make_entry("a", "two dims")
        await vector_store.add(first, [1.0, 0.0])

        with pytest.raises(VectorStoreError, match="dimension"):
            await vector_store.add(make_entry("b", "three dims"), [1.0, 0.0, 0.0])


class TestDebouncedSave:
    @pytest.mark.asyncio
    async def test_burst_coalesces_into_one_save(self, vector_store, document_store):
        entries = [make_entry(f"d{i}", f"burst entry {i}") for i in range(6)]

        await asyncio.gather(*(vector_store.add(e, vec(e.content)) for e in entries))
        assert vector_store.save_count == 0

        await asyncio.sleep(0.2)

        assert vector_store.save_count == 1
        assert await document_store.get_blob(ANN_SNAPSHOT_KEY) is not None

    @pytest.mark.asyncio
    async def test_force_save_bypasses_debounce(self, vector_store, document_store):
        entry = make_entry("a", "saved right away")
        await vector_store.add(entry, vec(entry.content))

        await vector_store.force_save()

        assert vector_store.save_count == 1
        record = await document_store.get_blob(ANN_SNAPSHOT_KEY)
        assert record["compressed"] is True

        # The cancelled debounce timer must not write again
        await asyncio.sleep(0.1)
        assert vector_store.save_count == 1

    @pytest.mark.asyncio
    async def test_close_flushes_pending_save(self, ann_index, document_store):
        store = VectorStore(ann_index, document_store, save_debounce_busy=5, save_debounce_idle=5)
        entry = make_entry("a", "pending at shutdown")
        await store.add(entry, vec(entry.content))

        await store.close()

        assert await document_store.get_blob(ANN_SNAPSHOT_KEY) is not None

    @pytest.mark.asyncio
    async def test_close_settles_queued_adds(self, ann_index, flaky_store):
        store = VectorStore(ann_index, flaky_store, save_debounce_busy=5, save_debounce_idle=5)
        entries = [make_entry(f"s{i}", f"queued entry {i}") for i in range(3)]
        for entry in entries:
            flaky_store.put_delays[entry.id] = 0.02
        pending = [asyncio.create_task(store.add(e, vec(e.content))) for e in entries]
        await asyncio.sleep(0)

        await store.close()

        await asyncio.wait_for(asyncio.gather(*pending), timeout=1)
        assert flaky_store.put_log == [e.id for e in entries]
        assert await flaky_store.get_blob(ANN_SNAPSHOT_KEY) is not None


class TestIndexLoading:
    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_read(self, flaky_vector_store, flaky_store):
        await asyncio.gather(*(flaky_vector_store.ensure_index_loaded() for _ in range(5)))
        assert flaky_store.blob_reads == 1

    @pytest.mark.asyncio
    async def test_new_instance_restores_from_durable_storage(self, vector_store, document_store):
        a = make_entry("a", "order shipped via fastcarrier")
        b = make_entry("b", "invoice paid amount")
        await vector_store.add(a, vec(a.content))
        await vector_store.add(b, vec(b.content))
        await vector_store.force_save()

        restored = VectorStore(NumpyAnnIndex(), document_store)
        try:
            results = await restored.search(vec("invoice amount"), limit=1)
            assert results[0].entry.id == b.id
            assert restored.get_doc_count() == 2
        finally:
            await restored.close()

    @pytest.mark.asyncio
    async def test_backend_restart_forces_reload(self, vector_store, ann_index):
        entries = [
            make_entry("a", "order shipped via fastcarrier"),
            make_entry("b", "invoice paid amount"),
        ]
        for entry in entries:
            await vector_store.add(entry, vec(entry.content))
        await vector_store.force_save()
        before = [r.entry.id for r in await vector_store.search(vec("order shipped"), limit=2)]

        ann_index.reset()
        assert ann_index.size() == 0

        after = [r.entry.id for r in await vector_store.search(vec("order shipped"), limit=2)]
        assert after == before
        assert ann_index.size() == 2

    @pytest.mark.asyncio
    async def test_backend_restart_detected_on_add(self, vector_store, ann_index):
        a = make_entry("a", "first entry")
        await vector_store.add(a, vec(a.content))
        await vector_store.force_save()

        ann_index.reset()
        b = make_entry("b", "second entry")
        await vector_store.add(b, vec(b.content))

        assert ann_index.size() == 2

    @pytest.mark.asyncio
    async def test_force_reload_discards_unsaved_vectors(self, vector_store, ann_index):
        a = make_entry("a", "saved entry")
        await vector_store.add(a, vec(a.content))
        await vector_store.force_save()
        await ann_index.add("phantom", vec("phantom"))

        await vector_store.force_reload()

        assert ann_index.size() == 1

    @pytest.mark.asyncio
    async def test_legacy_uncompressed_snapshot(self, document_store):
        source = NumpyAnnIndex()
        entry = make_entry("a", "legacy snapshot entry")
        await source.add(entry.id, vec(entry.content))
        await document_store.put(document_namespace(SourceType.ARTICLE), entry.id, entry.to_record())
        await document_store.put_blob(
            ANN_SNAPSHOT_KEY, {"compressed": False, "data": await source.serialize()}
        )

        store = VectorStore(NumpyAnnIndex(), document_store)
        try:
            results = await store.search(vec("legacy snapshot"), limit=1)
            assert results[0].entry.id == entry.id
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_starts_empty_but_keeps_keywords(self, document_store):
        entry = make_entry("a", "keyword survives corruption")
        await document_store.put(document_namespace(SourceType.ARTICLE), entry.id, entry.to_record())
        await document_store.put_blob(
            ANN_SNAPSHOT_KEY, {"compressed": True, "version": 1, "data": b"garbage"}
        )

        ann = NumpyAnnIndex()
        store = VectorStore(ann, document_store)
        try:
            await store.ensure_index_loaded()
            assert ann.size() == 0
            assert store.get_doc_count() == 1
            keyword = await store.search_keyword("corruption", limit=1)
            assert keyword[0].entry.id == entry.id
        finally:
            await store.close()


class TestHasDocument:
    @pytest.mark.asyncio
    async def test_empty_store(self, vector_store):
        assert await vector_store.has_document("anything") is False

    @pytest.mark.asyncio
    async def test_known_and_unknown_sources(self, vector_store):
        entry = make_entry("src-1", "some content here", source_type=SourceType.PDF)
        await vector_store.add(entry, vec(entry.content))

        assert await vector_store.has_document("src-1") is True
        assert await vector_store.has_document("src-2") is False

    @pytest.mark.asyncio
    async def test_stats_shape(self, vector_store):
        stats = vector_store.get_stats()
        assert stats["ann_backend"] == "numpy-cosine"
        assert stats["loaded"] is False
