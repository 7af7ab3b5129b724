"""Pytest fixtures and test utilities for the recall engine test suite."""

import pytest
from redis import asyncio as aioredis

from src.recall_engine.embedding import EmbeddingClient
from src.recall_engine.ingestion import ParagraphChunker
from src.recall_engine.retrieval import RetrievalService, SessionRetrievalService
from src.recall_engine.storage import (
    InMemoryDocumentStore,
    NumpyAnnIndex,
    RedisDocumentStore,
    VectorStore,
)
from tests.test_utils import HashingEmbeddingBackend

TEST_REDIS_URL = "redis://localhost:6379"


# ============================================================================
# COMPONENT FIXTURES
# ============================================================================


@pytest.fixture
def embedding_backend():
    """Fresh deterministic embedding backend."""
    return HashingEmbeddingBackend()


@pytest.fixture
def embedder(embedding_backend):
    """EmbeddingClient with zero backoff so retry tests run instantly."""
    return EmbeddingClient(embedding_backend, max_retries=5, retry_base_delay=0.0)


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def ann_index():
    return NumpyAnnIndex()


@pytest.fixture
def chunker():
    """Paragraph chunker that never downloads a tokenizer."""
    return ParagraphChunker(target_tokens=60, overlap_tokens=10, exact_token_counts=False)


@pytest.fixture
async def vector_store(ann_index, document_store):
    """
    Vector store over in-memory collaborators with short debounce windows.

    Cleanup:
        Flushes any pending save and stops the worker task
    """
    store = VectorStore(ann_index, document_store, save_debounce_busy=0.05, save_debounce_idle=0.01)
    yield store
    await store.close()


@pytest.fixture
def retrieval_service(vector_store, embedder, chunker):
    return RetrievalService(vector_store, embedder, chunker=chunker, batch_size=8)


@pytest.fixture
def session_service(embedder, chunker):
    return SessionRetrievalService(embedder, chunker=chunker)


# ============================================================================
# REDIS FIXTURES
# ============================================================================


@pytest.fixture
async def redis_store():
    """
    Provide a RedisDocumentStore under a throwaway key prefix.

    Skips the test when no Redis server is reachable.

    Cleanup:
        Deletes every key under the test prefix
    """
    client = aioredis.from_url(TEST_REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
    try:
        await client.ping()
    except (aioredis.RedisError, OSError):
        await client.aclose()
        pytest.skip("Redis server not reachable")

    prefix = "recall-test"

    async def _flush() -> None:
        async for key in client.scan_iter(match=f"{prefix}:*"):
            await client.delete(key)

    await _flush()
    store = RedisDocumentStore(url=TEST_REDIS_URL, prefix=prefix, socket_timeout=2)
    try:
        yield store
    finally:
        await _flush()
        await store.aclose()
        await client.aclose()
