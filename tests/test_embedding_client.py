"""
Tests for the retrying embedding client.

Tests:
- Transient failures retried with exponential backoff
- Fatal failures surface immediately
- Exhausted retries raise EmbeddingError
- Last-call statistics
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from src.recall_engine.embedding import EmbeddingClient, is_transient
from src.recall_engine.errors import EmbeddingError, TransientEmbeddingError
from tests.test_utils import HashingEmbeddingBackend


class TestIsTransient:
    def test_transient_error_type(self):
        assert is_transient(TransientEmbeddingError("boom"))
        assert is_transient(asyncio.TimeoutError())

    def test_message_markers(self):
        assert is_transient(RuntimeError("Request timed out"))
        assert is_transient(RuntimeError("backend UNAVAILABLE"))
        assert is_transient(RuntimeError("sandbox not ready"))

    def test_fatal(self):
        assert not is_transient(ValueError("bad input"))
        assert not is_transient(EmbeddingError("Embedding request failed (HTTP 400)"))


class TestEmbeddingClient:
    @pytest.fixture
    def backend(self):
        return HashingEmbeddingBackend()

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, backend):
        backend.failures = [TransientEmbeddingError("timeout"), RuntimeError("backend unavailable")]
        client = EmbeddingClient(backend, max_retries=5, retry_base_delay=0.0)

        vector = await client.embed("hello world")

        assert vector == backend.vector_for("hello world")
        assert backend.embed_calls == 3
        stats = client.get_last_stats()
        assert stats.attempts == 3
        assert stats.last_error is None

    @pytest.mark.asyncio
    async def test_backoff_doubles_from_base_delay(self, backend):
        backend.failures = [TransientEmbeddingError("timeout")] * 3
        client = EmbeddingClient(backend, max_retries=5, retry_base_delay=0.5)

        with patch(
            "src.recall_engine.embedding.client.asyncio.sleep", new=AsyncMock()
        ) as mock_sleep:
            await client.embed("hello")

        assert [c.args[0] for c in mock_sleep.await_args_list] == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self, backend):
        backend.failures = [ValueError("dimension mismatch")]
        client = EmbeddingClient(backend, max_retries=5, retry_base_delay=0.0)

        with pytest.raises(EmbeddingError, match="dimension mismatch"):
            await client.embed("hello")

        assert backend.embed_calls == 1
        assert client.get_last_stats().attempts == 1
        assert "dimension mismatch" in client.get_last_stats().last_error

    @pytest.mark.asyncio
    async def test_embedding_error_reraised_as_is(self, backend):
        original = EmbeddingError("Embedding request failed (HTTP 400)")
        backend.failures = [original]
        client = EmbeddingClient(backend, max_retries=5, retry_base_delay=0.0)

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed("hello")
        assert exc_info.value is original

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, backend):
        backend.fail_always = TransientEmbeddingError("timeout")
        client = EmbeddingClient(backend, max_retries=5, retry_base_delay=0.0)

        with pytest.raises(EmbeddingError):
            await client.embed("hello")

        assert backend.embed_calls == 5
        assert client.get_last_stats().attempts == 5

    @pytest.mark.asyncio
    async def test_batch_is_single_backend_call(self, backend):
        client = EmbeddingClient(backend, retry_base_delay=0.0)

        vectors = await client.embed_batch(["one text", "two text", "three text"])

        assert len(vectors) == 3
        assert backend.batch_calls == 1
        assert backend.embed_calls == 0

    @pytest.mark.asyncio
    async def test_batch_retries_like_single(self, backend):
        backend.failures = [TransientEmbeddingError("timeout")]
        client = EmbeddingClient(backend, retry_base_delay=0.0)

        await client.embed_batch(["alpha beta"])

        assert backend.batch_calls == 2
        assert client.get_last_stats().attempts == 2

    @pytest.mark.asyncio
    async def test_empty_batch_skips_backend(self, backend):
        client = EmbeddingClient(backend)
        assert await client.embed_batch([]) == []
        assert backend.batch_calls == 0

    @pytest.mark.asyncio
    async def test_query_and_document_helpers(self):
        backend = AsyncMock()
        backend.embed.return_value = [1.0, 0.0]
        client = EmbeddingClient(backend)

        await client.embed_query("q")
        await client.embed_document("d")

        assert backend.embed.await_args_list[0].args == ("q", True)
        assert backend.embed.await_args_list[1].args == ("d", False)
