# embedding/client.py
"""
Retrying wrapper around an embedding backend.

Transient failures (timeouts, backend unavailable) are retried with
exponential backoff; anything else fails immediately.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from ..config import Config
from ..errors import EmbeddingError, TransientEmbeddingError
from .backends import EmbeddingBackend

T = TypeVar("T")

TRANSIENT_MARKERS = ("timeout", "timed out", "unavailable", "sandbox")


@dataclass
class EmbeddingStats:
    """Statistics for the most recent embedding call."""

    attempts: int
    total_ms: float
    last_error: Optional[str] = None


def is_transient(error: BaseException) -> bool:
    """True if the failure looks like a timeout or a temporarily missing backend."""
    if isinstance(error, (TransientEmbeddingError, asyncio.TimeoutError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


class EmbeddingClient:
    """
    Embedding client with production features.

    Features:
    - Automatic retry with exponential backoff for transient failures
    - True batch embedding (single backend call, no client-side looping)
    - Last-call statistics for observability
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        max_retries: int = Config.EMBED_MAX_RETRIES,
        retry_base_delay: float = Config.EMBED_RETRY_BASE_DELAY,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._last_stats: Optional[EmbeddingStats] = None

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        """
        Embed a single text with retry.

        Raises:
            EmbeddingError: On a fatal failure or once retries are exhausted
        """
        return await self._with_retry(lambda: self.backend.embed(text, is_query), "embed")

    async def embed_query(self, text: str) -> list[float]:
        return await self.embed(text, is_query=True)

    async def embed_document(self, text: str) -> list[float]:
        return await self.embed(text, is_query=False)

    async def embed_batch(self, texts: list[str], is_query: bool = False) -> list[list[float]]:
        """Embed texts in one backend call (same retry policy as embed)."""
        if not texts:
            return []
        start = time.perf_counter()
        vectors = await self._with_retry(
            lambda: self.backend.embed_batch(texts, is_query), "embed_batch"
        )
        logger.debug(
            f"Batch of {len(texts)} embedded in {(time.perf_counter() - start) * 1000:.0f}ms"
        )
        return vectors

    async def _with_retry(self, call: Callable[[], Awaitable[T]], op: str) -> T:
        start = time.perf_counter()
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await call()
                self._last_stats = EmbeddingStats(
                    attempts=attempt, total_ms=(time.perf_counter() - start) * 1000
                )
                if attempt > 1:
                    logger.info(
                        f"{op} succeeded after {attempt} attempts "
                        f"({self._last_stats.total_ms:.0f}ms total)"
                    )
                return result
            except Exception as e:
                last_error = e
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.warning(
                    f"{op} attempt {attempt}/{self.max_retries} failed after "
                    f"{elapsed_ms:.0f}ms: {e}"
                )

                if is_transient(e) and attempt < self.max_retries:
                    delay = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.debug(f"Transient embedding failure, retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue

                self._last_stats = EmbeddingStats(
                    attempts=attempt, total_ms=elapsed_ms, last_error=str(e)
                )
                if isinstance(e, EmbeddingError):
                    raise
                raise EmbeddingError(f"{op} failed: {e}") from e

        # max_retries < 1: no attempt was made
        self._last_stats = EmbeddingStats(
            attempts=0,
            total_ms=(time.perf_counter() - start) * 1000,
            last_error="max retries exceeded",
        )
        raise EmbeddingError("max retries exceeded") from last_error

    def get_last_stats(self) -> Optional[EmbeddingStats]:
        return self._last_stats
