# embedding/backends.py
"""
Embedding backends: the raw capability the EmbeddingClient retries around.
"""

from typing import Optional, Protocol

import httpx
from loguru import logger

from ..config import Config
from ..errors import EmbeddingError, TransientEmbeddingError

# Status codes that mean "backend temporarily unavailable"
TRANSIENT_STATUS_CODES = {502, 503, 504}


class EmbeddingBackend(Protocol):
    """Given text, return a vector. is_query selects query-side prefixing."""

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        """Embed a single text."""

    async def embed_batch(self, texts: list[str], is_query: bool = False) -> list[list[float]]:
        """Embed many texts in one backend call, preserving order."""


class OllamaEmbeddingBackend:
    """
    Embedding backend for an Ollama-compatible ``/api/embed`` endpoint.

    Features:
    - True batch requests (``input`` accepts a list)
    - Asymmetric query/document prefixes for nomic-style models
    - Timeouts and 502/503/504 surfaced as TransientEmbeddingError
    """

    def __init__(
        self,
        base_url: str = Config.EMBED_BASE_URL,
        model: str = Config.EMBED_MODEL,
        timeout: float = Config.EMBED_TIMEOUT,
        api_key: Optional[str] = None,
        query_prefix: str = "search_query: ",
        document_prefix: str = "search_document: ",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.query_prefix = query_prefix
        self.document_prefix = document_prefix
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    def _prefix(self, text: str, is_query: bool) -> str:
        return (self.query_prefix if is_query else self.document_prefix) + text

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        vectors = await self.embed_batch([text], is_query=is_query)
        return vectors[0]

    async def embed_batch(self, texts: list[str], is_query: bool = False) -> list[list[float]]:
        if not texts:
            return []

        payload = {"model": self.model, "input": [self._prefix(t, is_query) for t in texts]}

        try:
            response = await self._client.post("/api/embed", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise TransientEmbeddingError(f"Embedding request timeout: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in TRANSIENT_STATUS_CODES:
                raise TransientEmbeddingError(
                    f"Embedding backend unavailable (HTTP {status})"
                ) from e
            raise EmbeddingError(f"Embedding request failed (HTTP {status})") from e
        except httpx.TransportError as e:
            raise TransientEmbeddingError(f"Embedding backend unavailable: {e}") from e
        except ValueError as e:
            raise EmbeddingError(f"Embedding response was not valid JSON: {e}") from e

        return self._extract_embeddings(data, expected=len(texts))

    def _extract_embeddings(self, data: dict, expected: int) -> list[list[float]]:
        embeddings = data.get("embeddings")
        if not embeddings or not embeddings[0]:
            raise EmbeddingError(
                "Embedding response does not contain valid embeddings. "
                f"Response keys: {list(data.keys())}"
            )
        if len(embeddings) != expected:
            raise EmbeddingError(
                f"Embedding response has {len(embeddings)} vectors, expected {expected}"
            )
        logger.debug(f"Embedded {expected} texts with {self.model}")
        return [list(map(float, v)) for v in embeddings]

    async def aclose(self) -> None:
        await self._client.aclose()
