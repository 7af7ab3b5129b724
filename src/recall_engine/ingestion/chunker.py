# ingestion/chunker.py
"""
Paragraph-packing chunker with overlap.

Splits on blank lines, packs whole paragraphs up to a token target, and
carries the trailing paragraphs of each chunk into the next one.
"""

import math
import re
from dataclasses import dataclass
from typing import Optional, Protocol

import tiktoken
from loguru import logger

from ..config import Config
from ..models import SourceType

# ~1.3 tokens per English word
TOKENS_PER_WORD = 1.3


@dataclass
class Chunk:
    """A single chunk of source text."""

    index: int
    text: str
    token_count: int


class Chunker(Protocol):
    """Chunking capability consumed by the retrieval services."""

    def chunk_for_embedding(
        self, text: str, content_type: Optional[SourceType] = None
    ) -> list[Chunk]:
        """Split text into ordered chunks."""


def estimate_tokens(text: str) -> int:
    words = len(text.split())
    return math.ceil(words * TOKENS_PER_WORD)


class ParagraphChunker:
    """
    Paragraph-aware chunking with configurable parameters.

    Chunking strategy:
    1. Split by blank lines into paragraphs
    2. Pack paragraphs until the word-based estimate exceeds target_tokens
    3. Seed the next chunk with trailing paragraphs up to overlap_tokens
    4. Refine token counts with tiktoken (estimates kept if that fails)
    """

    def __init__(
        self,
        target_tokens: int = Config.CHUNK_TARGET_TOKENS,
        overlap_tokens: int = Config.CHUNK_OVERLAP_TOKENS,
        exact_token_counts: bool = True,
        encoding_name: str = "cl100k_base",
    ):
        self.target_tokens = target_tokens
        self.overlap_tokens = overlap_tokens
        self.exact_token_counts = exact_token_counts
        self.encoding_name = encoding_name
        self._encoder: Optional[tiktoken.Encoding] = None

    def chunk_for_embedding(
        self, text: str, content_type: Optional[SourceType] = None
    ) -> list[Chunk]:
        """
        Chunk source text for embedding.

        Args:
            text: Full source text
            content_type: Kind of source; every type currently uses paragraph packing

        Returns:
            Ordered list of Chunk objects (empty for blank text)
        """
        if not text or not text.strip():
            return []

        paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]

        chunks: list[Chunk] = []
        current: list[str] = []
        current_estimate = 0

        for para in paragraphs:
            para_estimate = estimate_tokens(para)

            if current and current_estimate + para_estimate > self.target_tokens:
                chunks.append(
                    Chunk(index=len(chunks), text="\n\n".join(current), token_count=current_estimate)
                )

                # Overlap: keep trailing paragraphs up to overlap_tokens
                overlap: list[str] = []
                overlap_count = 0
                for prev in reversed(current):
                    if overlap_count >= self.overlap_tokens:
                        break
                    overlap.insert(0, prev)
                    overlap_count += estimate_tokens(prev)
                current = overlap
                current_estimate = overlap_count

            current.append(para)
            current_estimate += para_estimate

        if current:
            chunks.append(
                Chunk(index=len(chunks), text="\n\n".join(current), token_count=current_estimate)
            )

        if self.exact_token_counts:
            self._refine_token_counts(chunks)

        logger.debug(
            f"Chunked {len(text)} chars into {len(chunks)} chunks "
            f"(type={content_type.value if content_type else 'generic'})"
        )
        return chunks

    def _refine_token_counts(self, chunks: list[Chunk]) -> None:
        try:
            if self._encoder is None:
                self._encoder = tiktoken.get_encoding(self.encoding_name)
            for chunk in chunks:
                chunk.token_count = len(self._encoder.encode(chunk.text))
        except Exception as e:
            logger.warning(f"Tokenizer unavailable, keeping estimated token counts: {e}")
