"""Source text ingestion: chunking ahead of embedding."""

from .chunker import Chunk, Chunker, ParagraphChunker, estimate_tokens

__all__ = ["Chunk", "Chunker", "ParagraphChunker", "estimate_tokens"]
