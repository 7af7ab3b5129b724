# storage/lexical.py
"""
Inverted keyword index used alongside semantic search.

Scoring is a plain IDF sum: each query token found in a document adds
log(total_docs / posting_size + 1), and the sum is divided by the number of
query tokens. No term-frequency or length normalization.
"""

import math
import re
from dataclasses import dataclass, field

from loguru import logger

from ..models import MatchType, SearchResult, VectorEntry

_PUNCTUATION = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    """
    Lowercase, strip punctuation, split on whitespace, drop tokens of 2 chars or fewer.

    Duplicates are kept; callers that need a set dedupe themselves.
    """
    if not text:
        return []
    cleaned = _PUNCTUATION.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) > 2]


@dataclass
class LexicalIndex:
    """
    In-memory token -> entry-id posting sets.

    Never persisted; the vector store rebuilds it from durable documents.

    Example:
        index = LexicalIndex()
        index.add(entry)
        results = index.search("invoice amount", limit=10)
    """

    _postings: dict[str, set[str]] = field(default_factory=dict)  # token -> entry ids
    _entries: dict[str, VectorEntry] = field(default_factory=dict)  # entry id -> entry
    _tokens: dict[str, set[str]] = field(default_factory=dict)  # entry id -> its tokens
    _by_source: dict[str, set[str]] = field(default_factory=dict)  # source id -> entry ids

    def add(self, entry: VectorEntry) -> None:
        """Add or replace an entry."""
        if entry.id in self._entries:
            self.remove(entry.id)

        tokens = set(tokenize(entry.content))
        self._entries[entry.id] = entry
        self._tokens[entry.id] = tokens
        self._by_source.setdefault(entry.metadata.source_id, set()).add(entry.id)
        for token in tokens:
            self._postings.setdefault(token, set()).add(entry.id)

    def remove(self, entry_id: str) -> bool:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return False

        for token in self._tokens.pop(entry_id, set()):
            posting = self._postings.get(token)
            if posting is None:
                continue
            posting.discard(entry_id)
            if not posting:
                del self._postings[token]

        source_ids = self._by_source.get(entry.metadata.source_id)
        if source_ids is not None:
            source_ids.discard(entry_id)
            if not source_ids:
                del self._by_source[entry.metadata.source_id]
        return True

    def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """
        Score entries sharing at least one token with the query.

        Returns:
            Up to limit results, best first, tagged MatchType.KEYWORD
        """
        query_tokens = tokenize(query)
        if not query_tokens or not self._entries or limit <= 0:
            return []

        total_docs = len(self._entries)
        scores: dict[str, float] = {}
        for token in query_tokens:
            posting = self._postings.get(token)
            if not posting:
                continue
            idf = math.log(total_docs / len(posting) + 1)
            for entry_id in posting:
                scores[entry_id] = scores.get(entry_id, 0.0) + idf

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            SearchResult(
                entry=self._entries[entry_id],
                score=score / len(query_tokens),
                match_type=MatchType.KEYWORD,
            )
            for entry_id, score in ranked
        ]

    def has_source(self, source_id: str) -> bool:
        return bool(self._by_source.get(source_id))

    def entry_ids_for_source(self, source_id: str) -> set[str]:
        return set(self._by_source.get(source_id, ()))

    def get(self, entry_id: str) -> VectorEntry | None:
        return self._entries.get(entry_id)

    def size(self) -> int:
        return len(self._entries)

    def get_index_stats(self) -> dict:
        return {
            "total_documents": len(self._entries),
            "unique_terms": len(self._postings),
            "sources": len(self._by_source),
        }

    def clear(self) -> None:
        """Clear the entire index."""
        self._postings.clear()
        self._entries.clear()
        self._tokens.clear()
        self._by_source.clear()
        logger.debug("Lexical index cleared")
