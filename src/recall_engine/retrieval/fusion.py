# retrieval/fusion.py
"""
Hybrid ranking: weighted Reciprocal Rank Fusion followed by a term-overlap rerank.

Both stages rescale scores into a 40-100 display range. Input results are
never mutated; new SearchResult objects are returned.
"""

from dataclasses import replace

from ..config import Config
from ..models import MatchType, SearchResult
from .query import query_terms

SUMMARY_BOOST = 1.3
DISPLAY_MIN = 40.0
DISPLAY_MAX = 100.0
RERANK_MAX_BONUS = 10.0


def adaptive_weights(query: str) -> tuple[float, float]:
    """
    (semantic, keyword) weights chosen by query length.

    Short queries lean on keywords, long ones on embeddings.
    """
    token_count = len(query.split())
    if token_count <= 2:
        return 0.3, 0.7
    if token_count >= 8:
        return 0.8, 0.2
    return 0.6, 0.4


def reciprocal_rank_fusion(
    semantic: list[SearchResult],
    keyword: list[SearchResult],
    weights: tuple[float, float],
    k: int = Config.RRF_K,
    summary_boost: float = SUMMARY_BOOST,
) -> list[SearchResult]:
    """
    Fuse two ranked lists by rank position, not raw score.

    Each appearance adds weight / (k + rank + 1), multiplied by summary_boost
    for summary entries. Entries found by both lists are tagged HYBRID.
    Returned scores are raw (not rescaled); ties keep first-seen order.
    """
    fused: dict[str, SearchResult] = {}
    sources: dict[str, set[MatchType]] = {}

    for results, weight in ((semantic, weights[0]), (keyword, weights[1])):
        for rank, result in enumerate(results):
            contribution = weight / (k + rank + 1)
            if result.entry.metadata.is_summary:
                contribution *= summary_boost

            entry_id = result.entry.id
            existing = fused.get(entry_id)
            if existing is None:
                fused[entry_id] = SearchResult(
                    entry=result.entry, score=contribution, match_type=result.match_type
                )
                sources[entry_id] = {result.match_type}
            else:
                existing.score += contribution
                sources[entry_id].add(result.match_type)

    for entry_id, found_by in sources.items():
        if len(found_by) > 1:
            fused[entry_id].match_type = MatchType.HYBRID

    return sorted(fused.values(), key=lambda r: r.score, reverse=True)


def rescale(
    results: list[SearchResult], low: float = DISPLAY_MIN, high: float = DISPLAY_MAX
) -> list[SearchResult]:
    """Linearly map scores onto [low, high]; equal scores all map to high."""
    if not results:
        return []
    scores = [r.score for r in results]
    top, bottom = max(scores), min(scores)
    span = top - bottom
    if span == 0:
        return [replace(r, score=high) for r in results]
    return [replace(r, score=low + (r.score - bottom) / span * (high - low)) for r in results]


def rerank(
    results: list[SearchResult], query: str, window: int = Config.RERANK_WINDOW
) -> list[SearchResult]:
    """
    Add up to RERANK_MAX_BONUS points for literal query-term coverage.

    Only the top `window` results are kept and reranked.
    """
    candidates = results[:window]
    terms = query_terms(query)
    if not candidates or not terms:
        return rescale(candidates)

    boosted = []
    for result in candidates:
        text = result.entry.content.lower()
        matched = sum(1 for term in terms if term in text)
        boosted.append(replace(result, score=result.score + RERANK_MAX_BONUS * matched / len(terms)))

    boosted.sort(key=lambda r: r.score, reverse=True)
    return rescale(boosted)
