"""Retrieval layer: hybrid search, indexing lifecycle and session-scoped search."""

from .cache import QueryResultCache
from .fusion import adaptive_weights, reciprocal_rank_fusion, rerank, rescale
from .query import preprocess_query, query_terms
from .service import RetrievalService, url_matches
from .session import SessionRetrievalService, SessionSearchResult

__all__ = [
    "QueryResultCache",
    "RetrievalService",
    "SessionRetrievalService",
    "SessionSearchResult",
    "adaptive_weights",
    "preprocess_query",
    "query_terms",
    "reciprocal_rank_fusion",
    "rerank",
    "rescale",
    "url_matches",
]
