"""Recall engine: change-aware indexing and hybrid retrieval over saved content."""

__version__ = "0.1.0"
