"""Centralized configuration for the recall engine."""

import os


def _env(name: str, default: str) -> str:
    return os.getenv(f"RECALL_{name}", default)


class Config:
    """
    Recall engine configuration with environment variable overrides.

    All configuration values are centralized here with sensible defaults.
    Values can be overridden via ``RECALL_<NAME>`` environment variables.
    Components read these as constructor defaults only, so tests can pass
    explicit values without touching the environment.
    """

    # ========================================================================
    # Durable Store (Redis)
    # ========================================================================
    REDIS_URL: str = _env("REDIS_URL", "redis://localhost:6379")
    REDIS_NAMESPACE_PREFIX: str = _env("REDIS_NAMESPACE_PREFIX", "recall")
    REDIS_SOCKET_TIMEOUT: float = float(_env("REDIS_SOCKET_TIMEOUT", "2"))

    # ========================================================================
    # Embedding Backend
    # ========================================================================
    EMBED_BASE_URL: str = _env("EMBED_BASE_URL", "http://localhost:11434")
    EMBED_MODEL: str = _env("EMBED_MODEL", "nomic-embed-text")
    EMBED_TIMEOUT: float = float(_env("EMBED_TIMEOUT", "30"))
    EMBED_MAX_RETRIES: int = int(_env("EMBED_MAX_RETRIES", "5"))
    EMBED_RETRY_BASE_DELAY: float = float(_env("EMBED_RETRY_BASE_DELAY", "0.5"))

    # ========================================================================
    # Indexing
    # ========================================================================
    INDEX_BATCH_SIZE: int = int(_env("INDEX_BATCH_SIZE", "8"))
    CHUNK_TARGET_TOKENS: int = int(_env("CHUNK_TARGET_TOKENS", "1500"))
    CHUNK_OVERLAP_TOKENS: int = int(_env("CHUNK_OVERLAP_TOKENS", "200"))

    # ========================================================================
    # Vector Store persistence
    # ========================================================================
    SAVE_DEBOUNCE_BUSY: float = float(_env("SAVE_DEBOUNCE_BUSY", "0.3"))
    SAVE_DEBOUNCE_IDLE: float = float(_env("SAVE_DEBOUNCE_IDLE", "0.05"))

    # ========================================================================
    # Querying
    # ========================================================================
    QUERY_CACHE_SIZE: int = int(_env("QUERY_CACHE_SIZE", "100"))
    QUERY_CACHE_TTL: float = float(_env("QUERY_CACHE_TTL", "300"))
    RRF_K: int = int(_env("RRF_K", "60"))
    RERANK_WINDOW: int = int(_env("RERANK_WINDOW", "50"))

    LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> bool:
        """
        Validate configuration consistency.

        Returns:
            True if validation passes

        Raises:
            ValueError: If validation fails
        """
        errors = []

        if cls.EMBED_MAX_RETRIES < 1:
            errors.append(f"EMBED_MAX_RETRIES must be >= 1, got {cls.EMBED_MAX_RETRIES}")
        if cls.EMBED_RETRY_BASE_DELAY < 0:
            errors.append(
                f"EMBED_RETRY_BASE_DELAY must be >= 0, got {cls.EMBED_RETRY_BASE_DELAY}"
            )
        if cls.EMBED_TIMEOUT <= 0:
            errors.append(f"EMBED_TIMEOUT must be > 0, got {cls.EMBED_TIMEOUT}")

        if cls.INDEX_BATCH_SIZE <= 0:
            errors.append(f"INDEX_BATCH_SIZE must be > 0, got {cls.INDEX_BATCH_SIZE}")
        if cls.CHUNK_TARGET_TOKENS <= 0:
            errors.append(f"CHUNK_TARGET_TOKENS must be > 0, got {cls.CHUNK_TARGET_TOKENS}")
        if not (0 <= cls.CHUNK_OVERLAP_TOKENS < cls.CHUNK_TARGET_TOKENS):
            errors.append(
                "CHUNK_OVERLAP_TOKENS must be >= 0 and smaller than CHUNK_TARGET_TOKENS, "
                f"got {cls.CHUNK_OVERLAP_TOKENS}"
            )

        if cls.SAVE_DEBOUNCE_BUSY < 0 or cls.SAVE_DEBOUNCE_IDLE < 0:
            errors.append("SAVE_DEBOUNCE_BUSY and SAVE_DEBOUNCE_IDLE must be >= 0")

        if cls.QUERY_CACHE_SIZE <= 0:
            errors.append(f"QUERY_CACHE_SIZE must be > 0, got {cls.QUERY_CACHE_SIZE}")
        if cls.QUERY_CACHE_TTL <= 0:
            errors.append(f"QUERY_CACHE_TTL must be > 0, got {cls.QUERY_CACHE_TTL}")
        if cls.RRF_K < 0:
            errors.append(f"RRF_K must be >= 0, got {cls.RRF_K}")
        if cls.RERANK_WINDOW <= 0:
            errors.append(f"RERANK_WINDOW must be > 0, got {cls.RERANK_WINDOW}")

        if cls.REDIS_SOCKET_TIMEOUT <= 0:
            errors.append(f"REDIS_SOCKET_TIMEOUT must be > 0, got {cls.REDIS_SOCKET_TIMEOUT}")

        if errors:
            raise ValueError(f"Config validation failed: {'; '.join(errors)}")

        return True
