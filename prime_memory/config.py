"""
Shared configuration for the PRIME memory engine.
"""

from __future__ import annotations

import logging
import os

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()

logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("prime_memory")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_choice(env_name: str, default: str) -> str:
    return os.environ.get(env_name, default).strip().lower()


# Database settings
DB_BACKEND = _get_choice("DB_BACKEND", "postgres")
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/prime_memory.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE = DB_BACKEND if DB_BACKEND in {"postgres", "sqlite"} else "postgres"
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Embedding settings
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_EMBEDDINGS_URL = os.environ.get(
    "OPENAI_EMBEDDINGS_URL",
    "https://api.openai.com/v1/embeddings",
)
EMBEDDING_PROVIDER = _get_choice("EMBEDDING_PROVIDER", "openai")
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
LOCAL_EMBEDDING_MODEL = os.environ.get("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_MAX_INPUT_CHARS = _get_int("EMBEDDING_MAX_INPUT_CHARS", 8000)
EMBEDDING_CACHE_TTL_SECONDS = _get_int("EMBEDDING_CACHE_TTL_SECONDS", 86400)

# Embedding retry/backoff and circuit breaker
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_BATCH_TIMEOUT_SECONDS = _get_float("EMBEDDING_BATCH_TIMEOUT_SECONDS", 60.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)
EMBEDDING_HEALTHCHECK_ENABLED = _get_bool("EMBEDDING_HEALTHCHECK_ENABLED", True)

# Embedding backfill loop
EMBEDDING_BACKFILL_ENABLED = _get_bool("EMBEDDING_BACKFILL_ENABLED", True)
EMBEDDING_BACKFILL_INTERVAL_SECONDS = _get_int("EMBEDDING_BACKFILL_INTERVAL_SECONDS", 300)
EMBEDDING_BACKFILL_BATCH_LIMIT = _get_int("EMBEDDING_BACKFILL_BATCH_LIMIT", 50)

# Background work
BACKGROUND_MODE = _get_choice("BACKGROUND_MODE", "thread")
BACKGROUND_MAX_WORKERS = _get_int("BACKGROUND_MAX_WORKERS", 4)

# Cache
CACHE_BACKEND = _get_choice("CACHE_BACKEND", "memory")
CACHE_SUPPORTS_NAMESPACES = _get_bool("CACHE_SUPPORTS_NAMESPACES", True)
CACHE_MAX_ENTRIES = _get_int("CACHE_MAX_ENTRIES", 10000)
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
CACHE_KEY_PREFIX = os.environ.get("CACHE_KEY_PREFIX", "prime:cache:")
SEARCH_CACHE_TTL_SECONDS = _get_int("SEARCH_CACHE_TTL_SECONDS", 300)
ENTITY_CACHE_TTL_SECONDS = _get_int("ENTITY_CACHE_TTL_SECONDS", 600)

# Recall
RECALL_DEFAULT_LIMIT = _get_int("RECALL_DEFAULT_LIMIT", 10)
RECALL_MIN_SIMILARITY = _get_float("RECALL_MIN_SIMILARITY", 0.5)
RECALL_TIMEOUT_SECONDS = _get_float("RECALL_TIMEOUT_SECONDS", 10.0)
SIMILARITY_CHUNK_SIZE = _get_int("SIMILARITY_CHUNK_SIZE", 500)

# Transcripts
TRANSCRIPT_SUMMARY_THRESHOLD = _get_int("TRANSCRIPT_SUMMARY_THRESHOLD", 1000)
TRANSCRIPT_SUMMARY_LENGTH = _get_int("TRANSCRIPT_SUMMARY_LENGTH", 500)

# Entity listings
PEOPLE_LIST_DEFAULT_LIMIT = _get_int("PEOPLE_LIST_DEFAULT_LIMIT", 50)
ENTITY_DETAIL_MEMORY_LIMIT = _get_int("ENTITY_DETAIL_MEMORY_LIMIT", 20)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("PRIME_MAX_RESULT_LIMIT", 100)
MAX_QUERY_LENGTH = _get_int("PRIME_MAX_QUERY_LENGTH", 4000)
MAX_TEXT_LENGTH = _get_int("PRIME_MAX_TEXT_LENGTH", 200000)
MAX_SHORT_TEXT_LENGTH = _get_int("PRIME_MAX_SHORT_TEXT_LENGTH", 255)
MAX_METADATA_BYTES = _get_int("PRIME_MAX_METADATA_BYTES", 20000)
MAX_LIST_ITEMS = _get_int("PRIME_MAX_LIST_ITEMS", 50)
MAX_LIST_ITEM_LENGTH = _get_int("PRIME_MAX_LIST_ITEM_LENGTH", 255)

SERVICE_NAME = "PRIME Memory"
SERVICE_VERSION = "0.1.0"
SERVER_HOST = os.environ.get("HOST", "0.0.0.0")
SERVER_PORT = _get_int("PORT", 8080)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        is_sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if EMBEDDING_PROVIDER not in {"openai", "sentence_transformers", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai', 'sentence_transformers', or 'none'")
    if EMBEDDING_PROVIDER == "openai" and not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; semantic recall will fall back to full-text search.")

    if CACHE_BACKEND not in {"memory", "redis", "none"}:
        errors.append("CACHE_BACKEND must be 'memory', 'redis', or 'none'")
    if BACKGROUND_MODE not in {"thread", "inline"}:
        errors.append("BACKGROUND_MODE must be 'thread' or 'inline'")
    if not 0.0 <= RECALL_MIN_SIMILARITY <= 1.0:
        errors.append("RECALL_MIN_SIMILARITY must be between 0.0 and 1.0")
    if TRANSCRIPT_SUMMARY_LENGTH > TRANSCRIPT_SUMMARY_THRESHOLD:
        errors.append("TRANSCRIPT_SUMMARY_LENGTH must not exceed TRANSCRIPT_SUMMARY_THRESHOLD")

    DB_BACKEND_EFFECTIVE = DB_BACKEND if DB_BACKEND in {"postgres", "sqlite"} else "postgres"

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
