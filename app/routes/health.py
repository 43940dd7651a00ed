"""
Health endpoints: store, schema, cache and embedding provider status.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException
from sqlalchemy import func, select, text

import prime_memory.config as config
from prime_memory.cache import MISSING, get_cache
from prime_memory.db import DB, schema_revisions
from prime_memory.embeddings import embed_text, embedding_circuit_breaker, get_backend
from prime_memory.errors import EmbeddingProviderError
from prime_memory.mcp import tool_inventory_status
from prime_memory.models import Memory, MemoryEmbedding, MemoryEntity


router = APIRouter()

_FULLTEXT_INDEXES = ("ix_memories_fulltext", "ix_memory_entities_fulltext")
_CACHE_PROBE_NAMESPACE = "health"


def _store_counts(conn) -> dict:
    return {
        "memories": conn.execute(
            select(func.count(Memory.id)).where(Memory.is_archived.is_(False))
        ).scalar_one(),
        "archived_memories": conn.execute(
            select(func.count(Memory.id)).where(Memory.is_archived.is_(True))
        ).scalar_one(),
        "entities": conn.execute(
            select(func.count(MemoryEntity.id)).where(MemoryEntity.is_active.is_(True))
        ).scalar_one(),
        "embeddings": conn.execute(select(func.count(MemoryEmbedding.id))).scalar_one(),
    }


def _fulltext_status(conn) -> dict:
    if conn.dialect.name != "postgresql":
        return {"engine": "token_overlap", "indexes": []}
    rows = conn.execute(
        text("SELECT indexname FROM pg_indexes WHERE indexname = ANY(:names)"),
        {"names": list(_FULLTEXT_INDEXES)},
    ).scalars()
    return {"engine": "tsvector", "indexes": sorted(rows)}


def _database_status() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        current_rev, head_rev = schema_revisions(DB.engine)
    except Exception as exc:
        config.logger.warning("health_database_unreachable", extra={"detail": str(exc)})
        return {"ok": False, "error": type(exc).__name__}

    schema_ok = current_rev == head_rev
    status = {
        "ok": schema_ok,
        "backend": DB.engine.dialect.name,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }
    if not schema_ok:
        return status

    try:
        with DB.engine.connect() as conn:
            status["counts"] = _store_counts(conn)
            status["fulltext"] = _fulltext_status(conn)
    except Exception as exc:
        config.logger.warning("health_database_query_failed", extra={"detail": str(exc)})
        status["ok"] = False
        status["error"] = type(exc).__name__
    return status


def _cache_status() -> dict:
    cache = get_cache()
    status = {
        "backend": type(cache).__name__,
        "supports_namespaces": cache.supports_namespaces,
    }
    probe = f"probe:{time.time_ns()}"
    cache.set(_CACHE_PROBE_NAMESPACE, probe, 1, 5)
    status["round_trip"] = cache.get(_CACHE_PROBE_NAMESPACE, probe) is not MISSING
    return status


def _embedding_status(probe: bool) -> dict:
    breaker = embedding_circuit_breaker.status()
    status = {
        "provider": config.EMBEDDING_PROVIDER,
        "model": getattr(get_backend(), "model", None),
        "circuit_breaker": breaker,
        "checked": False,
    }
    if config.EMBEDDING_PROVIDER == "none":
        status["status"] = "disabled"
    elif breaker.get("open"):
        status["status"] = "cooldown"
    elif not probe:
        status["status"] = "ready"
    elif not config.EMBEDDING_HEALTHCHECK_ENABLED:
        status["status"] = "skipped"
    else:
        status["checked"] = True
        started = time.monotonic()
        try:
            embed_text("prime memory health probe")
            status["status"] = "ok"
            status["latency_ms"] = int((time.monotonic() - started) * 1000)
        except EmbeddingProviderError as exc:
            status["status"] = "error"
            status["error"] = str(exc)
    return status


@router.get("/health")
async def health():
    """Store and schema health; 503 until migrations reach head."""
    database = _database_status()
    embeddings = _embedding_status(probe=False)
    if not database.get("ok"):
        raise HTTPException(
            status_code=503,
            detail={"database": database, "embedding_provider": embeddings},
        )

    return {
        "status": "healthy",
        "service": config.SERVICE_NAME,
        "version": config.SERVICE_VERSION,
        "database": database,
        "embedding_provider": embeddings,
        "cache": _cache_status(),
    }


@router.get("/health/tools")
async def health_tools():
    inventory = await tool_inventory_status(refresh_if_empty=True, reason="health_tools")
    if not inventory.get("tool_count"):
        raise HTTPException(status_code=503, detail={"tool_inventory": inventory})
    return {"status": "healthy", "service": config.SERVICE_NAME, "tool_inventory": inventory}


@router.get("/health/deps")
def health_deps():
    """Like /health, but also embeds a probe string through the configured provider."""
    database = _database_status()
    if not database.get("ok"):
        raise HTTPException(status_code=503, detail={"database": database})

    return {
        "status": "healthy",
        "service": config.SERVICE_NAME,
        "database": database,
        "cache": _cache_status(),
        "embedding_provider": _embedding_status(probe=True),
    }
