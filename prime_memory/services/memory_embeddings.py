"""
Embedding generation and maintenance tasks.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from sqlalchemy.exc import IntegrityError

from prime_memory import background
import prime_memory.config as config
from prime_memory.db import DB
from prime_memory.embeddings import (
    EmbeddingCache,
    embedding_circuit_breaker,
    prepare_embedding_text,
)
from prime_memory.errors import EmbeddingProviderError
from prime_memory.models import Memory, MemoryEmbedding, content_digest
from prime_memory.similarity import magnitude
from prime_memory.services.memory_shared import logger


def generate_for_memory(db, memory_id: int, embedder: Optional[EmbeddingCache] = None) -> bool:
    """
    Embed a memory's effective text (summary, else content) and store it.

    Returns False when nothing was written: the memory is gone or archived, or
    the stored embedding already covers the current text with the current model.
    """
    memory = db.query(Memory).filter(Memory.id == memory_id).first()
    if memory is None or memory.is_archived:
        return False
    embedder = embedder or EmbeddingCache()
    text = prepare_embedding_text(memory.effective_text())
    if not text.strip():
        return False
    source_hash = content_digest(text)
    model = embedder.backend.model

    existing = db.query(MemoryEmbedding).filter(MemoryEmbedding.memory_id == memory_id).first()
    if existing is not None and existing.source_hash == source_hash and existing.model == model:
        return False

    vector = [float(value) for value in embedder.embed(text)]
    if existing is None:
        db.add(
            MemoryEmbedding(
                memory_id=memory_id,
                embedding=vector,
                model=model,
                magnitude=magnitude(vector),
                source_hash=source_hash,
            )
        )
    else:
        existing.embedding = vector
        existing.model = model
        existing.magnitude = magnitude(vector)
        existing.source_hash = source_hash
    try:
        db.commit()
    except IntegrityError:
        # A concurrent task stored the embedding first.
        db.rollback()
        return False
    logger.info("embedding_stored", extra={"memory_id": memory_id, "dimensions": len(vector)})
    return True


def _generate_embedding_task(memory_id: int) -> None:
    if DB.SessionLocal is None:
        return
    db = DB.SessionLocal()
    try:
        generate_for_memory(db, memory_id)
    except EmbeddingProviderError as exc:
        db.rollback()
        logger.warning("embedding_generation_failed", extra={"memory_id": memory_id, "detail": str(exc)})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def schedule_embedding(memory_id: int) -> None:
    """Generate the embedding off the request path; failures never reach the caller."""
    background.submit(_generate_embedding_task, memory_id, label="embedding")


def _run_magnitude_backfill(db, limit: int) -> int:
    rows = (
        db.query(MemoryEmbedding)
        .filter(MemoryEmbedding.magnitude.is_(None))
        .order_by(MemoryEmbedding.id.asc())
        .limit(limit)
        .all()
    )
    for row in rows:
        row.magnitude = magnitude(row.embedding or [])
    if rows:
        db.commit()
    return len(rows)


def _run_embedding_backfill() -> dict:
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    if config.EMBEDDING_BACKFILL_BATCH_LIMIT <= 0:
        return {"status": "skipped", "reason": "batch_limit_disabled"}

    db = DB.SessionLocal()
    processed = 0
    backfilled = 0
    skipped = 0
    try:
        magnitudes = _run_magnitude_backfill(db, config.EMBEDDING_BACKFILL_BATCH_LIMIT)

        if config.EMBEDDING_PROVIDER == "none":
            return {"status": "ok", "reason": "embedding_disabled", "magnitudes": magnitudes}
        if embedding_circuit_breaker.is_open():
            return {"status": "skipped", "reason": "circuit_open", "magnitudes": magnitudes}

        missing = (
            db.query(Memory.id)
            .outerjoin(MemoryEmbedding, MemoryEmbedding.memory_id == Memory.id)
            .filter(MemoryEmbedding.id.is_(None), Memory.is_archived.is_(False))
            .order_by(Memory.id.asc())
            .limit(config.EMBEDDING_BACKFILL_BATCH_LIMIT)
            .all()
        )
        for (memory_id,) in missing:
            if embedding_circuit_breaker.is_open():
                return {
                    "status": "skipped",
                    "reason": "circuit_open",
                    "processed": processed,
                    "backfilled": backfilled,
                    "skipped_count": skipped,
                    "magnitudes": magnitudes,
                }
            processed += 1
            try:
                if generate_for_memory(db, memory_id):
                    backfilled += 1
                else:
                    skipped += 1
            except EmbeddingProviderError:
                db.rollback()
                skipped += 1
        return {
            "status": "ok",
            "processed": processed,
            "backfilled": backfilled,
            "skipped_count": skipped,
            "magnitudes": magnitudes,
        }
    finally:
        db.close()


async def _embedding_backfill_loop() -> None:
    if config.EMBEDDING_BACKFILL_INTERVAL_SECONDS <= 0:
        return
    while True:
        await asyncio.sleep(config.EMBEDDING_BACKFILL_INTERVAL_SECONDS)
        try:
            stats = await asyncio.to_thread(_run_embedding_backfill)
            if stats.get("backfilled", 0) > 0 or stats.get("magnitudes", 0) > 0:
                logger.info("embedding_backfill_complete", extra=stats)
        except Exception as exc:
            logger.warning(f"Embedding backfill error: {exc}")
