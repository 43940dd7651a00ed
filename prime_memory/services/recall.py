"""
Hybrid recall: semantic ranking with a full-text fallback.

Ranking order is the primary signal (cosine similarity, or the full-text rank
on fallback), then relevance_score, then newest first. Filters narrow the
ranked list without re-ranking and the limit is applied after them.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Callable, Optional

from prime_memory import background
from prime_memory.cache import NAMESPACE_SEARCH, get_cache
import prime_memory.config as config
from prime_memory.embeddings import EmbeddingCache
from prime_memory.errors import EmbeddingProviderError, RecallDeadlineExceeded
from prime_memory.models import Memory, MemoryEntityLink, MemoryTag, MemoryTagLink, content_digest
from prime_memory.similarity import BruteForceSimilaritySearch, SimilaritySearch
from prime_memory.services.fulltext import rank_by_text
from prime_memory.services.memory_shared import logger
from prime_memory.services.memory_store import record_access

_ID_CHUNK = 500


@dataclass
class RecallFilters:
    memory_type: Optional[str] = None
    entity_id: Optional[int] = None
    tag: Optional[str] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None

    def active(self) -> bool:
        return any(
            value is not None
            for value in (self.memory_type, self.entity_id, self.tag, self.from_date, self.to_date)
        )

    def clauses(self) -> list:
        clauses = []
        if self.memory_type:
            clauses.append(Memory.type == self.memory_type)
        if self.entity_id is not None:
            clauses.append(Memory.entity_links.any(MemoryEntityLink.entity_id == self.entity_id))
        if self.tag:
            clauses.append(
                Memory.tag_links.any(
                    MemoryTagLink.tag.has(MemoryTag.name == self.tag.strip().lower())
                )
            )
        if self.from_date is not None:
            start = datetime.combine(self.from_date, dt_time.min, tzinfo=timezone.utc)
            clauses.append(Memory.created_at >= start)
        if self.to_date is not None:
            end = datetime.combine(self.to_date + timedelta(days=1), dt_time.min, tzinfo=timezone.utc)
            clauses.append(Memory.created_at < end)
        return clauses


@dataclass
class RecallOutcome:
    results: list[dict] = field(default_factory=list)
    search_mode: str = "semantic"
    truncated: bool = False
    semantic_available: bool = True


def full_text_search(db, query: str) -> list[tuple[int, float]]:
    """Non-archived memories ranked by full-text relevance on content and summary."""

    def compute() -> list[list]:
        ranked = rank_by_text(
            db,
            Memory.id,
            [Memory.content, Memory.summary],
            [Memory.is_archived.is_(False)],
            query,
        )
        return [[memory_id, rank] for memory_id, rank in ranked]

    ranked = get_cache().get_or_compute(
        NAMESPACE_SEARCH,
        f"fulltext:{content_digest(query)}",
        config.SEARCH_CACHE_TTL_SECONDS,
        compute,
    )
    return [(int(memory_id), float(rank)) for memory_id, rank in ranked or []]


def _load_memories(db, ids: list[int], clauses: list) -> dict[int, Memory]:
    loaded: dict[int, Memory] = {}
    for offset in range(0, len(ids), _ID_CHUNK):
        chunk = ids[offset: offset + _ID_CHUNK]
        rows = (
            db.query(Memory)
            .filter(Memory.id.in_(chunk), Memory.is_archived.is_(False))
            .filter(*clauses)
            .all()
        )
        for memory in rows:
            loaded[memory.id] = memory
    return loaded


def _created_key(memory: Memory) -> float:
    created = memory.created_at
    if created is None:
        return 0.0
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created.timestamp()


def _result_view(memory: Memory, score: float, score_field: str) -> dict:
    return {
        "id": memory.id,
        "type": memory.type,
        "content": memory.summary or memory.content,
        "created_at": memory.created_at.isoformat() if memory.created_at else None,
        score_field: score,
        "relevance_score": memory.relevance_score,
    }


def _check_deadline(clock: Callable[[], float], deadline: float, stage: str) -> None:
    if clock() >= deadline:
        raise RecallDeadlineExceeded(stage)


def recall(
    db,
    query: str,
    limit: Optional[int] = None,
    filters: Optional[RecallFilters] = None,
    min_similarity: Optional[float] = None,
    timeout: Optional[float] = None,
    embedder: Optional[EmbeddingCache] = None,
    searcher: Optional[SimilaritySearch] = None,
    clock: Callable[[], float] = time.monotonic,
) -> RecallOutcome:
    limit = limit or config.RECALL_DEFAULT_LIMIT
    filters = filters or RecallFilters()
    min_similarity = config.RECALL_MIN_SIMILARITY if min_similarity is None else min_similarity
    timeout = config.RECALL_TIMEOUT_SECONDS if timeout is None else timeout
    deadline = clock() + timeout
    outcome = RecallOutcome()

    candidates: list[tuple[int, float]] = []
    try:
        vector = (embedder or EmbeddingCache()).embed(query)
    except EmbeddingProviderError as exc:
        vector = None
        outcome.semantic_available = False
        logger.warning("recall_semantic_unavailable", extra={"detail": str(exc)})

    if vector is not None:
        searcher = searcher or BruteForceSimilaritySearch(db, clock=clock)
        # Filters run after ranking; an uncapped scan keeps them from being starved.
        scan = searcher.search(vector, None if filters.active() else limit, min_similarity, deadline)
        outcome.truncated = scan.truncated
        candidates = [(hit.memory_id, hit.similarity) for hit in scan.hits]

    if not candidates:
        try:
            _check_deadline(clock, deadline, "fulltext")
            outcome.search_mode = "fulltext"
            candidates = full_text_search(db, query)
        except RecallDeadlineExceeded as exc:
            outcome.truncated = True
            logger.warning("recall_deadline_exceeded", extra={"stage": exc.stage})

    if not candidates:
        return outcome

    memories = _load_memories(db, [memory_id for memory_id, _ in candidates], filters.clauses())
    ranked = [(memories[memory_id], score) for memory_id, score in candidates if memory_id in memories]
    ranked.sort(
        key=lambda item: (
            -item[1],
            -(item[0].relevance_score or 0.0),
            -_created_key(item[0]),
            item[0].id,
        )
    )
    ranked = ranked[:limit]

    score_field = "similarity" if outcome.search_mode == "semantic" else "rank"
    outcome.results = [_result_view(memory, score, score_field) for memory, score in ranked]
    if ranked:
        background.submit(record_access, [memory.id for memory, _ in ranked], label="record_access")
    logger.info(
        "recall_complete",
        extra={
            "search_mode": outcome.search_mode,
            "count": len(outcome.results),
            "truncated": outcome.truncated,
        },
    )
    return outcome
