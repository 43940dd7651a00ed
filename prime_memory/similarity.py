"""
Vector similarity primitives and the semantic search seam.
"""

from __future__ import annotations

import heapq
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import numpy as np

import prime_memory.config as config
from prime_memory.errors import DimensionMismatchError
from prime_memory.models import Memory, MemoryEmbedding

logger = config.logger


def magnitude(vector: Sequence[float]) -> float:
    """Euclidean norm of a vector."""
    if len(vector) == 0:
        return 0.0
    return float(np.linalg.norm(np.asarray(vector, dtype=np.float64)))


def cosine_similarity(
    left: Sequence[float],
    right: Sequence[float],
    left_magnitude: Optional[float] = None,
    right_magnitude: Optional[float] = None,
) -> float:
    """
    (u . v) / (|u| * |v|), defined as 0.0 when either magnitude is zero.

    Precomputed magnitudes are used when supplied. Raises DimensionMismatchError
    when the vectors differ in length.
    """
    if len(left) != len(right):
        raise DimensionMismatchError(len(left), len(right))
    if left_magnitude is None:
        left_magnitude = magnitude(left)
    if right_magnitude is None:
        right_magnitude = magnitude(right)
    if left_magnitude == 0 or right_magnitude == 0:
        return 0.0
    dot = float(np.dot(np.asarray(left, dtype=np.float64), np.asarray(right, dtype=np.float64)))
    return dot / (left_magnitude * right_magnitude)


@dataclass(frozen=True)
class SimilarityHit:
    memory_id: int
    similarity: float


@dataclass
class SimilarityScan:
    hits: list[SimilarityHit] = field(default_factory=list)
    scanned: int = 0
    skipped_dimension_mismatch: int = 0
    truncated: bool = False


class SimilaritySearch(Protocol):
    def search(
        self,
        query_vector: Sequence[float],
        limit: Optional[int],
        min_score: float,
        deadline: Optional[float] = None,
    ) -> SimilarityScan:
        ...


class BruteForceSimilaritySearch:
    """
    Linear scan over every embedding of a non-archived memory.

    Rows are streamed in chunks; the deadline (a ``time.monotonic()`` value) is
    checked between chunks and an expired scan returns what it has ranked so far.
    Embeddings whose dimension differs from the query are skipped.
    """

    def __init__(self, db, chunk_size: Optional[int] = None, clock=time.monotonic):
        self._db = db
        self._chunk_size = max(1, chunk_size or config.SIMILARITY_CHUNK_SIZE)
        self._clock = clock

    def search(
        self,
        query_vector: Sequence[float],
        limit: Optional[int],
        min_score: float,
        deadline: Optional[float] = None,
    ) -> SimilarityScan:
        scan = SimilarityScan()
        query_magnitude = magnitude(query_vector)
        # (similarity, -memory_id) keeps ties deterministic: lower id wins
        heap: list[tuple[float, int]] = []

        rows = (
            self._db.query(
                MemoryEmbedding.memory_id,
                MemoryEmbedding.embedding,
                MemoryEmbedding.magnitude,
            )
            .join(Memory, Memory.id == MemoryEmbedding.memory_id)
            .filter(Memory.is_archived.is_(False))
            .order_by(MemoryEmbedding.id.asc())
            .yield_per(self._chunk_size)
        )

        for memory_id, vector, stored_magnitude in rows:
            if deadline is not None and scan.scanned % self._chunk_size == 0:
                if self._clock() >= deadline:
                    scan.truncated = True
                    break
            scan.scanned += 1
            try:
                similarity = cosine_similarity(
                    query_vector,
                    vector or [],
                    query_magnitude,
                    stored_magnitude,
                )
            except DimensionMismatchError as exc:
                scan.skipped_dimension_mismatch += 1
                logger.debug(
                    "similarity_dimension_mismatch",
                    extra={"memory_id": memory_id, "query_dim": exc.left, "stored_dim": exc.right},
                )
                continue
            if similarity < min_score:
                continue
            item = (similarity, -memory_id)
            if limit is None or len(heap) < limit:
                heapq.heappush(heap, item)
            elif item > heap[0]:
                heapq.heapreplace(heap, item)

        if scan.skipped_dimension_mismatch:
            logger.warning(
                "similarity_dimension_mismatch_skipped",
                extra={"skipped": scan.skipped_dimension_mismatch, "query_dim": len(query_vector)},
            )
        if scan.truncated:
            logger.warning("similarity_scan_deadline_exceeded", extra={"scanned": scan.scanned})

        ranked = sorted(heap, reverse=True)
        scan.hits = [SimilarityHit(memory_id=-neg_id, similarity=score) for score, neg_id in ranked]
        return scan
