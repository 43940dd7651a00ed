"""
Directed, typed edges between entities.

Writes are asymmetric: (A, B, works_at) and (B, A, works_at) are distinct
rows. Reads touching an entity look at both ends.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import joinedload

from prime_memory.models import MemoryRelationship, utcnow
from prime_memory.services.memory_shared import find_or_create, logger


def _normalize_rel_type(relationship_type: str) -> str:
    return relationship_type.strip().lower()


def find_or_create_relationship(
    db,
    from_entity_id: int,
    to_entity_id: int,
    relationship_type: str,
    metadata: Optional[dict] = None,
    started_at: Optional[date] = None,
    ended_at: Optional[date] = None,
) -> tuple[MemoryRelationship, bool]:
    """Resolve the (from, to, type) edge; an existing edge takes a shallow metadata merge."""
    relationship_type = _normalize_rel_type(relationship_type)

    def resolve() -> tuple[MemoryRelationship, bool]:
        rel = (
            db.query(MemoryRelationship)
            .filter(
                MemoryRelationship.from_entity_id == from_entity_id,
                MemoryRelationship.to_entity_id == to_entity_id,
                MemoryRelationship.relationship_type == relationship_type,
            )
            .first()
        )
        if rel is not None:
            if metadata:
                rel.metadata_ = {**(rel.metadata_ or {}), **metadata}
            if started_at is not None:
                rel.started_at = started_at
            if ended_at is not None:
                rel.ended_at = ended_at
            db.flush()
            return rel, False
        rel = MemoryRelationship(
            from_entity_id=from_entity_id,
            to_entity_id=to_entity_id,
            relationship_type=relationship_type,
            metadata_=dict(metadata or {}),
            started_at=started_at,
            ended_at=ended_at,
        )
        db.add(rel)
        db.flush()
        return rel, True

    rel, created = find_or_create(
        db,
        ("relationship", from_entity_id, to_entity_id, relationship_type),
        resolve,
        "relationship",
    )
    logger.info(
        "relationship_created" if created else "relationship_updated",
        extra={"relationship_id": rel.id, "relationship_type": relationship_type},
    )
    return rel, created


def relationships_for_entity(
    db,
    entity_id: int,
    current_only: bool = False,
    today: Optional[date] = None,
) -> list[MemoryRelationship]:
    query = (
        db.query(MemoryRelationship)
        .options(
            joinedload(MemoryRelationship.from_entity),
            joinedload(MemoryRelationship.to_entity),
        )
        .filter(
            or_(
                MemoryRelationship.from_entity_id == entity_id,
                MemoryRelationship.to_entity_id == entity_id,
            )
        )
    )
    if current_only:
        today = today or date.today()
        query = query.filter(
            or_(MemoryRelationship.ended_at.is_(None), MemoryRelationship.ended_at >= today)
        )
    return query.order_by(MemoryRelationship.id.asc()).all()


def end_relationship(db, rel: MemoryRelationship, ended_at: Optional[date] = None) -> MemoryRelationship:
    rel.ended_at = ended_at or utcnow().date()
    db.commit()
    logger.info("relationship_ended", extra={"relationship_id": rel.id})
    return rel


def find_relationship(
    db,
    from_entity_id: int,
    to_entity_id: int,
    relationship_type: str,
) -> Optional[MemoryRelationship]:
    return (
        db.query(MemoryRelationship)
        .filter(
            MemoryRelationship.from_entity_id == from_entity_id,
            MemoryRelationship.to_entity_id == to_entity_id,
            MemoryRelationship.relationship_type == _normalize_rel_type(relationship_type),
        )
        .first()
    )
