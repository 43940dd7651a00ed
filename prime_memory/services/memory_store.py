"""
Content store: notes, transcripts and preferences.

Memory rows are committed before any entity or tag link is written, and the
search cache is invalidated only after that commit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from prime_memory.cache import NAMESPACE_SEARCH, get_cache
import prime_memory.config as config
from prime_memory.db import DB
from prime_memory.models import Memory, MemoryEntity, MemoryEntityLink, content_digest, utcnow
from prime_memory.services.entity_store import link_entities
from prime_memory.services.memory_embeddings import schedule_embedding
from prime_memory.services.memory_shared import find_or_create, logger
from prime_memory.services.tag_store import attach_tags, tag_names_for

TRANSCRIPT_TRUNCATION_MARKER = "... [Transcript truncated]"


def _invalidate_search() -> None:
    get_cache().invalidate(NAMESPACE_SEARCH)


def find_duplicate(db, content: str) -> Optional[Memory]:
    return (
        db.query(Memory)
        .filter(Memory.content_hash == content_digest(content), Memory.is_archived.is_(False))
        .order_by(Memory.id.asc())
        .first()
    )


def get_memory(db, memory_id: int) -> Optional[Memory]:
    return db.query(Memory).filter(Memory.id == memory_id).first()


def store_note(
    db,
    content: str,
    memory_type: str = "note",
    reminder_at: Optional[datetime] = None,
    entity_names: Optional[list[str]] = None,
    tags: Optional[list[str]] = None,
    metadata: Optional[dict] = None,
    link_type: str = "mentioned",
) -> tuple[Memory, bool]:
    """
    Store a memory unless an active one with the same content already exists.

    Returns ``(memory, created)``. A duplicate returns the existing row untouched:
    no links, no tags, no cache invalidation.
    """
    digest = content_digest(content)

    def resolve() -> tuple[Memory, bool]:
        existing = find_duplicate(db, content)
        if existing is not None:
            return existing, False
        memory = Memory(
            type=memory_type,
            content=content,
            metadata_=dict(metadata or {}),
            relevance_score=1.0,
            reminder_at=reminder_at,
            is_archived=False,
        )
        db.add(memory)
        db.flush()
        return memory, True

    memory, created = find_or_create(db, ("memory", digest), resolve, "memory")
    if not created:
        logger.debug("memory_duplicate", extra={"memory_id": memory.id})
        return memory, False

    logger.info("memory_stored", extra={"memory_id": memory.id, "memory_type": memory_type})
    link_entities(db, memory, entity_names, link_type=link_type, create_if_missing=False)
    attach_tags(db, memory, tags)
    _invalidate_search()
    schedule_embedding(memory.id)
    return memory, True


def transcript_summary(content: str) -> Optional[str]:
    if len(content) <= config.TRANSCRIPT_SUMMARY_THRESHOLD:
        return None
    return content[: config.TRANSCRIPT_SUMMARY_LENGTH] + TRANSCRIPT_TRUNCATION_MARKER


def store_transcript(
    db,
    content: str,
    title: str,
    attendees: Optional[list[str]] = None,
    transcript_date: Optional[str] = None,
    attendee_subtype: Optional[str] = None,
    tags: Optional[list[str]] = None,
) -> Memory:
    """Always inserts; every attendee is find-or-created as a person and linked as ``attendee``."""
    attendees = list(attendees or [])
    memory = Memory(
        type="transcript",
        content=content,
        summary=transcript_summary(content),
        metadata_={
            "title": title,
            "date": transcript_date or utcnow().date().isoformat(),
            "attendee_count": len(attendees),
        },
        relevance_score=1.0,
        is_archived=False,
    )
    db.add(memory)
    db.commit()
    logger.info(
        "transcript_stored",
        extra={"memory_id": memory.id, "content_length": memory.content_length},
    )
    link_entities(
        db,
        memory,
        attendees,
        link_type="attendee",
        create_if_missing=True,
        entity_type="person",
        entity_subtype=attendee_subtype,
    )
    attach_tags(db, memory, tags)
    _invalidate_search()
    schedule_embedding(memory.id)
    return memory


def preference_content(category: str, value: str, notes: Optional[str] = None) -> str:
    content = f"{category}: {value}"
    if notes:
        content += f" - {notes}"
    return content


def store_preference(
    db,
    category: str,
    value: str,
    notes: Optional[str] = None,
) -> tuple[Memory, bool]:
    """Upsert the single active preference per category."""
    content = preference_content(category, value, notes)
    metadata = {"category": category, "value": value, "notes": notes}

    def resolve() -> tuple[Memory, bool]:
        existing = (
            db.query(Memory)
            .filter(
                Memory.type == "preference",
                Memory.is_archived.is_(False),
                Memory.metadata_["category"].as_string() == category,
            )
            .order_by(Memory.id.asc())
            .first()
        )
        if existing is not None:
            existing.content = content
            existing.metadata_ = metadata
            db.flush()
            return existing, False
        memory = Memory(
            type="preference",
            content=content,
            metadata_=metadata,
            relevance_score=1.0,
            is_archived=False,
        )
        db.add(memory)
        db.flush()
        return memory, True

    memory, created = find_or_create(db, ("preference", category), resolve, "preference")
    logger.info(
        "preference_stored" if created else "preference_updated",
        extra={"memory_id": memory.id},
    )
    _invalidate_search()
    schedule_embedding(memory.id)
    return memory, created


def set_archived(db, memory: Memory, archived: bool) -> Memory:
    memory.is_archived = archived
    db.commit()
    _invalidate_search()
    logger.info(
        "memory_archived" if archived else "memory_restored",
        extra={"memory_id": memory.id},
    )
    if not archived:
        schedule_embedding(memory.id)
    return memory


def record_access(memory_ids: Iterable[int]) -> int:
    """Stamp last_accessed_at on the given memories in a session of its own."""
    ids = sorted(set(memory_ids))
    if not ids or DB.SessionLocal is None:
        return 0
    db = DB.SessionLocal()
    try:
        updated = (
            db.query(Memory)
            .filter(Memory.id.in_(ids))
            .update({Memory.last_accessed_at: utcnow()}, synchronize_session=False)
        )
        db.commit()
        return updated
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def upcoming_reminders(
    db,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[Memory]:
    query = db.query(Memory).filter(
        Memory.reminder_at.isnot(None),
        Memory.is_archived.is_(False),
    )
    if start is not None:
        query = query.filter(Memory.reminder_at >= start)
    if end is not None:
        query = query.filter(Memory.reminder_at <= end)
    return query.order_by(Memory.reminder_at.asc(), Memory.id.asc()).all()


def entity_names_for(db, memory_id: int) -> list[str]:
    rows = (
        db.query(MemoryEntity.name)
        .join(MemoryEntityLink, MemoryEntityLink.entity_id == MemoryEntity.id)
        .filter(MemoryEntityLink.memory_id == memory_id)
        .order_by(MemoryEntity.name.asc())
        .all()
    )
    return [row[0] for row in rows]


def reminder_view(db, memory: Memory) -> dict:
    return {
        "id": memory.id,
        "type": memory.type,
        "content": memory.content,
        "reminder_at": memory.reminder_at.isoformat() if memory.reminder_at else None,
        "entities": entity_names_for(db, memory.id),
        "tags": tag_names_for(db, memory.id),
    }
