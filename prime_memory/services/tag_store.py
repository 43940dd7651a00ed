"""
Tag store: labels with a usage counter.
"""

from __future__ import annotations

from typing import Optional

from prime_memory.models import Memory, MemoryTag, MemoryTagLink
from prime_memory.services.memory_shared import find_or_create, normalize_names, logger


def _normalize_tag(name: str) -> str:
    return name.strip().lower()


def _find_or_create_tag_locked(db, name: str, category: Optional[str]) -> MemoryTag:
    tag = db.query(MemoryTag).filter(MemoryTag.name == name).first()
    if tag is None:
        tag = MemoryTag(name=name, category=category, usage_count=0)
        db.add(tag)
    elif category and not tag.category:
        tag.category = category
    tag.usage_count = (tag.usage_count or 0) + 1
    db.flush()
    return tag


def find_or_create_tag(db, name: str, category: Optional[str] = None) -> MemoryTag:
    """Resolve a tag by name, creating it if needed; usage_count increments either way."""
    normalized = _normalize_tag(name)
    return find_or_create(
        db,
        ("tag", normalized),
        lambda: _find_or_create_tag_locked(db, normalized, category),
        "tag",
    )


def attach_tags(db, memory: Memory, names: Optional[list[str]]) -> list[MemoryTag]:
    """Attach tags to a committed memory. Already-linked tags are left alone."""
    tags: list[MemoryTag] = []
    for name in normalize_names(names):
        tag = find_or_create_tag(db, name)
        exists = (
            db.query(MemoryTagLink.id)
            .filter(MemoryTagLink.memory_id == memory.id, MemoryTagLink.tag_id == tag.id)
            .first()
        )
        if exists is None:
            db.add(MemoryTagLink(memory_id=memory.id, tag_id=tag.id))
        tags.append(tag)
    if tags:
        db.commit()
        logger.info("tags_attached", extra={"memory_id": memory.id, "count": len(tags)})
    return tags


def tag_names_for(db, memory_id: int) -> list[str]:
    rows = (
        db.query(MemoryTag.name)
        .join(MemoryTagLink, MemoryTagLink.tag_id == MemoryTag.id)
        .filter(MemoryTagLink.memory_id == memory_id)
        .order_by(MemoryTag.name.asc())
        .all()
    )
    return [row[0] for row in rows]
