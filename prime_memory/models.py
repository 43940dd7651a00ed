"""
PRIME memory database models.

Six relations back the engine: memories, memory_entities, memory_relationships,
memory_entity_links, memory_tag_links and memory_embeddings (plus memory_tags).
"""

from __future__ import annotations

import hashlib
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, Date,
    DateTime, ForeignKey, Index, UniqueConstraint, JSON, event, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base

JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_digest(content: str) -> str:
    """sha256 hex digest used for content-addressed deduplication."""
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


# =============================================================================
# Memories
# =============================================================================

class Memory(Base):
    __tablename__ = "memories"

    id = Column(Integer, primary_key=True)
    type = Column(String(50), nullable=False, default="note")  # note/reminder/fact/idea/task/preference/transcript
    content = Column(Text, nullable=False)
    summary = Column(Text)
    content_length = Column(Integer, nullable=False, default=0)
    content_hash = Column(String(64), nullable=False)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    relevance_score = Column(Float, nullable=False, default=1.0)
    reminder_at = Column(DateTime(timezone=True))
    is_archived = Column(Boolean, nullable=False, default=False)
    last_accessed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    entity_links = relationship(
        "MemoryEntityLink",
        back_populates="memory",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tag_links = relationship(
        "MemoryTagLink",
        back_populates="memory",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    embedding = relationship(
        "MemoryEmbedding",
        back_populates="memory",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_memories_hash_archived", "content_hash", "is_archived"),
        Index("ix_memories_type_archived_created", "type", "is_archived", "created_at"),
        Index("ix_memories_reminder_archived", "reminder_at", "is_archived"),
        Index("ix_memories_relevance_score", "relevance_score"),
    )

    def effective_text(self) -> str:
        """Text used for embedding: the summary when one exists, else the content."""
        return self.summary or self.content or ""


# =============================================================================
# Entities
# =============================================================================

class MemoryEntity(Base):
    __tablename__ = "memory_entities"

    id = Column(Integer, primary_key=True)
    entity_type = Column(String(50), nullable=False)  # person/place/organization/service/pet/vehicle
    entity_subtype = Column(String(100))  # colleague/family/friend
    name = Column(String(255), nullable=False)
    description = Column(Text)
    summary = Column(Text)
    attributes = Column(JSON_TYPE, default=dict)
    email = Column(String(255))
    phone = Column(String(50))
    mention_count = Column(Integer, nullable=False, default=1)
    last_mentioned_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(Date)
    end_date = Column(Date)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    memory_links = relationship(
        "MemoryEntityLink",
        back_populates="entity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    relationships_from = relationship(
        "MemoryRelationship",
        foreign_keys="MemoryRelationship.from_entity_id",
        back_populates="from_entity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    relationships_to = relationship(
        "MemoryRelationship",
        foreign_keys="MemoryRelationship.to_entity_id",
        back_populates="to_entity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_memory_entities_type_active", "entity_type", "is_active"),
        Index("ix_memory_entities_type_end_date", "entity_type", "end_date"),
        Index("ix_memory_entities_name", "name"),
        Index("ix_memory_entities_email", "email"),
        Index("ix_memory_entities_mention_count", "mention_count"),
        Index(
            "uq_memory_entities_active_type_email",
            "entity_type",
            "email",
            unique=True,
            postgresql_where=text("is_active AND email IS NOT NULL"),
            sqlite_where=text("is_active = 1 AND email IS NOT NULL"),
        ),
    )

    def is_current(self, today: Optional[date] = None) -> bool:
        today = today or date.today()
        return self.end_date is None or self.end_date >= today

    def is_past(self, today: Optional[date] = None) -> bool:
        today = today or date.today()
        return self.end_date is not None and self.end_date < today

    def is_future(self, today: Optional[date] = None) -> bool:
        today = today or date.today()
        return self.start_date is not None and self.start_date > today

    def is_active_during(self, range_start: date, range_end: Optional[date] = None) -> bool:
        range_end = range_end or range_start
        if self.start_date is not None and self.start_date > range_end:
            return False
        if self.end_date is not None and self.end_date < range_start:
            return False
        return True

    def merged_attributes(self) -> dict:
        """Attribute bag with the promoted email/phone columns folded back in."""
        merged = {}
        if self.email:
            merged["email"] = self.email
        if self.phone:
            merged["phone"] = self.phone
        merged.update(self.attributes or {})
        return merged


# =============================================================================
# Entity relationships (directed, typed edges)
# =============================================================================

class MemoryRelationship(Base):
    __tablename__ = "memory_relationships"

    id = Column(Integer, primary_key=True)
    from_entity_id = Column(
        Integer,
        ForeignKey("memory_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_entity_id = Column(
        Integer,
        ForeignKey("memory_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_type = Column(String(100), nullable=False)  # works_at/married_to/reports_to
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    started_at = Column(Date)
    ended_at = Column(Date)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    from_entity = relationship(
        "MemoryEntity",
        foreign_keys=[from_entity_id],
        back_populates="relationships_from",
    )
    to_entity = relationship(
        "MemoryEntity",
        foreign_keys=[to_entity_id],
        back_populates="relationships_to",
    )

    __table_args__ = (
        UniqueConstraint(
            "from_entity_id",
            "to_entity_id",
            "relationship_type",
            name="uq_memory_relationships_edge",
        ),
        Index("ix_memory_relationships_from", "from_entity_id"),
        Index("ix_memory_relationships_to_type", "to_entity_id", "relationship_type"),
        Index("ix_memory_relationships_type_ended", "relationship_type", "ended_at"),
    )

    def is_current(self, today: Optional[date] = None) -> bool:
        today = today or date.today()
        return self.ended_at is None or self.ended_at >= today


# =============================================================================
# Tags
# =============================================================================

class MemoryTag(Base):
    __tablename__ = "memory_tags"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    category = Column(String(100))
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    memory_links = relationship(
        "MemoryTagLink",
        back_populates="tag",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_memory_tags_usage_count", "usage_count"),
    )


# =============================================================================
# Link tables
# =============================================================================

class MemoryEntityLink(Base):
    __tablename__ = "memory_entity_links"

    id = Column(Integer, primary_key=True)
    memory_id = Column(Integer, ForeignKey("memories.id", ondelete="CASCADE"), nullable=False)
    entity_id = Column(Integer, ForeignKey("memory_entities.id", ondelete="CASCADE"), nullable=False)
    link_type = Column(String(50), nullable=False, default="mentioned")  # mentioned/about/attendee/created_by
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    memory = relationship("Memory", back_populates="entity_links")
    entity = relationship("MemoryEntity", back_populates="memory_links")

    __table_args__ = (
        UniqueConstraint("memory_id", "entity_id", name="uq_memory_entity_links_pair"),
        Index("ix_memory_entity_links_entity", "entity_id", "memory_id"),
    )


class MemoryTagLink(Base):
    __tablename__ = "memory_tag_links"

    id = Column(Integer, primary_key=True)
    memory_id = Column(Integer, ForeignKey("memories.id", ondelete="CASCADE"), nullable=False)
    tag_id = Column(Integer, ForeignKey("memory_tags.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    memory = relationship("Memory", back_populates="tag_links")
    tag = relationship("MemoryTag", back_populates="memory_links")

    __table_args__ = (
        UniqueConstraint("memory_id", "tag_id", name="uq_memory_tag_links_pair"),
        Index("ix_memory_tag_links_tag", "tag_id"),
    )


# =============================================================================
# Embeddings (1:1 with memories)
# =============================================================================

class MemoryEmbedding(Base):
    __tablename__ = "memory_embeddings"

    id = Column(Integer, primary_key=True)
    memory_id = Column(
        Integer,
        ForeignKey("memories.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    embedding = Column(JSON, nullable=False)
    model = Column(String(100), nullable=False)
    dimensions = Column(Integer, nullable=False)
    magnitude = Column(Float)
    source_hash = Column(String(64))  # digest of the embedded text
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    memory = relationship("Memory", back_populates="embedding")

    __table_args__ = (
        Index("ix_memory_embeddings_model_created", "model", "created_at"),
        Index("ix_memory_embeddings_magnitude", "magnitude"),
    )


# =============================================================================
# Derived-column maintenance
# =============================================================================

def _apply_content_fingerprint(target: Memory) -> None:
    target.content_hash = content_digest(target.content)
    target.content_length = len(target.content or "")


@event.listens_for(Memory, "before_insert")
def _memory_before_insert(mapper, connection, target) -> None:
    _apply_content_fingerprint(target)


@event.listens_for(Memory, "before_update")
def _memory_before_update(mapper, connection, target) -> None:
    _apply_content_fingerprint(target)


@event.listens_for(MemoryEmbedding, "before_insert")
@event.listens_for(MemoryEmbedding, "before_update")
def _embedding_dimensions(mapper, connection, target) -> None:
    target.dimensions = len(target.embedding or [])


__all__ = [
    "Base",
    "Memory",
    "MemoryEntity",
    "MemoryRelationship",
    "MemoryTag",
    "MemoryEntityLink",
    "MemoryTagLink",
    "MemoryEmbedding",
    "content_digest",
    "utcnow",
]
