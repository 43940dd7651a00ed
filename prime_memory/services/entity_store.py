"""
Entity store: identity resolution, temporal scopes and entity lifecycle.
"""

from __future__ import annotations

import json
from datetime import date
from typing import Optional

from sqlalchemy import and_, func, or_

from prime_memory.cache import NAMESPACE_ENTITIES, get_cache
import prime_memory.config as config
from prime_memory.models import (
    Memory,
    MemoryEntity,
    MemoryEntityLink,
    content_digest,
    utcnow,
)
from prime_memory.services.attribute_merge import (
    IsMoreSpecific,
    default_comparator,
    merge_attribute_bags,
    merge_fields,
)
from prime_memory.services.fulltext import rank_by_text
from prime_memory.services.memory_shared import find_or_create, normalize_names, logger
from prime_memory.services.relationship_store import relationships_for_entity

EMAIL_ALIASES = frozenset({"email", "mail", "email_address", "e-mail", "work_email"})
PHONE_ALIASES = frozenset({"phone", "phone_number", "tel", "telephone", "mobile", "cell", "work_phone"})

TEMPORAL_FILTERS = ("current", "past", "future", "all")


def _normalize_email(value) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip().lower()
    return cleaned or None


def _normalize_phone(value) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def promote_contact_attributes(
    attributes: Optional[dict],
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> tuple[dict, Optional[str], Optional[str]]:
    """
    Split an attribute bag into (bag, email, phone).

    Keys in the email/phone alias sets are lifted out of the bag. Explicit
    ``email``/``phone`` arguments win over aliased keys.
    """
    bag: dict = {}
    promoted_email = None
    promoted_phone = None
    for key, value in (attributes or {}).items():
        normalized_key = key.strip().lower()
        if normalized_key in EMAIL_ALIASES:
            promoted_email = value
        elif normalized_key in PHONE_ALIASES:
            promoted_phone = value
        else:
            bag[key] = value
    return (
        bag,
        _normalize_email(email) or _normalize_email(promoted_email),
        _normalize_phone(phone) or _normalize_phone(promoted_phone),
    )


def _invalidate_entities() -> None:
    get_cache().invalidate(NAMESPACE_ENTITIES)


# =============================================================================
# Temporal scopes
# =============================================================================

def current_clause(today: Optional[date] = None):
    today = today or date.today()
    return or_(MemoryEntity.end_date.is_(None), MemoryEntity.end_date >= today)


def past_clause(today: Optional[date] = None):
    today = today or date.today()
    return and_(MemoryEntity.end_date.isnot(None), MemoryEntity.end_date < today)


def future_clause(today: Optional[date] = None):
    today = today or date.today()
    return and_(MemoryEntity.start_date.isnot(None), MemoryEntity.start_date > today)


def active_during_clause(range_start: date, range_end: Optional[date] = None):
    range_end = range_end or range_start
    return and_(
        or_(MemoryEntity.start_date.is_(None), MemoryEntity.start_date <= range_end),
        or_(MemoryEntity.end_date.is_(None), MemoryEntity.end_date >= range_start),
    )


def temporal_clause(temporal_filter: str, today: Optional[date] = None):
    if temporal_filter == "current":
        return current_clause(today)
    if temporal_filter == "past":
        return past_clause(today)
    if temporal_filter == "future":
        return future_clause(today)
    return None


# =============================================================================
# Lookup
# =============================================================================

def _active_query(db, entity_type: Optional[str]):
    query = db.query(MemoryEntity).filter(MemoryEntity.is_active.is_(True))
    if entity_type:
        query = query.filter(MemoryEntity.entity_type == entity_type)
    return query


def find_by_name(db, name: str, entity_type: Optional[str] = None) -> Optional[MemoryEntity]:
    """
    First active entity whose name matches case-insensitively.

    An exact ``lower(trim(name))`` match wins. Otherwise the incoming name may
    match the leading whole words of a stored name ("Marcus" finds "Marcus
    Reed"), preferring the most mentioned entity. A stored name is never found
    through a longer incoming name.
    """
    key = " ".join((name or "").split()).lower()
    if not key:
        return None
    stored = func.lower(func.trim(MemoryEntity.name))
    ordering = (MemoryEntity.mention_count.desc(), MemoryEntity.id.asc())

    exact = _active_query(db, entity_type).filter(stored == key).order_by(*ordering).first()
    if exact is not None:
        return exact
    return (
        _active_query(db, entity_type)
        .filter(stored.startswith(f"{key} ", autoescape=True))
        .order_by(*ordering)
        .first()
    )


def find_by_email(db, entity_type: str, email: str) -> Optional[MemoryEntity]:
    return (
        _active_query(db, entity_type)
        .filter(MemoryEntity.email == email)
        .order_by(MemoryEntity.id.asc())
        .first()
    )


def get_entity(db, entity_id: int) -> Optional[MemoryEntity]:
    return db.query(MemoryEntity).filter(MemoryEntity.id == entity_id).first()


# =============================================================================
# Identity resolution
# =============================================================================

def find_or_create_entity(
    db,
    entity_type: str,
    name: str,
    description: Optional[str] = None,
    attributes: Optional[dict] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    entity_subtype: Optional[str] = None,
) -> tuple[MemoryEntity, bool]:
    """
    Resolve an entity by email, then by name, creating it when neither matches.

    Returns ``(entity, created)``. A matched entity records a mention and takes
    any explicitly provided fields; omitted fields are left untouched.
    """
    entity_type = entity_type.strip().lower()
    name = name.strip()
    bag, email, phone = promote_contact_attributes(attributes, email, phone)

    def resolve() -> tuple[MemoryEntity, bool]:
        entity = None
        if email:
            entity = find_by_email(db, entity_type, email)
            if entity is not None and len(name) > len((entity.name or "").strip()):
                entity.name = name
        if entity is None:
            entity = find_by_name(db, name, entity_type)
            if entity is not None and email and entity.email and entity.email != email:
                # a different stored email is a different identity
                entity = None

        if entity is not None:
            entity.mention_count = (entity.mention_count or 0) + 1
            entity.last_mentioned_at = utcnow()
            if email:
                entity.email = email
            if phone:
                entity.phone = phone
            if bag:
                entity.attributes = {**(entity.attributes or {}), **bag}
            if description:
                entity.description = description
            if entity_subtype:
                entity.entity_subtype = entity_subtype
            if start_date is not None:
                entity.start_date = start_date
            if end_date is not None:
                entity.end_date = end_date
            db.flush()
            return entity, False

        entity = MemoryEntity(
            entity_type=entity_type,
            entity_subtype=entity_subtype,
            name=name,
            description=description,
            attributes=bag,
            email=email,
            phone=phone,
            mention_count=1,
            last_mentioned_at=utcnow(),
            is_active=True,
            start_date=start_date,
            end_date=end_date,
        )
        db.add(entity)
        db.flush()
        return entity, True

    entity, created = find_or_create(db, ("entity", entity_type), resolve, "entity")
    _invalidate_entities()
    logger.info(
        "entity_created" if created else "entity_merged",
        extra={"entity_id": entity.id, "entity_type": entity_type},
    )
    return entity, created


def record_mention(db, entity: MemoryEntity) -> None:
    entity.mention_count = (entity.mention_count or 0) + 1
    entity.last_mentioned_at = utcnow()
    db.commit()


def _add_link(db, memory: Memory, entity: MemoryEntity, link_type: str) -> None:
    exists = (
        db.query(MemoryEntityLink.id)
        .filter(
            MemoryEntityLink.memory_id == memory.id,
            MemoryEntityLink.entity_id == entity.id,
        )
        .first()
    )
    if exists is None:
        db.add(MemoryEntityLink(memory_id=memory.id, entity_id=entity.id, link_type=link_type))


def attach_entity(db, memory: Memory, entity: MemoryEntity, link_type: str = "mentioned") -> None:
    """Link an already resolved entity to a committed memory."""
    _add_link(db, memory, entity, link_type)
    db.commit()


def link_entities(
    db,
    memory: Memory,
    names: Optional[list[str]],
    link_type: str = "mentioned",
    create_if_missing: bool = False,
    entity_type: str = "person",
    entity_subtype: Optional[str] = None,
) -> list[MemoryEntity]:
    """
    Link a committed memory to entities by name.

    With ``create_if_missing`` each name is find-or-created as ``entity_type``;
    otherwise names without an active match are skipped.
    """
    linked: list[MemoryEntity] = []
    for name in normalize_names(names):
        if create_if_missing:
            entity, _ = find_or_create_entity(
                db,
                entity_type,
                name,
                entity_subtype=entity_subtype,
            )
        else:
            entity = find_by_name(db, name)
            if entity is None:
                logger.debug("entity_link_skipped", extra={"memory_id": memory.id})
                continue
            entity.mention_count = (entity.mention_count or 0) + 1
            entity.last_mentioned_at = utcnow()
        _add_link(db, memory, entity, link_type)
        linked.append(entity)
    if linked:
        db.commit()
        logger.info(
            "entities_linked",
            extra={"memory_id": memory.id, "count": len(linked), "link_type": link_type},
        )
    return linked


# =============================================================================
# Enrichment merge
# =============================================================================

def reconcile_entity(
    db,
    entity: MemoryEntity,
    observed: dict,
    comparator: IsMoreSpecific = default_comparator,
) -> dict:
    """
    Fold an independently observed record into ``entity`` without losing information.

    Returns the fields that changed.
    """
    bag, email, phone = promote_contact_attributes(observed.get("attributes"), observed.get("email"), observed.get("phone"))
    existing = {
        "name": entity.name,
        "description": entity.description,
        "entity_subtype": entity.entity_subtype,
        "summary": entity.summary,
    }
    incoming = {field: observed.get(field) for field in existing}
    changes = merge_fields(existing, incoming, comparator)

    merged_bag = merge_attribute_bags(entity.attributes or {}, bag, comparator)
    if merged_bag != (entity.attributes or {}):
        changes["attributes"] = merged_bag
    if email and not entity.email:
        changes["email"] = email
    if phone and not entity.phone:
        changes["phone"] = phone

    for field, value in changes.items():
        setattr(entity, field, value)
    if changes:
        db.commit()
        _invalidate_entities()
        logger.info("entity_reconciled", extra={"entity_id": entity.id, "fields": sorted(changes)})
    return changes


# =============================================================================
# Search and listing
# =============================================================================

def search_entities(
    db,
    query: str,
    entity_type: Optional[str] = None,
    entity_subtype: Optional[str] = None,
    limit: int = 10,
) -> list[tuple[MemoryEntity, float]]:
    """Full-text search on name and description over active entities."""
    cache_key = content_digest(
        json.dumps(
            {"q": query, "type": entity_type, "subtype": entity_subtype, "limit": limit},
            sort_keys=True,
        )
    )

    def compute() -> list[list]:
        filters = [MemoryEntity.is_active.is_(True)]
        if entity_type:
            filters.append(MemoryEntity.entity_type == entity_type)
        if entity_subtype:
            filters.append(MemoryEntity.entity_subtype == entity_subtype)
        ranked = rank_by_text(
            db,
            MemoryEntity.id,
            [MemoryEntity.name, MemoryEntity.description],
            filters,
            query,
        )
        return [[entity_id, rank] for entity_id, rank in ranked]

    ranked = get_cache().get_or_compute(
        NAMESPACE_ENTITIES,
        f"search:{cache_key}",
        config.ENTITY_CACHE_TTL_SECONDS,
        compute,
    )
    if not ranked:
        return []
    ranks = {entity_id: rank for entity_id, rank in ranked}
    entities = (
        db.query(MemoryEntity)
        .filter(MemoryEntity.id.in_(list(ranks)), MemoryEntity.is_active.is_(True))
        .all()
    )
    entities.sort(key=lambda entity: (-ranks[entity.id], -(entity.mention_count or 0), entity.id))
    return [(entity, ranks[entity.id]) for entity in entities[:limit]]


def find_by_substring(db, name: str, entity_type: Optional[str] = None) -> list[MemoryEntity]:
    key = (name or "").strip().lower()
    return (
        _active_query(db, entity_type)
        .filter(func.lower(MemoryEntity.name).contains(key, autoescape=True))
        .order_by(MemoryEntity.mention_count.desc(), MemoryEntity.id.asc())
        .all()
    )


def list_people(
    db,
    temporal_filter: str = "current",
    entity_subtype: Optional[str] = None,
    limit: Optional[int] = None,
    today: Optional[date] = None,
) -> list[MemoryEntity]:
    query = _active_query(db, "person")
    if entity_subtype:
        query = query.filter(MemoryEntity.entity_subtype == entity_subtype)
    clause = temporal_clause(temporal_filter, today)
    if clause is not None:
        query = query.filter(clause)
    return (
        query.order_by(MemoryEntity.mention_count.desc(), MemoryEntity.id.asc())
        .limit(limit or config.PEOPLE_LIST_DEFAULT_LIMIT)
        .all()
    )


# =============================================================================
# Serialization
# =============================================================================

def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def entity_summary(entity: MemoryEntity, today: Optional[date] = None) -> dict:
    return {
        "id": entity.id,
        "name": entity.name,
        "type": entity.entity_type,
        "subtype": entity.entity_subtype,
        "description": entity.description,
        "attributes": entity.merged_attributes(),
        "mention_count": entity.mention_count,
        "last_mentioned_at": _iso(entity.last_mentioned_at),
        "start_date": _iso(entity.start_date),
        "end_date": _iso(entity.end_date),
        "is_current": entity.is_current(today),
        "is_past": entity.is_past(today),
    }


def entity_details(
    db,
    entity: MemoryEntity,
    memory_limit: Optional[int] = None,
    today: Optional[date] = None,
) -> dict:
    """Full view: merged attributes, temporal flags, recent memories and relationships."""
    rows = (
        db.query(Memory, MemoryEntityLink.link_type)
        .join(MemoryEntityLink, MemoryEntityLink.memory_id == Memory.id)
        .filter(MemoryEntityLink.entity_id == entity.id, Memory.is_archived.is_(False))
        .order_by(Memory.created_at.desc(), Memory.id.desc())
        .limit(memory_limit or config.ENTITY_DETAIL_MEMORY_LIMIT)
        .all()
    )
    memories = [
        {
            "id": memory.id,
            "type": memory.type,
            "content": memory.content,
            "link_type": link_type,
            "created_at": _iso(memory.created_at),
        }
        for memory, link_type in rows
    ]

    outgoing = []
    incoming = []
    for rel in relationships_for_entity(db, entity.id):
        item = {
            "id": rel.id,
            "type": rel.relationship_type,
            "metadata": rel.metadata_ or {},
            "started_at": _iso(rel.started_at),
            "ended_at": _iso(rel.ended_at),
            "is_current": rel.is_current(today),
        }
        if rel.from_entity_id == entity.id:
            item["entity_id"] = rel.to_entity_id
            item["entity_name"] = rel.to_entity.name
            outgoing.append(item)
        else:
            item["entity_id"] = rel.from_entity_id
            item["entity_name"] = rel.from_entity.name
            incoming.append(item)

    return {
        "id": entity.id,
        "type": entity.entity_type,
        "subtype": entity.entity_subtype,
        "name": entity.name,
        "description": entity.description,
        "summary": entity.summary,
        "attributes": entity.merged_attributes(),
        "mention_count": entity.mention_count,
        "last_mentioned_at": _iso(entity.last_mentioned_at),
        "start_date": _iso(entity.start_date),
        "end_date": _iso(entity.end_date),
        "is_current": entity.is_current(today),
        "is_past": entity.is_past(today),
        "is_future": entity.is_future(today),
        "memories": memories,
        "relationships": {"outgoing": outgoing, "incoming": incoming},
    }


# =============================================================================
# Lifecycle
# =============================================================================

def set_entity_active(db, entity: MemoryEntity, active: bool) -> MemoryEntity:
    entity.is_active = active
    db.commit()
    _invalidate_entities()
    logger.info(
        "entity_restored" if active else "entity_archived",
        extra={"entity_id": entity.id},
    )
    return entity


def purge_entity(db, entity: MemoryEntity) -> None:
    """Hard delete; links and relationships go with it."""
    entity_id = entity.id
    db.delete(entity)
    db.commit()
    _invalidate_entities()
    logger.info("entity_purged", extra={"entity_id": entity_id})
