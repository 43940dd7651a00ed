"""
Tool-facing memory services.

Every public function takes a flat parameter bag and returns a tagged result:
``{"success": True, "status": "ok", "message": ..., "data": {...}}`` or the
failure payload produced by ``service_tool``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Iterator, Optional, List

import prime_memory.config as config
from prime_memory.db import DB
from prime_memory.errors import NotFoundIssue, ValidationIssue
from prime_memory.models import MemoryEntity
from prime_memory.services import entity_store, ingestion, memory_store, relationship_store
from prime_memory.services.memory_embeddings import _run_embedding_backfill
from prime_memory.services.memory_shared import (
    _parse_date,
    _parse_datetime,
    _validate_attribute_bag,
    _validate_choice,
    _validate_limit,
    _validate_metadata,
    _validate_optional_text,
    _validate_required_text,
    _validate_string_list,
    _validate_unit_interval,
    MAX_LIST_ITEMS,
    MAX_LIST_ITEM_LENGTH,
    MAX_QUERY_LENGTH,
    MAX_RESULT_LIMIT,
    MAX_SHORT_TEXT_LENGTH,
    MAX_TEXT_LENGTH,
    ok_result,
    service_tool,
    logger,
)
from prime_memory.services.recall import RecallFilters, recall

MAX_TYPE_LENGTH = 50
REMINDER_TIMEFRAMES = ("today", "tomorrow", "this_week", "this_month", "all")


@contextmanager
def _session() -> Iterator:
    db = DB.SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _require_entity(db, entity_id: int) -> MemoryEntity:
    if isinstance(entity_id, bool) or not isinstance(entity_id, int):
        raise ValidationIssue("entity_id must be an integer", field="entity_id", error_type="invalid_type")
    entity = entity_store.get_entity(db, entity_id)
    if entity is None:
        raise NotFoundIssue(f"Entity {entity_id} not found in memory", field="entity_id")
    return entity


def _require_memory(db, memory_id: int):
    if isinstance(memory_id, bool) or not isinstance(memory_id, int):
        raise ValidationIssue("memory_id must be an integer", field="memory_id", error_type="invalid_type")
    memory = memory_store.get_memory(db, memory_id)
    if memory is None:
        raise NotFoundIssue(f"Memory {memory_id} not found", field="memory_id")
    return memory


def _validate_entity_input(
    name: str,
    entity_type: str,
    entity_subtype: Optional[str],
    description: Optional[str],
    attributes: Optional[dict],
    email: Optional[str],
    phone: Optional[str],
) -> None:
    _validate_required_text(name, "name", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(entity_type, "entity_type", MAX_TYPE_LENGTH)
    _validate_optional_text(entity_subtype, "entity_subtype", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(description, "description", MAX_TEXT_LENGTH)
    _validate_attribute_bag(attributes, "attributes")
    _validate_optional_text(email, "email", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(phone, "phone", MAX_SHORT_TEXT_LENGTH)


def _store_entity(
    entity_type: str,
    name: str,
    entity_subtype: Optional[str],
    description: Optional[str],
    attributes: Optional[dict],
    email: Optional[str],
    phone: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
) -> dict:
    _validate_entity_input(name, entity_type, entity_subtype, description, attributes, email, phone)
    start = _parse_date(start_date, "start_date")
    end = _parse_date(end_date, "end_date")
    if start and end and end < start:
        raise ValidationIssue("end_date must not be before start_date", field="end_date", error_type="invalid_range")

    with _session() as db:
        entity, created = entity_store.find_or_create_entity(
            db,
            entity_type,
            name,
            description=description,
            attributes=attributes,
            email=email,
            phone=phone,
            start_date=start,
            end_date=end,
            entity_subtype=entity_subtype,
        )
        action = "stored" if created else "updated"
        return ok_result(
            f"Successfully {action} information about {name.strip()}",
            entity_id=entity.id,
            created=created,
            name=entity.name,
            type=entity.entity_type,
            subtype=entity.entity_subtype,
            attributes=entity.merged_attributes(),
            mention_count=entity.mention_count,
        )


# =============================================================================
# Entities
# =============================================================================

@service_tool
def store_person(
    name: str,
    entity_subtype: Optional[str] = None,
    description: Optional[str] = None,
    attributes: Optional[dict] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> dict:
    """
    Store or update a person.

    Args:
        name: Full name of the person
        entity_subtype: Refinement such as colleague, family or friend
        description: Free-text description
        attributes: Any other facts (email/phone aliases are promoted to columns)
        start_date: When the person became relevant (YYYY-MM-DD)
        end_date: When the person stopped being relevant (YYYY-MM-DD)
    """
    return _store_entity("person", name, entity_subtype, description, attributes, email, phone, start_date, end_date)


@service_tool
def store_entity(
    name: str,
    entity_type: str,
    entity_subtype: Optional[str] = None,
    description: Optional[str] = None,
    attributes: Optional[dict] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> dict:
    """Store or update any entity (place, organization, service, pet, vehicle, ...)."""
    return _store_entity(entity_type, name, entity_subtype, description, attributes, email, phone, start_date, end_date)


@service_tool
def search_entities(
    query: str,
    entity_type: Optional[str] = None,
    entity_subtype: Optional[str] = None,
    limit: int = 10,
) -> dict:
    _validate_required_text(query, "query", MAX_QUERY_LENGTH)
    _validate_optional_text(entity_type, "entity_type", MAX_TYPE_LENGTH)
    _validate_optional_text(entity_subtype, "entity_subtype", MAX_SHORT_TEXT_LENGTH)
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)

    with _session() as db:
        matches = entity_store.search_entities(db, query, entity_type, entity_subtype, limit)
        results = []
        for entity, rank in matches:
            item = entity_store.entity_summary(entity)
            item["rank"] = rank
            results.append(item)
        return ok_result(
            f"Found {len(results)} matching entities" if results else "No matching entities found",
            query=query,
            count=len(results),
            results=results,
        )


@service_tool
def get_person_details(name: str) -> dict:
    """Full details of a person: attributes, recent memories and relationships."""
    _validate_required_text(name, "name", MAX_SHORT_TEXT_LENGTH)
    with _session() as db:
        entity = entity_store.find_by_name(db, name, "person")
        if entity is None:
            raise NotFoundIssue(f"Person '{name}' not found in memory", field="name", name=name)
        entity_store.record_mention(db, entity)
        return ok_result(
            f"Retrieved details for {entity.name}",
            person=entity_store.entity_details(db, entity),
        )


@service_tool
def get_entity_details(name: str, entity_type: Optional[str] = None) -> dict:
    """Entity details by name substring; several matches return a summary list."""
    _validate_required_text(name, "name", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(entity_type, "entity_type", MAX_TYPE_LENGTH)
    with _session() as db:
        entities = entity_store.find_by_substring(db, name, entity_type)
        if not entities:
            type_filter = f" (type: {entity_type})" if entity_type else ""
            raise NotFoundIssue(f"Entity '{name}'{type_filter} not found in memory", field="name", name=name)
        if len(entities) > 1:
            return ok_result(
                f"Found {len(entities)} entities matching '{name}'",
                multiple_matches=True,
                entities=[
                    {
                        "id": entity.id,
                        "name": entity.name,
                        "type": entity.entity_type,
                        "subtype": entity.entity_subtype,
                        "description": entity.description,
                    }
                    for entity in entities
                ],
            )
        entity = entities[0]
        entity_store.record_mention(db, entity)
        return ok_result(
            f"Retrieved details for {entity.name} ({entity.entity_type})",
            multiple_matches=False,
            entity=entity_store.entity_details(db, entity),
        )


@service_tool
def list_all_people(
    temporal_filter: str = "current",
    entity_subtype: Optional[str] = None,
    limit: Optional[int] = None,
) -> dict:
    temporal_filter = _validate_choice(temporal_filter, "temporal_filter", entity_store.TEMPORAL_FILTERS)
    _validate_optional_text(entity_subtype, "entity_subtype", MAX_SHORT_TEXT_LENGTH)
    limit = config.PEOPLE_LIST_DEFAULT_LIMIT if limit is None else limit
    _validate_limit(limit, "limit", max(MAX_RESULT_LIMIT, config.PEOPLE_LIST_DEFAULT_LIMIT))

    with _session() as db:
        people = entity_store.list_people(db, temporal_filter, entity_subtype, limit)
        subtype_label = f" ({entity_subtype})" if entity_subtype else ""
        temporal_label = f" {temporal_filter}" if temporal_filter != "all" else ""
        message = (
            f"Found {len(people)}{temporal_label} people{subtype_label}"
            if people
            else f"No{temporal_label} people found{subtype_label}"
        )
        return ok_result(
            message,
            count=len(people),
            temporal_filter=temporal_filter,
            results=[entity_store.entity_summary(person) for person in people],
        )


@service_tool
def archive_entity(entity_id: int) -> dict:
    with _session() as db:
        entity = entity_store.set_entity_active(db, _require_entity(db, entity_id), False)
        return ok_result(f"Archived {entity.name}", entity_id=entity.id, is_active=False)


@service_tool
def restore_entity(entity_id: int) -> dict:
    with _session() as db:
        entity = entity_store.set_entity_active(db, _require_entity(db, entity_id), True)
        return ok_result(f"Restored {entity.name}", entity_id=entity.id, is_active=True)


@service_tool
def purge_entity(entity_id: int, confirm: bool = False) -> dict:
    """Permanently delete an entity with its links and relationships."""
    if confirm is not True:
        raise ValidationIssue("confirm must be true to purge an entity", field="confirm", error_type="required")
    with _session() as db:
        entity = _require_entity(db, entity_id)
        name = entity.name
        entity_store.purge_entity(db, entity)
        return ok_result(f"Purged {name}", entity_id=entity_id)


@service_tool
def reconcile_entity(entity_id: int, observed: dict) -> dict:
    """Merge an externally observed record without downgrading what is known."""
    _validate_metadata(observed, "observed")
    if not observed:
        raise ValidationIssue("observed must not be empty", field="observed", error_type="required")
    _validate_attribute_bag(observed.get("attributes"), "observed.attributes")
    with _session() as db:
        entity = _require_entity(db, entity_id)
        changes = entity_store.reconcile_entity(db, entity, observed)
        return ok_result(
            f"Reconciled {entity.name}" if changes else f"No new information for {entity.name}",
            entity_id=entity.id,
            changed_fields=sorted(changes),
            attributes=entity.merged_attributes(),
        )


# =============================================================================
# Relationships
# =============================================================================

def _resolve_pair(db, from_entity_name: str, to_entity_name: str, from_type, to_type):
    from_entity = entity_store.find_by_name(db, from_entity_name, from_type)
    to_entity = entity_store.find_by_name(db, to_entity_name, to_type)
    if from_entity is None or to_entity is None:
        missing = from_entity_name if from_entity is None else to_entity_name
        raise NotFoundIssue(
            f"Entity '{missing}' not found. Please store it first using store_person or store_entity.",
            field="from_entity_name" if from_entity is None else "to_entity_name",
            name=missing,
        )
    return from_entity, to_entity


@service_tool
def create_relationship(
    from_entity_name: str,
    to_entity_name: str,
    relationship_type: str,
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
    started_at: Optional[str] = None,
    ended_at: Optional[str] = None,
    from_entity_type: Optional[str] = None,
    to_entity_type: Optional[str] = None,
) -> dict:
    """Create (or update) the directed edge from -> to. Both entities must already exist."""
    _validate_required_text(from_entity_name, "from_entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(to_entity_name, "to_entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(relationship_type, "relationship_type", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(notes, "notes", MAX_TEXT_LENGTH)
    _validate_metadata(metadata, "metadata")
    started = _parse_date(started_at, "started_at")
    ended = _parse_date(ended_at, "ended_at")

    merged_metadata = dict(metadata or {})
    if notes:
        merged_metadata["notes"] = notes

    with _session() as db:
        from_entity, to_entity = _resolve_pair(db, from_entity_name, to_entity_name, from_entity_type, to_entity_type)
        rel, created = relationship_store.find_or_create_relationship(
            db,
            from_entity.id,
            to_entity.id,
            relationship_type,
            metadata=merged_metadata,
            started_at=started,
            ended_at=ended,
        )
        return ok_result(
            f"Relationship created: {from_entity.name} {rel.relationship_type} {to_entity.name}",
            relationship_id=rel.id,
            created=created,
            from_entity=from_entity.name,
            to_entity=to_entity.name,
            type=rel.relationship_type,
            metadata=rel.metadata_ or {},
        )


@service_tool
def end_relationship(
    from_entity_name: str,
    to_entity_name: str,
    relationship_type: str,
    ended_at: Optional[str] = None,
) -> dict:
    _validate_required_text(from_entity_name, "from_entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(to_entity_name, "to_entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(relationship_type, "relationship_type", MAX_SHORT_TEXT_LENGTH)
    ended = _parse_date(ended_at, "ended_at")
    with _session() as db:
        from_entity, to_entity = _resolve_pair(db, from_entity_name, to_entity_name, None, None)
        rel = relationship_store.find_relationship(db, from_entity.id, to_entity.id, relationship_type)
        if rel is None:
            raise NotFoundIssue(
                f"No {relationship_type} relationship from {from_entity.name} to {to_entity.name}",
                field="relationship_type",
            )
        relationship_store.end_relationship(db, rel, ended)
        return ok_result(
            f"Ended relationship: {from_entity.name} {rel.relationship_type} {to_entity.name}",
            relationship_id=rel.id,
            ended_at=_iso(rel.ended_at),
        )


@service_tool
def get_relationships(name: str, entity_type: Optional[str] = None, current_only: bool = False) -> dict:
    _validate_required_text(name, "name", MAX_SHORT_TEXT_LENGTH)
    with _session() as db:
        entity = entity_store.find_by_name(db, name, entity_type)
        if entity is None:
            raise NotFoundIssue(f"Entity '{name}' not found in memory", field="name", name=name)
        results = []
        for rel in relationship_store.relationships_for_entity(db, entity.id, current_only=current_only):
            results.append(
                {
                    "id": rel.id,
                    "from_entity": rel.from_entity.name,
                    "to_entity": rel.to_entity.name,
                    "type": rel.relationship_type,
                    "direction": "outgoing" if rel.from_entity_id == entity.id else "incoming",
                    "metadata": rel.metadata_ or {},
                    "started_at": _iso(rel.started_at),
                    "ended_at": _iso(rel.ended_at),
                }
            )
        return ok_result(
            f"Found {len(results)} relationships for {entity.name}",
            entity_id=entity.id,
            results=results,
        )


# =============================================================================
# Memories
# =============================================================================

@service_tool
def store_note(
    content: str,
    type: str = "note",
    reminder_at: Optional[str] = None,
    entity_names: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
) -> dict:
    """
    Store a note, fact, idea, task or reminder.

    Identical content that is already stored (and not archived) is returned as-is.
    Entity names are linked only when the entity already exists.
    """
    _validate_required_text(content, "content", MAX_TEXT_LENGTH)
    _validate_required_text(type, "type", MAX_TYPE_LENGTH)
    _validate_string_list(entity_names, "entity_names", MAX_LIST_ITEMS, MAX_LIST_ITEM_LENGTH)
    _validate_string_list(tags, "tags", MAX_LIST_ITEMS, MAX_LIST_ITEM_LENGTH)
    reminder = _parse_datetime(reminder_at, "reminder_at")

    with _session() as db:
        memory, created = memory_store.store_note(
            db,
            content,
            memory_type=type.strip().lower(),
            reminder_at=reminder,
            entity_names=entity_names,
            tags=tags,
        )
        if not created:
            return ok_result(
                "This note already exists in memory",
                memory_id=memory.id,
                created=False,
                created_at=_iso(memory.created_at),
            )
        message = "Note stored successfully"
        if reminder is not None:
            message += f" with reminder set for {reminder.isoformat()}"
        return ok_result(
            message,
            memory_id=memory.id,
            created=True,
            type=memory.type,
            content_preview=memory.content[:100],
        )


@service_tool
def store_transcript(
    content: str,
    title: str,
    attendees: Optional[List[str]] = None,
    date: Optional[str] = None,
) -> dict:
    """Store a meeting transcript; attendees are created as people when missing."""
    _validate_required_text(content, "content", MAX_TEXT_LENGTH)
    _validate_required_text(title, "title", MAX_SHORT_TEXT_LENGTH)
    _validate_string_list(attendees, "attendees", MAX_LIST_ITEMS, MAX_LIST_ITEM_LENGTH)
    transcript_date = _parse_date(date, "date")

    with _session() as db:
        memory = memory_store.store_transcript(
            db,
            content,
            title,
            attendees=attendees,
            transcript_date=_iso(transcript_date),
        )
        return ok_result(
            f"Transcript '{title}' stored successfully",
            memory_id=memory.id,
            content_length=memory.content_length,
            attendees=list(attendees or []),
            has_summary=bool(memory.summary),
        )


@service_tool
def store_preference(category: str, value: str, notes: Optional[str] = None) -> dict:
    """Store a preference; an existing preference in the same category is overwritten."""
    _validate_required_text(category, "category", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(value, "value", MAX_TEXT_LENGTH)
    _validate_optional_text(notes, "notes", MAX_TEXT_LENGTH)

    with _session() as db:
        memory, created = memory_store.store_preference(db, category, value, notes)
        message = (
            f"Preference stored: {category} = {value}"
            if created
            else f"Updated preference for {category}"
        )
        return ok_result(
            message,
            memory_id=memory.id,
            created=created,
            category=category,
            value=value,
        )


@service_tool
def archive_memory(memory_id: int) -> dict:
    with _session() as db:
        memory = memory_store.set_archived(db, _require_memory(db, memory_id), True)
        return ok_result(f"Archived memory {memory.id}", memory_id=memory.id, is_archived=True)


@service_tool
def restore_memory(memory_id: int) -> dict:
    with _session() as db:
        memory = memory_store.set_archived(db, _require_memory(db, memory_id), False)
        return ok_result(f"Restored memory {memory.id}", memory_id=memory.id, is_archived=False)


@service_tool
def recall_information(
    query: str,
    limit: Optional[int] = None,
    type: Optional[str] = None,
    entity_name: Optional[str] = None,
    tag: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    min_similarity: Optional[float] = None,
) -> dict:
    """
    Recall memories relevant to a natural-language query.

    Semantic similarity ranks results; when embeddings are unavailable or find
    nothing, full-text search is used instead.
    """
    _validate_required_text(query, "query", MAX_QUERY_LENGTH)
    limit = config.RECALL_DEFAULT_LIMIT if limit is None else limit
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    _validate_optional_text(type, "type", MAX_TYPE_LENGTH)
    _validate_optional_text(entity_name, "entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(tag, "tag", MAX_LIST_ITEM_LENGTH)
    if min_similarity is not None:
        _validate_unit_interval(min_similarity, "min_similarity")
    start = _parse_date(from_date, "from_date")
    end = _parse_date(to_date, "to_date")

    with _session() as db:
        entity_id = None
        if entity_name:
            entity = entity_store.find_by_name(db, entity_name)
            if entity is None:
                raise NotFoundIssue(f"Entity '{entity_name}' not found in memory", field="entity_name", name=entity_name)
            entity_id = entity.id
        filters = RecallFilters(
            memory_type=type.strip().lower() if type else None,
            entity_id=entity_id,
            tag=tag,
            from_date=start,
            to_date=end,
        )
        outcome = recall(db, query, limit=limit, filters=filters, min_similarity=min_similarity)
        message = (
            f"Found {len(outcome.results)} matching memories"
            if outcome.results
            else "No matching memories found"
        )
        return ok_result(
            message,
            query=query,
            search_mode=outcome.search_mode,
            partial=outcome.truncated,
            results=outcome.results,
        )


def _timeframe_window(timeframe: str, now: datetime) -> tuple[Optional[datetime], Optional[datetime]]:
    today = now.date()
    if timeframe == "today":
        first, last = today, today
    elif timeframe == "tomorrow":
        first = last = today + timedelta(days=1)
    elif timeframe == "this_week":
        first = today - timedelta(days=today.weekday())
        last = first + timedelta(days=6)
    elif timeframe == "this_month":
        first = today.replace(day=1)
        next_month = (first + timedelta(days=32)).replace(day=1)
        last = next_month - timedelta(days=1)
    else:
        return None, None
    return _day_start(first), _day_end(last)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, dt_time.min, tzinfo=timezone.utc)


def _day_end(day: date) -> datetime:
    return datetime.combine(day, dt_time.max, tzinfo=timezone.utc)


def _range_bound(value: Optional[str], field: str, end_of_day: bool) -> Optional[datetime]:
    if isinstance(value, str) and len(value.strip()) == 10:
        day = _parse_date(value, field)
        return _day_end(day) if end_of_day else _day_start(day)
    return _parse_datetime(value, field)


@service_tool
def get_upcoming_reminders(
    timeframe: str = "all",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> dict:
    timeframe = _validate_choice(timeframe, "timeframe", REMINDER_TIMEFRAMES)
    start, end = _timeframe_window(timeframe, datetime.now(timezone.utc))
    if timeframe == "all":
        start = _range_bound(start_date, "start_date", end_of_day=False)
        end = _range_bound(end_date, "end_date", end_of_day=True)

    with _session() as db:
        reminders = memory_store.upcoming_reminders(db, start, end)
        results = [memory_store.reminder_view(db, memory) for memory in reminders]
        return ok_result(
            f"Found {len(results)} upcoming reminders" if results else f"No reminders found for {timeframe}",
            timeframe=timeframe,
            results=results,
        )


# =============================================================================
# Ingestion and maintenance
# =============================================================================

def _require_payload(payload: dict) -> None:
    if not isinstance(payload, dict) or not payload:
        raise ValidationIssue("payload must be a non-empty object", field="payload", error_type="required")


@service_tool
def ingest_email(payload: dict) -> dict:
    _require_payload(payload)
    with _session() as db:
        outcome = ingestion.ingest_email(db, payload)
        return ok_result("Email ingested", **outcome)


@service_tool
def ingest_calendar_event(payload: dict) -> dict:
    _require_payload(payload)
    with _session() as db:
        outcome = ingestion.ingest_calendar_event(db, payload)
        return ok_result("Calendar event ingested", **outcome)


@service_tool
def ingest_slack_message(payload: dict) -> dict:
    _require_payload(payload)
    with _session() as db:
        outcome = ingestion.ingest_slack_message(db, payload)
        message = "Slack message skipped" if outcome["skipped"] else "Slack message ingested"
        return ok_result(message, **outcome)


@service_tool
def backfill_embeddings() -> dict:
    """Generate missing embeddings and fill missing magnitudes, one batch."""
    stats = _run_embedding_backfill()
    logger.info("embedding_backfill_requested", extra={"status": stats.get("status")})
    return ok_result("Embedding backfill complete", **stats)
