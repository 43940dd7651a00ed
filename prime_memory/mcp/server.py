"""
MCP server wiring and tool registration.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional, List

from fastmcp import FastMCP

import prime_memory.config as config
from prime_memory.services import memory_service

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP(config.SERVICE_NAME)

_REGISTERED_TOOLS: list[tuple[Callable[..., dict], tuple[Any, ...], dict[str, Any]]] = []
_TOOL_REGISTRY_LOCK = threading.Lock()
_LAST_TOOL_COUNT: Optional[int] = None


def mcp_tool(*args, **kwargs):
    """Register a tool with FastMCP and keep a local registry for rebinding."""
    def decorator(fn: Callable[..., dict]):
        _REGISTERED_TOOLS.append((fn, args, kwargs))
        mcp.tool(*args, **kwargs)(fn)
        return fn
    return decorator


def _record_tool_inventory_count(tool_count: int) -> None:
    global _LAST_TOOL_COUNT
    with _TOOL_REGISTRY_LOCK:
        if tool_count == 0 and (_LAST_TOOL_COUNT is None or _LAST_TOOL_COUNT > 0):
            config.logger.warning("tool_inventory_empty", extra={"tool_count": tool_count})
        elif tool_count > 0 and _LAST_TOOL_COUNT == 0:
            config.logger.info("tool_inventory_restored", extra={"tool_count": tool_count})
        _LAST_TOOL_COUNT = tool_count


def _rebind_tool_registry(reason: str) -> None:
    with _TOOL_REGISTRY_LOCK:
        for fn, args, kwargs in _REGISTERED_TOOLS:
            mcp.tool(*args, **kwargs)(fn)
        config.logger.warning(
            "tool_registry_rebind",
            extra={"reason": reason, "tool_count": len(_REGISTERED_TOOLS)},
        )


async def _registered_tool_names() -> list:
    # fastmcp 2.x exposes get_tools() as a dict, later releases list_tools()
    if hasattr(mcp, "get_tools"):
        return sorted((await mcp.get_tools()).keys())
    return sorted(tool.name for tool in await mcp.list_tools())


async def tool_inventory_status(refresh_if_empty: bool = False, reason: str = "") -> dict:
    """Return tool inventory details and optionally rebind when empty."""
    tool_names = await _registered_tool_names()

    refreshed = False
    if refresh_if_empty and not tool_names:
        refreshed = True
        _rebind_tool_registry(reason or "inventory_empty")
        tool_names = await _registered_tool_names()

    _record_tool_inventory_count(len(tool_names))
    return {
        "tool_count": len(tool_names),
        "tools": tool_names,
        "refreshed": refreshed,
    }


# =============================================================================
# People and entities
# =============================================================================

@mcp_tool()
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
    """Store or update information about a person (colleague, family, friend, ...)."""
    return memory_service.store_person(
        name=name,
        entity_subtype=entity_subtype,
        description=description,
        attributes=attributes,
        email=email,
        phone=phone,
        start_date=start_date,
        end_date=end_date,
    )


@mcp_tool()
def store_entity(
    name: str,
    entity_type: str,
    entity_subtype: Optional[str] = None,
    description: Optional[str] = None,
    attributes: Optional[dict] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> dict:
    """Store or update a place, organization, service, pet, vehicle or other entity."""
    return memory_service.store_entity(
        name=name,
        entity_type=entity_type,
        entity_subtype=entity_subtype,
        description=description,
        attributes=attributes,
        start_date=start_date,
        end_date=end_date,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def search_entities(
    query: str,
    entity_type: Optional[str] = None,
    entity_subtype: Optional[str] = None,
    limit: int = 10,
) -> dict:
    """Full-text search over entity names and descriptions."""
    return memory_service.search_entities(
        query=query,
        entity_type=entity_type,
        entity_subtype=entity_subtype,
        limit=limit,
    )


@mcp_tool()
def get_person_details(name: str) -> dict:
    """Everything known about a person, including memories and relationships."""
    return memory_service.get_person_details(name=name)


@mcp_tool()
def get_entity_details(name: str, entity_type: Optional[str] = None) -> dict:
    """Everything known about an entity matched by name."""
    return memory_service.get_entity_details(name=name, entity_type=entity_type)


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def list_all_people(
    temporal_filter: str = "current",
    entity_subtype: Optional[str] = None,
    limit: int = 50,
) -> dict:
    """List known people; temporal_filter is current, past, future or all."""
    return memory_service.list_all_people(
        temporal_filter=temporal_filter,
        entity_subtype=entity_subtype,
        limit=limit,
    )


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def archive_entity(entity_id: int) -> dict:
    return memory_service.archive_entity(entity_id=entity_id)


@mcp_tool()
def restore_entity(entity_id: int) -> dict:
    return memory_service.restore_entity(entity_id=entity_id)


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def purge_entity(entity_id: int, confirm: bool = False) -> dict:
    return memory_service.purge_entity(entity_id=entity_id, confirm=confirm)


@mcp_tool()
def reconcile_entity(entity_id: int, observed: dict) -> dict:
    """Fold an observed record (name, description, entity_subtype, attributes) into an entity without losing detail."""
    return memory_service.reconcile_entity(entity_id=entity_id, observed=observed)


# =============================================================================
# Relationships
# =============================================================================

@mcp_tool()
def create_relationship(
    from_entity_name: str,
    to_entity_name: str,
    relationship_type: str,
    notes: Optional[str] = None,
    started_at: Optional[str] = None,
    ended_at: Optional[str] = None,
) -> dict:
    """Record a directed relationship between two stored entities (e.g. works_at)."""
    return memory_service.create_relationship(
        from_entity_name=from_entity_name,
        to_entity_name=to_entity_name,
        relationship_type=relationship_type,
        notes=notes,
        started_at=started_at,
        ended_at=ended_at,
    )


@mcp_tool()
def end_relationship(
    from_entity_name: str,
    to_entity_name: str,
    relationship_type: str,
    ended_at: Optional[str] = None,
) -> dict:
    return memory_service.end_relationship(
        from_entity_name=from_entity_name,
        to_entity_name=to_entity_name,
        relationship_type=relationship_type,
        ended_at=ended_at,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def get_relationships(name: str, entity_type: Optional[str] = None, current_only: bool = False) -> dict:
    return memory_service.get_relationships(name=name, entity_type=entity_type, current_only=current_only)


# =============================================================================
# Memories
# =============================================================================

@mcp_tool()
def store_note(
    content: str,
    type: str = "note",
    reminder_at: Optional[str] = None,
    entity_names: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
) -> dict:
    """Store a note, fact, idea, task or reminder."""
    return memory_service.store_note(
        content=content,
        type=type,
        reminder_at=reminder_at,
        entity_names=entity_names,
        tags=tags,
    )


@mcp_tool()
def store_transcript(
    content: str,
    title: str,
    attendees: Optional[List[str]] = None,
    date: Optional[str] = None,
) -> dict:
    """Store a meeting transcript and its attendees."""
    return memory_service.store_transcript(content=content, title=title, attendees=attendees, date=date)


@mcp_tool()
def store_preference(category: str, value: str, notes: Optional[str] = None) -> dict:
    """Store a user preference; one active preference per category."""
    return memory_service.store_preference(category=category, value=value, notes=notes)


@mcp_tool()
def recall_information(
    query: str,
    limit: int = 10,
    type: Optional[str] = None,
    entity_name: Optional[str] = None,
    tag: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
) -> dict:
    """Search memories by meaning, falling back to keyword search."""
    return memory_service.recall_information(
        query=query,
        limit=limit,
        type=type,
        entity_name=entity_name,
        tag=tag,
        from_date=from_date,
        to_date=to_date,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def get_upcoming_reminders(
    timeframe: str = "all",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> dict:
    """Reminders for today, tomorrow, this_week, this_month or all (optionally bounded)."""
    return memory_service.get_upcoming_reminders(timeframe=timeframe, start_date=start_date, end_date=end_date)


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def archive_memory(memory_id: int) -> dict:
    return memory_service.archive_memory(memory_id=memory_id)


@mcp_tool()
def restore_memory(memory_id: int) -> dict:
    return memory_service.restore_memory(memory_id=memory_id)


@mcp_tool()
def backfill_embeddings() -> dict:
    """Generate missing embeddings and fill missing magnitudes (one batch)."""
    return memory_service.backfill_embeddings()


mcp_stream_app = mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
)
