"""
Ingestion of normalized webhook payloads (email, calendar, Slack).

Each payload is turned into the same storage operations the tool surface uses.
"""

from __future__ import annotations

import html
import re
from email.utils import parseaddr
from typing import Optional

from prime_memory.models import Memory
from prime_memory.services.entity_store import attach_entity, find_or_create_entity
from prime_memory.services.memory_shared import logger
from prime_memory.services.memory_store import store_note, store_transcript
from prime_memory.validators import parse_date

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\s*/?>", re.IGNORECASE)
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_ANGLE_RE = re.compile(r"<.+?>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")

SLACK_SKIPPED_SUBTYPES = frozenset({"bot_message", "channel_join", "channel_leave"})
SLACK_ALWAYS_IMPORTANT_TYPES = frozenset({"app_mention", "message.im"})
SLACK_KEYWORDS = ("decision", "action", "deadline", "todo", "asap", "urgent", "important")


def strip_html(body: str) -> str:
    text = _SCRIPT_RE.sub("", body or "")
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


def extract_email(sender: str) -> Optional[str]:
    _, address = parseaddr(sender or "")
    address = address.strip().lower()
    return address if "@" in address else None


def extract_name(sender: str) -> str:
    """Display name from ``Name <addr>``; otherwise derived from the address local part."""
    display, address = parseaddr(sender or "")
    display = display.strip().strip('"').strip()
    if display:
        return display
    local = (address or sender or "").split("@", 1)[0]
    words = [word for word in re.split(r"[._\-+]+", local) if word]
    return " ".join(word.capitalize() for word in words) or "Unknown"


def ingest_email(db, payload: dict) -> dict:
    sender = payload.get("from") or payload.get("sender") or "unknown"
    subject = payload.get("subject") or "(no subject)"
    body = strip_html(payload.get("body") or payload.get("content") or "")
    sent_at = payload.get("date")

    address = extract_email(sender)
    name = extract_name(sender)
    entity = None
    if address:
        entity, _ = find_or_create_entity(db, "person", name, email=address)

    lines = [f"EMAIL FROM: {name}" + (f" <{address}>" if address else ""), f"SUBJECT: {subject}"]
    if sent_at:
        lines.append(f"DATE: {sent_at}")
    content = "\n".join(lines) + f"\n\nBODY:\n{body}"

    memory, created = store_note(db, content, memory_type="note", tags=["email"])
    if created and entity is not None:
        attach_entity(db, memory, entity, link_type="created_by")
    logger.info("email_ingested", extra={"memory_id": memory.id, "was_created": created})
    return {"memory_id": memory.id, "created": created, "sender_entity_id": entity.id if entity else None}


def _attendee_name(attendee) -> str:
    if isinstance(attendee, dict):
        return (attendee.get("name") or attendee.get("displayName") or attendee.get("email") or "").strip()
    return _ANGLE_RE.sub("", str(attendee)).strip()


def ingest_calendar_event(db, payload: dict) -> dict:
    title = payload.get("title") or payload.get("summary") or "Untitled Event"
    description = payload.get("description") or payload.get("notes") or ""
    start = payload.get("start_time") or payload.get("start")
    location = payload.get("location")
    attendees = [name for name in (_attendee_name(item) for item in payload.get("attendees") or []) if name]

    lines = [f"MEETING: {title}"]
    if start:
        lines.append(f"DATE: {start}")
    if location:
        lines.append(f"LOCATION: {location}")
    if attendees:
        lines.append(f"ATTENDEES: {', '.join(attendees)}")
    content = "\n".join(lines) + "\n"
    if description:
        content += f"\nDESCRIPTION:\n{description}"

    event_date = parse_date(start, "start") if start else None
    memory: Memory = store_transcript(
        db,
        content,
        title,
        attendees=attendees,
        transcript_date=event_date.isoformat() if event_date else None,
        attendee_subtype="colleague",
    )
    logger.info("calendar_event_ingested", extra={"memory_id": memory.id, "attendee_count": len(attendees)})
    return {"memory_id": memory.id, "attendees": attendees}


def is_important_slack_event(event: dict) -> bool:
    event_type = event.get("type") or ""
    subtype = event.get("subtype")
    if subtype in SLACK_SKIPPED_SUBTYPES:
        return False
    if event_type in SLACK_ALWAYS_IMPORTANT_TYPES:
        return True
    text = (event.get("text") or "").lower()
    if any(keyword in text for keyword in SLACK_KEYWORDS):
        return True
    return event_type == "message" and not subtype


def ingest_slack_message(db, payload: dict) -> dict:
    event = payload.get("event") or payload
    if not is_important_slack_event(event):
        logger.info("slack_message_skipped", extra={"event_type": event.get("type")})
        return {"skipped": True, "memory_id": None}

    user = event.get("user") or "unknown"
    channel = event.get("channel") or "unknown"
    text = event.get("text") or ""
    content = f"SLACK MESSAGE\nFROM: {user}\nCHANNEL: {channel}\n\nMESSAGE:\n{text}"
    memory, created = store_note(db, content, memory_type="note", tags=["slack", channel])
    logger.info("slack_message_ingested", extra={"memory_id": memory.id, "was_created": created})
    return {"skipped": False, "memory_id": memory.id, "created": created}
