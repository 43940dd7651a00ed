import os

os.environ.setdefault("DB_BACKEND", "sqlite")

from prime_memory.models import Memory, MemoryEntity, MemoryEntityLink
from prime_memory.services import memory_service
from prime_memory.services.ingestion import (
    extract_email,
    extract_name,
    is_important_slack_event,
    strip_html,
)
from prime_memory.services.tag_store import tag_names_for


def test_sender_parsing():
    assert extract_email("Jane Doe <Jane.Doe@Example.com>") == "jane.doe@example.com"
    assert extract_name("Jane Doe <Jane.Doe@Example.com>") == "Jane Doe"
    assert extract_name("jane.doe@example.com") == "Jane Doe"
    assert extract_name('"Ops Team" <ops@example.com>') == "Ops Team"
    assert extract_email("not an address") is None


def test_strip_html():
    body = "<html><style>p {color: red}</style><p>Hello &amp; welcome</p><br/><div>Line two</div></html>"
    assert strip_html(body) == "Hello & welcome\n\nLine two"


def test_ingest_email_links_sender(server_db, db_session):
    result = memory_service.ingest_email(
        payload={
            "from": "Jane Doe <jane.doe@example.com>",
            "subject": "Quarterly plan",
            "body": "<p>Draft attached.</p>",
            "date": "2026-04-01T09:30:00Z",
        }
    )
    assert result["success"] is True
    sender_id = result["data"]["sender_entity_id"]

    memory = db_session.query(Memory).filter(Memory.id == result["data"]["memory_id"]).one()
    assert memory.content.startswith("EMAIL FROM: Jane Doe <jane.doe@example.com>\nSUBJECT: Quarterly plan")
    assert memory.content.endswith("BODY:\nDraft attached.")

    link = db_session.query(MemoryEntityLink).filter(MemoryEntityLink.memory_id == memory.id).one()
    assert (link.entity_id, link.link_type) == (sender_id, "created_by")

    again = memory_service.ingest_email(
        payload={"from": "jane.doe@example.com", "subject": "Follow-up", "body": "Any comments?"}
    )
    assert again["data"]["sender_entity_id"] == sender_id
    assert db_session.query(MemoryEntity).count() == 1


def test_ingest_calendar_event(server_db, db_session):
    result = memory_service.ingest_calendar_event(
        payload={
            "summary": "Design review",
            "start": "2026-03-01T10:00:00Z",
            "location": "Room 4",
            "attendees": [{"name": "Ann Lee", "email": "ann@example.com"}, "Bob Stone <bob@example.com>"],
            "description": "Walk through the onboarding flow",
        }
    )
    assert result["data"]["attendees"] == ["Ann Lee", "Bob Stone"]

    memory = db_session.query(Memory).filter(Memory.id == result["data"]["memory_id"]).one()
    assert memory.type == "transcript"
    assert memory.metadata_ == {"title": "Design review", "date": "2026-03-01", "attendee_count": 2}
    assert "ATTENDEES: Ann Lee, Bob Stone" in memory.content

    people = db_session.query(MemoryEntity).order_by(MemoryEntity.name).all()
    assert [(person.name, person.entity_subtype) for person in people] == [
        ("Ann Lee", "colleague"),
        ("Bob Stone", "colleague"),
    ]
    link_types = {link.link_type for link in db_session.query(MemoryEntityLink).all()}
    assert link_types == {"attendee"}


def test_slack_importance():
    assert is_important_slack_event({"type": "message", "subtype": "bot_message", "text": "urgent"}) is False
    assert is_important_slack_event({"type": "app_mention", "text": "hi"}) is True
    assert is_important_slack_event({"type": "message", "subtype": "thread_broadcast", "text": "deadline friday"}) is True
    assert is_important_slack_event({"type": "message", "subtype": "thread_broadcast", "text": "lol"}) is False


def test_ingest_slack_message(server_db, db_session):
    skipped = memory_service.ingest_slack_message(
        payload={"event": {"type": "message", "subtype": "channel_join", "user": "U1", "channel": "C42"}}
    )
    assert skipped["message"] == "Slack message skipped"
    assert skipped["data"]["memory_id"] is None

    stored = memory_service.ingest_slack_message(
        payload={"event": {"type": "message", "user": "U1", "channel": "C42", "text": "Decision: ship Friday"}}
    )
    assert stored["data"]["skipped"] is False

    memory = db_session.query(Memory).filter(Memory.id == stored["data"]["memory_id"]).one()
    assert memory.content.endswith("MESSAGE:\nDecision: ship Friday")
    assert tag_names_for(db_session, memory.id) == ["c42", "slack"]


def test_ingest_requires_payload(server_db):
    result = memory_service.ingest_email(payload={})
    assert result["error_type"] == "validation_error"
    assert result["field"] == "payload"
