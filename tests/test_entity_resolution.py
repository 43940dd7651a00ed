import os
from datetime import date, timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")

from prime_memory.models import MemoryEntity
from prime_memory.services import entity_store, memory_service


def test_email_beats_name(server_db, db_session):
    first = memory_service.store_person(name="J. Smith", email="j@x.com")
    second = memory_service.store_person(name="Jane Smith", email="j@x.com")

    assert second["data"]["entity_id"] == first["data"]["entity_id"]
    assert second["data"]["created"] is False
    assert second["data"]["name"] == "Jane Smith"
    assert second["data"]["mention_count"] == first["data"]["mention_count"] + 1
    assert db_session.query(MemoryEntity).count() == 1


def test_shorter_name_does_not_replace_on_email_match(server_db):
    first = memory_service.store_person(name="Jane Smith", email="jane@x.com")
    second = memory_service.store_person(name="Jane", email="JANE@x.com")

    assert second["data"]["entity_id"] == first["data"]["entity_id"]
    assert second["data"]["name"] == "Jane Smith"


def test_name_match_is_case_insensitive_and_word_prefix_tolerant(server_db):
    first = memory_service.store_person(name="Marcus Reed")
    again = memory_service.store_person(name="  marcus reed ")
    partial = memory_service.store_person(name="Marcus")

    assert again["data"]["entity_id"] == first["data"]["entity_id"]
    assert partial["data"]["entity_id"] == first["data"]["entity_id"]
    assert partial["data"]["mention_count"] == 3


def test_longer_name_does_not_resolve_to_shorter_stored_name(server_db, db_session):
    al = memory_service.store_person(name="Al")
    sally = memory_service.store_person(name="Sally Walsh")
    joanne = memory_service.store_person(name="Joanne")
    ann = memory_service.store_person(name="Ann")

    ids = {al["data"]["entity_id"], sally["data"]["entity_id"], joanne["data"]["entity_id"], ann["data"]["entity_id"]}
    assert len(ids) == 4
    assert sally["data"]["created"] is True
    assert ann["data"]["created"] is True
    assert entity_store.find_by_name(db_session, "Sally").id == sally["data"]["entity_id"]
    assert entity_store.find_by_name(db_session, "Wal") is None


def test_name_match_never_overwrites_a_different_email(server_db, db_session):
    first = memory_service.store_person(name="Ann", email="ann@x.com")
    other = memory_service.store_person(name="ann", email="ann.b@y.com")
    same = memory_service.store_person(name="Ann")

    assert other["data"]["entity_id"] != first["data"]["entity_id"]
    assert other["data"]["created"] is True
    assert same["data"]["created"] is False

    emails = {
        entity.id: entity.email
        for entity in db_session.query(MemoryEntity).order_by(MemoryEntity.id).all()
    }
    assert emails == {
        first["data"]["entity_id"]: "ann@x.com",
        other["data"]["entity_id"]: "ann.b@y.com",
    }


def test_name_match_fills_missing_email(server_db, db_session):
    first = memory_service.store_person(name="Tom Ruiz")
    again = memory_service.store_person(name="Tom Ruiz", email="tom@x.com")

    assert again["data"]["entity_id"] == first["data"]["entity_id"]
    entity = db_session.query(MemoryEntity).one()
    assert entity.email == "tom@x.com"


def test_same_name_different_type_is_distinct(server_db):
    person = memory_service.store_person(name="Jordan")
    place = memory_service.store_entity(name="Jordan", entity_type="place")

    assert person["data"]["entity_id"] != place["data"]["entity_id"]
    assert place["data"]["type"] == "place"


def test_contact_aliases_are_promoted(server_db, db_session):
    stored = memory_service.store_person(
        name="Priya Nair",
        attributes={"Mail": "Priya@Example.com", "mobile": "+44 20 7946 0000", "team": "Data"},
    )

    entity = db_session.query(MemoryEntity).filter(MemoryEntity.id == stored["data"]["entity_id"]).one()
    assert entity.email == "priya@example.com"
    assert entity.phone == "+44 20 7946 0000"
    assert entity.attributes == {"team": "Data"}
    assert stored["data"]["attributes"] == {
        "email": "priya@example.com",
        "phone": "+44 20 7946 0000",
        "team": "Data",
    }


def test_partial_update_leaves_omitted_fields(server_db):
    memory_service.store_person(
        name="Helen Park",
        entity_subtype="family",
        description="Cousin in Seoul",
        attributes={"birthday": "1990-04-02"},
        start_date="2020-01-01",
    )
    updated = memory_service.store_person(name="Helen Park", attributes={"birthday": "April 2nd", "city": "Busan"})

    details = memory_service.get_person_details(name="Helen Park")["data"]["person"]
    assert updated["data"]["subtype"] == "family"
    assert details["description"] == "Cousin in Seoul"
    assert details["start_date"] == "2020-01-01"
    # the raw merge overwrites existing keys
    assert details["attributes"] == {"birthday": "April 2nd", "city": "Busan"}


def test_temporal_classification():
    today = date(2026, 5, 10)
    ended = MemoryEntity(name="Ex", entity_type="person", end_date=today - timedelta(days=1))
    open_ended = MemoryEntity(name="Now", entity_type="person", start_date=date(2001, 1, 1))
    upcoming = MemoryEntity(name="Soon", entity_type="person", start_date=today + timedelta(days=1))

    assert ended.is_past(today) is True
    assert ended.is_current(today) is False
    assert open_ended.is_current(today) is True
    assert open_ended.is_past(today) is False
    assert upcoming.is_future(today) is True
    assert upcoming.is_current(today) is True
    assert ended.is_active_during(today - timedelta(days=5), today) is True
    assert ended.is_active_during(today, today + timedelta(days=3)) is False


def test_list_people_temporal_filters(server_db, db_session):
    today = date.today()
    memory_service.store_person(name="Former Manager", end_date=(today - timedelta(days=30)).isoformat())
    memory_service.store_person(name="Current Colleague", entity_subtype="colleague")
    memory_service.store_person(name="Incoming Hire", start_date=(today + timedelta(days=14)).isoformat())

    def names(temporal_filter):
        return {entity.name for entity in entity_store.list_people(db_session, temporal_filter, today=today)}

    assert names("current") == {"Current Colleague", "Incoming Hire"}
    assert names("past") == {"Former Manager"}
    assert names("future") == {"Incoming Hire"}
    assert names("all") == {"Former Manager", "Current Colleague", "Incoming Hire"}

    colleagues = memory_service.list_all_people(entity_subtype="colleague")
    assert [item["name"] for item in colleagues["data"]["results"]] == ["Current Colleague"]

    invalid = memory_service.list_all_people(temporal_filter="someday")
    assert invalid["error_type"] == "validation_error"
    assert invalid["field"] == "temporal_filter"


def test_get_entity_details_multiple_matches(server_db):
    memory_service.store_entity(name="River Cafe", entity_type="place")
    memory_service.store_entity(name="River Gym", entity_type="place")

    result = memory_service.get_entity_details(name="river", entity_type="place")
    assert result["data"]["multiple_matches"] is True
    assert {item["name"] for item in result["data"]["entities"]} == {"River Cafe", "River Gym"}

    missing = memory_service.get_entity_details(name="mountain")
    assert missing["error_type"] == "not_found"


def test_search_entities_cache_invalidated_on_write(server_db):
    memory_service.store_entity(name="Ferris", entity_type="pet", description="Orange tabby cat")
    first = memory_service.search_entities(query="tabby")
    assert [item["name"] for item in first["data"]["results"]] == ["Ferris"]

    memory_service.store_entity(name="Biscuit", entity_type="pet", description="Grey tabby kitten")
    second = memory_service.search_entities(query="tabby")
    assert {item["name"] for item in second["data"]["results"]} == {"Ferris", "Biscuit"}
