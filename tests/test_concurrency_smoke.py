import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")

from prime_memory.models import Memory, MemoryEntity, MemoryRelationship, MemoryTag
from prime_memory.services import memory_service


def _store_person(index: int) -> dict:
    return memory_service.store_person(
        name="Dana Whitfield",
        email="dana@example.com",
        description=f"Observation {index}",
    )


def _store_note(_: int) -> dict:
    return memory_service.store_note(content="Concurrent note about the quarterly plan", tags=["planning"])


def test_entity_resolution_concurrency(server_db, db_session):
    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(_store_person, range(8)))

    assert all(result["success"] for result in results)
    assert len({result["data"]["entity_id"] for result in results}) == 1
    assert sum(1 for result in results if result["data"]["created"]) == 1

    entities = db_session.query(MemoryEntity).filter(MemoryEntity.email == "dana@example.com").all()
    assert len(entities) == 1
    assert entities[0].mention_count == 8


def test_note_dedup_concurrency(server_db, db_session):
    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(_store_note, range(6)))

    assert all(result["success"] for result in results)
    assert len({result["data"]["memory_id"] for result in results}) == 1
    assert db_session.query(Memory).count() == 1
    assert db_session.query(MemoryTag).filter(MemoryTag.name == "planning").count() == 1


def test_relationship_concurrency(server_db, db_session):
    memory_service.store_person(name="Lena Park")
    memory_service.store_entity(name="Northwind", entity_type="organization")

    def create(index: int) -> dict:
        return memory_service.create_relationship(
            from_entity_name="Lena Park",
            to_entity_name="Northwind",
            relationship_type="works_at",
            metadata={f"source_{index}": True},
        )

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(create, range(6)))

    assert all(result["success"] for result in results)
    rows = db_session.query(MemoryRelationship).all()
    assert len(rows) == 1
    assert set(rows[0].metadata_) == {f"source_{index}" for index in range(6)}
