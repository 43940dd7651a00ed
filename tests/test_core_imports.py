import os

os.environ.setdefault("DB_BACKEND", "sqlite")


def test_core_imports():
    import prime_memory.models  # noqa: F401
    import prime_memory.services.memory_service  # noqa: F401
    import prime_memory.mcp  # noqa: F401


def test_core_smoke_lifecycle(server_db):
    import prime_memory.services.memory_service as memory

    store_result = memory.store_note(content="Core import smoke note about the harbor trip")
    assert store_result["success"] is True
    memory_id = store_result["data"]["memory_id"]

    recall_result = memory.recall_information(query="Core import smoke note about the harbor trip", limit=5)
    assert recall_result["data"]["search_mode"] == "semantic"
    assert [item["id"] for item in recall_result["data"]["results"]] == [memory_id]

    archive_result = memory.archive_memory(memory_id=memory_id)
    assert archive_result["data"]["is_archived"] is True

    recall_archived = memory.recall_information(query="Core import smoke note about the harbor trip", limit=5)
    assert recall_archived["data"]["results"] == []

    restore_result = memory.restore_memory(memory_id=memory_id)
    assert restore_result["data"]["is_archived"] is False

    recall_after = memory.recall_information(query="Core import smoke note about the harbor trip", limit=5)
    assert [item["id"] for item in recall_after["data"]["results"]] == [memory_id]
