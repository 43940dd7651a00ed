import math
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from prime_memory.models import Memory
from prime_memory.services import memory_service
from prime_memory.services.recall import RecallFilters, recall
from prime_memory.similarity import (
    BruteForceSimilaritySearch,
    SimilarityHit,
    SimilarityScan,
    cosine_similarity,
    magnitude,
)
from prime_memory.errors import DimensionMismatchError

QUERY = "where did we leave the spare keys"


def _unit(similarity: float) -> list[float]:
    return [similarity, math.sqrt(1.0 - similarity * similarity)]


def _store_scored(fake_embeddings, scores, prefix="memory", **kwargs) -> dict[float, int]:
    fake_embeddings.vectors[QUERY] = [1.0, 0.0]
    ids = {}
    for index, score in enumerate(scores):
        content = f"{prefix} {index} scored {score}"
        fake_embeddings.vectors[content] = _unit(score)
        result = memory_service.store_note(content=content, **kwargs)
        ids[score] = result["data"]["memory_id"]
    return ids


def test_cosine_similarity_definition():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == 0.0
    assert cosine_similarity([0, 0], [3, 4]) == 0.0
    assert cosine_similarity([3, 4], [0, 0]) == 0.0
    assert cosine_similarity([1, 2], [2, 4], left_magnitude=magnitude([1, 2])) == pytest.approx(1.0)
    assert magnitude([3, 4]) == 5.0
    with pytest.raises(DimensionMismatchError):
        cosine_similarity([1, 0, 0], [1, 0])


def test_recall_ranking_and_cap(server_db, fake_embeddings):
    ids = _store_scored(fake_embeddings, [0.9, 0.8, 0.7, 0.6, 0.4])

    result = memory_service.recall_information(query=QUERY, limit=3, min_similarity=0.5)
    items = result["data"]["results"]

    assert result["data"]["search_mode"] == "semantic"
    assert [item["id"] for item in items] == [ids[0.9], ids[0.8], ids[0.7]]
    assert [item["similarity"] for item in items] == pytest.approx([0.9, 0.8, 0.7])
    assert all(item["relevance_score"] == 1.0 for item in items)

    wide = memory_service.recall_information(query=QUERY, limit=10, min_similarity=0.5)
    assert ids[0.4] not in [item["id"] for item in wide["data"]["results"]]
    assert len(wide["data"]["results"]) == 4


def test_recall_ties_break_on_relevance_then_recency(server_db, db_session, fake_embeddings):
    fake_embeddings.vectors[QUERY] = [1.0, 0.0]
    for content in ("tie older", "tie newer", "tie boosted"):
        fake_embeddings.vectors[content] = _unit(0.8)
    older = memory_service.store_note(content="tie older")["data"]["memory_id"]
    newer = memory_service.store_note(content="tie newer")["data"]["memory_id"]
    boosted = memory_service.store_note(content="tie boosted")["data"]["memory_id"]

    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    for memory_id, offset in ((older, 0), (newer, 2), (boosted, 1)):
        row = db_session.query(Memory).filter(Memory.id == memory_id).one()
        row.created_at = base + timedelta(days=offset)
    db_session.query(Memory).filter(Memory.id == boosted).one().relevance_score = 2.0
    db_session.commit()

    result = memory_service.recall_information(query=QUERY, min_similarity=0.5)
    assert [item["id"] for item in result["data"]["results"]] == [boosted, newer, older]


def test_filters_apply_before_cap(server_db, fake_embeddings):
    untagged = _store_scored(fake_embeddings, [0.95, 0.94, 0.93, 0.92], prefix="plain")
    tagged = _store_scored(fake_embeddings, [0.6], prefix="tagged", tags=["Garage"], type="task")

    by_tag = memory_service.recall_information(query=QUERY, limit=1, tag="garage", min_similarity=0.5)
    assert [item["id"] for item in by_tag["data"]["results"]] == [tagged[0.6]]

    by_type = memory_service.recall_information(query=QUERY, limit=2, type="Task", min_similarity=0.5)
    assert [item["id"] for item in by_type["data"]["results"]] == [tagged[0.6]]

    unfiltered = memory_service.recall_information(query=QUERY, limit=1, min_similarity=0.5)
    assert [item["id"] for item in unfiltered["data"]["results"]] == [untagged[0.95]]


def test_entity_and_date_filters(server_db, db_session, fake_embeddings):
    memory_service.store_person(name="Nora Quinn")
    linked = _store_scored(fake_embeddings, [0.7], prefix="linked", entity_names=["Nora Quinn"])
    other = _store_scored(fake_embeddings, [0.9], prefix="other")

    by_entity = memory_service.recall_information(query=QUERY, entity_name="nora quinn", min_similarity=0.5)
    assert [item["id"] for item in by_entity["data"]["results"]] == [linked[0.7]]

    unknown = memory_service.recall_information(query=QUERY, entity_name="Nobody Here")
    assert unknown["error_type"] == "not_found"
    assert unknown["field"] == "entity_name"

    row = db_session.query(Memory).filter(Memory.id == other[0.9]).one()
    row.created_at = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
    db_session.commit()

    in_range = memory_service.recall_information(
        query=QUERY, from_date="2025-03-01", to_date="2025-03-15", min_similarity=0.5
    )
    assert [item["id"] for item in in_range["data"]["results"]] == [other[0.9]]


def test_fallback_to_fulltext_when_provider_down(server_db, fake_embeddings):
    stored = memory_service.store_note(content="The plumber Victor fixed the kitchen sink on Tuesday")
    memory_service.store_note(content="Book the dentist appointment")

    fake_embeddings.fail = True
    result = memory_service.recall_information(query="kitchen sink plumber")

    assert result["success"] is True
    assert result["data"]["search_mode"] == "fulltext"
    assert result["data"]["partial"] is False
    items = result["data"]["results"]
    assert [item["id"] for item in items] == [stored["data"]["memory_id"]]
    assert items[0]["rank"] > 0
    assert "similarity" not in items[0]


def test_fallback_when_semantic_finds_nothing(server_db, fake_embeddings):
    _store_scored(fake_embeddings, [0.2])
    keyword = memory_service.store_note(content="spare keys are in the blue drawer")

    result = memory_service.recall_information(query=QUERY, min_similarity=0.99)
    assert result["data"]["search_mode"] == "fulltext"
    assert keyword["data"]["memory_id"] in [item["id"] for item in result["data"]["results"]]


def test_dimension_mismatch_is_skipped(server_db, fake_embeddings):
    fake_embeddings.vectors[QUERY] = [1.0, 0.0]
    fake_embeddings.vectors["two dims"] = [1.0, 0.0]
    fake_embeddings.vectors["three dims"] = [1.0, 0.0, 0.0]
    kept = memory_service.store_note(content="two dims")["data"]["memory_id"]
    memory_service.store_note(content="three dims")

    result = memory_service.recall_information(query=QUERY, min_similarity=0.5)
    assert result["data"]["search_mode"] == "semantic"
    assert [item["id"] for item in result["data"]["results"]] == [kept]


class TickingClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


def test_deadline_returns_partial_results(server_db, db_session, fake_embeddings):
    _store_scored(fake_embeddings, [0.91, 0.92, 0.93, 0.94, 0.95, 0.96])
    clock = TickingClock()
    searcher = BruteForceSimilaritySearch(db_session, chunk_size=2, clock=clock)

    outcome = recall(db_session, QUERY, limit=10, min_similarity=0.5, timeout=2.5, searcher=searcher, clock=clock)

    assert outcome.truncated is True
    assert outcome.search_mode == "semantic"
    assert 0 < len(outcome.results) < 6


def test_deadline_already_passed_returns_empty_partial(server_db, db_session, fake_embeddings):
    _store_scored(fake_embeddings, [0.9])
    outcome = recall(db_session, QUERY, timeout=0)
    assert outcome.truncated is True
    assert outcome.results == []


class FixedSearch:
    def __init__(self, hits):
        self.hits = hits
        self.calls = []

    def search(self, query_vector, limit, min_score, deadline=None):
        self.calls.append(limit)
        return SimilarityScan(hits=list(self.hits), scanned=len(self.hits))


def test_recall_uses_injected_search_and_uncaps_when_filtered(server_db, db_session, fake_embeddings):
    first = memory_service.store_note(content="first injected", type="idea")["data"]["memory_id"]
    second = memory_service.store_note(content="second injected")["data"]["memory_id"]
    searcher = FixedSearch([SimilarityHit(second, 0.9), SimilarityHit(first, 0.7)])

    outcome = recall(db_session, "anything", limit=5, searcher=searcher)
    assert [item["id"] for item in outcome.results] == [second, first]

    filtered = recall(db_session, "anything", limit=5, filters=RecallFilters(memory_type="idea"), searcher=searcher)
    assert [item["id"] for item in filtered.results] == [first]
    assert searcher.calls == [5, None]


def test_recall_records_access(server_db, db_session):
    stored = memory_service.store_note(content="Passport renewal is due in June")
    memory_service.recall_information(query="Passport renewal is due in June")

    db_session.expire_all()
    row = db_session.query(Memory).filter(Memory.id == stored["data"]["memory_id"]).one()
    assert row.last_accessed_at is not None


def test_recall_validation(server_db):
    empty = memory_service.recall_information(query="   ")
    assert empty["error_type"] == "validation_error"
    assert empty["field"] == "query"

    bad_limit = memory_service.recall_information(query="keys", limit=0)
    assert bad_limit["field"] == "limit"

    bad_date = memory_service.recall_information(query="keys", from_date="last week")
    assert bad_date["field"] == "from_date"


def test_min_similarity_must_be_a_number(server_db):
    as_text = memory_service.recall_information(query="keys", min_similarity="0.5")
    assert as_text["error_type"] == "validation_error"
    assert as_text["field"] == "min_similarity"

    as_bool = memory_service.recall_information(query="keys", min_similarity=True)
    assert as_bool["error_type"] == "validation_error"
    assert as_bool["field"] == "min_similarity"

    too_high = memory_service.recall_information(query="keys", min_similarity=1.5)
    assert too_high["field"] == "min_similarity"
