import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import httpx
import pytest

import prime_memory.config as config
from prime_memory import embeddings
from prime_memory.cache import InProcessCache
from prime_memory.embeddings import EmbeddingCache, EmbeddingCircuitBreaker, OpenAIEmbeddingBackend
from prime_memory.errors import EmbeddingProviderError, ValidationIssue
from prime_memory.models import Memory, MemoryEmbedding
from prime_memory.services import memory_embeddings, memory_service


def test_embedding_cache_hit_skips_backend(fake_embeddings):
    cache = EmbeddingCache(backend=fake_embeddings, cache=InProcessCache())

    first = cache.embed("the same sentence")
    second = cache.embed("the same sentence")

    assert first == second
    assert fake_embeddings.calls == ["the same sentence"]


def test_embedding_truncates_before_hashing(fake_embeddings, monkeypatch):
    monkeypatch.setattr(config, "EMBEDDING_MAX_INPUT_CHARS", 12)
    cache = EmbeddingCache(backend=fake_embeddings, cache=InProcessCache())

    cache.embed("identical prefix, tail A")
    cache.embed("identical prefix, tail B")

    assert fake_embeddings.calls == ["identical pr"]
    assert cache.cache_key("identical prefix, tail A") == cache.cache_key("identical prefix, tail B")


def test_embedding_rejects_empty_text(fake_embeddings):
    with pytest.raises(ValidationIssue):
        EmbeddingCache(backend=fake_embeddings, cache=InProcessCache()).embed("   ")


def _backend(handler, breaker=None, retry_max=0):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenAIEmbeddingBackend(
        model="text-embedding-3-small",
        client=client,
        breaker=breaker or EmbeddingCircuitBreaker(failure_threshold=5, cooldown_seconds=60),
        retry_max=retry_max,
        url="https://embeddings.test/v1/embeddings",
    )


def test_openai_backend_success():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.1, 0.2, 0.3]}]})

    backend = _backend(handler)
    assert backend.embed("hello") == [0.1, 0.2, 0.3]
    assert seen[0].url == httpx.URL("https://embeddings.test/v1/embeddings")


def test_openai_backend_batch_keeps_input_order():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [2.0]}, {"index": 0, "embedding": [1.0]}]},
        )

    assert _backend(handler).embed_batch(["a", "b"]) == [[1.0], [2.0]]


def test_openai_backend_retries_then_fails(monkeypatch):
    monkeypatch.setattr(embeddings, "_sleep_backoff", lambda attempt: None)
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(503, json={"error": "overloaded"})

    breaker = EmbeddingCircuitBreaker(failure_threshold=5, cooldown_seconds=60)
    with pytest.raises(EmbeddingProviderError):
        _backend(handler, breaker=breaker, retry_max=2).embed("hello")

    assert len(attempts) == 3
    assert breaker.status()["consecutive_failures"] == 1


def test_openai_backend_retries_transient_error(monkeypatch):
    monkeypatch.setattr(embeddings, "_sleep_backoff", lambda attempt: None)
    responses = [httpx.Response(429), httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    assert _backend(handler, retry_max=1).embed("hello") == [1.0]


def test_circuit_breaker_opens_and_short_circuits():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"error": "bad key"})

    breaker = EmbeddingCircuitBreaker(failure_threshold=1, cooldown_seconds=60)
    backend = _backend(handler, breaker=breaker)

    with pytest.raises(EmbeddingProviderError):
        backend.embed("hello")
    assert breaker.is_open() is True

    with pytest.raises(EmbeddingProviderError):
        backend.embed("hello again")
    assert len(calls) == 1

    breaker.record_success()
    assert breaker.is_open() is False


def test_generate_skips_unchanged_text(server_db, db_session, fake_embeddings):
    stored = memory_service.store_note(content="Embedding regeneration check")
    memory_id = stored["data"]["memory_id"]

    assert memory_embeddings.generate_for_memory(db_session, memory_id) is False

    row = db_session.query(Memory).filter(Memory.id == memory_id).one()
    row.summary = "A shorter summary"
    db_session.commit()
    assert memory_embeddings.generate_for_memory(db_session, memory_id) is True

    embedding = db_session.query(MemoryEmbedding).filter(MemoryEmbedding.memory_id == memory_id).one()
    assert embedding.model == fake_embeddings.model
    assert embedding.dimensions == len(embedding.embedding)


def test_embedding_failure_never_reaches_caller(server_db, db_session, fake_embeddings):
    fake_embeddings.fail = True
    stored = memory_service.store_note(content="Stored while the provider is down")

    assert stored["success"] is True
    assert db_session.query(Memory).count() == 1
    assert db_session.query(MemoryEmbedding).count() == 0


def test_backfill_embeddings_and_magnitudes(server_db, db_session, fake_embeddings, monkeypatch):
    monkeypatch.setattr(config, "EMBEDDING_PROVIDER", "openai")
    fake_embeddings.fail = True
    memory_service.store_note(content="First note missing an embedding")
    memory_service.store_note(content="Second note missing an embedding")
    fake_embeddings.fail = False

    stored = memory_service.store_note(content="Note with an embedding")
    embedding = (
        db_session.query(MemoryEmbedding)
        .filter(MemoryEmbedding.memory_id == stored["data"]["memory_id"])
        .one()
    )
    embedding.magnitude = None
    db_session.commit()

    result = memory_service.backfill_embeddings()

    assert result["success"] is True
    assert result["data"]["backfilled"] == 2
    assert result["data"]["magnitudes"] == 1
    db_session.expire_all()
    assert db_session.query(MemoryEmbedding).count() == 3
    assert db_session.query(MemoryEmbedding).filter(MemoryEmbedding.magnitude.is_(None)).count() == 0


def test_backfill_skipped_when_provider_disabled(server_db):
    result = memory_service.backfill_embeddings()
    assert result["data"]["reason"] == "embedding_disabled"
