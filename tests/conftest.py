import hashlib
import os
import re

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ["EMBEDDING_PROVIDER"] = "none"
os.environ["BACKGROUND_MODE"] = "inline"
os.environ["CACHE_BACKEND"] = "memory"
os.environ.setdefault("EMBEDDING_BACKFILL_ENABLED", "false")

import pytest

from prime_memory import background
from prime_memory.cache import InProcessCache, set_cache
from prime_memory.db import DB, bind_engine, create_db_engine
from prime_memory.embeddings import set_backend
from prime_memory.errors import EmbeddingProviderError
from prime_memory.models import Base

_WORD_RE = re.compile(r"[a-z0-9]+")


def hashed_vector(text: str, dim: int = 16) -> list[float]:
    """Bag-of-words vector: identical texts map to identical vectors."""
    vector = [0.0] * dim
    for word in _WORD_RE.findall(text.lower()):
        index = int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % dim
        vector[index] += 1.0
    return vector


class FakeEmbeddingBackend:
    name = "fake"
    model = "fake-embedding"

    def __init__(self, dim: int = 16):
        self.dim = dim
        self.vectors: dict[str, list[float]] = {}
        self.calls: list[str] = []
        self.fail = False

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingProviderError("embedding provider unavailable: fake outage")
        if text in self.vectors:
            return list(self.vectors[text])
        return hashed_vector(text, self.dim)

    def embed_batch(self, texts):
        return [self.embed(text) for text in texts]


@pytest.fixture
def fake_embeddings():
    backend = FakeEmbeddingBackend()
    set_backend(backend)
    try:
        yield backend
    finally:
        set_backend(None)


@pytest.fixture
def server_db(tmp_path, fake_embeddings):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'prime_memory.sqlite'}")
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    previous_mode = background.runner.mode
    bind_engine(engine)
    set_cache(InProcessCache())
    background.runner.mode = "inline"
    try:
        yield engine
    finally:
        background.runner.mode = previous_mode
        set_cache(None)
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = DB.SessionLocal()
    try:
        yield session
    finally:
        session.close()
