"""
Embedding backends and the content-hash embedding cache.
"""

from __future__ import annotations

import random
import threading
import time
from typing import List, Optional, Sequence

import httpx

import prime_memory.config as config
from prime_memory.cache import NAMESPACE_EMBEDDINGS, BaseCache, get_cache
from prime_memory.errors import EmbeddingProviderError, ValidationIssue
from prime_memory.models import content_digest

logger = config.logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class EmbeddingCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


embedding_circuit_breaker = EmbeddingCircuitBreaker(
    failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
    cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
)


def _raise_embedding_unavailable(detail: str) -> None:
    logger.warning("Embedding provider unavailable", extra={"detail": detail})
    raise EmbeddingProviderError(f"embedding provider unavailable: {detail}")


def _sleep_backoff(attempt: int) -> None:
    base = config.EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.EMBEDDING_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


# =============================================================================
# Backends
# =============================================================================

http_client: Optional[httpx.Client] = None  # Reusable HTTP client for OpenAI API


def init_http_client() -> httpx.Client:
    """Initialize HTTP client for OpenAI API calls."""
    global http_client
    headers = {"Content-Type": "application/json"}
    if config.OPENAI_API_KEY:
        headers["Authorization"] = f"Bearer {config.OPENAI_API_KEY}"
    http_client = httpx.Client(
        timeout=httpx.Timeout(config.EMBEDDING_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        headers=headers,
    )
    logger.info("HTTP client initialized")
    return http_client


def cleanup_http_client() -> None:
    """Clean up HTTP client on shutdown."""
    global http_client
    if http_client:
        http_client.close()
        http_client = None
        logger.info("HTTP client closed")


class OpenAIEmbeddingBackend:
    """OpenAI embeddings endpoint with retry, backoff and a circuit breaker."""

    name = "openai"

    def __init__(
        self,
        model: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        breaker: Optional[EmbeddingCircuitBreaker] = None,
        retry_max: Optional[int] = None,
        url: Optional[str] = None,
    ):
        self.model = model or config.EMBEDDING_MODEL
        self._client = client
        self._breaker = breaker or embedding_circuit_breaker
        self._retry_max = config.EMBEDDING_RETRY_MAX if retry_max is None else retry_max
        self._url = url or config.OPENAI_EMBEDDINGS_URL

    def _get_client(self) -> httpx.Client:
        if self._client is not None:
            return self._client
        return http_client or init_http_client()

    def _post(self, payload: dict, timeout: float) -> dict:
        if self._breaker.is_open():
            _raise_embedding_unavailable("circuit breaker open")
        client = self._get_client()
        for attempt in range(self._retry_max + 1):
            try:
                response = client.post(self._url, json=payload, timeout=timeout)
            except httpx.RequestError as exc:
                if attempt >= self._retry_max:
                    self._breaker.record_failure("request error")
                    _raise_embedding_unavailable(f"request error: {type(exc).__name__}")
                _sleep_backoff(attempt)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                if attempt >= self._retry_max:
                    self._breaker.record_failure(f"status {response.status_code}")
                    _raise_embedding_unavailable(f"status {response.status_code}")
                _sleep_backoff(attempt)
                continue
            if response.status_code >= 400:
                self._breaker.record_failure(f"status {response.status_code}")
                _raise_embedding_unavailable(f"status {response.status_code}")

            self._breaker.record_success()
            return response.json()
        _raise_embedding_unavailable("retries exhausted")

    def embed(self, text: str) -> List[float]:
        data = self._post({"model": self.model, "input": text}, config.EMBEDDING_TIMEOUT_SECONDS)
        return data["data"][0]["embedding"]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts in one request; output order follows input order."""
        if not texts:
            return []
        data = self._post(
            {"model": self.model, "input": list(texts)},
            config.EMBEDDING_BATCH_TIMEOUT_SECONDS,
        )
        ordered = sorted(data["data"], key=lambda item: item["index"])
        return [item["embedding"] for item in ordered]


class SentenceTransformerBackend:
    """Local CPU embeddings via sentence-transformers (model loaded on first use)."""

    name = "sentence_transformers"

    def __init__(self, model: Optional[str] = None):
        self.model = model or config.LOCAL_EMBEDDING_MODEL
        self._encoder = None
        self._lock = threading.Lock()

    def _get_encoder(self):
        with self._lock:
            if self._encoder is None:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError:
                    _raise_embedding_unavailable("sentence-transformers is not installed")
                logger.info("Loading local embedding model", extra={"model": self.model})
                self._encoder = SentenceTransformer(self.model)
            return self._encoder

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = self._get_encoder().encode(list(texts))
        return [vector.tolist() for vector in vectors]


class DisabledEmbeddingBackend:
    name = "none"
    model = "none"

    def embed(self, text: str) -> List[float]:
        _raise_embedding_unavailable("embedding provider disabled")

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        _raise_embedding_unavailable("embedding provider disabled")


def build_backend():
    if config.EMBEDDING_PROVIDER == "none":
        return DisabledEmbeddingBackend()
    if config.EMBEDDING_PROVIDER == "sentence_transformers":
        return SentenceTransformerBackend()
    return OpenAIEmbeddingBackend()


_backend = None
_backend_lock = threading.Lock()


def get_backend():
    global _backend
    with _backend_lock:
        if _backend is None:
            _backend = build_backend()
        return _backend


def set_backend(backend) -> None:
    """Swap the process-wide embedding backend (None rebuilds from configuration)."""
    global _backend
    with _backend_lock:
        _backend = backend


# =============================================================================
# Embedding cache
# =============================================================================

def prepare_embedding_text(text: str) -> str:
    """Truncate to the provider input cap; always applied before hashing."""
    return text[: config.EMBEDDING_MAX_INPUT_CHARS]


class EmbeddingCache:
    """Memoizes text -> vector by sha256 of the truncated text."""

    def __init__(self, backend=None, cache: Optional[BaseCache] = None, ttl: Optional[int] = None):
        self._backend = backend
        self._cache = cache
        self._ttl = config.EMBEDDING_CACHE_TTL_SECONDS if ttl is None else ttl

    @property
    def backend(self):
        return self._backend if self._backend is not None else get_backend()

    @property
    def cache(self) -> BaseCache:
        return self._cache if self._cache is not None else get_cache()

    def cache_key(self, text: str) -> str:
        return f"{self.backend.model}:{content_digest(prepare_embedding_text(text))}"

    def embed(self, text: str) -> List[float]:
        if not isinstance(text, str) or not text.strip():
            raise ValidationIssue("text must be a non-empty string", field="text", error_type="required")
        prepared = prepare_embedding_text(text)
        backend = self.backend
        return self.cache.get_or_compute(
            NAMESPACE_EMBEDDINGS,
            self.cache_key(prepared),
            self._ttl,
            lambda: backend.embed(prepared),
        )


def embed_text(text: str) -> List[float]:
    """Vectorize text through the process-wide backend and cache."""
    return EmbeddingCache().embed(text)
