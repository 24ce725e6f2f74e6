"""Embedding providers and the batching, rate-limited embedding client."""

import hashlib
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from openai import OpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import ConfigurationError, ExternalServiceError, PartialFailure, ValidationError
from .ratelimit import TokenBucketRateLimiter

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """LRU cache for embeddings to avoid redundant API calls."""

    def __init__(self, maxsize: int = 1000):
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _hash_text(self, text: str, model: str, query: bool) -> str:
        """Create a hash key for text + model + mode combination."""
        mode = "q" if query else "p"
        return hashlib.sha256(f"{model}:{mode}:{text}".encode()).hexdigest()[:32]

    def get(self, text: str, model: str, query: bool = False) -> Optional[List[float]]:
        key = self._hash_text(text, model, query)
        with self._lock:
            if key in self._cache:
                self._hits += 1
                self._cache.move_to_end(key)
                return self._cache[key]
            self._misses += 1
            return None

    def set(self, text: str, model: str, embedding: List[float], query: bool = False) -> None:
        if self._maxsize <= 0:
            return
        key = self._hash_text(text, model, query)
        with self._lock:
            self._cache[key] = embedding
            self._cache.move_to_end(key)
            while len(self._cache) > self._maxsize:
                self._cache.popitem(last=False)

    def stats(self) -> Dict[str, float]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0,
                "size": len(self._cache),
                "maxsize": self._maxsize,
            }

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0


class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    A provider turns one batch of texts into vectors with exactly one external
    call. Batching, truncation, caching and rate limiting live in
    EmbeddingClient.
    """

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    def _embed_batch(self, texts: List[str], *, query: bool = False) -> List[List[float]]:
        """Generate embeddings for a batch of texts (provider-specific).

        ``query=True`` asks for query-side embeddings on models that
        distinguish queries from passages.
        """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return embedding dimension for this model."""


class EmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI embedding provider with retries."""

    # Known dimensions for OpenAI models
    MODEL_DIMENSIONS = {
        "text-embedding-3-large": 3072,
        "text-embedding-3-small": 1536,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, model: str, openai_api_key: Optional[str] = None):
        super().__init__(model)
        self.api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass openai_api_key parameter."
            )
        self.client = OpenAI(api_key=self.api_key)

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1536)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str], *, query: bool = False) -> List[List[float]]:
        """Generate embeddings via OpenAI API (no query/passage distinction)."""
        response = self.client.embeddings.create(
            model=self.model,
            input=texts,
        )

        # Sort by index to ensure correct order
        embeddings = sorted(response.data, key=lambda x: x.index)
        return [emb.embedding for emb in embeddings]


class HuggingFaceEmbedding(BaseEmbeddingProvider):
    """
    HuggingFace sentence-transformers embedding provider (local, free).

    Requires the ``local`` extra (sentence-transformers).
    """

    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-mpnet-base-v2": 768,
        "BAAI/bge-small-en-v1.5": 384,
        "BAAI/bge-base-en-v1.5": 768,
    }

    # bge models expect an instruction prefix on the query side only
    QUERY_PREFIXES = {
        "BAAI/bge-small-en-v1.5": "Represent this sentence for searching relevant passages: ",
        "BAAI/bge-base-en-v1.5": "Represent this sentence for searching relevant passages: ",
    }

    def __init__(self, model: str = "all-MiniLM-L6-v2", hf_token: Optional[str] = None):
        super().__init__(model)
        self.hf_token = hf_token or os.environ.get("HF_TOKEN")
        self._model = None
        self._dimension: Optional[int] = None
        self._load_lock = threading.Lock()

    def _load_model(self):
        """Lazy-load the model."""
        with self._load_lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError:
                    raise ConfigurationError(
                        "sentence-transformers not installed. Install the 'local' extra."
                    ) from None
                self._model = SentenceTransformer(self.model, token=self.hf_token)
                self._dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is not None:
            return self._dimension
        if self.model in self.MODEL_DIMENSIONS:
            return self.MODEL_DIMENSIONS[self.model]
        self._load_model()
        return self._dimension or 384

    def _embed_batch(self, texts: List[str], *, query: bool = False) -> List[List[float]]:
        model = self._load_model()
        prefix = self.QUERY_PREFIXES.get(self.model, "") if query else ""
        embeddings = model.encode([prefix + t for t in texts], convert_to_numpy=True)
        return embeddings.tolist()


class JinaEmbedding(BaseEmbeddingProvider):
    """
    Jina AI embedding provider (API-based).

    Jina models are asymmetric: passages are embedded with the
    ``retrieval.passage`` task and queries with ``retrieval.query``.

    Requires: JINA_API_KEY environment variable
    """

    API_URL = "https://api.jina.ai/v1/embeddings"

    MODEL_DIMENSIONS = {
        "jina-embeddings-v3": 1024,
        "jina-embeddings-v2-base-en": 768,
        "jina-embeddings-v2-small-en": 512,
    }

    def __init__(
        self,
        model: str = "jina-embeddings-v3",
        jina_api_key: Optional[str] = None,
        timeout: float = 30.0,
    ):
        super().__init__(model)
        self.api_key = jina_api_key or os.environ.get("JINA_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "Jina API key required. Set JINA_API_KEY environment variable "
                "or pass jina_api_key parameter."
            )
        self.timeout = timeout

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1024)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str], *, query: bool = False) -> List[List[float]]:
        """Generate embeddings via Jina AI API."""
        import requests

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload = {
            "model": self.model,
            "input": texts,
            "task": "retrieval.query" if query else "retrieval.passage",
        }

        response = requests.post(self.API_URL, headers=headers, json=payload, timeout=self.timeout)
        response.raise_for_status()

        data = sorted(response.json()["data"], key=lambda item: item["index"])
        return [item["embedding"] for item in data]


def create_embedding_provider(
    provider: str = "openai",
    model: Optional[str] = None,
    **kwargs
) -> BaseEmbeddingProvider:
    """
    Factory function to create embedding providers.

    Args:
        provider: Provider name ('openai', 'huggingface', 'jina')
        model: Model name (uses provider default if not specified)
        **kwargs: Additional provider-specific arguments

    Returns:
        Configured embedding provider

    Example:
        >>> embedder = create_embedding_provider("openai", "text-embedding-3-small")
        >>> embedder = create_embedding_provider("jina", "jina-embeddings-v3")
    """
    provider = provider.lower()

    if provider in ("openai", "openai-embedding"):
        return EmbeddingProvider(model or "text-embedding-3-small", **kwargs)
    elif provider in ("huggingface", "hf", "sentence-transformers"):
        return HuggingFaceEmbedding(model or "all-MiniLM-L6-v2", **kwargs)
    elif provider in ("jina", "jina-ai"):
        return JinaEmbedding(model or "jina-embeddings-v3", **kwargs)
    raise ConfigurationError(
        f"Unknown provider: {provider}. Supported: 'openai', 'huggingface', 'jina'"
    )


# ============ Client ============

TRUNCATION_BUCKETS: Tuple[Tuple[float, str], ...] = (
    (0.10, "minor"),
    (0.25, "moderate"),
    (0.50, "significant"),
)


def truncation_severity(original_len: int, truncated_len: int) -> str:
    """Classify how much of a text was cut: minor, moderate, significant or severe."""
    if original_len <= 0:
        return "minor"
    lost = (original_len - truncated_len) / original_len
    for bound, label in TRUNCATION_BUCKETS:
        if lost < bound:
            return label
    return "severe"


@dataclass
class BatchFailure:
    """One provider batch that produced no vectors for the input positions in ``indices``."""
    batch_index: int
    indices: List[int]
    error: str


@dataclass
class EmbeddingResult:
    """Vectors in input order; ``None`` where the item's batch failed."""
    vectors: List[Optional[List[float]]]
    failures: List[BatchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def failed_indices(self) -> List[int]:
        return [i for i, v in enumerate(self.vectors) if v is None]

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialFailure(
                f"{len(self.failures)} embedding batch(es) failed",
                {f"item {i}": f.error for f in self.failures for i in f.indices},
            )


class EmbeddingClient:
    """
    Turns texts into vectors through a provider, one external call per batch.

    Texts over ``max_chars`` are truncated and the truncation is logged. Each
    batch waits on the rate limiter before calling out. A failing batch only
    invalidates its own items; the rest of the result is still returned.
    """

    def __init__(
        self,
        provider: BaseEmbeddingProvider,
        dimension: int,
        *,
        batch_size: int = 200,
        max_chars: int = 8000,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        cache: Optional[EmbeddingCache] = None,
    ):
        if batch_size <= 0:
            raise ConfigurationError("batch_size must be positive")
        self.provider = provider
        self.dimension = dimension
        self.batch_size = batch_size
        self.max_chars = max_chars
        self.rate_limiter = rate_limiter
        self.cache = cache
        self._calls = 0
        self._calls_lock = threading.Lock()

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def calls(self) -> int:
        """Number of external provider calls issued so far."""
        return self._calls

    def _prepare(self, texts: Sequence[str]) -> List[str]:
        if isinstance(texts, str):
            texts = [texts]
        if not texts:
            raise ValidationError("embed() needs at least one text")

        prepared = []
        for i, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                raise ValidationError(f"Text at position {i} is empty")
            if len(text) > self.max_chars:
                truncated = text[: self.max_chars]
                severity = truncation_severity(len(text), len(truncated))
                log = logger.warning if severity in ("significant", "severe") else logger.info
                log(
                    "Truncated embedding input %d: %d -> %d chars (%s loss, %.0f%%)",
                    i, len(text), len(truncated), severity,
                    100.0 * (len(text) - len(truncated)) / len(text),
                )
                text = truncated
            prepared.append(text)
        return prepared

    def _call_provider(self, batch: List[str], query: bool) -> List[List[float]]:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        with self._calls_lock:
            self._calls += 1
        vectors = self.provider._embed_batch(batch, query=query)
        if len(vectors) != len(batch):
            raise ExternalServiceError(
                f"Provider returned {len(vectors)} vectors for {len(batch)} texts"
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise ConfigurationError(
                    f"Embedding dimension mismatch: model {self.model} returned {len(vector)}, "
                    f"configured dimension is {self.dimension}"
                )
        return vectors

    def embed(self, texts: Sequence[str], *, query: bool = False) -> EmbeddingResult:
        """
        Embed texts in batches.

        Args:
            texts: One or more non-empty strings
            query: Use query-side embeddings where the model supports it

        Returns:
            EmbeddingResult with vectors in input order and per-batch failures

        Raises:
            ValidationError: Empty input or an empty text
            ConfigurationError: Provider returned vectors of the wrong dimension
        """
        prepared = self._prepare(texts)
        vectors: List[Optional[List[float]]] = [None] * len(prepared)
        pending: List[int] = []

        for i, text in enumerate(prepared):
            cached = self.cache.get(text, self.model, query) if self.cache else None
            if cached is not None:
                vectors[i] = cached
            else:
                pending.append(i)

        failures: List[BatchFailure] = []
        for batch_index, offset in enumerate(range(0, len(pending), self.batch_size)):
            indices = pending[offset : offset + self.batch_size]
            batch = [prepared[i] for i in indices]
            try:
                batch_vectors = self._call_provider(batch, query)
            except ConfigurationError:
                raise
            except ExternalServiceError as e:
                failures.append(BatchFailure(batch_index, list(indices), e.message))
                logger.error("Embedding batch %d (%d texts) failed: %s", batch_index, len(batch), e.message)
                continue
            except Exception as e:
                failures.append(BatchFailure(batch_index, list(indices), str(e)))
                logger.error("Embedding batch %d (%d texts) failed: %s", batch_index, len(batch), e)
                continue

            for i, vector in zip(indices, batch_vectors):
                vectors[i] = vector
                if self.cache is not None:
                    self.cache.set(prepared[i], self.model, vector, query)

        return EmbeddingResult(vectors=vectors, failures=failures)

    def embed_query(self, text: str) -> List[float]:
        """Embed a single search query; raises ExternalServiceError on failure."""
        result = self.embed([text], query=True)
        if not result.ok or result.vectors[0] is None:
            raise ExternalServiceError(f"Query embedding failed: {result.failures[0].error}")
        return result.vectors[0]
