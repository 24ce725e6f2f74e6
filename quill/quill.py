"""Main Quill engine: keeps both indexes in sync and wires search and ingestion."""

import asyncio
import logging
import weakref
from typing import Any, Dict, List, Optional, Sequence

from .chunking import DocumentChunker
from .config import QuillConfig
from .embeddings import EmbeddingCache, EmbeddingClient, create_embedding_provider
from .errors import ConfigurationError, ExternalServiceError, PartialFailure, ValidationError
from .index import VectorIndex, create_vector_index
from .jobs import DocumentFactory, IngestionJobManager, JobRegistry
from .llm import AnswerGenerator, OpenAIAnswerGenerator
from .models import AskResult, Chunk, Document, SearchResult
from .ratelimit import TokenBucketRateLimiter
from .search import HybridSearchEngine
from .storage import KeywordIndex

logger = logging.getLogger(__name__)


def _reraise_fatal(outcome: Any) -> None:
    if isinstance(outcome, (asyncio.CancelledError, ConfigurationError)):
        raise outcome


class Quill:
    """Hybrid retrieval engine over one owner-partitioned document collection."""

    def __init__(
        self,
        config: QuillConfig,
        embedder: Optional[EmbeddingClient] = None,
        vector_index: Optional[VectorIndex] = None,
        keyword_index: Optional[KeywordIndex] = None,
        generator: Optional[AnswerGenerator] = None,
        document_factory: Optional[DocumentFactory] = None,
    ):
        self.config = config

        # Initialize components
        if embedder is None and config.enabled:
            provider = create_embedding_provider(config.embedding_provider, config.embedding_model)
            embedder = EmbeddingClient(
                provider,
                config.embedding_dim,
                batch_size=config.embedding_batch_size,
                max_chars=config.embedding_max_chars,
                rate_limiter=TokenBucketRateLimiter(config.embedding_rate_limit, config.embedding_max_wait),
                cache=EmbeddingCache(config.embedding_cache_size),
            )
        if generator is None and config.enabled:
            try:
                generator = OpenAIAnswerGenerator(config.answer_model)
            except ConfigurationError as e:
                logger.warning("Answering disabled: %s", e)

        self.embedder = embedder
        self.generator = generator
        self.chunker = DocumentChunker(
            config.chunk_size,
            config.chunk_overlap,
            threshold=config.chunk_threshold,
            slack=config.chunk_slack,
        )
        self.vector_index = vector_index or create_vector_index(config)
        self.keyword_index = keyword_index or KeywordIndex(config.db_path)
        self.search_engine = HybridSearchEngine(
            embedder,
            self.vector_index,
            self.keyword_index,
            config,
            generator=generator,
        )
        self.jobs = IngestionJobManager(
            self,
            document_factory,
            registry=JobRegistry(config.job_retention_seconds, config.max_jobs),
        )

        self._doc_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        # Writes that reached only one index; None means a pending delete
        self.pending_repairs: Dict[str, Optional[Document]] = {}

    def ensure_ready(self) -> None:
        """Raise ConfigurationError unless documents can be indexed and searched."""
        if not self.config.enabled:
            raise ConfigurationError("Hybrid search is not configured (QUILL_ENABLED is off)")
        if self.embedder is None:
            raise ConfigurationError("Hybrid search is not configured (no embedding provider)")

    def _lock_for(self, doc_id: str) -> asyncio.Lock:
        lock = self._doc_locks.get(doc_id)
        if lock is None:
            lock = asyncio.Lock()
            self._doc_locks[doc_id] = lock
        return lock

    # ============ Writes ============

    def _chunk_texts(self, doc: Document, chunks: Sequence[Chunk]) -> List[str]:
        if doc.title:
            return [f"{doc.title}\n\n{c.text}" for c in chunks]
        return [c.text for c in chunks]

    def _chunk_metadata(self, doc: Document, chunk: Chunk) -> Dict[str, Any]:
        return {
            "document_id": doc.id,
            "owner_id": doc.owner_id,
            "content_type": doc.content_type.value,
            "content_id": doc.content_id,
            "title": doc.title,
            "created_at": doc.created_at.isoformat(),
            "ordinal": chunk.ordinal,
            "text": chunk.text,
        }

    def _write_vectors(self, doc: Document, chunks: List[Chunk]) -> int:
        result = self.embedder.embed(self._chunk_texts(doc, chunks))
        result.raise_for_failures()

        batch = self.vector_index.add_batch(
            (chunk.chunk_id, vector, self._chunk_metadata(doc, chunk))
            for chunk, vector in zip(chunks, result.vectors)
        )
        if not batch.ok:
            raise PartialFailure(f"{len(batch.failed)} chunk vector(s) of {doc.id} failed", batch.failed)

        # A shorter new body leaves chunks of the old one behind; ordinals are contiguous
        ordinal = len(chunks)
        while self.vector_index.get(f"{doc.id}#{ordinal}") is not None:
            self.vector_index.remove(f"{doc.id}#{ordinal}")
            ordinal += 1
        return len(chunks)

    async def index_document(self, doc: Document) -> None:
        """
        Add or replace a document in both indexes.

        The body is chunked and all chunks are embedded with one client call.
        The vector write and the keyword write run concurrently. If only one
        side succeeds, the divergence is logged and the document is queued
        for ``repair()``.

        Raises:
            ValidationError: Empty body
            ConfigurationError: Subsystem disabled or dimension mismatch
            ExternalServiceError: Neither index accepted the document
        """
        self.ensure_ready()
        if not doc.body or not doc.body.strip():
            raise ValidationError(f"Document {doc.id} has an empty body")

        async with self._lock_for(doc.id):
            chunks = self.chunker.chunk(doc)
            vector_outcome, keyword_outcome = await asyncio.gather(
                asyncio.to_thread(self._write_vectors, doc, chunks),
                asyncio.to_thread(self.keyword_index.index_document, doc),
                return_exceptions=True,
            )
            self._settle(doc.id, doc, "index", vector_outcome, keyword_outcome)
        logger.debug("Indexed document %s (%d chunks)", doc.id, len(chunks))

    async def remove_document(self, doc_id: str) -> bool:
        """Remove a document from both indexes. Unknown ids are a no-op."""
        async with self._lock_for(doc_id):
            vector_outcome, keyword_outcome = await asyncio.gather(
                asyncio.to_thread(self.vector_index.remove_where, {"document_id": doc_id}),
                asyncio.to_thread(self.keyword_index.remove, doc_id),
                return_exceptions=True,
            )
            self._settle(doc_id, None, "remove", vector_outcome, keyword_outcome)
        removed = (isinstance(vector_outcome, int) and vector_outcome > 0) or keyword_outcome is True
        return removed

    def _settle(
        self,
        doc_id: str,
        doc: Optional[Document],
        action: str,
        vector_outcome: Any,
        keyword_outcome: Any,
    ) -> None:
        _reraise_fatal(vector_outcome)
        _reraise_fatal(keyword_outcome)
        vector_failed = isinstance(vector_outcome, BaseException)
        keyword_failed = isinstance(keyword_outcome, BaseException)

        if vector_failed and keyword_failed:
            logger.error(
                "Failed to %s document %s in both indexes: vector=%s keyword=%s",
                action, doc_id, vector_outcome, keyword_outcome,
            )
            raise ExternalServiceError(
                f"Could not {action} document {doc_id}: {vector_outcome}; {keyword_outcome}"
            )
        if vector_failed or keyword_failed:
            side, error = ("vector", vector_outcome) if vector_failed else ("keyword", keyword_outcome)
            logger.error("Index divergence: %s of document %s failed in the %s index: %s", action, doc_id, side, error)
            self.pending_repairs[doc_id] = doc
            return
        self.pending_repairs.pop(doc_id, None)

    async def repair(self) -> Dict[str, int]:
        """Retry writes that previously reached only one index."""
        repaired = failed = 0
        for doc_id, doc in list(self.pending_repairs.items()):
            try:
                if doc is None:
                    await self.remove_document(doc_id)
                else:
                    await self.index_document(doc)
            except ExternalServiceError as e:
                logger.warning("Repair of document %s failed: %s", doc_id, e)
                failed += 1
                continue
            if doc_id in self.pending_repairs:
                failed += 1
            else:
                repaired += 1
        if repaired or failed:
            logger.info("Repair pass: %d repaired, %d still pending", repaired, len(self.pending_repairs))
        return {"repaired": repaired, "failed": failed, "pending": len(self.pending_repairs)}

    # ============ Reads ============

    async def search(self, owner_id: str, query: str, **kwargs: Any) -> List[SearchResult]:
        """Hybrid search; see ``HybridSearchEngine.search`` for arguments."""
        return await self.search_engine.search(owner_id, query, **kwargs)

    async def ask(self, owner_id: str, question: str, top_k: Optional[int] = None) -> AskResult:
        return await self.search_engine.ask(owner_id, question, top_k=top_k)

    def get_document(self, doc_id: str) -> Optional[Document]:
        return self.keyword_index.get_document(doc_id)

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        return {
            "enabled": self.config.enabled,
            "documents": self.keyword_index.count(),
            "vectors": len(self.vector_index),
            "vector_backend": self.config.vector_backend,
            "db_path": self.config.db_path,
            "index_path": self.config.index_path,
            "embedding_model": self.embedder.model if self.embedder else None,
            "embedding_dim": self.config.embedding_dim,
            "embedding_calls": self.embedder.calls if self.embedder else 0,
            "embedding_cache": self.embedder.cache.stats() if self.embedder and self.embedder.cache else None,
            "pending_repairs": len(self.pending_repairs),
            "jobs": len(self.jobs.registry),
        }

    def save(self) -> None:
        """Persist index to disk."""
        self.vector_index.save()

    def close(self) -> None:
        """Close all connections and save."""
        self.save()
        self.keyword_index.close()


def create_quill(config: Optional[QuillConfig] = None, **overrides: Any) -> Quill:
    """
    Create a Quill instance from the environment.

    Example:
        >>> quill = create_quill(db_path="notes.db", vector_backend="usearch")
        >>> results = asyncio.run(quill.search("user-1", "ML project"))
    """
    config = config or QuillConfig.from_env(**overrides)
    return Quill(config)
