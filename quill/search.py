"""Hybrid search orchestration: concurrent vector + keyword retrieval fused with RRF."""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import QuillConfig
from .embeddings import EmbeddingClient
from .errors import ConfigurationError, ExternalServiceError, QuillError, ValidationError
from .index import VectorIndex
from .llm import AnswerGenerator
from .models import (
    AskResult,
    ContentType,
    Document,
    IndexHit,
    MatchType,
    SearchResult,
    SourceItem,
    utcnow,
)
from .storage import KeywordIndex

logger = logging.getLogger(__name__)

DEFAULT_RRF_K = 60

ASK_SYSTEM_PROMPT = (
    "You answer questions about the user's own notes, tasks and memories. "
    "Use only the numbered sources provided. Cite sources inline as [n]. "
    "If the sources do not contain the answer, say so plainly."
)

NO_CONTEXT_ANSWER = "I couldn't find anything in your notes related to that question."


@dataclass
class FusedHit:
    """One document after reciprocal rank fusion."""
    id: str
    score: float = 0.0
    vector_hit: Optional[IndexHit] = None
    keyword_hit: Optional[IndexHit] = None

    @property
    def match_type(self) -> MatchType:
        if self.vector_hit is not None and self.keyword_hit is not None:
            return MatchType.HYBRID
        if self.vector_hit is not None:
            return MatchType.VECTOR
        return MatchType.KEYWORD


def reciprocal_rank_fusion(
    vector_hits: Sequence[IndexHit],
    keyword_hits: Sequence[IndexHit],
    vector_weight: float,
    k: int = DEFAULT_RRF_K,
) -> List[FusedHit]:
    """
    Fuse two ranked lists with weighted Reciprocal Rank Fusion.

    A hit at 1-indexed rank ``r`` contributes ``weight / (k + r)``; the vector
    list uses ``vector_weight`` and the keyword list ``1 - vector_weight``.
    Hits are combined by id, never by arrival order. The sort is stable over
    the merge order (vector hits first), which breaks score ties.

    Args:
        vector_hits: Vector results, best first
        keyword_hits: Keyword results, best first
        vector_weight: Weight of the vector list in [0, 1]
        k: RRF constant

    Returns:
        Fused hits, best first
    """
    fused: Dict[str, FusedHit] = {}

    for rank, hit in enumerate(vector_hits, start=1):
        entry = fused.setdefault(hit.id, FusedHit(hit.id))
        if entry.vector_hit is None:
            entry.vector_hit = hit
            entry.score += vector_weight / (k + rank)

    keyword_weight = 1.0 - vector_weight
    for rank, hit in enumerate(keyword_hits, start=1):
        entry = fused.setdefault(hit.id, FusedHit(hit.id))
        if entry.keyword_hit is None:
            entry.keyword_hit = hit
            entry.score += keyword_weight / (k + rank)

    return sorted(fused.values(), key=lambda f: -f.score)


def build_context(results: Sequence[SearchResult], max_chars: int) -> Tuple[List[Document], str]:
    """
    Assemble numbered source blocks within ``max_chars``.

    Lower-ranked documents are dropped first. A top document that alone
    exceeds the budget is truncated rather than dropped.
    """
    used: List[Document] = []
    blocks: List[str] = []
    total = 0
    for result in results:
        doc = result.document
        header = f"[{len(used) + 1}] {doc.title or doc.content_type.value} ({doc.content_type.value}, {doc.created_at:%Y-%m-%d})\n"
        block = header + doc.body.strip()
        if total + len(block) > max_chars:
            if not used:
                blocks.append(block[:max_chars])
                used.append(doc)
            break
        blocks.append(block)
        used.append(doc)
        total += len(block) + 2
    return used, "\n\n".join(blocks)


def _merge_ranked(lists: Sequence[List[IndexHit]]) -> List[IndexHit]:
    """Merge per-content-type lists of one index by their raw scores."""
    merged = [hit for hits in lists for hit in hits]
    merged.sort(key=lambda h: (-h.score, -h.seq))
    return merged


def _collapse_chunks(hits: Sequence[IndexHit]) -> List[IndexHit]:
    """Keep the best chunk per parent document, re-keyed by document id."""
    seen = set()
    collapsed = []
    for hit in hits:
        doc_id = hit.metadata.get("document_id", hit.id)
        if doc_id in seen:
            continue
        seen.add(doc_id)
        collapsed.append(IndexHit(
            id=doc_id, score=hit.score, metadata=hit.metadata, highlights=hit.highlights, seq=hit.seq,
        ))
    return collapsed


def _document_from_metadata(doc_id: str, metadata: Mapping[str, Any]) -> Document:
    """Rebuild a minimal document from vector metadata when the store lacks it."""
    created = metadata.get("created_at")
    return Document(
        id=doc_id,
        owner_id=str(metadata.get("owner_id", "")),
        content_type=ContentType(metadata.get("content_type", ContentType.NOTE.value)),
        content_id=str(metadata.get("content_id", doc_id)),
        title=str(metadata.get("title", "")),
        body=str(metadata.get("text", "")),
        created_at=datetime.fromisoformat(created) if created else utcnow(),
    )


def _reraise_fatal(outcome: Any) -> None:
    if isinstance(outcome, asyncio.CancelledError):
        raise outcome
    if isinstance(outcome, ConfigurationError):
        raise outcome


class HybridSearchEngine:
    """Runs vector and keyword search concurrently and fuses them with RRF."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_index: VectorIndex,
        keyword_index: KeywordIndex,
        config: QuillConfig,
        generator: Optional[AnswerGenerator] = None,
    ):
        self.embedder = embedder
        self.vector_index = vector_index
        self.keyword_index = keyword_index
        self.config = config
        self.generator = generator

    def _ensure_enabled(self) -> None:
        if not self.config.enabled:
            raise ConfigurationError("Hybrid search is not configured (subsystem disabled)")

    def _validate(
        self,
        query: str,
        limit: int,
        vector_weight: float,
        min_similarity: float,
        content_types: Optional[Sequence[str]],
    ) -> List[Optional[ContentType]]:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must not be empty")
        if limit < 1:
            raise ValidationError(f"limit must be at least 1, got {limit}")
        if not 0.0 <= vector_weight <= 1.0:
            raise ValidationError(f"vector_weight must be within [0, 1], got {vector_weight}")
        if not math.isfinite(min_similarity) or min_similarity < 0.0:
            raise ValidationError(f"min_similarity must be a non-negative number, got {min_similarity}")
        if not content_types:
            return [None]
        types: List[Optional[ContentType]] = []
        for value in content_types:
            try:
                content_type = ContentType(value)
            except ValueError:
                raise ValidationError(f"Unknown content type: {value!r}") from None
            if content_type not in types:
                types.append(content_type)
        return types

    @staticmethod
    def _filters(owner_id: str, types: Sequence[Optional[ContentType]]) -> List[Dict[str, str]]:
        filters = []
        for content_type in types:
            f = {"owner_id": owner_id}
            if content_type is not None:
                f["content_type"] = content_type.value
            filters.append(f)
        return filters

    async def _fan_out(self, name: str, fn, filters: Sequence[Dict[str, str]], *args) -> List[IndexHit]:
        """Run ``fn`` once per filter concurrently; fail only if every call fails."""
        outcomes = await asyncio.gather(
            *(asyncio.to_thread(fn, *args, f) for f in filters),
            return_exceptions=True,
        )
        successes: List[List[IndexHit]] = []
        errors: List[BaseException] = []
        for f, outcome in zip(filters, outcomes):
            if isinstance(outcome, BaseException):
                _reraise_fatal(outcome)
                errors.append(outcome)
                logger.warning("%s sub-search failed for %s: %s", name, f, outcome)
            else:
                successes.append(outcome)
        if not successes:
            raise errors[0]
        return _merge_ranked(successes)

    async def _vector_branch(self, query: str, fetch: int, filters: Sequence[Dict[str, str]]) -> List[IndexHit]:
        query_vector = await asyncio.to_thread(self.embedder.embed_query, query)
        hits = await self._fan_out("Vector", self.vector_index.search, filters, query_vector, fetch)
        return _collapse_chunks(hits)

    async def _keyword_branch(self, query: str, fetch: int, filters: Sequence[Dict[str, str]]) -> List[IndexHit]:
        return await self._fan_out("Keyword", self.keyword_index.search, filters, query, fetch)

    async def search(
        self,
        owner_id: str,
        query: str,
        limit: Optional[int] = None,
        vector_weight: Optional[float] = None,
        min_similarity: float = 0.0,
        content_types: Optional[Sequence[str]] = None,
    ) -> List[SearchResult]:
        """
        Hybrid search over one owner's documents.

        Args:
            owner_id: Whose documents to search
            query: Free-text query
            limit: Maximum results (default: config.default_limit)
            vector_weight: RRF weight of the vector list (default: config.vector_weight)
            min_similarity: Drop results whose fused score is below this
            content_types: Restrict to these content types, one sub-search each

        Returns:
            Results ordered by fused score

        Raises:
            ValidationError: Bad arguments, before any work starts
            ConfigurationError: Subsystem disabled or misconfigured
            ExternalServiceError: Both vector and keyword retrieval failed
        """
        self._ensure_enabled()
        limit = self.config.default_limit if limit is None else limit
        vector_weight = self.config.vector_weight if vector_weight is None else vector_weight
        types = self._validate(query, limit, vector_weight, min_similarity, content_types)
        filters = self._filters(owner_id, types)
        fetch = limit * max(1, self.config.candidate_multiplier)

        vector_outcome, keyword_outcome = await asyncio.gather(
            self._vector_branch(query, fetch, filters),
            self._keyword_branch(query, fetch, filters),
            return_exceptions=True,
        )
        _reraise_fatal(vector_outcome)
        _reraise_fatal(keyword_outcome)

        vector_failed = isinstance(vector_outcome, BaseException)
        keyword_failed = isinstance(keyword_outcome, BaseException)
        if vector_failed and keyword_failed:
            logger.error("Search failed in both indexes: vector=%s keyword=%s", vector_outcome, keyword_outcome)
            raise ExternalServiceError(
                f"Search unavailable: vector search failed ({vector_outcome}); "
                f"keyword search failed ({keyword_outcome})"
            )
        if vector_failed:
            logger.warning("Vector search failed, degrading to keyword-only results: %s", vector_outcome)
            vector_outcome = []
        if keyword_failed:
            logger.warning("Keyword search failed, degrading to vector-only results: %s", keyword_outcome)
            keyword_outcome = []

        fused = reciprocal_rank_fusion(vector_outcome, keyword_outcome, vector_weight, self.config.rrf_k)
        fused = [f for f in fused if f.score >= min_similarity][:limit]
        if not fused:
            return []

        documents = await self._hydrate([f.id for f in fused])
        results = []
        for f in fused:
            doc = documents.get(f.id)
            if doc is None:
                if f.vector_hit is None:
                    continue
                doc = _document_from_metadata(f.id, f.vector_hit.metadata)
            highlights = list(f.keyword_hit.highlights) if f.keyword_hit else []
            results.append(SearchResult(document=doc, score=f.score, match_type=f.match_type, highlights=highlights))
        return results

    async def _hydrate(self, ids: List[str]) -> Dict[str, Document]:
        try:
            return await asyncio.to_thread(self.keyword_index.get_documents, ids)
        except Exception as e:
            logger.warning("Document lookup failed, using vector metadata instead: %s", e)
            return {}

    async def ask(self, owner_id: str, question: str, top_k: Optional[int] = None) -> AskResult:
        """
        Answer a question from the owner's documents.

        Retrieves the top documents, packs as many as fit the context budget
        and hands an explicit prompt to the answer generator. The returned
        sources are exactly the documents placed in the prompt, followed by
        any citations the generator reported.
        """
        self._ensure_enabled()
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("Question must not be empty")
        if self.generator is None:
            raise ConfigurationError("No answer generator configured")

        results = await self.search(owner_id, question, limit=top_k or self.config.ask_top_k)
        if not results:
            return AskResult(answer=NO_CONTEXT_ANSWER, sources=[])

        used, context = build_context(results, self.config.ask_context_chars)
        user_prompt = (
            f"Sources:\n{context}\n\n"
            f"Question: {question.strip()}\n\n"
            "Answer using only the sources above and cite them as [n]."
        )
        try:
            generated = await asyncio.to_thread(self.generator.generate, ASK_SYSTEM_PROMPT, user_prompt)
        except QuillError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"Answer provider failed: {e}") from e

        sources = [SourceItem.document(doc) for doc in used]
        sources.extend(SourceItem.citation(c) for c in generated.citations)
        return AskResult(answer=generated.text, sources=sources)
