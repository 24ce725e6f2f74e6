"""
Quill - hybrid retrieval and background ingestion for personal notes

Finds a user's notes, tasks and memories by meaning and by keyword:
- Embedding client with batching, truncation logging and rate limiting
- Boundary-aware document chunking with overlap
- Vector index (exact numpy scan or USearch HNSW) with metadata filters
- SQLite FTS5 keyword index with stemming, bm25 ranking and highlights
- Hybrid search fusing both lists with weighted Reciprocal Rank Fusion
- Question answering over retrieved documents
- Asynchronous upload ingestion with pollable job progress
- REST API (FastAPI)

References:
- RRF: Cormack, Clarke & Buettcher, SIGIR 2009
- USearch: https://github.com/unum-cloud/usearch
- SQLite FTS5: https://www.sqlite.org/fts5.html
"""

__version__ = "1.0.0"

from .config import QuillConfig
from .errors import (
    QuillError,
    ConfigurationError,
    ExternalServiceError,
    RateLimitExceeded,
    NotFoundError,
    ValidationError,
    PartialFailure,
)
from .models import (
    ContentType,
    Document,
    Chunk,
    MatchType,
    SearchResult,
    JobStatus,
    IngestionJob,
    Section,
    SourceItem,
    AskResult,
)
from .chunking import DocumentChunker, chunk_document
from .embeddings import (
    EmbeddingClient,
    EmbeddingProvider,
    BaseEmbeddingProvider,
    HuggingFaceEmbedding,
    JinaEmbedding,
    EmbeddingCache,
    create_embedding_provider,
)
from .ratelimit import TokenBucketRateLimiter
from .index import VectorIndex, FlatVectorIndex, USearchVectorIndex, create_vector_index
from .storage import KeywordIndex
from .search import HybridSearchEngine, reciprocal_rank_fusion
from .jobs import IngestionJobManager, JobRegistry, SectionDocumentFactory
from .llm import AnswerGenerator, OpenAIAnswerGenerator
from .loaders import parse_upload
from .quill import Quill, create_quill

__all__ = [
    # Core
    "QuillConfig",
    "Quill",
    "create_quill",
    # Errors
    "QuillError",
    "ConfigurationError",
    "ExternalServiceError",
    "RateLimitExceeded",
    "NotFoundError",
    "ValidationError",
    "PartialFailure",
    # Models
    "ContentType",
    "Document",
    "Chunk",
    "MatchType",
    "SearchResult",
    "JobStatus",
    "IngestionJob",
    "Section",
    "SourceItem",
    "AskResult",
    # Chunking & Embeddings
    "DocumentChunker",
    "chunk_document",
    "EmbeddingClient",
    "EmbeddingProvider",
    "BaseEmbeddingProvider",
    "HuggingFaceEmbedding",
    "JinaEmbedding",
    "EmbeddingCache",
    "create_embedding_provider",
    "TokenBucketRateLimiter",
    # Components
    "VectorIndex",
    "FlatVectorIndex",
    "USearchVectorIndex",
    "create_vector_index",
    "KeywordIndex",
    "HybridSearchEngine",
    "reciprocal_rank_fusion",
    "IngestionJobManager",
    "JobRegistry",
    "SectionDocumentFactory",
    "AnswerGenerator",
    "OpenAIAnswerGenerator",
    "parse_upload",
]
