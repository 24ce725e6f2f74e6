"""Data models for the Quill retrieval engine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentType(str, Enum):
    NOTE = "note"
    TASK = "task"
    MEMORY = "memory"


class MatchType(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class Document:
    """A piece of user content that both indexes know by ``id``."""
    id: str
    owner_id: str
    content_type: ContentType
    body: str
    title: str = ""
    content_id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.content_type, ContentType):
            self.content_type = ContentType(self.content_type)
        if not self.content_id:
            self.content_id = self.id

    @classmethod
    def new(cls, owner_id: str, body: str, **kwargs: Any) -> "Document":
        """Create a document with a fresh random id."""
        kwargs.setdefault("content_type", ContentType.NOTE)
        return cls(id=uuid.uuid4().hex, owner_id=owner_id, body=body, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "content_type": self.content_type.value,
            "content_id": self.content_id,
            "title": self.title,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
            "tags": list(self.tags),
            "category": self.category,
        }


@dataclass(frozen=True)
class Chunk:
    """A window of a document body, ``[char_start, char_end)``."""
    parent_id: str
    ordinal: int
    text: str
    char_start: int
    char_end: int

    @property
    def chunk_id(self) -> str:
        return f"{self.parent_id}#{self.ordinal}"


@dataclass
class IndexHit:
    """A single hit from one index, before fusion."""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    highlights: List[str] = field(default_factory=list)
    seq: int = 0


@dataclass
class SearchResult:
    """A single fused search result. ``score`` only orders results of one call."""
    document: Document
    score: float
    match_type: MatchType
    highlights: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document": self.document.to_dict(),
            "score": self.score,
            "match_type": self.match_type.value,
            "highlights": list(self.highlights),
        }


@dataclass(frozen=True)
class Section:
    """One pre-parsed unit of an uploaded file."""
    content: str
    heading: str = ""
    order: int = 0


@dataclass(frozen=True)
class SectionFailure:
    ordinal: int
    heading: str
    error: str


@dataclass(frozen=True)
class IngestionJob:
    """Immutable snapshot of an ingestion job, safe to hand to pollers."""
    id: str
    owner_id: str
    filename: str
    file_type: str
    status: JobStatus
    total_items: int
    processed_items: int = 0
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    results: Tuple[Document, ...] = ()
    failures: Tuple[SectionFailure, ...] = ()

    @property
    def progress(self) -> float:
        if self.total_items == 0:
            return 0.0
        return self.processed_items / self.total_items

    @property
    def progress_percent(self) -> int:
        return int(self.progress * 100)

    def to_dict(self) -> Dict[str, Any]:
        results = [doc.to_dict() for doc in self.results]
        return {
            "job_id": self.id,
            "status": self.status.value,
            "filename": self.filename,
            "file_type": self.file_type,
            "progress": self.progress_percent,
            "processed_items": self.processed_items,
            "total_items": self.total_items,
            "results": results,
            "memories": results,
            "failures": [
                {"ordinal": f.ordinal, "heading": f.heading, "error": f.error}
                for f in self.failures
            ],
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
        }


class SourceKind(str, Enum):
    DOCUMENT = "document"
    CITATION = "citation"


@dataclass(frozen=True)
class Citation:
    """An external reference returned by the answer provider."""
    title: str
    url: str = ""
    snippet: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "url": self.url, "snippet": self.snippet}


@dataclass(frozen=True)
class SourceItem:
    """Tagged source of an answer: a retrieved document or a citation."""
    kind: SourceKind
    payload: Union[Document, Citation]

    @classmethod
    def document(cls, doc: Document) -> "SourceItem":
        return cls(SourceKind.DOCUMENT, doc)

    @classmethod
    def citation(cls, citation: Citation) -> "SourceItem":
        return cls(SourceKind.CITATION, citation)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "payload": self.payload.to_dict()}


@dataclass
class AskResult:
    answer: str
    sources: List[SourceItem] = field(default_factory=list)

    @property
    def documents(self) -> List[Document]:
        return [s.payload for s in self.sources if s.kind is SourceKind.DOCUMENT]  # type: ignore[misc]

    def to_dict(self) -> Dict[str, Any]:
        return {"answer": self.answer, "sources": [s.to_dict() for s in self.sources]}
