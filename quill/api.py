"""FastAPI REST API wrapper for the Quill engine."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import QuillConfig
from .errors import (
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    PartialFailure,
    QuillError,
    ValidationError,
)
from .loaders import file_type_of, parse_upload
from .logging_setup import setup_logging
from .models import ContentType, Document
from .quill import Quill

logger = logging.getLogger(__name__)


# ============ Request/Response Models ============

class SearchRequest(BaseModel):
    """Request body for search."""
    query: str = Field(..., description="Search query")
    content_types: Optional[List[str]] = Field(
        default=None, description="Restrict to 'note', 'task' and/or 'memory'"
    )
    limit: Optional[int] = Field(default=None, description="Number of results")
    vector_weight: Optional[float] = Field(
        default=None, description="Weight of semantic results in fusion (0-1)"
    )
    min_similarity: float = Field(default=0.0, description="Drop results with a lower fused score")


class SearchResultItem(BaseModel):
    document: Dict[str, Any]
    score: float
    match_type: str
    highlights: List[str]


class SearchResponse(BaseModel):
    results: List[SearchResultItem]
    query: str
    count: int


class AskRequest(BaseModel):
    question: str = Field(..., description="Natural-language question about your notes")
    top_k: Optional[int] = Field(default=None, description="Documents to retrieve as context")


class SourceItemModel(BaseModel):
    kind: str
    payload: Dict[str, Any]


class AskResponse(BaseModel):
    answer: str
    sources: List[SourceItemModel]


class UploadAccepted(BaseModel):
    job_id: str
    status: str
    filename: str
    file_type: str
    total_items: int


class SectionFailureModel(BaseModel):
    ordinal: int
    heading: str
    error: str


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    filename: str
    file_type: str
    progress: int = Field(..., description="Percent of sections processed (0-100)")
    processed_items: int
    total_items: int
    results: List[Dict[str, Any]]
    memories: List[Dict[str, Any]]
    failures: List[SectionFailureModel]
    error_message: Optional[str]
    created_at: str


class DocumentRequest(BaseModel):
    """Sync hook payload sent by the CRUD layer on create/update."""
    content_type: str = Field(..., description="'note', 'task' or 'memory'")
    body: str
    title: str = ""
    content_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    created_at: Optional[datetime] = None


# ============ Errors ============

def status_for(error: QuillError) -> int:
    """HTTP status for a Quill error."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConfigurationError):
        return 503
    if isinstance(error, PartialFailure):
        return 500
    if isinstance(error, ExternalServiceError):
        return 502
    return 500


# ============ App Factory ============

def create_app(config: Optional[QuillConfig] = None, quill: Optional[Quill] = None) -> FastAPI:
    """
    Create a FastAPI app wrapping a Quill instance.

    Args:
        config: Engine configuration (read from the environment when omitted)
        quill: Pre-built engine to serve instead of building one

    Returns:
        FastAPI app instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = quill is None
        app.state.quill = quill
        app.state.startup_error = None
        if owned:
            try:
                cfg = config or QuillConfig.from_env()
                setup_logging(cfg.log_level, cfg.log_file)
                app.state.quill = Quill(cfg)
            except ConfigurationError as e:
                logger.error("Quill failed to start: %s", e.message)
                app.state.startup_error = e.message
        yield
        engine: Optional[Quill] = app.state.quill
        if engine is not None:
            await engine.jobs.shutdown()
            if owned:
                engine.close()

    app = FastAPI(
        title="Quill API",
        description="Hybrid semantic and keyword search over personal notes, tasks and memories",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(QuillError)
    async def quill_error_handler(request: Request, exc: QuillError):
        status = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": {"kind": ValidationError.kind, "message": message}},
        )

    def get_quill(request: Request) -> Quill:
        engine = getattr(request.app.state, "quill", None)
        if engine is None:
            reason = getattr(request.app.state, "startup_error", None) or "Quill not initialized"
            raise ConfigurationError(f"Hybrid search is not configured: {reason}")
        return engine

    def require_owner(x_user_id: Optional[str]) -> str:
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(status_code=401, detail="Missing X-User-ID header")
        return x_user_id.strip()

    # ============ Endpoints ============

    @app.post("/search", response_model=SearchResponse, tags=["Search"])
    async def search(
        request: Request,
        body: SearchRequest,
        x_user_id: Optional[str] = Header(default=None),
    ):
        """
        Hybrid search over the caller's notes, tasks and memories.

        Semantic and keyword results are fused with Reciprocal Rank Fusion;
        each result says whether it matched by vector, keyword or both.
        """
        owner_id = require_owner(x_user_id)
        results = await get_quill(request).search(
            owner_id,
            body.query,
            limit=body.limit,
            vector_weight=body.vector_weight,
            min_similarity=body.min_similarity,
            content_types=body.content_types,
        )
        return SearchResponse(
            results=[SearchResultItem(**r.to_dict()) for r in results],
            query=body.query,
            count=len(results),
        )

    @app.post("/ask", response_model=AskResponse, tags=["Search"])
    async def ask(
        request: Request,
        body: AskRequest,
        x_user_id: Optional[str] = Header(default=None),
    ):
        """Answer a question from the caller's own documents."""
        owner_id = require_owner(x_user_id)
        result = await get_quill(request).ask(owner_id, body.question, top_k=body.top_k)
        return AskResponse(**result.to_dict())

    @app.post("/uploads", response_model=UploadAccepted, status_code=202, tags=["Ingestion"])
    async def upload(
        request: Request,
        file: UploadFile = File(...),
        x_user_id: Optional[str] = Header(default=None),
    ):
        """
        Accept a .txt or .md file and index its sections in the background.

        Poll ``GET /uploads/{job_id}`` for progress.
        """
        owner_id = require_owner(x_user_id)
        engine = get_quill(request)
        filename = file.filename or ""
        file_type = file_type_of(filename)
        sections = parse_upload(filename, await file.read())
        engine.ensure_ready()

        job = engine.jobs.create_job(owner_id, filename, file_type, len(sections))
        engine.jobs.start_processing(job.id, sections)
        logger.info("Accepted upload %s from %s as job %s", filename, owner_id, job.id)
        return UploadAccepted(
            job_id=job.id,
            status=job.status.value,
            filename=filename,
            file_type=file_type,
            total_items=job.total_items,
        )

    @app.get("/uploads/{job_id}", response_model=JobStatusResponse, tags=["Ingestion"])
    async def upload_status(
        request: Request,
        job_id: str,
        x_user_id: Optional[str] = Header(default=None),
    ):
        """Current snapshot of an ingestion job."""
        owner_id = require_owner(x_user_id)
        job = get_quill(request).jobs.get_status(job_id)
        if job.owner_id != owner_id:
            raise NotFoundError(f"Unknown job: {job_id}")
        return JobStatusResponse(**job.to_dict())

    @app.put("/documents/{doc_id}", tags=["Documents"])
    async def put_document(
        request: Request,
        doc_id: str,
        body: DocumentRequest,
        x_user_id: Optional[str] = Header(default=None),
    ):
        """Index (or re-index) a document after it was created or updated."""
        owner_id = require_owner(x_user_id)
        try:
            content_type = ContentType(body.content_type)
        except ValueError:
            raise ValidationError(f"Unknown content type: {body.content_type!r}") from None
        doc = Document(
            id=doc_id,
            owner_id=owner_id,
            content_type=content_type,
            body=body.body,
            title=body.title,
            content_id=body.content_id or doc_id,
            metadata=body.metadata,
            tags=body.tags,
            category=body.category,
        )
        if body.created_at is not None:
            doc.created_at = body.created_at
        engine = get_quill(request)
        existing = engine.get_document(doc_id)
        if existing is not None and existing.owner_id != owner_id:
            raise NotFoundError(f"Unknown document: {doc_id}")
        await engine.index_document(doc)
        return {"indexed": True, "id": doc_id, "pending_repair": doc_id in engine.pending_repairs}

    @app.delete("/documents/{doc_id}", tags=["Documents"])
    async def delete_document(
        request: Request,
        doc_id: str,
        x_user_id: Optional[str] = Header(default=None),
    ):
        """Remove a deleted document from both indexes."""
        owner_id = require_owner(x_user_id)
        engine = get_quill(request)
        existing = engine.get_document(doc_id)
        if existing is not None and existing.owner_id != owner_id:
            raise NotFoundError(f"Unknown document: {doc_id}")
        deleted = await engine.remove_document(doc_id)
        return {"deleted": deleted, "id": doc_id}

    @app.get("/stats", tags=["Management"])
    async def get_stats(request: Request):
        """Engine statistics including cache info."""
        return get_quill(request).get_stats()

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint."""
        engine = getattr(request.app.state, "quill", None)
        ready = engine is not None and engine.config.enabled
        return {"status": "healthy", "service": "quill", "search_enabled": ready}

    return app


# Default app for `uvicorn quill.api:app`
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
