"""Asynchronous ingestion jobs: registry of immutable snapshots plus the worker."""

import asyncio
import inspect
import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .errors import ConfigurationError, NotFoundError, ValidationError
from .models import ContentType, Document, IngestionJob, JobStatus, Section, SectionFailure, utcnow

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled"


class DocumentSink(Protocol):
    """Where ingested documents go; the engine implements this."""

    async def index_document(self, doc: Document) -> None:
        ...

    def ensure_ready(self) -> None:
        ...


class DocumentFactory(Protocol):
    def __call__(self, job: IngestionJob, section: Section, ordinal: int) -> Document:
        ...


class SectionDocumentFactory:
    """Turns each uploaded section into a ``memory`` document owned by the uploader."""

    def __init__(self, content_type: ContentType = ContentType.MEMORY):
        self.content_type = content_type

    def __call__(self, job: IngestionJob, section: Section, ordinal: int) -> Document:
        return Document.new(
            job.owner_id,
            section.content,
            content_type=self.content_type,
            title=section.heading,
            metadata={
                "job_id": job.id,
                "filename": job.filename,
                "section": str(section.order),
            },
        )


class _JobRecord:
    """Holds the current snapshot of one job; writers serialize on ``lock``."""

    def __init__(self, job: IngestionJob):
        self.lock = threading.Lock()
        self.snapshot = job

    def update(self, **changes) -> IngestionJob:
        with self.lock:
            if self.snapshot.status.is_terminal:
                return self.snapshot
            self.snapshot = replace(self.snapshot, **changes)
            return self.snapshot

    def record_section(self, doc: Optional[Document], failure: Optional[SectionFailure]) -> IngestionJob:
        with self.lock:
            job = self.snapshot
            if job.status.is_terminal:
                return job
            self.snapshot = replace(
                job,
                processed_items=min(job.processed_items + (1 if doc is not None else 0), job.total_items),
                results=job.results + ((doc,) if doc is not None else ()),
                failures=job.failures + ((failure,) if failure is not None else ()),
            )
            return self.snapshot


class JobRegistry:
    """
    Process-local store of ingestion jobs.

    Reads return the record's current snapshot without locking; the snapshot
    is immutable and replaced wholesale on every update.
    """

    def __init__(
        self,
        retention_seconds: float = 3600.0,
        max_jobs: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.retention_seconds = retention_seconds
        self.max_jobs = max_jobs
        self._clock = clock
        self._records: Dict[str, _JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, owner_id: str, filename: str, file_type: str, total_items: int) -> IngestionJob:
        if total_items < 0:
            raise ValidationError(f"total_items must be >= 0, got {total_items}")
        job = IngestionJob(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            filename=filename,
            file_type=file_type,
            status=JobStatus.PENDING,
            total_items=total_items,
            created_at=self._clock(),
        )
        with self._lock:
            self._records[job.id] = _JobRecord(job)
        self.purge_expired()
        return job

    def get(self, job_id: str) -> Optional[IngestionJob]:
        record = self._records.get(job_id)
        return record.snapshot if record is not None else None

    def _record(self, job_id: str) -> _JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise NotFoundError(f"Unknown job: {job_id}")
        return record

    def mark_processing(self, job_id: str) -> IngestionJob:
        return self._record(job_id).update(status=JobStatus.PROCESSING)

    def record_success(self, job_id: str, doc: Document) -> IngestionJob:
        return self._record(job_id).record_section(doc, None)

    def record_failure(self, job_id: str, failure: SectionFailure) -> IngestionJob:
        return self._record(job_id).record_section(None, failure)

    def complete(self, job_id: str) -> IngestionJob:
        return self._record(job_id).update(status=JobStatus.COMPLETED, finished_at=self._clock())

    def fail(self, job_id: str, message: str) -> IngestionJob:
        return self._record(job_id).update(
            status=JobStatus.FAILED, error_message=message, finished_at=self._clock(),
        )

    def purge_expired(self) -> int:
        """Drop terminal jobs past retention, then the oldest terminal ones over ``max_jobs``."""
        cutoff = self._clock() - timedelta(seconds=self.retention_seconds)
        with self._lock:
            terminal = sorted(
                (r.snapshot for r in self._records.values() if r.snapshot.status.is_terminal),
                key=lambda j: j.finished_at or j.created_at,
            )
            doomed = [j.id for j in terminal if (j.finished_at or j.created_at) < cutoff]
            excess = len(self._records) - len(doomed) - self.max_jobs
            if excess > 0:
                expired = set(doomed)
                survivors = [j.id for j in terminal if j.id not in expired]
                doomed.extend(survivors[:excess])
            for job_id in doomed:
                del self._records[job_id]
        if doomed:
            logger.debug("Purged %d finished ingestion jobs", len(doomed))
        return len(doomed)

    def __len__(self) -> int:
        return len(self._records)


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class JobHandle:
    """The running worker of one job."""
    job_id: str
    task: "asyncio.Task[IngestionJob]"
    token: CancellationToken

    def cancel(self) -> None:
        """Request cooperative cancellation; takes effect between sections."""
        self.token.cancel()

    async def wait(self) -> IngestionJob:
        return await self.task


class IngestionJobManager:
    """
    Runs uploads through the indexing sink in the background.

    Sections of one job are indexed strictly in order; different jobs run
    concurrently on the event loop.
    """

    def __init__(
        self,
        sink: DocumentSink,
        document_factory: Optional[DocumentFactory] = None,
        registry: Optional[JobRegistry] = None,
        retention_seconds: float = 3600.0,
    ):
        self.sink = sink
        self.document_factory = document_factory or SectionDocumentFactory()
        self.registry = registry or JobRegistry(retention_seconds=retention_seconds)
        self._handles: Dict[str, JobHandle] = {}

    def create_job(self, owner_id: str, filename: str, file_type: str, total_items: int) -> IngestionJob:
        job = self.registry.create(owner_id, filename, file_type, total_items)
        logger.info("Created ingestion job %s for %s (%d sections)", job.id, filename, total_items)
        return job

    def start_processing(self, job_id: str, sections: Sequence[Section]) -> JobHandle:
        """
        Launch the background worker for ``job_id``.

        Must be called from a running event loop. Returns immediately.

        Raises:
            NotFoundError: Unknown job
            ValidationError: Section count differs from the job's total
        """
        job = self.get_status(job_id)
        if job.status is not JobStatus.PENDING or job_id in self._handles:
            raise ValidationError(f"Job {job_id} has already been started")
        if len(sections) != job.total_items:
            raise ValidationError(
                f"Job {job_id} expects {job.total_items} sections, got {len(sections)}"
            )
        token = CancellationToken()
        task = asyncio.get_running_loop().create_task(self._run(job_id, list(sections), token))
        handle = JobHandle(job_id=job_id, task=task, token=token)
        self._handles[job_id] = handle
        task.add_done_callback(lambda _: self._handles.pop(job_id, None))
        return handle

    def get_status(self, job_id: str) -> IngestionJob:
        self.registry.purge_expired()
        job = self.registry.get(job_id)
        if job is None:
            raise NotFoundError(f"Unknown job: {job_id}")
        return job

    async def _call_ready(self) -> None:
        ready = getattr(self.sink, "ensure_ready", None)
        if ready is None:
            return
        outcome = ready()
        if inspect.isawaitable(outcome):
            await outcome

    async def _run(self, job_id: str, sections: List[Section], token: CancellationToken) -> IngestionJob:
        job = self.registry.mark_processing(job_id)
        try:
            try:
                await self._call_ready()
            except Exception as e:
                logger.error("Job %s: indexing backend not ready: %s", job_id, e)
                return self.registry.fail(job_id, str(e))

            for ordinal, section in enumerate(sections):
                if token.cancelled:
                    logger.info("Job %s cancelled after %d sections", job_id, ordinal)
                    return self.registry.fail(job_id, CANCELLED_MESSAGE)
                try:
                    doc = self.document_factory(job, section, ordinal)
                    await self.sink.index_document(doc)
                except ConfigurationError as e:
                    logger.error("Job %s failed on section %d: %s", job_id, ordinal, e)
                    return self.registry.fail(job_id, str(e))
                except Exception as e:
                    logger.error("Job %s: section %d (%r) failed: %s", job_id, ordinal, section.heading, e)
                    job = self.registry.record_failure(
                        job_id, SectionFailure(ordinal=ordinal, heading=section.heading, error=str(e)),
                    )
                else:
                    job = self.registry.record_success(job_id, doc)
                logger.debug("Job %s progress %d/%d", job_id, job.processed_items, job.total_items)
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            self.registry.fail(job_id, CANCELLED_MESSAGE)
            raise

        job = self.registry.complete(job_id)
        logger.info(
            "Job %s completed: %d indexed, %d failed",
            job_id, len(job.results), len(job.failures),
        )
        return job

    async def shutdown(self) -> None:
        """Cancel outstanding workers and wait for them to settle."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.token.cancel()
            handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
            for handle in handles:
                job = self.registry.get(handle.job_id)
                if job is not None and not job.status.is_terminal:
                    self.registry.fail(handle.job_id, CANCELLED_MESSAGE)
        self._handles.clear()
