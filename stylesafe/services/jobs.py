from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List
from uuid import uuid4

from stylesafe.api.v1.schemas import JobCreateRequest, JobStatus, PromptRow
from stylesafe.config import Settings, get_settings
from stylesafe.models.jobs import Chunk, GenerationAttempt, Job, JobView, RegisteredReference, utcnow
from stylesafe.services.errors import (
    InvalidTransition,
    JobCancelled,
    JobNotFoundError,
    JobStorageError,
    PermanentProviderError,
    StyleSafeError,
    TransientProviderError,
    ValidationError,
)
from stylesafe.services.generation import GenerationClient, create_provider
from stylesafe.services.manifest import ManifestLedger
from stylesafe.services.preflight import PreflightBudgets, preflight
from stylesafe.services.references import pack_digest
from stylesafe.services.remix import row_key
from stylesafe.services.style_guard import StyleGuard


logger = logging.getLogger(__name__)

_TRANSITIONS = {
    JobStatus.SUBMITTED: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def transition(job: Job, new_status: JobStatus) -> None:
    """Move `job` to `new_status` or raise InvalidTransition."""
    if new_status not in _TRANSITIONS[job.status]:
        raise InvalidTransition(f"Job {job.id}: {job.status.value} -> {new_status.value} is not allowed")
    logger.info("Job %s: %s -> %s", job.id, job.status.value, new_status.value)
    job.status = new_status
    if new_status in TERMINAL_STATES:
        job.end_time = utcnow()


class CancellationToken:
    """Cooperative cancellation flag checked at chunk and attempt boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("Job was cancelled by request.")


@dataclass(slots=True)
class JobRecord:
    """A job plus everything its workflow needs, owned by the store."""

    job: Job
    rows: List[PromptRow]
    chunks: List[Chunk]
    registry: Dict[str, RegisteredReference]
    row_references: Dict[int, List[str]]
    reference_hashes: Dict[str, int]
    token: CancellationToken = field(default_factory=CancellationToken)
    view: JobView | None = None
    task: asyncio.Task | None = None

    def publish(self) -> JobView:
        self.view = self.job.snapshot()
        return self.view

    def release(self) -> None:
        """Drop workflow inputs once the job is terminal; only the view is kept."""
        self.rows = []
        self.chunks = []
        self.registry = {}
        self.row_references = {}
        self.reference_hashes = {}


class JobStore:
    """
    In-memory arena of job records keyed by id.

    Each job carries its own lock; mutations happen under it and publish an
    immutable snapshot. Reads return the latest snapshot without locking.
    """

    def __init__(self) -> None:
        self._records: Dict[str, JobRecord] = {}

    def add(self, record: JobRecord) -> JobView:
        self._records[record.job.id] = record
        return record.publish()

    def record(self, job_id: str) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise JobNotFoundError(f"Job {job_id} does not exist.")
        return record

    def get(self, job_id: str) -> JobView:
        return self.record(job_id).view

    def list(self) -> List[JobView]:
        return [record.view for record in self._records.values()]


class JobManager:
    """
    Accepts generation jobs and runs them in the background.

    Chunks of one job run with bounded concurrency; attempts inside a chunk
    run one after another. Every resolved attempt is written to the manifest
    before progress advances.
    """

    def __init__(
        self,
        client: GenerationClient,
        ledger: ManifestLedger,
        guard: StyleGuard | None = None,
        output_dir: Path = Path("storage/outputs"),
        budgets: PreflightBudgets | None = None,
        chunk_concurrency: int = 2,
    ) -> None:
        self.client = client
        self.ledger = ledger
        self.guard = guard or StyleGuard()
        self.output_dir = Path(output_dir)
        self.budgets = budgets or PreflightBudgets()
        self.chunk_concurrency = chunk_concurrency
        self.store = JobStore()

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobManager":
        client = GenerationClient.from_settings(create_provider(settings), settings)
        return cls(
            client=client,
            ledger=ManifestLedger(settings.manifest_path),
            guard=StyleGuard(
                threshold=settings.style_guard_hamming_max,
                max_retries=settings.style_guard_max_retries,
            ),
            output_dir=settings.output_dir,
            budgets=PreflightBudgets.from_settings(settings),
            chunk_concurrency=settings.chunk_concurrency,
        )

    async def submit(self, request: JobCreateRequest, base_dir: Path | None = None) -> JobView:
        """
        Validate, preflight, and start a job. Returns as soon as the job is
        recorded, in the `submitted` state.
        """
        if not request.rows:
            raise ValidationError("A job needs at least one prompt row.")
        if not 1 <= request.variants <= 3:
            raise ValidationError(f"variants must be within 1..3, got {request.variants}.")

        budgets = self.budgets.with_overrides(request.budgets)
        result = await asyncio.to_thread(
            preflight, request.rows, request.reference_pack, budgets, request.variants, base_dir
        )
        result.raise_for_problems()

        reference_hashes: Dict[str, int] = {}
        for ref_id, reference in result.registry.items():
            try:
                reference_hashes[ref_id] = await asyncio.to_thread(self.guard.hasher, reference.data)
            except ValidationError as exc:
                raise ValidationError(f"Reference {reference.path} cannot be hashed: {exc.detail}") from exc

        job = Job(
            id=str(uuid4()),
            prompt_count=len(request.rows),
            variants=request.variants,
            pack_digest=pack_digest(request.reference_pack) if request.reference_pack else None,
        )
        job.progress.total = len(request.rows) * request.variants

        await asyncio.to_thread(
            self.ledger.record_success,
            "submit",
            f"{len(request.rows)} rows",
            job.id,
            {
                "variants": request.variants,
                "chunks": len(result.chunks),
                "uniqueRefs": result.unique_refs,
                "packDigest": job.pack_digest,
            },
        )

        record = JobRecord(
            job=job,
            rows=list(request.rows),
            chunks=result.chunks,
            registry=result.registry,
            row_references=result.row_references,
            reference_hashes=reference_hashes,
        )
        view = self.store.add(record)
        record.task = asyncio.create_task(self._run(record), name=f"job-{job.id}")
        logger.info(
            "Job %s submitted: %d rows x %d variants in %d chunks",
            job.id,
            job.prompt_count,
            job.variants,
            len(result.chunks),
        )
        return view

    def get(self, job_id: str) -> JobView:
        return self.store.get(job_id)

    def list(self) -> List[JobView]:
        return self.store.list()

    async def cancel(self, job_id: str) -> JobView:
        """Request cooperative cancellation. Terminal jobs are left unchanged."""
        record = self.store.record(job_id)
        async with record.job.lock:
            if record.job.status not in TERMINAL_STATES:
                record.job.cancel_requested = True
                record.token.cancel()
                logger.info("Cancellation requested for job %s", job_id)
            return record.publish()

    async def wait(self, job_id: str) -> JobView:
        """Wait for the job's workflow to finish and return its final view."""
        record = self.store.record(job_id)
        if record.task is not None:
            await asyncio.shield(record.task)
        return record.view

    async def _run(self, record: JobRecord) -> None:
        try:
            await self._execute(record)
        finally:
            record.release()

    async def _execute(self, record: JobRecord) -> None:
        job = record.job
        try:
            async with job.lock:
                transition(job, JobStatus.RUNNING)
                job.progress.stage = "generating"
                record.publish()

            record.token.raise_if_cancelled()
            await self._run_chunks(record)
        except StyleSafeError as exc:
            await self._fail(record, exc)
            return
        except asyncio.CancelledError:
            await self._fail(record, JobCancelled("Job task was cancelled."))
            raise
        except Exception as exc:
            logger.exception("Job %s crashed", job.id)
            await self._fail(record, StyleSafeError(f"Unexpected error: {exc}"))
            return

        if job.status is JobStatus.COMPLETED:
            try:
                await asyncio.to_thread(
                    self.ledger.record_success,
                    "job",
                    job.id,
                    str(self.output_dir / job.id),
                    {"results": len(job.results), "problems": len(job.problems)},
                )
            except JobStorageError as exc:
                logger.error("Job %s completed but its summary was not recorded: %s", job.id, exc.detail)

    async def _run_chunks(self, record: JobRecord) -> None:
        semaphore = asyncio.Semaphore(self.chunk_concurrency)

        async def run_bounded(chunk: Chunk) -> None:
            async with semaphore:
                await self._run_chunk(record, chunk)

        tasks = [asyncio.create_task(run_bounded(chunk)) for chunk in record.chunks]
        if not tasks:
            return
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def _run_chunk(self, record: JobRecord, chunk: Chunk) -> None:
        logger.info(
            "Job %s chunk %d: %d rows, %d references, %d bytes",
            record.job.id,
            chunk.index,
            len(chunk.row_indices),
            len(chunk.reference_ids),
            chunk.bytes,
        )
        for row_index in chunk.row_indices:
            row = record.rows[row_index]
            ref_ids = record.row_references.get(row_index, [])
            references = [record.registry[ref_id] for ref_id in ref_ids]
            hashes = [record.reference_hashes[ref_id] for ref_id in ref_ids]

            for variant in range(record.job.variants):
                record.token.raise_if_cancelled()
                attempt = GenerationAttempt(row_index=row_index, variant=variant, row=row, reference_ids=list(ref_ids))
                try:
                    await self.guard.run_attempt(attempt, references, hashes, self.client, record.token)
                except (PermanentProviderError, TransientProviderError) as exc:
                    logger.error("Job %s row %d variant %d: %s", record.job.id, row_index, variant, exc.detail)
                    attempt.problem = exc.to_problem()
                await self._resolve(record, attempt)

    def _write_image(self, job_id: str, row_index: int, variant: int, data: bytes) -> Path:
        job_dir = self.output_dir / job_id
        out_path = job_dir / f"{row_index}_{variant}.png"
        tmp_path = job_dir / f".{row_index}_{variant}.png.tmp"
        try:
            job_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, out_path)
        except OSError as exc:
            raise JobStorageError(f"Failed to write result image {out_path}: {exc}") from exc
        return out_path

    async def _resolve(self, record: JobRecord, attempt: GenerationAttempt) -> None:
        job = record.job
        metadata = {
            "jobId": job.id,
            "rowIndex": attempt.row_index,
            "variant": attempt.variant,
            "rowKey": row_key(attempt.row),
            "retries": attempt.retries,
            "distance": attempt.distance,
            "referenceIds": attempt.reference_ids,
            "packDigest": job.pack_digest,
        }

        result = None
        if attempt.accepted:
            out_path = await asyncio.to_thread(
                self._write_image, job.id, attempt.row_index, attempt.variant, attempt.image_data
            )
            image_hash = f"{attempt.image_hash:016x}"
            await asyncio.to_thread(
                self.ledger.record_success,
                "generate",
                attempt.row.source_image,
                str(out_path),
                {**metadata, "imageHash": image_hash},
            )
            result = {
                "row_index": attempt.row_index,
                "variant": attempt.variant,
                "source_image": attempt.row.source_image,
                "image_hash": image_hash,
                "out_path": str(out_path),
                "distance": attempt.distance,
                "retries": attempt.retries,
            }
        else:
            problem = attempt.problem or StyleSafeError("Attempt resolved without a result.").to_problem()
            attempt.problem = problem
            await asyncio.to_thread(
                self.ledger.record_problem, "generate", attempt.row.source_image, problem, metadata
            )

        async with job.lock:
            if job.status in TERMINAL_STATES:
                return
            if result is not None:
                job.results.append(result)
            else:
                job.problems.append({**attempt.problem, "rowIndex": attempt.row_index, "variant": attempt.variant})
            job.progress.current += 1
            if job.progress.current == job.progress.total:
                job.progress.stage = "completed"
                transition(job, JobStatus.COMPLETED)
            record.publish()

    async def _fail(self, record: JobRecord, error: StyleSafeError) -> None:
        job = record.job
        problem = error.to_problem()
        async with job.lock:
            if job.status in TERMINAL_STATES:
                return
            job.problems.append(problem)
            job.progress.stage = "cancelled" if isinstance(error, JobCancelled) else "failed"
            transition(job, JobStatus.FAILED)
            record.publish()
        logger.error("Job %s failed: %s", job.id, error.detail)

        try:
            await asyncio.to_thread(self.ledger.record_problem, "job", job.id, problem)
        except JobStorageError as exc:
            logger.error("Could not record failure of job %s: %s", job.id, exc.detail)


_manager: JobManager | None = None


def get_job_manager() -> JobManager:
    """Return the process-wide job manager built from settings."""
    global _manager
    if _manager is None:
        _manager = JobManager.from_settings(get_settings())
    return _manager
