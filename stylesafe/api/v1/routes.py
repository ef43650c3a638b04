import asyncio

from fastapi import APIRouter, Depends, Query, Response, status

from stylesafe.api.v1.schemas import (
    ByteTotals,
    CancelResponse,
    ChunkSummary,
    JobCreateRequest,
    JobCreateResponse,
    JobDetail,
    JobProgress,
    JobResult,
    JobSummary,
    ManifestEntryModel,
    PreflightRequest,
    PreflightResponse,
    Problem,
    RemixRequest,
    RemixResponse,
)
from stylesafe.models.jobs import JobView
from stylesafe.services.jobs import JobManager, get_job_manager
from stylesafe.services.preflight import preflight
from stylesafe.services.remix import RemixOptions, dump_prompt_rows, generate_prompts

router = APIRouter(prefix="/api/v1")


def _job_detail(view: JobView) -> JobDetail:
    return JobDetail(
        job_id=view.id,
        status=view.status,
        prompt_count=view.prompt_count,
        variants=view.variants,
        progress=JobProgress(**view.progress),
        start_time=view.start_time.isoformat(),
        end_time=view.end_time.isoformat() if view.end_time else None,
        cancel_requested=view.cancel_requested,
        pack_digest=view.pack_digest,
        results=[JobResult(**result) for result in view.results],
        problems=[Problem.model_validate(problem) for problem in view.problems],
    )


@router.get("/health", tags=["health"])
async def health_check(manager: JobManager = Depends(get_job_manager)) -> dict:
    """API v1 health check endpoint, with provider rate-limit state when there is one."""
    provider = manager.client.provider
    health = {"status": "ok", "api_version": "v1", "provider": provider.name}
    rate_limiter = getattr(provider, "rate_limiter", None)
    if rate_limiter is not None:
        health["rate_limiter"] = rate_limiter.get_stats()
    return health


@router.post(
    "/remix",
    response_model=RemixResponse,
    tags=["remix"],
    summary="Expand image descriptors into prompt rows",
)
async def remix(
    request: RemixRequest,
    format: str = Query(default="json", pattern="^(json|jsonl)$"),
):
    """
    Deterministically expand descriptors into style-only prompt rows.

    The same descriptors, seed, and options always return the same rows.
    With `?format=jsonl` the rows are returned as JSON Lines.
    """
    options = RemixOptions(
        max_per_image=request.max_per_image,
        seed=request.seed,
        max_style_adjectives=request.max_style_adjectives,
        max_lighting_terms=request.max_lighting_terms,
    )
    rows = generate_prompts(request.descriptors, options)
    if format == "jsonl":
        return Response(content=dump_prompt_rows(rows), media_type="application/x-ndjson")
    return RemixResponse(count=len(rows), rows=rows)


@router.post(
    "/preflight",
    response_model=PreflightResponse,
    tags=["preflight"],
    summary="Check rows and references against budgets",
)
async def run_preflight(
    request: PreflightRequest,
    manager: JobManager = Depends(get_job_manager),
) -> PreflightResponse:
    """
    Report deduplicated references, chunking, and budget problems without
    submitting anything. A report with `ok: false` is still a 200 response.
    """
    budgets = manager.budgets.with_overrides(request.budgets)
    result = await asyncio.to_thread(preflight, request.rows, request.reference_pack, budgets, request.variants)
    return PreflightResponse(
        ok=result.ok,
        requires_split=result.requires_split,
        unique_refs=result.unique_refs,
        bytes=ByteTotals(before=result.bytes_before, after=result.bytes_after),
        chunks=[
            ChunkSummary(
                index=chunk.index,
                row_indices=chunk.row_indices,
                bytes=chunk.bytes,
                image_count=chunk.image_count,
                reference_ids=chunk.reference_ids,
            )
            for chunk in result.chunks
        ],
        problems=[Problem.model_validate(problem) for problem in result.problems],
    )


@router.post(
    "/jobs",
    response_model=JobCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["jobs"],
    summary="Submit a generation job",
)
async def create_job(
    request: JobCreateRequest,
    manager: JobManager = Depends(get_job_manager),
) -> JobCreateResponse:
    """
    Submit prompt rows (and an optional reference pack) for style-only
    generation.

    The request is preflighted first; budget problems are returned as a 413
    problem with a remediation hint. Accepted jobs run in the background and
    are polled via `pollUrl`.
    """
    view = await manager.submit(request)
    return JobCreateResponse(
        job_id=view.id,
        status=view.status,
        prompt_count=view.prompt_count,
        estimated_images=view.total,
        poll_url=f"{router.prefix}/jobs/{view.id}",
    )


@router.get(
    "/jobs",
    response_model=list[JobSummary],
    tags=["jobs"],
    summary="List jobs",
)
async def list_jobs(manager: JobManager = Depends(get_job_manager)) -> list[JobSummary]:
    """List all known jobs with their progress."""
    return [
        JobSummary(job_id=view.id, status=view.status, progress=JobProgress(**view.progress))
        for view in manager.list()
    ]


@router.get(
    "/jobs/{job_id}",
    response_model=JobDetail,
    tags=["jobs"],
    summary="Get status, results, and problems for a job",
)
async def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobDetail:
    """Poll a job. Never waits on a running job."""
    return _job_detail(manager.get(job_id))


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=CancelResponse,
    tags=["jobs"],
    summary="Request cancellation of a job",
)
async def cancel_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> CancelResponse:
    """
    Request cooperative cancellation. In-flight provider calls finish; the
    job then ends `failed` with a cancellation problem. Finished jobs are
    returned unchanged.
    """
    view = await manager.cancel(job_id)
    return CancelResponse(job_id=view.id, status=view.status, cancel_requested=view.cancel_requested)


@router.get(
    "/manifest",
    response_model=list[ManifestEntryModel],
    tags=["manifest"],
    summary="Most recent manifest entries",
)
async def read_manifest(
    limit: int = Query(default=100, ge=1, le=1000),
    manager: JobManager = Depends(get_job_manager),
) -> list[ManifestEntryModel]:
    entries = await asyncio.to_thread(manager.ledger.read_entries, limit)
    return [ManifestEntryModel.model_validate(entry) for entry in entries]
