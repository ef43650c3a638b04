from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Tuple

from stylesafe.api.v1.schemas import JobStatus, PromptRow


def utcnow() -> datetime:
    """Return an explicit, timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class Verdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(slots=True, frozen=True)
class RegisteredReference:
    """
    A reference image after content-hash deduplication.

    `data` holds the bytes that are actually attached to requests (compressed
    when preflight compression applied, original otherwise).
    """

    id: str
    hash: str
    path: str
    size: int
    attached_size: int
    data: bytes = field(repr=False)
    weight: float = 1.0
    source_image: str | None = None
    compressed: bool = False
    mime_type: str = "image/png"


@dataclass(slots=True)
class Chunk:
    """Budget-conformant, order-preserving slice of a request's rows."""

    index: int
    row_indices: List[int] = field(default_factory=list)
    reference_ids: List[str] = field(default_factory=list)
    bytes: int = 0
    image_count: int = 0


@dataclass(slots=True)
class GenerationAttempt:
    """
    One (row, variant) pair moving through the style guard.

    Resolves to exactly one of: accepted (with `image_hash` and `image_data`)
    or a recorded `problem`.
    """

    row_index: int
    variant: int
    row: PromptRow
    reference_ids: List[str] = field(default_factory=list)
    retries: int = 0
    verdict: Verdict | None = None
    image_hash: int | None = None
    image_data: bytes | None = field(default=None, repr=False)
    distance: int | None = None
    problem: Dict[str, Any] | None = None

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPT and self.problem is None


@dataclass(slots=True)
class JobProgress:
    current: int = 0
    total: int = 0
    stage: str = "initializing"


@dataclass(slots=True, frozen=True)
class JobView:
    """
    Immutable snapshot of a job, published after every mutation.

    Poll requests read the latest view without taking the job lock.
    """

    id: str
    status: JobStatus
    prompt_count: int
    variants: int
    current: int
    total: int
    stage: str
    start_time: datetime
    end_time: datetime | None
    cancel_requested: bool
    pack_digest: str | None
    results: Tuple[Dict[str, Any], ...]
    problems: Tuple[Dict[str, Any], ...]

    @property
    def progress(self) -> Dict[str, Any]:
        return {"current": self.current, "total": self.total, "stage": self.stage}


@dataclass(slots=True)
class Job:
    """
    Internal, mutable job state.

    Only the job manager mutates it, always while holding `lock`. This is
    intentionally separate from API schemas so internal fields can evolve
    without breaking the API.
    """

    id: str
    prompt_count: int
    variants: int
    status: JobStatus = JobStatus.SUBMITTED
    progress: JobProgress = field(default_factory=JobProgress)
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    problems: List[Dict[str, Any]] = field(default_factory=list)
    pack_digest: str | None = None
    cancel_requested: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def snapshot(self) -> JobView:
        return JobView(
            id=self.id,
            status=self.status,
            prompt_count=self.prompt_count,
            variants=self.variants,
            current=self.progress.current,
            total=self.progress.total,
            stage=self.progress.stage,
            start_time=self.start_time,
            end_time=self.end_time,
            cancel_requested=self.cancel_requested,
            pack_digest=self.pack_digest,
            results=tuple(dict(item) for item in self.results),
            problems=tuple(dict(item) for item in self.problems),
        )
