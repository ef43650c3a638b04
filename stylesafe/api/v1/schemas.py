from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for wire-facing models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatus(str, Enum):
    """Lifecycle states for a generation job."""

    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RefMode(str, Enum):
    """Declared usage mode of a reference pack."""

    STYLE = "style"
    PROP = "prop"
    SUBJECT = "subject"
    POSE = "pose"
    ENVIRONMENT = "environment"
    MIXED = "mixed"


class Problem(WireModel):
    """RFC 7807 problem details returned for every failure."""

    type: str = Field(default="about:blank", description="Problem type URI.")
    title: str = Field(..., description="Short, human-readable summary.")
    detail: str | None = Field(default=None, description="Occurrence-specific explanation.")
    status: int = Field(..., ge=400, le=599, description="HTTP status code.")
    instance: str = Field(..., description="Correlation UUID for this occurrence.")
    row_index: int | None = Field(default=None, description="Prompt row the problem belongs to, if any.")
    variant: int | None = None


class CameraHint(WireModel):
    lens: str | None = None
    f: float | None = Field(default=None, gt=0)


class ImageDescriptor(WireModel):
    """Visual descriptor of one source image, produced by the external analyzer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    path: str
    hash: str
    width: PositiveInt
    height: PositiveInt
    palette: List[str] = Field(default_factory=list, max_length=10)
    subjects: List[str] = Field(default_factory=list)
    style: List[str] = Field(default_factory=list)
    lighting: List[str] = Field(default_factory=list)
    camera: CameraHint | None = None
    errors: List[str] | None = None

    @field_validator("lighting", mode="before")
    @classmethod
    def _lighting_as_list(cls, value: Any) -> Any:
        # The analyzer emits either a single lighting term or a list.
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class TagOrigin(WireModel):
    """Where a prompt tag was drawn from: a descriptor field or a vocabulary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    tag: str
    field: str


class PromptRow(WireModel):
    """One generation prompt derived from a descriptor."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    prompt: str = Field(..., min_length=1, max_length=2000)
    source_image: str
    tags: List[str] = Field(default_factory=list)
    seed: int | None = None
    strength: float | None = Field(default=None, ge=0.0, le=1.0)
    provenance: List[TagOrigin] = Field(default_factory=list)


class ReferenceEntry(WireModel):
    """A single reference image with its weight and kind."""

    path: str
    weight: float = Field(default=1.0, ge=0.0, le=1.0)
    kind: RefMode = RefMode.STYLE
    source_image: str | None = Field(
        default=None,
        description="When set, the reference only attaches to rows from this source image.",
    )


class ReferencePack(WireModel):
    """Named, weighted collection of reference images plus a usage mode."""

    version: str = "1.0"
    mode: RefMode = RefMode.STYLE
    references: List[ReferenceEntry] = Field(default_factory=list)
    metadata: Dict[str, Any] | None = None


class RemixRequest(WireModel):
    descriptors: List[ImageDescriptor] = Field(default_factory=list)
    max_per_image: int = Field(default=50, description="Prompts per source image (1-100).")
    seed: int = Field(default=0, description="Deterministic generator seed.")
    max_style_adjectives: int = Field(default=3)
    max_lighting_terms: int = Field(default=2)


class RemixResponse(WireModel):
    count: int
    rows: List[PromptRow]


class BudgetOverrides(WireModel):
    """Optional per-request budget overrides; unset values use configuration."""

    job_max_bytes: PositiveInt | None = None
    item_max_bytes: PositiveInt | None = None
    max_images_per_job: PositiveInt | None = None
    max_rows_per_chunk: PositiveInt | None = None
    max_refs_per_item: int | None = Field(default=None, ge=0)
    compress: bool | None = None
    split: bool | None = None


class PreflightRequest(WireModel):
    rows: List[PromptRow]
    reference_pack: ReferencePack | None = None
    variants: int = Field(default=1, ge=1, le=3)
    budgets: BudgetOverrides | None = None


class ChunkSummary(WireModel):
    index: int
    row_indices: List[int]
    bytes: int
    image_count: int
    reference_ids: List[str]


class ByteTotals(WireModel):
    before: int
    after: int


class PreflightResponse(WireModel):
    ok: bool
    requires_split: bool
    unique_refs: int
    bytes: ByteTotals
    chunks: List[ChunkSummary]
    problems: List[Problem] = Field(default_factory=list)


class JobCreateRequest(WireModel):
    rows: List[PromptRow]
    reference_pack: ReferencePack | None = None
    variants: int = Field(default=1, ge=1, le=3)
    budgets: BudgetOverrides | None = None


class JobProgress(WireModel):
    current: int
    total: int
    stage: str


class JobResult(WireModel):
    """An accepted generation result."""

    row_index: int
    variant: int
    source_image: str
    image_hash: str
    out_path: str
    distance: int | None = None
    retries: int = 0


class JobCreateResponse(WireModel):
    """Response returned when a new job is accepted."""

    job_id: str = Field(..., description="Server-generated unique job identifier.")
    status: JobStatus = Field(
        default=JobStatus.SUBMITTED,
        description="Initial status of the job (always 'submitted' on creation).",
    )
    prompt_count: int
    estimated_images: int
    poll_url: str


class JobSummary(WireModel):
    """Lightweight view of a job suitable for listings."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    job_id: str
    status: JobStatus
    progress: JobProgress


class JobDetail(WireModel):
    """Full job status object for polling clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    job_id: str
    status: JobStatus
    prompt_count: int
    variants: int
    progress: JobProgress
    start_time: str = Field(..., description="Submission timestamp in ISO 8601 format (UTC).")
    end_time: str | None = Field(default=None, description="Terminal timestamp in ISO 8601 format (UTC).")
    cancel_requested: bool = False
    pack_digest: str | None = None
    results: List[JobResult] = Field(default_factory=list)
    problems: List[Problem] = Field(default_factory=list)


class CancelResponse(WireModel):
    job_id: str
    status: JobStatus
    cancel_requested: bool


class ManifestEntryModel(WireModel):
    id: str
    timestamp: str
    operation: str
    input: str
    output: str
    status: str
    metadata: Dict[str, Any] | None = None
