"""
Preflight validation and chunking.

Deduplicates reference images by content hash, optionally compresses large
ones, and packs prompt rows into ordered chunks that respect the byte and
image-count budgets. Rows that can never fit are reported as problems without
blocking the remaining rows.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Sequence
from uuid import uuid4

import cv2
import numpy as np

from stylesafe.api.v1.schemas import BudgetOverrides, PromptRow, ReferencePack
from stylesafe.config import Settings
from stylesafe.models.jobs import Chunk, RegisteredReference
from stylesafe.services.errors import BudgetExceededError, ValidationError
from stylesafe.services.references import content_hash, references_for_row, style_entries


logger = logging.getLogger(__name__)

# Fixed per-row allowance for request framing on top of the prompt bytes.
ITEM_ENVELOPE_BYTES = 1024
MAX_REFERENCE_SIDE = 1024
JPEG_QUALITIES = (75, 60, 45)

SPLIT_HINT = "Enable split or compress references."


@dataclass(frozen=True, slots=True)
class PreflightBudgets:
    job_max_bytes: int = 200 * 1024 * 1024
    item_max_bytes: int = 8 * 1024 * 1024
    max_images_per_job: int = 2000
    max_rows_per_chunk: int = 500
    max_refs_per_item: int = 8
    compress: bool = True
    split: bool = True
    ref_target_bytes: int = 1024 * 1024

    @classmethod
    def from_settings(cls, settings: Settings, overrides: BudgetOverrides | None = None) -> "PreflightBudgets":
        budgets = cls(
            job_max_bytes=settings.job_max_bytes,
            item_max_bytes=settings.item_max_bytes,
            max_images_per_job=settings.max_images_per_job,
            max_rows_per_chunk=settings.max_rows_per_chunk,
            max_refs_per_item=settings.max_refs_per_item,
            compress=settings.preflight_compress,
            split=settings.preflight_split,
            ref_target_bytes=settings.ref_target_bytes,
        )
        return budgets.with_overrides(overrides)

    def with_overrides(self, overrides: BudgetOverrides | None) -> "PreflightBudgets":
        if overrides is None:
            return self
        return replace(self, **overrides.model_dump(exclude_none=True))


@dataclass(slots=True)
class PreflightResult:
    ok: bool
    chunks: List[Chunk]
    unique_refs: int
    bytes_before: int
    bytes_after: int
    requires_split: bool
    problems: List[Dict[str, Any]] = field(default_factory=list)
    registry: Dict[str, RegisteredReference] = field(default_factory=dict)
    row_references: Dict[int, List[str]] = field(default_factory=dict)

    def raise_for_problems(self) -> None:
        """Raise BudgetExceededError carrying every problem when not ok."""
        if self.ok:
            return
        details = "; ".join(problem["detail"] for problem in self.problems)
        raise BudgetExceededError(
            f"Preflight found {len(self.problems)} problem(s): {details}",
            problems=list(self.problems),
        )


def _problem(
    detail: str,
    title: str = "Budget exceeded",
    status: int = BudgetExceededError.status,
    problem_type: str = BudgetExceededError.problem_type,
    row_index: int | None = None,
) -> Dict[str, Any]:
    problem = {"type": problem_type, "title": title, "detail": detail, "status": status, "instance": str(uuid4())}
    if row_index is not None:
        problem["rowIndex"] = row_index
    return problem


def compress_reference(data: bytes, target_bytes: int, max_side: int = MAX_REFERENCE_SIDE) -> bytes | None:
    """
    Downscale to `max_side` on the long edge and re-encode as JPEG, stepping
    quality down until the result fits `target_bytes`.

    Returns None when the bytes cannot be decoded as an image; otherwise the
    smallest encoding tried.
    """
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        return None

    height, width = image.shape[:2]
    scale = min(1.0, max_side / max(height, width))
    if scale < 1.0:
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        image = cv2.resize(image, size, interpolation=cv2.INTER_AREA)

    encoded_bytes: bytes | None = None
    for quality in JPEG_QUALITIES:
        ok, encoded = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
        if not ok:
            continue
        encoded_bytes = encoded.tobytes()
        if len(encoded_bytes) <= target_bytes:
            break
    return encoded_bytes


class ReferenceRegistry:
    """Content-addressed store of the references used by one request."""

    def __init__(self, compress: bool = True, target_bytes: int = 1024 * 1024, base_dir: Path | None = None) -> None:
        self.compress = compress
        self.target_bytes = target_bytes
        self.base_dir = base_dir
        self._by_hash: Dict[str, RegisteredReference] = {}
        self._by_path: Dict[str, str] = {}

    def _resolve(self, path: str) -> Path:
        resolved = Path(path)
        if self.base_dir is not None and not resolved.is_absolute():
            resolved = self.base_dir / resolved
        return resolved

    def register(self, path: str, weight: float = 1.0, source_image: str | None = None) -> RegisteredReference:
        """Read, hash, and (when needed) compress a reference; duplicates reuse the first entry."""
        if path in self._by_path:
            return self._by_hash[self._by_path[path]]

        resolved = self._resolve(path)
        try:
            data = resolved.read_bytes()
        except OSError as exc:
            raise ValidationError(f"Reference {path} is not readable: {exc}") from exc

        digest = content_hash(data)
        self._by_path[path] = digest
        existing = self._by_hash.get(digest)
        if existing is not None:
            logger.debug("Reference %s duplicates %s", path, existing.path)
            return existing

        mime_type = mimetypes.guess_type(resolved.name)[0] or "application/octet-stream"
        attached = data
        compressed = False
        if self.compress and len(data) > self.target_bytes:
            smaller = compress_reference(data, self.target_bytes)
            if smaller is None:
                logger.warning("Reference %s could not be decoded for compression; keeping original bytes", path)
            elif len(smaller) < len(data):
                attached = smaller
                compressed = True
                mime_type = "image/jpeg"
                logger.info("Compressed reference %s from %d to %d bytes", path, len(data), len(smaller))

        reference = RegisteredReference(
            id=f"ref_{digest[:12]}",
            hash=digest,
            path=path,
            size=len(data),
            attached_size=len(attached),
            data=attached,
            weight=weight,
            source_image=source_image,
            compressed=compressed,
            mime_type=mime_type,
        )
        self._by_hash[digest] = reference
        return reference

    def by_id(self) -> Dict[str, RegisteredReference]:
        return {reference.id: reference for reference in self._by_hash.values()}

    @property
    def total_size(self) -> int:
        return sum(reference.size for reference in self._by_hash.values())

    @property
    def attached_size(self) -> int:
        return sum(reference.attached_size for reference in self._by_hash.values())


def row_envelope(row: PromptRow) -> int:
    return len(row.prompt.encode("utf-8")) + ITEM_ENVELOPE_BYTES


def preflight(
    rows: Sequence[PromptRow],
    reference_pack: ReferencePack | None = None,
    budgets: PreflightBudgets | None = None,
    variants: int = 1,
    base_dir: Path | None = None,
) -> PreflightResult:
    """
    Validate rows and references against `budgets` and pack rows into chunks.

    `ok` is true iff no problems were found. Rows with problems are left out
    of every chunk; the remaining rows are still chunked in order.
    """
    budgets = budgets or PreflightBudgets()
    problems: List[Dict[str, Any]] = []

    registry = ReferenceRegistry(compress=budgets.compress, target_bytes=budgets.ref_target_bytes, base_dir=base_dir)
    resolved_entries = []
    path_ids: Dict[str, str] = {}
    for entry in style_entries(reference_pack):
        try:
            reference = registry.register(entry.path, weight=entry.weight, source_image=entry.source_image)
        except ValidationError as exc:
            problems.append(
                _problem(exc.detail, title="Reference unavailable", status=400, problem_type="refs/load-error")
            )
            continue
        resolved_entries.append(entry)
        path_ids[entry.path] = reference.id

    references = registry.by_id()
    row_references: Dict[int, List[str]] = {}
    eligible: List[int] = []

    for index, row in enumerate(rows):
        ref_ids: List[str] = []
        for entry in references_for_row(resolved_entries, row):
            ref_id = path_ids[entry.path]
            if ref_id not in ref_ids:
                ref_ids.append(ref_id)
        row_references[index] = ref_ids

        item_size = row_envelope(row) + sum(references[ref_id].attached_size for ref_id in ref_ids)
        if len(ref_ids) > budgets.max_refs_per_item:
            problems.append(
                _problem(
                    f"Row {index} attaches {len(ref_ids)} references; the limit is {budgets.max_refs_per_item}.",
                    title="Too many references",
                    row_index=index,
                )
            )
        elif item_size > budgets.item_max_bytes:
            problems.append(
                _problem(
                    f"Row {index} needs {item_size} bytes; the item limit is {budgets.item_max_bytes} bytes.",
                    title="Item too large",
                    row_index=index,
                )
            )
        elif item_size > budgets.job_max_bytes or variants > budgets.max_images_per_job:
            problems.append(
                _problem(
                    f"Row {index} alone exceeds the job budget "
                    f"({item_size} bytes, {variants} images).",
                    title="Item exceeds job budget",
                    row_index=index,
                )
            )
        else:
            eligible.append(index)

    chunks = _pack_chunks(rows, eligible, row_references, references, budgets, variants)

    requires_split = len(chunks) > 1
    if requires_split and not budgets.split:
        problems.append(
            _problem(
                f"Request needs {len(chunks)} chunks but splitting is disabled. Remediation: {SPLIT_HINT}",
                title="Split required",
            )
        )

    result = PreflightResult(
        ok=not problems,
        chunks=chunks,
        unique_refs=len(references),
        bytes_before=registry.total_size,
        bytes_after=registry.attached_size,
        requires_split=requires_split,
        problems=problems,
        registry=references,
        row_references=row_references,
    )
    logger.info(
        "Preflight: %d rows, %d unique refs (%d -> %d bytes), %d chunks, %d problems",
        len(rows),
        result.unique_refs,
        result.bytes_before,
        result.bytes_after,
        len(chunks),
        len(problems),
    )
    return result


def _pack_chunks(
    rows: Sequence[PromptRow],
    eligible: Sequence[int],
    row_references: Dict[int, List[str]],
    references: Dict[str, RegisteredReference],
    budgets: PreflightBudgets,
    variants: int,
) -> List[Chunk]:
    """Greedy, order-preserving bin-pack; shared references count once per chunk."""
    chunks: List[Chunk] = []
    current: Chunk | None = None

    for index in eligible:
        envelope = row_envelope(rows[index])
        if current is not None:
            new_refs = [ref_id for ref_id in row_references[index] if ref_id not in current.reference_ids]
            projected_bytes = current.bytes + envelope + sum(references[ref_id].attached_size for ref_id in new_refs)
            if (
                projected_bytes > budgets.job_max_bytes
                or current.image_count + variants > budgets.max_images_per_job
                or len(current.row_indices) >= budgets.max_rows_per_chunk
            ):
                current = None

        if current is None:
            current = Chunk(index=len(chunks))
            chunks.append(current)

        for ref_id in row_references[index]:
            if ref_id not in current.reference_ids:
                current.reference_ids.append(ref_id)
                current.bytes += references[ref_id].attached_size
        current.row_indices.append(index)
        current.bytes += envelope
        current.image_count += variants

    return chunks
