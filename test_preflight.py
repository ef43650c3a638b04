"""
Tests for preflight validation and chunking.

Reference files are written to a temporary directory; compression is
disabled unless a test exercises it, so byte sizes are exact.
"""

import logging

import cv2
import numpy as np
import pytest

from stylesafe.api.v1.schemas import BudgetOverrides, PromptRow, ReferenceEntry, ReferencePack
from stylesafe.config import Settings
from stylesafe.services.errors import BudgetExceededError
from stylesafe.services.preflight import (
    ITEM_ENVELOPE_BYTES,
    PreflightBudgets,
    ReferenceRegistry,
    compress_reference,
    preflight,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def make_rows(count: int, source: str = "a.jpg", prompt: str = "prompt") -> list:
    return [PromptRow(prompt=f"{prompt} {i}", source_image=source, seed=i) for i in range(count)]


def write_ref(tmp_path, name: str, content: bytes) -> str:
    path = tmp_path / name
    path.write_bytes(content)
    return str(path)


def test_no_references_is_valid():
    result = preflight(make_rows(3), None, PreflightBudgets(compress=False))

    assert result.ok
    assert result.unique_refs == 0
    assert len(result.chunks) == 1
    assert result.chunks[0].row_indices == [0, 1, 2]
    assert result.requires_split is False


def test_identical_references_are_deduplicated(tmp_path):
    a = write_ref(tmp_path, "a.png", b"same-bytes" * 10)
    b = write_ref(tmp_path, "b.png", b"same-bytes" * 10)
    pack = ReferencePack(references=[ReferenceEntry(path=a), ReferenceEntry(path=b)])

    result = preflight(make_rows(2), pack, PreflightBudgets(compress=False))

    assert result.ok
    assert result.unique_refs == 1
    assert result.bytes_before == 100
    assert result.row_references[0] == result.row_references[1]
    assert len(result.row_references[0]) == 1
    assert result.row_references[0][0].startswith("ref_")
    logger.info("✓ Duplicate reference content registered once")


def test_oversized_row_is_reported_and_others_still_chunked(tmp_path):
    """Three references scoped to one source push that row over the item budget."""
    pack = ReferencePack(
        references=[
            ReferenceEntry(path=write_ref(tmp_path, f"r{i}.png", bytes([i]) * 500), source_image="big.jpg")
            for i in range(3)
        ]
    )
    rows = make_rows(2, source="small.jpg") + make_rows(1, source="big.jpg")
    budgets = PreflightBudgets(item_max_bytes=2000, compress=False)

    result = preflight(rows, pack, budgets)

    assert result.ok is False
    assert len(result.problems) == 1
    assert "Row 2" in result.problems[0]["detail"]
    assert result.problems[0]["rowIndex"] == 2
    assert result.problems[0]["status"] == 413
    chunked = [index for chunk in result.chunks for index in chunk.row_indices]
    assert chunked == [0, 1]

    with pytest.raises(BudgetExceededError) as excinfo:
        result.raise_for_problems()
    assert "Remediation" in excinfo.value.to_problem()["detail"]


def test_chunks_respect_budgets_and_order(tmp_path):
    ref = write_ref(tmp_path, "style.png", b"s" * 3000)
    pack = ReferencePack(references=[ReferenceEntry(path=ref)])
    rows = make_rows(20)
    budgets = PreflightBudgets(job_max_bytes=10_000, max_images_per_job=8, compress=False)

    result = preflight(rows, pack, budgets, variants=2)

    assert result.ok
    assert result.requires_split
    assert len(result.chunks) > 1
    for chunk in result.chunks:
        assert chunk.bytes <= budgets.job_max_bytes
        assert chunk.image_count <= budgets.max_images_per_job
        assert chunk.image_count == len(chunk.row_indices) * 2
        assert chunk.reference_ids == result.row_references[0]
    assert [index for chunk in result.chunks for index in chunk.row_indices] == list(range(20))


def test_shared_reference_counted_once_per_chunk(tmp_path):
    ref = write_ref(tmp_path, "style.png", b"s" * 1000)
    pack = ReferencePack(references=[ReferenceEntry(path=ref)])
    rows = [PromptRow(prompt="p", source_image="a.jpg") for _ in range(3)]

    result = preflight(rows, pack, PreflightBudgets(compress=False))

    assert len(result.chunks) == 1
    assert result.chunks[0].bytes == 1000 + 3 * (1 + ITEM_ENVELOPE_BYTES)


def test_max_rows_per_chunk(tmp_path):
    result = preflight(make_rows(5), None, PreflightBudgets(max_rows_per_chunk=2, compress=False))

    assert [chunk.row_indices for chunk in result.chunks] == [[0, 1], [2, 3], [4]]


def test_split_disabled_reports_problem():
    budgets = PreflightBudgets(max_rows_per_chunk=2, split=False, compress=False)
    result = preflight(make_rows(3), None, budgets)

    assert result.ok is False
    assert result.requires_split
    assert "Enable split" in result.problems[0]["detail"]
    assert "rowIndex" not in result.problems[0]


def test_too_many_references_for_one_row(tmp_path):
    pack = ReferencePack(
        references=[ReferenceEntry(path=write_ref(tmp_path, f"r{i}.png", bytes([i]) * 10)) for i in range(3)]
    )
    result = preflight(make_rows(1), pack, PreflightBudgets(max_refs_per_item=2, compress=False))

    assert result.ok is False
    assert "limit is 2" in result.problems[0]["detail"]
    assert result.problems[0]["rowIndex"] == 0
    assert result.chunks == []


def test_missing_reference_is_a_problem(tmp_path):
    pack = ReferencePack(references=[ReferenceEntry(path=str(tmp_path / "nope.png"))])
    result = preflight(make_rows(1), pack, PreflightBudgets(compress=False))

    assert result.ok is False
    assert result.problems[0]["type"] == "refs/load-error"
    assert [chunk.row_indices for chunk in result.chunks] == [[0]]


def test_relative_paths_resolve_against_base_dir(tmp_path):
    (tmp_path / "refs").mkdir()
    (tmp_path / "refs" / "a.png").write_bytes(b"abc")
    pack = ReferencePack(references=[ReferenceEntry(path="refs/a.png")])

    result = preflight(make_rows(1), pack, PreflightBudgets(compress=False), base_dir=tmp_path)
    assert result.ok
    assert result.unique_refs == 1


def test_compression_shrinks_large_reference(tmp_path):
    noise = np.random.default_rng(0).integers(0, 256, size=(600, 600, 3), dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", noise)
    assert ok
    path = write_ref(tmp_path, "noise.png", encoded.tobytes())

    registry = ReferenceRegistry(compress=True, target_bytes=50_000)
    reference = registry.register(path)

    assert reference.compressed
    assert reference.attached_size < reference.size
    assert reference.mime_type == "image/jpeg"
    assert registry.attached_size < registry.total_size


def test_undecodable_reference_keeps_original_bytes(tmp_path):
    path = write_ref(tmp_path, "blob.png", b"not an image" * 100)
    reference = ReferenceRegistry(compress=True, target_bytes=10).register(path)

    assert reference.compressed is False
    assert reference.attached_size == reference.size
    assert compress_reference(b"not an image", 10) is None


def test_budgets_from_settings_with_overrides():
    settings = Settings(job_max_bytes=1000, max_images_per_job=5)
    budgets = PreflightBudgets.from_settings(settings, BudgetOverrides(max_images_per_job=3, split=False))

    assert budgets.job_max_bytes == 1000
    assert budgets.max_images_per_job == 3
    assert budgets.split is False
