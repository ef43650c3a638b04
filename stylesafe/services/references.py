from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence

import yaml
from pydantic import ValidationError as PydanticValidationError

from stylesafe.api.v1.schemas import PromptRow, RefMode, ReferenceEntry, ReferencePack
from stylesafe.services.errors import ValidationError


logger = logging.getLogger(__name__)

# Per-kind shorthand sections accepted in pack files, mapped to the entry kind.
_KIND_SECTIONS = {
    "style": RefMode.STYLE,
    "props": RefMode.PROP,
    "subject": RefMode.SUBJECT,
    "pose": RefMode.POSE,
    "environment": RefMode.ENVIRONMENT,
}


class ReferenceLoadError(ValidationError):
    problem_type = "refs/load-error"
    title = "Reference pack load failed"


def content_hash(data: bytes) -> str:
    """sha256 hex digest of raw file content."""
    return hashlib.sha256(data).hexdigest()


def _section_entries(section: str, value: Any) -> List[Dict[str, Any]]:
    kind = _KIND_SECTIONS[section].value
    entries: List[Dict[str, Any]] = []
    if isinstance(value, dict):
        # {"red_umbrella": "umbrella.jpg"} or {"alex": {"face": "alex.jpg"}}
        for label, item in value.items():
            if isinstance(item, str):
                entries.append({"path": item, "kind": kind, "label": label})
            elif isinstance(item, dict):
                path = item.get("path") or item.get("face")
                entries.append({**item, "path": path, "kind": kind, "label": label})
    elif isinstance(value, list):
        for item in value:
            if isinstance(item, str):
                entries.append({"path": item, "kind": kind})
            elif isinstance(item, dict):
                path = item.get("path") or item.get("face")
                entries.append({**item, "path": path, "kind": kind})
    else:
        raise ReferenceLoadError(f"Section {section!r} must be a list or a mapping.")
    return entries


def normalize_pack_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fold per-kind shorthand sections into a flat `references` list.

    Only keys understood by ReferenceEntry survive; labels, face names, and
    other descriptive extras are dropped.
    """
    allowed = {"path", "weight", "kind", "source_image", "sourceImage"}
    normalized: Dict[str, Any] = {
        key: value for key, value in data.items() if key not in _KIND_SECTIONS and key != "references"
    }
    references: List[Dict[str, Any]] = []
    for item in data.get("references") or []:
        references.append({"path": item} if isinstance(item, str) else item)

    kinds_seen = set()
    for section in _KIND_SECTIONS:
        if data.get(section):
            kinds_seen.add(section)
            for entry in _section_entries(section, data[section]):
                references.append({key: value for key, value in entry.items() if key in allowed})

    normalized["references"] = references
    if "mode" not in normalized and kinds_seen:
        normalized["mode"] = _KIND_SECTIONS[kinds_seen.pop()].value if len(kinds_seen) == 1 else RefMode.MIXED.value
    return normalized


def parse_reference_pack(data: Any) -> ReferencePack:
    if not isinstance(data, dict):
        raise ReferenceLoadError("Reference pack must be a mapping.")
    try:
        return ReferencePack.model_validate(normalize_pack_data(data))
    except PydanticValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise ReferenceLoadError(f"Invalid reference pack: {errors}") from exc


def load_reference_pack(path: str | Path) -> ReferencePack:
    """Load a reference pack from a .json, .yaml, or .yml file."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ReferenceLoadError(f"Cannot read reference pack {path}: {exc}") from exc

    if not content.strip():
        raise ReferenceLoadError(f"Reference pack file {path} is empty.")

    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        elif suffix == ".json":
            data = json.loads(content)
        else:
            raise ReferenceLoadError(f"Unsupported reference pack format: {suffix or path.name}. Use .json or .yaml.")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ReferenceLoadError(f"Invalid content in reference pack {path}: {exc}") from exc

    pack = parse_reference_pack(data)
    logger.info(
        "Loaded reference pack %s (mode=%s, references=%d, digest=%s)",
        path,
        pack.mode.value,
        len(pack.references),
        pack_digest(pack),
    )
    return pack


def pack_digest(pack: ReferencePack) -> str:
    """Short stable digest identifying a pack in the manifest."""
    stable = json.dumps(
        {
            "version": pack.version,
            "mode": pack.mode.value,
            "references": sorted(
                f"{entry.kind.value}:{entry.path}:{entry.source_image or '*'}" for entry in pack.references
            ),
        },
        sort_keys=True,
    )
    return hashlib.sha256(stable.encode("utf-8")).hexdigest()[:12]


def style_entries(pack: ReferencePack | None) -> List[ReferenceEntry]:
    """
    Entries usable for style-only generation, in pack order.

    Non-style kinds (props, subjects, poses, environments) would ask the model
    to reproduce content, so they are left out with a warning.
    """
    if pack is None:
        return []
    kept = [entry for entry in pack.references if entry.kind is RefMode.STYLE]
    ignored = len(pack.references) - len(kept)
    if ignored:
        logger.warning(
            "Ignoring %d non-style reference(s) in %s-mode pack; generation is style-only",
            ignored,
            pack.mode.value,
        )
    return kept


def references_for_row(entries: Sequence[ReferenceEntry], row: PromptRow) -> List[ReferenceEntry]:
    """Entries that attach to `row`: unscoped ones plus those scoped to its source image."""
    return [entry for entry in entries if entry.source_image is None or entry.source_image == row.source_image]
