"""
Deterministic prompt remix engine.

Expands image descriptors into prompt rows. Every random choice is drawn from
a single seeded Mulberry32 generator in descriptor order, so the same
descriptors, seed, and options always reproduce the same rows byte-for-byte.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from stylesafe.api.v1.schemas import ImageDescriptor, PromptRow, TagOrigin
from stylesafe.services.errors import ValidationError
from stylesafe.services.style_guard import STYLE_ONLY_INSTRUCTION


logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 2000
MAX_SEED = 0xFFFFFFFF

STYLE_ADJECTIVES = [
    "vibrant", "muted", "saturated", "desaturated", "bold", "subtle",
    "warm", "cool", "rich", "pale", "deep", "light", "dark", "bright",
    "soft", "harsh", "smooth", "textured", "clean", "weathered",
]

LIGHTING_TERMS = [
    "natural light", "soft light", "hard light", "dramatic light",
    "golden hour", "blue hour", "overcast", "studio lighting",
    "backlighting", "side lighting", "rim lighting", "diffused light",
]

COMPOSITION_DIRECTIVES = [
    "wide shot", "close-up", "medium shot", "low angle", "high angle",
    "centered", "rule of thirds", "leading lines", "symmetrical", "dynamic",
]


class Mulberry32:
    """
    32-bit seeded generator (Mulberry32).

    All arithmetic is masked to 32 bits so the draw sequence matches the
    reference algorithm exactly.
    """

    _MASK = 0xFFFFFFFF

    def __init__(self, seed: int) -> None:
        self._state = seed & self._MASK

    @staticmethod
    def _imul(a: int, b: int) -> int:
        return (a * b) & 0xFFFFFFFF

    def next(self) -> float:
        """Return the next draw in [0, 1)."""
        self._state = (self._state + 0x6D2B79F5) & self._MASK
        t = self._state
        t = self._imul(t ^ (t >> 15), t | 1)
        t ^= (t + self._imul(t ^ (t >> 7), t | 61)) & self._MASK
        return ((t ^ (t >> 14)) & self._MASK) / 4294967296

    def choice(self, items: Sequence[str]) -> str:
        if not items:
            raise ValueError("Cannot choose from an empty sequence")
        return items[int(self.next() * len(items))]

    def shuffle(self, items: Sequence[str]) -> List[str]:
        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = int(self.next() * (i + 1))
            result[i], result[j] = result[j], result[i]
        return result


@dataclass(frozen=True, slots=True)
class RemixOptions:
    max_per_image: int = 50
    seed: int = 0
    max_style_adjectives: int = 3
    max_lighting_terms: int = 2

    def validate(self) -> None:
        """Raise ValidationError for out-of-range options."""
        _require_int("maxPerImage", self.max_per_image, 1, 100)
        _require_int("seed", self.seed, 0, MAX_SEED)
        _require_int("maxStyleAdjectives", self.max_style_adjectives, 0, 3)
        _require_int("maxLightingTerms", self.max_lighting_terms, 0, 2)


def _require_int(name: str, value: object, low: int, high: int) -> None:
    # bool is an int subclass; a flag is never a valid count or seed.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}.")
    if not low <= value <= high:
        raise ValidationError(f"{name} must be within {low}..{high}, got {value}.")


def _vary_terms(
    original: Sequence[str],
    field_name: str,
    vocabulary: Sequence[str],
    vocab_label: str,
    rng: Mulberry32,
    max_count: int,
) -> List[Tuple[str, str]]:
    """
    Keep up to `max_count` descriptor terms and top up with distinct
    vocabulary draws. Returns (term, origin) pairs.
    """
    picked: List[Tuple[str, str]] = [
        (term, f"{field_name}[{index}]") for index, term in enumerate(original[:max_count])
    ]
    used = {term for term, _ in picked}
    available = [term for term in vocabulary if term not in used]
    while len(picked) < max_count and available:
        term = rng.choice(available)
        available.remove(term)
        picked.append((term, vocab_label))
    return picked


def compose_prompt(
    subjects: Sequence[str],
    style_terms: Sequence[str],
    lighting_terms: Sequence[str],
    lens: str | None = None,
    f_number: float | None = None,
    composition: str | None = None,
) -> str:
    """Compose the prompt body (without the style-only instruction)."""
    parts: List[str] = [", ".join(subjects) if subjects else "subject"]
    if style_terms:
        parts.append(f"{', '.join(style_terms[:3])} style")
    if lighting_terms:
        parts.append(f"lighting: {', '.join(lighting_terms[:2])}")
    if lens:
        parts.append(f"lens: {lens}")
    if f_number:
        parts.append(f"f/{f_number:g}")
    if composition:
        parts.append(f"composition: {composition}")
    return "; ".join(parts)


def inject_style_only_prefix(body: str) -> str:
    """Prepend the style-only instruction verbatim; trim the body if too long."""
    prefix = f"{STYLE_ONLY_INSTRUCTION}\n\n"
    room = MAX_PROMPT_CHARS - len(prefix)
    if len(body) > room:
        logger.warning("Prompt body trimmed from %d to %d characters", len(body), room)
        body = body[:room].rstrip()
    return prefix + body


def _slug(term: str) -> str:
    return "-".join(term.split())


def _rows_for_descriptor(
    descriptor: ImageDescriptor,
    options: RemixOptions,
    rng: Mulberry32,
) -> List[PromptRow]:
    rows: List[PromptRow] = []
    camera = descriptor.camera
    lens = camera.lens if camera else None
    f_number = camera.f if camera else None

    for i in range(options.max_per_image):
        style_terms = _vary_terms(
            descriptor.style, "style", STYLE_ADJECTIVES, "vocab:style", rng, options.max_style_adjectives
        )
        lighting_terms = _vary_terms(
            descriptor.lighting, "lighting", LIGHTING_TERMS, "vocab:lighting", rng, options.max_lighting_terms
        )
        composition = rng.choice(COMPOSITION_DIRECTIVES)

        body = compose_prompt(
            descriptor.subjects,
            [term for term, _ in style_terms],
            [term for term, _ in lighting_terms],
            lens=lens,
            f_number=f_number,
            composition=composition,
        )

        provenance: List[TagOrigin] = []
        provenance.extend(
            TagOrigin(tag=f"subject:{subject}", field=f"subjects[{index}]")
            for index, subject in enumerate(descriptor.subjects)
        )
        provenance.extend(TagOrigin(tag=f"style:{term}", field=origin) for term, origin in style_terms)
        provenance.extend(
            TagOrigin(tag=f"lighting:{_slug(term)}", field=origin) for term, origin in lighting_terms
        )
        if lens:
            provenance.append(TagOrigin(tag=f"lens:{_slug(lens)}", field="camera.lens"))
        if f_number:
            provenance.append(TagOrigin(tag=f"aperture:f/{f_number:g}", field="camera.f"))
        provenance.append(TagOrigin(tag=f"composition:{_slug(composition)}", field="vocab:composition"))
        provenance.append(TagOrigin(tag=f"source:{descriptor.path}", field="path"))

        rows.append(
            PromptRow(
                prompt=inject_style_only_prefix(body),
                source_image=descriptor.path,
                tags=[origin.tag for origin in provenance],
                seed=options.seed + i,
                provenance=provenance,
            )
        )
    return rows


def generate_prompts(descriptors: Sequence[ImageDescriptor], options: RemixOptions) -> List[PromptRow]:
    """
    Expand descriptors into prompt rows.

    Invalid options raise ValidationError before any work is done. An empty
    descriptor list yields an empty row list. Descriptors that carry analyzer
    errors are skipped.
    """
    options.validate()
    started = time.perf_counter()
    rng = Mulberry32(options.seed)
    rows: List[PromptRow] = []

    for descriptor in descriptors:
        if descriptor.errors:
            logger.warning("Skipping descriptor %s with analyzer errors: %s", descriptor.path, descriptor.errors)
            continue
        rows.extend(_rows_for_descriptor(descriptor, options, rng))

    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "Remix generated %d rows from %d descriptors (seed=%d, maxPerImage=%d) in %.1fms",
        len(rows),
        len(descriptors),
        options.seed,
        options.max_per_image,
        elapsed_ms,
    )
    return rows


def normalize_for_key(text: str) -> str:
    return " ".join(text.lower().split())


def row_key(row: PromptRow) -> str:
    """
    Deterministic content hash of a prompt row.

    sha256 over the canonical JSON of the normalized prompt, source image,
    sorted tags, seed, and strength.
    """
    payload = {
        "prompt": normalize_for_key(row.prompt),
        "sourceImage": row.source_image,
        "tags": sorted(row.tags),
        "seed": row.seed,
        "strength": row.strength,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def dump_prompt_rows(rows: Iterable[PromptRow]) -> str:
    """Serialize rows as JSON Lines (one row per line, trailing newline)."""
    lines = [row.model_dump_json(by_alias=True, exclude_none=True) for row in rows]
    return "".join(f"{line}\n" for line in lines)


def write_prompt_rows(rows: Iterable[PromptRow], path: Path) -> Path:
    """Write rows as JSON Lines atomically (tmp file, then rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_text(dump_prompt_rows(rows), encoding="utf-8")
    os.replace(tmp_path, path)
    return path


def read_prompt_rows(path: Path) -> List[PromptRow]:
    """Read JSON Lines rows; any invalid line raises ValidationError."""
    rows: List[PromptRow] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                rows.append(PromptRow.model_validate_json(line))
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid prompt row on line {line_number} of {path}: {exc}") from exc
    return rows
