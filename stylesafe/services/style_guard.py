"""
Three-layer style-only defense.

1. Every request carries a fixed system instruction limiting references to
   style, palette, texture, and mood.
2. References are attached as plain style context only; masks, bounding
   boxes, and pose skeletons are never attached.
3. Every result is perceptually hashed and compared against every attached
   reference. A result at or below the copy threshold is rejected and the
   same prompt is resampled, sequentially, up to a bounded number of retries.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

import imagehash
from PIL import Image, UnidentifiedImageError

from stylesafe.api.v1.schemas import PromptRow
from stylesafe.models.jobs import GenerationAttempt, RegisteredReference, Verdict
from stylesafe.services.generation import GenerationBatch, GenerationClient, ReferenceAttachment
from stylesafe.services.errors import StyleCopyRejected, ValidationError


logger = logging.getLogger(__name__)

# Must never be paraphrased: audit tooling matches it exactly.
STYLE_ONLY_INSTRUCTION = (
    "Use reference images strictly for style, palette, texture, and mood. "
    "Do NOT copy subject geometry, pose, or layout. "
    "Prioritize user text for subject and composition."
)

DEFAULT_HAMMING_MAX = 15
HASH_BITS = 64

ALLOWED_ATTACHMENT_ROLES = frozenset({"style"})

COPY_KEYWORDS = (
    "exact copy", "exact same", "exactly like",
    "replicate", "duplicate", "mirror",
    "clone", "identical", "same as",
)


def perceptual_hash(image_bytes: bytes) -> int:
    """64-bit DCT perceptual hash of an encoded image, as an integer."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            phash = imagehash.phash(image.convert("RGB"))
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError(f"Cannot compute perceptual hash: {exc}") from exc
    return int(str(phash), 16)


def hamming(a: int, b: int) -> int:
    """Number of differing bits between two hashes."""
    return bin(a ^ b).count("1")


def similarity(a: int, b: int) -> int:
    """Similarity percentage (100 = identical, 0 = every bit differs)."""
    return round((1 - hamming(a, b) / HASH_BITS) * 100)


def closest_distance(generated_hash: int, reference_hashes: Sequence[int]) -> int | None:
    if not reference_hashes:
        return None
    return min(hamming(generated_hash, ref) for ref in reference_hashes)


def evaluate(generated_hash: int, reference_hashes: Sequence[int], threshold: int) -> Verdict:
    """
    Accept iff the result is strictly farther than `threshold` bits from
    every reference. No references means nothing can be copied: accept.
    """
    for index, ref_hash in enumerate(reference_hashes):
        distance = hamming(generated_hash, ref_hash)
        if distance <= threshold:
            logger.debug(
                "Reference %d at distance %d (threshold %d, similarity %d%%): reject",
                index,
                distance,
                threshold,
                similarity(generated_hash, ref_hash),
            )
            return Verdict.REJECT
    return Verdict.ACCEPT


def check_prompt_compliance(prompt: str) -> Tuple[bool, List[str]]:
    """Flag prompt phrasing that encourages copying a reference."""
    lowered = prompt.lower()
    issues = [f"Prompt may encourage direct copying ({keyword!r})" for keyword in COPY_KEYWORDS if keyword in lowered]
    return (not issues, issues)


def ensure_style_only_prompt(prompt: str) -> str:
    """Return the prompt with the style-only instruction as its verbatim prefix."""
    if prompt.startswith(STYLE_ONLY_INSTRUCTION):
        return prompt
    logger.warning("Prompt missing style-only instruction; prepending it")
    return f"{STYLE_ONLY_INSTRUCTION}\n\n{prompt}"


def build_guarded_batch(
    row: PromptRow,
    references: Sequence[RegisteredReference],
    seed: int | None,
) -> GenerationBatch:
    """Wrap one row in a single-image, style-only generation request."""
    guarded_row = row
    prompt = ensure_style_only_prompt(row.prompt)
    if prompt != row.prompt:
        guarded_row = row.model_copy(update={"prompt": prompt[:2000]})

    attachments = tuple(
        ReferenceAttachment(id=ref.id, data=ref.data, mime_type=ref.mime_type, weight=ref.weight, role="style")
        for ref in references
    )
    batch = GenerationBatch(
        rows=(guarded_row,),
        variants=1,
        system_instruction=STYLE_ONLY_INSTRUCTION,
        attachments=attachments,
        seed=seed,
        style_only=True,
    )
    assert_attachment_discipline(batch)
    return batch


def assert_attachment_discipline(batch: GenerationBatch) -> None:
    """Reject any request that is not style-only or attaches non-style context."""
    if not batch.style_only:
        raise ValidationError("Generation requests must be style-only.")
    if batch.system_instruction != STYLE_ONLY_INSTRUCTION:
        raise ValidationError("Generation requests must carry the unmodified style-only instruction.")
    for attachment in batch.attachments:
        if attachment.role not in ALLOWED_ATTACHMENT_ROLES:
            raise ValidationError(
                f"Attachment {attachment.id} has role {attachment.role!r}; only style context may be attached."
            )


def sampling_seed(row: PromptRow, variant: int, attempt: int) -> int:
    """New sampling seed for each (variant, attempt) of a row, deterministic per row."""
    return ((row.seed or 0) + variant * 1000 + attempt * 7919) & 0xFFFFFFFF


@dataclass(slots=True)
class StyleGuard:
    """
    Runs generation attempts under the style-only contract.

    `hasher` maps encoded image bytes to a 64-bit perceptual hash; it is
    injectable so callers can supply precomputed or alternative hashes.
    """

    threshold: int = DEFAULT_HAMMING_MAX
    max_retries: int = 2
    hasher: Callable[[bytes], int] = perceptual_hash

    def reference_hashes(self, references: Sequence[RegisteredReference]) -> List[int]:
        return [self.hasher(ref.data) for ref in references]

    async def run_attempt(
        self,
        attempt: GenerationAttempt,
        references: Sequence[RegisteredReference],
        reference_hashes: Sequence[int],
        client: GenerationClient,
        token=None,
    ) -> GenerationAttempt:
        """
        Generate one (row, variant) result and validate it.

        Provider errors propagate to the caller. Style rejections are retried
        sequentially with new sampling; once retries are exhausted the
        attempt resolves with a StyleCopyRejected problem and no image.
        """
        compliant, issues = check_prompt_compliance(attempt.row.prompt)
        if not compliant:
            logger.warning("Row %d: %s", attempt.row_index, issues[0])

        closest: int | None = None
        unverified: List[str] = []
        provider_problems: List[dict] = []
        for try_number in range(self.max_retries + 1):
            if token is not None:
                token.raise_if_cancelled()

            seed = sampling_seed(attempt.row, attempt.variant, try_number)
            batch = build_guarded_batch(attempt.row, references, seed)
            fetched = await client.generate(batch)
            attempt.retries = try_number

            if not fetched.results:
                logger.warning("Row %d variant %d: provider returned no image", attempt.row_index, attempt.variant)
                provider_problems.extend(fetched.problems)
                details = [str(problem.get("detail") or problem.get("title")) for problem in fetched.problems]
                unverified.append("; ".join(details) or "provider returned no image")
                continue

            image = fetched.results[0]
            try:
                generated_hash = await asyncio.to_thread(self.hasher, image.data)
            except ValidationError as exc:
                # Unverifiable output is treated as a copy.
                logger.warning("Row %d variant %d: %s", attempt.row_index, attempt.variant, exc.detail)
                unverified.append(exc.detail)
                continue

            distance = closest_distance(generated_hash, reference_hashes)
            if distance is not None:
                closest = distance if closest is None else min(closest, distance)

            if evaluate(generated_hash, reference_hashes, self.threshold) is Verdict.ACCEPT:
                attempt.verdict = Verdict.ACCEPT
                attempt.image_hash = generated_hash
                attempt.image_data = image.data
                attempt.distance = distance
                logger.info(
                    "Row %d variant %d accepted after %d retries (closest distance %s, threshold %d)",
                    attempt.row_index,
                    attempt.variant,
                    try_number,
                    distance,
                    self.threshold,
                )
                return attempt

            logger.warning(
                "Row %d variant %d rejected: distance %s <= threshold %d (try %d/%d)",
                attempt.row_index,
                attempt.variant,
                distance,
                self.threshold,
                try_number + 1,
                self.max_retries + 1,
            )

        attempt.verdict = Verdict.REJECT
        attempt.distance = closest
        if closest is None and unverified:
            reasons = "; ".join(unverified)
            detail = (
                f"Row {attempt.row_index} variant {attempt.variant} produced no verifiable image "
                f"after {self.max_retries + 1} attempts: {reasons}"
            )
        else:
            detail = (
                f"Row {attempt.row_index} variant {attempt.variant} produced no acceptable result "
                f"after {self.max_retries + 1} attempts (closest distance {closest}, threshold {self.threshold})."
            )
        attempt.problem = StyleCopyRejected(detail, distance=closest, threshold=self.threshold).to_problem()
        if provider_problems:
            attempt.problem["providerProblems"] = provider_problems
        return attempt
