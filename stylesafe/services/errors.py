"""
Error taxonomy for the generation pipeline.

Every failure that can reach a caller is a `StyleSafeError` subclass and knows
how to render itself as an RFC 7807 problem-details object. Retry behavior is
decided by the class: only `TransientProviderError` is retried by the provider
wrapper, and only `StyleCopyRejected` is retried by the style guard.
"""

from __future__ import annotations

from typing import Any, Dict, List
from uuid import uuid4


class StyleSafeError(Exception):
    """Base class for all pipeline errors surfaced to callers."""

    problem_type = "about:blank"
    title = "Pipeline error"
    status = 500

    def __init__(self, detail: str, *, title: str | None = None, status: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if title is not None:
            self.title = title
        if status is not None:
            self.status = status

    def to_problem(self) -> Dict[str, Any]:
        """Render as a problem-details dict with a fresh correlation id."""
        return {
            "type": self.problem_type,
            "title": self.title,
            "detail": self.detail,
            "status": self.status,
            "instance": str(uuid4()),
        }


class ValidationError(StyleSafeError):
    """Malformed input shape. Never retried."""

    problem_type = "urn:stylesafe:validation"
    title = "Invalid input"
    status = 400


class BudgetExceededError(StyleSafeError):
    """Request exceeds configured byte/count budgets. Never retried."""

    problem_type = "urn:stylesafe:budget-exceeded"
    title = "Budget exceeded"
    status = 413

    def __init__(
        self,
        detail: str,
        *,
        problems: List[Dict[str, Any]] | None = None,
        hint: str = "Compress references or enable splitting into smaller chunks.",
    ) -> None:
        super().__init__(detail)
        self.problems = problems or []
        self.hint = hint

    def to_problem(self) -> Dict[str, Any]:
        problem = super().to_problem()
        problem["detail"] = f"{self.detail} Remediation: {self.hint}"
        if self.problems:
            problem["problems"] = self.problems
        return problem


class TransientProviderError(StyleSafeError):
    """Rate-limited or temporarily unavailable provider. Retried with backoff."""

    problem_type = "urn:stylesafe:provider-transient"
    title = "Provider temporarily unavailable"
    status = 503

    def __init__(
        self,
        detail: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        attempts: int = 1,
        exhausted: bool = False,
    ) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.retry_after = retry_after
        self.attempts = attempts
        self.exhausted = exhausted


class PermanentProviderError(StyleSafeError):
    """Non-retryable provider rejection (bad request, auth failure)."""

    problem_type = "urn:stylesafe:provider-permanent"
    title = "Provider rejected the request"
    status = 502

    def __init__(self, detail: str, *, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.status_code = status_code


class StyleCopyRejected(StyleSafeError):
    """Generated result stayed too close to a reference after all retries."""

    problem_type = "urn:stylesafe:style-copy-rejected"
    title = "Result too similar to a reference image"
    status = 422

    def __init__(self, detail: str, *, distance: int | None = None, threshold: int | None = None) -> None:
        super().__init__(detail)
        self.distance = distance
        self.threshold = threshold


class JobNotFoundError(StyleSafeError):
    problem_type = "urn:stylesafe:job-not-found"
    title = "Job not found"
    status = 404


class JobCancelled(StyleSafeError):
    """Raised at a cancellation checkpoint once a cancel was requested."""

    problem_type = "urn:stylesafe:job-cancelled"
    title = "Job cancelled"
    status = 409


class JobStorageError(StyleSafeError):
    """Raised when a storage operation fails in a non-recoverable way."""

    problem_type = "urn:stylesafe:storage-unavailable"
    title = "Storage unavailable"
    status = 500


class InvalidTransition(RuntimeError):
    """Illegal job state-machine transition (programming error)."""
