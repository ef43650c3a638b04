"""
Generation provider boundary.

Defines the submit/poll/fetch/cancel contract every provider satisfies, the
retrying `GenerationClient` the job manager talks to, and a deterministic
mock provider used when no provider token is configured and in tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Protocol, Tuple
from uuid import uuid4

import cv2
import numpy as np

from stylesafe.api.v1.schemas import PromptRow
from stylesafe.config import Settings
from stylesafe.services.errors import PermanentProviderError, TransientProviderError
from stylesafe.services.retry import RetryPolicy, call_with_retries


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReferenceAttachment:
    """A reference image attached to a request as plain style context."""

    id: str
    data: bytes = field(repr=False)
    mime_type: str = "image/png"
    weight: float = 1.0
    role: str = "style"


@dataclass(frozen=True, slots=True)
class GenerationBatch:
    rows: Tuple[PromptRow, ...]
    variants: int
    system_instruction: str
    attachments: Tuple[ReferenceAttachment, ...] = ()
    seed: int | None = None
    style_only: bool = True


@dataclass(frozen=True, slots=True)
class SubmitReceipt:
    job_id: str
    estimated_count: int


@dataclass(frozen=True, slots=True)
class ProviderStatus:
    status: str  # pending | running | succeeded | failed
    completed: int = 0
    total: int = 0
    errors: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class GeneratedImage:
    id: str
    prompt: str
    data: bytes = field(repr=False)
    seed: int | None = None


@dataclass(slots=True)
class FetchResult:
    results: List[GeneratedImage] = field(default_factory=list)
    problems: List[Dict[str, object]] = field(default_factory=list)


class GenerationProvider(Protocol):
    """Uniform provider contract. Implementations are synchronous and may block."""

    name: str

    def submit(self, batch: GenerationBatch) -> SubmitReceipt: ...

    def poll(self, job_id: str) -> ProviderStatus: ...

    def fetch(self, job_id: str) -> FetchResult: ...

    def cancel(self, job_id: str) -> str: ...


class GenerationClient:
    """
    Async facade over a provider.

    Every provider call runs in a worker thread behind the retry wrapper. The
    number of generations in flight across all jobs is bounded by a shared
    semaphore.
    """

    def __init__(
        self,
        provider: GenerationProvider,
        policy: RetryPolicy | None = None,
        max_in_flight: int = 2,
        poll_interval: float = 2.0,
        max_wait: float = 120.0,
        sleep: Callable[[float], object] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._sleep = sleep
        self._in_flight = asyncio.Semaphore(max_in_flight)

    @classmethod
    def from_settings(cls, provider: GenerationProvider, settings: Settings) -> "GenerationClient":
        return cls(
            provider,
            policy=RetryPolicy(max_retries=settings.provider_max_retries, base_delay=settings.provider_base_delay),
            max_in_flight=settings.max_in_flight,
            poll_interval=settings.poll_interval_seconds,
            max_wait=settings.poll_max_wait_seconds,
        )

    async def _call(self, operation: str, method: Callable, *args):
        async def attempt():
            return await asyncio.to_thread(method, *args)

        return await call_with_retries(
            f"{self.provider.name}.{operation}", attempt, self.policy, sleep=self._sleep
        )

    async def submit(self, batch: GenerationBatch) -> SubmitReceipt:
        return await self._call("submit", self.provider.submit, batch)

    async def poll(self, job_id: str) -> ProviderStatus:
        return await self._call("poll", self.provider.poll, job_id)

    async def fetch(self, job_id: str) -> FetchResult:
        return await self._call("fetch", self.provider.fetch, job_id)

    async def cancel(self, job_id: str) -> str:
        return await self._call("cancel", self.provider.cancel, job_id)

    async def generate(self, batch: GenerationBatch) -> FetchResult:
        """Submit a batch, wait for it to finish, and fetch its results."""
        async with self._in_flight:
            receipt = await self.submit(batch)
            status = await self._wait_for_completion(receipt.job_id)
            if status.status == "failed":
                detail = "; ".join(status.errors) or "provider reported failure"
                raise PermanentProviderError(f"Provider job {receipt.job_id} failed: {detail}")
            return await self.fetch(receipt.job_id)

    async def _wait_for_completion(self, job_id: str) -> ProviderStatus:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            status = await self.poll(job_id)
            if status.status in ("succeeded", "failed"):
                return status
            if loop.time() - started >= self.max_wait:
                logger.error("Provider job %s timed out after %.0fs", job_id, self.max_wait)
                try:
                    await self.cancel(job_id)
                except (TransientProviderError, PermanentProviderError) as exc:
                    logger.warning("Cancel after timeout failed for %s: %s", job_id, exc.detail)
                raise TransientProviderError(
                    f"Provider job {job_id} did not finish within {self.max_wait:.0f}s",
                    exhausted=True,
                )
            await self._sleep(self.poll_interval)


def render_mock_image(prompt: str, seed: int, width: int = 256, height: int = 256) -> bytes:
    """
    Render a deterministic gradient PNG from a prompt and seed.

    The base color comes from the prompt hash; the gradient mixes it toward
    its complement across both axes.
    """
    digest = hashlib.sha256(f"{prompt}{seed}".encode("utf-8")).hexdigest()
    r, g, b = (int(digest[i : i + 2], 16) for i in (0, 2, 4))

    gx = np.linspace(0.0, 1.0, width, dtype=np.float32)[np.newaxis, :]
    gy = np.linspace(0.0, 1.0, height, dtype=np.float32)[:, np.newaxis]
    red = r * (1 - gx) + (255 - r) * gx + np.zeros_like(gy)
    green = g * (1 - gy) + (255 - g) * gy + np.zeros_like(gx)
    blue = b * (gx + gy) / 2
    rgb = np.stack([red, green, blue], axis=-1).clip(0, 255).astype(np.uint8)

    ok, encoded = cv2.imencode(".png", cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))
    if not ok:
        raise RuntimeError("Failed to encode mock image")
    return encoded.tobytes()


class MockGenerationProvider:
    """
    In-memory provider that finishes every job immediately.

    `failures` is a queue of exceptions raised by successive `submit` calls
    (None entries let that call succeed), for exercising retry behavior.
    """

    name = "mock"

    def __init__(
        self,
        width: int = 256,
        height: int = 256,
        failures: Iterable[Exception | None] | None = None,
        image_factory: Callable[[PromptRow, int], bytes] | None = None,
    ) -> None:
        self.width = width
        self.height = height
        self._failures = deque(failures or [])
        self._image_factory = image_factory
        self._jobs: Dict[str, FetchResult] = {}
        self._lock = threading.Lock()
        self.submitted: List[GenerationBatch] = []

    def submit(self, batch: GenerationBatch) -> SubmitReceipt:
        with self._lock:
            if self._failures:
                failure = self._failures.popleft()
                if failure is not None:
                    raise failure
            self.submitted.append(batch)

        results: List[GeneratedImage] = []
        for row in batch.rows:
            for variant in range(batch.variants):
                seed = (batch.seed if batch.seed is not None else row.seed or 0) + variant
                if self._image_factory is not None:
                    data = self._image_factory(row, seed)
                else:
                    data = render_mock_image(row.prompt, seed, self.width, self.height)
                results.append(GeneratedImage(id=str(uuid4()), prompt=row.prompt, data=data, seed=seed))

        job_id = f"mock-{uuid4().hex[:12]}"
        with self._lock:
            self._jobs[job_id] = FetchResult(results=results)
        logger.debug("Mock provider accepted %s with %d images", job_id, len(results))
        return SubmitReceipt(job_id=job_id, estimated_count=len(results))

    def poll(self, job_id: str) -> ProviderStatus:
        with self._lock:
            result = self._jobs.get(job_id)
        if result is None:
            raise PermanentProviderError(f"Unknown provider job {job_id}", status_code=404)
        count = len(result.results)
        return ProviderStatus(status="succeeded", completed=count, total=count)

    def fetch(self, job_id: str) -> FetchResult:
        with self._lock:
            result = self._jobs.get(job_id)
        if result is None:
            raise PermanentProviderError(f"Unknown provider job {job_id}", status_code=404)
        return result

    def cancel(self, job_id: str) -> str:
        with self._lock:
            return "canceled" if self._jobs.pop(job_id, None) is not None else "not_found"


def create_provider(settings: Settings) -> GenerationProvider:
    """Pick the HTTP provider when a token is configured, otherwise the mock."""
    if settings.replicate_api_token:
        from stylesafe.services.replicate_http_client import ReplicateHTTPProvider

        return ReplicateHTTPProvider(api_token=settings.replicate_api_token, model=settings.replicate_model)

    logger.warning("REPLICATE_API_TOKEN not set. Using the mock generation provider.")
    return MockGenerationProvider()
