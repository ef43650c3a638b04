"""
HTTP generation provider backed by the Replicate predictions API.

Uses the HTTP API directly via requests. One prediction is created per prompt
row (with `num_outputs` set to the variant count); a provider job id is the
comma-joined list of prediction ids.

All calls pass through the shared rate limiter. Failures are mapped onto the
pipeline's error taxonomy so the retry wrapper can decide what to retry:
408/429/5xx and network errors are transient, other 4xx are permanent.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

import requests

from stylesafe.services.errors import PermanentProviderError, TransientProviderError
from stylesafe.services.generation import (
    FetchResult,
    GeneratedImage,
    GenerationBatch,
    ProviderStatus,
    SubmitReceipt,
)
from stylesafe.services.rate_limiter import ProviderRateLimiter, get_rate_limiter
from stylesafe.services.retry import classify_status

logger = logging.getLogger(__name__)

BASE_URL = "https://api.replicate.com/v1"

_STATUS_MAP = {
    "starting": "pending",
    "processing": "running",
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "failed",
}


def _data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('utf-8')}"


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("title") or body)
    return str(body)


class ReplicateHTTPProvider:
    """Generation provider speaking to Replicate over plain HTTP."""

    name = "replicate"

    def __init__(
        self,
        api_token: str,
        model: str = "black-forest-labs/flux-schnell",
        base_url: str = BASE_URL,
        rate_limiter: Optional[ProviderRateLimiter] = None,
        reference_input_key: Optional[str] = "image_prompt",
        request_timeout: float = 30.0,
        acquire_timeout: float = 30.0,
    ):
        """
        Args:
            api_token: Replicate API token.
            model: "owner/name" for official models, or "owner/name:version".
            reference_input_key: Model input that receives the primary style
                reference as a data URI; None sends no reference image.
        """
        if not api_token:
            raise PermanentProviderError("Replicate provider requires an API token", status_code=401)
        self.api_token = api_token
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.reference_input_key = reference_input_key
        self.request_timeout = request_timeout
        self.acquire_timeout = acquire_timeout

        if not api_token.startswith("r8_"):
            logger.warning("Replicate token doesn't start with 'r8_' - it might be invalid")
        logger.info("Replicate HTTP provider initialized (model=%s, token=%s...)", model, api_token[:6])

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Token {self.api_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        if not self.rate_limiter.acquire(timeout=self.acquire_timeout):
            raise TransientProviderError(f"Rate limiter timeout after {self.acquire_timeout:.0f}s")

        try:
            response = requests.request(method, url, headers=self.headers, timeout=self.request_timeout, **kwargs)
        except requests.exceptions.RequestException as exc:
            logger.warning("Replicate %s %s network error: %s", method, url, exc)
            raise TransientProviderError(f"Network error calling Replicate: {exc}") from exc

        status_code = response.status_code
        if status_code == 429:
            retry_after = _retry_after(response)
            self.rate_limiter.report_429(retry_after)
            raise TransientProviderError(
                "Replicate rate limited (429)", status_code=429, retry_after=retry_after
            )

        kind = classify_status(status_code)
        if kind == "transient":
            raise TransientProviderError(
                f"Replicate server error ({status_code}): {_error_detail(response)}",
                status_code=status_code,
                retry_after=_retry_after(response),
            )
        if kind == "permanent":
            detail = _error_detail(response)
            if status_code == 401:
                logger.error("Replicate authentication failed: check REPLICATE_API_TOKEN")
            elif status_code == 404:
                logger.error("Replicate resource not found: %s", detail)
            raise PermanentProviderError(f"Replicate rejected request ({status_code}): {detail}", status_code=status_code)

        self.rate_limiter.report_success()
        return response

    def _create_url(self) -> str:
        if ":" in self.model:
            return f"{self.base_url}/predictions"
        return f"{self.base_url}/models/{self.model}/predictions"

    def _payload(self, batch: GenerationBatch, prompt: str, seed: Optional[int]) -> Dict[str, Any]:
        model_input: Dict[str, Any] = {"prompt": prompt, "num_outputs": batch.variants}
        if seed is not None:
            model_input["seed"] = seed
        if self.reference_input_key and batch.attachments:
            primary = max(batch.attachments, key=lambda attachment: attachment.weight)
            model_input[self.reference_input_key] = _data_uri(primary.data, primary.mime_type)

        payload: Dict[str, Any] = {"input": model_input}
        if ":" in self.model:
            payload["version"] = self.model.split(":", 1)[1]
        return payload

    def submit(self, batch: GenerationBatch) -> SubmitReceipt:
        prediction_ids: List[str] = []
        for row in batch.rows:
            prompt = row.prompt
            if not prompt.startswith(batch.system_instruction):
                prompt = f"{batch.system_instruction}\n\n{prompt}"
            seed = batch.seed if batch.seed is not None else row.seed
            response = self._request("POST", self._create_url(), json=self._payload(batch, prompt, seed))
            prediction = response.json()
            prediction_ids.append(prediction["id"])
            logger.info("Created Replicate prediction %s for %s", prediction["id"], row.source_image)

        return SubmitReceipt(job_id=",".join(prediction_ids), estimated_count=len(batch.rows) * batch.variants)

    def _get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{self.base_url}/predictions/{prediction_id}").json()

    def poll(self, job_id: str) -> ProviderStatus:
        statuses: List[str] = []
        errors: List[str] = []
        for prediction_id in job_id.split(","):
            prediction = self._get_prediction(prediction_id)
            status = _STATUS_MAP.get(prediction.get("status", ""), "running")
            statuses.append(status)
            if status == "failed":
                errors.append(str(prediction.get("error") or f"prediction {prediction_id} {prediction.get('status')}"))

        total = len(statuses)
        completed = sum(1 for status in statuses if status in ("succeeded", "failed"))
        if errors:
            overall = "failed"
        elif completed == total:
            overall = "succeeded"
        elif all(status == "pending" for status in statuses):
            overall = "pending"
        else:
            overall = "running"
        return ProviderStatus(status=overall, completed=completed, total=total, errors=tuple(errors))

    def _download(self, output: str) -> bytes:
        if output.startswith("data:"):
            return base64.b64decode(output.split(",", 1)[1])
        return self._request("GET", output).content

    def fetch(self, job_id: str) -> FetchResult:
        result = FetchResult()
        for prediction_id in job_id.split(","):
            prediction = self._get_prediction(prediction_id)
            if prediction.get("status") != "succeeded":
                result.problems.append(
                    PermanentProviderError(
                        f"Prediction {prediction_id} has status {prediction.get('status')!r}"
                    ).to_problem()
                )
                continue

            outputs = prediction.get("output") or []
            if isinstance(outputs, str):
                outputs = [outputs]
            prompt = (prediction.get("input") or {}).get("prompt", "")
            seed = (prediction.get("input") or {}).get("seed")
            for index, output in enumerate(outputs):
                result.results.append(
                    GeneratedImage(
                        id=f"{prediction_id}-{index}",
                        prompt=prompt,
                        data=self._download(output),
                        seed=seed,
                    )
                )
        return result

    def cancel(self, job_id: str) -> str:
        outcome = "not_found"
        for prediction_id in job_id.split(","):
            try:
                self._request("POST", f"{self.base_url}/predictions/{prediction_id}/cancel")
            except PermanentProviderError as exc:
                if exc.status_code == 404:
                    continue
                raise
            outcome = "canceled"
        return outcome
