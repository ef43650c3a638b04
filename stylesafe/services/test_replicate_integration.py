"""
Test suite for the Replicate HTTP provider.

All HTTP traffic is mocked; no API token or network access is required.
"""

import asyncio
import base64
import logging
from unittest.mock import MagicMock, patch

import pytest
import requests

from stylesafe.api.v1.schemas import PromptRow
from stylesafe.services.errors import PermanentProviderError, TransientProviderError
from stylesafe.services.generation import GenerationBatch, GenerationClient, ReferenceAttachment
from stylesafe.services.rate_limiter import ProviderRateLimiter
from stylesafe.services.replicate_http_client import ReplicateHTTPProvider
from stylesafe.services.retry import RetryPolicy
from stylesafe.services.style_guard import STYLE_ONLY_INSTRUCTION

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

REQUEST = "stylesafe.services.replicate_http_client.requests.request"


def make_response(status_code=200, body=None, content=b"", headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.text = str(body)
    response.content = content
    response.headers = headers or {}
    return response


def make_provider(model="black-forest-labs/flux-schnell"):
    limiter = ProviderRateLimiter(burst_capacity=100, min_interval_seconds=0.0, sleep=lambda seconds: None)
    return ReplicateHTTPProvider(api_token="r8_testtoken", model=model, rate_limiter=limiter)


def make_batch(variants=1, attachments=()):
    row = PromptRow(prompt=f"{STYLE_ONLY_INSTRUCTION}\n\nfox in snow", source_image="a.jpg", seed=3)
    return GenerationBatch(
        rows=(row,),
        variants=variants,
        system_instruction=STYLE_ONLY_INSTRUCTION,
        attachments=tuple(attachments),
        seed=42,
    )


def test_submit_posts_prediction_to_model_endpoint():
    """Official models use the per-model predictions endpoint."""
    provider = make_provider()
    attachment = ReferenceAttachment(id="ref_1", data=b"png-bytes", mime_type="image/png")

    with patch(REQUEST, return_value=make_response(201, {"id": "pred-1"})) as mock_request:
        receipt = provider.submit(make_batch(variants=2, attachments=[attachment]))

    assert receipt.job_id == "pred-1"
    assert receipt.estimated_count == 2
    method, url = mock_request.call_args.args
    assert method == "POST"
    assert url == "https://api.replicate.com/v1/models/black-forest-labs/flux-schnell/predictions"
    model_input = mock_request.call_args.kwargs["json"]["input"]
    assert model_input["prompt"].startswith(STYLE_ONLY_INSTRUCTION)
    assert model_input["seed"] == 42
    assert model_input["num_outputs"] == 2
    assert model_input["image_prompt"] == "data:image/png;base64," + base64.b64encode(b"png-bytes").decode()
    assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Token r8_testtoken"
    logger.info("✓ Prediction created with style-only prompt")


def test_versioned_model_uses_predictions_endpoint():
    provider = make_provider(model="owner/model:abc123")

    with patch(REQUEST, return_value=make_response(201, {"id": "pred-2"})) as mock_request:
        provider.submit(make_batch())

    assert mock_request.call_args.args[1] == "https://api.replicate.com/v1/predictions"
    assert mock_request.call_args.kwargs["json"]["version"] == "abc123"


def test_rate_limited_response_is_transient_and_cools_down():
    provider = make_provider()

    with patch(REQUEST, return_value=make_response(429, {"detail": "slow down"}, headers={"Retry-After": "12"})):
        with pytest.raises(TransientProviderError) as excinfo:
            provider.submit(make_batch())

    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after == 12.0
    assert provider.rate_limiter.consecutive_429s == 1


@pytest.mark.parametrize("status_code", [500, 502, 503, 408])
def test_server_errors_are_transient(status_code):
    with patch(REQUEST, return_value=make_response(status_code, {"detail": "oops"})):
        with pytest.raises(TransientProviderError):
            make_provider().submit(make_batch())


@pytest.mark.parametrize("status_code", [400, 401, 404, 422])
def test_client_errors_are_permanent(status_code):
    with patch(REQUEST, return_value=make_response(status_code, {"detail": "invalid input"})):
        with pytest.raises(PermanentProviderError) as excinfo:
            make_provider().submit(make_batch())

    assert excinfo.value.status_code == status_code
    assert "invalid input" in excinfo.value.detail


def test_network_errors_are_transient():
    with patch(REQUEST, side_effect=requests.exceptions.ConnectionError("connection reset")):
        with pytest.raises(TransientProviderError):
            make_provider().submit(make_batch())


@pytest.mark.parametrize(
    "remote, expected",
    [("starting", "pending"), ("processing", "running"), ("succeeded", "succeeded"), ("failed", "failed"), ("canceled", "failed")],
)
def test_poll_maps_statuses(remote, expected):
    with patch(REQUEST, return_value=make_response(200, {"id": "p", "status": remote, "error": "boom"})):
        status = make_provider().poll("p")

    assert status.status == expected
    if expected == "failed":
        assert status.errors


def test_fetch_downloads_outputs():
    prediction = {
        "id": "p",
        "status": "succeeded",
        "input": {"prompt": "fox", "seed": 42},
        "output": ["https://cdn.example/out-0.png", "https://cdn.example/out-1.png"],
    }
    responses = [
        make_response(200, prediction),
        make_response(200, content=b"image-0"),
        make_response(200, content=b"image-1"),
    ]

    with patch(REQUEST, side_effect=responses):
        result = make_provider().fetch("p")

    assert [image.data for image in result.results] == [b"image-0", b"image-1"]
    assert result.results[0].seed == 42
    assert result.problems == []


def test_fetch_reports_unfinished_prediction():
    with patch(REQUEST, return_value=make_response(200, {"id": "p", "status": "processing"})):
        result = make_provider().fetch("p")

    assert result.results == []
    assert result.problems[0]["status"] == 502


def test_cancel_missing_prediction():
    with patch(REQUEST, return_value=make_response(404, {"detail": "not found"})):
        assert make_provider().cancel("gone") == "not_found"

    with patch(REQUEST, return_value=make_response(200, {"id": "p", "status": "canceled"})):
        assert make_provider().cancel("p") == "canceled"


def test_generate_end_to_end_through_client():
    """submit -> poll -> fetch via the retrying client, with one transient blip."""
    prediction = {"id": "p", "status": "succeeded", "input": {"prompt": "fox"}, "output": "https://cdn.example/o.png"}
    responses = [
        make_response(503, {"detail": "warming up"}),
        make_response(201, {"id": "p"}),
        make_response(200, {"id": "p", "status": "processing"}),
        make_response(200, prediction),
        make_response(200, prediction),
        make_response(200, content=b"final-image"),
    ]

    async def no_sleep(_seconds):
        return None

    client = GenerationClient(make_provider(), RetryPolicy(max_retries=2), poll_interval=0, sleep=no_sleep)
    with patch(REQUEST, side_effect=responses):
        result = asyncio.run(client.generate(make_batch()))

    assert [image.data for image in result.results] == [b"final-image"]


def test_missing_token_is_rejected():
    with pytest.raises(PermanentProviderError):
        ReplicateHTTPProvider(api_token="")


def test_unusual_token_prefix_still_works():
    limiter = ProviderRateLimiter(burst_capacity=100, min_interval_seconds=0.0, sleep=lambda seconds: None)
    provider = ReplicateHTTPProvider(api_token="legacy-token", rate_limiter=limiter)

    with patch(REQUEST, return_value=make_response(201, {"id": "pred-3"})):
        assert provider.submit(make_batch()).job_id == "pred-3"
