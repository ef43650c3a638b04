"""Tests for provider retry/backoff classification and bounds."""

import asyncio
import logging

import pytest

from stylesafe.services.errors import PermanentProviderError, TransientProviderError, ValidationError
from stylesafe.services.retry import RetryPolicy, call_with_retries, classify_status

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class Recorder:
    """Scripted async operation that raises the queued errors, then returns 'ok'."""

    def __init__(self, errors):
        self.errors = list(errors)
        self.calls = 0
        self.sleeps = []

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def run(recorder, policy):
    return asyncio.run(call_with_retries("test.op", recorder, policy, sleep=recorder.sleep, rand=lambda: 0.0))


def test_transient_failures_then_success():
    recorder = Recorder([TransientProviderError("busy"), TransientProviderError("busy")])
    result = run(recorder, RetryPolicy(max_retries=3, base_delay=1.0, multiplier=2.0))

    assert result == "ok"
    assert recorder.calls == 3
    assert recorder.sleeps == [1.0, 2.0]
    logger.info("✓ Transient errors retried with exponential backoff")


def test_exhaustion_marks_error():
    recorder = Recorder([TransientProviderError("busy", status_code=503)] * 10)

    with pytest.raises(TransientProviderError) as excinfo:
        run(recorder, RetryPolicy(max_retries=3, base_delay=0.5))

    assert recorder.calls == 4
    assert excinfo.value.exhausted is True
    assert excinfo.value.attempts == 4
    assert excinfo.value.status_code == 503


@pytest.mark.parametrize(
    "error",
    [PermanentProviderError("bad request", status_code=422), ValidationError("bad shape")],
)
def test_non_transient_errors_are_not_retried(error):
    recorder = Recorder([error])

    with pytest.raises(type(error)):
        run(recorder, RetryPolicy(max_retries=3))

    assert recorder.calls == 1
    assert recorder.sleeps == []


def test_retry_after_extends_delay():
    recorder = Recorder([TransientProviderError("slow down", status_code=429, retry_after=7.0)])
    run(recorder, RetryPolicy(max_retries=1, base_delay=1.0, max_delay=30.0))

    assert recorder.sleeps == [7.0]


def test_retry_after_is_capped_by_max_delay():
    recorder = Recorder([TransientProviderError("slow down", retry_after=600.0)])
    run(recorder, RetryPolicy(max_retries=1, base_delay=1.0, max_delay=30.0))

    assert recorder.sleeps == [30.0]


def test_delay_growth_cap_and_jitter():
    policy = RetryPolicy(base_delay=2.0, multiplier=2.0, max_delay=10.0, jitter=0.5)

    assert policy.delay_for(0, rand=lambda: 0.0) == 2.0
    assert policy.delay_for(1, rand=lambda: 0.0) == 4.0
    assert policy.delay_for(5, rand=lambda: 0.0) == 10.0
    assert policy.delay_for(0, rand=lambda: 1.0) == 3.0


def test_zero_retries_fails_on_first_transient():
    recorder = Recorder([TransientProviderError("busy")])

    with pytest.raises(TransientProviderError) as excinfo:
        run(recorder, RetryPolicy(max_retries=0))
    assert recorder.calls == 1
    assert excinfo.value.exhausted


@pytest.mark.parametrize(
    "code, expected",
    [
        (200, "ok"),
        (201, "ok"),
        (408, "transient"),
        (429, "transient"),
        (500, "transient"),
        (503, "transient"),
        (400, "permanent"),
        (401, "permanent"),
        (404, "permanent"),
        (422, "permanent"),
    ],
)
def test_classify_status(code, expected):
    assert classify_status(code) == expected
