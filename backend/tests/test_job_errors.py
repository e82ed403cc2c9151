import imaplib
from datetime import timedelta

import httpx
import pytest

from app.services.jobs.errors import (
    AuthError,
    ErrorClass,
    HistoryGapError,
    ProviderHTTPError,
    QuotaExceededError,
    TransientError,
    classify_error,
    compute_backoff,
    is_transient,
    retry_async,
)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (ProviderHTTPError(401, "invalid credentials"), ErrorClass.AUTH),
        (ProviderHTTPError(429, "slow down"), ErrorClass.RATE_LIMIT),
        (ProviderHTTPError(403, '{"reason": "quotaExceeded"}'), ErrorClass.QUOTA),
        (ProviderHTTPError(403, '{"reason": "userRateLimitExceeded"}'), ErrorClass.QUOTA),
        (ProviderHTTPError(403, "insufficient permissions"), ErrorClass.AUTH),
        (ProviderHTTPError(503, "backend error"), ErrorClass.TRANSIENT),
        (ProviderHTTPError(404, "Requested entity was not found.", operation="history"), ErrorClass.HISTORY_GAP),
        (ProviderHTTPError(404, "not found", operation="get"), ErrorClass.PERMANENT),
        (ProviderHTTPError(400, "bad request"), ErrorClass.PERMANENT),
        (httpx.ConnectTimeout("connect timed out"), ErrorClass.TRANSIENT),
        (imaplib.IMAP4.abort("socket error: EOF"), ErrorClass.TRANSIENT),
        (imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials"), ErrorClass.AUTH),
        (ConnectionResetError("ECONNRESET"), ErrorClass.TRANSIENT),
        (RuntimeError("upstream said: Rate limit exceeded"), ErrorClass.TRANSIENT),
        (RuntimeError("Invalid history id 1234"), ErrorClass.HISTORY_GAP),
        (ValueError("malformed message"), ErrorClass.PERMANENT),
        (AuthError("token revoked"), ErrorClass.AUTH),
        (QuotaExceededError("daily quota"), ErrorClass.QUOTA),
        (HistoryGapError("gone"), ErrorClass.HISTORY_GAP),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) is expected


def test_retryable_classes():
    assert is_transient(TransientError("ETIMEDOUT"))
    assert is_transient(QuotaExceededError("quota"))
    assert not is_transient(AuthError("revoked"))
    assert not is_transient(HistoryGapError("gone"))
    assert TransientError("x").retryable
    assert not HistoryGapError("x").retryable


def test_backoff_grows_and_is_capped():
    delays = [compute_backoff(attempt) for attempt in range(1, 30)]

    assert delays[0] == timedelta(seconds=60)
    assert delays[1] == timedelta(seconds=120)
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert delays[-1] == timedelta(hours=1)
    assert compute_backoff(10_000) == timedelta(hours=1)


def test_quota_backs_off_longer_than_network_errors():
    assert compute_backoff(1, ErrorClass.QUOTA) > compute_backoff(1, ErrorClass.TRANSIENT)
    assert compute_backoff(1, ErrorClass.RATE_LIMIT) > compute_backoff(1, ErrorClass.TRANSIENT)


@pytest.mark.asyncio
async def test_retry_async_retries_server_errors_then_succeeds():
    calls = []
    sleeps = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ProviderHTTPError(503, "unavailable", operation="get")
        return "ok"

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    result = await retry_async(flaky, max_attempts=3, sleep=fake_sleep)

    assert result == "ok"
    assert len(calls) == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_not_found():
    sleeps = []

    async def missing():
        raise ProviderHTTPError(404, "gone", operation="get")

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    with pytest.raises(ProviderHTTPError):
        await retry_async(missing, sleep=fake_sleep)
    assert sleeps == []


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts():
    calls = []

    async def always_throttled():
        calls.append(1)
        raise ProviderHTTPError(429, "rate limited", operation="list")

    async def fake_sleep(seconds):
        return None

    with pytest.raises(ProviderHTTPError):
        await retry_async(always_throttled, max_attempts=2, sleep=fake_sleep)
    assert len(calls) == 2
