"""Error taxonomy for job execution and provider calls.

Handlers raise (or let bubble) whatever the provider client raises; the job
wrapper classifies it exactly once into an :class:`ErrorClass`, which decides
whether the queue retries the job, and with how much backoff.
"""

from __future__ import annotations

import asyncio
import imaplib
import random
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from app.utils.logger import logger


T = TypeVar("T")


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    HISTORY_GAP = "history_gap"
    AUTH = "auth"
    PERMANENT = "permanent"


RETRYABLE_CLASSES = frozenset({ErrorClass.TRANSIENT, ErrorClass.RATE_LIMIT, ErrorClass.QUOTA})


class JobError(Exception):
    """Base class for classified job failures."""

    error_class: ErrorClass = ErrorClass.PERMANENT

    def __init__(self, message: str, *, error_class: Optional[ErrorClass] = None) -> None:
        super().__init__(message)
        if error_class is not None:
            self.error_class = error_class

    @property
    def retryable(self) -> bool:
        return self.error_class in RETRYABLE_CLASSES


class TransientError(JobError):
    error_class = ErrorClass.TRANSIENT


class RateLimitError(TransientError):
    error_class = ErrorClass.RATE_LIMIT


class QuotaExceededError(TransientError):
    error_class = ErrorClass.QUOTA


class HistoryGapError(JobError):
    """The stored history cursor is older than what the provider retains."""

    error_class = ErrorClass.HISTORY_GAP


class PermanentError(JobError):
    error_class = ErrorClass.PERMANENT


class AuthError(PermanentError):
    """Credentials are expired or revoked; the account needs re-authentication."""

    error_class = ErrorClass.AUTH


class ProviderNotSupportedError(PermanentError):
    """The account's provider does not offer the requested capability."""


class ProviderHTTPError(Exception):
    """Non-success HTTP response from a provider API."""

    def __init__(self, status_code: int, body: str = "", *, operation: str = "") -> None:
        self.status_code = status_code
        self.body = body or ""
        self.operation = operation
        super().__init__(f"{operation or 'provider request'} failed: status={status_code} body={self.body[:300]}")


_TRANSIENT_PATTERNS = (
    "econnrefused",
    "etimedout",
    "enotfound",
    "ehostunreach",
    "enetunreach",
    "econnreset",
    "rate limit",
    "quota exceeded",
    "429",
    "503",
    "504",
    "timed out",
)

_HISTORY_GAP_PATTERNS = (
    "invalid history id",
    "historyid",
    "history gap",
)


def _classify_http_status(exc: ProviderHTTPError) -> ErrorClass:
    status = exc.status_code
    body = exc.body.lower()
    if status == 401:
        return ErrorClass.AUTH
    if status == 429:
        return ErrorClass.RATE_LIMIT
    if status == 403:
        if "quota" in body or "ratelimitexceeded" in body or "userratelimitexceeded" in body:
            return ErrorClass.QUOTA
        return ErrorClass.AUTH
    if status in (500, 502, 503, 504):
        return ErrorClass.TRANSIENT
    if exc.operation == "history" and (status == 404 or "historyid" in body):
        return ErrorClass.HISTORY_GAP
    return ErrorClass.PERMANENT


def classify_error(exc: BaseException) -> ErrorClass:
    """Map any exception raised inside a handler to an :class:`ErrorClass`."""

    if isinstance(exc, JobError):
        return exc.error_class
    if isinstance(exc, ProviderHTTPError):
        return _classify_http_status(exc)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, (imaplib.IMAP4.abort, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, imaplib.IMAP4.error) and "authenticat" in str(exc).lower():
        return ErrorClass.AUTH

    message = str(exc).lower()
    if any(pattern in message for pattern in _HISTORY_GAP_PATTERNS):
        return ErrorClass.HISTORY_GAP
    if "quota" in message:
        return ErrorClass.QUOTA
    if any(pattern in message for pattern in _TRANSIENT_PATTERNS):
        return ErrorClass.TRANSIENT
    if isinstance(exc, OSError):
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def is_transient(exc: BaseException) -> bool:
    return classify_error(exc) in RETRYABLE_CLASSES


# ---------------------------------------------------------------------------
# Job-level backoff (between attempts of a queued job)
# ---------------------------------------------------------------------------

# (initial seconds, multiplier, cap seconds)
JOB_BACKOFF = {
    ErrorClass.TRANSIENT: (60.0, 2.0, 60 * 60.0),
    ErrorClass.RATE_LIMIT: (120.0, 2.0, 2 * 60 * 60.0),
    ErrorClass.QUOTA: (300.0, 1.5, 4 * 60 * 60.0),
}


def compute_backoff(attempt: int, error_class: ErrorClass = ErrorClass.TRANSIENT) -> timedelta:
    """Delay before retry number ``attempt`` (1-based) of a failed job.

    Exponential and capped; never decreases as ``attempt`` grows. Quota and
    rate-limit failures back off longer than generic network errors.
    """

    initial, multiplier, cap = JOB_BACKOFF.get(error_class, JOB_BACKOFF[ErrorClass.TRANSIENT])
    exponent = max(attempt, 1) - 1
    # Clamp the exponent so huge attempt counts cannot overflow float math.
    delay = initial * (multiplier ** min(exponent, 64))
    return timedelta(seconds=min(delay, cap))


# ---------------------------------------------------------------------------
# Request-level retry (around a single provider call)
# ---------------------------------------------------------------------------

RETRYABLE_STATUS_CODES = frozenset({429, 403, 500, 502, 503, 504})


def _request_retry_delay(exc: BaseException, attempt: int) -> Optional[float]:
    """Seconds to wait before retrying a single request, or None to give up."""

    if isinstance(exc, ProviderHTTPError):
        if exc.status_code not in RETRYABLE_STATUS_CODES:
            return None
        if exc.status_code == 403:
            if "quota" not in exc.body.lower():
                return None
            return min(30.0 * (1.5 ** (attempt - 1)), 300.0)
        if exc.status_code == 429:
            return min(2.0 * (2 ** (attempt - 1)), 120.0)
        return min(1.0 * (2 ** (attempt - 1)), 60.0)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, ConnectionError, TimeoutError)):
        return min(1.0 * (2 ** (attempt - 1)), 60.0)
    return None


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    operation: str = "request",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``fn`` and retry transient request failures in place.

    Auth (401) and not-found (404) responses are raised immediately; the job
    level decides what to do with them.
    """

    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            delay = _request_retry_delay(exc, attempt)
            if delay is None or attempt >= max_attempts:
                raise
            # Small jitter so concurrent fetches do not retry in lockstep.
            delay += random.uniform(0, delay * 0.1)
            logger.warning(
                "[retry] %s failed (attempt %s/%s), retrying in %.1fs: %s",
                operation,
                attempt,
                max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
            attempt += 1
