"""
Error Classifier — Upstream Failure Taxonomy

Maps a raised failure into the closed set of retryable shapes:

  - Timeout:      the call exceeded its deadline
  - Network:      transport-level failure (DNS, connect, reset)
  - HttpFailure:  upstream answered with a non-2xx status

Anything else is terminal. The retry loop never inspects exceptions
directly; it branches on the Ok / Retry / Fatal variant produced by
to_outcome().
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

import httpx
from google.genai import errors as genai_errors

T = TypeVar("T")


# ============================================================
# RETRYABLE SHAPES
# ============================================================

@dataclass(frozen=True)
class Timeout:
    kind: str = "timeout"


@dataclass(frozen=True)
class Network:
    kind: str = "network"


@dataclass(frozen=True)
class HttpFailure:
    status: int
    retry_after_ms: Optional[int] = None
    kind: str = "http"


RetryableError = Union[Timeout, Network, HttpFailure]


class UpstreamHTTPError(Exception):
    """Raised by REST providers when the upstream answers with a non-2xx status."""

    def __init__(self, status: int, retry_after_ms: Optional[int] = None, body: str = ""):
        super().__init__(f"Upstream HTTP {status}")
        self.status = status
        self.retry_after_ms = retry_after_ms
        self.body = body


# ============================================================
# OUTCOME VARIANTS
# ============================================================

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Retry:
    reason: RetryableError


@dataclass(frozen=True)
class Fatal:
    reason: Any  # a RetryableError that must not be retried, or the raw exception


Outcome = Union[Ok, Retry, Fatal]


# ============================================================
# CLASSIFICATION
# ============================================================

def parse_retry_after_ms(header_value: Optional[str]) -> Optional[int]:
    """Retry-After in seconds → milliseconds. HTTP-date and junk values are ignored."""
    if not header_value:
        return None
    try:
        seconds = float(header_value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return int(seconds * 1000)


def _headers_of(response: Any) -> Any:
    headers = getattr(response, "headers", None)
    return headers if headers is not None else {}


def classify(exc: BaseException) -> Optional[RetryableError]:
    """Return the retryable shape of a failure, or None for anything outside the taxonomy."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return Timeout()

    if isinstance(exc, UpstreamHTTPError):
        return HttpFailure(status=exc.status, retry_after_ms=exc.retry_after_ms)

    if isinstance(exc, httpx.HTTPStatusError):
        return HttpFailure(
            status=exc.response.status_code,
            retry_after_ms=parse_retry_after_ms(exc.response.headers.get("retry-after")),
        )

    if isinstance(exc, genai_errors.APIError):
        if not isinstance(exc.code, int):
            return None
        headers = _headers_of(getattr(exc, "response", None))
        return HttpFailure(
            status=exc.code,
            retry_after_ms=parse_retry_after_ms(headers.get("retry-after")),
        )

    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return Network()

    return None


def should_retry(error: RetryableError) -> bool:
    """Timeouts and network errors always retry; HTTP only on 429 and 5xx."""
    if isinstance(error, (Timeout, Network)):
        return True
    if isinstance(error, HttpFailure):
        return error.status == 429 or error.status >= 500
    return False


def backoff_ms(attempt: int, error: RetryableError, base_ms: int) -> int:
    """Server-provided Retry-After wins; otherwise base * 2^(attempt-1)."""
    if isinstance(error, HttpFailure) and error.retry_after_ms is not None:
        return error.retry_after_ms
    return base_ms * 2 ** (attempt - 1)


def to_outcome(exc: BaseException) -> Outcome:
    """Classify-then-branch: a failure becomes Retry or Fatal."""
    error = classify(exc)
    if error is not None and should_retry(error):
        return Retry(error)
    return Fatal(error if error is not None else exc)


def describe(reason: Any) -> str:
    """Short label for logs."""
    if isinstance(reason, HttpFailure):
        return f"http_{reason.status}"
    if isinstance(reason, (Timeout, Network)):
        return reason.kind
    return type(reason).__name__
