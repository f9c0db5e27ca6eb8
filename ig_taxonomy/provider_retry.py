"""Failure classifiers for the OpenAI and Mapbox adapters."""

from __future__ import annotations

from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, RateLimitError

from .retry import NOT_RETRYABLE, RetryDecision

_RETRYABLE_CODES = frozenset({408, 409, 429})


def _retry_after_seconds(exc: BaseException) -> float | None:
    direct = getattr(exc, "retry_after", None)
    if direct is not None:
        try:
            return float(direct)
        except (TypeError, ValueError):
            return None

    headers = getattr(getattr(exc, "response", None), "headers", None)
    if headers is None:
        return None

    raw: Any = headers.get("retry-after")
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if raw is None:
        return None
    try:
        return float(str(raw).strip())
    except ValueError:
        # HTTP-date form; fall back to normal backoff.
        return None


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if code is None:
        code = getattr(getattr(exc, "response", None), "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _by_status(code: int | None, retry_after: float | None) -> RetryDecision:
    reason = f"http_{code}" if code is not None else "http_status"
    if code is not None and (code in _RETRYABLE_CODES or code >= 500):
        return RetryDecision(True, retry_after, reason)
    return RetryDecision(False, None, reason)


def is_retryable_openai_exception(exc: BaseException) -> RetryDecision:
    """Timeouts, connection drops, 408/409/429 and 5xx are transient."""
    retry_after = _retry_after_seconds(exc)

    if isinstance(exc, APITimeoutError):
        return RetryDecision(True, retry_after, "timeout")
    if isinstance(exc, APIConnectionError):
        return RetryDecision(True, retry_after, "connection_error")
    if isinstance(exc, RateLimitError):
        return RetryDecision(True, retry_after, "rate_limited")
    if isinstance(exc, APIStatusError):
        return _by_status(_status_code(exc), retry_after)

    # Test doubles and wrapped errors that only carry a status code.
    code = _status_code(exc)
    if code is not None:
        return _by_status(code, retry_after)
    return NOT_RETRYABLE


def is_retryable_http_exception(exc: BaseException) -> RetryDecision:
    if isinstance(exc, httpx.TimeoutException):
        return RetryDecision(True, None, "timeout")
    if isinstance(exc, httpx.TransportError):
        return RetryDecision(True, None, "network_error")
    if isinstance(exc, httpx.HTTPStatusError):
        return _by_status(exc.response.status_code, _retry_after_seconds(exc))
    return NOT_RETRYABLE
