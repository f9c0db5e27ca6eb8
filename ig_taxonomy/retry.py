from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, NamedTuple, TypeVar

T = TypeVar("T")


class RetryDecision(NamedTuple):
    """How a provider failure should be treated by `call_with_retries`."""

    retryable: bool
    retry_after: float | None = None
    reason: str | None = None


NOT_RETRYABLE = RetryDecision(False)


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy shared by the OpenAI and Mapbox adapters.

    `max_attempts` includes the first call. Delays double from
    `base_delay_seconds` up to `max_delay_seconds`; a server Retry-After hint
    wins when it is longer, up to `retry_after_cap_seconds` (0 = uncapped).
    """

    max_attempts: int = 4
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 20.0
    jitter_ratio: float = 0.25
    retry_after_cap_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if min(self.base_delay_seconds, self.max_delay_seconds, self.retry_after_cap_seconds) < 0:
            raise ValueError("retry delays must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")

    def capped_retry_after(self, value: float | None) -> float | None:
        if value is None or value < 0:
            return None
        if self.retry_after_cap_seconds > 0:
            return min(float(value), self.retry_after_cap_seconds)
        return float(value)

    def delay_for(self, failure_attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = min(self.max_delay_seconds, self.base_delay_seconds * 2 ** max(0, failure_attempt - 1))
        hinted = self.capped_retry_after(retry_after)
        if hinted is not None:
            delay = max(delay, hinted)
        if delay > 0 and self.jitter_ratio > 0:
            delay *= random.uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)
        return max(0.0, delay)


NO_RETRY = RetryConfig(max_attempts=1, base_delay_seconds=0.0, max_delay_seconds=0.0)


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int

    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None

    error_type: str
    error_message: str


IsRetryableFn = Callable[[BaseException], RetryDecision]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], Awaitable[None]]


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
) -> T:
    """
    Await `fn()` until it succeeds, raising the last error once the failure is
    not retryable or `cfg.max_attempts` calls have been made.
    """
    op = (operation or "").strip() or "operation"
    sleeper = sleep_fn or asyncio.sleep
    attempt = 0

    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            decision = RetryDecision(*is_retryable(exc))
            if not decision.retryable or attempt >= cfg.max_attempts:
                raise

            delay = cfg.delay_for(attempt, decision.retry_after)
            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=attempt,
                        next_attempt=attempt + 1,
                        max_attempts=cfg.max_attempts,
                        delay_seconds=delay,
                        retry_after_seconds=cfg.capped_retry_after(decision.retry_after),
                        reason=decision.reason,
                        error_type=type(exc).__name__,
                        error_message=str(exc).strip(),
                    )
                )
            if delay > 0:
                await sleeper(delay)
