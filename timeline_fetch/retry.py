from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy for rate-limited requests.

    max_retries=2 means one request plus at most two retries. The wait after the
    n-th failure is base_delay_seconds * 2**(n-1), bounded by max_delay_seconds,
    unless the server sent a Retry-After value, which is used as-is (optionally
    capped by retry_after_cap_seconds; 0 means no cap).
    """

    max_retries: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    retry_after_cap_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")

    @property
    def max_attempts(self) -> int:
        return int(self.max_retries) + 1


@dataclass(frozen=True)
class RetryEvent:
    """What the retry loop is about to do after a failed attempt."""

    operation: str
    failure_attempt: int
    max_attempts: int
    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None
    error: str
    context_url: str | None = None


IsRetryableFn = Callable[[BaseException], tuple[bool, float | None, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], None]


def backoff_seconds(failure_attempt: int, cfg: RetryConfig) -> float:
    doublings = max(0, int(failure_attempt) - 1)
    return min(cfg.max_delay_seconds, cfg.base_delay_seconds * (2**doublings))


def retry_delay_seconds(
    failure_attempt: int, retry_after: float | None, cfg: RetryConfig
) -> tuple[float, float | None]:
    """Delay before the next attempt, and the Retry-After value that set it (if any)."""
    if retry_after is not None and retry_after >= 0:
        ra = float(retry_after)
        if cfg.retry_after_cap_seconds > 0:
            ra = min(ra, float(cfg.retry_after_cap_seconds))
        return ra, ra
    return backoff_seconds(failure_attempt, cfg), None


def call_with_retries(
    fn: Callable[[], T],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
    context_url: str | None = None,
) -> T:
    """
    Call fn() and retry it while is_retryable(exc) says so, up to cfg.max_retries times.

    Sleeps block the caller, so retries of one request never overlap. Once the
    budget is spent the last exception is re-raised unchanged.
    """
    sleeper = sleep_fn or time.sleep
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            retryable, retry_after, reason = is_retryable(exc)
            if not retryable or attempt >= cfg.max_attempts:
                raise

            delay, ra = retry_delay_seconds(attempt, retry_after, cfg)

            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=operation or "operation",
                        failure_attempt=attempt,
                        max_attempts=cfg.max_attempts,
                        delay_seconds=delay,
                        retry_after_seconds=ra,
                        reason=reason,
                        error=f"{type(exc).__name__}: {exc}",
                        context_url=context_url,
                    )
                )

            if delay > 0:
                sleeper(delay)
