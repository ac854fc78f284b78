from __future__ import annotations

from typing import Any, Mapping

from .errors import HttpError

RATE_LIMIT_STATUS = 429


def parse_retry_after(headers: Mapping[str, Any] | None) -> float | None:
    """
    Read a Retry-After header expressed in seconds.

    HTTP-date values and garbage are ignored so the caller falls back to backoff.
    """
    if not headers:
        return None

    val: Any = None
    for key in ("retry-after", "Retry-After", "RETRY-AFTER"):
        val = headers.get(key)
        if val is not None:
            break

    if val is None:
        return None

    if isinstance(val, (list, tuple)):
        if not val:
            return None
        val = val[0]

    try:
        seconds = float(str(val).strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


def is_retryable_http_error(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Rate-limit retry policy: only HTTP 429 is transient.

    Transport failures and every other status propagate on the first occurrence.
    """
    if isinstance(exc, HttpError):
        if exc.status == RATE_LIMIT_STATUS:
            return True, exc.retry_after, "rate_limited"
        return False, None, f"http_{exc.status}"

    return False, None, None
