from __future__ import annotations

import unittest

from timeline_fetch.errors import HttpError
from timeline_fetch.http_retry import is_retryable_http_error, parse_retry_after
from timeline_fetch.retry import (
    RetryConfig,
    RetryEvent,
    backoff_seconds,
    call_with_retries,
    retry_delay_seconds,
)


class _Flaky:
    def __init__(self, failures: list[BaseException], result: str = "ok") -> None:
        self._failures = list(failures)
        self._result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self._result


class TestCallWithRetries(unittest.TestCase):
    def test_rate_limit_uses_doubling_backoff(self) -> None:
        sleeps: list[float] = []
        events: list[RetryEvent] = []
        fn = _Flaky([HttpError(429, "slow down"), HttpError(429, "slow down")])

        out = call_with_retries(
            fn,
            cfg=RetryConfig(max_retries=2, base_delay_seconds=1.0),
            is_retryable=is_retryable_http_error,
            operation="GET v1/x",
            on_retry=events.append,
            sleep_fn=sleeps.append,
        )

        self.assertEqual(out, "ok")
        self.assertEqual(fn.calls, 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual([e.failure_attempt for e in events], [1, 2])
        self.assertEqual(events[0].reason, "rate_limited")
        self.assertEqual(events[0].max_attempts, 3)

    def test_retry_after_replaces_backoff(self) -> None:
        sleeps: list[float] = []
        fn = _Flaky([HttpError(429, "slow down", retry_after=7.0)])

        call_with_retries(
            fn,
            cfg=RetryConfig(max_retries=2, base_delay_seconds=1.0),
            is_retryable=is_retryable_http_error,
            operation="op",
            sleep_fn=sleeps.append,
        )

        self.assertEqual(sleeps, [7.0])

    def test_exhausted_budget_reraises_last_error(self) -> None:
        sleeps: list[float] = []
        fn = _Flaky([HttpError(429, "a"), HttpError(429, "b"), HttpError(429, "c")])

        with self.assertRaises(HttpError) as ctx:
            call_with_retries(
                fn,
                cfg=RetryConfig(max_retries=2, base_delay_seconds=1.0),
                is_retryable=is_retryable_http_error,
                operation="op",
                sleep_fn=sleeps.append,
            )

        self.assertEqual(ctx.exception.status, 429)
        self.assertEqual(ctx.exception.message, "c")
        self.assertEqual(fn.calls, 3)
        self.assertEqual(len(sleeps), 2)

    def test_other_errors_are_not_retried(self) -> None:
        sleeps: list[float] = []
        fn = _Flaky([HttpError(500, "boom")])

        with self.assertRaises(HttpError):
            call_with_retries(
                fn,
                cfg=RetryConfig(),
                is_retryable=is_retryable_http_error,
                operation="op",
                sleep_fn=sleeps.append,
            )

        self.assertEqual(fn.calls, 1)
        self.assertEqual(sleeps, [])

    def test_zero_retries_means_single_attempt(self) -> None:
        fn = _Flaky([HttpError(429, "slow down")])
        with self.assertRaises(HttpError):
            call_with_retries(
                fn,
                cfg=RetryConfig(max_retries=0),
                is_retryable=is_retryable_http_error,
                operation="op",
                sleep_fn=lambda _s: None,
            )
        self.assertEqual(fn.calls, 1)

    def test_retry_after_cap_applies_only_when_set(self) -> None:
        sleeps: list[float] = []
        call_with_retries(
            _Flaky([HttpError(429, "slow down", retry_after=90.0)]),
            cfg=RetryConfig(max_retries=1, retry_after_cap_seconds=30.0),
            is_retryable=is_retryable_http_error,
            operation="op",
            sleep_fn=sleeps.append,
        )
        self.assertEqual(sleeps, [30.0])

    def test_backoff_is_bounded_by_max_delay(self) -> None:
        cfg = RetryConfig(max_retries=5, base_delay_seconds=1.0, max_delay_seconds=3.0)
        self.assertEqual([backoff_seconds(n, cfg) for n in (1, 2, 3, 4)], [1.0, 2.0, 3.0, 3.0])
        self.assertEqual(retry_delay_seconds(2, 0.0, cfg), (0.0, 0.0))
        self.assertEqual(retry_delay_seconds(2, None, cfg), (2.0, None))

    def test_config_validation(self) -> None:
        with self.assertRaises(ValueError):
            RetryConfig(max_retries=-1)
        with self.assertRaises(ValueError):
            RetryConfig(base_delay_seconds=5.0, max_delay_seconds=1.0)


class TestHttpRetryPolicy(unittest.TestCase):
    def test_only_429_is_retryable(self) -> None:
        self.assertEqual(
            is_retryable_http_error(HttpError(429, "x", retry_after=3.0)),
            (True, 3.0, "rate_limited"),
        )
        self.assertEqual(is_retryable_http_error(HttpError(503, "x")), (False, None, "http_503"))
        self.assertEqual(is_retryable_http_error(ConnectionError("down")), (False, None, None))

    def test_parse_retry_after(self) -> None:
        self.assertEqual(parse_retry_after({"Retry-After": "3"}), 3.0)
        self.assertEqual(parse_retry_after({"retry-after": " 1.5 "}), 1.5)
        self.assertIsNone(parse_retry_after({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}))
        self.assertIsNone(parse_retry_after({"Retry-After": "-2"}))
        self.assertIsNone(parse_retry_after({}))
        self.assertIsNone(parse_retry_after(None))


if __name__ == "__main__":
    unittest.main()
