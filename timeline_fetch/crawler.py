from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Protocol

from .config_schema import FetchConfig
from .models import Post, StatusPage
from .retry import SleepFn
from .run_log import RunLogger

ProgressFn = Callable[[int], None]
ClockFn = Callable[[], float]

STOP_THRESHOLD = "threshold"
STOP_EXHAUSTED = "exhausted"
STOP_SHORT_PAGE = "short_page"
STOP_FETCH_CAP = "fetch_cap"
STOP_TIME_BUDGET = "time_budget"


class StatusPageSource(Protocol):
    def get_statuses_page(
        self, account_id: str, cursor: str | None = None, limit: int = 40
    ) -> StatusPage: ...


@dataclass(frozen=True)
class CrawlPolicy:
    """
    Budgets for one crawl call.

    - total_fetch_cap counts every fetched status, reblogs included.
    - time_budget_seconds=0 disables the wall-clock budget.
    - Between pages the crawler sleeps uniformly in [jitter_min_seconds, jitter_max_seconds].
    """

    page_limit: int = 40
    total_fetch_cap: int = 10000
    time_budget_seconds: float = 120.0
    jitter_min_seconds: float = 0.3
    jitter_max_seconds: float = 0.8

    def __post_init__(self) -> None:
        if self.page_limit < 1:
            raise ValueError("page_limit must be >= 1")
        if self.total_fetch_cap < 1:
            raise ValueError("total_fetch_cap must be >= 1")
        if self.time_budget_seconds < 0:
            raise ValueError("time_budget_seconds must be >= 0")
        if self.jitter_min_seconds < 0:
            raise ValueError("jitter_min_seconds must be >= 0")
        if self.jitter_max_seconds < self.jitter_min_seconds:
            raise ValueError("jitter_max_seconds must be >= jitter_min_seconds")

    @classmethod
    def from_fetch_config(cls, fetch: FetchConfig) -> "CrawlPolicy":
        return cls(
            page_limit=int(fetch.page_limit),
            total_fetch_cap=int(fetch.total_fetch_cap),
            time_budget_seconds=float(fetch.time_budget_ms) / 1000.0,
            jitter_min_seconds=float(fetch.jitter_min_ms) / 1000.0,
            jitter_max_seconds=float(fetch.jitter_max_ms) / 1000.0,
        )


@dataclass(frozen=True)
class CrawlResult:
    posts: tuple[Post, ...]
    last_cursor: str | None
    reached_threshold: bool
    fell_back: bool
    total_fetched: int
    pages: int
    stop_reason: str

    @property
    def truncated(self) -> bool:
        """True when a budget, not the data, ended the crawl."""
        return self.stop_reason in (STOP_FETCH_CAP, STOP_TIME_BUDGET)


@dataclass
class FetchSession:
    """Mutable state of one crawl call. Created fresh per call, never shared."""

    account_id: str
    until: datetime
    started_at: float
    cursor: str | None = None
    posts: list[Post] = field(default_factory=list)
    total_fetched: int = 0
    pages: int = 0
    reached_threshold: bool = False
    fell_back: bool = False

    def elapsed(self, now: float) -> float:
        return max(0.0, float(now) - float(self.started_at))

    def absorb(self, page: StatusPage) -> None:
        """
        Fold one non-empty page into the session.

        The cursor moves to the page's last (oldest) post and only non-reblogs
        are kept, but every post counts toward total_fetched.
        """
        if not page.posts:
            raise ValueError("cannot absorb an empty page")

        oldest = page.posts[-1]
        self.pages += 1
        self.cursor = oldest.id
        self.total_fetched += len(page.posts)
        self.posts.extend(p for p in page.posts if not p.is_reblog)

        if oldest.created_at < self.until:
            self.reached_threshold = True

    def to_result(self, stop_reason: str) -> CrawlResult:
        return CrawlResult(
            posts=tuple(self.posts),
            last_cursor=self.cursor,
            reached_threshold=self.reached_threshold,
            fell_back=self.fell_back,
            total_fetched=self.total_fetched,
            pages=self.pages,
            stop_reason=stop_reason,
        )


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class TimelineCrawler:
    """
    Sequential cursor crawl of one account's statuses, newest to oldest.

    One request is in flight at a time; the jitter sleep after page N finishes
    before page N+1 is requested.
    """

    def __init__(
        self,
        pages: StatusPageSource,
        *,
        policy: CrawlPolicy | None = None,
        sleep_fn: SleepFn | None = None,
        clock: ClockFn | None = None,
        rng: random.Random | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._pages = pages
        self._policy = policy or CrawlPolicy()
        self._sleep_fn = sleep_fn or time.sleep
        self._clock = clock or time.monotonic
        self._rng = rng or random.Random()
        self._logger = logger

    @property
    def policy(self) -> CrawlPolicy:
        return self._policy

    def get_statuses_until(
        self,
        account_id: str,
        until: datetime,
        start_cursor: str | None = None,
        on_progress: ProgressFn | None = None,
    ) -> CrawlResult:
        """
        Fetch pages older than start_cursor until a post older than `until` is seen.

        Budget truncation returns the partial result; request errors other than
        the per-page permission fallback abort the call.
        """
        policy = self._policy
        session = FetchSession(
            account_id=account_id,
            until=_as_utc(until),
            started_at=self._clock(),
            cursor=(start_cursor or "").strip() or None,
        )

        self._log(
            "crawl_started",
            account_id=account_id,
            until=session.until.isoformat(),
            start_cursor=session.cursor,
        )

        stop_reason = STOP_THRESHOLD
        while not session.reached_threshold:
            if self._time_budget_spent(session):
                stop_reason = STOP_TIME_BUDGET
                break

            page = self._pages.get_statuses_page(account_id, session.cursor, policy.page_limit)
            if page.fell_back:
                session.fell_back = True

            if not page.posts:
                stop_reason = STOP_EXHAUSTED
                break

            session.absorb(page)
            self._log(
                "crawl_page",
                page=session.pages,
                size=len(page.posts),
                cursor=session.cursor,
                kept_total=len(session.posts),
                fetched_total=session.total_fetched,
                fell_back=page.fell_back,
            )

            if on_progress is not None:
                on_progress(len(session.posts))

            if len(page.posts) < policy.page_limit:
                stop_reason = STOP_SHORT_PAGE
                break

            if session.total_fetched > policy.total_fetch_cap:
                stop_reason = STOP_FETCH_CAP
                break

            if session.reached_threshold:
                break

            self._sleep_jitter()

        if session.reached_threshold:
            stop_reason = STOP_THRESHOLD

        result = session.to_result(stop_reason)
        self._log(
            "crawl_stopped",
            stop_reason=result.stop_reason,
            pages=result.pages,
            kept=len(result.posts),
            fetched=result.total_fetched,
            last_cursor=result.last_cursor,
            reached_threshold=result.reached_threshold,
            fell_back=result.fell_back,
            elapsed_seconds=round(session.elapsed(self._clock()), 3),
        )
        return result

    def _time_budget_spent(self, session: FetchSession) -> bool:
        budget = self._policy.time_budget_seconds
        if budget <= 0:
            return False
        return session.elapsed(self._clock()) > budget

    def _sleep_jitter(self) -> None:
        lo = self._policy.jitter_min_seconds
        hi = self._policy.jitter_max_seconds
        delay = self._rng.uniform(lo, hi) if hi > lo else lo
        if delay > 0:
            self._sleep_fn(float(delay))

    def _log(self, event: str, **data: object) -> None:
        if self._logger is not None:
            self._logger.info(event, **data)
