from __future__ import annotations

import random
from datetime import datetime

import httpx

from .api import MastodonApi, retry_config_from_fetch
from .config_schema import AppConfig
from .crawler import ClockFn, CrawlPolicy, CrawlResult, ProgressFn, TimelineCrawler
from .models import Account, Post
from .retry import OnRetryFn, SleepFn
from .run_log import RunLogger


class TimelineFetcher:
    """
    Caller-facing client: account lookup, incremental timeline crawl, author search.

    Owns no persisted state. Callers keep `CrawlResult.last_cursor` and pass it
    back as `cursor` to continue an earlier crawl.
    """

    def __init__(self, api: MastodonApi, crawler: TimelineCrawler | None = None) -> None:
        self._api = api
        self._crawler = crawler or TimelineCrawler(api)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        token: str | None,
        *,
        client: httpx.Client | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
        clock: ClockFn | None = None,
        rng: random.Random | None = None,
        logger: RunLogger | None = None,
    ) -> "TimelineFetcher":
        api = MastodonApi(
            config.instance.base_url,
            token,
            client=client,
            retry=retry_config_from_fetch(config.fetch),
            timeout_seconds=config.instance.timeout_seconds,
            on_retry=on_retry,
            sleep_fn=sleep_fn,
            logger=logger,
        )
        crawler = TimelineCrawler(
            api,
            policy=CrawlPolicy.from_fetch_config(config.fetch),
            sleep_fn=sleep_fn,
            clock=clock,
            rng=rng,
            logger=logger,
        )
        return cls(api, crawler)

    @property
    def api(self) -> MastodonApi:
        return self._api

    def close(self) -> None:
        self._api.close()

    def __enter__(self) -> "TimelineFetcher":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def verify_credentials(self) -> Account:
        return self._api.verify_credentials()

    def lookup_account(self, handle: str) -> Account:
        return self._api.lookup_account(handle)

    def get_statuses_until(
        self,
        account_id: str,
        until: datetime,
        cursor: str | None = None,
        on_progress: ProgressFn | None = None,
    ) -> CrawlResult:
        return self._crawler.get_statuses_until(
            account_id,
            until,
            start_cursor=cursor,
            on_progress=on_progress,
        )

    def search_statuses(self, query: str, author_handle: str, limit: int = 20) -> list[Post]:
        return self._api.search_statuses(query, author_handle, limit=limit)
