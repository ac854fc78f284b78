from __future__ import annotations

from .api import MastodonApi
from .config import config_sha256, load_config, resolve_token
from .config_schema import AppConfig
from .crawler import CrawlPolicy, CrawlResult, FetchSession, TimelineCrawler
from .errors import (
    ApiResponseError,
    AuthRequiredError,
    ConfigError,
    HttpError,
)
from .fetcher import TimelineFetcher
from .models import Account, Post, StatusPage

__all__ = [
    "Account",
    "ApiResponseError",
    "AppConfig",
    "AuthRequiredError",
    "ConfigError",
    "CrawlPolicy",
    "CrawlResult",
    "FetchSession",
    "HttpError",
    "MastodonApi",
    "Post",
    "StatusPage",
    "TimelineCrawler",
    "TimelineFetcher",
    "config_sha256",
    "load_config",
    "resolve_token",
]
