from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)

MAX_STATUSES_PAGE_LIMIT = 40


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


def normalize_instance(value: str) -> str:
    """Strip a scheme prefix and trailing slashes: 'https://a.b/' -> 'a.b'."""
    host = _SCHEME_RE.sub("", (value or "").strip())
    return host.rstrip("/")


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]


class InstanceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str = "mastodon.social"
    token_env: str = "MASTODON_TOKEN"
    timeout_seconds: float = Field(30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def _base_url_must_be_host(cls, v: str) -> str:
        host = normalize_instance(v)
        if not host:
            raise ValueError("must be a non-empty host name")
        return host

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class FetchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_retries: NonNegativeInt = 2
    base_backoff_ms: NonNegativeInt = 1000
    # Servers return at most 40 statuses per page; a full page must equal the limit.
    page_limit: int = Field(40, ge=1, le=MAX_STATUSES_PAGE_LIMIT)
    total_fetch_cap: PositiveInt = 10000
    time_budget_ms: NonNegativeInt = 120000  # 0 disables the budget
    jitter_min_ms: NonNegativeInt = 300
    jitter_max_ms: NonNegativeInt = 800

    @model_validator(mode="after")
    def _jitter_range_must_be_ordered(self) -> "FetchConfig":
        if self.jitter_max_ms < self.jitter_min_ms:
            raise ValueError("jitter_max_ms must be >= jitter_min_ms")
        return self


class SearchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    limit: PositiveInt = 20


class CrawlConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    initial_months: PositiveInt = 3
    explore_months: PositiveInt = 3


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    instance: InstanceConfig = Field(default_factory=InstanceConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
