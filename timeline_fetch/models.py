from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from .errors import ApiResponseError


@dataclass(frozen=True)
class Account:
    """An account as returned by the lookup and verify_credentials endpoints."""

    id: str
    username: str
    acct: str
    display_name: str | None = None
    url: str | None = None
    statuses_count: int | None = None
    followers_count: int | None = None
    following_count: int | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class Post:
    """A single status. Reblogs are kept as posts so they count toward fetch budgets."""

    id: str
    created_at: datetime
    is_reblog: bool = False
    in_reply_to_account_id: str | None = None

    account_id: str | None = None
    url: str | None = None
    content: str | None = None
    replies_count: int | None = None
    reblogs_count: int | None = None
    favourites_count: int | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class StatusPage:
    """One statuses page, newest-first, and whether it was served without auth."""

    posts: Sequence[Post]
    fell_back: bool = False

    def __len__(self) -> int:
        return len(self.posts)


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int):
        return str(value)
    return None


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    s = _coerce_str(value)
    if not s:
        return None
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def account_from_api(item: Any) -> Account:
    if not isinstance(item, Mapping):
        raise ApiResponseError(f"Expected an account object, got {type(item).__name__}")

    account_id = _coerce_id(item.get("id"))
    if not account_id:
        raise ApiResponseError("Account object is missing an id")

    username = _coerce_str(item.get("username")) or ""
    acct = _coerce_str(item.get("acct")) or username

    return Account(
        id=account_id,
        username=username,
        acct=acct,
        display_name=_coerce_str(item.get("display_name")),
        url=_coerce_str(item.get("url")),
        statuses_count=_coerce_int(item.get("statuses_count")),
        followers_count=_coerce_int(item.get("followers_count")),
        following_count=_coerce_int(item.get("following_count")),
        raw=dict(item),
    )


def post_from_api(item: Any) -> Post:
    """
    Build a Post from a status object.

    A status counts as a reblog when its `reblog` field holds an object.
    """
    if not isinstance(item, Mapping):
        raise ApiResponseError(f"Expected a status object, got {type(item).__name__}")

    post_id = _coerce_id(item.get("id"))
    if not post_id:
        raise ApiResponseError("Status object is missing an id")

    created_at = parse_timestamp(item.get("created_at"))
    if created_at is None:
        raise ApiResponseError(f"Status {post_id} has no parseable created_at")

    author = item.get("account")
    account_id = _coerce_id(author.get("id")) if isinstance(author, Mapping) else None

    return Post(
        id=post_id,
        created_at=created_at,
        is_reblog=isinstance(item.get("reblog"), Mapping),
        in_reply_to_account_id=_coerce_id(item.get("in_reply_to_account_id")),
        account_id=account_id,
        url=_coerce_str(item.get("url")),
        content=_coerce_str(item.get("content")),
        replies_count=_coerce_int(item.get("replies_count")),
        reblogs_count=_coerce_int(item.get("reblogs_count")),
        favourites_count=_coerce_int(item.get("favourites_count")),
        raw=dict(item),
    )


def posts_from_api(payload: Any) -> list[Post]:
    if not isinstance(payload, list):
        raise ApiResponseError(f"Expected a list of statuses, got {type(payload).__name__}")
    return [post_from_api(item) for item in payload]
