from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

OFFLINE_INSTANCE = "offline.invalid"
OFFLINE_ACCOUNT_ID = "109000000000000001"
OFFLINE_USERNAME = "pullup_log"

_OFFLINE_TOPICS = (
    "Pull-up ladder today, five rounds, strict reps.",
    "Rest day. Mobility work and a long walk.",
    "Handstand line drills against the wall.",
    "Dips and push-ups superset, then hollow holds.",
    "Tried a new route to the park bars.",
)


def _offline_account() -> dict[str, Any]:
    return {
        "id": OFFLINE_ACCOUNT_ID,
        "username": OFFLINE_USERNAME,
        "acct": OFFLINE_USERNAME,
        "display_name": "Pull-up Log",
        "url": f"https://{OFFLINE_INSTANCE}/@{OFFLINE_USERNAME}",
        "statuses_count": 0,
        "followers_count": 12,
        "following_count": 34,
    }


def build_offline_statuses(
    count: int = 95,
    *,
    newest: datetime | None = None,
    reblog_every: int = 7,
) -> list[dict[str, Any]]:
    """
    Newest-first synthetic statuses, one per day, every `reblog_every`-th a reblog.

    Ids decrease with age like real snowflake ids.
    """
    top = newest or datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
    account = _offline_account()
    out: list[dict[str, Any]] = []
    for i in range(int(count)):
        sid = str(110000000000000000 - i)
        created = top - timedelta(days=i)
        status: dict[str, Any] = {
            "id": sid,
            "created_at": created.isoformat().replace("+00:00", "Z"),
            "content": f"<p>{_OFFLINE_TOPICS[i % len(_OFFLINE_TOPICS)]}</p>",
            "url": f"https://{OFFLINE_INSTANCE}/@{OFFLINE_USERNAME}/{sid}",
            "replies_count": i % 3,
            "reblogs_count": i % 2,
            "favourites_count": i % 5,
            "in_reply_to_account_id": None,
            "account": account,
            "reblog": None,
        }
        if reblog_every > 0 and i % reblog_every == reblog_every - 1:
            status["reblog"] = {"id": f"r{sid}", "content": "<p>boosted</p>"}
        out.append(status)
    return out


class OfflineInstance:
    """
    In-process stand-in for a Mastodon instance, served through httpx.MockTransport.

    With `statuses_require_public=True` an authenticated statuses request gets a
    403, so the permission fallback path runs on every page.
    """

    def __init__(
        self,
        statuses: list[dict[str, Any]] | None = None,
        *,
        statuses_require_public: bool = False,
    ) -> None:
        self.statuses = statuses if statuses is not None else build_offline_statuses()
        self.statuses_require_public = bool(statuses_require_public)
        self.requests: list[httpx.Request] = []

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handle))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        authed = "authorization" in request.headers

        if path == "/api/v1/accounts/verify_credentials":
            if not authed:
                return _json(401, {"error": "The access token is invalid"})
            return _json(200, self._account())

        if path == "/api/v1/accounts/lookup":
            acct = request.url.params.get("acct", "")
            if acct.split("@")[0] != OFFLINE_USERNAME:
                return _json(404, {"error": "Record not found"})
            return _json(200, self._account())

        if path == f"/api/v1/accounts/{OFFLINE_ACCOUNT_ID}/statuses":
            if authed and self.statuses_require_public:
                return _json(403, {"error": "This action is not allowed"})
            return _json(200, self._page(request))

        if path == "/api/v2/search":
            return _json(200, {"accounts": [], "hashtags": [], "statuses": self._search(request)})

        return _json(404, {"error": "Record not found"})

    def _account(self) -> dict[str, Any]:
        account = _offline_account()
        account["statuses_count"] = len(self.statuses)
        return account

    def _page(self, request: httpx.Request) -> list[dict[str, Any]]:
        limit = int(request.url.params.get("limit", "20"))
        max_id = request.url.params.get("max_id")
        items = self.statuses
        if max_id:
            items = [s for s in items if int(s["id"]) < int(max_id)]
        return items[:limit]

    def _search(self, request: httpx.Request) -> list[dict[str, Any]]:
        q = request.url.params.get("q", "")
        limit = int(request.url.params.get("limit", "20"))
        terms = [t for t in q.split() if not t.startswith("from:")]
        needle = " ".join(terms).casefold()
        hits = [
            s
            for s in self.statuses
            if s.get("reblog") is None and needle in str(s.get("content", "")).casefold()
        ]
        return hits[:limit]


def _json(status: int, body: Any) -> httpx.Response:
    return httpx.Response(
        status,
        content=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )
