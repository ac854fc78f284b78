from __future__ import annotations

from typing import Any, Mapping

import httpx

from .config_schema import FetchConfig, normalize_instance
from .errors import ApiResponseError, AuthRequiredError, HttpError
from .http_retry import is_retryable_http_error, parse_retry_after
from .models import Account, Post, StatusPage, account_from_api, posts_from_api
from .retry import OnRetryFn, RetryConfig, RetryEvent, SleepFn, call_with_retries
from .run_log import RunLogger

DEFAULT_PAGE_LIMIT = 40
PERMISSION_FALLBACK_STATUSES = (401, 403)


def retry_config_from_fetch(fetch: FetchConfig) -> RetryConfig:
    base = float(fetch.base_backoff_ms) / 1000.0
    retries = int(fetch.max_retries)
    return RetryConfig(
        max_retries=retries,
        base_delay_seconds=base,
        # The largest backoff the retry budget can reach, so doubling is never clipped.
        max_delay_seconds=base * (2 ** max(0, retries - 1)),
    )


def _clean_params(params: Mapping[str, Any] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = str(value)
    return out


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return "Unknown error"

    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, str) and err.strip():
        return err.strip()
    return f"HTTP error {response.status_code}"


class MastodonApi:
    """
    Request layer for a Mastodon-compatible REST API.

    Rate-limited (429) GETs are retried with backoff; every other non-2xx status
    raises HttpError. Transport errors from httpx propagate unchanged.
    """

    def __init__(
        self,
        instance: str,
        token: str | None = None,
        *,
        client: httpx.Client | None = None,
        retry: RetryConfig | None = None,
        timeout_seconds: float = 30.0,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        host = normalize_instance(instance)
        if not host:
            raise ValueError("instance must be a non-empty host name")

        self._instance = host
        self._base_url = f"https://{host}/api/"
        self._token = (token or "").strip() or None
        self._retry = retry or RetryConfig()
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn
        self._logger = logger

        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout_seconds)

    @property
    def instance(self) -> str:
        return self._instance

    @property
    def has_token(self) -> bool:
        return self._token is not None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "MastodonApi":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def url_for(self, endpoint: str) -> str:
        return self._base_url + (endpoint or "").lstrip("/")

    def fetch_page(
        self,
        endpoint: str,
        params: Mapping[str, Any] | None = None,
        *,
        use_auth: bool = True,
    ) -> Any:
        """
        GET an API endpoint and return the parsed JSON body.

        The bearer token is sent only when one is configured and use_auth is true.
        """
        url = self.url_for(endpoint)
        query = _clean_params(params)

        def _do_call() -> Any:
            return self._get_once(url, query, use_auth=use_auth)

        return call_with_retries(
            _do_call,
            cfg=self._retry,
            is_retryable=is_retryable_http_error,
            operation=f"GET {endpoint}",
            on_retry=self._handle_retry,
            sleep_fn=self._sleep_fn,
            context_url=url,
        )

    def verify_credentials(self) -> Account:
        if not self._token:
            raise AuthRequiredError("An access token is required to verify credentials")
        return account_from_api(self.fetch_page("v1/accounts/verify_credentials"))

    def lookup_account(self, handle: str) -> Account:
        acct = (handle or "").strip().lstrip("@")
        if not acct:
            raise ValueError("handle must be non-empty")
        return account_from_api(self.fetch_page("v1/accounts/lookup", {"acct": acct}))

    def get_statuses_page(
        self,
        account_id: str,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> StatusPage:
        """
        Fetch up to `limit` statuses older than `cursor`.

        A 401/403 on the authenticated request is retried once without auth and
        the page is flagged fell_back. Other errors propagate.
        """
        aid = (account_id or "").strip()
        if not aid:
            raise ValueError("account_id must be non-empty")

        endpoint = f"v1/accounts/{aid}/statuses"
        params: dict[str, Any] = {"limit": int(limit)}
        if cursor:
            params["max_id"] = cursor

        try:
            payload = self.fetch_page(endpoint, params)
        except HttpError as e:
            if e.status not in PERMISSION_FALLBACK_STATUSES:
                raise
            if self._logger is not None:
                self._logger.warning(
                    "statuses_permission_fallback",
                    status=e.status,
                    message=e.message,
                    cursor=cursor,
                )
            payload = self.fetch_page(endpoint, params, use_auth=False)
            return StatusPage(posts=posts_from_api(payload), fell_back=True)

        return StatusPage(posts=posts_from_api(payload), fell_back=False)

    def search_statuses(self, query: str, author_handle: str, limit: int = 20) -> list[Post]:
        """Single unretried search scoped to one author with a `from:` prefix."""
        author = (author_handle or "").strip().lstrip("@")
        params = {
            "q": f"from:{author} {query}",
            "type": "statuses",
            "resolve": True,
            "limit": int(limit),
        }
        body = self._get_once(self.url_for("v2/search"), _clean_params(params), use_auth=True)
        statuses = body.get("statuses") if isinstance(body, dict) else None
        return posts_from_api(statuses if statuses is not None else [])

    def _get_once(self, url: str, params: Mapping[str, str], *, use_auth: bool) -> Any:
        headers = {"Accept": "application/json"}
        if self._token and use_auth:
            headers["Authorization"] = f"Bearer {self._token}"

        response = self._client.get(url, params=params, headers=headers)

        if not response.is_success:
            raise HttpError(
                response.status_code,
                _error_message(response),
                url=url,
                retry_after=parse_retry_after(response.headers),
            )

        try:
            return response.json()
        except ValueError as e:
            raise ApiResponseError(f"Response from {url} is not valid JSON: {e}") from e

    def _handle_retry(self, event: RetryEvent) -> None:
        if self._logger is not None:
            self._logger.warning(
                "rate_limited_retry",
                operation=event.operation,
                failure_attempt=event.failure_attempt,
                max_attempts=event.max_attempts,
                delay_seconds=event.delay_seconds,
                retry_after_seconds=event.retry_after_seconds,
            )
        if self._on_retry is not None:
            self._on_retry(event)
