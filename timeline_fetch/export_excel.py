from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd

from .errors import ExportError
from .models import parse_timestamp
from .storage import ArchivedPost, SQLiteArchive
from .storage_schema import SCHEMA_VERSION

_EXCEL_FORMULA_PREFIXES = ("=", "+", "-", "@")

_SHEETS = ("posts", "daily_activity", "monthly_activity", "crawl_runs", "metadata")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_excel_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return str(value)
    s = value
    if not s:
        return s
    if s.startswith(_EXCEL_FORMULA_PREFIXES):
        return "'" + s
    return s


def _loads_json_object(raw: str) -> dict[str, Any]:
    try:
        val = json.loads(raw)
    except ValueError as e:
        raise ExportError(f"Failed to parse stored JSON: {e}") from e
    if not isinstance(val, dict):
        raise ExportError("Stored JSON was not an object")
    return val


def _post_row(post: ArchivedPost) -> dict[str, Any]:
    raw = _loads_json_object(post.raw_json)
    return {
        "account_id": _safe_excel_text(post.account_id),
        "seq": post.seq,
        "post_id": _safe_excel_text(post.post_id),
        "created_at": _safe_excel_text(post.created_at),
        "url": _safe_excel_text(post.url),
        "in_reply_to_account_id": _safe_excel_text(post.in_reply_to_account_id),
        "replies_count": raw.get("replies_count"),
        "reblogs_count": raw.get("reblogs_count"),
        "favourites_count": raw.get("favourites_count"),
        "content": _safe_excel_text(raw.get("content")),
        "fetched_at": _safe_excel_text(post.fetched_at),
    }


def activity_counts(posts: list[ArchivedPost]) -> tuple[Counter[str], Counter[str]]:
    """Per-day (YYYY-MM-DD) and per-month (YYYY-MM) post counts, in UTC."""
    daily: Counter[str] = Counter()
    monthly: Counter[str] = Counter()
    for post in posts:
        ts = parse_timestamp(post.created_at)
        if ts is None:
            continue
        daily[ts.strftime("%Y-%m-%d")] += 1
        monthly[ts.strftime("%Y-%m")] += 1
    return daily, monthly


def export_archive_workbook(
    store: SQLiteArchive,
    out_path: str | Path,
    *,
    account_id: str | None = None,
) -> Path:
    """
    Write archived posts, activity counts and crawl runs to an .xlsx workbook.
    """
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    posts = store.posts(account_id)
    runs = store.crawl_runs(account_id)
    daily, monthly = activity_counts(posts)

    post_rows = [_post_row(p) for p in posts]
    daily_rows = [{"date": d, "count": int(n)} for d, n in sorted(daily.items())]
    monthly_rows = [{"month": m, "count": int(n)} for m, n in sorted(monthly.items())]
    run_rows = [
        {
            "id": r.id,
            "account_id": _safe_excel_text(r.account_id),
            "session_id": _safe_excel_text(r.session_id),
            "until": _safe_excel_text(r.until),
            "start_cursor": _safe_excel_text(r.start_cursor),
            "last_cursor": _safe_excel_text(r.last_cursor),
            "pages": r.pages,
            "total_fetched": r.total_fetched,
            "kept": r.kept,
            "reached_threshold": r.reached_threshold,
            "fell_back": r.fell_back,
            "stop_reason": _safe_excel_text(r.stop_reason),
            "created_at": _safe_excel_text(r.created_at),
        }
        for r in runs
    ]

    account = store.get_account(account_id) if account_id is not None else None
    meta_rows: list[dict[str, Any]] = [
        {"key": "exported_at_utc", "value": _safe_excel_text(_utc_now_iso())},
        {"key": "sqlite_schema_version", "value": int(SCHEMA_VERSION)},
        {"key": "filter.account_id", "value": _safe_excel_text(account_id)},
        {"key": "account.acct", "value": _safe_excel_text(account.acct if account else None)},
        {"key": "account.instance", "value": _safe_excel_text(account.instance if account else None)},
        {"key": "counts.posts", "value": len(post_rows)},
        {"key": "counts.active_days", "value": len(daily_rows)},
        {"key": "counts.crawl_runs", "value": len(run_rows)},
        {"key": "output_path", "value": _safe_excel_text(str(out))},
    ]

    frames = {
        "posts": pd.DataFrame(post_rows),
        "daily_activity": pd.DataFrame(daily_rows, columns=["date", "count"]),
        "monthly_activity": pd.DataFrame(monthly_rows, columns=["month", "count"]),
        "crawl_runs": pd.DataFrame(run_rows),
        "metadata": pd.DataFrame(meta_rows),
    }

    try:
        with pd.ExcelWriter(out, engine="openpyxl") as writer:
            for name in _SHEETS:
                frames[name].to_excel(writer, sheet_name=name, index=False)

            wb = writer.book
            for name in _SHEETS:
                if name in wb.sheetnames:
                    wb[name].freeze_panes = "A2"
    except Exception as e:
        raise ExportError(f"Failed to write workbook: {out}: {e}") from e

    return out
