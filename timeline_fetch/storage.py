from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .crawler import CrawlResult
from .errors import StorageError
from .models import Account, Post, parse_timestamp
from .storage_schema import initialize_sqlite


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _require(value: str | None, name: str) -> str:
    v = (value or "").strip()
    if not v:
        raise ValueError(f"{name} must be non-empty")
    return v


@dataclass(frozen=True)
class CrawlState:
    account_id: str
    last_cursor: str | None
    fell_back: bool
    updated_at: str


@dataclass(frozen=True)
class ArchivedAccount:
    account_id: str
    instance: str
    acct: str
    username: str
    display_name: str | None
    updated_at: str


@dataclass(frozen=True)
class ArchivedPost:
    post_id: str
    account_id: str
    seq: int
    created_at: str
    in_reply_to_account_id: str | None
    url: str | None
    raw_json: str
    fetched_at: str


@dataclass(frozen=True)
class CrawlRunRecord:
    id: int
    account_id: str
    session_id: str | None
    config_hash: str | None
    until: str
    start_cursor: str | None
    last_cursor: str | None
    pages: int
    total_fetched: int
    kept: int
    reached_threshold: bool
    fell_back: bool
    stop_reason: str
    created_at: str


class SQLiteArchive:
    """
    Caller-side archive of crawled posts and per-account crawl cursors.

    The fetcher itself is stateless; this store is what lets the CLI continue a
    crawl from where the previous invocation stopped.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteArchive":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteArchive":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def upsert_account(self, account: Account, *, instance: str) -> None:
        inst = _require(instance, "instance")
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO accounts(account_id, instance, acct, username, display_name, raw_json, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id) DO UPDATE SET
                      instance = excluded.instance,
                      acct = excluded.acct,
                      username = excluded.username,
                      display_name = excluded.display_name,
                      raw_json = excluded.raw_json,
                      updated_at = excluded.updated_at
                    """.strip(),
                    (
                        account.id,
                        inst,
                        account.acct,
                        account.username,
                        account.display_name,
                        _json_dumps(dict(account.raw)),
                        _utc_now_iso(),
                    ),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert account: {e}") from e

    def get_account(self, account_id: str) -> ArchivedAccount | None:
        aid = _require(account_id, "account_id")
        row = self._conn.execute(
            "SELECT account_id, instance, acct, username, display_name, updated_at FROM accounts WHERE account_id = ?",
            (aid,),
        ).fetchone()
        if row is None:
            return None
        return ArchivedAccount(
            account_id=str(row["account_id"]),
            instance=str(row["instance"]),
            acct=str(row["acct"]),
            username=str(row["username"]),
            display_name=str(row["display_name"]) if row["display_name"] is not None else None,
            updated_at=str(row["updated_at"]),
        )

    def append_posts(self, account_id: str, posts: Iterable[Post]) -> int:
        """
        Append posts after the account's existing ones, in the given order.

        Reblogs and already archived post ids are skipped. Returns the number inserted.
        """
        aid = _require(account_id, "account_id")
        fetched_at = _utc_now_iso()

        try:
            with self._conn:
                row = self._conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) AS n FROM posts WHERE account_id = ?",
                    (aid,),
                ).fetchone()
                seq = int(row["n"]) if row is not None else 0

                inserted = 0
                for post in posts:
                    if post.is_reblog:
                        continue
                    cur = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO posts(
                          post_id, account_id, seq, created_at, in_reply_to_account_id,
                          url, raw_json, fetched_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """.strip(),
                        (
                            post.id,
                            aid,
                            seq + 1,
                            post.created_at.astimezone(timezone.utc).isoformat(),
                            post.in_reply_to_account_id,
                            post.url,
                            _json_dumps(dict(post.raw)),
                            fetched_at,
                        ),
                    )
                    if cur.rowcount:
                        seq += 1
                        inserted += 1
        except sqlite3.IntegrityError as e:
            raise StorageError(
                "Failed to append posts; ensure the account is stored first"
            ) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to append posts: {e}") from e

        return inserted

    def load_cursor(self, account_id: str) -> CrawlState | None:
        aid = _require(account_id, "account_id")
        row = self._conn.execute(
            "SELECT account_id, last_cursor, fell_back, updated_at FROM crawl_state WHERE account_id = ?",
            (aid,),
        ).fetchone()
        if row is None:
            return None
        return CrawlState(
            account_id=str(row["account_id"]),
            last_cursor=str(row["last_cursor"]) if row["last_cursor"] is not None else None,
            fell_back=bool(row["fell_back"]),
            updated_at=str(row["updated_at"]),
        )

    def save_cursor(self, account_id: str, cursor: str | None, *, fell_back: bool) -> None:
        aid = _require(account_id, "account_id")
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO crawl_state(account_id, last_cursor, fell_back, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(account_id) DO UPDATE SET
                      last_cursor = excluded.last_cursor,
                      fell_back = excluded.fell_back,
                      updated_at = excluded.updated_at
                    """.strip(),
                    (aid, cursor, 1 if fell_back else 0, _utc_now_iso()),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError("Failed to save cursor; ensure the account is stored first") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to save cursor: {e}") from e

    def record_crawl(
        self,
        account_id: str,
        result: CrawlResult,
        *,
        until: datetime,
        start_cursor: str | None = None,
        session_id: str | None = None,
        config_hash: str | None = None,
    ) -> None:
        aid = _require(account_id, "account_id")
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO crawl_runs(
                      account_id, session_id, config_hash, until, start_cursor, last_cursor,
                      pages, total_fetched, kept, reached_threshold, fell_back, stop_reason, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """.strip(),
                    (
                        aid,
                        session_id,
                        config_hash,
                        until.isoformat(),
                        start_cursor,
                        result.last_cursor,
                        int(result.pages),
                        int(result.total_fetched),
                        len(result.posts),
                        1 if result.reached_threshold else 0,
                        1 if result.fell_back else 0,
                        result.stop_reason,
                        _utc_now_iso(),
                    ),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to record crawl run: {e}") from e

    def posts(self, account_id: str | None = None, *, limit: int | None = None) -> list[ArchivedPost]:
        """Archived posts, newest first within each account; ties keep insertion order."""
        if limit is not None and limit <= 0:
            return []

        sql = """
        SELECT post_id, account_id, seq, created_at, in_reply_to_account_id, url, raw_json, fetched_at
        FROM posts
        """.strip()
        params: list[Any] = []
        if account_id is not None:
            sql += " WHERE account_id = ?"
            params.append(_require(account_id, "account_id"))
        sql += " ORDER BY account_id, created_at DESC, seq"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        rows = self._conn.execute(sql, tuple(params)).fetchall()
        return [
            ArchivedPost(
                post_id=str(r["post_id"]),
                account_id=str(r["account_id"]),
                seq=int(r["seq"]),
                created_at=str(r["created_at"]),
                in_reply_to_account_id=(
                    str(r["in_reply_to_account_id"]) if r["in_reply_to_account_id"] is not None else None
                ),
                url=str(r["url"]) if r["url"] is not None else None,
                raw_json=str(r["raw_json"]),
                fetched_at=str(r["fetched_at"]),
            )
            for r in rows
        ]

    def oldest_post_created_at(self, account_id: str) -> datetime | None:
        aid = _require(account_id, "account_id")
        row = self._conn.execute(
            "SELECT MIN(created_at) AS oldest FROM posts WHERE account_id = ?",
            (aid,),
        ).fetchone()
        if row is None or row["oldest"] is None:
            return None
        return parse_timestamp(row["oldest"])

    def post_count(self, account_id: str | None = None) -> int:
        if account_id is None:
            row = self._conn.execute("SELECT COUNT(1) AS n FROM posts").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(1) AS n FROM posts WHERE account_id = ?",
                (_require(account_id, "account_id"),),
            ).fetchone()
        return int(row["n"]) if row is not None else 0

    def crawl_runs(self, account_id: str | None = None) -> list[CrawlRunRecord]:
        sql = """
        SELECT id, account_id, session_id, config_hash, until, start_cursor, last_cursor,
               pages, total_fetched, kept, reached_threshold, fell_back, stop_reason, created_at
        FROM crawl_runs
        """.strip()
        params: tuple[Any, ...] = ()
        if account_id is not None:
            sql += " WHERE account_id = ?"
            params = (_require(account_id, "account_id"),)
        sql += " ORDER BY id"

        rows = self._conn.execute(sql, params).fetchall()
        return [
            CrawlRunRecord(
                id=int(r["id"]),
                account_id=str(r["account_id"]),
                session_id=str(r["session_id"]) if r["session_id"] is not None else None,
                config_hash=str(r["config_hash"]) if r["config_hash"] is not None else None,
                until=str(r["until"]),
                start_cursor=str(r["start_cursor"]) if r["start_cursor"] is not None else None,
                last_cursor=str(r["last_cursor"]) if r["last_cursor"] is not None else None,
                pages=int(r["pages"]),
                total_fetched=int(r["total_fetched"]),
                kept=int(r["kept"]),
                reached_threshold=bool(r["reached_threshold"]),
                fell_back=bool(r["fell_back"]),
                stop_reason=str(r["stop_reason"]),
                created_at=str(r["created_at"]),
            )
            for r in rows
        ]
