from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from timeline_fetch.crawler import CrawlResult
from timeline_fetch.export_excel import _safe_excel_text, activity_counts, export_archive_workbook
from timeline_fetch.models import Account, posts_from_api
from timeline_fetch.offline import OFFLINE_ACCOUNT_ID, build_offline_statuses
from timeline_fetch.storage import SQLiteArchive


def _filled_store(store: SQLiteArchive) -> None:
    statuses = build_offline_statuses(40, newest=datetime(2024, 2, 10, 9, 0, tzinfo=timezone.utc))
    statuses[0]["content"] = "=HYPERLINK(\"http://evil\")"
    posts = posts_from_api(statuses)

    store.upsert_account(
        Account(id=OFFLINE_ACCOUNT_ID, username="pullup_log", acct="pullup_log"),
        instance="offline.invalid",
    )
    store.append_posts(OFFLINE_ACCOUNT_ID, posts)
    store.record_crawl(
        OFFLINE_ACCOUNT_ID,
        CrawlResult(
            posts=tuple(p for p in posts if not p.is_reblog),
            last_cursor=posts[-1].id,
            reached_threshold=False,
            fell_back=False,
            total_fetched=len(posts),
            pages=1,
            stop_reason="short_page",
        ),
        until=datetime(1970, 1, 1, tzinfo=timezone.utc),
    )


class TestExportExcel(unittest.TestCase):
    def test_exports_required_sheets(self) -> None:
        try:
            from openpyxl import load_workbook  # type: ignore[import-not-found]
        except Exception as e:  # pragma: no cover
            raise AssertionError("openpyxl is required for this test") from e

        with tempfile.TemporaryDirectory() as td:
            out_path = Path(td) / "archive.xlsx"

            with SQLiteArchive.open(":memory:") as store:
                _filled_store(store)
                written = export_archive_workbook(store, out_path, account_id=OFFLINE_ACCOUNT_ID)

            self.assertEqual(written, out_path)
            self.assertTrue(out_path.exists())

            wb = load_workbook(out_path, read_only=True)
            try:
                self.assertEqual(
                    wb.sheetnames,
                    ["posts", "daily_activity", "monthly_activity", "crawl_runs", "metadata"],
                )

                post_rows = list(wb["posts"].iter_rows(values_only=True))
                header = list(post_rows[0])
                self.assertIn("post_id", header)
                self.assertIn("content", header)
                # 40 statuses, 5 of them reblogs.
                self.assertEqual(len(post_rows) - 1, 35)

                content = post_rows[1][header.index("content")]
                self.assertTrue(str(content).startswith("'="))

                monthly = list(wb["monthly_activity"].iter_rows(values_only=True))
                self.assertEqual(monthly[0], ("month", "count"))
                self.assertEqual(sum(int(r[1]) for r in monthly[1:]), 35)

                runs = list(wb["crawl_runs"].iter_rows(values_only=True))
                self.assertEqual(len(runs) - 1, 1)

                meta = {r[0]: r[1] for r in wb["metadata"].iter_rows(values_only=True, min_row=2)}
                self.assertEqual(meta["account.acct"], "pullup_log")
                self.assertEqual(meta["counts.posts"], 35)
            finally:
                wb.close()

    def test_empty_archive_still_writes_workbook(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            out_path = Path(td) / "empty.xlsx"
            with SQLiteArchive.open(":memory:") as store:
                export_archive_workbook(store, out_path)
            self.assertTrue(out_path.exists())

    def test_activity_counts_bucket_by_utc_day_and_month(self) -> None:
        statuses = build_offline_statuses(3, newest=datetime(2024, 3, 2, 1, 0, tzinfo=timezone.utc), reblog_every=0)
        with SQLiteArchive.open(":memory:") as store:
            store.upsert_account(
                Account(id=OFFLINE_ACCOUNT_ID, username="pullup_log", acct="pullup_log"),
                instance="offline.invalid",
            )
            store.append_posts(OFFLINE_ACCOUNT_ID, posts_from_api(statuses))
            daily, monthly = activity_counts(store.posts())

        self.assertEqual(sorted(daily), ["2024-02-29", "2024-03-01", "2024-03-02"])
        self.assertEqual(monthly, {"2024-02": 1, "2024-03": 2})

    def test_safe_excel_text(self) -> None:
        self.assertEqual(_safe_excel_text("=1+1"), "'=1+1")
        self.assertEqual(_safe_excel_text("@user"), "'@user")
        self.assertEqual(_safe_excel_text("plain"), "plain")
        self.assertEqual(_safe_excel_text(7), "7")
        self.assertIsNone(_safe_excel_text(None))


if __name__ == "__main__":
    unittest.main()
