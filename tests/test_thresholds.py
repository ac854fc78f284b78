from __future__ import annotations

import unittest
from datetime import datetime, timezone

from timeline_fetch.thresholds import (
    ALL_HISTORY,
    explore_more_threshold,
    initial_threshold,
    months_before,
)


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestMonthsBefore(unittest.TestCase):
    def test_plain_subtraction(self) -> None:
        self.assertEqual(months_before(_utc(2024, 6, 15, 8, 30), 3), _utc(2024, 3, 15, 8, 30))

    def test_crosses_year_boundary(self) -> None:
        self.assertEqual(months_before(_utc(2024, 2, 10), 3), _utc(2023, 11, 10))

    def test_clamps_to_month_end(self) -> None:
        self.assertEqual(months_before(_utc(2024, 3, 31), 1), _utc(2024, 2, 29))
        self.assertEqual(months_before(_utc(2023, 5, 31), 3), _utc(2023, 2, 28))

    def test_zero_and_negative(self) -> None:
        self.assertEqual(months_before(_utc(2024, 3, 31), 0), _utc(2024, 3, 31))
        with self.assertRaises(ValueError):
            months_before(_utc(2024, 3, 31), -1)


class TestThresholds(unittest.TestCase):
    def test_initial_threshold(self) -> None:
        now = _utc(2025, 1, 31, 12)
        self.assertEqual(initial_threshold(now, 3), _utc(2024, 10, 31, 12))
        self.assertEqual(initial_threshold(now, 3, fetch_all=True), ALL_HISTORY)

    def test_explore_more_anchors_on_oldest_post(self) -> None:
        oldest = _utc(2024, 10, 2)
        self.assertEqual(explore_more_threshold(oldest, 3), _utc(2024, 7, 2))

    def test_explore_more_without_archive_uses_now(self) -> None:
        now = _utc(2025, 1, 31)
        self.assertEqual(explore_more_threshold(None, 2, now=now), _utc(2024, 11, 30))


if __name__ == "__main__":
    unittest.main()
