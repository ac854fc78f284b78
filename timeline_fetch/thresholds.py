from __future__ import annotations

import calendar
from datetime import datetime, timezone

# Threshold that no post can predate: crawl the whole history.
ALL_HISTORY = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def months_before(moment: datetime, months: int) -> datetime:
    """
    Calendar month subtraction, clamping the day to the target month's length.

    months_before(2024-03-31, 1) == 2024-02-29.
    """
    if months < 0:
        raise ValueError("months must be >= 0")

    index = moment.year * 12 + (moment.month - 1) - int(months)
    year, month0 = divmod(index, 12)
    if year < 1:
        return ALL_HISTORY
    month = month0 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def initial_threshold(now: datetime, months: int, *, fetch_all: bool = False) -> datetime:
    if fetch_all:
        return ALL_HISTORY
    return months_before(now, months)


def explore_more_threshold(
    oldest: datetime | None, months: int, *, now: datetime | None = None
) -> datetime:
    """Threshold for continuing a crawl `months` past the oldest archived post."""
    anchor = oldest if oldest is not None else (now or utc_now())
    return months_before(anchor, months)
