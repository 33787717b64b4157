"""Working-day arithmetic for upload windows and reminder days.

A working day is Monday to Friday. Public holidays are not taken into
account.
"""

from __future__ import annotations

from datetime import date, timedelta


def is_working_day(day: date) -> bool:
    return day.weekday() < 5


def working_day_number(day: date) -> int:
    """Return how many working days of ``day``'s month have passed up to and
    including ``day``.

    Weekends do not advance the counter, so a Saturday reports the same
    number as the Friday before it and a weekend before the first working
    day of the month reports 0.
    """
    count = 0
    cursor = day.replace(day=1)
    while cursor <= day:
        if is_working_day(cursor):
            count += 1
        cursor += timedelta(days=1)
    return count


def nth_working_day_of_month(year: int, month: int, n: int) -> date | None:
    """Return the date of the ``n``-th working day of the month.

    Returns ``None`` when the month has fewer than ``n`` working days; the
    walk never continues into the following month.
    """
    if n < 1:
        raise ValueError("n must be a positive integer")

    cursor = date(year, month, 1)
    count = 0
    while cursor.month == month:
        if is_working_day(cursor):
            count += 1
            if count == n:
                return cursor
        cursor += timedelta(days=1)
    return None


def is_nth_working_day(day: date, n: int) -> bool:
    if n < 1:
        raise ValueError("n must be a positive integer")
    return is_working_day(day) and working_day_number(day) == n


def working_days_in_month(year: int, month: int) -> int:
    cursor = date(year, month, 1)
    count = 0
    while cursor.month == month:
        if is_working_day(cursor):
            count += 1
        cursor += timedelta(days=1)
    return count
