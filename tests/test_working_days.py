from __future__ import annotations

import unittest
from datetime import date

from zeitnachweis.services.working_days import (
    is_nth_working_day,
    is_working_day,
    nth_working_day_of_month,
    working_day_number,
    working_days_in_month,
)


class WorkingDayTests(unittest.TestCase):
    def test_weekends_are_not_working_days(self) -> None:
        self.assertFalse(is_working_day(date(2025, 3, 1)))
        self.assertFalse(is_working_day(date(2025, 3, 2)))
        self.assertTrue(is_working_day(date(2025, 3, 3)))

    def test_working_day_number_skips_leading_weekend(self) -> None:
        # 1 March 2025 is a Saturday.
        self.assertEqual(working_day_number(date(2025, 3, 1)), 0)
        self.assertEqual(working_day_number(date(2025, 3, 2)), 0)
        self.assertEqual(working_day_number(date(2025, 3, 3)), 1)

    def test_working_day_number_holds_over_weekend(self) -> None:
        self.assertEqual(working_day_number(date(2025, 3, 7)), 5)
        self.assertEqual(working_day_number(date(2025, 3, 8)), 5)
        self.assertEqual(working_day_number(date(2025, 3, 9)), 5)
        self.assertEqual(working_day_number(date(2025, 3, 10)), 6)

    def test_nth_working_day_of_month(self) -> None:
        self.assertEqual(nth_working_day_of_month(2025, 3, 1), date(2025, 3, 3))
        self.assertEqual(nth_working_day_of_month(2025, 3, 5), date(2025, 3, 7))
        self.assertEqual(nth_working_day_of_month(2025, 3, 21), date(2025, 3, 31))

    def test_nth_working_day_never_leaves_the_month(self) -> None:
        self.assertEqual(working_days_in_month(2025, 2), 20)
        self.assertIsNone(nth_working_day_of_month(2025, 2, 21))
        self.assertIsNone(nth_working_day_of_month(2025, 3, 22))

    def test_nth_working_day_rejects_non_positive_n(self) -> None:
        with self.assertRaises(ValueError):
            nth_working_day_of_month(2025, 3, 0)
        with self.assertRaises(ValueError):
            is_nth_working_day(date(2025, 3, 3), -1)

    def test_is_nth_working_day_matches_number_and_weekday(self) -> None:
        self.assertTrue(is_nth_working_day(date(2025, 3, 7), 5))
        self.assertFalse(is_nth_working_day(date(2025, 3, 8), 5))
        self.assertFalse(is_nth_working_day(date(2025, 3, 10), 5))

    def test_agrees_with_nth_working_day_for_every_day_of_month(self) -> None:
        for n in range(1, working_days_in_month(2025, 6) + 1):
            target = nth_working_day_of_month(2025, 6, n)
            self.assertIsNotNone(target)
            self.assertTrue(is_nth_working_day(target, n))  # type: ignore[arg-type]
            self.assertEqual(working_day_number(target), n)  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
