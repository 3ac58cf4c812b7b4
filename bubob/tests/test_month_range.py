import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from bubob.month_range import (
    current_month_token,
    from_storage,
    parse_month_value,
    resolve_day_range,
    resolve_month,
    resolve_month_or_current,
    to_storage,
)

JAKARTA = ZoneInfo("Asia/Jakarta")


class MonthRangeTests(unittest.TestCase):
    def test_leap_february_bounds(self) -> None:
        start, end = resolve_month("2024-02", JAKARTA)

        self.assertEqual(start, datetime(2024, 2, 1, 0, 0, 0, tzinfo=JAKARTA))
        self.assertEqual(end, datetime(2024, 2, 29, 23, 59, 59, 999999, tzinfo=JAKARTA))

    def test_non_leap_february_and_december(self) -> None:
        _, february_end = resolve_month("2023-02", JAKARTA)
        december_start, december_end = resolve_month("2023-12", JAKARTA)

        self.assertEqual(february_end.date(), date(2023, 2, 28))
        self.assertEqual(december_start.date(), date(2023, 12, 1))
        self.assertEqual(december_end.date(), date(2023, 12, 31))

    def test_year_is_taken_literally(self) -> None:
        start, end = resolve_month("0024-02", JAKARTA)

        self.assertEqual(start.year, 24)
        self.assertEqual(end.date(), date(24, 2, 29))

    def test_resolution_is_idempotent(self) -> None:
        self.assertEqual(resolve_month("2024-07", JAKARTA), resolve_month("2024-07", JAKARTA))

    def test_invalid_tokens(self) -> None:
        for token in ("2024-13", "2024-00", "2024-2", "24-02", "2024/02", ""):
            with self.subTest(token=token):
                with self.assertRaises(ValueError):
                    resolve_month(token, JAKARTA)

    def test_current_month_uses_reporting_timezone(self) -> None:
        # 18:00 UTC on Jan 31 is already Feb 1 in Jakarta
        now = datetime(2024, 1, 31, 18, 0, tzinfo=timezone.utc)

        self.assertEqual(current_month_token(now, JAKARTA), "2024-02")
        token, start, _ = resolve_month_or_current(None, JAKARTA, now=now)
        self.assertEqual(token, "2024-02")
        self.assertEqual(start, datetime(2024, 2, 1, tzinfo=JAKARTA))

    def test_explicit_month_ignores_now(self) -> None:
        now = datetime(2030, 5, 5, tzinfo=timezone.utc)

        token, start, _ = resolve_month_or_current("2024-03", JAKARTA, now=now)

        self.assertEqual(token, "2024-03")
        self.assertEqual(start.month, 3)

    def test_parse_month_value_accepts_stored_date(self) -> None:
        self.assertEqual(parse_month_value("2024-05"), date(2024, 5, 1))
        self.assertEqual(parse_month_value("2024-05-17"), date(2024, 5, 1))
        with self.assertRaises(ValueError):
            parse_month_value("May 2024")

    def test_day_range_is_inclusive(self) -> None:
        start, end = resolve_day_range("2024-03-01", "2024-03-01", JAKARTA)

        self.assertEqual(start, datetime(2024, 3, 1, tzinfo=JAKARTA))
        self.assertEqual(end, datetime(2024, 3, 1, 23, 59, 59, 999999, tzinfo=JAKARTA))

    def test_day_range_optional_and_ordered(self) -> None:
        self.assertEqual(resolve_day_range(None, None, JAKARTA), (None, None))
        with self.assertRaises(ValueError):
            resolve_day_range("2024-03-02", "2024-03-01", JAKARTA)

    def test_storage_round_trip(self) -> None:
        local = datetime(2024, 2, 1, 6, 30)

        stored = to_storage(local, JAKARTA)

        self.assertEqual(stored, datetime(2024, 1, 31, 23, 30))
        self.assertIsNone(stored.tzinfo)
        self.assertEqual(from_storage(stored, JAKARTA), local.replace(tzinfo=JAKARTA))

    def test_storage_clamps_at_calendar_edges(self) -> None:
        start, _ = resolve_month("0001-01", JAKARTA)
        _, end = resolve_month("9999-12", ZoneInfo("America/New_York"))

        self.assertEqual(end, datetime(9999, 12, 31, 23, 59, 59, 999999, tzinfo=end.tzinfo))
        self.assertEqual(to_storage(start, JAKARTA), datetime.min)
        self.assertEqual(to_storage(end, ZoneInfo("America/New_York")), datetime.max)
        self.assertEqual(from_storage(datetime.max, JAKARTA).year, 9999)


if __name__ == "__main__":
    unittest.main()
