from datetime import datetime, timedelta, timezone

import pytest

from mail_dispatcher.models import RecurrenceRule
from mail_dispatcher.recurrence import (
    delay_minutes,
    next_occurrence,
    past_end_date,
    quiet_hours_window,
    retry_delay,
)

UTC = timezone.utc


def test_delay_minutes_doubles_and_caps():
    assert [delay_minutes(n) for n in range(7)] == [2, 4, 8, 16, 32, 60, 60]
    assert delay_minutes(50) == 60
    assert delay_minutes(-3) == 2
    assert retry_delay(1) == timedelta(minutes=4)


def test_daily_interval():
    rule = RecurrenceRule(pattern="daily", interval=2)
    current = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    assert next_occurrence(current, rule) == datetime(2025, 3, 12, 9, 0, tzinfo=UTC)


def test_weekly_days_of_week():
    rule = RecurrenceRule(pattern="weekly", days_of_week=[0, 2, 4])
    wednesday = datetime(2025, 1, 15, 9, 0, tzinfo=UTC)
    friday = datetime(2025, 1, 17, 9, 0, tzinfo=UTC)
    monday = datetime(2025, 1, 20, 9, 0, tzinfo=UTC)

    assert next_occurrence(wednesday, rule) == friday
    assert next_occurrence(friday, rule) == monday


def test_weekly_without_days_uses_interval():
    rule = RecurrenceRule(pattern="weekly", interval=2)
    current = datetime(2025, 1, 15, 9, 0, tzinfo=UTC)
    assert next_occurrence(current, rule) == current + timedelta(weeks=2)


def test_monthly_clamps_to_month_end():
    rule = RecurrenceRule(pattern="monthly", day_of_month=31)
    january = datetime(2025, 1, 31, 8, 30, tzinfo=UTC)
    february = next_occurrence(january, rule)
    assert february == datetime(2025, 2, 28, 8, 30, tzinfo=UTC)
    # the pinned day comes back once the month is long enough
    assert next_occurrence(february, rule) == datetime(2025, 3, 31, 8, 30, tzinfo=UTC)


def test_yearly_on_leap_day():
    rule = RecurrenceRule(pattern="yearly")
    leap = datetime(2024, 2, 29, 12, 0, tzinfo=UTC)
    assert next_occurrence(leap, rule) == datetime(2025, 2, 28, 12, 0, tzinfo=UTC)


def test_unknown_pattern_ends_recurrence():
    rule = RecurrenceRule(pattern="hourly")
    assert next_occurrence(datetime(2025, 1, 1, tzinfo=UTC), rule) is None


def test_daily_keeps_local_wall_clock_across_dst():
    rule = RecurrenceRule(pattern="daily")
    # 09:00 Europe/Rome the day before the spring-forward switch
    before = datetime(2025, 3, 29, 8, 0, tzinfo=UTC)
    after = next_occurrence(before, rule, "Europe/Rome")
    assert after == datetime(2025, 3, 30, 7, 0, tzinfo=UTC)


def test_past_end_date():
    end = datetime(2025, 1, 3, 9, 0, tzinfo=UTC)
    rule = RecurrenceRule(pattern="daily", end_date=end)
    assert not past_end_date(end, rule)
    assert past_end_date(end + timedelta(seconds=1), rule)
    assert not past_end_date(end + timedelta(days=10), RecurrenceRule(pattern="daily"))


@pytest.mark.parametrize(
    "now, expected_quiet, expected_next",
    [
        (datetime(2025, 1, 1, 23, 0, tzinfo=UTC), True, datetime(2025, 1, 2, 8, 0, tzinfo=UTC)),
        (datetime(2025, 1, 2, 7, 59, tzinfo=UTC), True, datetime(2025, 1, 2, 8, 0, tzinfo=UTC)),
        (datetime(2025, 1, 2, 8, 0, tzinfo=UTC), False, None),
        (datetime(2025, 1, 2, 12, 0, tzinfo=UTC), False, None),
    ],
)
def test_overnight_quiet_window(now, expected_quiet, expected_next):
    in_quiet, next_allowed = quiet_hours_window(now, "22:00", "08:00", "UTC")
    assert in_quiet is expected_quiet
    assert next_allowed == (expected_next or now)


def test_same_day_quiet_window():
    now = datetime(2025, 1, 2, 13, 30, tzinfo=UTC)
    assert quiet_hours_window(now, "12:00", "14:00") == (True, datetime(2025, 1, 2, 14, 0, tzinfo=UTC))
    assert quiet_hours_window(now, "14:00", "16:00") == (False, now)


def test_empty_quiet_window_never_active():
    now = datetime(2025, 1, 2, 10, 0, tzinfo=UTC)
    assert quiet_hours_window(now, "10:00", "10:00") == (False, now)


def test_quiet_window_in_recipient_timezone():
    # 22:30 in New York is 03:30 UTC the next day (EST, UTC-5)
    now = datetime(2025, 1, 10, 3, 30, tzinfo=UTC)
    in_quiet, next_allowed = quiet_hours_window(now, "22:00", "07:00", "America/New_York")
    assert in_quiet is True
    assert next_allowed == datetime(2025, 1, 10, 12, 0, tzinfo=UTC)
