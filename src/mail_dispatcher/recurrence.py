# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Backoff and calendar arithmetic shared by the processors.

Everything here is pure: no I/O, no clock reads unless a caller passes
``now``. Recurrence steps are computed on the local wall clock of the
schedule's timezone so that "every day at 09:00 Europe/Rome" stays at 09:00
across DST changes, then converted back to UTC.

Example:
    Backoff and next occurrence::

        delay_minutes(0)   # 2
        delay_minutes(5)   # 60 (capped)

        rule = RecurrenceRule(pattern="weekly", days_of_week=[0, 2, 4])
        next_occurrence(wednesday_9am, rule, "UTC")  # friday 09:00
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from .models import RecurrencePattern, RecurrenceRule

MAX_RETRY_DELAY_MINUTES = 60


def delay_minutes(attempt: int) -> int:
    """Minutes to wait before retry ``attempt + 1``.

    The sequence doubles from 2 minutes and is capped at one hour:
    2, 4, 8, 16, 32, 60, 60, ...
    """
    attempt = max(0, int(attempt))
    # 2**5 * 2 already exceeds the cap; avoid huge ints for silly attempt values
    if attempt >= 5:
        return MAX_RETRY_DELAY_MINUTES
    return min(2**attempt * 2, MAX_RETRY_DELAY_MINUTES)


def retry_delay(attempt: int) -> timedelta:
    return timedelta(minutes=delay_minutes(attempt))


def _add_months(value: datetime, months: int, day: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(day, last_day))


def _to_local(value: datetime, zone: ZoneInfo) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(zone).replace(tzinfo=None)


def _to_utc(local_naive: datetime, zone: ZoneInfo) -> datetime:
    return local_naive.replace(tzinfo=zone).astimezone(timezone.utc)


def next_occurrence(current: datetime, rule: RecurrenceRule, tz_name: str = "UTC") -> datetime | None:
    """Return the occurrence following ``current`` according to ``rule``.

    Args:
        current: The occurrence just handled (aware, any zone; naive means UTC).
        rule: The recurrence rule of the schedule.
        tz_name: IANA zone whose wall clock the rule is expressed in.

    Returns:
        The next occurrence as an aware UTC datetime, or None when the
        pattern is not recognised. ``end_date`` is not applied here.
    """
    zone = ZoneInfo(tz_name or "UTC")
    local = _to_local(current, zone)
    interval = max(1, rule.interval or 1)

    try:
        pattern = RecurrencePattern(str(rule.pattern).lower())
    except ValueError:
        return None

    match pattern:
        case RecurrencePattern.DAILY:
            nxt = local + timedelta(days=interval)
        case RecurrencePattern.WEEKLY:
            if rule.days_of_week:
                days = sorted({int(d) for d in rule.days_of_week})
                today = local.weekday()
                later = [d for d in days if d > today]
                # interval is not applied when explicit weekdays are listed
                step = later[0] - today if later else 7 - today + days[0]
                nxt = local + timedelta(days=step)
            else:
                nxt = local + timedelta(weeks=interval)
        case RecurrencePattern.MONTHLY:
            nxt = _add_months(local, interval, rule.day_of_month or local.day)
        case RecurrencePattern.YEARLY:
            nxt = _add_months(local, 12 * interval, local.day)

    return _to_utc(nxt, zone)


def past_end_date(candidate: datetime, rule: RecurrenceRule) -> bool:
    """True when ``candidate`` falls after the rule's end date."""
    if rule.end_date is None:
        return False
    return candidate > rule.end_date


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = str(value).strip().partition(":")
    return time(int(hours), int(minutes or 0))


def quiet_hours_window(
    now: datetime,
    start: str,
    end: str,
    tz_name: str = "UTC",
) -> tuple[bool, datetime]:
    """Check whether ``now`` falls inside a daily quiet window.

    ``start`` and ``end`` are ``HH:MM`` wall-clock times in ``tz_name``. A
    window with ``start > end`` spans midnight (for example 22:00-08:00).
    An empty window (``start == end``) is never active.

    Returns:
        ``(in_quiet_hours, next_allowed)`` where ``next_allowed`` is the UTC
        instant the window closes, or ``now`` itself outside the window.
    """
    zone = ZoneInfo(tz_name or "UTC")
    local = _to_local(now, zone)
    start_t = _parse_hhmm(start)
    end_t = _parse_hhmm(end)
    current_t = local.time().replace(second=0, microsecond=0)
    today: date = local.date()

    if start_t <= end_t:
        in_quiet = start_t <= current_t < end_t
        end_day = today
    else:
        in_quiet = current_t >= start_t or current_t < end_t
        end_day = today + timedelta(days=1) if current_t >= start_t else today

    if not in_quiet:
        return False, _as_aware_utc(now)
    return True, _to_utc(datetime.combine(end_day, end_t), zone)


def _as_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
