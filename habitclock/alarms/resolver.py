"""Time rule resolution: weekly alarm rules to concrete fire instants.

Everything here is pure. The reference instant is always passed in, never
read from the clock, so the weekday math can be tested across boundaries.

Weekdays are Sunday-based (0 = Sunday ... 6 = Saturday) to match the stored
``days_of_week`` field, which differs from ``datetime.weekday()``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from habitclock.alarms.errors import EmptyWeekdaysError

DEFAULT_VERIFICATION_DELAY = "10 minutes"
WEEK = timedelta(days=7)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_INTERVAL_RE = re.compile(r"^(\d{1,3}):(\d{2}):(\d{2})$")
_PREFIX_RE = re.compile(r"^(\d+)\s*([a-z]*)")
_HOUR_UNITS = {"h", "hr", "hrs", "hour", "hours"}


@dataclass(frozen=True)
class Occurrence:
    """One (alarm, weekday) pairing resolved to its next timer pair."""

    weekday: int
    alarm_at: datetime
    verification_at: datetime


def weekday_of(dt: datetime) -> int:
    """Sunday-based weekday of ``dt`` (0 = Sunday)."""
    return dt.isoweekday() % 7


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse an ``HH:mm`` 24h string into (hour, minute).

    Raises ValueError on malformed or out-of-range input.
    """
    m = _TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if not m:
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time of day out of range: {value!r}")
    return hour, minute


def parse_delay_minutes(expr: str | int) -> int:
    """Parse a verification delay expression into whole minutes.

    Accepts a bare number of minutes, a numeric prefix with an optional unit
    ("10 minutes", "10min", "1 hour") and the ``HH:MM:SS`` form a Postgres
    interval column renders ("00:10:00").

    Raises ValueError if no numeric prefix can be found.
    """
    if isinstance(expr, bool):
        raise ValueError(f"Invalid delay: {expr!r}")
    if isinstance(expr, int):
        if expr < 0:
            raise ValueError(f"Delay must not be negative: {expr!r}")
        return expr
    if not isinstance(expr, str):
        raise ValueError(f"Invalid delay: {expr!r}")

    text = expr.strip().lower()
    m = _INTERVAL_RE.match(text)
    if m:
        hours, minutes = int(m.group(1)), int(m.group(2))
        return hours * 60 + minutes

    m = _PREFIX_RE.match(text)
    if not m:
        raise ValueError(f"Delay has no numeric prefix: {expr!r}")
    amount = int(m.group(1))
    if m.group(2) in _HOUR_UNITS:
        return amount * 60
    return amount


def next_fire_instant(weekday: int, time_of_day: str | tuple[int, int], reference_now: datetime) -> datetime:
    """Soonest instant on ``weekday`` at ``time_of_day`` after ``reference_now``.

    Same weekday with the time still ahead resolves to today. A time equal to
    ``reference_now`` (minute granularity) counts as already passed and moves
    a full week ahead, so the result is always within (now, now + 7 days].
    """
    if not 0 <= weekday <= 6:
        raise ValueError(f"Invalid weekday {weekday}: must be 0 (Sun) – 6 (Sat)")
    if isinstance(time_of_day, str):
        hour, minute = parse_time_of_day(time_of_day)
    else:
        hour, minute = time_of_day

    candidate = reference_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    days_until = (weekday - weekday_of(reference_now)) % 7
    if days_until == 0 and candidate <= reference_now:
        days_until = 7
    return candidate + timedelta(days=days_until)


def verification_instant(alarm_fire_instant: datetime, delay: str | int) -> datetime:
    """Fire instant of the verification prompt paired with an alarm fire."""
    return alarm_fire_instant + timedelta(minutes=parse_delay_minutes(delay))


def next_week(
    fired_instant: datetime, interval: timedelta = WEEK, after: datetime | None = None
) -> datetime:
    """Re-arm instant for a timer that fired at ``fired_instant``.

    With ``after``, whole intervals are skipped until the instant lies
    strictly after it, so a timer reconciled late (the runtime was down for
    weeks) lands on its next future slot instead of firing again at once.
    """
    target = fired_instant + interval
    if after is not None and target <= after:
        missed = (after - target) // interval + 1
        target += interval * missed
    return target


def resolve_occurrences(
    time_of_day: str,
    weekdays: Iterable[int],
    delay: str | int,
    reference_now: datetime,
) -> list[Occurrence]:
    """Resolve every active weekday of a rule into its next timer pair.

    Raises EmptyWeekdaysError when there is nothing to schedule.
    """
    days = sorted(set(weekdays))
    if not days:
        raise EmptyWeekdaysError("Alarm has no active weekdays")
    hour_minute = parse_time_of_day(time_of_day)
    minutes = parse_delay_minutes(delay)

    occurrences = []
    for day in days:
        alarm_at = next_fire_instant(day, hour_minute, reference_now)
        occurrences.append(
            Occurrence(
                weekday=day,
                alarm_at=alarm_at,
                verification_at=verification_instant(alarm_at, minutes),
            )
        )
    return occurrences


def occurrence_matches(
    time_of_day: str,
    weekdays: Iterable[int],
    delay: str | int,
    kind: str,
    instant: datetime,
) -> bool:
    """Whether ``instant`` is a valid fire instant of ``kind`` under the rule.

    Verification instants are mapped back to their alarm instant first, so a
    late-evening alarm whose prompt lands after midnight still matches.
    """
    if kind == "verification":
        instant = instant - timedelta(minutes=parse_delay_minutes(delay))
    hour, minute = parse_time_of_day(time_of_day)
    return (
        weekday_of(instant) in set(weekdays)
        and (instant.hour, instant.minute) == (hour, minute)
    )
