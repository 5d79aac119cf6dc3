"""
Five field cron expressions and next-occurrence computation.

Supported syntax per field: `*`, `N`, `N-M`, comma separated lists of those,
and an optional `/step` suffix on each item. Day of week accepts 0-7 with 7
meaning Sunday.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, List, Tuple

from pingrun.errors import (
    CronFieldCountError,
    CronInvalidStepError,
    CronInvalidValueError,
    CronNoMatchError,
    CronNonPositiveStepError,
    CronOutOfRangeError,
    CronRangeEndError,
    CronRangeOrderError,
    CronRangeStartError,
)

SEARCH_HORIZON_YEARS = 5

# name, minimum, maximum
CRON_FIELDS: List[Tuple[str, int, int]] = [
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 7),
]


@dataclass(frozen=True)
class Schedule:
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]
    dom_is_wildcard: bool
    dow_is_wildcard: bool
    expression: str = ""

    def day_matches(self, candidate: datetime) -> bool:
        dom_match = candidate.day in self.days_of_month
        # Python counts Monday as 0, cron counts Sunday as 0.
        dow_match = (candidate.weekday() + 1) % 7 in self.days_of_week
        if not self.dom_is_wildcard and not self.dow_is_wildcard:
            return dom_match or dow_match
        return dom_match and dow_match

    def matches(self, candidate: datetime) -> bool:
        return (
            candidate.month in self.months
            and self.day_matches(candidate)
            and candidate.hour in self.hours
            and candidate.minute in self.minutes
        )

    def next(self, after: datetime) -> datetime:
        """Return the first matching minute strictly after `after`.

        The search runs in `after`'s own timezone (local wall time for naive
        datetimes) and gives up after SEARCH_HORIZON_YEARS, raising
        CronNoMatchError for schedules that never fire, like `0 0 31 2 *`.
        """
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = _add_years(candidate, SEARCH_HORIZON_YEARS)

        while candidate < limit:
            if candidate.month not in self.months:
                candidate = _first_of_next_month(candidate)
                continue
            if not self.day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate

        raise CronNoMatchError(
            f'Error: cron expression "{self.expression}" has no occurrence within '
            f"{SEARCH_HORIZON_YEARS} years after {after.isoformat()}."
        )


def _first_of_next_month(value: datetime) -> datetime:
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1, day=1, hour=0, minute=0)
    return value.replace(month=value.month + 1, day=1, hour=0, minute=0)


def _add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year.
        return value.replace(year=value.year + years, day=28)


def _parse_int(text: str, error_cls: type, field_name: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise error_cls(field_name, f'"{text}"')
    return int(text)


def parse_field(raw: str, field_name: str, minimum: int, maximum: int) -> Tuple[FrozenSet[int], bool]:
    """Parse one cron field into its set of values.

    The second element is True when the field was literally `*`.
    """
    if raw == "*":
        return frozenset(range(minimum, maximum + 1)), True

    values = set()
    for part in raw.split(","):
        step = 1
        range_text = part
        if "/" in part:
            range_text, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise CronInvalidStepError(field_name, f'"{step_text}"') from None
            if step <= 0:
                raise CronNonPositiveStepError(field_name)

        if range_text == "*":
            start, end = minimum, maximum
        elif "-" in range_text:
            start_text, end_text = range_text.split("-", 1)
            start = _parse_int(start_text, CronRangeStartError, field_name)
            end = _parse_int(end_text, CronRangeEndError, field_name)
        else:
            start = _parse_int(range_text, CronInvalidValueError, field_name)
            end = start

        if start < minimum or end > maximum:
            raise CronOutOfRangeError(field_name, f"[{minimum}, {maximum}]")
        if start > end:
            raise CronRangeOrderError(field_name)

        values.update(range(start, end + 1, step))

    return frozenset(values), False


def parse_cron(expression: str) -> Schedule:
    fields = expression.split()
    if len(fields) != len(CRON_FIELDS):
        raise CronFieldCountError(detail=f"got {len(fields)}")

    parsed = []
    wildcards = []
    for raw, (name, minimum, maximum) in zip(fields, CRON_FIELDS):
        values, is_wildcard = parse_field(raw, name, minimum, maximum)
        parsed.append(values)
        wildcards.append(is_wildcard)

    days_of_week = parsed[4]
    if 7 in days_of_week:
        days_of_week = (days_of_week - {7}) | {0}

    return Schedule(
        minutes=parsed[0],
        hours=parsed[1],
        days_of_month=parsed[2],
        months=parsed[3],
        days_of_week=days_of_week,
        dom_is_wildcard=wildcards[2],
        dow_is_wildcard=wildcards[4],
        expression=" ".join(fields),
    )
