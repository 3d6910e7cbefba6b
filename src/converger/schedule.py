"""Schedule expression validation.

Two forms are accepted, matching the scheduler's grammar:

    rate(<value> <unit>)    e.g. rate(1 day), rate(15 minutes)
    cron(<min> <hour> <day-of-month> <month> <day-of-week> <year>)

Exactly one of day-of-month and day-of-week must be "?".
"""

from __future__ import annotations

import re
from dataclasses import dataclass

RATE_PATTERN = re.compile(r"^rate\(\s*(\d+)\s+([a-z]+)\s*\)$")
CRON_PATTERN = re.compile(r"^cron\(\s*(.+?)\s*\)$")

RATE_UNITS = ("minute", "hour", "day")

MONTH_NAMES = "JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC"
DAY_NAMES = "SUN|MON|TUE|WED|THU|FRI|SAT"

# Per-field token patterns: values, ranges, lists, increments, wildcards
_CRON_FIELDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("minutes", re.compile(r"^(\*|\d{1,2}(-\d{1,2})?)(/\d{1,2})?(,\d{1,2}(-\d{1,2})?)*$")),
    ("hours", re.compile(r"^(\*|\d{1,2}(-\d{1,2})?)(/\d{1,2})?(,\d{1,2}(-\d{1,2})?)*$")),
    (
        "day-of-month",
        re.compile(r"^(\?|\*|L|LW|\d{1,2}W|\d{1,2}(-\d{1,2})?(/\d{1,2})?(,\d{1,2})*)$"),
    ),
    (
        "month",
        re.compile(
            rf"^(\*|(\d{{1,2}}|{MONTH_NAMES})(-(\d{{1,2}}|{MONTH_NAMES}))?)(/\d{{1,2}})?"
            rf"(,(\d{{1,2}}|{MONTH_NAMES}))*$",
            re.IGNORECASE,
        ),
    ),
    (
        "day-of-week",
        re.compile(
            rf"^(\?|\*|L|(\d|{DAY_NAMES})(-(\d|{DAY_NAMES}))?(#\d)?(L)?(,(\d|{DAY_NAMES}))*)$",
            re.IGNORECASE,
        ),
    ),
    ("year", re.compile(r"^(\*|\d{4}(-\d{4})?)(/\d{1,3})?(,\d{4})*$")),
)


class ScheduleError(ValueError):
    """Raised when a schedule expression is malformed."""

    pass


@dataclass(frozen=True)
class RateSchedule:
    value: int
    unit: str

    @property
    def interval_seconds(self) -> int:
        return self.value * {"minute": 60, "hour": 3600, "day": 86400}[self.unit]


@dataclass(frozen=True)
class CronSchedule:
    fields: tuple[str, ...]


def parse_schedule(expression: str) -> RateSchedule | CronSchedule:
    """Parse and validate a schedule expression.

    Raises:
        ScheduleError: If the expression is not a valid rate or cron form.
    """
    expression = expression.strip()

    rate = RATE_PATTERN.match(expression)
    if rate:
        return _parse_rate(int(rate.group(1)), rate.group(2), expression)

    cron = CRON_PATTERN.match(expression)
    if cron:
        return _parse_cron(cron.group(1), expression)

    raise ScheduleError(f"Schedule must be rate(...) or cron(...): {expression!r}")


def _parse_rate(value: int, unit: str, expression: str) -> RateSchedule:
    if value < 1:
        raise ScheduleError(f"Rate value must be positive: {expression!r}")

    singular = unit.removesuffix("s")
    if singular not in RATE_UNITS:
        raise ScheduleError(f"Rate unit must be one of minute(s), hour(s), day(s): {expression!r}")

    # The scheduler rejects "rate(1 days)" and "rate(5 day)"
    if value == 1 and unit != singular:
        raise ScheduleError(f"Use singular unit for a value of 1: {expression!r}")
    if value > 1 and unit == singular:
        raise ScheduleError(f"Use plural unit for values above 1: {expression!r}")

    return RateSchedule(value=value, unit=singular)


def _parse_cron(body: str, expression: str) -> CronSchedule:
    fields = tuple(body.split())
    if len(fields) != len(_CRON_FIELDS):
        raise ScheduleError(
            f"Cron expression needs {len(_CRON_FIELDS)} fields, got {len(fields)}: {expression!r}"
        )

    for value, (field_name, pattern) in zip(fields, _CRON_FIELDS, strict=True):
        if not pattern.match(value):
            raise ScheduleError(f"Invalid cron {field_name} field {value!r}: {expression!r}")

    day_of_month, day_of_week = fields[2], fields[4]
    if (day_of_month == "?") == (day_of_week == "?"):
        raise ScheduleError(
            f"Exactly one of day-of-month and day-of-week must be '?': {expression!r}"
        )

    return CronSchedule(fields=fields)


def is_valid_schedule(expression: str) -> bool:
    try:
        parse_schedule(expression)
    except ScheduleError:
        return False
    return True
