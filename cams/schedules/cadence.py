"""Cadence parsing: fixed intervals ("90s", "5m", "1h") or 5-field cron.

A cadence answers one question for the scheduler: given the last run (or
the moment the schedule was configured), when is the next run due?
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from croniter import CroniterError, croniter

MAX_EXPRESSION_LENGTH = 100
MAX_INTERVAL = timedelta(days=366)

_INTERVAL_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([smhd]?)$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}
_UNIT_NAMES = ((86400, "day"), (3600, "hour"), (60, "minute"), (1, "second"))


class ScheduleValidationError(ValueError):
    """Raised when a schedule or its cadence is rejected."""


@dataclass(frozen=True)
class Cadence:
    """A parsed cadence. Exactly one of ``interval`` / cron is in effect."""

    expression: str
    interval: timedelta | None = None

    @property
    def is_cron(self) -> bool:
        return self.interval is None

    @classmethod
    def parse(cls, expression: str) -> "Cadence":
        """Validate and parse; raises ScheduleValidationError on bad input."""
        expr = (expression or "").strip()
        if not expr:
            raise ScheduleValidationError("Cadence is required")
        if len(expr) > MAX_EXPRESSION_LENGTH:
            raise ScheduleValidationError(
                f"Cadence cannot exceed {MAX_EXPRESSION_LENGTH} characters"
            )

        m = _INTERVAL_RE.match(expr)
        if m:
            seconds = float(m.group(1)) * _UNIT_SECONDS[m.group(2).lower()]
            if seconds <= 0:
                raise ScheduleValidationError("Interval must be a positive duration")
            if seconds > MAX_INTERVAL.total_seconds():
                raise ScheduleValidationError(f"Interval cannot exceed {MAX_INTERVAL.days} days")
            return cls(expression=expr, interval=timedelta(seconds=seconds))

        if len(expr.split()) != 5:
            raise ScheduleValidationError(
                f"Invalid cadence '{expr}': expected an interval like '60s' or a 5-field cron expression"
            )
        if not croniter.is_valid(expr):
            raise ScheduleValidationError(f"Invalid cron expression: '{expr}'")
        cadence = cls(expression=expr)
        # Well-formed crons can still have no matching date (e.g. Feb 30)
        cadence.next_after(datetime.now(timezone.utc))
        return cadence

    def next_after(self, base: datetime) -> datetime:
        """First run time strictly after ``base`` (interval) or next cron match."""
        if base.tzinfo is None:
            base = base.replace(tzinfo=timezone.utc)
        try:
            if self.interval is not None:
                return base + self.interval
            return croniter(self.expression, base).get_next(datetime)
        except (OverflowError, CroniterError) as e:
            raise ScheduleValidationError(f"Cadence '{self.expression}' has no next run: {e}") from e

    def describe(self) -> str:
        if self.interval is not None:
            return _describe_interval(self.interval)
        return _describe_cron(self.expression)


def _describe_interval(interval: timedelta) -> str:
    seconds = interval.total_seconds()
    for size, name in _UNIT_NAMES:
        if seconds >= size and seconds % size == 0:
            n = int(seconds // size)
            return f"Every {name}" if n == 1 else f"Every {n} {name}s"
    return f"Every {seconds:g} seconds"


def _describe_cron(expression: str) -> str:
    minute, hour, day, month, dow = expression.split()

    if minute == "*" and hour == "*" and day == "*" and month == "*" and dow == "*":
        return "Every minute"
    if minute.isdigit() and hour == "*" and day == "*" and month == "*" and dow == "*":
        return f"Every hour at minute {minute}"
    if minute.isdigit() and hour.isdigit() and day == "*" and month == "*" and dow == "*":
        return f"Daily at {hour}:{minute.rjust(2, '0')}"
    if minute.isdigit() and hour.isdigit() and day == "*" and month == "*" and dow != "*":
        return f"Weekly on day {dow} at {hour}:{minute.rjust(2, '0')}"
    if minute.isdigit() and hour.isdigit() and day != "*" and month == "*" and dow == "*":
        return f"Monthly on day {day} at {hour}:{minute.rjust(2, '0')}"
    return "Custom schedule"
