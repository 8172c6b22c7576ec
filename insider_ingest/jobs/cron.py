"""Five-field cron patterns (minute hour day-of-month month day-of-week), UTC.

Supports numbers, ranges (1-5), lists (1,3,5), steps (*/15, 10-50/10) and
wildcards. Day-of-week is 0-6 with 0 = Sunday (7 is accepted as Sunday too).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Tuple


_FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)

# Upper bound on the search for the next firing (patterns like "0 0 30 2 *" never fire).
_MAX_SEARCH = timedelta(days=366 * 5)


@dataclass(frozen=True)
class CronSchedule:
    pattern: str
    minute: FrozenSet[int]
    hour: FrozenSet[int]
    day_of_month: FrozenSet[int]
    month: FrozenSet[int]
    day_of_week: FrozenSet[int]
    dom_restricted: bool
    dow_restricted: bool

    def _day_matches(self, dt: datetime) -> bool:
        dom_ok = dt.day in self.day_of_month
        dow_ok = ((dt.weekday() + 1) % 7) in self.day_of_week
        # Classic cron: when both day fields are restricted, either one may match.
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minute
            and dt.hour in self.hour
            and dt.month in self.month
            and self._day_matches(dt)
        )


def _parse_cron_field(field: str, min_val: int, max_val: int) -> set[int]:
    """Parse a single cron field."""
    values: set[int] = set()
    for part in field.split(","):
        if not part:
            raise ValueError(f"Empty cron list element in {field!r}")

        step = 1
        if "/" in part:
            part, step_s = part.split("/", 1)
            step = int(step_s)
            if step <= 0:
                raise ValueError(f"Invalid cron step: {step_s!r}")

        if part == "*":
            start, end = min_val, max_val
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = int(a), int(b)
        else:
            start = int(part)
            end = max_val if step != 1 else start

        if start < min_val or end > max_val or start > end:
            raise ValueError(f"Cron value out of range {min_val}-{max_val}: {field!r}")
        values.update(range(start, end + 1, step))
    return values


def parse_cron_expression(cron_expr: str) -> CronSchedule:
    """Parse a cron pattern; raises ValueError on anything malformed."""
    fields = str(cron_expr or "").strip().split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expr!r}")

    parsed = {}
    for raw, (name, lo, hi) in zip(fields, _FIELDS):
        try:
            parsed[name] = _parse_cron_field(raw, lo, hi)
        except ValueError as e:
            raise ValueError(f"Invalid cron expression {cron_expr!r} ({name}): {e}") from e

    dow = parsed["day_of_week"]
    if 7 in dow:
        dow = (dow - {7}) | {0}

    return CronSchedule(
        pattern=" ".join(fields),
        minute=frozenset(parsed["minute"]),
        hour=frozenset(parsed["hour"]),
        day_of_month=frozenset(parsed["day_of_month"]),
        month=frozenset(parsed["month"]),
        day_of_week=frozenset(dow),
        dom_restricted=fields[2] != "*",
        dow_restricted=fields[4] != "*",
    )


def next_fire_time(cron: CronSchedule | str, after: datetime) -> datetime:
    """First matching minute strictly after `after` (UTC)."""
    sched = parse_cron_expression(cron) if isinstance(cron, str) else cron

    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    after = after.astimezone(timezone.utc)

    t = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = t + _MAX_SEARCH

    while t <= limit:
        if t.month not in sched.month:
            year, month = (t.year + 1, 1) if t.month == 12 else (t.year, t.month + 1)
            t = t.replace(year=year, month=month, day=1, hour=0, minute=0)
            continue
        if not sched._day_matches(t):
            t = (t + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if t.hour not in sched.hour:
            t = (t + timedelta(hours=1)).replace(minute=0)
            continue
        if t.minute not in sched.minute:
            t = t + timedelta(minutes=1)
            continue
        return t

    raise ValueError(f"Cron expression never fires: {sched.pattern!r}")
