# cron.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, List, Tuple

# ---------------------------------------------------------------------
# Five-field cron expressions: minute hour day-of-month month day-of-week
#
#   *        every value
#   a,b,c    list
#   a-b      range
#   */n a-b/n a/n   steps
#   JAN..DEC, SUN..SAT names; 7 is Sunday
#
# When both day-of-month and day-of-week are restricted, a day matches
# if EITHER field matches (classic cron rule).
# ---------------------------------------------------------------------

_MONTHS = {m: i for i, m in enumerate(
    ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"], start=1)}
_DAYS = {d: i for i, d in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])}

# (name, min, max, names)
_FIELDS: List[Tuple[str, int, int, dict]] = [
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day-of-month", 1, 31, {}),
    ("month", 1, 12, _MONTHS),
    ("day-of-week", 0, 7, _DAYS),
]

# next_after() gives up after this many years without a match (e.g. "0 0 30 2 *")
_SEARCH_YEARS = 5


class CronError(ValueError):
    pass


def _parse_value(text: str, names: dict, field: str) -> int:
    key = text.upper()
    if key in names:
        return names[key]
    try:
        return int(text)
    except ValueError:
        raise CronError(f"invalid {field} value {text!r}") from None


def _parse_field(text: str, lo: int, hi: int, names: dict, field: str) -> Tuple[FrozenSet[int], bool]:
    """Returns (allowed values, restricted?)."""
    values: set[int] = set()
    restricted = not text.startswith("*")
    for part in text.split(","):
        if not part:
            raise CronError(f"empty {field} entry in {text!r}")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise CronError(f"invalid {field} step {step_text!r}") from None
            if step <= 0:
                raise CronError(f"{field} step must be positive")
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = _parse_value(a, names, field), _parse_value(b, names, field)
        else:
            start = _parse_value(part, names, field)
            # "5/15" means 5, 20, 35, ...
            end = hi if step > 1 else start
        if not (lo <= start <= hi and lo <= end <= hi) or start > end:
            raise CronError(f"{field} value out of range in {text!r} (allowed {lo}-{hi})")
        values.update(range(start, end + 1, step))
    return frozenset(values), restricted


@dataclass(frozen=True)
class CronExpression:
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    dom_restricted: bool
    dow_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> CronExpression:
        parts = expression.split()
        if len(parts) != 5:
            raise CronError(f"cron expression must have 5 fields, got {len(parts)}: {expression!r}")
        parsed = [_parse_field(p, lo, hi, names, name) for p, (name, lo, hi, names) in zip(parts, _FIELDS)]
        weekdays = frozenset(0 if d == 7 else d for d in parsed[4][0])
        return cls(
            expression=expression,
            minutes=parsed[0][0],
            hours=parsed[1][0],
            days=parsed[2][0],
            months=parsed[3][0],
            weekdays=weekdays,
            dom_restricted=parsed[2][1],
            dow_restricted=parsed[4][1],
        )

    def _day_matches(self, dt: datetime) -> bool:
        dom = dt.day in self.days
        # Python: Monday=0 .. Sunday=6; cron: Sunday=0
        dow = ((dt.weekday() + 1) % 7) in self.weekdays
        if self.dom_restricted and self.dow_restricted:
            return dom or dow
        return dom and dow

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_after(self, dt: datetime) -> datetime:
        """First matching minute strictly after `dt`."""
        t = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = t.replace(year=t.year + _SEARCH_YEARS) if not (t.month == 2 and t.day == 29) else t + timedelta(days=365 * _SEARCH_YEARS)
        while t < limit:
            if t.month not in self.months:
                year, month = (t.year + 1, 1) if t.month == 12 else (t.year, t.month + 1)
                t = t.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(t):
                t = (t + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if t.hour not in self.hours:
                t = (t + timedelta(hours=1)).replace(minute=0)
                continue
            if t.minute not in self.minutes:
                t = t + timedelta(minutes=1)
                continue
            return t
        raise CronError(f"cron expression {self.expression!r} never fires")

    def fires_between(self, start: datetime, end: datetime) -> bool:
        """True if a fire time lies in the half-open interval (start, end]."""
        try:
            return self.next_after(start) <= end
        except CronError:
            return False


def parse_cron(expression: str) -> CronExpression:
    return CronExpression.parse(expression)
