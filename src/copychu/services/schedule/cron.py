from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

# (name, min, max)
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 7),
)

# give up searching after this many days (e.g. "0 0 31 2 *")
_SEARCH_DAYS = 366 * 5


def _parse_field(text: str, name: str, lo: int, hi: int) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"Empty {name} entry in '{text}'")
        base, _, step_str = part.partition("/")
        step = 1
        if step_str:
            if not step_str.isdigit() or int(step_str) == 0:
                raise ValueError(f"Invalid step '{step_str}' in {name} field '{text}'")
            step = int(step_str)

        if base == "*":
            start, end = lo, hi
        elif "-" in base:
            a, _, b = base.partition("-")
            if not (a.isdigit() and b.isdigit()):
                raise ValueError(f"Invalid range '{base}' in {name} field")
            start, end = int(a), int(b)
        elif base.isdigit():
            start = int(base)
            # "5/15" means every 15 starting at 5
            end = hi if step_str else start
        else:
            raise ValueError(f"Invalid {name} value '{base}'")

        if start < lo or end > hi or start > end:
            raise ValueError(f"{name} value '{part}' out of range {lo}-{hi}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """
    Classic 5-field cron: minute hour day-of-month month day-of-week.

    Supports `*`, lists, ranges and steps; 0 and 7 both mean Sunday. When both
    day fields are restricted a day matches if either matches.
    """

    expr: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]  # 0 = Sunday
    dom_restricted: bool
    dow_restricted: bool

    @classmethod
    def parse(cls, expr: str) -> CronExpression:
        parts = expr.split()
        if len(parts) != 5:
            raise ValueError(f"Unsupported schedule '{expr}'. Expected 5 fields 'M H DOM MON DOW'.")
        parsed = [_parse_field(text, name, lo, hi) for text, (name, lo, hi) in zip(parts, _FIELDS)]
        weekdays = frozenset(0 if d == 7 else d for d in parsed[4])
        return cls(
            expr=" ".join(parts),
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            dom_restricted=parts[2] != "*",
            dow_restricted=parts[4] != "*",
        )

    def _day_matches(self, dt: datetime) -> bool:
        dom_ok = dt.day in self.days
        dow_ok = (dt.weekday() + 1) % 7 in self.weekdays
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_after(self, dt: datetime) -> datetime:
        """First matching minute strictly after `dt` (keeps dt's tzinfo)."""
        t = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = t + timedelta(days=_SEARCH_DAYS)
        while t < limit:
            if t.month not in self.months:
                year, month = (t.year + 1, 1) if t.month == 12 else (t.year, t.month + 1)
                t = t.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(t):
                t = t.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if t.hour not in self.hours:
                t = t.replace(minute=0) + timedelta(hours=1)
                continue
            if t.minute not in self.minutes:
                t += timedelta(minutes=1)
                continue
            return t
        raise ValueError(f"Schedule '{self.expr}' never fires")

    def __str__(self) -> str:
        return self.expr
