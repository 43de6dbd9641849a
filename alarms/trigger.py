from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

WILDCARD_FIELDS = ("*", "*", "*")


@dataclass(frozen=True)
class TimeOfDay:
    hour: int
    minute: int
    second: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.hour < 24:
            raise ValueError(f"hour out of range: {self.hour}")
        if not 0 <= self.minute < 60:
            raise ValueError(f"minute out of range: {self.minute}")
        if not 0 <= self.second < 60:
            raise ValueError(f"second out of range: {self.second}")

    @classmethod
    def from_datetime(cls, dt: datetime) -> "TimeOfDay":
        return cls(dt.hour, dt.minute, dt.second)

    def display(self) -> str:
        if self.second:
            return f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}"
        return f"{self.hour:02d}:{self.minute:02d}"


def encode_trigger(time_of_day: TimeOfDay) -> str:
    """Encode a time-of-day as a six-field ``sec min hour * * *`` expression."""

    return f"{time_of_day.second} {time_of_day.minute} {time_of_day.hour} * * *"


def parse_trigger(expression: str) -> TimeOfDay:
    fields = expression.split()
    if len(fields) != 6 or tuple(fields[3:]) != WILDCARD_FIELDS:
        raise ValueError(f"Unsupported trigger expression: {expression!r}")
    try:
        second, minute, hour = (int(f) for f in fields[:3])
    except ValueError as exc:
        raise ValueError(f"Trigger fields must be integers: {expression!r}") from exc
    return TimeOfDay(hour, minute, second)


def cron_trigger(expression: str, tzinfo) -> CronTrigger:
    tod = parse_trigger(expression)
    return CronTrigger(hour=tod.hour, minute=tod.minute, second=tod.second, timezone=tzinfo)


def next_fire_time(expression: str, now: datetime, not_before: Optional[datetime] = None) -> datetime:
    """Next occurrence of ``expression`` at or after ``max(now, not_before)``.

    The expression recurs daily; callers use the result for a single one-shot job.
    """

    start = now
    if not_before is not None and not_before > start:
        start = not_before
    trigger = cron_trigger(expression, now.tzinfo)
    fire_at = trigger.get_next_fire_time(None, start)
    if fire_at is None:  # pragma: no cover - daily cron always has a next run
        raise ValueError(f"Trigger {expression!r} never fires")
    return fire_at
