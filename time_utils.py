from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)


def local_timezone():
    return datetime.now().astimezone().tzinfo


def resolve_timezone(name: Optional[str]):
    if not name:
        return local_timezone()
    try:
        return ZoneInfo(name)
    except Exception as exc:  # pragma: no cover - environment-dependent
        logger.warning("Failed to load timezone %s via zoneinfo (%s)", name, exc)
    local_tz = local_timezone()
    if local_tz:
        logger.warning("Using system local timezone instead: %s", getattr(local_tz, "key", local_tz))
        return local_tz
    logger.warning("System timezone unavailable, fallback to UTC")  # pragma: no cover
    return timezone.utc  # pragma: no cover


def now_in_tz(tzinfo) -> datetime:
    if tzinfo:
        return datetime.now(tzinfo)
    return datetime.now().astimezone()


def ensure_tz(dt: datetime, tzinfo) -> datetime:
    if dt.tzinfo:
        return dt.astimezone(tzinfo)
    return dt.replace(tzinfo=tzinfo)


def at_time_of_day(hour: int, minute: int, second: int, now: datetime) -> datetime:
    """Today's occurrence of ``hour:minute:second`` in ``now``'s zone, never rolled forward."""

    return now.replace(hour=hour, minute=minute, second=second, microsecond=0)


def format_tz_offset(tzinfo) -> str:
    sample = now_in_tz(tzinfo)
    offset = tzinfo.utcoffset(sample) if hasattr(tzinfo, "utcoffset") else None
    if offset is None:
        return ""
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"


def seconds_until(dt: datetime, now: datetime) -> float:
    return max(0.0, (dt - now) / timedelta(seconds=1))
