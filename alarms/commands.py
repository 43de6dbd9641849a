from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from time_utils import now_in_tz, seconds_until

from .errors import AlarmError
from .manager import AlarmManager
from .storage import AlarmRecord
from .trigger import TimeOfDay

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    exit_code: int = 0
    stdout: Optional[str] = None
    stderr: Optional[str] = None

    @classmethod
    def ok(cls, text: Optional[str] = None) -> "CommandResult":
        return cls(0, stdout=text)

    @classmethod
    def error(cls, text: str, exit_code: int = 1) -> "CommandResult":
        return cls(exit_code, stderr=text)


class CommandRouter:
    """Implements the helper verbs on top of an ``AlarmManager``."""

    def __init__(self, alarm_manager: AlarmManager):
        self.alarm_manager = alarm_manager

    def add(self, alarm_id: str, title: str, hour: int, minute: int, second: int, sound: str) -> CommandResult:
        try:
            time_of_day = TimeOfDay(hour, minute, second)
            alarm = self.alarm_manager.create_at(title, time_of_day, sound, alarm_id=alarm_id)
        except AlarmError as exc:
            logger.warning("add %s rejected: %s", alarm_id, exc)
            return CommandResult.error(f"Cannot create alarm: {exc}")
        except ValueError as exc:
            return CommandResult.error(f"Invalid time: {exc}")
        now = now_in_tz(self.alarm_manager.tzinfo)
        return CommandResult.ok(
            f"Alarm {alarm.id} set for {alarm.time} ({alarm.title}), rings in {int(seconds_until(alarm.fire_at, now))}s"
        )

    def stop(self, alarm_id: str) -> CommandResult:
        if self.alarm_manager.stop_one(alarm_id):
            return CommandResult.ok(f"Stopped alarm {alarm_id}")
        return CommandResult.ok(f"Alarm {alarm_id} is not ringing")

    def stop_all(self) -> CommandResult:
        count = self.alarm_manager.stop_all()
        return CommandResult.ok(f"Stopped {count} alarm(s)")

    def remove(self, alarm_id: str) -> CommandResult:
        removed = self.alarm_manager.remove(alarm_id)
        if removed is None:
            return CommandResult.error(f"No alarm with id {alarm_id}")
        return CommandResult.ok(f"Removed alarm {alarm_id} ({removed.title} at {removed.time})")

    def list(self, table: bool = False) -> CommandResult:
        alarms = self.alarm_manager.list_alarms()
        if table:
            return CommandResult.ok(format_alarm_table(alarms, now_in_tz(self.alarm_manager.tzinfo)))
        payload = [alarm.to_dict() for alarm in alarms]
        return CommandResult.ok(json.dumps(payload, ensure_ascii=False, indent=2))

    def sounds(self) -> CommandResult:
        return CommandResult.ok("\n".join(self.alarm_manager.sounds.names()))

    def preview(self, sound: str) -> CommandResult:
        try:
            self.alarm_manager.preview(sound)
        except AlarmError as exc:
            return CommandResult.error(f"Cannot preview {sound}: {exc}")
        return CommandResult.ok(f"Previewing {sound}")


def format_alarm_line(alarm: AlarmRecord, now: datetime) -> str:
    day_prefix = ""
    if alarm.fire_at.date() != now.date():
        day_prefix = alarm.fire_at.strftime("%d.%m ")
    return f"{alarm.id}  {day_prefix}{alarm.time}  [{alarm.state.value}]  {alarm.title}"


def format_alarm_table(alarms: List[AlarmRecord], now: datetime) -> str:
    if not alarms:
        return "No alarms."
    return "\n".join(format_alarm_line(alarm, now) for alarm in alarms)
