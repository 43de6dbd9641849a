from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Callable, List, Optional, Tuple

from filelock import FileLock

from time_utils import at_time_of_day, local_timezone, now_in_tz

from .errors import DuplicateAlarm, StoreCorrupt
from .trigger import TimeOfDay, parse_trigger

logger = logging.getLogger(__name__)

STORE_NAMESPACE = "alarms"
DEFAULT_TITLE = "Alarm"


class AlarmState(str, Enum):
    SCHEDULED = "scheduled"
    RINGING = "ringing"
    SILENCED = "silenced"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (AlarmState.SILENCED, AlarmState.EXPIRED, AlarmState.FAILED)


@dataclass(frozen=True)
class AlarmRecord:
    id: str
    title: str
    fire_at: datetime
    time: str
    trigger: str
    sound: str
    created_at: datetime
    state: AlarmState = AlarmState.SCHEDULED

    def with_state(self, state: AlarmState) -> "AlarmRecord":
        return replace(self, state=state)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "time": self.time,
            "trigger": self.trigger,
            "sound": self.sound,
            "state": self.state.value,
            "fire_at": self.fire_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict, tzinfo=None) -> "AlarmRecord":
        """Decode a stored item; naive timestamps are read in ``tzinfo``.

        Items written before ``fire_at`` existed only carry ``cronExpression``;
        they fire at that time of day on the day they are first read.
        """

        alarm_id = data.get("id")
        trigger = data.get("trigger") or data.get("cronExpression")
        if not alarm_id or not trigger:
            raise ValueError("Alarm payload missing id/trigger fields")
        fire_at_raw = data.get("fire_at")
        if fire_at_raw:
            fire_at = _parse_instant(fire_at_raw, tzinfo)
        else:
            tod = parse_trigger(str(trigger))
            fire_at = at_time_of_day(tod.hour, tod.minute, tod.second, now_in_tz(tzinfo))
        created_raw = data.get("created_at")
        return cls(
            id=str(alarm_id),
            title=str(data.get("title") or data.get("name") or DEFAULT_TITLE),
            fire_at=fire_at,
            time=str(data.get("time") or TimeOfDay.from_datetime(fire_at).display()),
            trigger=str(trigger),
            sound=str(data.get("sound") or data.get("soundPath") or ""),
            created_at=_parse_instant(created_raw, tzinfo) if created_raw else fire_at,
            state=AlarmState(data.get("state") or AlarmState.SCHEDULED.value),
        )


def _parse_instant(raw: str, tzinfo) -> datetime:
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        if tzinfo is None:
            raise ValueError(f"Timestamp {raw!r} has no UTC offset")
        value = value.replace(tzinfo=tzinfo)
    return value



class AlarmStore:
    """JSON-file backed alarm collection.

    The file holds one object keyed by namespace; this store owns the
    ``"alarms"`` entry and leaves any other keys untouched. Every operation
    reads the whole document, mutates it and writes it back atomically. Writes
    hold a thread lock and a ``<path>.lock`` file lock, so the serving process
    and command-line invocations never interleave a read-modify-write.
    Stored timestamps without an offset are read in ``tzinfo``.
    """

    def __init__(self, path: Path, namespace: str = STORE_NAMESPACE, tzinfo=None):
        self.path = Path(path)
        self.namespace = namespace
        self.tzinfo = tzinfo or local_timezone()
        self._lock = RLock()
        self._file_lock = FileLock(str(self.path.with_name(self.path.name + ".lock")))

    def put(self, record: AlarmRecord) -> None:
        def mutate(records: List[AlarmRecord]) -> List[AlarmRecord]:
            for idx, existing in enumerate(records):
                if existing.id == record.id:
                    records[idx] = record
                    return records
            records.append(record)
            return records

        self._update(mutate)

    def add(self, record: AlarmRecord) -> None:
        def mutate(records: List[AlarmRecord]) -> List[AlarmRecord]:
            if any(r.id == record.id for r in records):
                raise DuplicateAlarm(f"Alarm {record.id} already exists")
            records.append(record)
            return records

        self._update(mutate)

    def get(self, alarm_id: str) -> Optional[AlarmRecord]:
        for record in self.list():
            if record.id == alarm_id:
                return record
        return None

    def list(self) -> List[AlarmRecord]:
        with self._lock:
            return self._load()[1]

    def mark_state(
        self,
        alarm_id: str,
        state: AlarmState,
        only_from: Optional[AlarmState] = None,
    ) -> Optional[AlarmRecord]:
        """Set the record's state; with ``only_from`` the change only applies from that state."""

        updated: List[AlarmRecord] = []

        def mutate(records: List[AlarmRecord]) -> List[AlarmRecord]:
            for idx, existing in enumerate(records):
                if existing.id != alarm_id:
                    continue
                if only_from is not None and existing.state != only_from:
                    return records
                records[idx] = existing.with_state(state)
                updated.append(records[idx])
            return records

        self._update(mutate)
        if updated:
            logger.info("Alarm %s -> %s", alarm_id, state.value)
            return updated[0]
        return None

    def remove(self, alarm_id: str) -> Optional[AlarmRecord]:
        removed: List[AlarmRecord] = []

        def mutate(records: List[AlarmRecord]) -> List[AlarmRecord]:
            kept = []
            for record in records:
                if record.id == alarm_id:
                    removed.append(record)
                else:
                    kept.append(record)
            return kept

        self._update(mutate)
        return removed[0] if removed else None

    def _update(self, mutate: Callable[[List[AlarmRecord]], List[AlarmRecord]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, self._file_lock:
            document, records = self._load()
            records = mutate(records)
            document[self.namespace] = [r.to_dict() for r in records]
            self._write_document(document)

    def _load(self) -> Tuple[dict, List[AlarmRecord]]:
        document: dict = {}
        try:
            document = self._read_document()
            records = self._decode(document.get(self.namespace))
        except StoreCorrupt as exc:
            logger.error("Alarm store %s is corrupt, treating it as empty: %s", self.path, exc)
            records = []
        return document, records

    def _read_document(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as exc:
            raise StoreCorrupt(f"failed to load alarms: {exc}") from exc
        if not isinstance(payload, dict):
            raise StoreCorrupt("file does not hold a JSON object")
        return payload

    def _decode(self, payload) -> List[AlarmRecord]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StoreCorrupt(f"namespace {self.namespace!r} is not a list")
        records: List[AlarmRecord] = []
        seen = set()
        for item in payload:
            try:
                record = AlarmRecord.from_dict(item, self.tzinfo)
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning("Skipping alarm item due to parse error: %s", exc)
                continue
            if record.id in seen:
                logger.warning("Skipping duplicate alarm id %s", record.id)
                continue
            seen.add(record.id)
            records.append(record)
        return records

    def _write_document(self, document: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
