from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from threading import Event, Lock, Thread
from typing import Callable, List, Optional

from time_utils import at_time_of_day, ensure_tz, now_in_tz

from .errors import InvalidTime, UnknownSound
from .notify import Notifier
from .registry import ProcessRegistry
from .scheduler import TriggerEngine
from .sounds import PlaybackSpawner, SoundLibrary
from .storage import DEFAULT_TITLE, AlarmRecord, AlarmState, AlarmStore
from .trigger import TimeOfDay, encode_trigger

logger = logging.getLogger(__name__)


class AlarmIdGenerator:
    """Time-based ids: ``<prefix><epoch ms>_<pid>``.

    The millisecond part is strictly increasing across every generator in the
    process and the pid keeps ids from concurrent invocations apart.
    """

    _last = 0
    _lock = Lock()

    def __init__(self, prefix: str = "alarm_"):
        self.prefix = prefix

    def __call__(self) -> str:
        cls = type(self)
        with cls._lock:
            cls._last = max(int(time.time() * 1000), cls._last + 1)
            stamp = cls._last
        return f"{self.prefix}{stamp}_{os.getpid()}"


class AlarmManager:
    """Creates, stops and lists alarms.

    The store is the source of truth. The engine's armed jobs and the process
    registry are rebuilt from it by the host process (``start``) and kept in
    line by the reconcile loop, so invocations that only touch the store
    (``add``/``stop`` from another process) take effect in the host.
    """

    def __init__(
        self,
        store: AlarmStore,
        sounds: SoundLibrary,
        spawner: PlaybackSpawner,
        notifier: Notifier,
        registry: Optional[ProcessRegistry] = None,
        timezone=None,
        auto_stop_seconds: float = 60,
        misfire_grace_seconds: int = 30,
        check_interval: float = 1.0,
        default_title: str = DEFAULT_TITLE,
        on_failure: Optional[Callable[[AlarmRecord, Exception], None]] = None,
    ):
        self.store = store
        self.sounds = sounds
        self.spawner = spawner
        self.notifier = notifier
        self.registry = registry or ProcessRegistry()
        self.tzinfo = timezone or datetime.now().astimezone().tzinfo
        self.check_interval = max(0.2, check_interval)
        self.default_title = default_title
        self.engine = TriggerEngine(
            store=store,
            registry=self.registry,
            sounds=sounds,
            spawner=spawner,
            notifier=notifier,
            tzinfo=self.tzinfo,
            auto_stop_seconds=auto_stop_seconds,
            misfire_grace_seconds=misfire_grace_seconds,
            stop_action=self.stop_one,
            on_failure=on_failure,
        )
        self._new_id = AlarmIdGenerator()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None

    @property
    def is_host(self) -> bool:
        return self.engine.running

    def start(self) -> None:
        """Become the host: restore alarms from the store and start firing them."""

        self.engine.start()
        self.restore()
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="alarm-reconcile", daemon=True)
        self._thread.start()

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
        self._thread = None
        with self.engine.firing_paused():
            for alarm_id in self.registry.drain():
                self.store.mark_state(alarm_id, AlarmState.EXPIRED, only_from=AlarmState.RINGING)
        self.registry.stop_preview()
        self.engine.shutdown()

    def restore(self) -> int:
        now = now_in_tz(self.tzinfo)
        armed = 0
        for record in self.store.list():
            if record.state == AlarmState.RINGING and record.id not in self.registry:
                logger.warning("Alarm %s was ringing in a previous run, marking expired", record.id)
                self.store.mark_state(record.id, AlarmState.EXPIRED, only_from=AlarmState.RINGING)
            elif record.state == AlarmState.SCHEDULED:
                if record.fire_at <= now:
                    logger.warning("Alarm %s missed its time %s, marking expired", record.id, record.fire_at.isoformat())
                    self.store.mark_state(record.id, AlarmState.EXPIRED, only_from=AlarmState.SCHEDULED)
                elif not self.engine.is_armed(record.id):
                    self.engine.arm(record, now=now)
                    armed += 1
        logger.info("Restored %s scheduled alarm(s) from %s", armed, self.store.path)
        return armed

    def create(
        self,
        title: Optional[str],
        fire_at: datetime,
        sound: str,
        alarm_id: Optional[str] = None,
    ) -> AlarmRecord:
        fire_at = ensure_tz(fire_at, self.tzinfo).replace(microsecond=0)
        now = now_in_tz(self.tzinfo)
        if fire_at <= now:
            raise InvalidTime(f"Alarm time {fire_at.isoformat()} is not in the future")
        if not self.sounds.is_known(sound):
            raise UnknownSound(f"Unknown sound: {sound}")
        time_of_day = TimeOfDay.from_datetime(fire_at)
        record = AlarmRecord(
            id=alarm_id or self._new_id(),
            title=(title or "").strip() or self.default_title,
            fire_at=fire_at,
            time=time_of_day.display(),
            trigger=encode_trigger(time_of_day),
            sound=sound,
            created_at=now,
        )
        self.store.add(record)
        if self.is_host:
            self.engine.arm(record, now=now)
        logger.info("Alarm %s created for %s (title=%s)", record.id, fire_at.isoformat(), record.title)
        return record

    def create_at(
        self,
        title: Optional[str],
        time_of_day: TimeOfDay,
        sound: str,
        alarm_id: Optional[str] = None,
    ) -> AlarmRecord:
        now = now_in_tz(self.tzinfo)
        fire_at = at_time_of_day(time_of_day.hour, time_of_day.minute, time_of_day.second, now)
        return self.create(title, fire_at, sound, alarm_id=alarm_id)

    def stop_one(self, alarm_id: str) -> bool:
        """Silence a ringing alarm. Returns False when nothing was ringing."""

        with self.engine.firing_paused():
            if self.registry.terminate(alarm_id):
                self.engine.cancel_auto_stop(alarm_id)
                self.store.mark_state(alarm_id, AlarmState.SILENCED, only_from=AlarmState.RINGING)
                return True
            if self.is_host:
                logger.info("Alarm %s is not ringing", alarm_id)
                return False
            # Not the host: ask the host to silence it on its next reconcile pass.
            record = self.store.mark_state(alarm_id, AlarmState.SILENCED, only_from=AlarmState.RINGING)
        if record:
            logger.info("Requested host to silence alarm %s", alarm_id)
            return True
        return False

    def stop_all(self) -> int:
        with self.engine.firing_paused():
            stopped = self.registry.terminate_all()
            transitioned = 0
            for record in self.store.list():
                if record.state != AlarmState.RINGING:
                    continue
                self.engine.cancel_auto_stop(record.id)
                if self.store.mark_state(record.id, AlarmState.SILENCED, only_from=AlarmState.RINGING):
                    transitioned += 1
        if self.is_host and stopped != transitioned:
            logger.warning("stop_all terminated %s process(es) but silenced %s alarm(s)", stopped, transitioned)
        if not self.is_host:
            return transitioned
        return stopped

    def remove(self, alarm_id: str) -> Optional[AlarmRecord]:
        with self.engine.firing_paused():
            self.engine.disarm(alarm_id)
            self.engine.cancel_auto_stop(alarm_id)
            self.registry.terminate(alarm_id)
            record = self.store.remove(alarm_id)
        if record:
            logger.info("Removed alarm %s", alarm_id)
        return record

    def list_active(self) -> List[str]:
        return self.registry.active_ids()

    def list_alarms(self) -> List[AlarmRecord]:
        return self.store.list()

    def get(self, alarm_id: str) -> Optional[AlarmRecord]:
        return self.store.get(alarm_id)

    def preview(self, sound: str) -> None:
        """Play ``sound`` in the preview slot, replacing any preview already playing."""

        path = self.sounds.resolve(sound)
        self.registry.start_preview(self.spawner.spawn(path))

    def stop_preview(self) -> bool:
        return self.registry.stop_preview()

    def reconcile(self) -> None:
        """Bring armed jobs and live playback in line with the store."""

        records = {r.id: r for r in self.store.list()}
        now = now_in_tz(self.tzinfo)
        for alarm_id in self.engine.armed_ids():
            record = records.get(alarm_id) or self.store.get(alarm_id)
            if record is None or record.state != AlarmState.SCHEDULED:
                self.engine.disarm(alarm_id)
                logger.info("Disarmed alarm %s (removed or no longer scheduled)", alarm_id)
        for record in records.values():
            if record.state == AlarmState.SCHEDULED and record.fire_at > now and not self.engine.is_armed(record.id):
                self.engine.arm(record, now=now)
        with self.engine.firing_paused():
            for alarm_id in self.registry.active_ids():
                record = self.store.get(alarm_id)
                if record is None or record.state.terminal:
                    self.engine.cancel_auto_stop(alarm_id)
                    if self.registry.terminate(alarm_id):
                        logger.info("Silenced alarm %s on request from another invocation", alarm_id)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.check_interval):
            try:
                self.reconcile()
            except Exception:
                logger.error("Alarm reconcile pass failed", exc_info=True)
