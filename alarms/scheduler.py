from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import partial
from threading import RLock, Thread
from typing import Callable, Iterator, List, Optional

from apscheduler.events import EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from time_utils import now_in_tz

from .errors import SpawnFailure, UnknownSound
from .notify import Notification, Notifier
from .registry import ProcessHandle, ProcessRegistry
from .sounds import PlaybackSpawner, SoundLibrary
from .storage import AlarmRecord, AlarmState, AlarmStore
from .trigger import next_fire_time

logger = logging.getLogger(__name__)

FIRE_PREFIX = "fire:"
AUTO_STOP_PREFIX = "auto-stop:"


def _fire_job_id(alarm_id: str) -> str:
    return f"{FIRE_PREFIX}{alarm_id}"


def _auto_stop_job_id(alarm_id: str) -> str:
    return f"{AUTO_STOP_PREFIX}{alarm_id}"


class TriggerEngine:
    """Arms one-shot fire jobs, starts playback when they run and auto-stops it.

    Each alarm gets a single ``DateTrigger`` job computed from its cron-style
    trigger, so a job never runs twice. A second job per ringing alarm
    terminates playback after ``auto_stop_seconds``.
    """

    def __init__(
        self,
        store: AlarmStore,
        registry: ProcessRegistry,
        sounds: SoundLibrary,
        spawner: PlaybackSpawner,
        notifier: Notifier,
        tzinfo,
        auto_stop_seconds: float = 60,
        misfire_grace_seconds: int = 30,
        stop_action: Optional[Callable[[str], object]] = None,
        on_failure: Optional[Callable[[AlarmRecord, Exception], None]] = None,
    ):
        self.store = store
        self.registry = registry
        self.sounds = sounds
        self.spawner = spawner
        self.notifier = notifier
        self.tzinfo = tzinfo
        self.auto_stop_seconds = auto_stop_seconds
        self.stop_action = stop_action
        self.on_failure = on_failure

        self._fire_lock = RLock()
        self._scheduler = BackgroundScheduler(
            timezone=tzinfo,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_seconds,
            },
        )
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Trigger engine started (auto_stop=%ss)", self.auto_stop_seconds)

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Trigger engine stopped")

    def arm(self, record: AlarmRecord, now: Optional[datetime] = None) -> datetime:
        if record.state != AlarmState.SCHEDULED:
            raise ValueError(f"Alarm {record.id} is {record.state.value}, only scheduled alarms can be armed")
        now = now or now_in_tz(self.tzinfo)
        run_at = next_fire_time(record.trigger, now, not_before=record.fire_at)
        self._scheduler.add_job(
            self.fire,
            trigger=DateTrigger(run_date=run_at, timezone=self.tzinfo),
            args=[record.id],
            id=_fire_job_id(record.id),
            name=f"alarm {record.title}",
            replace_existing=True,
        )
        logger.info("Armed alarm %s (%s) for %s", record.id, record.title, run_at.isoformat())
        return run_at

    def disarm(self, alarm_id: str) -> bool:
        return self._remove_job(_fire_job_id(alarm_id))

    def is_armed(self, alarm_id: str) -> bool:
        return self._scheduler.get_job(_fire_job_id(alarm_id)) is not None

    def armed_ids(self) -> List[str]:
        return [
            job.id[len(FIRE_PREFIX):]
            for job in self._scheduler.get_jobs()
            if job.id.startswith(FIRE_PREFIX)
        ]

    def cancel_auto_stop(self, alarm_id: str) -> bool:
        return self._remove_job(_auto_stop_job_id(alarm_id))

    @contextmanager
    def firing_paused(self) -> Iterator[None]:
        """Hold off fire and auto-stop callbacks for the duration of the block."""

        with self._fire_lock:
            yield

    def fire(self, alarm_id: str) -> None:
        """Fire job callback: ring the alarm if it is still scheduled."""

        with self._fire_lock:
            record = self.store.mark_state(alarm_id, AlarmState.RINGING, only_from=AlarmState.SCHEDULED)
            if record is None:
                logger.info("Alarm %s no longer scheduled, skipping fire", alarm_id)
                return
            logger.info("Alarm %s triggered (title=%s, sound=%s)", alarm_id, record.title, record.sound)
            try:
                handle = self.spawner.spawn(self.sounds.resolve(record.sound))
            except (SpawnFailure, UnknownSound) as exc:
                self._fail(record, exc)
                return
            self.registry.register(alarm_id, handle)
            self._arm_auto_stop(alarm_id)

        Thread(
            target=self._watch_exit,
            args=(alarm_id, handle),
            name=f"alarm-exit-{alarm_id}",
            daemon=True,
        ).start()
        action = partial(self.stop_action, alarm_id) if self.stop_action else None
        self.notifier.notify(
            Notification(
                title=record.title,
                message=f"Alarm for {record.time}",
                alarm_id=alarm_id,
                action_label="Stop" if action else None,
                action=action,
            )
        )

    def expire(self, alarm_id: str) -> Optional[AlarmRecord]:
        """Auto-stop job callback."""

        with self._fire_lock:
            self.cancel_auto_stop(alarm_id)
            self.registry.terminate(alarm_id)
            record = self.store.mark_state(alarm_id, AlarmState.EXPIRED, only_from=AlarmState.RINGING)
        if record:
            logger.info("Alarm %s auto-stopped after %ss", alarm_id, self.auto_stop_seconds)
        return record

    def _arm_auto_stop(self, alarm_id: str) -> None:
        run_at = now_in_tz(self.tzinfo) + timedelta(seconds=self.auto_stop_seconds)
        self._scheduler.add_job(
            self.expire,
            trigger=DateTrigger(run_date=run_at, timezone=self.tzinfo),
            args=[alarm_id],
            id=_auto_stop_job_id(alarm_id),
            misfire_grace_time=None,
            replace_existing=True,
        )

    def _fail(self, record: AlarmRecord, exc: Exception) -> None:
        logger.error("Alarm %s could not start playback: %s", record.id, exc)
        failed = self.store.mark_state(record.id, AlarmState.FAILED) or record.with_state(AlarmState.FAILED)
        self.notifier.notify(
            Notification(
                title=f"{record.title} failed",
                message=f"Alarm for {record.time} could not play: {exc}",
                alarm_id=record.id,
            )
        )
        if self.on_failure:
            try:
                self.on_failure(failed, exc)
            except Exception:  # pragma: no cover - callback safety
                logger.error("on_failure callback failed", exc_info=True)

    def _watch_exit(self, alarm_id: str, handle: ProcessHandle) -> None:
        try:
            handle.wait()
        except Exception:  # pragma: no cover - platform wait errors
            logger.debug("wait() failed for alarm %s", alarm_id, exc_info=True)
            return
        if self.registry.discard(alarm_id, handle):
            logger.info("Playback for alarm %s finished", alarm_id)

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        if not event.job_id.startswith(FIRE_PREFIX):
            return
        alarm_id = event.job_id[len(FIRE_PREFIX):]
        record = self.store.mark_state(alarm_id, AlarmState.EXPIRED, only_from=AlarmState.SCHEDULED)
        if record:
            logger.warning("Alarm %s missed its fire time %s", alarm_id, event.scheduled_run_time)
            self.notifier.notify(Notification(title=f"Missed: {record.title}", message=f"Alarm for {record.time} did not ring"))

    def _remove_job(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True
