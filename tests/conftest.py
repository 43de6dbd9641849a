import itertools
import subprocess
import threading
import time
from datetime import timezone

import pytest

from alarms.errors import SpawnFailure
from alarms.manager import AlarmManager
from alarms.notify import Notifier
from alarms.sounds import SoundLibrary
from alarms.storage import AlarmStore


class FakeProcess:
    _pids = itertools.count(1000)

    def __init__(self, path="sound.m4r"):
        self.path = path
        self.pid = next(self._pids)
        self.returncode = None
        self.terminate_calls = 0
        self._exited = threading.Event()
        self._lock = threading.Lock()

    def terminate(self):
        with self._lock:
            self.terminate_calls += 1
            if self.returncode is None:
                self.returncode = -15
        self._exited.set()

    def finish(self):
        with self._lock:
            if self.returncode is None:
                self.returncode = 0
        self._exited.set()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(str(self.path), timeout)
        return self.returncode


class FakeSpawner:
    def __init__(self, fail=False):
        self.fail = fail
        self.processes = []

    def spawn(self, sound_path):
        if self.fail:
            raise SpawnFailure("player exploded")
        process = FakeProcess(sound_path)
        self.processes.append(process)
        return process


class NotificationLog:
    def __init__(self):
        self.items = []
        self.received = threading.Event()

    def __call__(self, notification):
        self.items.append(notification)
        self.received.set()


def wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def tz():
    return timezone.utc


@pytest.fixture
def store(tmp_path, tz):
    return AlarmStore(tmp_path / "alarms.json", tzinfo=tz)


@pytest.fixture
def sounds(tmp_path):
    return SoundLibrary(sounds_dir=tmp_path / "ringtones", fallback_path=tmp_path / "alarm.wav")


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def notifications():
    return NotificationLog()


@pytest.fixture
def make_manager(store, sounds, spawner, notifications, tz):
    created = []

    def factory(**overrides):
        kwargs = dict(
            store=store,
            sounds=sounds,
            spawner=spawner,
            notifier=Notifier(desktop=False, ui_callback=notifications),
            timezone=tz,
            auto_stop_seconds=60,
            check_interval=0.2,
        )
        kwargs.update(overrides)
        manager = AlarmManager(**kwargs)
        created.append(manager)
        return manager

    yield factory
    for manager in created:
        manager.shutdown()


@pytest.fixture
def manager(make_manager):
    return make_manager()
