from __future__ import annotations


class AlarmError(Exception):
    """Base class for alarm subsystem errors."""


class InvalidTime(AlarmError, ValueError):
    """Target time is not in the future."""


class UnknownSound(AlarmError, ValueError):
    pass


class DuplicateAlarm(AlarmError, ValueError):
    pass


class SpawnFailure(AlarmError, RuntimeError):
    """Playback process could not be started."""


class StoreCorrupt(AlarmError):
    """Persisted alarm data could not be decoded.

    Raised while loading the store file and handled inside ``AlarmStore``,
    which logs it and carries on with an empty collection.
    """
