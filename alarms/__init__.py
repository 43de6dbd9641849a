"""One-shot alarm scheduling, playback supervision and persistence."""

from .errors import AlarmError, DuplicateAlarm, InvalidTime, SpawnFailure, UnknownSound
from .manager import AlarmManager
from .registry import ProcessRegistry
from .storage import AlarmRecord, AlarmState, AlarmStore
from .trigger import TimeOfDay, encode_trigger
