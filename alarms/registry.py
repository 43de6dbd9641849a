from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    def terminate(self) -> None: ...

    def poll(self) -> Optional[int]: ...

    def wait(self, timeout: Optional[float] = None) -> int: ...


def _is_running(handle: ProcessHandle) -> bool:
    return handle.poll() is None


class ProcessRegistry:
    """Lock-guarded map of alarm id -> playback process, plus one preview slot.

    Shared by the scheduler's fire path, user stop calls and sound previews.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._handles: Dict[str, ProcessHandle] = {}
        self._preview: Optional[ProcessHandle] = None

    def register(self, alarm_id: str, handle: ProcessHandle) -> None:
        with self._lock:
            previous = self._handles.get(alarm_id)
            self._handles[alarm_id] = handle
            if previous is not None and previous is not handle and _is_running(previous):
                logger.warning("Alarm %s re-registered while playing, terminating old process", alarm_id)
                previous.terminate()

    def lookup(self, alarm_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(alarm_id)

    def terminate(self, alarm_id: str) -> bool:
        with self._lock:
            handle = self._handles.pop(alarm_id, None)
            if handle is None or not _is_running(handle):
                return False
            handle.terminate()
        logger.info("Terminated playback for alarm %s", alarm_id)
        return True

    def terminate_all(self) -> int:
        return len(self.drain())

    def drain(self) -> List[str]:
        """Terminate every live handle and empty the registry; returns terminated ids."""

        stopped: List[str] = []
        with self._lock:
            for alarm_id, handle in self._handles.items():
                if _is_running(handle):
                    handle.terminate()
                    stopped.append(alarm_id)
            self._handles.clear()
        if stopped:
            logger.info("Terminated playback for %s alarm(s)", len(stopped))
        return stopped

    def discard(self, alarm_id: str, handle: ProcessHandle) -> bool:
        """Drop ``handle`` after it exited, unless another handle took its place."""

        with self._lock:
            if self._handles.get(alarm_id) is handle:
                del self._handles[alarm_id]
                return True
        return False

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, alarm_id: str) -> bool:
        with self._lock:
            return alarm_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    # Preview slot

    def start_preview(self, handle: ProcessHandle) -> None:
        with self._lock:
            previous = self._preview
            self._preview = handle
            if previous is not None and _is_running(previous):
                previous.terminate()

    def stop_preview(self) -> bool:
        with self._lock:
            handle = self._preview
            self._preview = None
            if handle is None or not _is_running(handle):
                return False
            handle.terminate()
            return True

    @property
    def preview_active(self) -> bool:
        with self._lock:
            return self._preview is not None and _is_running(self._preview)
