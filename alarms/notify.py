from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from .sounds import LocalSpeaker

logger = logging.getLogger(__name__)

APP_NAME = "Alarms"


@dataclass
class Notification:
    title: str
    message: str
    alarm_id: Optional[str] = None
    action_label: Optional[str] = None
    action: Optional[Callable[[], object]] = None
    timeout: int = 10


class Notifier:
    """Best-effort alert delivery.

    Every notification is logged. Desktop notifications go through plyer,
    spoken alerts through pyttsx3, and a registered UI callback receives the
    full ``Notification`` so it can offer the primary action.
    """

    def __init__(
        self,
        desktop: bool = True,
        speaker: Optional[LocalSpeaker] = None,
        ui_callback: Optional[Callable[[Notification], None]] = None,
    ):
        self.desktop = desktop
        self.speaker = speaker
        self._ui_callback = ui_callback
        self._lock = Lock()

    def set_ui_callback(self, callback: Optional[Callable[[Notification], None]]) -> None:
        with self._lock:
            self._ui_callback = callback

    def notify(self, notification: Notification) -> None:
        logger.info("Notification: %s - %s", notification.title, notification.message)
        if self.desktop:
            self._notify_desktop(notification)
        if self.speaker and self.speaker.available:
            self.speaker.speak_async(f"{notification.title}. {notification.message}")
        with self._lock:
            callback = self._ui_callback
        if callback:
            try:
                callback(notification)
            except Exception:
                logger.error("Notification UI callback failed", exc_info=True)

    def _notify_desktop(self, notification: Notification) -> None:
        try:
            from plyer import notification as desktop_notification

            desktop_notification.notify(
                title=notification.title,
                message=notification.message,
                app_name=APP_NAME,
                timeout=notification.timeout,
            )
        except Exception as exc:
            logger.warning("Desktop notification failed: %s", exc)
