import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from alarms.sounds import DEFAULT_SOUND, DEFAULT_SOUNDS_DIR
from alarms.storage import DEFAULT_TITLE


def _get_env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip() in {"1", "true", "True", "yes", "YES", "y"}


def _get_env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _get_env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


@dataclass
class Config:
    alarms_path: Path
    sounds_dir: Path
    fallback_sound_path: Path
    default_sound: str
    default_title: str
    player: Optional[str]
    auto_stop_seconds: float
    check_interval_ms: int
    misfire_grace_seconds: int
    timezone: Optional[str]
    desktop_notifications: bool
    spoken_alerts: bool
    log_level: str
    log_dir: Path


def load_config(env_path: Optional[Path] = None) -> Config:
    if env_path is None:
        env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    auto_stop_seconds = _get_env_float("ALARM_AUTO_STOP_SECONDS", 60.0)
    if auto_stop_seconds <= 0:
        raise ValueError("ALARM_AUTO_STOP_SECONDS must be positive")

    return Config(
        alarms_path=Path(os.getenv("ALARM_STORAGE_PATH", "data/alarms.json")),
        sounds_dir=Path(os.getenv("ALARM_SOUNDS_DIR") or DEFAULT_SOUNDS_DIR),
        fallback_sound_path=Path(os.getenv("ALARM_FALLBACK_SOUND_PATH", "data/alarm.wav")),
        default_sound=os.getenv("ALARM_DEFAULT_SOUND", DEFAULT_SOUND),
        default_title=os.getenv("ALARM_DEFAULT_TITLE", DEFAULT_TITLE),
        player=os.getenv("ALARM_PLAYER") or None,
        auto_stop_seconds=auto_stop_seconds,
        check_interval_ms=_get_env_int("ALARM_CHECK_INTERVAL_MS", 1000),
        misfire_grace_seconds=_get_env_int("ALARM_MISFIRE_GRACE_SECONDS", 30),
        timezone=os.getenv("ALARM_TIMEZONE") or None,
        desktop_notifications=_get_env_bool("ENABLE_DESKTOP_NOTIFICATIONS", True),
        spoken_alerts=_get_env_bool("ENABLE_SPOKEN_ALERTS", False),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_dir=Path(os.getenv("LOG_DIR", "logs")),
    )


def setup_logging(log_level: str = "INFO", log_dir: Path = Path("logs")) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)

    log_path = log_dir / "alarms.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        handlers=[file_handler, console_handler],
    )
