from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import wave
from pathlib import Path
from threading import Lock, Thread
from typing import Dict, List, Optional, Sequence

import numpy as np

from .errors import SpawnFailure, UnknownSound

try:  # Optional local TTS for spoken alerts
    import pyttsx3
except ImportError:  # pragma: no cover - optional
    pyttsx3 = None  # type: ignore

logger = logging.getLogger(__name__)

DEFAULT_SOUNDS_DIR = Path("/System/Library/PrivateFrameworks/ToneLibrary.framework/Versions/A/Resources/Ringtones")
DEFAULT_SOUND = "Radial"
FALLBACK_SOUND = "Beep"

RINGTONES: Dict[str, str] = {
    "Apex": "Apex.m4r",
    "Beacon": "Beacon.m4r",
    "Bulletin": "Bulletin.m4r",
    "By The Seaside": "By_The_Seaside.m4r",
    "Chimes": "Chimes.m4r",
    "Circuit": "Circuit.m4r",
    "Constellation": "Constellation.m4r",
    "Cosmic": "Cosmic.m4r",
    "Crystals": "Crystals.m4r",
    "Hillside": "Hillside.m4r",
    "Illuminate": "Illuminate.m4r",
    "Night Owl": "Night_Owl.m4r",
    "Opening": "Opening.m4r",
    "Playtime": "Playtime.m4r",
    "Presto": "Presto.m4r",
    "Radar": "Radar.m4r",
    "Radial": "Radial.m4r",
    "Ripples": "Ripples.m4r",
    "Sencha": "Sencha.m4r",
    "Signal": "Signal.m4r",
    "Silk": "Silk.m4r",
    "Slow Rise": "Slow_Rise.m4r",
    "Stargaze": "Stargaze.m4r",
    "Summit": "Summit.m4r",
    "Twinkle": "Twinkle.m4r",
    "Uplift": "Uplift.m4r",
    "Waves": "Waves.m4r",
}

# Ringtones whose file on disk does not follow the catalog name.
RESOURCE_OVERRIDES: Dict[str, str] = {
    "Radial.m4r": "Radial-EncoreInfinitum.m4r",
}

PLAYER_CANDIDATES: Sequence[Sequence[str]] = (
    ("afplay",),
    ("paplay",),
    ("aplay", "-q"),
    ("ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet"),
)


def ensure_alarm_sound(path: Path, duration_seconds: float = 1.5) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    sample_rate = 24000
    freq = 880.0
    amplitude = 0.4
    t = np.arange(int(duration_seconds * sample_rate)) / sample_rate
    samples = (32767 * amplitude * np.sin(2 * np.pi * freq * t)).astype("<i2")
    with wave.open(str(path), "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(samples.tobytes())
    logger.info("Generated fallback alarm sound at %s", path)


def _normalize(name: str) -> str:
    return name.strip().replace("_", " ").lower()


class SoundLibrary:
    """Resolves symbolic sound names to files in the ringtone directory."""

    def __init__(self, sounds_dir: Path = DEFAULT_SOUNDS_DIR, fallback_path: Path = Path("data/alarm.wav")):
        self.sounds_dir = Path(sounds_dir)
        self.fallback_path = Path(fallback_path)
        self._by_key: Dict[str, str] = {}
        for label, filename in RINGTONES.items():
            self._by_key[_normalize(label)] = filename
            self._by_key[_normalize(Path(filename).stem)] = filename
            self._by_key[_normalize(filename)] = filename

    def names(self) -> List[str]:
        return sorted(RINGTONES) + [FALLBACK_SOUND]

    def is_known(self, sound_ref: str) -> bool:
        try:
            self._lookup(sound_ref)
        except UnknownSound:
            return False
        return True

    def resolve(self, sound_ref: str) -> Path:
        """Return the file to play for ``sound_ref``. The file is not required to exist."""

        target = self._lookup(sound_ref)
        if target is None:
            try:
                ensure_alarm_sound(self.fallback_path)
            except OSError as exc:
                raise SpawnFailure(f"Cannot write fallback tone {self.fallback_path}: {exc}") from exc
            return self.fallback_path.resolve()
        if isinstance(target, Path):
            return target
        filename = RESOURCE_OVERRIDES.get(target, target)
        return self.sounds_dir / filename

    def _lookup(self, sound_ref: str):
        ref = (sound_ref or "").strip()
        if not ref:
            raise UnknownSound("Sound name is empty")
        if _normalize(ref) == _normalize(FALLBACK_SOUND):
            return None
        candidate = Path(ref)
        if candidate.is_absolute() and candidate.is_file():
            return candidate
        filename = self._by_key.get(_normalize(ref))
        if filename is None:
            raise UnknownSound(f"Unknown sound: {sound_ref}")
        return filename


def default_player() -> Optional[List[str]]:
    for candidate in PLAYER_CANDIDATES:
        if shutil.which(candidate[0]):
            return list(candidate)
    return None


class PlaybackSpawner:
    """Starts the external audio player for one file and returns its process."""

    def __init__(self, player: Optional[str] = None):
        self.player_cmd: Optional[List[str]] = shlex.split(player) if player else default_player()

    def spawn(self, sound_path: Path) -> subprocess.Popen:
        if not self.player_cmd:
            raise SpawnFailure("No audio player found (set ALARM_PLAYER)")
        if not Path(sound_path).is_file():
            raise SpawnFailure(f"Sound file not found: {sound_path}")
        cmd = [*self.player_cmd, str(sound_path)]
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise SpawnFailure(f"Failed to start {cmd[0]}: {exc}") from exc
        logger.info("Started %s (pid=%s) for %s", cmd[0], process.pid, sound_path)
        return process


class LocalSpeaker:
    """Lightweight offline TTS wrapper around pyttsx3."""

    def __init__(self, rate: int = 185):
        self._engine = pyttsx3.init() if pyttsx3 else None
        self._lock = Lock()
        if self._engine:
            try:
                self._engine.setProperty("rate", rate)
            except Exception:
                logger.debug("Failed to set pyttsx3 rate")

    @property
    def available(self) -> bool:
        return self._engine is not None

    def speak_async(self, text: str) -> bool:
        if not self._engine:
            return False
        Thread(target=self._speak, args=(text,), daemon=True).start()
        return True

    def _speak(self, text: str) -> None:
        if not self._engine:
            return
        with self._lock:
            try:
                self._engine.say(text)
                self._engine.runAndWait()
            except Exception:  # pragma: no cover - engine runtime errors
                logger.error("pyttsx3 failed to speak text", exc_info=True)
