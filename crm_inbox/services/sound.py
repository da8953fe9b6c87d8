"""New-message cue: a short 880 Hz beep rendered as a WAV data URI."""

import base64
import io
import json
import math
import struct
import wave
from functools import lru_cache
from pathlib import Path
from typing import Optional

from crm_inbox.logging_config import get_logger

logger = get_logger("sound")

SAMPLE_RATE = 22050
FREQUENCY_HZ = 880
DURATION_MS = 200
AMPLITUDE = 0.3


def render_beep(
    frequency: int = FREQUENCY_HZ,
    duration_ms: int = DURATION_MS,
    sample_rate: int = SAMPLE_RATE,
    amplitude: float = AMPLITUDE,
) -> bytes:
    """16-bit mono PCM sine with a linear fade-out."""
    total = int(sample_rate * duration_ms / 1000)
    frames = bytearray()
    for i in range(total):
        fade = 1 - i / total
        value = math.sin(2 * math.pi * frequency * i / sample_rate) * amplitude * fade
        frames += struct.pack("<h", int(value * 32767))

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(bytes(frames))
    return buffer.getvalue()


@lru_cache(maxsize=1)
def notification_sound_data_uri() -> str:
    return "data:audio/wav;base64," + base64.b64encode(render_beep()).decode("ascii")


class MuteState:
    """Per-agent mute flag for the new-message cue, optionally persisted to a JSON file.

    The file maps agent ids to flags, so several agents (and several open
    sessions of one agent) can share it. Reads go to the file every time.
    """

    def __init__(self, path: Optional[str] = None, user_id=None, muted: bool = False):
        self.path = Path(path) if path else None
        self.key = str(user_id) if user_id is not None else "default"
        self._muted = muted

    def _load(self) -> dict:
        if not (self.path and self.path.exists()):
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read mute state: {e}", extra={"context": {"path": str(self.path)}})
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def muted(self) -> bool:
        if self.path:
            self._muted = bool(self._load().get(self.key, self._muted))
        return self._muted

    def set(self, muted: bool) -> bool:
        self._muted = muted
        if self.path:
            data = self._load()
            data[self.key] = muted
            try:
                self.path.write_text(json.dumps(data))
            except OSError as e:
                logger.warning(f"Failed to persist mute state: {e}", extra={"context": {"path": str(self.path)}})
        return self._muted

    def toggle(self) -> bool:
        return self.set(not self.muted)
