# =========================================================================================
#      _          _ _               _       _
#     | |__   ___| | |_      ____ _| |_ ___| |__
#     | '_ \ / _ \ | \ \ /\ / / _` | __/ __| '_ \
#     | | | |  __/ | |\ V  V / (_| | || (__| | | |
#     |_| |_|\___|_|_| \_/\_/ \__,_|\__\___|_| |_|
#                                                        event reminders, out loud
# =========================================================================================

from __future__ import annotations

import datetime as dt
import logging
import random
import re
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .audio import AudioPlayer
from .schedule import Category, Occurrence

log = logging.getLogger("hellwatch.speech")

_SPACE_RE = re.compile(r"[ \t]+")
_URL_RE = re.compile(r"https?://\S+|www\.\S+", re.IGNORECASE)

APPROXIMATION_WORDS = (
    "about",
    "roughly",
    "around",
    "approximately",
    "nearly",
    "some",
)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def format_remaining_speech(remaining: dt.timedelta, rng: Optional[random.Random] = None) -> str:
    """
    Human phrasing of a countdown, e.g. "about 5 minutes".

    Rounds to the nearest minute (4:57 -> 5 minutes). Under half a minute the
    seconds are spoken instead; at about one minute the leftover seconds are
    appended.
    """
    total_seconds = max(0, int(remaining.total_seconds()))
    total_minutes = int(round(total_seconds / 60.0))
    hours, minutes = divmod(total_minutes, 60)
    seconds = total_seconds % 60

    if hours == 0 and total_minutes == 0:
        return _plural(seconds, "second")

    r = rng or random
    parts = [r.choice(APPROXIMATION_WORDS)]
    if hours > 0:
        parts.append(_plural(hours, "hour"))
    if minutes > 0:
        parts.append(_plural(minutes, "minute"))
    if hours == 0 and total_minutes <= 1 and seconds > 0:
        parts.append(_plural(seconds, "second"))
    return " ".join(parts)


def spoken_category_label(category: Category) -> str:
    if category is Category.HELLTIDE:
        return "Helltide"
    if category is Category.LEGION:
        return "Legion event"
    if category is Category.WORLD_BOSS:
        return "World boss"
    raise ValueError(f"unknown category: {category!r}")


def spoken_event_name(category: Category, occ: Optional[Occurrence], template: Optional[str] = None) -> str:
    """
    Template wins over the default label. For world bosses "{boss}" is
    replaced with the boss name, or the name is appended when absent.
    """
    base = (template or "").strip() or spoken_category_label(category)
    if category is not Category.WORLD_BOSS:
        return base
    boss = occ.boss if occ is not None else None
    if not boss:
        return _SPACE_RE.sub(" ", base.replace("{boss}", "")).strip()
    if "{boss}" in base:
        return _SPACE_RE.sub(" ", base.replace("{boss}", boss)).strip()
    return f"{base} {boss}".strip()


def announcement(category: Category, occ: Optional[Occurrence], remaining: dt.timedelta, template: Optional[str] = None,
                 rng: Optional[random.Random] = None) -> str:
    return f"{spoken_event_name(category, occ, template)} in {format_remaining_speech(remaining, rng)}"


def clean_for_tts(text: str) -> str:
    """Strip things a speech engine reads badly (URLs, braces, runs of spaces)."""
    if not text:
        return ""
    t = text.replace("\r\n", "\n").replace("\r", "\n")
    t = _URL_RE.sub("", t)
    t = t.replace("{", " ").replace("}", " ").replace("*", " ")
    lines = [_SPACE_RE.sub(" ", ln).strip() for ln in t.split("\n")]
    return "\n".join(ln for ln in lines if ln).strip()


def _festival_voice_expr(voice: str) -> str:
    """
    Accept:
      - kal_diphone
      - voice_kal_diphone
      - (voice_kal_diphone)
    Return a safe Festival expression like: (voice_kal_diphone)
    """
    v = (voice or "").strip()
    if not v:
        v = "kal_diphone"

    if v.startswith("(") and v.endswith(")"):
        v = v[1:-1].strip()

    if not v.startswith("voice_"):
        v = f"voice_{v}"

    return f"({v})"


def _duration_stretch_from_wpm(rate_wpm: int, baseline_wpm: int = 175) -> float:
    wpm = max(80, min(400, int(rate_wpm)))
    stretch = baseline_wpm / float(wpm)
    return max(0.5, min(2.0, stretch))


class SpeechUnavailable(RuntimeError):
    pass


@dataclass
class TTS:
    backend: str
    voice: str
    rate_wpm: int
    volume: float

    def synth_to_wav(self, text: str, out_wav: Path, volume: float = 1.0) -> None:
        out_wav.parent.mkdir(parents=True, exist_ok=True)
        msg = clean_for_tts(text)
        amp = max(0, min(200, int(round(100 * float(self.volume) * max(0.0, min(1.0, volume))))))

        if self.backend == "piper":
            if not shutil.which("piper"):
                raise SpeechUnavailable("piper backend selected but piper binary not found")
            cmd = ["piper", "-m", self.voice, "-f", str(out_wav)]
            subprocess.run(cmd, input=msg.encode("utf-8"), check=True, capture_output=True)

        elif self.backend == "festival":
            if not shutil.which("text2wave"):
                raise SpeechUnavailable("festival backend selected but text2wave not found")

            with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, suffix=".txt") as tf:
                tf.write(msg + "\n")
                text_path = tf.name
            try:
                cmd = [
                    "text2wave",
                    "-eval",
                    f"(Parameter.set 'Duration_Stretch {_duration_stretch_from_wpm(self.rate_wpm)})",
                    "-eval",
                    _festival_voice_expr(self.voice),
                    "-o",
                    str(out_wav),
                    text_path,
                ]
                subprocess.run(cmd, check=True, capture_output=True)
            finally:
                Path(text_path).unlink(missing_ok=True)

        else:
            # default: espeak-ng (or classic espeak)
            binary = shutil.which("espeak-ng") or shutil.which("espeak")
            if not binary:
                raise SpeechUnavailable("espeak-ng not found")
            cmd = [binary, "-v", self.voice, "-s", str(int(self.rate_wpm)), "-a", str(amp), "-w", str(out_wav), msg]
            subprocess.run(cmd, check=True, capture_output=True)


SpeechGate = Callable[[], bool]


@dataclass
class Speaker:
    """
    Speech cue: synthesize then play. A new utterance cuts off the previous
    one so stacked alerts stay snappy.

    speak() runs in a worker thread. Synthesis can take seconds, so the
    optional gate is asked again right before playback; cancel() and that
    check share a lock, so nothing starts playing after a cancel that saw
    the gate closed.
    """
    tts: TTS
    player: AudioPlayer
    audio_dir: Path
    _seq: int = field(default=0, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _play_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def speak(self, text: str, volume: float = 1.0, gate: Optional[SpeechGate] = None) -> bool:
        with self._lock:
            self.cancel()
            self._seq = (self._seq + 1) % 8
            out = Path(self.audio_dir) / f"speech_{self._seq}.wav"
            self.tts.synth_to_wav(text, out, volume=volume)
            with self._play_lock:
                if gate is not None and not gate():
                    log.info("Speech dropped after synthesis: %r", text)
                    return False
                self.player.play(out)
            return True

    def cancel(self) -> None:
        with self._play_lock:
            self.player.stop()
