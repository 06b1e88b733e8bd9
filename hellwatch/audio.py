from __future__ import annotations

import hashlib
import logging
import math
import shutil
import subprocess
import wave
from array import array
from pathlib import Path
from typing import Optional, Sequence

from .settings import BeepPattern

log = logging.getLogger("hellwatch.audio")

BEEP_MS = 170
GAP_MS = 140
TAIL_MS = 50

# tried in order when no player is configured
_PLAYERS: tuple[tuple[str, ...], ...] = (
    ("paplay",),
    ("aplay", "-q"),
    ("ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet"),
    ("afplay",),
)


class AudioUnavailable(RuntimeError):
    pass


def clamp_pitch(pitch_hz: float) -> int:
    if not isinstance(pitch_hz, (int, float)) or not math.isfinite(pitch_hz):
        return 880
    return max(120, min(2000, int(round(pitch_hz))))


def beep_pattern_duration_ms(pattern: BeepPattern, beep_ms: int = BEEP_MS, gap_ms: int = GAP_MS, tail_ms: int = TAIL_MS) -> int:
    n = pattern.count
    return n * beep_ms + max(0, n - 1) * gap_ms + tail_ms


def _tone(pcm: array, freq_hz: float, seconds: float, sample_rate: int, amplitude: float) -> None:
    n = int(seconds * sample_rate)
    ramp = max(1, int(0.01 * sample_rate))
    peak = 32767 * max(0.0, min(1.0, amplitude))
    two_pi = 2.0 * math.pi
    for i in range(n):
        # 10ms attack/release so the tone doesn't click
        env = min(1.0, i / ramp, (n - i) / ramp)
        pcm.append(int(peak * env * math.sin(two_pi * freq_hz * i / sample_rate)))


def _silence(pcm: array, seconds: float, sample_rate: int) -> None:
    pcm.extend([0] * int(max(0.0, seconds) * sample_rate))


def write_mono_wav(path: Path, pcm: array, sample_rate: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)  # 16-bit
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm.tobytes())


def write_beep_pattern_wav(
    path: Path,
    pattern: BeepPattern,
    pitch_hz: float,
    volume: float,
    sample_rate: int = 44100,
    beep_ms: int = BEEP_MS,
    gap_ms: int = GAP_MS,
) -> None:
    freq = clamp_pitch(pitch_hz)
    amp = 0.25 * max(0.0, min(1.0, float(volume)))
    pcm = array("h")
    for i in range(pattern.count):
        if i:
            _silence(pcm, gap_ms / 1000.0, sample_rate)
        _tone(pcm, freq, beep_ms / 1000.0, sample_rate, amp)
    write_mono_wav(path, pcm, sample_rate)


def wav_duration_seconds(path: Path) -> float:
    """
    Fast duration probe (no ffmpeg). Assumes a valid WAV file.
    """
    with wave.open(str(path), "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        if rate <= 0:
            return 0.0
        return float(frames) / float(rate)


def _resolve_player(configured: str) -> Optional[Sequence[str]]:
    if configured:
        parts = configured.split()
        return parts if shutil.which(parts[0]) else None
    for cmd in _PLAYERS:
        if shutil.which(cmd[0]):
            return cmd
    return None


class AudioPlayer:
    """Fire-and-forget WAV playback through whatever system player exists."""

    def __init__(self, player: str = "") -> None:
        self._configured = player.strip()
        self._cmd: Optional[Sequence[str]] = None
        self._current: Optional[subprocess.Popen] = None

    def _command(self) -> Sequence[str]:
        if self._cmd is None:
            self._cmd = _resolve_player(self._configured)
        if self._cmd is None:
            raise AudioUnavailable("no audio player found (install pulseaudio-utils, alsa-utils or ffmpeg)")
        return self._cmd

    def play(self, wav_path: Path) -> subprocess.Popen:
        cmd = list(self._command()) + [str(wav_path)]
        proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        self._current = proc
        return proc

    def stop(self) -> None:
        proc = self._current
        self._current = None
        if proc is not None and proc.poll() is None:
            try:
                proc.terminate()
            except OSError:
                pass


class BeepPlayer:
    """
    Renders (and caches) beep pattern WAVs and plays them.

    play() returns the pattern length in ms so the caller can sequence
    speech after it; 0 means nothing was played.
    """

    def __init__(self, player: AudioPlayer, audio_dir: Path, sample_rate: int = 44100) -> None:
        self.player = player
        self.audio_dir = Path(audio_dir)
        self.sample_rate = int(sample_rate)

    def _wav_for(self, pattern: BeepPattern, pitch: int, volume: float) -> Path:
        tag = hashlib.sha1(f"{pattern.value}|{pitch}|{volume:.3f}|{self.sample_rate}".encode()).hexdigest()[:12]
        path = self.audio_dir / f"beep_{pattern.value}_{pitch}_{tag}.wav"
        if not path.exists():
            write_beep_pattern_wav(path, pattern, pitch, volume, self.sample_rate)
        return path

    def play(self, pattern: BeepPattern, pitch_hz: float, volume: float = 1.0) -> int:
        vol = float(volume) if isinstance(volume, (int, float)) and math.isfinite(volume) else 1.0
        vol = max(0.0, min(1.0, vol))
        if vol <= 0:
            return 0
        path = self._wav_for(pattern, clamp_pitch(pitch_hz), vol)
        self.player.play(path)
        return beep_pattern_duration_ms(pattern)
