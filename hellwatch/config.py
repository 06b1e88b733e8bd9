from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import os

import yaml


DEFAULT_SCHEDULE_URL = "https://helltides.com/api/schedule"
DEFAULT_UA = "hellwatch/1.0 (desktop event reminder)"


@dataclass(frozen=True)
class ScheduleConfig:
    url: str
    user_agent: str
    timeout_seconds: float
    cache_ttl_seconds: int
    refresh_min_seconds: int
    refresh_max_seconds: int


@dataclass(frozen=True)
class AudioConfig:
    sample_rate: int
    player: str
    speech_pause_seconds: float


@dataclass(frozen=True)
class TTSConfig:
    backend: str
    voice: str
    rate_wpm: int
    volume: float


@dataclass(frozen=True)
class OverlayConfig:
    enabled: bool
    host: str
    port: int
    port_file: str
    toast_duration_ms: int
    debug_toast_duration_ms: int


@dataclass(frozen=True)
class SafetyConfig:
    watchdog_enabled: bool
    watchdog_interval_seconds: float
    watchdog_grace_seconds: float
    watchdog_max_bad: int
    min_width: int
    min_height: int


@dataclass(frozen=True)
class PathsConfig:
    state_dir: str
    audio_dir: str


@dataclass(frozen=True)
class AppConfig:
    schedule: ScheduleConfig
    audio: AudioConfig
    tts: TTSConfig
    overlay: OverlayConfig
    safety: SafetyConfig
    paths: PathsConfig


def _env(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    return v if v not in (None, "") else default


def _env_str(key: str, default: str) -> str:
    v = os.environ.get(key)
    return v.strip() if v and v.strip() else default


def _env_int(key: str, default: int) -> int:
    v = os.environ.get(key)
    if not v:
        return default
    try:
        return int(v)
    except Exception:
        return default


def _env_float(key: str, default: float) -> float:
    v = os.environ.get(key)
    if not v:
        return default
    try:
        return float(v)
    except Exception:
        return default


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.environ.get(key)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _default_state_dir() -> str:
    base = _env("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return str(Path(base) / "hellwatch")


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = raw.get(name)
    return v if isinstance(v, dict) else {}


def load_config(path: str | None = None) -> AppConfig:
    """
    Every key is optional. A missing file section falls back to built-in defaults,
    and HELLWATCH_* env vars win over both.
    """
    raw: Dict[str, Any] = {}
    if path:
        loaded = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            raw = loaded

    s = _section(raw, "schedule")
    schedule = ScheduleConfig(
        url=_env_str("HELLWATCH_SCHEDULE_URL", str(s.get("url", DEFAULT_SCHEDULE_URL))),
        user_agent=str(s.get("user_agent", DEFAULT_UA)),
        timeout_seconds=float(s.get("timeout_seconds", 10.0)),
        cache_ttl_seconds=int(s.get("cache_ttl_seconds", 60)),
        refresh_min_seconds=_env_int("HELLWATCH_REFRESH_MIN_SECONDS", int(s.get("refresh_min_seconds", 600))),
        refresh_max_seconds=_env_int("HELLWATCH_REFRESH_MAX_SECONDS", int(s.get("refresh_max_seconds", 900))),
    )

    a = _section(raw, "audio")
    audio = AudioConfig(
        sample_rate=int(a.get("sample_rate", 44100)),
        player=_env_str("HELLWATCH_AUDIO_PLAYER", str(a.get("player", ""))),
        speech_pause_seconds=float(a.get("speech_pause_seconds", 0.5)),
    )

    t = _section(raw, "tts")
    tts = TTSConfig(
        backend=_env_str("HELLWATCH_TTS_BACKEND", str(t.get("backend", "espeak-ng"))),
        voice=str(t.get("voice", "en-us")),
        rate_wpm=int(t.get("rate_wpm", 165)),
        volume=float(t.get("volume", 1.0)),
    )

    o = _section(raw, "overlay")
    overlay = OverlayConfig(
        enabled=_env_bool("HELLWATCH_OVERLAY_ENABLED", bool(o.get("enabled", True))),
        host=str(o.get("host", "127.0.0.1")),
        port=_env_int("HELLWATCH_OVERLAY_PORT", int(o.get("port", 0))),
        port_file=str(o.get("port_file", "")),
        toast_duration_ms=int(o.get("toast_duration_ms", 5200)),
        debug_toast_duration_ms=int(o.get("debug_toast_duration_ms", 8000)),
    )

    w = _section(raw, "safety")
    safety = SafetyConfig(
        watchdog_enabled=_env_bool("HELLWATCH_WATCHDOG_ENABLED", bool(w.get("watchdog_enabled", True))),
        watchdog_interval_seconds=_env_float("HELLWATCH_WATCHDOG_INTERVAL_SECONDS", float(w.get("watchdog_interval_seconds", 1.5))),
        watchdog_grace_seconds=float(w.get("watchdog_grace_seconds", 5.0)),
        watchdog_max_bad=int(w.get("watchdog_max_bad", 3)),
        min_width=int(w.get("min_width", 200)),
        min_height=int(w.get("min_height", 120)),
    )

    p = _section(raw, "paths")
    state_dir = _env_str("HELLWATCH_STATE_DIR", str(p.get("state_dir", _default_state_dir())))
    paths = PathsConfig(
        state_dir=state_dir,
        audio_dir=str(p.get("audio_dir", str(Path(state_dir) / "audio"))),
    )

    return AppConfig(
        schedule=schedule,
        audio=audio,
        tts=tts,
        overlay=overlay,
        safety=safety,
        paths=paths,
    )


def overlay_port_file(cfg: AppConfig) -> Path:
    return Path(cfg.overlay.port_file) if cfg.overlay.port_file else Path(cfg.paths.state_dir) / "overlay.json"
