from __future__ import annotations

import enum
import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from .schedule import CATEGORIES, Category
from .storage import JsonStore

log = logging.getLogger("hellwatch.settings")

STORAGE_KEY = "settings_v5"
SETTINGS_VERSION = 5

_HEX_RE = re.compile(r"^#[0-9a-f]{6}$")


class BeepPattern(enum.Enum):
    SINGLE = "single"
    DOUBLE = "double"
    TRIPLE = "triple"

    @property
    def count(self) -> int:
        if self is BeepPattern.TRIPLE:
            return 3
        if self is BeepPattern.DOUBLE:
            return 2
        return 1


class OverlayMode(enum.Enum):
    OVERVIEW = "overview"
    TOAST = "toast"


@dataclass(frozen=True)
class TimerSlot:
    lead_minutes: int = 30
    speech_enabled: bool = False
    beep_pattern: BeepPattern = BeepPattern.SINGLE
    pitch_hz: int = 880


@dataclass(frozen=True)
class CategoryConfig:
    enabled: bool = True
    timer_count: int = 3
    slots: tuple[TimerSlot, TimerSlot, TimerSlot] = field(default_factory=lambda: default_slots())
    speech_name_template: Optional[str] = None

    def active_slots(self) -> tuple[TimerSlot, ...]:
        return self.slots[: self.timer_count]


@dataclass(frozen=True)
class OverlaySettingsSnapshot:
    enabled: bool
    mode: OverlayMode
    categories: Mapping[str, bool]
    bg_hex: str
    bg_opacity: float
    scale: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "mode": self.mode.value,
            "categories": dict(self.categories),
            "bgHex": self.bg_hex,
            "bgOpacity": self.bg_opacity,
            "scale": self.scale,
        }


@dataclass(frozen=True)
class Settings:
    volume: float = 0.8
    sound_enabled: bool = True
    overlay_toasts_enabled: bool = True
    overlay_window_enabled: bool = False
    overlay_mode: OverlayMode = OverlayMode.TOAST
    overlay_categories: Mapping[str, bool] = field(default_factory=lambda: {c.value: True for c in CATEGORIES})
    overlay_bg_hex: str = "#0b1220"
    overlay_bg_opacity: float = 0.92
    overlay_scale: float = 1.0
    categories: Mapping[Category, CategoryConfig] = field(default_factory=lambda: {c: CategoryConfig() for c in CATEGORIES})

    def category(self, category: Category) -> CategoryConfig:
        return self.categories.get(category) or CategoryConfig()


def default_slots() -> tuple[TimerSlot, TimerSlot, TimerSlot]:
    return (
        TimerSlot(lead_minutes=30, speech_enabled=True, beep_pattern=BeepPattern.SINGLE, pitch_hz=880),
        TimerSlot(lead_minutes=10, speech_enabled=False, beep_pattern=BeepPattern.DOUBLE, pitch_hz=880),
        TimerSlot(lead_minutes=5, speech_enabled=False, beep_pattern=BeepPattern.TRIPLE, pitch_hz=880),
    )


def default_settings() -> Settings:
    return Settings()


# ---- copy-on-write updaters ----

def with_category(settings: Settings, category: Category, cfg: CategoryConfig) -> Settings:
    cats = dict(settings.categories)
    cats[category] = cfg
    return replace(settings, categories=cats)


def with_category_enabled(settings: Settings, category: Category, enabled: bool) -> Settings:
    return with_category(settings, category, replace(settings.category(category), enabled=bool(enabled)))


def with_timer_count(settings: Settings, category: Category, timer_count: int) -> Settings:
    n = _clamp_int(timer_count, 3, 1, 3)
    return with_category(settings, category, replace(settings.category(category), timer_count=n))


def with_timer(settings: Settings, category: Category, index: int, **changes: Any) -> Settings:
    if index not in (0, 1, 2):
        raise IndexError(f"timer slot index out of range: {index}")
    cfg = settings.category(category)
    slots = list(cfg.slots)
    slots[index] = _normalize_slot(asdict_slot(replace(slots[index], **changes)), slots[index])
    return with_category(settings, category, replace(cfg, slots=(slots[0], slots[1], slots[2])))


def overlay_snapshot(settings: Settings) -> OverlaySettingsSnapshot:
    return OverlaySettingsSnapshot(
        enabled=settings.overlay_window_enabled,
        mode=settings.overlay_mode,
        categories=dict(settings.overlay_categories),
        bg_hex=settings.overlay_bg_hex,
        bg_opacity=settings.overlay_bg_opacity,
        scale=settings.overlay_scale,
    )


# ---- normalization ----

def _is_num(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _clamp_int(v: Any, fallback: int, lo: int, hi: int) -> int:
    if not _is_num(v):
        return fallback
    return max(lo, min(hi, int(round(v))))


def _clamp_float(v: Any, fallback: float, lo: float, hi: float) -> float:
    if not _is_num(v):
        return fallback
    return max(lo, min(hi, float(v)))


def _bool(v: Any, fallback: bool) -> bool:
    return v if isinstance(v, bool) else fallback


def normalize_hex_color(raw: Any, fallback: str) -> str:
    if not isinstance(raw, str):
        return fallback
    s = raw.strip().lower()
    return s if _HEX_RE.match(s) else fallback


def _beep_pattern(v: Any, fallback: BeepPattern) -> BeepPattern:
    if isinstance(v, BeepPattern):
        return v
    if v == "beep":
        return BeepPattern.SINGLE
    for p in BeepPattern:
        if p.value == v:
            return p
    return fallback


def asdict_slot(slot: TimerSlot) -> Dict[str, Any]:
    return {
        "leadMinutes": slot.lead_minutes,
        "speechEnabled": slot.speech_enabled,
        "beepPattern": slot.beep_pattern.value if isinstance(slot.beep_pattern, BeepPattern) else slot.beep_pattern,
        "pitchHz": slot.pitch_hz,
    }


def _normalize_slot(raw: Any, fallback: TimerSlot) -> TimerSlot:
    r = raw if isinstance(raw, dict) else {}
    return TimerSlot(
        lead_minutes=_clamp_int(r.get("leadMinutes"), fallback.lead_minutes, 1, 60),
        speech_enabled=_bool(r.get("speechEnabled"), fallback.speech_enabled),
        beep_pattern=_beep_pattern(r.get("beepPattern"), fallback.beep_pattern),
        pitch_hz=_clamp_int(r.get("pitchHz"), fallback.pitch_hz, 120, 2000),
    )


def _normalize_category(raw: Any, fallback: CategoryConfig) -> CategoryConfig:
    r = raw if isinstance(raw, dict) else {}
    tc = r.get("timerCount")
    timer_count = tc if isinstance(tc, int) and not isinstance(tc, bool) and tc in (1, 2, 3) else fallback.timer_count
    raw_slots = r.get("slots") if isinstance(r.get("slots"), list) else []
    slots = tuple(
        _normalize_slot(raw_slots[i] if i < len(raw_slots) else None, fallback.slots[i]) for i in range(3)
    )
    tmpl = r.get("speechNameTemplate")
    return CategoryConfig(
        enabled=_bool(r.get("enabled"), fallback.enabled),
        timer_count=timer_count,
        slots=slots,  # type: ignore[arg-type]
        speech_name_template=tmpl.strip() if isinstance(tmpl, str) and tmpl.strip() else None,
    )


def settings_from_json(raw: Any) -> Settings:
    d = default_settings()
    if not isinstance(raw, dict) or raw.get("version") != SETTINGS_VERSION:
        return d

    mode_raw = raw.get("overlayMode")
    mode = OverlayMode.OVERVIEW if mode_raw == OverlayMode.OVERVIEW.value else (
        OverlayMode.TOAST if mode_raw == OverlayMode.TOAST.value else d.overlay_mode
    )

    cats_raw = raw.get("overlayCategories") if isinstance(raw.get("overlayCategories"), dict) else {}
    overlay_cats = {c.value: _bool(cats_raw.get(c.value), True) for c in CATEGORIES}

    raw_categories = raw.get("categories") if isinstance(raw.get("categories"), dict) else {}
    categories = {c: _normalize_category(raw_categories.get(c.value), d.category(c)) for c in CATEGORIES}

    return Settings(
        volume=_clamp_float(raw.get("volume"), d.volume, 0.0, 1.0),
        sound_enabled=_bool(raw.get("soundEnabled"), d.sound_enabled),
        overlay_toasts_enabled=_bool(raw.get("overlayToastsEnabled"), d.overlay_toasts_enabled),
        overlay_window_enabled=_bool(raw.get("overlayWindowEnabled"), d.overlay_window_enabled),
        overlay_mode=mode,
        overlay_categories=overlay_cats,
        overlay_bg_hex=normalize_hex_color(raw.get("overlayBgHex"), d.overlay_bg_hex),
        overlay_bg_opacity=_clamp_float(raw.get("overlayBgOpacity"), d.overlay_bg_opacity, 0.2, 1.0),
        overlay_scale=_clamp_float(raw.get("overlayScale"), d.overlay_scale, 0.6, 2.0),
        categories=categories,
    )


def settings_to_json(settings: Settings) -> Dict[str, Any]:
    return {
        "version": SETTINGS_VERSION,
        "volume": settings.volume,
        "soundEnabled": settings.sound_enabled,
        "overlayToastsEnabled": settings.overlay_toasts_enabled,
        "overlayWindowEnabled": settings.overlay_window_enabled,
        "overlayMode": settings.overlay_mode.value,
        "overlayCategories": dict(settings.overlay_categories),
        "overlayBgHex": settings.overlay_bg_hex,
        "overlayBgOpacity": settings.overlay_bg_opacity,
        "overlayScale": settings.overlay_scale,
        "categories": {
            c.value: {
                "enabled": cfg.enabled,
                "timerCount": cfg.timer_count,
                "slots": [asdict_slot(s) for s in cfg.slots],
                "speechNameTemplate": cfg.speech_name_template,
            }
            for c, cfg in settings.categories.items()
        },
    }


def load_settings(store: JsonStore) -> Settings:
    try:
        return settings_from_json(store.read_json(STORAGE_KEY, None))
    except Exception:
        log.exception("Settings load failed; using defaults")
        return default_settings()


def save_settings(store: JsonStore, settings: Settings) -> None:
    try:
        store.write_json(STORAGE_KEY, settings_to_json(settings))
    except Exception:
        log.exception("Settings save failed (non-fatal)")
