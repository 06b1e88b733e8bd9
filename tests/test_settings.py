from __future__ import annotations

import pytest

from hellwatch.schedule import Category
from hellwatch.settings import (
    STORAGE_KEY,
    BeepPattern,
    OverlayMode,
    default_settings,
    load_settings,
    overlay_snapshot,
    save_settings,
    settings_from_json,
    settings_to_json,
    with_category_enabled,
    with_timer,
    with_timer_count,
)


def test_defaults():
    s = default_settings()
    assert s.volume == 0.8
    cfg = s.category(Category.HELLTIDE)
    assert cfg.enabled and cfg.timer_count == 3
    assert [slot.lead_minutes for slot in cfg.slots] == [30, 10, 5]
    assert [slot.beep_pattern for slot in cfg.slots] == [BeepPattern.SINGLE, BeepPattern.DOUBLE, BeepPattern.TRIPLE]
    assert cfg.slots[0].speech_enabled and not cfg.slots[1].speech_enabled
    assert all(slot.pitch_hz == 880 for slot in cfg.slots)


def test_updaters_are_copy_on_write():
    s = default_settings()
    s2 = with_category_enabled(s, Category.LEGION, False)
    assert s.category(Category.LEGION).enabled
    assert not s2.category(Category.LEGION).enabled

    s3 = with_timer(s2, Category.LEGION, 1, lead_minutes=99, pitch_hz=50)
    assert s3.category(Category.LEGION).slots[1].lead_minutes == 60
    assert s3.category(Category.LEGION).slots[1].pitch_hz == 120
    assert s2.category(Category.LEGION).slots[1].lead_minutes == 10

    assert with_timer_count(s, Category.HELLTIDE, 9).category(Category.HELLTIDE).timer_count == 3


def test_with_timer_rejects_bad_index():
    with pytest.raises(IndexError):
        with_timer(default_settings(), Category.HELLTIDE, 3, lead_minutes=1)


def test_json_round_trip():
    s = with_timer(default_settings(), Category.WORLD_BOSS, 2, beep_pattern=BeepPattern.DOUBLE, speech_enabled=True)
    assert settings_from_json(settings_to_json(s)) == s


def test_wrong_version_gives_defaults():
    assert settings_from_json({"version": 4, "volume": 0.1}) == default_settings()
    assert settings_from_json(None) == default_settings()


def test_normalization_clamps_and_falls_back():
    raw = settings_to_json(default_settings())
    raw["volume"] = 3
    raw["overlayScale"] = 0.1
    raw["overlayBgOpacity"] = "x"
    raw["overlayBgHex"] = "red"
    raw["overlayMode"] = "overview"
    raw["categories"]["helltide"]["timerCount"] = 1.0
    raw["categories"]["helltide"]["slots"][0] = {"leadMinutes": 0, "beepPattern": "beep", "pitchHz": 9999}
    s = settings_from_json(raw)
    assert s.volume == 1.0
    assert s.overlay_scale == 0.6
    assert s.overlay_bg_opacity == 0.92
    assert s.overlay_bg_hex == "#0b1220"
    assert s.overlay_mode is OverlayMode.OVERVIEW
    cfg = s.category(Category.HELLTIDE)
    assert cfg.timer_count == 3
    assert cfg.slots[0].lead_minutes == 1
    assert cfg.slots[0].beep_pattern is BeepPattern.SINGLE
    assert cfg.slots[0].pitch_hz == 2000


def test_load_and_save(store):
    assert load_settings(store) == default_settings()
    s = with_category_enabled(default_settings(), Category.HELLTIDE, False)
    save_settings(store, s)
    assert store.exists(STORAGE_KEY)
    assert load_settings(store) == s


def test_overlay_snapshot_payload():
    p = overlay_snapshot(default_settings()).to_payload()
    assert p == {
        "enabled": False,
        "mode": "toast",
        "categories": {"helltide": True, "legion": True, "world_boss": True},
        "bgHex": "#0b1220",
        "bgOpacity": 0.92,
        "scale": 1.0,
    }
