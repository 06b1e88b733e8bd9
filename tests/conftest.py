from __future__ import annotations

import datetime as dt

import pytest

from hellwatch.schedule import Category, Occurrence, ScheduleSnapshot
from hellwatch.settings import BeepPattern, TimerSlot
from hellwatch.storage import JsonStore
from hellwatch.triggers import FireEvent

T0 = dt.datetime(2024, 6, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def store(tmp_path) -> JsonStore:
    return JsonStore(tmp_path / "state")


def occ(occ_id: str, category: Category, start: dt.datetime, **extra) -> Occurrence:
    return Occurrence(id=occ_id, category=category, start_time=start, extra=extra)


def snapshot(*occs: Occurrence) -> ScheduleSnapshot:
    return ScheduleSnapshot(
        helltide=tuple(o for o in occs if o.category is Category.HELLTIDE),
        legion=tuple(o for o in occs if o.category is Category.LEGION),
        world_boss=tuple(o for o in occs if o.category is Category.WORLD_BOSS),
    )


def make_event(speech: bool = True, category: Category = Category.WORLD_BOSS) -> FireEvent:
    slot = TimerSlot(lead_minutes=10, speech_enabled=speech, beep_pattern=BeepPattern.DOUBLE, pitch_hz=660)
    o = occ("77", category, T0, boss="Avarice")
    remaining = dt.timedelta(minutes=9, seconds=55)
    return FireEvent(category, o, 1, slot, remaining, T0 - remaining)


class FakeBeeper:
    def __init__(self, duration_ms: int = 250, fail: bool = False) -> None:
        self.calls: list[tuple[BeepPattern, float, float]] = []
        self.duration_ms = duration_ms
        self.fail = fail

    def play(self, pattern: BeepPattern, pitch_hz: float, volume: float = 1.0) -> int:
        if self.fail:
            raise RuntimeError("no audio device")
        self.calls.append((pattern, pitch_hz, volume))
        return self.duration_ms


class FakeSpeaker:
    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.cancelled = 0

    def speak(self, text: str, volume: float = 1.0, gate=None) -> bool:
        if gate is not None and not gate():
            return False
        self.spoken.append(text)
        return True

    def cancel(self) -> None:
        self.cancelled += 1


class FakeClient:
    def __init__(self, snap: ScheduleSnapshot | None = None, error: Exception | None = None) -> None:
        self.snap = snap or ScheduleSnapshot()
        self.error = error
        self.calls = 0

    async def fetch_schedule(self) -> ScheduleSnapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.snap

    async def aclose(self) -> None:
        pass
