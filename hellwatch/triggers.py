from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Optional

from .fired import FiredKey, FiredRegistry
from .schedule import CATEGORIES, Category, Occurrence, ScheduleSnapshot
from .settings import Settings, TimerSlot

FIRE_WINDOW = dt.timedelta(seconds=30)


@dataclass(frozen=True)
class FireEvent:
    category: Category
    occurrence: Occurrence
    slot_index: int
    slot: TimerSlot
    remaining: dt.timedelta
    fired_at: dt.datetime
    catch_up: bool = False

    @property
    def key(self) -> FiredKey:
        return FiredKey(self.category, self.occurrence.id, self.slot_index)


def trigger_at(occ: Occurrence, slot: TimerSlot) -> dt.datetime:
    return occ.start_time - dt.timedelta(minutes=slot.lead_minutes)


def slot_is_due(occ: Occurrence, slot: TimerSlot, now: dt.datetime, window: dt.timedelta = FIRE_WINDOW) -> bool:
    """
    Inside [trigger, trigger + window]. A tick that lands after the window
    never fires: a missed alert stays missed.
    """
    t = trigger_at(occ, slot)
    return t <= now <= t + window


def evaluate_category(
    category: Category,
    schedule: ScheduleSnapshot,
    settings: Settings,
    registry: FiredRegistry,
    now: dt.datetime,
    window: dt.timedelta = FIRE_WINDOW,
) -> tuple[FiredRegistry, list[FireEvent]]:
    events: list[FireEvent] = []
    cfg = settings.category(category)
    if not cfg.enabled:
        return registry, events

    nxt = schedule.next_for(category, now)
    if nxt is None:
        return registry, events

    remaining = nxt.start_time - now
    for i, slot in enumerate(cfg.active_slots()):
        if not slot_is_due(nxt, slot, now, window):
            continue
        key = FiredKey(category, nxt.id, i)
        if registry.has(key):
            continue
        registry = registry.record(key, now)
        events.append(FireEvent(category, nxt, i, slot, remaining, now))
    return registry, events


def evaluate_tick(
    schedule: ScheduleSnapshot,
    settings: Settings,
    registry: FiredRegistry,
    now: dt.datetime,
    window: dt.timedelta = FIRE_WINDOW,
) -> tuple[FiredRegistry, list[FireEvent]]:
    """One 1 Hz evaluation over every enabled category. Pure."""
    events: list[FireEvent] = []
    for category in CATEGORIES:
        registry, evs = evaluate_category(category, schedule, settings, registry, now, window)
        events.extend(evs)
    return registry, events


def evaluate_catch_up(
    category: Category,
    schedule: ScheduleSnapshot,
    settings: Settings,
    registry: FiredRegistry,
    now: dt.datetime,
) -> tuple[FiredRegistry, Optional[FireEvent]]:
    """
    Category just went disabled -> enabled. Of the slots whose lead time is
    already inside the countdown, fire the one with the smallest lead time
    (the alert the user would have heard most recently), once.
    """
    nxt = schedule.next_for(category, now)
    if nxt is None:
        return registry, None

    remaining = nxt.start_time - now
    if remaining <= dt.timedelta(0):
        return registry, None

    cfg = settings.category(category)
    candidates = [
        (i, slot)
        for i, slot in enumerate(cfg.active_slots())
        if dt.timedelta(minutes=slot.lead_minutes) >= remaining
    ]
    if not candidates:
        return registry, None

    # stable: equal lead times keep slot-index order
    candidates.sort(key=lambda c: c[1].lead_minutes)
    i, slot = candidates[0]
    key = FiredKey(category, nxt.id, i)
    if registry.has(key):
        return registry, None

    registry = registry.record(key, now)
    return registry, FireEvent(category, nxt, i, slot, remaining, now, catch_up=True)
