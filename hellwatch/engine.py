from __future__ import annotations

import asyncio
import datetime as dt
import logging
import random
from dataclasses import replace
from typing import Callable, Optional

from .dispatcher import NotificationDispatcher
from .fired import FiredLedger, FiredRegistry
from .overlay_sync import OverlaySyncChannel
from .safety import PanicStop
from .schedule import Category, ScheduleSnapshot
from .schedule_api import ScheduleClient, ScheduleFetchError
from .settings import Settings, load_settings, overlay_snapshot, save_settings, with_category_enabled
from .storage import JsonStore
from .tasks import TaskScheduler
from .triggers import FIRE_WINDOW, FireEvent, evaluate_catch_up, evaluate_tick

log = logging.getLogger("hellwatch.engine")

REFRESH_GROUP = "refresh"
TICK_SECONDS = 1.0

TriggerListener = Callable[[FireEvent], None]
SettingsListener = Callable[[Settings], None]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ReminderEngine:
    """
    Owns the current schedule, settings and fired registry snapshots and
    drives the 1 Hz trigger loop.

    Snapshots are replaced, never mutated, so anything a listener holds on to
    stays valid.
    """

    def __init__(
        self,
        *,
        store: JsonStore,
        client: ScheduleClient,
        dispatcher: NotificationDispatcher,
        channel: OverlaySyncChannel,
        panic: PanicStop,
        scheduler: TaskScheduler,
        refresh_min_seconds: float = 600,
        refresh_max_seconds: float = 900,
        clock: Callable[[], dt.datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.dispatcher = dispatcher
        self.channel = channel
        self.panic = panic
        self.scheduler = scheduler
        self.refresh_min_seconds = max(1.0, float(refresh_min_seconds))
        self.refresh_max_seconds = max(self.refresh_min_seconds, float(refresh_max_seconds))
        self.clock = clock
        self.rng = rng or random.Random()

        self.ledger = FiredLedger(store)
        self.settings: Settings = load_settings(store)
        self.registry: FiredRegistry = self.ledger.load()
        self.schedule = ScheduleSnapshot()

        self.last_error: Optional[str] = None
        self.last_refresh_at: Optional[dt.datetime] = None
        self.next_refresh_at: Optional[dt.datetime] = None
        self._fetching = False

        self.on_trigger_fired: list[TriggerListener] = []
        self.on_settings_changed: list[SettingsListener] = []

        panic.add_listener(self._on_panic)

    # ---- listeners ----

    def _emit_fired(self, event: FireEvent) -> None:
        for fn in list(self.on_trigger_fired):
            try:
                fn(event)
            except Exception:
                log.exception("on_trigger_fired listener failed")

    def _emit_settings(self) -> None:
        for fn in list(self.on_settings_changed):
            try:
                fn(self.settings)
            except Exception:
                log.exception("on_settings_changed listener failed")

    # ---- triggering ----

    def _fire(self, event: FireEvent) -> None:
        self.dispatcher.dispatch(event, self.settings)
        self._emit_fired(event)

    def tick(self, now: Optional[dt.datetime] = None) -> list[FireEvent]:
        if self.panic.enabled:
            return []
        now = now or self.clock()

        pruned = self.registry.prune(now)
        dirty = pruned is not self.registry
        if dirty:
            log.debug("Fired registry pruned (%d -> %d)", len(self.registry), len(pruned))

        registry, events = evaluate_tick(self.schedule, self.settings, pruned, now, FIRE_WINDOW)
        self.registry = registry
        if dirty or events:
            self.ledger.save(registry)

        for ev in events:
            self._fire(ev)
        return events

    def set_category_enabled(self, category: Category, enabled: bool, now: Optional[dt.datetime] = None) -> Optional[FireEvent]:
        """
        Turning a category on mid-countdown fires the alert the user would
        already have heard, before the settings change lands.
        """
        was = self.settings.category(category).enabled
        event = None
        if enabled and not was and not self.panic.enabled:
            registry, event = evaluate_catch_up(category, self.schedule, self.settings, self.registry, now or self.clock())
            if event is not None:
                self.registry = registry
                self.ledger.save(registry)
                self._fire(event)

        self.update_settings(lambda s: with_category_enabled(s, category, enabled))
        return event

    # ---- settings ----

    def update_settings(self, updater: Callable[[Settings], Settings]) -> Settings:
        self.settings = updater(self.settings)
        save_settings(self.store, self.settings)
        self.broadcast_overlay()
        self._emit_settings()
        return self.settings

    def broadcast_overlay(self) -> int:
        snap = overlay_snapshot(self.settings)
        if self.panic.enabled:
            snap = replace(snap, enabled=False)
        return self.channel.broadcast_settings(snap)

    # ---- schedule refresh ----

    @property
    def fetching(self) -> bool:
        return self._fetching

    async def refresh(self) -> bool:
        """
        Fetch a new schedule. A second call while one is in flight is dropped.
        On failure the previous snapshot stays and last_error is set.
        """
        if self._fetching:
            log.debug("Refresh already in flight; dropping request")
            return False

        self._fetching = True
        ok = False
        try:
            self.schedule = await self.client.fetch_schedule()
            self.last_error = None
            self.last_refresh_at = self.clock()
            ok = True
        except asyncio.CancelledError:
            raise
        except ScheduleFetchError as e:
            self.last_error = str(e)
            log.warning("Schedule refresh failed; keeping previous snapshot: %s", e)
        except Exception as e:
            self.last_error = f"schedule refresh failed: {e}"
            log.exception("Schedule refresh failed; keeping previous snapshot")
        finally:
            self._fetching = False

        self.schedule_auto_refresh()
        return ok

    def schedule_auto_refresh(self) -> None:
        self.scheduler.cancel_group(REFRESH_GROUP)
        self.next_refresh_at = None
        if self.panic.enabled:
            return
        delay = self.rng.uniform(self.refresh_min_seconds, self.refresh_max_seconds)
        self.scheduler.schedule_after(delay, self.refresh, name="auto_refresh", group=REFRESH_GROUP)
        self.next_refresh_at = self.clock() + dt.timedelta(seconds=delay)
        log.debug("Next schedule refresh in %.0fs", delay)

    # ---- panic stop ----

    def _on_panic(self, enabled: bool) -> None:
        if not enabled:
            return
        self.scheduler.cancel_group(REFRESH_GROUP)
        self.next_refresh_at = None
        try:
            self.broadcast_overlay()
        except Exception:
            log.exception("Overlay hide after panic stop failed")

    async def reset_panic(self) -> None:
        """Clear the panic stop and rebuild state from storage."""
        self.panic.reset()
        self.settings = load_settings(self.store)
        self.registry = self.ledger.load()
        self.broadcast_overlay()
        self._emit_settings()
        await self.refresh()

    # ---- main loop ----

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        self.broadcast_overlay()
        await self.refresh()
        log.info("Reminder loop started")
        while not stop.is_set():
            try:
                self.tick()
            except Exception as e:
                log.exception("Tick failed")
                self.panic.enable(e)
            try:
                await asyncio.wait_for(stop.wait(), timeout=TICK_SECONDS)
            except asyncio.TimeoutError:
                pass
        self.scheduler.cancel_group(REFRESH_GROUP)
        log.info("Reminder loop stopped")
