from __future__ import annotations

import asyncio
import datetime as dt
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .overlay_sync import DEFAULT_TOAST_MS, OverlaySyncChannel, ToastEvent
from .safety import PanicStop
from .schedule import Category, event_name, format_countdown
from .settings import BeepPattern, Settings
from .speech import announcement
from .tasks import ScheduledTask, TaskScheduler
from .triggers import FireEvent

log = logging.getLogger("hellwatch.dispatch")

DEBUG_TOAST_MS = 8000
SPEECH_GROUP = "speech"


class Beeper(Protocol):
    def play(self, pattern: BeepPattern, pitch_hz: float, volume: float = 1.0) -> int: ...


class Talker(Protocol):
    def speak(self, text: str, volume: float = 1.0, gate: Optional[Callable[[], bool]] = None) -> bool: ...

    def cancel(self) -> None: ...


@dataclass(frozen=True)
class DispatchResult:
    suppressed: bool = False
    toast_delivered: int = 0
    beep_ms: int = 0
    speech_task: Optional[ScheduledTask] = None


class NotificationDispatcher:
    """
    Turns a fire event into side effects: overlay toast, beep, then speech.

    Every channel is isolated; a broken audio player never stops the toast,
    and vice versa. Nothing happens while the panic stop is on.
    """

    def __init__(
        self,
        *,
        panic: PanicStop,
        channel: OverlaySyncChannel,
        beeper: Beeper,
        speaker: Talker,
        scheduler: TaskScheduler,
        toast_duration_ms: int = DEFAULT_TOAST_MS,
        debug_toast_duration_ms: int = DEBUG_TOAST_MS,
        speech_pause_seconds: float = 0.5,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.panic = panic
        self.channel = channel
        self.beeper = beeper
        self.speaker = speaker
        self.scheduler = scheduler
        self.toast_duration_ms = int(toast_duration_ms)
        self.debug_toast_duration_ms = int(debug_toast_duration_ms)
        self.speech_pause_seconds = max(0.0, float(speech_pause_seconds))
        self.rng = rng

        panic.add_listener(self._on_panic)

    def _on_panic(self, enabled: bool) -> None:
        if not enabled:
            return
        self.scheduler.cancel_group(SPEECH_GROUP)
        try:
            self.speaker.cancel()
        except Exception:
            log.exception("Speech cancel failed")

    def dispatch(self, event: FireEvent, settings: Settings) -> DispatchResult:
        if self.panic.enabled:
            log.info("Panic stop on; suppressing %s", event.key.format())
            return DispatchResult(suppressed=True)

        log.info(
            "Firing %s slot=%d lead=%dm remaining=%s%s",
            event.category.value,
            event.slot_index,
            event.slot.lead_minutes,
            format_countdown(event.remaining),
            " (catch-up)" if event.catch_up else "",
        )

        delivered = 0
        if settings.overlay_toasts_enabled:
            try:
                toast = ToastEvent(
                    title=event_name(event.category, event.occurrence),
                    body=format_countdown(event.remaining),
                    category=event.category,
                    duration_ms=self.toast_duration_ms,
                )
                delivered = self.channel.send_toast(toast)
            except Exception:
                log.exception("Toast channel failed")

        if not settings.sound_enabled:
            return DispatchResult(toast_delivered=delivered)

        beep_ms = 0
        try:
            beep_ms = self.beeper.play(event.slot.beep_pattern, event.slot.pitch_hz, settings.volume)
        except Exception:
            log.exception("Beep channel failed")

        speech_task = None
        if event.slot.speech_enabled:
            try:
                template = settings.category(event.category).speech_name_template
                text = announcement(event.category, event.occurrence, event.remaining, template, self.rng)
                speech_task = self._schedule_speech(text, settings.volume, beep_ms)
            except Exception:
                log.exception("Speech channel failed")

        return DispatchResult(toast_delivered=delivered, beep_ms=beep_ms, speech_task=speech_task)

    def _speech_allowed(self) -> bool:
        return not self.panic.enabled

    def _schedule_speech(self, text: str, volume: float, beep_ms: int) -> ScheduledTask:
        delay = beep_ms / 1000.0 + self.speech_pause_seconds

        async def _speak() -> None:
            if self.panic.enabled:
                return
            # synthesis shells out; keep it off the loop. The gate is asked
            # again once synthesis is done.
            await asyncio.to_thread(self.speaker.speak, text, volume, self._speech_allowed)

        log.debug("Speech in %.2fs: %r", delay, text)
        return self.scheduler.schedule_after(delay, _speak, name="speech", group=SPEECH_GROUP)

    def preview_toast(self, category: Category = Category.HELLTIDE) -> int:
        """Debug toast so overlay placement can be checked without waiting for an event."""
        if self.panic.enabled:
            return 0
        toast = ToastEvent(
            title=event_name(category, None),
            body=format_countdown(dt.timedelta(minutes=10)),
            category=category,
            duration_ms=self.debug_toast_duration_ms,
            kind="debug",
        )
        return self.channel.send_toast(toast)

    def test_beep(self, settings: Settings, category: Category, index: int) -> int:
        if self.panic.enabled:
            return 0
        slot = settings.category(category).slots[index]
        try:
            return self.beeper.play(slot.beep_pattern, slot.pitch_hz, settings.volume)
        except Exception:
            log.exception("Test beep failed")
            return 0
