from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import Any, Callable, Optional

from .storage import JsonStore

log = logging.getLogger("hellwatch.safety")

PANIC_KEY = "panicStop"

PanicListener = Callable[[bool], None]
# returns the rendered surface size as (width, height); None means no surface is up to observe
HealthProbe = Callable[[], Optional[tuple[float, float]]]


class PanicStop:
    """
    Global kill switch for every notification side effect.

    The flag is persisted so a restart caused by the failure itself comes
    back up silenced; only reset() clears it.
    """

    def __init__(self, store: JsonStore) -> None:
        self.store = store
        self._listeners: list[PanicListener] = []
        self._enabled = self._read()

    def _read(self) -> bool:
        try:
            raw = self.store.read_json(PANIC_KEY, None)
        except Exception:
            return False
        return isinstance(raw, dict) and raw.get("enabled") is True

    @property
    def enabled(self) -> bool:
        return self._enabled

    def add_listener(self, fn: PanicListener) -> None:
        self._listeners.append(fn)

    def _notify(self) -> None:
        for fn in list(self._listeners):
            try:
                fn(self._enabled)
            except Exception:
                log.exception("Panic-stop listener failed")

    def enable(self, reason: Any = None) -> None:
        if self._enabled:
            return
        self._enabled = True
        try:
            self.store.write_json(PANIC_KEY, {"enabled": True, "reason": str(reason) if reason is not None else None,
                                              "at": time.time()})
        except Exception:
            log.exception("Failed to persist panic-stop flag")
        log.error("Panic stop enabled: %s", reason)
        self._notify()

    def reset(self) -> None:
        was = self._enabled
        self._enabled = False
        try:
            self.store.remove(PANIC_KEY)
        except Exception:
            log.exception("Failed to clear panic-stop flag")
        if was:
            log.warning("Panic stop cleared")
            self._notify()


class UiWatchdog:
    """
    Polls the root presentation surface. Once the grace period has passed,
    max_bad consecutive implausible observations trip the panic stop.
    Checks pause while the panic stop is on; a reset re-arms the grace period.
    """

    def __init__(
        self,
        probe: HealthProbe,
        panic: PanicStop,
        *,
        interval: float = 1.5,
        grace: float = 5.0,
        max_bad: int = 3,
        min_width: float = 200,
        min_height: float = 120,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probe = probe
        self.panic = panic
        self.interval = max(0.1, float(interval))
        self.grace = max(0.0, float(grace))
        self.max_bad = max(1, int(max_bad))
        self.min_width = min_width
        self.min_height = min_height
        self.clock = clock
        self.bad_count = 0
        self.armed_at: Optional[float] = None
        self._stop = asyncio.Event()
        panic.add_listener(self._on_panic)

    def arm(self) -> None:
        self.bad_count = 0
        self.armed_at = self.clock() + self.grace

    def _on_panic(self, enabled: bool) -> None:
        if not enabled:
            self.arm()
            log.info("UI watchdog re-armed after panic reset")

    def observation_ok(self) -> Optional[bool]:
        """True/False for a plausible/implausible surface, None when there is nothing to look at."""
        try:
            size = self.probe()
        except Exception:
            log.exception("UI health probe raised")
            return False
        if size is None:
            return None
        w, h = size
        return w > self.min_width and h > self.min_height

    def check(self) -> bool:
        """One observation. Returns True when this check tripped the panic stop."""
        if self.armed_at is None:
            self.arm()
        if self.panic.enabled:
            return False
        if self.clock() < (self.armed_at or 0.0):
            return False

        ok = self.observation_ok()
        if ok is None:
            return False
        if ok:
            self.bad_count = 0
            return False

        self.bad_count += 1
        log.warning("UI health check failed (%d/%d)", self.bad_count, self.max_bad)
        if self.bad_count >= self.max_bad:
            self.panic.enable(RuntimeError("UI watchdog tripped"))
            return True
        return False

    def stop(self) -> None:
        self._stop.set()

    async def run_forever(self) -> None:
        self.arm()
        log.info("UI watchdog started (interval=%.1fs grace=%.1fs)", self.interval, self.grace)
        while not self._stop.is_set():
            self.check()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        log.info("UI watchdog stopped")


def install_panic_hooks(panic: PanicStop, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    """Uncaught exceptions (threads of control we don't own) trip the panic stop."""
    prev_hook = sys.excepthook

    def _excepthook(exc_type, exc, tb) -> None:
        panic.enable(exc)
        prev_hook(exc_type, exc, tb)

    sys.excepthook = _excepthook

    if loop is not None:
        def _loop_handler(lp: asyncio.AbstractEventLoop, context: dict) -> None:
            exc = context.get("exception")
            if isinstance(exc, asyncio.CancelledError):
                return
            panic.enable(exc or context.get("message"))
            lp.default_exception_handler(context)

        loop.set_exception_handler(_loop_handler)
