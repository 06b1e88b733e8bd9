from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from .audio import AudioPlayer, BeepPlayer
from .config import AppConfig, load_config, overlay_port_file
from .dispatcher import NotificationDispatcher
from .engine import ReminderEngine
from .overlay_sync import OverlayHub, OverlaySyncChannel
from .safety import PanicStop, UiWatchdog, install_panic_hooks
from .schedule_api import ScheduleClient
from .speech import TTS, Speaker
from .storage import JsonStore
from .tasks import TaskScheduler
from .triggers import FireEvent

log = logging.getLogger("hellwatch")


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class App:
    def __init__(self, cfg: AppConfig, *, overlay_hub: bool = True, reset_panic: bool = False) -> None:
        self.cfg = cfg
        state_dir = Path(cfg.paths.state_dir)
        audio_dir = Path(cfg.paths.audio_dir)
        state_dir.mkdir(parents=True, exist_ok=True)
        audio_dir.mkdir(parents=True, exist_ok=True)

        self.store = JsonStore(state_dir)
        self.panic = PanicStop(self.store)
        if reset_panic:
            self.panic.reset()
        elif self.panic.enabled:
            log.warning("Starting with panic stop on; run with --reset-panic or send SIGUSR1 to clear it")

        self.scheduler = TaskScheduler()
        self.channel = OverlaySyncChannel()
        self.hub: Optional[OverlayHub] = None
        if overlay_hub and cfg.overlay.enabled:
            self.hub = OverlayHub(self.channel, cfg.overlay.host, cfg.overlay.port, overlay_port_file(cfg))

        # separate players: cutting off speech must not cut off a beep
        beeper = BeepPlayer(AudioPlayer(cfg.audio.player), audio_dir, cfg.audio.sample_rate)
        speaker = Speaker(
            tts=TTS(cfg.tts.backend, cfg.tts.voice, cfg.tts.rate_wpm, cfg.tts.volume),
            player=AudioPlayer(cfg.audio.player),
            audio_dir=audio_dir,
        )
        self.dispatcher = NotificationDispatcher(
            panic=self.panic,
            channel=self.channel,
            beeper=beeper,
            speaker=speaker,
            scheduler=self.scheduler,
            toast_duration_ms=cfg.overlay.toast_duration_ms,
            debug_toast_duration_ms=cfg.overlay.debug_toast_duration_ms,
            speech_pause_seconds=cfg.audio.speech_pause_seconds,
        )
        self.client = ScheduleClient(
            cfg.schedule.url,
            timeout=cfg.schedule.timeout_seconds,
            user_agent=cfg.schedule.user_agent,
            cache_ttl=cfg.schedule.cache_ttl_seconds,
        )
        self.engine = ReminderEngine(
            store=self.store,
            client=self.client,
            dispatcher=self.dispatcher,
            channel=self.channel,
            panic=self.panic,
            scheduler=self.scheduler,
            refresh_min_seconds=cfg.schedule.refresh_min_seconds,
            refresh_max_seconds=cfg.schedule.refresh_max_seconds,
        )
        self.engine.on_trigger_fired.append(self._log_fired)

        self._background: set[asyncio.Task] = set()
        self.watchdog: Optional[UiWatchdog] = None
        if self.hub is not None and cfg.safety.watchdog_enabled:
            self.watchdog = UiWatchdog(
                self.hub.surface_size,
                self.panic,
                interval=cfg.safety.watchdog_interval_seconds,
                grace=cfg.safety.watchdog_grace_seconds,
                max_bad=cfg.safety.watchdog_max_bad,
                min_width=cfg.safety.min_width,
                min_height=cfg.safety.min_height,
            )

    @staticmethod
    def _log_fired(event: FireEvent) -> None:
        log.info("Fired %s (starts %s)", event.key.format(), event.occurrence.start_time.isoformat())

    def request_panic_reset(self) -> None:
        """SIGUSR1: clear the panic stop without restarting the process."""
        if not self.panic.enabled:
            log.info("Panic reset requested but panic stop is not on")
            return
        log.warning("Panic reset requested")
        task = asyncio.create_task(self.engine.reset_panic(), name="panic_reset")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        install_panic_hooks(self.panic, loop)

        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass

        if self.hub is not None:
            await self.hub.start()

        tasks = [asyncio.create_task(self.engine.run(stop), name="engine")]
        if self.watchdog is not None:
            tasks.append(asyncio.create_task(self.watchdog.run_forever(), name="ui_watchdog"))

        sigusr1 = getattr(signal, "SIGUSR1", None)
        if sigusr1 is not None:
            try:
                loop.add_signal_handler(sigusr1, self.request_panic_reset)
            except (NotImplementedError, RuntimeError):
                pass

        log.info("hellwatch running (pid=%d, state=%s)", os.getpid(), self.cfg.paths.state_dir)
        try:
            await stop.wait()
        finally:
            stop.set()
            if self.watchdog is not None:
                self.watchdog.stop()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.scheduler.cancel_all()
            if self.hub is not None:
                await self.hub.close()
            await self.client.aclose()
            log.info("hellwatch stopped")


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="hellwatch", description="Event reminder daemon")
    ap.add_argument("--config", default=os.environ.get("HELLWATCH_CONFIG"), help="Path to config.yaml")
    ap.add_argument("--log-level", default=os.environ.get("HELLWATCH_LOG_LEVEL", "INFO"))
    ap.add_argument("--no-overlay-hub", action="store_true", help="Don't serve overlay surfaces")
    ap.add_argument("--reset-panic", action="store_true", help="Clear a persisted panic stop before starting")
    args = ap.parse_args(argv)

    _setup_logging(args.log_level)

    cfg = load_config(args.config)
    app = App(cfg, overlay_hub=not args.no_overlay_hub, reset_panic=args.reset_panic)
    asyncio.run(app.run())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
