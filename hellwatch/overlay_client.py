from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Callable, Optional

from .config import load_config, overlay_port_file
from .overlay_sync import TOPIC_HEALTH, TOPIC_TOAST, OverlaySurfaceState, decode_message, encode_message

log = logging.getLogger("hellwatch.overlay.client")

BASE_WIDTH = 360
BASE_HEIGHT = 220


def read_port_file(path: Path) -> Optional[tuple[str, int]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    port = data.get("port")
    if not isinstance(port, int) or isinstance(port, bool) or port <= 0:
        return None
    return str(data.get("host") or "127.0.0.1"), port


SizeProbe = Callable[[], tuple[float, float]]
StateHook = Callable[[str, OverlaySurfaceState], None]


class OverlayClient:
    """
    One overlay surface process. Keeps an OverlaySurfaceState reconciled from
    the hub and reports its size so the watchdog can see it.

    Drawing is left to whatever toolkit embeds this: it passes on_update to
    redraw and measure to report the real window size. Without measure the
    reported size is the layout size, and (0, 0) until the first settings
    have been applied or after an update failed.
    """

    def __init__(
        self,
        port_file: Path,
        *,
        health_interval: float = 1.0,
        max_backoff: float = 30.0,
        base_size: tuple[int, int] = (BASE_WIDTH, BASE_HEIGHT),
        measure: Optional[SizeProbe] = None,
        on_update: Optional[StateHook] = None,
    ) -> None:
        self.port_file = port_file
        self.health_interval = max(0.1, float(health_interval))
        self.max_backoff = max(1.0, float(max_backoff))
        self.base_size = base_size
        self.measure = measure
        self.on_update = on_update
        self.state = OverlaySurfaceState()
        self.synced = False
        self.faulted = False
        self.connected = False
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    def surface_size(self) -> tuple[float, float]:
        if self.measure is not None:
            try:
                w, h = self.measure()
                return float(w), float(h)
            except Exception:
                log.exception("Surface measurement failed")
                return 0.0, 0.0
        if self.faulted or not self.synced:
            return 0.0, 0.0
        w, h = self.base_size
        return w * self.state.scale, h * self.state.scale

    def handle_line(self, line: bytes) -> None:
        msg = decode_message(line)
        if msg is None:
            log.debug("Ignoring malformed overlay message")
            return
        topic, payload = msg
        try:
            if not self.state.apply(topic, payload):
                return
            if self.on_update is not None:
                self.on_update(topic, self.state)
        except Exception:
            self.faulted = True
            log.exception("Overlay update failed (%s)", topic)
            return
        self.faulted = False
        if topic == TOPIC_TOAST:
            log.info("Toast: %s - %s", payload.get("title"), payload.get("body"))
        else:
            self.synced = True
            log.info(
                "Overlay settings: enabled=%s mode=%s scale=%.2f",
                self.state.enabled,
                self.state.mode.value,
                self.state.scale,
            )

    async def _report_health(self, writer: asyncio.StreamWriter) -> None:
        while not writer.is_closing():
            w, h = self.surface_size()
            writer.write(encode_message(TOPIC_HEALTH, {"width": w, "height": h}))
            await writer.drain()
            await asyncio.sleep(self.health_interval)

    async def _session(self, host: str, port: int) -> None:
        reader, writer = await asyncio.open_connection(host, port)
        self.connected = True
        log.info("Connected to overlay hub %s:%d", host, port)
        health = asyncio.create_task(self._report_health(writer), name="overlay_health")
        try:
            while not self._stop.is_set():
                line = await reader.readline()
                if not line:
                    break
                self.handle_line(line)
        finally:
            self.connected = False
            health.cancel()
            writer.close()
            try:
                await health
            except (asyncio.CancelledError, ConnectionError):
                pass

    async def run_forever(self) -> None:
        backoff = 1.0
        while not self._stop.is_set():
            addr = read_port_file(self.port_file)
            if addr is None:
                log.debug("No overlay hub port file at %s", self.port_file)
            else:
                try:
                    await self._session(*addr)
                    backoff = 1.0
                except asyncio.CancelledError:
                    raise
                except OSError as e:
                    log.warning("Overlay hub connection failed: %s", e)

            if self._stop.is_set():
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=backoff)
            except asyncio.TimeoutError:
                pass
            backoff = min(self.max_backoff, backoff * 2)


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="hellwatch-overlay", description="Run an overlay surface process")
    ap.add_argument("--config", default=None, help="Path to hellwatch config.yaml")
    ap.add_argument("--port-file", default=None, help="Override the hub port file location")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )

    cfg = load_config(args.config)
    port_file = Path(args.port_file) if args.port_file else overlay_port_file(cfg)
    client = OverlayClient(port_file)
    try:
        asyncio.run(client.run_forever())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
