from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from .schedule import CATEGORIES, Category
from .settings import OverlayMode, OverlaySettingsSnapshot, normalize_hex_color
from .storage import atomic_write_json

log = logging.getLogger("hellwatch.overlay")

TOPIC_SETTINGS = "hellwatch:overlay-settings"
TOPIC_TOAST = "hellwatch:toast"
# surface -> hub: the size the surface is currently rendering at
TOPIC_HEALTH = "hellwatch:surface-health"

DEFAULT_TOAST_MS = 5200

# a surface that stops reading gets dropped instead of buffering forever
_MAX_WRITE_BUFFER = 256 * 1024


@dataclass(frozen=True)
class ToastEvent:
    title: str
    body: str
    category: Optional[Category] = None
    duration_ms: int = DEFAULT_TOAST_MS
    kind: str = "event"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "type": self.category.value if self.category else None,
            "durationMs": int(self.duration_ms),
            "kind": self.kind,
        }


class Surface(Protocol):
    name: str

    def deliver(self, topic: str, payload: Mapping[str, Any]) -> None: ...


class OverlaySyncChannel:
    """
    Best-effort fan-out of overlay settings and toasts to every subscribed
    surface. Nothing is queued: with no surfaces a broadcast is a no-op, and
    a surface that connects late is handed the last settings broadcast.
    """

    def __init__(self) -> None:
        self._surfaces: dict[str, Surface] = {}
        self.last_settings: Optional[OverlaySettingsSnapshot] = None

    @property
    def surfaces(self) -> list[Surface]:
        return list(self._surfaces.values())

    def subscribe(self, surface: Surface) -> None:
        self._surfaces[surface.name] = surface
        log.info("Overlay surface subscribed: %s (%d total)", surface.name, len(self._surfaces))

    def unsubscribe(self, surface: Surface | str) -> None:
        name = surface if isinstance(surface, str) else surface.name
        if self._surfaces.pop(name, None) is not None:
            log.info("Overlay surface unsubscribed: %s", name)

    def _publish(self, topic: str, payload: Mapping[str, Any]) -> int:
        delivered = 0
        for surface in list(self._surfaces.values()):
            try:
                surface.deliver(topic, payload)
                delivered += 1
            except Exception:
                log.warning("Overlay delivery to %s failed (%s)", surface.name, topic, exc_info=True)
        return delivered

    def broadcast_settings(self, snapshot: OverlaySettingsSnapshot) -> int:
        self.last_settings = snapshot
        return self._publish(TOPIC_SETTINGS, snapshot.to_payload())

    def sync(self, surface: Surface) -> bool:
        """Hand the last broadcast settings to one surface, e.g. one that just connected."""
        if self.last_settings is None:
            return False
        try:
            surface.deliver(TOPIC_SETTINGS, self.last_settings.to_payload())
        except Exception:
            log.warning("Overlay sync to %s failed", surface.name, exc_info=True)
            return False
        return True

    def send_toast(self, toast: ToastEvent) -> int:
        n = self._publish(TOPIC_TOAST, toast.to_payload())
        log.debug("Toast %r delivered to %d surface(s)", toast.title, n)
        return n


def _num(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
        return None
    return float(v)


@dataclass
class OverlaySurfaceState:
    """
    What a surface shows, reconciled from whatever it receives. Invalid or
    missing fields keep their previous value.
    """
    enabled: bool = False
    mode: OverlayMode = OverlayMode.TOAST
    categories: Dict[str, bool] = field(default_factory=lambda: {c.value: True for c in CATEGORIES})
    bg_hex: str = "#0b1220"
    bg_opacity: float = 0.92
    scale: float = 1.0
    toast: Optional[Dict[str, Any]] = None
    toast_shown_at: Optional[float] = None

    def apply(self, topic: str, payload: Mapping[str, Any], now: Optional[float] = None) -> bool:
        if not isinstance(payload, Mapping):
            return False
        if topic == TOPIC_SETTINGS:
            self.apply_settings(payload)
            return True
        if topic == TOPIC_TOAST:
            return self.apply_toast(payload, now)
        return False

    def apply_settings(self, p: Mapping[str, Any]) -> None:
        if isinstance(p.get("enabled"), bool):
            self.enabled = p["enabled"]
        mode = p.get("mode")
        if mode in (OverlayMode.TOAST.value, OverlayMode.OVERVIEW.value):
            self.mode = OverlayMode(mode)
        cats = p.get("categories")
        if isinstance(cats, Mapping):
            self.categories = {c.value: cats.get(c.value) is not False for c in CATEGORIES}
        self.bg_hex = normalize_hex_color(p.get("bgHex"), self.bg_hex)
        op = _num(p.get("bgOpacity"))
        if op is not None:
            self.bg_opacity = max(0.2, min(1.0, op))
        sc = _num(p.get("scale"))
        if sc is not None:
            self.scale = max(0.6, min(2.0, sc))

    def apply_toast(self, p: Mapping[str, Any], now: Optional[float] = None) -> bool:
        title = p.get("title")
        if not isinstance(title, str) or not title:
            return False
        self.toast = dict(p)
        self.toast_shown_at = time.monotonic() if now is None else now
        return True

    def toast_visible(self, now: Optional[float] = None) -> bool:
        if self.toast is None or self.toast_shown_at is None:
            return False
        t = time.monotonic() if now is None else now
        ms = _num(self.toast.get("durationMs")) or DEFAULT_TOAST_MS
        return (t - self.toast_shown_at) * 1000.0 < ms

    def window_visible(self, now: Optional[float] = None) -> bool:
        """Overview mode stays up; toast mode shows only while a toast is live."""
        if not self.enabled:
            return False
        if self.mode is OverlayMode.OVERVIEW:
            return True
        return self.toast_visible(now)

    def visible_categories(self) -> list[Category]:
        return [c for c in CATEGORIES if self.categories.get(c.value, True)]

    def settings_snapshot(self) -> OverlaySettingsSnapshot:
        return OverlaySettingsSnapshot(
            enabled=self.enabled,
            mode=self.mode,
            categories=dict(self.categories),
            bg_hex=self.bg_hex,
            bg_opacity=self.bg_opacity,
            scale=self.scale,
        )


class LocalSurface:
    """In-process surface: reconciles straight into an OverlaySurfaceState."""

    def __init__(self, name: str, state: Optional[OverlaySurfaceState] = None) -> None:
        self.name = name
        self.state = state or OverlaySurfaceState()
        self.received: list[tuple[str, Dict[str, Any]]] = []

    def deliver(self, topic: str, payload: Mapping[str, Any]) -> None:
        # copy: surfaces never share the sender's structure
        msg = json.loads(json.dumps(dict(payload)))
        self.received.append((topic, msg))
        self.state.apply(topic, msg)


def encode_message(topic: str, payload: Mapping[str, Any]) -> bytes:
    return (json.dumps({"topic": topic, "payload": dict(payload)}, separators=(",", ":")) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> Optional[tuple[str, Dict[str, Any]]]:
    try:
        obj = json.loads(line)
    except (ValueError, TypeError):
        return None
    if not isinstance(obj, dict):
        return None
    topic = obj.get("topic")
    payload = obj.get("payload")
    if not isinstance(topic, str) or not isinstance(payload, dict):
        return None
    return topic, payload


class RemoteSurface:
    """A surface living in another process, reached over a hub connection."""

    def __init__(self, name: str, writer: asyncio.StreamWriter) -> None:
        self.name = name
        self.writer = writer

    def deliver(self, topic: str, payload: Mapping[str, Any]) -> None:
        if self.writer.is_closing():
            raise ConnectionError(f"{self.name} is closing")
        transport = self.writer.transport
        if transport is not None and transport.get_write_buffer_size() > _MAX_WRITE_BUFFER:
            self.writer.close()
            raise ConnectionError(f"{self.name} is not reading; dropped")
        self.writer.write(encode_message(topic, payload))


class OverlayHub:
    """
    Local TCP server (JSON lines) that overlay processes connect to. Each
    connection becomes a RemoteSurface on the channel for as long as it lives.
    """

    def __init__(self, channel: OverlaySyncChannel, host: str = "127.0.0.1", port: int = 0,
                 port_file: Optional[Path] = None) -> None:
        self.channel = channel
        self.host = host
        self.port = int(port)
        self.port_file = port_file
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: set[asyncio.StreamWriter] = set()
        self.health: dict[str, tuple[float, float]] = {}
        self._seq = 0

    async def start(self) -> int:
        self._server = await asyncio.start_server(self._handle, self.host, self.port)
        sock = self._server.sockets[0] if self._server.sockets else None
        if sock is not None:
            self.port = int(sock.getsockname()[1])
        if self.port_file is not None:
            atomic_write_json(self.port_file, {"host": self.host, "port": self.port, "pid": os.getpid()})
        log.info("Overlay hub listening on %s:%d", self.host, self.port)
        return self.port

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._seq += 1
        peer = writer.get_extra_info("peername")
        surface = RemoteSurface(f"remote-{self._seq}", writer)
        self._writers.add(writer)
        self.channel.subscribe(surface)
        log.info("Overlay surface connected: %s (%s)", surface.name, peer)
        self.channel.sync(surface)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                self._on_surface_line(surface.name, line)
        except (ConnectionError, asyncio.IncompleteReadError, ValueError):
            pass
        finally:
            self.channel.unsubscribe(surface)
            self.health.pop(surface.name, None)
            self._writers.discard(writer)
            writer.close()
            log.info("Overlay surface disconnected: %s", surface.name)

    def _on_surface_line(self, name: str, line: bytes) -> None:
        msg = decode_message(line)
        if msg is None or msg[0] != TOPIC_HEALTH:
            return
        w = _num(msg[1].get("width"))
        h = _num(msg[1].get("height"))
        if w is not None and h is not None:
            self.health[name] = (w, h)

    def surface_size(self) -> Optional[tuple[float, float]]:
        """Largest size any connected surface reports, or None with nobody reporting."""
        if not self.health:
            return None
        return max(self.health.values(), key=lambda s: s[0] * s[1])

    async def close(self) -> None:
        for w in list(self._writers):
            w.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        if self.port_file is not None:
            try:
                self.port_file.unlink(missing_ok=True)
            except OSError:
                pass
