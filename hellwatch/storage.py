from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

log = logging.getLogger("hellwatch.storage")

PREFIX = "hellwatch:"


def atomic_write_json(path: Path, payload: Any) -> None:
    """
    Writes JSON atomically: write temp file, fsync, rename over target.
    Safe against partial writes and power loss mid-write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}.{int(time.time()*1000)}")
    data = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)

    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.write("\n")
        f.flush()
        os.fsync(f.fileno())

    os.replace(str(tmp), str(path))


@dataclass
class JsonStore:
    """
    Small key/value store: one JSON document per namespaced key.

    "hellwatch:fired_v3" lives in <root>/fired_v3.json.
    """
    root: Path

    def _path(self, key: str) -> Path:
        k = key[len(PREFIX):] if key.startswith(PREFIX) else key
        safe = "".join(ch if (ch.isalnum() or ch in "._-") else "_" for ch in k)
        return self.root / f"{safe}.json"

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def read_json(self, key: str, fallback: Any = None) -> Any:
        path = self._path(key)
        try:
            if not path.exists():
                return fallback
            raw = path.read_text(encoding="utf-8")
            if not raw.strip():
                return fallback
            return json.loads(raw)
        except Exception:
            # corrupt or unreadable state is never fatal
            log.warning("Unreadable state for %s (%s); using fallback", key, path)
            return fallback

    def write_json(self, key: str, value: Any) -> None:
        atomic_write_json(self._path(key), value)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError:
            log.exception("Failed to remove state for %s", key)
