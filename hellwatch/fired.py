from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .schedule import Category
from .storage import JsonStore

log = logging.getLogger("hellwatch.fired")

FIRED_KEY = "fired_v3"
LEGACY_FIRED_KEY = "fired_v2"

RETENTION = dt.timedelta(hours=12)


def to_millis(t: dt.datetime) -> int:
    return int(round(t.timestamp() * 1000))


@dataclass(frozen=True)
class FiredKey:
    category: Category
    occurrence_id: str
    slot_index: int

    def format(self) -> str:
        return f"{self.category.value}:{self.occurrence_id}:{self.slot_index}"


@dataclass(frozen=True)
class FiredRegistry:
    """
    Immutable "already alerted" map: formatted FiredKey -> fire time (epoch millis).

    record() and prune() return a new registry; callers swap the reference.
    """
    entries: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))

    def __len__(self) -> int:
        return len(self.entries)

    def _k(self, key: FiredKey | str) -> str:
        return key.format() if isinstance(key, FiredKey) else str(key)

    def has(self, key: FiredKey | str) -> bool:
        return self._k(key) in self.entries

    def fired_at(self, key: FiredKey | str) -> Optional[int]:
        return self.entries.get(self._k(key))

    def record(self, key: FiredKey | str, now: dt.datetime) -> "FiredRegistry":
        k = self._k(key)
        if k in self.entries:
            return self
        out = dict(self.entries)
        out[k] = to_millis(now)
        return FiredRegistry(out)

    def prune(self, now: dt.datetime, retention: dt.timedelta = RETENTION) -> "FiredRegistry":
        keep_after = to_millis(now - retention)
        out = {k: v for k, v in self.entries.items() if v >= keep_after}
        if len(out) == len(self.entries):
            return self
        return FiredRegistry(out)

    def to_json(self) -> Dict[str, int]:
        return dict(self.entries)

    @classmethod
    def from_json(cls, raw: Any) -> "FiredRegistry":
        if not isinstance(raw, dict):
            return cls()
        out: Dict[str, int] = {}
        for k, v in raw.items():
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                continue
            if not math.isfinite(v):
                continue
            out[str(k)] = int(v)
        return cls(out)


@dataclass
class FiredLedger:
    """
    Persistent side of the registry, so a restart never re-alerts.

    Reads the current key and falls back to the legacy one when the current
    key has never been written. Writes always go to the current key.
    """
    store: JsonStore

    def load(self) -> FiredRegistry:
        try:
            if self.store.exists(FIRED_KEY):
                raw = self.store.read_json(FIRED_KEY, None)
            else:
                raw = self.store.read_json(LEGACY_FIRED_KEY, None)
                if raw is not None:
                    log.info("Fired registry: migrating legacy %s", LEGACY_FIRED_KEY)
            reg = FiredRegistry.from_json(raw)
        except Exception:
            # If ledger corrupt, start fresh (but don't explode the app)
            log.exception("Fired registry load failed; starting empty")
            return FiredRegistry()
        log.info("Fired registry loaded (%d entries)", len(reg))
        return reg

    def save(self, registry: FiredRegistry) -> bool:
        try:
            self.store.write_json(FIRED_KEY, registry.to_json())
            return True
        except Exception:
            log.exception("Fired registry save failed (non-fatal)")
            return False
