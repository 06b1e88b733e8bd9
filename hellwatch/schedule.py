from __future__ import annotations

import datetime as dt
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

log = logging.getLogger("hellwatch.schedule")


class Category(enum.Enum):
    HELLTIDE = "helltide"
    LEGION = "legion"
    WORLD_BOSS = "world_boss"

    @classmethod
    def parse(cls, raw: Any) -> Optional["Category"]:
        s = str(raw or "").strip().lower()
        for c in cls:
            if c.value == s:
                return c
        return None


CATEGORIES: tuple[Category, ...] = (Category.HELLTIDE, Category.LEGION, Category.WORLD_BOSS)


@dataclass(frozen=True)
class Occurrence:
    id: str
    category: Category
    start_time: dt.datetime
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def boss(self) -> str | None:
        b = self.extra.get("boss")
        return b.strip() if isinstance(b, str) and b.strip() else None


def parse_start_time(value: Any) -> Optional[dt.datetime]:
    """
    ISO-8601 (with "Z" or an offset) -> aware UTC datetime. Anything else -> None.
    Naive values are taken as UTC.
    """
    if isinstance(value, dt.datetime):
        t = value
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            t = dt.datetime.fromisoformat(s)
        except ValueError:
            return None
    else:
        return None
    if t.tzinfo is None:
        t = t.replace(tzinfo=dt.timezone.utc)
    return t.astimezone(dt.timezone.utc)


def parse_occurrences(category: Category, raw: Any) -> tuple[Occurrence, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[Occurrence] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        start = parse_start_time(item.get("startTime"))
        if start is None:
            log.debug("Skipping %s item with bad startTime: %r", category.value, item.get("startTime"))
            continue
        # upstream ids are numeric; fall back to the start time so keys stay stable
        rid = item.get("id")
        occ_id = str(rid).strip() if rid is not None and str(rid).strip() else start.isoformat()
        extra: dict[str, Any] = {}
        if category is Category.WORLD_BOSS:
            boss = item.get("boss")
            if isinstance(boss, str) and boss.strip():
                extra["boss"] = boss.strip()
            zone = item.get("zone")
            if isinstance(zone, list):
                extra["zone"] = [z for z in zone if isinstance(z, dict)]
        out.append(Occurrence(id=occ_id, category=category, start_time=start, extra=extra))
    out.sort(key=lambda o: o.start_time)
    return tuple(out)


def select_next(occurrences: Iterable[Occurrence], now: dt.datetime) -> Optional[Occurrence]:
    """
    Soonest occurrence strictly after now, or None when the horizon is exhausted.
    """
    best: Optional[Occurrence] = None
    for occ in occurrences:
        start = occ.start_time
        if not isinstance(start, dt.datetime):
            continue
        if start <= now:
            continue
        if best is None or start < best.start_time:
            best = occ
    return best


@dataclass(frozen=True)
class ScheduleSnapshot:
    helltide: tuple[Occurrence, ...] = ()
    legion: tuple[Occurrence, ...] = ()
    world_boss: tuple[Occurrence, ...] = ()
    fetched_at: Optional[dt.datetime] = None

    def for_category(self, category: Category) -> tuple[Occurrence, ...]:
        if category is Category.HELLTIDE:
            return self.helltide
        if category is Category.LEGION:
            return self.legion
        if category is Category.WORLD_BOSS:
            return self.world_boss
        raise ValueError(f"unknown category: {category!r}")

    def next_for(self, category: Category, now: dt.datetime) -> Optional[Occurrence]:
        return select_next(self.for_category(category), now)

    @classmethod
    def from_response(cls, data: Mapping[str, Any], fetched_at: Optional[dt.datetime] = None) -> "ScheduleSnapshot":
        return cls(
            helltide=parse_occurrences(Category.HELLTIDE, data.get("helltide")),
            legion=parse_occurrences(Category.LEGION, data.get("legion")),
            world_boss=parse_occurrences(Category.WORLD_BOSS, data.get("world_boss")),
            fetched_at=fetched_at,
        )


def category_label(category: Category) -> str:
    if category is Category.HELLTIDE:
        return "Helltide"
    if category is Category.LEGION:
        return "Legion"
    if category is Category.WORLD_BOSS:
        return "World Boss"
    raise ValueError(f"unknown category: {category!r}")


def event_title_parts(category: Category, occ: Optional[Occurrence]) -> tuple[str, Optional[str]]:
    """(title, subtitle); only world bosses carry a subtitle (the boss name)."""
    title = category_label(category)
    if occ is not None and category is Category.WORLD_BOSS:
        return title, occ.boss
    return title, None


def event_name(category: Category, occ: Optional[Occurrence]) -> str:
    title, subtitle = event_title_parts(category, occ)
    return f"{title} {subtitle}" if subtitle else title


def format_countdown(remaining: dt.timedelta) -> str:
    total = max(0, int(remaining.total_seconds()))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def format_local_time(t: dt.datetime) -> str:
    return t.astimezone().strftime("%H:%M")
