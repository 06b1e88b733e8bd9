from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from typing import Any, Dict, Optional

import httpx

from .config import DEFAULT_SCHEDULE_URL, DEFAULT_UA
from .schedule import ScheduleSnapshot

log = logging.getLogger("hellwatch.schedule")


class ScheduleFetchError(RuntimeError):
    pass


class ScheduleClient:
    """
    Fetches the upstream event schedule.

    Responses are cached for cache_ttl seconds so a burst of refresh requests
    (startup, manual refresh, overlay process) only hits the network once.
    """

    def __init__(
        self,
        url: str = DEFAULT_SCHEDULE_URL,
        *,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_UA,
        cache_ttl: float = 60.0,
        attempts: int = 4,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.cache_ttl = max(0.0, float(cache_ttl))
        self.attempts = max(1, int(attempts))
        self._cache_at: Optional[float] = None
        self._cache_value: Optional[Dict[str, Any]] = None
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={
                "User-Agent": user_agent,
                "Accept": "application/json",
            },
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self) -> Dict[str, Any]:
        # simple retry loop
        last_exc: Exception | None = None
        for attempt in range(self.attempts):
            try:
                r = await self._client.get(self.url)
                r.raise_for_status()
                data = r.json()
                if not isinstance(data, dict):
                    raise ValueError("schedule response JSON was not an object")
                return data
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_exc = e
                log.warning("Schedule fetch failed (try %d/%d): %s", attempt + 1, self.attempts, e)
                if attempt + 1 < self.attempts:
                    await asyncio.sleep(0.4 * (attempt + 1))
        raise ScheduleFetchError(f"schedule request failed: {last_exc}") from last_exc

    async def fetch_raw(self) -> Dict[str, Any]:
        now = time.monotonic()
        if self._cache_value is not None and self._cache_at is not None:
            if now - self._cache_at < self.cache_ttl:
                return self._cache_value

        data = await self._get_json()
        self._cache_at = time.monotonic()
        self._cache_value = data
        return data

    async def fetch_schedule(self) -> ScheduleSnapshot:
        data = await self.fetch_raw()
        snap = ScheduleSnapshot.from_response(data, fetched_at=dt.datetime.now(dt.timezone.utc))
        log.info(
            "Schedule fetched (helltide=%d legion=%d world_boss=%d)",
            len(snap.helltide),
            len(snap.legion),
            len(snap.world_boss),
        )
        return snap
