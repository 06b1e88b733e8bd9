from __future__ import annotations

import asyncio

import httpx
import pytest

from hellwatch.schedule import Category
from hellwatch.schedule_api import ScheduleClient, ScheduleFetchError

PAYLOAD = {
    "helltide": [{"id": 1, "startTime": "2030-01-01T00:00:00Z"}],
    "legion": [{"id": 2, "startTime": "2030-01-01T00:25:00Z"}],
    "world_boss": [{"id": 3, "startTime": "2030-01-01T01:00:00Z", "boss": "Ashava"}],
}


def run(coro):
    return asyncio.run(coro)


def test_fetch_schedule_parses_and_sends_user_agent():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=PAYLOAD)

    async def go():
        client = ScheduleClient("https://example.test/api/schedule", user_agent="hw-test/1", transport=httpx.MockTransport(handler))
        try:
            return await client.fetch_schedule()
        finally:
            await client.aclose()

    snap = run(go())
    assert seen[0].headers["User-Agent"] == "hw-test/1"
    assert [o.id for o in snap.helltide] == ["1"]
    assert snap.for_category(Category.WORLD_BOSS)[0].boss == "Ashava"
    assert snap.fetched_at is not None


def test_cache_reuses_response_within_ttl():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(200, json=PAYLOAD)

    async def go():
        client = ScheduleClient("https://example.test/s", cache_ttl=60, transport=httpx.MockTransport(handler))
        try:
            await client.fetch_schedule()
            await client.fetch_schedule()
        finally:
            await client.aclose()

    run(go())
    assert len(calls) == 1


def test_retries_then_succeeds(monkeypatch):
    monkeypatch.setattr("hellwatch.schedule_api.asyncio.sleep", _no_sleep)
    responses = [httpx.Response(503), httpx.Response(200, json=PAYLOAD)]

    def handler(request):
        return responses.pop(0)

    async def go():
        client = ScheduleClient("https://example.test/s", cache_ttl=0, transport=httpx.MockTransport(handler))
        try:
            return await client.fetch_schedule()
        finally:
            await client.aclose()

    assert len(run(go()).legion) == 1


def test_gives_up_with_fetch_error(monkeypatch):
    monkeypatch.setattr("hellwatch.schedule_api.asyncio.sleep", _no_sleep)
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(200, json=["not", "an", "object"])

    async def go():
        client = ScheduleClient("https://example.test/s", attempts=3, transport=httpx.MockTransport(handler))
        try:
            await client.fetch_schedule()
        finally:
            await client.aclose()

    with pytest.raises(ScheduleFetchError):
        run(go())
    assert len(calls) == 3


async def _no_sleep(_seconds):
    return None
