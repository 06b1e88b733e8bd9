from __future__ import annotations

import asyncio
import sys

from hellwatch.dispatcher import NotificationDispatcher
from hellwatch.overlay_sync import OverlaySyncChannel
from hellwatch.safety import PANIC_KEY, PanicStop, UiWatchdog, install_panic_hooks
from hellwatch.settings import default_settings
from hellwatch.tasks import TaskScheduler

from conftest import FakeBeeper, FakeSpeaker, make_event


class Clock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def test_panic_flag_persists_and_resets(store):
    panic = PanicStop(store)
    seen = []
    panic.add_listener(seen.append)
    assert not panic.enabled
    panic.enable(RuntimeError("boom"))
    assert panic.enabled
    assert store.read_json(PANIC_KEY)["enabled"] is True
    assert PanicStop(store).enabled

    panic.reset()
    assert not panic.enabled
    assert not PanicStop(store).enabled
    assert seen == [True, False]


def test_watchdog_trips_after_three_bad_checks_then_dispatch_suppressed(store):
    panic = PanicStop(store)
    clock = Clock()
    size = [(800.0, 600.0)]
    dog = UiWatchdog(lambda: size[0], panic, grace=5, max_bad=3, clock=clock)

    dog.arm()
    size[0] = (0.0, 0.0)
    # inside the grace period nothing counts
    assert not dog.check()
    assert dog.bad_count == 0

    clock.t = 6
    assert not dog.check()
    assert not dog.check()
    assert not panic.enabled
    assert dog.check()
    assert panic.enabled

    beeper = FakeBeeper()
    speaker = FakeSpeaker()
    channel = OverlaySyncChannel()
    d = NotificationDispatcher(panic=panic, channel=channel, beeper=beeper, speaker=speaker, scheduler=TaskScheduler())
    for _ in range(3):
        assert d.dispatch(make_event(speech=False), default_settings()).suppressed
    assert beeper.calls == []

    panic.reset()
    res = d.dispatch(make_event(speech=False), default_settings())
    assert not res.suppressed
    assert len(beeper.calls) == 1


def test_good_check_resets_counter(store):
    panic = PanicStop(store)
    size = [(10.0, 10.0)]
    dog = UiWatchdog(lambda: size[0], panic, grace=0, max_bad=3, clock=Clock())
    dog.check()
    dog.check()
    size[0] = (201.0, 121.0)
    dog.check()
    assert dog.bad_count == 0
    size[0] = (200.0, 500.0)
    dog.check()
    dog.check()
    assert not panic.enabled


def test_no_surface_is_not_a_failure(store):
    panic = PanicStop(store)
    dog = UiWatchdog(lambda: None, panic, grace=0, max_bad=1, clock=Clock())
    for _ in range(5):
        assert not dog.check()
    assert not panic.enabled


def test_probe_exception_counts_as_bad(store):
    panic = PanicStop(store)

    def probe():
        raise RuntimeError("surface gone")

    dog = UiWatchdog(probe, panic, grace=0, max_bad=2, clock=Clock())
    dog.check()
    dog.check()
    assert panic.enabled


def test_run_forever_keeps_running_and_rearms_after_reset(store):
    panic = PanicStop(store)

    async def go():
        dog = UiWatchdog(lambda: (1.0, 1.0), panic, interval=0.1, grace=0, max_bad=2)
        task = asyncio.create_task(dog.run_forever())
        for _ in range(50):
            if panic.enabled:
                break
            await asyncio.sleep(0.05)
        tripped_once = panic.enabled
        alive = not task.done()

        panic.reset()
        assert dog.bad_count == 0
        for _ in range(50):
            if panic.enabled:
                break
            await asyncio.sleep(0.05)
        dog.stop()
        await asyncio.wait_for(task, timeout=2)
        return tripped_once, alive

    tripped_once, alive = asyncio.run(go())
    assert tripped_once and alive
    assert panic.enabled


def test_reset_rearms_grace_period(store):
    panic = PanicStop(store)
    clock = Clock()
    dog = UiWatchdog(lambda: (0.0, 0.0), panic, grace=5, max_bad=1, clock=clock)
    dog.arm()
    clock.t = 6
    assert dog.check()
    # checks pause while panic is on
    assert not dog.check()

    clock.t = 10
    panic.reset()
    assert dog.armed_at == 15
    assert not dog.check()
    clock.t = 15
    assert dog.check()


def test_loop_exception_handler_enables_panic(store):
    panic = PanicStop(store)

    async def go():
        loop = asyncio.get_running_loop()
        install_panic_hooks(panic, loop)

        def boom():
            raise ValueError("callback blew up")

        loop.call_soon(boom)
        await asyncio.sleep(0.01)

    saved = sys.excepthook
    try:
        asyncio.run(go())
    finally:
        sys.excepthook = saved
    assert panic.enabled
