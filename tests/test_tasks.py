from __future__ import annotations

import asyncio

from hellwatch.tasks import TaskScheduler


def test_runs_in_due_order():
    async def go():
        sched = TaskScheduler()
        out = []
        sched.schedule_after(0.03, lambda: out.append("b"), name="b")
        sched.schedule_after(0.01, lambda: out.append("a"), name="a")
        assert [t.name for t in sched.pending()] == ["a", "b"]
        await asyncio.sleep(0.08)
        return out, sched.pending()

    out, pending = asyncio.run(go())
    assert out == ["a", "b"]
    assert pending == []


def test_async_actions_are_awaited():
    async def go():
        sched = TaskScheduler()
        out = []

        async def act():
            await asyncio.sleep(0)
            out.append("done")

        task = sched.schedule_after(0.0, act, name="async")
        await asyncio.sleep(0.05)
        return out, task

    out, task = asyncio.run(go())
    assert out == ["done"]
    assert task.done and not task.pending


def test_cancel_group_and_all():
    async def go():
        sched = TaskScheduler()
        out = []
        sched.schedule_after(0.01, lambda: out.append("speech"), name="s", group="speech")
        refresh = sched.schedule_after(0.01, lambda: out.append("refresh"), name="r", group="refresh")
        assert sched.cancel_group("speech") == 1
        assert [t.name for t in sched.pending()] == ["r"]
        assert sched.pending("speech") == []
        await asyncio.sleep(0.03)
        sched.schedule_after(0.01, lambda: out.append("late"), name="late")
        assert sched.cancel_all() == 1
        await asyncio.sleep(0.03)
        return out, refresh

    out, refresh = asyncio.run(go())
    assert out == ["refresh"]
    assert refresh.done


def test_failing_action_does_not_break_scheduler():
    async def go():
        sched = TaskScheduler()
        out = []

        def boom():
            raise RuntimeError("boom")

        sched.schedule_after(0.0, boom, name="boom")
        sched.schedule_after(0.01, lambda: out.append("ok"), name="ok")
        await asyncio.sleep(0.05)
        return out

    assert asyncio.run(go()) == ["ok"]


def test_cancelled_task_is_not_pending():
    async def go():
        sched = TaskScheduler()
        t = sched.schedule_after(10, lambda: None, name="x")
        sched.cancel(t)
        return t

    t = asyncio.run(go())
    assert t.cancelled and not t.pending
