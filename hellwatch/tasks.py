from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

log = logging.getLogger("hellwatch.tasks")

Action = Callable[[], Union[None, Awaitable[None]]]

_ids = itertools.count(1)


@dataclass
class ScheduledTask:
    """
    A unit of deferred work with an absolute due time (event-loop clock).
    """
    name: str
    due: float
    action: Action
    group: str = ""
    id: int = field(default_factory=lambda: next(_ids))
    cancelled: bool = False
    done: bool = False
    _handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.done)


class TaskScheduler:
    """
    Owns every deferred action (beep -> speech, auto-refresh)
    so they can be listed and cancelled per group or all at once.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tasks: dict[int, ScheduledTask] = {}
        self._running: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return self.loop.time()

    def schedule_at(self, due: float, action: Action, *, name: str, group: str = "") -> ScheduledTask:
        task = ScheduledTask(name=name, due=due, action=action, group=group)
        task._handle = self.loop.call_at(due, self._run, task)
        self._tasks[task.id] = task
        return task

    def schedule_after(self, delay: float, action: Action, *, name: str, group: str = "") -> ScheduledTask:
        return self.schedule_at(self.time() + max(0.0, float(delay)), action, name=name, group=group)

    def _run(self, task: ScheduledTask) -> None:
        self._tasks.pop(task.id, None)
        if task.cancelled:
            return
        task.done = True
        try:
            res = task.action()
            if inspect.isawaitable(res):
                t = self.loop.create_task(self._await(task, res), name=f"scheduled_{task.name}")
                self._running.add(t)
                t.add_done_callback(self._running.discard)
        except Exception:
            log.exception("Scheduled task %s failed", task.name)

    async def _await(self, task: ScheduledTask, res: Awaitable[Any]) -> None:
        try:
            await res
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Scheduled task %s failed", task.name)

    def cancel(self, task: Optional[ScheduledTask]) -> None:
        if task is None or not task.pending:
            return
        task.cancelled = True
        if task._handle is not None:
            task._handle.cancel()
        self._tasks.pop(task.id, None)

    def cancel_group(self, group: str) -> int:
        victims = [t for t in self._tasks.values() if t.group == group]
        for t in victims:
            self.cancel(t)
        return len(victims)

    def cancel_all(self) -> int:
        victims = list(self._tasks.values())
        for t in victims:
            self.cancel(t)
        for t in list(self._running):
            t.cancel()
        return len(victims)

    def pending(self, group: Optional[str] = None) -> list[ScheduledTask]:
        items = [t for t in self._tasks.values() if group is None or t.group == group]
        return sorted(items, key=lambda t: t.due)
