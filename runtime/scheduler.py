"""
Timer abstraction for the client runtime.

Every periodic behavior (reconciliation poll, drift tick, take cycle,
fallback start) goes through a Scheduler so tests can drive virtual time.
Callbacks may be plain functions or return an awaitable.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class TimerHandle:
    def __init__(self):
        self.cancelled = False
        self._on_cancel: Optional[Callable[[], None]] = None

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class Scheduler(ABC):
    @abstractmethod
    def now(self) -> float:
        ...

    @abstractmethod
    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        ...

    @abstractmethod
    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        ...


class AsyncioScheduler(Scheduler):
    """Real timers on the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def _fire(self, handle: TimerHandle, callback: Callback) -> None:
        if handle.cancelled:
            return
        try:
            result = callback()
        except Exception:
            logger.exception("Timer callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Timer task failed: {task.exception()!r}")

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle()
        inner = self.loop.call_later(delay, self._fire, handle, callback)
        handle._on_cancel = inner.cancel
        return handle

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle()
        state = {"inner": None}

        def tick():
            if handle.cancelled:
                return
            state["inner"] = self.loop.call_later(interval, tick)
            self._fire(handle, callback)

        state["inner"] = self.loop.call_later(interval, tick)
        handle._on_cancel = lambda: state["inner"] and state["inner"].cancel()
        return handle


class _Entry:
    __slots__ = ("handle", "callback", "interval")

    def __init__(self, handle: TimerHandle, callback: Callback, interval: Optional[float]):
        self.handle = handle
        self.callback = callback
        self.interval = interval


class VirtualScheduler(Scheduler):
    """
    Deterministic scheduler for tests.

    Time only moves inside ``advance``; due callbacks run in due-time order
    and awaitables they return are awaited before the next one fires.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._queue: List[tuple] = []

    def now(self) -> float:
        return self._now

    def _push(self, due: float, entry: _Entry) -> None:
        heapq.heappush(self._queue, (due, next(self._seq), entry))

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle()
        self._push(self._now + delay, _Entry(handle, callback, None))
        return handle

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle()
        self._push(self._now + interval, _Entry(handle, callback, interval))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, e in self._queue if not e.handle.cancelled)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target + 1e-9:
            due, _, entry = heapq.heappop(self._queue)
            if entry.handle.cancelled:
                continue
            self._now = max(self._now, due)
            if entry.interval is not None:
                self._push(due + entry.interval, entry)
            result = entry.callback()
            if inspect.isawaitable(result):
                await result
        self._now = target
