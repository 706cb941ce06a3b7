"""
core/timers.py - Owned timers for the dock's cooperative, single-loop runtime.

Every delayed side effect (polls, retries, debounced saves, grace expiry)
goes through a Scheduler so it can be cancelled as a group:

    scope = scheduler.scope()
    scope.call_every(2.0, self.refresh)
    scope.call_later(0.15, self.refresh)
    ...
    scope.close()    # cancels everything, late callbacks become no-ops

Callbacks may be plain functions or coroutine functions.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)

Callback = Callable[[], Any]


class TimerHandle:
    """Cancellation token returned by every scheduling call."""

    def __init__(self, callback: Callback, interval: Optional[float] = None):
        self.callback = callback
        self.interval = interval
        self.cancelled = False
        self._on_cancel: list[Callable[[], None]] = []

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        hooks, self._on_cancel = self._on_cancel, []
        for fn in hooks:
            fn()

    def add_cancel_hook(self, fn: Callable[[], None]) -> None:
        if self.cancelled:
            fn()
            return
        self._on_cancel.append(fn)


class Scheduler(ABC):
    @abstractmethod
    def now(self) -> float:
        """Current time in seconds (monotonic)."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        ...

    @abstractmethod
    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        """Run callback every `interval` seconds, first run one interval from now."""

    def call_soon(self, callback: Callback) -> TimerHandle:
        return self.call_later(0.0, callback)

    def scope(self) -> "TimerScope":
        return TimerScope(self)


class LoopScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(callback)
        tasks: set[asyncio.Future] = set()
        timer = self.loop.call_later(max(0.0, delay), self._fire, handle, tasks)
        handle.add_cancel_hook(timer.cancel)
        handle.add_cancel_hook(lambda: _cancel_all(tasks))
        return handle

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(callback, interval)
        tasks: set[asyncio.Future] = set()
        current: list[asyncio.TimerHandle] = []

        def tick() -> None:
            if handle.cancelled:
                return
            current[0] = self.loop.call_later(interval, tick)
            self._fire(handle, tasks)

        current.append(self.loop.call_later(interval, tick))
        handle.add_cancel_hook(lambda: current[0].cancel())
        handle.add_cancel_hook(lambda: _cancel_all(tasks))
        return handle

    def _fire(self, handle: TimerHandle, tasks: set) -> None:
        if handle.cancelled:
            return
        try:
            result = handle.callback()
        except Exception as e:
            log.error(f"Timer callback error: {e!r}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result, loop=self.loop)
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            task.add_done_callback(_log_task_error)


def _cancel_all(tasks: set) -> None:
    for task in list(tasks):
        task.cancel()
    tasks.clear()


def _log_task_error(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error(f"Timer task error: {exc!r}")


class TimerScope:
    """
    A group of timers owned by one component.

    close() cancels every outstanding timer and marks the scope dead, so a
    callback that was already queued by the loop returns without running.
    """

    def __init__(self, scheduler: Scheduler):
        self._scheduler = scheduler
        self._handles: set[TimerHandle] = set()
        self.closed = False

    def now(self) -> float:
        return self._scheduler.now()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        fired: list[TimerHandle] = []

        def run() -> Any:
            if self.closed:
                return None
            try:
                result = callback()
            except Exception:
                self._handles.discard(fired[0])
                raise
            if inspect.isawaitable(result):
                return self._settle(fired[0], result)
            self._handles.discard(fired[0])
            return result

        handle = self._scheduler.call_later(delay, run)
        fired.append(handle)
        return self._track(handle)

    def call_soon(self, callback: Callback) -> TimerHandle:
        return self.call_later(0.0, callback)

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        def run() -> Any:
            if self.closed:
                return None
            return callback()

        return self._track(self._scheduler.call_every(interval, run))

    async def _settle(self, handle: TimerHandle, awaitable: Any) -> Any:
        # owned until the coroutine finishes
        try:
            return await awaitable
        finally:
            self._handles.discard(handle)

    def close(self) -> None:
        self.closed = True
        handles, self._handles = self._handles, set()
        for handle in handles:
            handle.cancel()

    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)

    def _track(self, handle: TimerHandle) -> TimerHandle:
        if self.closed:
            handle.cancel()
            return handle
        self._handles.add(handle)
        handle.add_cancel_hook(lambda: self._handles.discard(handle))
        return handle
