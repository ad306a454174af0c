from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Union

from loguru import logger

TickCallback = Callable[[], Union[None, Awaitable[Any]]]


class IntervalTimer:
    """Fires a callback every `period_seconds` until cancelled.

    Async callbacks run as tasks; a tick never waits for the previous one.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        period_seconds: float,
        callback: TickCallback,
        name: str = "interval",
    ):
        self._loop = loop
        self._period = max(0.001, float(period_seconds))
        self._callback = callback
        self._name = name
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._handle is not None

    @property
    def period_seconds(self) -> float:
        return self._period

    def start(self) -> None:
        if self._handle is not None:
            return
        self._handle = self._loop.call_later(self._period, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _fire(self) -> None:
        self._handle = self._loop.call_later(self._period, self._fire)
        try:
            result = self._callback()
        except Exception as exc:
            logger.error(f"[{self._name}] tick failed: {exc}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self._name}] async tick failed: {exc}")
