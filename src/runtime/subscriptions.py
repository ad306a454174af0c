from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

from src.runtime.interval_timer import IntervalTimer

Unsubscribe = Callable[[], None]
AsyncRelease = Callable[[], Awaitable[None]]


class SubscriptionScope:
    """Owns listener handles, timers and background tasks for one lifetime.

    Everything registered here is released together by `close()`, newest first.
    Async releasers only run from `aclose()`, after the sync ones.
    """

    def __init__(self, name: str = "scope"):
        self._name = name
        self._releasers: list[Unsubscribe] = []
        self._async_releasers: list[AsyncRelease] = []
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, unsubscribe: Unsubscribe) -> Unsubscribe:
        if self._closed:
            unsubscribe()
            return unsubscribe
        self._releasers.append(unsubscribe)
        return unsubscribe

    def add_async(self, release: AsyncRelease) -> AsyncRelease:
        self._async_releasers.append(release)
        return release

    def add_timer(self, timer: IntervalTimer) -> IntervalTimer:
        self.add(timer.cancel)
        return timer

    def spawn(self, coro, *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        if self._closed:
            task.cancel()
            return task
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self._name}] background task {task.get_name()} failed: {exc}")

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        self.close()
        while self._async_releasers:
            release = self._async_releasers.pop()
            try:
                await release()
            except Exception as exc:
                logger.warning(f"[{self._name}] async release failed: {exc}")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._releasers:
            release = self._releasers.pop()
            try:
                release()
            except Exception as exc:
                logger.warning(f"[{self._name}] release failed: {exc}")
        for task in list(self._tasks):
            task.cancel()
        logger.debug(f"[{self._name}] released")
