from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from src.core.event_contracts import BackendEvent, EventContractError, parse_event

EventHandler = Callable[[BackendEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Per-channel fan-out of backend events.

    Handlers of one channel are invoked in arrival order. Async handlers run
    as tasks so a slow handler never holds back the next event.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def subscribe(self, channel: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers.setdefault(channel, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(channel, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def handler_count(self, channel: str) -> int:
        return len(self._handlers.get(channel, []))

    def dispatch(self, channel: str, payload: Any) -> bool:
        if self._closed:
            logger.debug(f"Event bus closed; dropping {channel}")
            return False
        try:
            event = parse_event(channel, payload)
        except EventContractError as exc:
            logger.warning(f"Dropping invalid backend event: {exc}")
            return False

        for handler in list(self._handlers.get(channel, [])):
            try:
                result = handler(event)
            except Exception as exc:
                logger.error(f"Handler for {channel} failed: {exc}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)
        return True

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async event handler failed: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight async handlers."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop accepting events and cancel in-flight async handlers."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
