from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger

T = TypeVar("T")

LateHandler = Callable[[Optional[Any], Optional[BaseException]], None]


@dataclass(frozen=True)
class RaceOutcome(Generic[T]):
    value: Optional[T] = None
    timed_out: bool = False


def _discard_late_result(label: str, on_late: LateHandler | None, task: asyncio.Future) -> None:
    if task.cancelled():
        logger.debug(f"[{label}] losing branch was cancelled after timeout")
        return
    exc = task.exception()
    value = None if exc is not None else task.result()
    if exc is not None:
        logger.warning(f"[{label}] late failure after client timeout discarded: {exc}")
    else:
        logger.warning(f"[{label}] late result after client timeout discarded")
    if on_late is not None:
        try:
            on_late(value, exc)
        except Exception as hook_exc:
            logger.error(f"[{label}] late-result hook failed: {hook_exc}")


async def race_with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    *,
    label: str = "request",
    on_late: LateHandler | None = None,
) -> RaceOutcome[T]:
    """Return whichever settles first: the awaitable or the timeout.

    The awaitable is not cancelled when the timeout wins. It keeps running and
    its eventual result is logged and dropped; `on_late` receives it so the
    caller can schedule a reconciliation fetch instead of applying it.
    Exceptions raised by the awaitable before the timeout propagate.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _pending = await asyncio.wait({task}, timeout=max(0.0, float(timeout)))
    except asyncio.CancelledError:
        task.add_done_callback(lambda t: _discard_late_result(label, None, t))
        raise
    if task in done:
        return RaceOutcome(value=task.result(), timed_out=False)
    task.add_done_callback(lambda t: _discard_late_result(label, on_late, t))
    return RaceOutcome(value=None, timed_out=True)
