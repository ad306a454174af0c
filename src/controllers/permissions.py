from __future__ import annotations

import asyncio
from typing import Any, Optional

from loguru import logger

from src.bridge.commands import BackendCommands
from src.config import Config
from src.core.logging_setup import emit_event
from src.runtime.interval_timer import IntervalTimer
from src.state import PERMISSIONS, PermissionView, StateStore

_log = logger.bind(component="permissions")

MICROPHONE = "microphone"
ACCESSIBILITY = "accessibility"


def _is_granted(entry: Any) -> bool:
    # The backend reports either a bare bool or {"state": "Granted" | "Denied" | ...}.
    if isinstance(entry, bool):
        return entry
    if isinstance(entry, dict):
        return str(entry.get("state", "")).lower() == "granted"
    if isinstance(entry, str):
        return entry.lower() == "granted"
    return False


def parse_permissions(data: Any) -> PermissionView:
    if not isinstance(data, dict):
        raise ValueError("permission payload must be an object")
    return PermissionView(
        microphone=_is_granted(data.get(MICROPHONE)),
        accessibility=_is_granted(data.get(ACCESSIBILITY)),
    )


class PermissionMonitor:
    """Keeps the microphone/accessibility flags in sync with the backend.

    All triggers (startup, poll, focus, after a grant request) go through
    `refresh()`. A response is applied only if no later-started check has
    already been applied, so a slow stale check cannot overwrite a newer one.
    """

    def __init__(
        self,
        store: StateStore,
        commands: BackendCommands,
        *,
        poll_secs: Optional[float] = None,
    ):
        self._writer = store.claim(PERMISSIONS, owner="permission_monitor")
        self._commands = commands
        self._poll_secs = poll_secs if poll_secs is not None else Config.PERMISSION_POLL_SEC
        self._timer: Optional[IntervalTimer] = None
        self._issued = 0
        self._applied = 0

    @property
    def state(self) -> PermissionView:
        return self._writer.value

    async def refresh(self) -> PermissionView:
        self._issued += 1
        seq = self._issued
        try:
            result = await self._commands.check_permissions()
        except Exception as exc:
            _log.warning(f"Permission check failed: {exc}")
            return self.state
        if not result.is_ok:
            _log.warning(f"Permission check returned error: {result.error}")
            return self.state
        try:
            fresh = parse_permissions(result.data)
        except ValueError as exc:
            _log.warning(f"Ignoring malformed permission payload: {exc}")
            return self.state
        if seq < self._applied:
            _log.debug(f"Discarding stale permission check #{seq} (applied #{self._applied})")
            return self.state

        self._applied = seq
        previous = self.state
        if fresh != previous:
            emit_event(
                _log,
                f"Permissions changed: microphone={fresh.microphone} accessibility={fresh.accessibility}",
                event="permissions_changed",
                meta={"microphone": fresh.microphone, "accessibility": fresh.accessibility},
            )
        self._writer.update(microphone=fresh.microphone, accessibility=fresh.accessibility)
        return self.state

    async def request_microphone(self) -> PermissionView:
        return await self._request(MICROPHONE, self._commands.request_microphone_permission)

    async def request_accessibility(self) -> PermissionView:
        return await self._request(ACCESSIBILITY, self._commands.request_accessibility_permission)

    async def _request(self, kind: str, request) -> PermissionView:
        # A grant request never sets the flag; only the follow-up check does.
        try:
            result = await request()
            if not result.is_ok:
                _log.warning(f"{kind} permission request returned error: {result.error}")
        except Exception as exc:
            _log.warning(f"{kind} permission request failed: {exc}")
        return await self.refresh()

    async def on_focus(self) -> PermissionView:
        return await self.refresh()

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> IntervalTimer:
        if self._timer is None:
            self._timer = IntervalTimer(
                loop=loop or asyncio.get_running_loop(),
                period_seconds=self._poll_secs,
                callback=self.refresh,
                name="permission_poll",
            )
        self._timer.start()
        return self._timer

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
