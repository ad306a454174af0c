from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from src.bridge.commands import BackendCommands, CommandTransport
from src.bridge.events import EventBus
from src.bridge.http_transport import HttpCommandTransport, WebSocketEventSource
from src.clipboard import Clipboard, SystemClipboard
from src.config import Config
from src.controllers.models import ModelLifecycleManager
from src.controllers.permissions import PermissionMonitor
from src.controllers.preferences import PreferencesController
from src.controllers.recording import RecordingSessionController
from src.controllers.timeline import TranscriptTimelineAggregator
from src.core import event_contracts as ev
from src.data.settings_store import SettingsStore
from src.runtime.subscriptions import SubscriptionScope
from src.state import StateStore

_log = logger.bind(component="app")


class CompanionApp:
    """Wires the bridge, the shared state and the four controllers together.

    Pass `transport` to talk to something other than the HTTP backend (tests
    use an in-memory fake). With `connect_events=False` no event socket is
    opened and events are fed through `bus.dispatch` directly.
    """

    def __init__(
        self,
        *,
        transport: Optional[CommandTransport] = None,
        clipboard: Optional[Clipboard] = None,
        settings: Optional[SettingsStore] = None,
        connect_events: bool = True,
    ):
        self.store = StateStore()
        self.transport = transport or HttpCommandTransport()
        self.commands = BackendCommands(self.transport)
        self.bus = EventBus()
        self.clipboard = clipboard or SystemClipboard()
        self.settings = settings or SettingsStore(Config.SETTINGS_DB)

        self.timeline = TranscriptTimelineAggregator(self.store, self.commands, self.clipboard)
        self.permissions = PermissionMonitor(self.store, self.commands)
        self.models = ModelLifecycleManager(self.store, self.commands)
        self.recording = RecordingSessionController(
            self.store,
            self.commands,
            self.clipboard,
            on_session_finished=self.timeline.refresh,
        )
        self.preferences = PreferencesController(self.store, self.commands, self.settings)

        self.events: Optional[WebSocketEventSource] = WebSocketEventSource(self.bus) if connect_events else None
        self.scope = SubscriptionScope("companion")
        # Released newest first: the bus stops handing out work before the controllers wind down.
        self.scope.add_async(self.recording.aclose)
        self.scope.add_async(self.models.shutdown)
        self.scope.add_async(self.bus.aclose)
        self._started = False

    def _subscribe_handlers(self) -> None:
        routes = (
            (ev.MODEL_DOWNLOAD_PROGRESS, self.models.on_download_progress),
            (ev.MODEL_DOWNLOAD_COMPLETE, self.models.on_download_complete),
            (ev.RECORDING_STATE_CHANGED, self.recording.on_recording_state_changed),
            (ev.RECORDING_STATS_UPDATED, self.timeline.on_stats_updated),
            (ev.FN_KEY_STATE_CHANGED, self.preferences.on_fn_key_state),
            (ev.AUDIO_LEVEL_UPDATE, self.preferences.on_audio_level),
        )
        for channel, handler in routes:
            self.scope.add(self.bus.subscribe(channel, handler))

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._subscribe_handlers()

        # Independent loads; one failing fetch leaves its own section at defaults.
        results = await asyncio.gather(
            self.permissions.refresh(),
            self.models.initialize(),
            self.timeline.refresh(),
            self.preferences.load(),
            return_exceptions=True,
        )
        for name, result in zip(("permissions", "models", "timeline", "preferences"), results):
            if isinstance(result, Exception):
                _log.error(f"Initial {name} load failed: {result}")

        self.scope.add_timer(self.permissions.start())
        if self.events is not None:
            self.events.start()
        _log.info("Companion started")

    async def on_window_focus(self) -> None:
        await asyncio.gather(self.permissions.on_focus(), self.timeline.refresh())

    async def shutdown(self) -> None:
        if self.events is not None:
            await self.events.close()
        self.permissions.stop()
        await self.scope.aclose()
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        self._started = False
        _log.info("Companion stopped")
