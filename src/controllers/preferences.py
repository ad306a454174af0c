from __future__ import annotations

from typing import Any

from loguru import logger

from src.bridge.commands import BackendCommands
from src.core.display import HOTKEY_OPTIONS
from src.core.error_taxonomy import BackendRequestFailed, PreconditionNotMet
from src.core.event_contracts import AudioLevelUpdate, FnKeyStateChanged
from src.core.logging_setup import emit_event
from src.core.records import AudioDevice
from src.data.settings_store import SettingsStore
from src.state import PREFERENCES, PreferencesView, StateStore

_log = logger.bind(component="preferences")


def _parse_devices(data: Any) -> tuple[AudioDevice, ...]:
    if not isinstance(data, list):
        raise ValueError("device list must be a list")
    devices = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            devices.append(AudioDevice.from_payload(item))
        except ValueError as exc:
            _log.warning(f"Skipping malformed audio device: {exc}")
    return tuple(devices)


class PreferencesController:
    def __init__(self, store: StateStore, commands: BackendCommands, settings: SettingsStore):
        self._writer = store.claim(PREFERENCES, owner="preferences")
        self._commands = commands
        self._settings = settings

    @property
    def state(self) -> PreferencesView:
        return self._writer.value

    async def load(self) -> PreferencesView:
        record = self._settings.initialize()
        self._writer.update(
            selected_device=record.selected_microphone,
            word_count=record.word_count,
            hotkey=record.hotkey,
        )
        await self._load_devices()
        await self._load_word_count()
        await self._restore_hotkey()
        return self.state

    async def _load_devices(self) -> None:
        result = await self._commands.get_audio_devices()
        if not result.is_ok:
            _log.warning(f"Could not list audio devices: {result.error}")
            return
        try:
            devices = _parse_devices(result.data)
        except ValueError as exc:
            _log.warning(f"Audio device list unusable: {exc}")
            return
        self._writer.update(devices=devices)

        current = await self._commands.get_current_device()
        if current.is_ok and isinstance(current.data, str) and current.data:
            self._writer.update(selected_device=current.data)
            return

        default = next((d for d in devices if d.is_default), None)
        if default is None:
            return
        saved = await self._commands.set_recording_device(default.id)
        if saved.is_ok:
            self._writer.update(selected_device=default.id)
            self._settings.update(selected_microphone=default.id)
            _log.info(f"Selected default microphone {default.name}")
        else:
            _log.warning(f"Could not save default microphone: {saved.error}")

    async def _load_word_count(self) -> None:
        result = await self._commands.get_word_count()
        if result.is_ok and isinstance(result.data, int):
            self._writer.update(word_count=result.data)
            self._settings.update(word_count=result.data)

    async def _restore_hotkey(self) -> None:
        result = await self._commands.get_hotkey()
        if not result.is_ok or not isinstance(result.data, str) or not result.data:
            return
        hotkey = result.data
        self._writer.update(hotkey=hotkey)
        # Re-register so the backend listener is armed after a restart.
        registered = await self._commands.set_hotkey(hotkey)
        if registered.is_ok:
            _log.info(f"Registered saved hotkey {hotkey}")
        else:
            _log.error(f"Failed to register saved hotkey {hotkey}: {registered.error}")

    async def select_device(self, device_id: str) -> PreferencesView:
        if device_id not in {d.id for d in self.state.devices}:
            raise PreconditionNotMet(f"Unknown audio device: {device_id}")
        result = await self._commands.set_recording_device(device_id)
        if not result.is_ok:
            raise BackendRequestFailed(result.error or "", command="set_recording_device")
        self._writer.update(selected_device=device_id)
        self._settings.update(selected_microphone=device_id)
        emit_event(_log, f"Microphone set to {device_id}", event="device_selected")
        return self.state

    async def change_hotkey(self, hotkey: str) -> PreferencesView:
        if hotkey not in HOTKEY_OPTIONS:
            raise PreconditionNotMet(f"Unsupported hotkey: {hotkey}")
        result = await self._commands.set_hotkey(hotkey)
        if not result.is_ok:
            raise BackendRequestFailed(result.error or "", command="set_hotkey")
        self._writer.update(hotkey=hotkey)
        self._settings.update(hotkey=hotkey)
        emit_event(_log, f"Hotkey set to {hotkey}", event="hotkey_changed")
        return self.state

    def on_fn_key_state(self, event: FnKeyStateChanged) -> None:
        self._writer.update(fn_key_pressed=event.is_pressed)

    def on_audio_level(self, event: AudioLevelUpdate) -> None:
        self._writer.update(audio_level=max(0.0, min(1.0, event.level)))
