"""Shared state surface consumed by rendering.

Each section holds an immutable view. A section has exactly one writer,
obtained with `StateStore.claim`; everything else reads views or subscribes.
Updates are applied synchronously on the event loop thread, so listeners
always observe whole views, never a half-applied change.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from src.core.display import format_bytes, format_elapsed, hotkey_label, progress_bar_width
from src.core.records import AggregateStats, AudioDevice, ModelCatalogEntry, Transcript
from src.core.state_machine import RecordingPhase, RecordingTrigger

SESSION = "session"
MODELS = "models"
PERMISSIONS = "permissions"
TIMELINE = "timeline"
PREFERENCES = "preferences"


class StateOwnershipError(RuntimeError):
    pass


class SignalKind(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    message: str
    category: Optional[str] = None

    def to_public(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "category": self.category}


@dataclass(frozen=True)
class SessionView:
    phase: RecordingPhase = RecordingPhase.IDLE
    trigger: Optional[RecordingTrigger] = None
    session_id: Optional[str] = None
    started_at: Optional[float] = None
    elapsed_seconds: float = 0.0
    is_manual: bool = False
    last_outcome: Optional[str] = None

    @property
    def is_recording(self) -> bool:
        return self.phase is RecordingPhase.RECORDING

    @property
    def is_processing(self) -> bool:
        return self.phase is RecordingPhase.PROCESSING

    def to_public(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "trigger": self.trigger.value if self.trigger else None,
            "sessionId": self.session_id,
            "elapsedSeconds": round(self.elapsed_seconds, 1),
            "elapsedLabel": format_elapsed(self.elapsed_seconds),
            "isManual": self.is_manual,
            "isRecording": self.is_recording,
            "isProcessing": self.is_processing,
            "lastOutcome": self.last_outcome,
        }


@dataclass(frozen=True)
class ModelView:
    catalog: tuple[ModelCatalogEntry, ...] = ()
    selected_id: Optional[str] = None
    downloaded_ids: frozenset[str] = frozenset()
    is_downloading: bool = False
    progress: float = 0.0
    downloaded_bytes: float = 0.0
    total_bytes: float = 0.0
    last_error: Optional[str] = None

    @property
    def is_downloaded_currently(self) -> bool:
        return self.selected_id is not None and self.selected_id in self.downloaded_ids

    @property
    def selected_entry(self) -> Optional[ModelCatalogEntry]:
        for entry in self.catalog:
            if entry.id == self.selected_id:
                return entry
        return None

    def to_public(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "catalog": [entry.to_public() for entry in self.catalog],
            "selectedId": self.selected_id,
            "downloadedIds": sorted(self.downloaded_ids),
            "isDownloadedCurrently": self.is_downloaded_currently,
            "isDownloading": self.is_downloading,
            "lastError": self.last_error,
            "progressBarWidth": 0.0,
        }
        # Progress is meaningless outside a download; never expose a stale bar.
        if self.is_downloading:
            data["progress"] = self.progress
            data["progressBarWidth"] = progress_bar_width(self.progress)
            data["downloadedBytes"] = self.downloaded_bytes
            data["totalBytes"] = self.total_bytes
            data["downloadedLabel"] = format_bytes(self.downloaded_bytes)
            data["totalLabel"] = format_bytes(self.total_bytes)
        return data


@dataclass(frozen=True)
class PermissionView:
    microphone: bool = False
    accessibility: bool = False

    def to_public(self) -> dict[str, Any]:
        return {"microphone": self.microphone, "accessibility": self.accessibility}


@dataclass(frozen=True)
class TimelineView:
    transcripts: tuple[Transcript, ...] = ()
    stats: Optional[AggregateStats] = None

    def to_public(self) -> dict[str, Any]:
        return {
            "transcripts": [t.to_public() for t in self.transcripts],
            "stats": self.stats.to_public() if self.stats else None,
        }


@dataclass(frozen=True)
class PreferencesView:
    devices: tuple[AudioDevice, ...] = ()
    selected_device: Optional[str] = None
    hotkey: Optional[str] = None
    word_count: int = 0
    fn_key_pressed: bool = False
    audio_level: float = 0.0

    def to_public(self) -> dict[str, Any]:
        return {
            "devices": [d.to_public() for d in self.devices],
            "selectedDevice": self.selected_device,
            "hotkey": self.hotkey,
            "hotkeyLabel": hotkey_label(self.hotkey),
            "wordCount": self.word_count,
            "fnKeyPressed": self.fn_key_pressed,
            "audioLevel": self.audio_level,
        }


SectionListener = Callable[[str, Any], None]
SignalListener = Callable[[Signal], None]


class SectionWriter:
    def __init__(self, store: "StateStore", section: str, owner: str):
        self._store = store
        self.section = section
        self.owner = owner

    @property
    def value(self) -> Any:
        return self._store.get(self.section)

    def update(self, **changes: Any) -> Any:
        new_value = replace(self._store.get(self.section), **changes)
        self._store._commit(self.section, new_value)
        return new_value


class StateStore:
    def __init__(self):
        self._values: dict[str, Any] = {
            SESSION: SessionView(),
            MODELS: ModelView(),
            PERMISSIONS: PermissionView(),
            TIMELINE: TimelineView(),
            PREFERENCES: PreferencesView(),
        }
        self._owners: dict[str, str] = {}
        self._listeners: list[SectionListener] = []
        self._signal_listeners: list[SignalListener] = []

    def claim(self, section: str, owner: str) -> SectionWriter:
        if section not in self._values:
            raise KeyError(f"Unknown state section: {section}")
        current = self._owners.get(section)
        if current is not None and current != owner:
            raise StateOwnershipError(f"Section '{section}' is already owned by '{current}'")
        self._owners[section] = owner
        return SectionWriter(self, section, owner)

    def get(self, section: str) -> Any:
        return self._values[section]

    @property
    def session(self) -> SessionView:
        return self._values[SESSION]

    @property
    def models(self) -> ModelView:
        return self._values[MODELS]

    @property
    def permissions(self) -> PermissionView:
        return self._values[PERMISSIONS]

    @property
    def timeline(self) -> TimelineView:
        return self._values[TIMELINE]

    @property
    def preferences(self) -> PreferencesView:
        return self._values[PREFERENCES]

    def subscribe(self, listener: SectionListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def subscribe_signals(self, listener: SignalListener) -> Callable[[], None]:
        self._signal_listeners.append(listener)
        return lambda: self._signal_listeners.remove(listener) if listener in self._signal_listeners else None

    def emit(self, signal: Signal) -> None:
        for listener in list(self._signal_listeners):
            try:
                listener(signal)
            except Exception as exc:
                logger.error(f"Signal listener failed: {exc}")

    def snapshot(self) -> dict[str, Any]:
        return {section: value.to_public() for section, value in self._values.items()}

    def _commit(self, section: str, value: Any) -> None:
        if self._values[section] == value:
            return
        self._values[section] = value
        for listener in list(self._listeners):
            try:
                listener(section, value)
            except Exception as exc:
                logger.error(f"State listener failed for '{section}': {exc}")
