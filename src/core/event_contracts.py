from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from src.core.records import AggregateStats


MODEL_DOWNLOAD_PROGRESS = "model-download-progress"
MODEL_DOWNLOAD_COMPLETE = "model-download-complete"
FN_KEY_STATE_CHANGED = "fn-key-state-changed"
RECORDING_STATE_CHANGED = "recording-state-changed"
RECORDING_STATS_UPDATED = "recording-stats-updated"
AUDIO_LEVEL_UPDATE = "audio-level-update"

ALL_CHANNELS = (
    MODEL_DOWNLOAD_PROGRESS,
    MODEL_DOWNLOAD_COMPLETE,
    FN_KEY_STATE_CHANGED,
    RECORDING_STATE_CHANGED,
    RECORDING_STATS_UPDATED,
    AUDIO_LEVEL_UPDATE,
)


class EventContractError(ValueError):
    pass


@dataclass(frozen=True)
class ModelDownloadProgress:
    # Expected to grow monotonically, not guaranteed; consumers clamp.
    progress: float
    downloaded_bytes: float
    total_bytes: float


@dataclass(frozen=True)
class ModelDownloadComplete:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class FnKeyStateChanged:
    is_pressed: bool


@dataclass(frozen=True)
class RecordingStateChanged:
    is_recording: bool


@dataclass(frozen=True)
class RecordingStatsUpdated:
    stats: AggregateStats


@dataclass(frozen=True)
class AudioLevelUpdate:
    level: float


BackendEvent = Union[
    ModelDownloadProgress,
    ModelDownloadComplete,
    FnKeyStateChanged,
    RecordingStateChanged,
    RecordingStatsUpdated,
    AudioLevelUpdate,
]


def _number(payload: dict[str, Any], key: str, channel: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EventContractError(f"{channel} event requires numeric '{key}'")
    return float(value)


def _flag(payload: dict[str, Any], key: str, channel: str) -> bool:
    value = payload.get(key)
    if not isinstance(value, bool):
        raise EventContractError(f"{channel} event requires bool '{key}'")
    return value


def parse_event(channel: str, payload: Any) -> BackendEvent:
    if not isinstance(payload, dict):
        raise EventContractError(f"{channel} payload must be a dict")

    if channel == MODEL_DOWNLOAD_PROGRESS:
        return ModelDownloadProgress(
            progress=_number(payload, "progress", channel),
            downloaded_bytes=_number(payload, "downloaded_bytes", channel),
            total_bytes=_number(payload, "total_bytes", channel),
        )
    if channel == MODEL_DOWNLOAD_COMPLETE:
        error = payload.get("error")
        if error is not None and not isinstance(error, str):
            raise EventContractError(f"{channel} event 'error' must be a string when present")
        return ModelDownloadComplete(success=_flag(payload, "success", channel), error=error)
    if channel == FN_KEY_STATE_CHANGED:
        return FnKeyStateChanged(is_pressed=_flag(payload, "is_pressed", channel))
    if channel == RECORDING_STATE_CHANGED:
        return RecordingStateChanged(is_recording=_flag(payload, "is_recording", channel))
    if channel == RECORDING_STATS_UPDATED:
        try:
            return RecordingStatsUpdated(stats=AggregateStats.from_payload(payload))
        except ValueError as exc:
            raise EventContractError(f"{channel} event has invalid stats: {exc}") from exc
    if channel == AUDIO_LEVEL_UPDATE:
        return AudioLevelUpdate(level=_number(payload, "level", channel))
    raise EventContractError(f"Unknown event channel: {channel!r}")


def validate_envelope(message: Any) -> tuple[str, dict[str, Any]]:
    """Split a raw event-socket message into (channel, payload)."""
    if not isinstance(message, dict):
        raise EventContractError("Event message must be a dict")
    channel = message.get("event")
    if not isinstance(channel, str) or not channel:
        raise EventContractError("Event message requires non-empty string 'event'")
    payload = message.get("payload", {})
    if not isinstance(payload, dict):
        raise EventContractError("Event message 'payload' must be an object")
    return channel, payload
