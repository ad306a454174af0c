from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from src.core.error_taxonomy import BackendRequestFailed


@dataclass(frozen=True)
class BackendResult:
    """Tagged command result: `{"status": "ok", "data": ...}` or `{"status": "error", "error": ...}`."""

    status: str
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "BackendResult":
        return cls(status="ok", data=data)

    @classmethod
    def fail(cls, error: str) -> "BackendResult":
        return cls(status="error", error=str(error) or "unknown error")

    @classmethod
    def from_envelope(cls, envelope: Any) -> "BackendResult":
        if not isinstance(envelope, dict):
            return cls.fail("malformed response envelope")
        status = envelope.get("status")
        if status == "ok":
            return cls.ok(envelope.get("data"))
        if status == "error":
            return cls.fail(str(envelope.get("error") or "unknown error"))
        return cls.fail(f"unexpected response status: {status!r}")

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def unwrap(self, command: str = "") -> Any:
        if not self.is_ok:
            raise BackendRequestFailed(self.error or "", command=command)
        return self.data


class CommandTransport(Protocol):
    async def invoke(self, command: str, args: Optional[dict[str, Any]] = None) -> BackendResult:
        ...


class BackendCommands:
    """Typed wrappers around the backend command interface.

    Every method returns the raw `BackendResult`; callers check it before
    touching any state.
    """

    def __init__(self, transport: CommandTransport):
        self._transport = transport

    async def _call(self, command: str, **args: Any) -> BackendResult:
        return await self._transport.invoke(command, args or None)

    # Devices
    async def get_audio_devices(self) -> BackendResult:
        return await self._call("get_audio_devices")

    async def get_current_device(self) -> BackendResult:
        return await self._call("get_current_device")

    async def set_recording_device(self, device_id: str) -> BackendResult:
        return await self._call("set_recording_device", device_id=device_id)

    # Permissions
    async def check_permissions(self) -> BackendResult:
        return await self._call("check_permissions")

    async def request_microphone_permission(self) -> BackendResult:
        return await self._call("request_microphone_permission")

    async def request_accessibility_permission(self) -> BackendResult:
        return await self._call("request_accessibility_permission")

    # Hotkey and counters
    async def get_hotkey(self) -> BackendResult:
        return await self._call("get_hotkey")

    async def set_hotkey(self, hotkey: str) -> BackendResult:
        return await self._call("set_hotkey", hotkey=hotkey)

    async def get_word_count(self) -> BackendResult:
        return await self._call("get_word_count")

    # Transcripts
    async def get_transcripts(self, limit: Optional[int] = None) -> BackendResult:
        if limit is None:
            return await self._call("get_transcripts")
        return await self._call("get_transcripts", limit=limit)

    async def get_transcript_stats(self) -> BackendResult:
        return await self._call("get_transcript_stats")

    async def delete_transcript(self, transcript_id: str) -> BackendResult:
        return await self._call("delete_transcript", id=transcript_id)

    # Models
    async def get_available_models(self) -> BackendResult:
        return await self._call("get_available_models")

    async def get_downloaded_models(self) -> BackendResult:
        return await self._call("get_downloaded_models")

    async def get_selected_model(self) -> BackendResult:
        return await self._call("get_selected_model")

    async def set_selected_model(self, model_id: str) -> BackendResult:
        return await self._call("set_selected_model", model_id=model_id)

    async def download_model(self, model_id: str) -> BackendResult:
        return await self._call("download_model", model_id=model_id)

    async def check_model_downloaded(self, model_id: str) -> BackendResult:
        return await self._call("check_model_downloaded", model_id=model_id)

    # Manual recording
    async def start_recording(self) -> BackendResult:
        return await self._call("start_recording")

    async def stop_recording(self) -> BackendResult:
        """Stop capture and transcribe; `data` is the transcribed text."""
        return await self._call("stop_recording")
