"""Typed records for data returned by the transcription backend."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from src.core.display import format_bytes, format_time_of_day


def _require(payload: dict[str, Any], key: str, kinds: type | tuple[type, ...]) -> Any:
    value = payload.get(key)
    # bool is an int subclass; reject it where a number is expected.
    if isinstance(value, bool) and bool not in (kinds if isinstance(kinds, tuple) else (kinds,)):
        raise ValueError(f"'{key}' must not be a boolean")
    if not isinstance(value, kinds):
        raise ValueError(f"'{key}' is missing or has the wrong type")
    return value


@dataclass(frozen=True)
class AudioDevice:
    id: str
    name: str
    is_default: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AudioDevice":
        return cls(
            id=_require(payload, "id", str),
            name=str(payload.get("name") or payload.get("id")),
            is_default=bool(payload.get("is_default", False)),
        )

    def to_public(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "isDefault": self.is_default}


@dataclass(frozen=True)
class ModelCatalogEntry:
    id: str
    display_name: str
    size_bytes: int
    description: str
    # Derived locally from the recommended-id constant, never taken from the backend.
    is_recommended: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, recommended_id: str) -> "ModelCatalogEntry":
        model_id = _require(payload, "id", str)
        size_bytes = payload.get("size_bytes")
        if not isinstance(size_bytes, (int, float)) or isinstance(size_bytes, bool):
            size_mb = payload.get("size_mb", 0)
            size_bytes = int(float(size_mb or 0) * 1024 * 1024)
        return cls(
            id=model_id,
            display_name=str(payload.get("name") or payload.get("display_name") or model_id),
            size_bytes=int(size_bytes),
            description=str(payload.get("description") or ""),
            is_recommended=model_id == recommended_id,
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "sizeBytes": self.size_bytes,
            "sizeLabel": format_bytes(self.size_bytes),
            "description": self.description,
            "isRecommended": self.is_recommended,
        }


@dataclass(frozen=True)
class Transcript:
    id: str
    # Empty text means the backend detected silence.
    text: str
    timestamp_ms: float
    duration_ms: float = 0.0
    word_count: int = 0
    wpm: float = 0.0
    model_used: Optional[str] = None

    @property
    def is_silence(self) -> bool:
        return not self.text.strip()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Transcript":
        return cls(
            id=_require(payload, "id", str),
            text=_require(payload, "text", str),
            timestamp_ms=float(_require(payload, "timestamp", (int, float))),
            duration_ms=float(payload.get("duration_ms") or 0.0),
            word_count=int(payload.get("word_count") or 0),
            wpm=float(payload.get("wpm") or 0.0),
            model_used=payload.get("model_used") if isinstance(payload.get("model_used"), str) else None,
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "timestamp": self.timestamp_ms,
            "timeLabel": format_time_of_day(self.timestamp_ms),
            "durationMs": self.duration_ms,
            "wordCount": self.word_count,
            "wpm": self.wpm,
            "modelUsed": self.model_used,
            "isSilence": self.is_silence,
        }


@dataclass(frozen=True)
class AggregateStats:
    total_words: int = 0
    total_time_ms: float = 0.0
    overall_wpm: float = 0.0
    total_characters: int = 0
    transcript_count: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AggregateStats":
        return cls(
            total_words=int(_require(payload, "total_words", (int, float))),
            total_time_ms=float(_require(payload, "total_time_ms", (int, float))),
            overall_wpm=float(_require(payload, "overall_wpm", (int, float))),
            total_characters=int(payload.get("total_characters") or 0),
            transcript_count=int(payload.get("transcript_count") or 0),
        )

    def to_public(self) -> dict[str, Any]:
        return {
            "totalWords": self.total_words,
            "totalTimeMs": self.total_time_ms,
            "overallWpm": self.overall_wpm,
            "totalCharacters": self.total_characters,
            "transcriptCount": self.transcript_count,
        }
