from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from src.bridge.commands import BackendCommands
from src.clipboard import Clipboard
from src.core.error_taxonomy import ErrorCategory
from src.core.logging_setup import emit_event
from src.core.records import AggregateStats, Transcript
from src.core.timeline import TranscriptGroup, group_transcripts
from src.state import TIMELINE, Signal, SignalKind, StateStore, TimelineView

_log = logger.bind(component="timeline")


def _parse_transcripts(data: Any) -> tuple[Transcript, ...]:
    if not isinstance(data, list):
        raise ValueError("transcript list must be a list")
    out: list[Transcript] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            out.append(Transcript.from_payload(item))
        except ValueError as exc:
            _log.warning(f"Skipping malformed transcript: {exc}")
    return tuple(out)


class TranscriptTimelineAggregator:
    """Grouped transcript timeline plus backend-computed aggregate stats.

    The list and the stats are always re-fetched after a mutation. Nothing
    here adjusts counts locally.
    """

    def __init__(self, store: StateStore, commands: BackendCommands, clipboard: Clipboard):
        self._store = store
        self._writer = store.claim(TIMELINE, owner="timeline")
        self._commands = commands
        self._clipboard = clipboard
        self._issued = 0
        self._applied = 0

    @property
    def state(self) -> TimelineView:
        return self._writer.value

    def groups(self, *, now: Optional[datetime] = None) -> list[TranscriptGroup]:
        return group_transcripts(self.state.transcripts, now=now)

    async def refresh(self) -> TimelineView:
        self._issued += 1
        seq = self._issued
        transcripts_res, stats_res = await asyncio.gather(
            self._commands.get_transcripts(),
            self._commands.get_transcript_stats(),
        )
        if seq < self._applied:
            _log.debug(f"Discarding stale timeline refresh #{seq}")
            return self.state

        changes: dict[str, Any] = {}
        if transcripts_res.is_ok:
            try:
                changes["transcripts"] = _parse_transcripts(transcripts_res.data)
            except ValueError as exc:
                _log.warning(f"Transcript list unusable: {exc}")
        else:
            _log.warning(f"Could not fetch transcripts: {transcripts_res.error}")

        if stats_res.is_ok:
            try:
                changes["stats"] = AggregateStats.from_payload(stats_res.data or {})
            except (ValueError, AttributeError) as exc:
                _log.warning(f"Transcript stats unusable: {exc}")
        else:
            _log.warning(f"Could not fetch transcript stats: {stats_res.error}")

        if changes:
            self._applied = seq
            self._writer.update(**changes)
        return self.state

    async def delete_transcript(self, transcript_id: str) -> bool:
        result = await self._commands.delete_transcript(transcript_id)
        if not result.is_ok:
            emit_event(
                _log,
                f"Delete failed for transcript {transcript_id}: {result.error}",
                level="WARNING",
                event="transcript_delete_failed",
                transcript_id=transcript_id,
                outcome="failed",
                error_category=ErrorCategory.BACKEND_REQUEST_FAILED.value,
            )
            self._store.emit(
                Signal(SignalKind.ERROR, "Failed to delete transcript", ErrorCategory.BACKEND_REQUEST_FAILED.value)
            )
            return False

        emit_event(_log, f"Deleted transcript {transcript_id}", event="transcript_deleted", transcript_id=transcript_id)
        await self.refresh()
        self._store.emit(Signal(SignalKind.SUCCESS, "Transcript deleted"))
        return True

    def copy_transcript(self, transcript_id: str) -> bool:
        match = next((t for t in self.state.transcripts if t.id == transcript_id), None)
        if match is None or match.is_silence:
            return False
        if not self._clipboard.copy(match.text):
            self._store.emit(Signal(SignalKind.ERROR, "Could not copy to clipboard"))
            return False
        self._store.emit(Signal(SignalKind.SUCCESS, "Copied to clipboard"))
        return True

    async def on_stats_updated(self, _event: Any) -> None:
        # The pushed figures only announce a change; the list and stats are re-queried.
        await self.refresh()
