from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RecordingPhase(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    # Reserved for the session record; no transition enters it. Failures resolve straight to IDLE.
    ERROR = "error"


class RecordingTrigger(str, Enum):
    HOTKEY = "hotkey"
    MANUAL = "manual"


_VALID_TRANSITIONS: dict[RecordingPhase, set[RecordingPhase]] = {
    RecordingPhase.IDLE: {RecordingPhase.RECORDING},
    # RECORDING -> IDLE covers a hotkey release observed from the backend.
    RecordingPhase.RECORDING: {RecordingPhase.PROCESSING, RecordingPhase.IDLE},
    RecordingPhase.PROCESSING: {RecordingPhase.IDLE},
    RecordingPhase.ERROR: {RecordingPhase.IDLE},
}


@dataclass(frozen=True)
class TransitionEvent:
    source: RecordingPhase
    target: RecordingPhase


class InvalidTransitionError(RuntimeError):
    def __init__(self, source: RecordingPhase, target: RecordingPhase):
        super().__init__(f"Invalid recording phase transition: {source.value} -> {target.value}")
        self.source = source
        self.target = target


class RecordingStateMachine:
    """Small deterministic state machine for the recording session lifecycle."""

    def __init__(self, initial_phase: RecordingPhase = RecordingPhase.IDLE):
        self._phase = initial_phase
        self._history: list[TransitionEvent] = []

    @property
    def phase(self) -> RecordingPhase:
        return self._phase

    @property
    def history(self) -> tuple[TransitionEvent, ...]:
        return tuple(self._history)

    def can_transition(self, target: RecordingPhase) -> bool:
        if target == self._phase:
            return True
        return target in _VALID_TRANSITIONS.get(self._phase, set())

    def transition(self, target: RecordingPhase) -> TransitionEvent | None:
        if target == self._phase:
            return None
        if target not in _VALID_TRANSITIONS.get(self._phase, set()):
            raise InvalidTransitionError(self._phase, target)
        event = TransitionEvent(source=self._phase, target=target)
        self._phase = target
        self._history.append(event)
        return event

    def reset(self) -> None:
        self._phase = RecordingPhase.IDLE
        self._history.clear()
