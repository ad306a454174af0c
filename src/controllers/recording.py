from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from loguru import logger

from src.bridge.commands import BackendCommands
from src.clipboard import Clipboard
from src.config import Config
from src.core.error_taxonomy import (
    BackendRequestFailed,
    ErrorCategory,
    PreconditionNotMet,
    user_message_for_category,
)
from src.core.event_contracts import RecordingStateChanged
from src.core.logging_setup import emit_event
from src.core.state_machine import RecordingPhase, RecordingStateMachine, RecordingTrigger
from src.runtime.interval_timer import IntervalTimer
from src.runtime.race import race_with_timeout
from src.state import SESSION, SessionView, Signal, SignalKind, StateStore

_log = logger.bind(component="recording")

SessionFinishedHook = Callable[[], Awaitable[Any]]


class StopOutcome(str, Enum):
    SUCCESS = "success"
    EMPTY = "empty"
    FAILED = "failed"
    TIMEOUT = "timeout"


class RecordingSessionController:
    """Owns the recording phase for both manual and hotkey sessions.

    Manual sessions are started and stopped here. Hotkey sessions are only
    mirrored from `recording-state-changed` events. Every manual stop resolves
    to IDLE and asks the timeline to refresh, whatever the backend does.
    """

    def __init__(
        self,
        store: StateStore,
        commands: BackendCommands,
        clipboard: Clipboard,
        *,
        on_session_finished: Optional[SessionFinishedHook] = None,
        stop_timeout_secs: Optional[float] = None,
        max_recording_secs: Optional[float] = None,
        tick_secs: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._store = store
        self._writer = store.claim(SESSION, owner="recording_controller")
        self._commands = commands
        self._clipboard = clipboard
        self._on_session_finished = on_session_finished
        self._stop_timeout = stop_timeout_secs if stop_timeout_secs is not None else Config.STOP_TIMEOUT_SEC
        self._max_recording = max_recording_secs if max_recording_secs is not None else Config.MAX_RECORDING_SEC
        self._tick_secs = tick_secs if tick_secs is not None else Config.ELAPSED_TICK_SEC
        self._clock = clock or time.monotonic

        self._machine = RecordingStateMachine()
        self._tick: Optional[IntervalTimer] = None
        self._start_pending = False
        self._forced_stop_issued = False
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> SessionView:
        return self._writer.value

    @property
    def history(self):
        return self._machine.history

    # Manual sessions

    def _check_start_preconditions(self) -> None:
        if self._start_pending or self._machine.phase is not RecordingPhase.IDLE:
            raise PreconditionNotMet("A recording is already in progress")
        if not self._store.permissions.microphone:
            raise PreconditionNotMet("Microphone permission has not been granted")
        if not self._store.models.is_downloaded_currently:
            raise PreconditionNotMet("The selected transcription model is not downloaded")

    async def start_manual_recording(self) -> SessionView:
        try:
            self._check_start_preconditions()
        except PreconditionNotMet as exc:
            emit_event(
                _log,
                f"Manual start refused: {exc}",
                event="recording_start_refused",
                error_category=exc.category.value,
            )
            raise

        self._start_pending = True
        try:
            result = await self._commands.start_recording()
        finally:
            self._start_pending = False
        if not result.is_ok:
            emit_event(
                _log,
                f"Backend refused manual start: {result.error}",
                level="WARNING",
                event="recording_start_failed",
                error_category=ErrorCategory.BACKEND_REQUEST_FAILED.value,
            )
            raise BackendRequestFailed(result.error or "", command="start_recording")

        # Start events are ignored while the request is pending, so the phase is still IDLE.
        self._begin_session(RecordingTrigger.MANUAL)
        return self.state

    async def stop_manual_recording(self) -> StopOutcome:
        view = self.state
        if view.phase is not RecordingPhase.RECORDING or view.trigger is not RecordingTrigger.MANUAL:
            raise PreconditionNotMet("No manual recording is in progress")

        session_id = view.session_id or ""
        self._stop_tick()
        # Optimistic: show processing before the backend confirms anything.
        self._machine.transition(RecordingPhase.PROCESSING)
        self._writer.update(phase=RecordingPhase.PROCESSING)
        emit_event(
            _log,
            "Stopping manual recording",
            event="recording_stop_requested",
            session_id=session_id,
            phase=RecordingPhase.PROCESSING.value,
        )

        started = self._clock()
        outcome = StopOutcome.FAILED
        text = ""
        detail = ""
        try:
            race = await race_with_timeout(
                self._commands.stop_recording(),
                self._stop_timeout,
                label=f"stop_recording:{session_id[-6:]}",
                on_late=self._on_late_stop_result,
            )
            if race.timed_out:
                outcome = StopOutcome.TIMEOUT
            elif race.value is None or not race.value.is_ok:
                detail = race.value.error if race.value is not None else "no result"
                outcome = StopOutcome.FAILED
            else:
                text = race.value.data if isinstance(race.value.data, str) else ""
                outcome = StopOutcome.SUCCESS if text.strip() else StopOutcome.EMPTY
        except Exception as exc:
            detail = str(exc)
            outcome = StopOutcome.FAILED
        finally:
            # Every path, cancellation included, lands back in IDLE.
            self._finish_session(outcome)

        emit_event(
            _log,
            f"Manual recording finished: {outcome.value}" + (f" ({detail})" if detail else ""),
            level="INFO" if outcome in (StopOutcome.SUCCESS, StopOutcome.EMPTY) else "WARNING",
            event="recording_finished",
            session_id=session_id,
            trigger=RecordingTrigger.MANUAL.value,
            outcome=outcome.value,
            duration_ms=round((self._clock() - started) * 1000, 1),
        )
        self._request_timeline_refresh()
        self._signal_outcome(outcome, text)
        return outcome

    def _signal_outcome(self, outcome: StopOutcome, text: str) -> None:
        if outcome is StopOutcome.SUCCESS:
            if self._clipboard.copy(text):
                self._store.emit(Signal(SignalKind.SUCCESS, "Transcribed and copied to clipboard"))
            else:
                self._store.emit(Signal(SignalKind.ERROR, "Transcribed, but the clipboard is unavailable"))
        elif outcome is StopOutcome.EMPTY:
            self._store.emit(Signal(SignalKind.INFO, "No speech detected"))
        elif outcome is StopOutcome.TIMEOUT:
            category = ErrorCategory.TRANSCRIPTION_TIMEOUT
            self._store.emit(Signal(SignalKind.ERROR, user_message_for_category(category), category.value))
        else:
            category = ErrorCategory.BACKEND_REQUEST_FAILED
            self._store.emit(Signal(SignalKind.ERROR, user_message_for_category(category), category.value))

    def _on_late_stop_result(self, _value: Any, _exc: Optional[BaseException]) -> None:
        # Never applied to the current session; the refresh surfaces any transcript it produced.
        self._request_timeline_refresh()

    # Hotkey sessions

    def on_recording_state_changed(self, event: RecordingStateChanged) -> None:
        view = self.state
        if event.is_recording:
            if view.phase is RecordingPhase.IDLE and not self._start_pending:
                self._begin_session(RecordingTrigger.HOTKEY)
            else:
                _log.debug(f"Ignoring recording start event in phase {view.phase.value}")
            return

        if view.phase is not RecordingPhase.RECORDING:
            # PROCESSING belongs to the manual stop sequence; IDLE means a duplicate.
            _log.debug(f"Ignoring recording stop event in phase {view.phase.value}")
            return

        if view.is_manual:
            _log.info("Backend ended a manually started recording; clearing manual flag")
        self._stop_tick()
        self._machine.transition(RecordingPhase.IDLE)
        self._writer.update(
            phase=RecordingPhase.IDLE,
            trigger=None,
            started_at=None,
            elapsed_seconds=0.0,
            is_manual=False,
            last_outcome="backend_stopped",
        )
        emit_event(
            _log,
            "Recording stopped by backend",
            event="recording_finished",
            session_id=view.session_id,
            trigger=view.trigger.value if view.trigger else None,
            outcome="backend_stopped",
        )
        self._request_timeline_refresh()

    # Elapsed tick and ceiling

    def _begin_session(self, trigger: RecordingTrigger) -> None:
        self._machine.transition(RecordingPhase.RECORDING)
        self._forced_stop_issued = False
        session_id = uuid4().hex
        self._writer.update(
            phase=RecordingPhase.RECORDING,
            trigger=trigger,
            session_id=session_id,
            started_at=self._clock(),
            elapsed_seconds=0.0,
            is_manual=trigger is RecordingTrigger.MANUAL,
            last_outcome=None,
        )
        emit_event(
            _log,
            f"Recording started ({trigger.value})",
            event="recording_started",
            session_id=session_id,
            trigger=trigger.value,
            phase=RecordingPhase.RECORDING.value,
        )
        self._start_tick()

    def _start_tick(self) -> None:
        self._stop_tick()
        self._tick = IntervalTimer(
            loop=asyncio.get_running_loop(),
            period_seconds=self._tick_secs,
            callback=self._on_tick,
            name="elapsed_tick",
        )
        self._tick.start()

    def _stop_tick(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None

    def _on_tick(self) -> None:
        view = self.state
        if view.phase is not RecordingPhase.RECORDING or view.started_at is None:
            return
        self._writer.update(elapsed_seconds=max(0.0, self._clock() - view.started_at))
        self.enforce_recording_ceiling()

    def enforce_recording_ceiling(self) -> bool:
        """Force the stop sequence once when a manual session outlives the ceiling."""
        view = self.state
        if view.phase is not RecordingPhase.RECORDING or view.trigger is not RecordingTrigger.MANUAL:
            return False
        if view.started_at is None or self._clock() - view.started_at <= self._max_recording:
            return False
        if self._forced_stop_issued:
            return False
        self._forced_stop_issued = True
        emit_event(
            _log,
            f"Recording exceeded {self._max_recording:.0f}s; forcing stop",
            level="WARNING",
            event="recording_forced_stop",
            session_id=view.session_id,
            trigger=RecordingTrigger.MANUAL.value,
        )
        self._spawn(self._forced_stop(), name="forced_stop")
        return True

    async def _forced_stop(self) -> Optional[StopOutcome]:
        try:
            return await self.stop_manual_recording()
        except PreconditionNotMet:
            # The user stopped the session first.
            _log.debug("Forced stop skipped; session already stopping")
            return None

    # Completion plumbing

    def _finish_session(self, outcome: StopOutcome) -> None:
        self._stop_tick()
        if self._machine.phase is not RecordingPhase.IDLE:
            self._machine.transition(RecordingPhase.IDLE)
        self._writer.update(
            phase=RecordingPhase.IDLE,
            trigger=None,
            started_at=None,
            elapsed_seconds=0.0,
            is_manual=False,
            last_outcome=outcome.value,
        )

    def _request_timeline_refresh(self) -> None:
        if self._on_session_finished is None:
            return
        self._spawn(self._on_session_finished(), name="timeline_refresh")

    def _spawn(self, coro, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error(f"Background task {task.get_name()} failed: {exc}")

    async def drain(self) -> None:
        """Wait for forced stops and timeline refreshes already scheduled."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def shutdown(self) -> None:
        self._stop_tick()
        for task in list(self._background):
            task.cancel()

    async def aclose(self) -> None:
        tasks = list(self._background)
        self.shutdown()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
