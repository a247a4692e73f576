"""
Playback controller: timer-driven auto-advance over a LoopRun.

Playback is a decorator over the synchronous control surface. Each ``tick``
performs exactly one transition through the run's public methods, under the
run's mutation lock, so a timer tick can never interleave with an externally
issued transition. Stopping the timer never touches run state.

Tick order within the current phase:
  1. an Active step is handed to the StepRunner and resolved with its outcome
  2. otherwise the first Pending step is started
  3. otherwise the phase is completed
  4. a completed phase is advanced (or the run finished on the last phase)
A Blocked run only gets its gates re-evaluated; a finished run stops the timer.
"""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from core.event_log import LogEvent
from core.exceptions import LoopEngineError
from core.logging_utils import log_json
from core.phases import RunStatus, StepStatus
from core.step_runner import OutcomeKind, StepOutcome, StepRef

if TYPE_CHECKING:
    from core.loop_engine import LoopRun

DEFAULT_INTERVAL_MS = 800


class PlaybackController:
    """Auto-advances one run on a background timer thread."""

    def __init__(self, run: "LoopRun", interval_ms: int = DEFAULT_INTERVAL_MS):
        self.run = run
        self._interval_ms = self._check_interval(interval_ms)
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._state_lock = threading.Lock()
        self.ticks = 0

    @staticmethod
    def _check_interval(interval_ms) -> int:
        if isinstance(interval_ms, bool):
            raise ValueError(f"interval_ms must be a positive integer, got {interval_ms!r}")
        try:
            value = int(interval_ms)
        except (TypeError, ValueError):
            raise ValueError(f"interval_ms must be a positive integer, got {interval_ms!r}")
        if value <= 0:
            raise ValueError(f"interval_ms must be a positive integer, got {interval_ms!r}")
        return value

    # ── Timer control ────────────────────────────────────────────────────────

    @property
    def playing(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop.is_set()

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    def play(self) -> bool:
        """Start the timer. Returns False when already playing or the run is finished."""
        with self._state_lock:
            if self.playing:
                return False
            if self.run.state.is_terminal:
                log_json("INFO", "playback_not_started", run=self.run.run_id,
                         details={"reason": f"run is {self.run.state.run_status.value}"})
                return False
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._loop, args=(self._stop,), name=f"playback-{self.run.run_id[:8]}", daemon=True
            )
            self._thread.start()
        log_json("INFO", "playback_started", run=self.run.run_id,
                 details={"interval_ms": self._interval_ms})
        return True

    def pause(self) -> bool:
        """Stop the timer. Returns False when it was not running."""
        with self._state_lock:
            thread, self._thread = self._thread, None
            was_playing = thread is not None and thread.is_alive() and not self._stop.is_set()
            self._stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(self._interval_ms / 1000.0, 0.1) + 5.0)
        if was_playing:
            log_json("INFO", "playback_paused", run=self.run.run_id, details={"ticks": self.ticks})
        return was_playing

    def set_speed(self, interval_ms: int) -> int:
        self._interval_ms = self._check_interval(interval_ms)
        log_json("INFO", "playback_speed_changed", run=self.run.run_id,
                 details={"interval_ms": self._interval_ms})
        return self._interval_ms

    def reset(self):
        """Stop the timer and replace the run's state with a fresh one."""
        self.pause()
        self.ticks = 0
        return self.run.reset()

    def status(self) -> Dict[str, Any]:
        return {"playing": self.playing, "interval_ms": self._interval_ms, "ticks": self.ticks}

    def _loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._interval_ms / 1000.0):
            try:
                self.tick()
            except LoopEngineError as exc:
                log_json("WARN", "playback_tick_rejected", run=self.run.run_id, details={"error": str(exc)})
            except Exception as exc:
                log_json("ERROR", "playback_tick_failed", run=self.run.run_id,
                         details={"error": str(exc), "type": type(exc).__name__})
                break
            if self.run.state.is_terminal:
                log_json("INFO", "playback_finished", run=self.run.run_id,
                         details={"status": self.run.state.run_status.value, "ticks": self.ticks})
                break
        stop.set()

    # ── One step ─────────────────────────────────────────────────────────────

    def tick(self) -> List[LogEvent]:
        """Perform exactly one eligible transition. Returns the events it appended."""
        run = self.run
        with run.lock:
            state = run.state
            if state.is_terminal:
                return []
            self.ticks += 1
            if state.run_status is RunStatus.BLOCKED:
                return list(run.refresh_gates().events)

            pi = state.current_phase_index
            if not state.phase_done[pi]:
                keys = state.phase_steps(pi)
                active = next((k for k in keys if state.step_status[k] is StepStatus.ACTIVE), None)
                if active is not None:
                    return self._resolve_step(active)
                pending = next((k for k in keys if state.step_status[k] is StepStatus.PENDING), None)
                if pending is not None:
                    return list(run.start_step(pending).events)
                return list(run.complete_phase().events)

            if state.holding_gates(pi):
                return list(run.refresh_gates().events)
            return list(run.advance_phase().events)

    def _resolve_step(self, key) -> List[LogEvent]:
        run = self.run
        state = run.state
        phase = state.definition.phases[key[0]]
        skill = phase.skills[key[1]]
        ref = StepRef(key[0], key[1], phase.name, skill.skill_id, skill.required)
        try:
            outcome = run.runner.run_step(ref, state.snapshot())
        except Exception as exc:
            log_json("WARN", "step_runner_raised", run=run.run_id,
                     details={"skill": skill.skill_id, "error": str(exc)})
            outcome = StepOutcome.failed(f"runner raised {type(exc).__name__}: {exc}")

        if outcome.kind is OutcomeKind.SUCCEEDED:
            return list(run.complete_step(key, duration_ms=outcome.duration_ms).events)
        if outcome.kind is OutcomeKind.SKIPPED:
            if not (phase.required and skill.required):
                return list(run.skip_step(key, reason=outcome.reason).events)
            return list(run.fail_step(key, reason=f"required skill reported skipped: {outcome.reason}").events)
        return list(run.fail_step(key, reason=outcome.reason or "step failed").events)
