"""Tests for PlaybackController (core/playback.py)."""
from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from core.event_log import EventAction
from core.phases import RunStatus, StepStatus
from core.step_runner import SimulatedStepRunner, StepOutcome
from tests.loop_test_utils import make_engine, optional_phase_doc, three_phase_doc


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(tmp_path, playback_interval_ms=5)
    yield engine
    engine.shutdown()


def _wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _tick_actions(run):
    return [e.action for e in run.tick().events]


class TestTickOrder:
    def test_manual_ticks_walk_the_loop(self, engine):
        run = engine.start(three_phase_doc())
        assert _tick_actions(run) == [EventAction.STEP_STARTED]
        assert _tick_actions(run) == [EventAction.STEP_COMPLETED]
        assert _tick_actions(run) == [EventAction.PHASE_COMPLETED, EventAction.GATE_PENDING,
                                      EventAction.RUN_BLOCKED]
        # A human gate cannot be cleared by the timer.
        assert _tick_actions(run) == []
        assert run.snapshot().status is RunStatus.BLOCKED

        run.approve_gate("spec-gate")
        assert _tick_actions(run) == [EventAction.STEP_STARTED]
        assert _tick_actions(run) == [EventAction.STEP_COMPLETED, EventAction.PHASE_COMPLETED,
                                      EventAction.PHASE_ADVANCED]
        assert _tick_actions(run) == [EventAction.STEP_STARTED]
        assert _tick_actions(run) == [EventAction.STEP_COMPLETED, EventAction.PHASE_COMPLETED]
        assert _tick_actions(run) == [EventAction.RUN_COMPLETED]
        assert _tick_actions(run) == []
        assert run.playback.ticks == 9

    def test_runner_skip_on_optional_step(self, tmp_path):
        engine = make_engine(tmp_path, runner=SimulatedStepRunner(skipped_steps=["research"]))
        run = engine.start(optional_phase_doc())
        for _ in range(4):
            run.tick()
        snap = run.snapshot()
        assert snap.step("research").status is StepStatus.SKIPPED
        assert snap.current_phase_index == 1

    def test_runner_skip_on_required_step_fails(self, tmp_path):
        engine = make_engine(tmp_path, runner=SimulatedStepRunner(skipped_steps=["spec"]))
        run = engine.start(three_phase_doc())
        run.tick()
        snap = run.tick().snapshot
        assert snap.status is RunStatus.FAILED
        assert "required skill reported skipped" in snap.failure_reason

    def test_runner_failure(self, tmp_path):
        engine = make_engine(tmp_path, runner=SimulatedStepRunner(failing_steps=["spec"]))
        run = engine.start(three_phase_doc())
        run.tick()
        assert run.tick().snapshot.status is RunStatus.FAILED

    def test_runner_exception_becomes_failure(self, tmp_path):
        class ExplodingRunner(SimulatedStepRunner):
            def run_step(self, step, snapshot):
                raise RuntimeError("kaboom")

        engine = make_engine(tmp_path, runner=ExplodingRunner())
        run = engine.start(three_phase_doc())
        run.tick()
        snap = run.tick().snapshot
        assert snap.status is RunStatus.FAILED
        assert "kaboom" in snap.failure_reason

    def test_runner_duration_is_recorded(self, tmp_path):
        class TimedRunner(SimulatedStepRunner):
            def run_step(self, step, snapshot):
                return StepOutcome.succeeded(duration_ms=42.0)

        engine = make_engine(tmp_path, runner=TimedRunner())
        run = engine.start(three_phase_doc())
        run.tick()
        completed = run.tick().events[0]
        assert completed.duration_ms == 42.0


class TestTimer:
    def test_play_runs_to_completion(self, engine):
        run = engine.start(three_phase_doc(), autonomy="autonomous")
        assert run.playback.play() is True
        assert _wait_for(lambda: run.snapshot().status is RunStatus.COMPLETED)
        assert _wait_for(lambda: not run.playback.playing)
        assert run.snapshot().progress == 100.0

    def test_external_approval_while_playing(self, engine):
        run = engine.start(three_phase_doc())
        run.playback.play()
        assert _wait_for(lambda: run.snapshot().status is RunStatus.BLOCKED)
        run.approve_gate("spec-gate", approved_by="lead")
        assert _wait_for(lambda: run.snapshot().status is RunStatus.COMPLETED)

    def test_pause_stops_progress(self, engine):
        run = engine.start(three_phase_doc())
        run.playback.set_speed(60_000)
        assert run.playback.play() is True
        assert run.playback.play() is False
        assert run.playback.pause() is True
        assert run.playback.pause() is False
        assert run.snapshot().last_seq == 1

    def test_play_on_finished_run(self, engine):
        run = engine.start(three_phase_doc())
        run.abort()
        assert run.playback.play() is False

    @pytest.mark.parametrize("bad", [0, -5, True, "fast", None])
    def test_set_speed_rejects_bad_values(self, engine, bad):
        run = engine.start(three_phase_doc())
        with pytest.raises(ValueError):
            run.playback.set_speed(bad)
        assert run.playback.interval_ms == 5

    def test_reset_pauses_and_restarts(self, engine):
        run = engine.start(three_phase_doc(), autonomy="autonomous")
        run.tick()
        run.tick()
        run.playback.set_speed(60_000)
        run.playback.play()
        result = run.playback.reset()
        assert not run.playback.playing
        assert run.playback.ticks == 0
        assert result.snapshot.progress == 0.0
        assert run.resets == 1
