"""Tests for GateEvaluator (core/gate_evaluator.py) against bare ExecutionState objects."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from core.event_log import EventAction
from core.execution_state import ExecutionState
from core.gate_evaluator import GateEvaluator, GateVerdict, phase_executed, phase_fully_completed
from core.loop_definition import Gate, LoopDefinition
from core.phases import ApprovalType, Autonomy, GateStatus, PhaseTag, StepStatus
from core.step_runner import SimulatedStepRunner
from tests.loop_test_utils import optional_phase_doc, three_phase_doc


def _state(doc) -> ExecutionState:
    return ExecutionState(LoopDefinition.from_dict(doc), "run-test")


@pytest.fixture
def evaluator():
    return GateEvaluator(SimulatedStepRunner(failing_gates=["bad-check"]))


def _gate_doc(**gate):
    base = {"id": "g", "name": "G", "afterPhase": "INIT"}
    base.update(gate)
    return three_phase_doc(gates=[base])


class TestEvaluate:
    def test_human_waits(self, evaluator):
        state = _state(_gate_doc())
        result = evaluator.evaluate(state.definition.gate("g"), state)
        assert result.verdict is GateVerdict.WAIT

    def test_human_clears_under_autonomous(self, evaluator):
        state = _state(_gate_doc())
        state.autonomy = Autonomy.AUTONOMOUS
        result = evaluator.evaluate(state.definition.gate("g"), state)
        assert result.verdict is GateVerdict.CLEAR
        assert result.notification is True

    def test_semi_autonomous_still_waits(self, evaluator):
        state = _state(_gate_doc())
        state.autonomy = Autonomy.SEMI_AUTONOMOUS
        assert evaluator.evaluate(state.definition.gate("g"), state).verdict is GateVerdict.WAIT

    def test_automated_pass_and_fail(self, evaluator):
        state = _state(three_phase_doc(gates=[
            {"id": "ok-check", "afterPhase": "INIT", "approvalType": "automated"},
            {"id": "bad-check", "afterPhase": "INIT", "approvalType": "automated"},
        ]))
        d = state.definition
        assert evaluator.evaluate(d.gate("ok-check"), state).verdict is GateVerdict.CLEAR
        failed = evaluator.evaluate(d.gate("bad-check"), state)
        assert failed.verdict is GateVerdict.REJECT
        assert "bad-check" in failed.detail

    def test_conditional_follows_predicate(self, evaluator):
        state = _state(_gate_doc(approvalType="conditional"))
        gate = state.definition.gate("g")
        assert evaluator.evaluate(gate, state).verdict is GateVerdict.WAIT
        state.step_status[(0, 0)] = StepStatus.COMPLETED
        assert evaluator.evaluate(gate, state).verdict is GateVerdict.CLEAR

    def test_unknown_condition_waits(self, evaluator):
        state = _state(_gate_doc(approvalType="conditional", condition="moon_is_full"))
        state.step_status[(0, 0)] = StepStatus.COMPLETED
        assert evaluator.evaluate(state.definition.gate("g"), state).verdict is GateVerdict.WAIT

    def test_registered_condition(self, evaluator):
        state = _state(_gate_doc(approvalType="conditional", condition="always"))
        evaluator.register_condition("always", lambda s, g: True)
        assert evaluator.evaluate(state.definition.gate("g"), state).verdict is GateVerdict.CLEAR

    def test_disabled_or_decided_gate_has_nothing_to_decide(self, evaluator):
        state = _state(_gate_doc())
        gate = state.definition.gate("g")
        state.gate_enabled["g"] = False
        assert evaluator.evaluate(gate, state) is None
        state.gate_enabled["g"] = True
        state.gate_status["g"] = GateStatus.CLEARED
        assert evaluator.evaluate(gate, state) is None

    def test_override_changes_behaviour(self, evaluator):
        state = _state(_gate_doc())
        state.gate_override["g"] = ApprovalType.AUTOMATED
        assert evaluator.evaluate(state.definition.gate("g"), state).verdict is GateVerdict.CLEAR


class TestWouldBlock:
    def test_optional_human_gate_does_not_block(self, evaluator):
        state = _state(_gate_doc(required=False))
        assert evaluator.would_block(state.definition.gate("g"), state) is False

    def test_required_human_gate_blocks(self, evaluator):
        state = _state(_gate_doc())
        assert evaluator.would_block(state.definition.gate("g"), state) is True

    def test_automated_always_blocks_until_decided(self, evaluator):
        state = _state(_gate_doc(approvalType="automated", required=False))
        gate = state.definition.gate("g")
        assert evaluator.would_block(gate, state) is True
        state.gate_status["g"] = GateStatus.CLEARED
        assert evaluator.would_block(gate, state) is False

    def test_rejected_optional_gate_does_not_block(self, evaluator):
        state = _state(_gate_doc(required=False))
        state.gate_status["g"] = GateStatus.REJECTED
        assert evaluator.would_block(state.definition.gate("g"), state) is False


class TestConditions:
    def test_phase_executed_vs_fully_completed(self):
        state = _state(optional_phase_doc())
        gate = state.definition.gates[0]  # after SCAFFOLD
        assert not phase_executed(state, gate)
        assert not phase_fully_completed(state, gate)
        state.step_status[(1, 0)] = StepStatus.SKIPPED
        assert not phase_executed(state, gate)
        state.step_status[(1, 0)] = StepStatus.COMPLETED
        assert phase_executed(state, gate)
        assert phase_fully_completed(state, gate)

    def test_fully_completed_rejects_partial_skip(self):
        state = _state(optional_phase_doc())
        init_gate = Gate(id="x", name="x", after_phase=PhaseTag.INIT)
        state.step_status[(0, 0)] = StepStatus.COMPLETED
        state.step_status[(0, 1)] = StepStatus.SKIPPED
        assert phase_executed(state, init_gate)
        assert not phase_fully_completed(state, init_gate)


class TestRecording:
    def test_record_clear_applies_to_state(self, evaluator):
        state = _state(_gate_doc())
        gate = state.definition.gate("g")
        event = evaluator.approve(state, gate, "lead", "looks good")
        assert event.action is EventAction.GATE_CLEARED
        assert state.gate_status["g"] is GateStatus.CLEARED
        assert state.gate_decisions["g"].approved_by == "lead"

    def test_reject_tracks_rejection(self, evaluator):
        state = _state(_gate_doc())
        gate = state.definition.gate("g")
        evaluator.reject(state, gate, "missing tests", None)
        assert state.gate_status["g"] is GateStatus.REJECTED
        rejection = state.rejections[0]
        assert (rejection.gate_id, rejection.reason, rejection.required) == ("g", "missing tests", True)
        assert state.gate_decisions["g"].approved_by == "operator"
