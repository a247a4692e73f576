"""Gate evaluation: decides whether a gate clears, waits, or is rejected.

Behaviour by effective approval type
------------------------------------
human        waits for an explicit approve / reject, except under autonomous
             autonomy where it clears at once (the event is flagged as a
             notification so an operator still sees it).
conditional  clears when its named predicate holds over the run state,
             otherwise waits until re-evaluation finds it true or an operator
             forces a decision.
automated    asks the step runner's ``check_gate``; pass clears, fail rejects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from core.event_log import EventAction, LogEvent, LogLevel
from core.execution_state import ExecutionState
from core.logging_utils import log_json
from core.loop_definition import DEFAULT_CONDITION, Gate
from core.phases import ApprovalType, Autonomy, GateStatus, StepStatus
from core.step_runner import GateCheck, StepRunner

ConditionPredicate = Callable[[ExecutionState, Gate], bool]


class GateVerdict(str, Enum):
    CLEAR = "clear"
    WAIT = "wait"
    REJECT = "reject"


@dataclass(frozen=True)
class GateEvaluation:
    verdict: GateVerdict
    detail: str = ""
    approved_by: Optional[str] = None
    notification: bool = False


def phase_executed(state: ExecutionState, gate: Gate) -> bool:
    """True when the gate's phase ran at least one step that was not skipped."""
    pi = state.definition.phase_index(gate.after_phase)
    if pi is None:
        return False
    return any(state.step_status[key] is StepStatus.COMPLETED for key in state.phase_steps(pi))


def phase_fully_completed(state: ExecutionState, gate: Gate) -> bool:
    """True when every step of the gate's phase completed (none skipped)."""
    pi = state.definition.phase_index(gate.after_phase)
    if pi is None:
        return False
    return all(state.step_status[key] is StepStatus.COMPLETED for key in state.phase_steps(pi))


BUILTIN_CONDITIONS: Dict[str, ConditionPredicate] = {
    DEFAULT_CONDITION: phase_executed,
    "phase_fully_completed": phase_fully_completed,
}


class GateEvaluator:
    """Evaluates gates for one run and records the resulting gate events."""

    def __init__(self, runner: StepRunner, conditions: Optional[Dict[str, ConditionPredicate]] = None):
        self.runner = runner
        self.conditions: Dict[str, ConditionPredicate] = dict(BUILTIN_CONDITIONS)
        if conditions:
            self.conditions.update(conditions)

    def register_condition(self, name: str, predicate: ConditionPredicate) -> None:
        self.conditions[name] = predicate

    # ── Evaluation ───────────────────────────────────────────────────────────

    def _condition_holds(self, state: ExecutionState, gate: Gate) -> bool:
        predicate = self.conditions.get(gate.condition)
        if predicate is None:
            log_json("WARN", "gate_condition_unknown", run=state.run_id,
                     details={"gate": gate.id, "condition": gate.condition})
            return False
        return bool(predicate(state, gate))

    def _run_check(self, state: ExecutionState, gate: Gate) -> GateCheck:
        try:
            return self.runner.check_gate(gate, state.snapshot())
        except Exception as exc:
            # A crashing check is a failed check; the rejection records why.
            log_json("WARN", "gate_check_raised", run=state.run_id,
                     details={"gate": gate.id, "error": str(exc)})
            return GateCheck(False, f"check raised {type(exc).__name__}: {exc}")

    def evaluate(self, gate: Gate, state: ExecutionState) -> Optional[GateEvaluation]:
        """Evaluate a Pending, enabled gate. Returns None when there is nothing to decide."""
        if not state.gate_enabled.get(gate.id, True):
            return None
        if state.gate_status[gate.id] is not GateStatus.PENDING:
            return None

        approval = state.effective_approval(gate)
        if approval is ApprovalType.HUMAN:
            if state.autonomy is Autonomy.AUTONOMOUS:
                return GateEvaluation(GateVerdict.CLEAR, "auto-approved under autonomous autonomy",
                                      approved_by="autonomy", notification=True)
            return GateEvaluation(GateVerdict.WAIT, "awaiting human approval")
        if approval is ApprovalType.CONDITIONAL:
            if self._condition_holds(state, gate):
                return GateEvaluation(GateVerdict.CLEAR, f"condition '{gate.condition}' satisfied",
                                      approved_by="condition")
            return GateEvaluation(GateVerdict.WAIT, f"condition '{gate.condition}' not satisfied")
        check = self._run_check(state, gate)
        if check.passed:
            return GateEvaluation(GateVerdict.CLEAR, check.detail, approved_by="automated-check")
        return GateEvaluation(GateVerdict.REJECT, check.detail or "automated check failed")

    def would_block(self, gate: Gate, state: ExecutionState) -> bool:
        """Predict, without side effects, whether completing the gate's phase leaves it holding.

        Automated gates always count as blocking here: their check runs only on
        an explicit phase completion.
        """
        if not state.gate_enabled.get(gate.id, True):
            return False
        status = state.gate_status[gate.id]
        if status is GateStatus.CLEARED:
            return False
        if status is GateStatus.REJECTED:
            return gate.required
        approval = state.effective_approval(gate)
        if approval is ApprovalType.HUMAN:
            return gate.required and state.autonomy is not Autonomy.AUTONOMOUS
        if approval is ApprovalType.CONDITIONAL:
            return not self._condition_holds(state, gate)
        return True

    def auto_decidable(self, gate: Gate, state: ExecutionState) -> bool:
        """True when re-evaluating *gate* may change it without operator input."""
        approval = state.effective_approval(gate)
        if approval is ApprovalType.HUMAN:
            return state.autonomy is Autonomy.AUTONOMOUS
        return True

    # ── Recording ────────────────────────────────────────────────────────────

    def record(self, state: ExecutionState, gate: Gate, evaluation: GateEvaluation) -> LogEvent:
        pi = state.definition.phase_index(gate.after_phase)
        if evaluation.verdict is GateVerdict.CLEAR:
            return state.record(
                EventAction.GATE_CLEARED,
                f"Gate approved: {gate.name}",
                phase_index=pi,
                gate_id=gate.id,
                details={
                    "approved_by": evaluation.approved_by,
                    "feedback": evaluation.detail or None,
                    "notification": evaluation.notification,
                },
            )
        if evaluation.verdict is GateVerdict.REJECT:
            return state.record(
                EventAction.GATE_REJECTED,
                f"Gate rejected: {gate.name}: {evaluation.detail}",
                phase_index=pi,
                gate_id=gate.id,
                level=LogLevel.WARN,
                details={"feedback": evaluation.detail, "rejected_by": "automated-check"},
            )
        return state.record(
            EventAction.GATE_PENDING,
            f"Waiting for gate approval: {gate.name}",
            phase_index=pi,
            gate_id=gate.id,
            level=LogLevel.WARN if gate.required else LogLevel.INFO,
            details={"detail": evaluation.detail, "deliverables": list(gate.deliverables)},
        )

    def approve(self, state: ExecutionState, gate: Gate, approved_by: Optional[str],
                feedback: Optional[str]) -> LogEvent:
        return state.record(
            EventAction.GATE_CLEARED,
            f"Gate approved: {gate.name}",
            phase_index=state.definition.phase_index(gate.after_phase),
            gate_id=gate.id,
            details={"approved_by": approved_by or "operator", "feedback": feedback,
                     "notification": False},
        )

    def reject(self, state: ExecutionState, gate: Gate, reason: str,
               rejected_by: Optional[str]) -> LogEvent:
        return state.record(
            EventAction.GATE_REJECTED,
            f"Gate rejected: {gate.name}: {reason}",
            phase_index=state.definition.phase_index(gate.after_phase),
            gate_id=gate.id,
            level=LogLevel.WARN,
            details={"feedback": reason, "rejected_by": rejected_by or "operator"},
        )
