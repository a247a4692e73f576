"""
Phase/step scheduler: the transition rules of a loop run.

Every public method is one atomic transition. Preconditions are checked
first and a violation raises ``TransitionError`` before anything is
recorded, so a rejected request never changes the state or the log. A
successful transition returns the events it appended.

Phase order is monotonic: the only write to ``current_phase_index`` is a
``phase_advanced`` event moving it forward by one.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from core.event_log import EventAction, LogEvent, LogLevel
from core.exceptions import TransitionError
from core.execution_state import ExecutionState, StepKey
from core.gate_evaluator import GateEvaluator, GateVerdict
from core.logging_utils import log_json
from core.loop_definition import Gate, PhaseSkill
from core.phases import ApprovalType, GateStatus, RunStatus, StepStatus, parse_approval_type

REJECTION_POLICIES = ("terminal", "reopen")

_UNSET: Any = object()


class PhaseScheduler:
    """Applies transitions to one ExecutionState."""

    def __init__(self, state: ExecutionState, gates: GateEvaluator, rejection_policy: str = "terminal"):
        if rejection_policy not in REJECTION_POLICIES:
            raise ValueError(f"rejection_policy must be one of {REJECTION_POLICIES}, got {rejection_policy!r}")
        self.state = state
        self.gates = gates
        self.rejection_policy = rejection_policy

    # -----------------------------------------------------------------------
    # Precondition helpers
    # -----------------------------------------------------------------------

    @property
    def _last_index(self) -> int:
        return len(self.state.definition.phases) - 1

    def _require_not_terminal(self) -> None:
        if self.state.is_terminal:
            raise TransitionError(
                f"Run {self.state.run_id} is {self.state.run_status.value}; no further transitions are accepted."
            )

    def _require_active(self) -> None:
        self._require_not_terminal()
        if self.state.run_status is RunStatus.BLOCKED:
            names = ", ".join(g.id for g in self._blockers()) or "a gate"
            raise TransitionError(f"Run {self.state.run_id} is blocked on {names}.")

    def _require_current(self, phase_idx: int) -> None:
        phases = self.state.definition.phases
        if not 0 <= phase_idx < len(phases):
            raise TransitionError(f"Phase index {phase_idx} out of range (0..{len(phases) - 1}).")
        current = self.state.current_phase_index
        if phase_idx != current:
            raise TransitionError(
                f"Phase {phases[phase_idx].name.value} is not the current phase "
                f"({phases[current].name.value})."
            )
        if self.state.phase_done[phase_idx]:
            raise TransitionError(f"Phase {phases[phase_idx].name.value} is already completed.")

    def _step(self, phase_idx: int, skill_idx: int) -> PhaseSkill:
        self._require_current(phase_idx)
        skills = self.state.definition.phases[phase_idx].skills
        if not 0 <= skill_idx < len(skills):
            raise TransitionError(
                f"Skill index {skill_idx} out of range for phase "
                f"{self.state.definition.phases[phase_idx].name.value}."
            )
        return skills[skill_idx]

    def _require_open_step(self, key: StepKey, skill: PhaseSkill, verb: str) -> None:
        status = self.state.step_status[key]
        if status not in (StepStatus.PENDING, StepStatus.ACTIVE):
            raise TransitionError(f"Cannot {verb} skill '{skill.skill_id}': it is already {status.value}.")

    def _gate(self, gate_id: str) -> Gate:
        gate = self.state.definition.gate(gate_id)
        if gate is None:
            raise TransitionError(f"Unknown gate '{gate_id}'.")
        return gate

    def _blockers(self) -> List[Gate]:
        """Gates that keep the run from moving forward right now."""
        state = self.state
        blockers = [
            g for g in state.definition.gates
            if state.gate_enabled[g.id] and g.required and state.gate_status[g.id] is GateStatus.REJECTED
        ]
        pi = state.current_phase_index
        if state.phase_done[pi]:
            blockers.extend(g for g in state.holding_gates(pi) if g not in blockers)
        return blockers

    def _transition(self) -> int:
        return len(self.state.log)

    def _since(self, mark: int) -> List[LogEvent]:
        return list(self.state.log.since(mark))

    # -----------------------------------------------------------------------
    # Internal sequences (no precondition checks)
    # -----------------------------------------------------------------------

    def _finish_phase(self, phase_idx: int) -> None:
        phase = self.state.definition.phases[phase_idx]
        self.state.record(EventAction.PHASE_COMPLETED, f"Phase {phase.name.value} completed",
                          phase_index=phase_idx)
        self._evaluate_gates(phase_idx, only_auto=False)

    def _evaluate_gates(self, phase_idx: int, only_auto: bool) -> None:
        for gate in self.state.definition.gates_after(phase_idx):
            if self.state.is_terminal:
                return
            if only_auto and not self.gates.auto_decidable(gate, self.state):
                continue
            evaluation = self.gates.evaluate(gate, self.state)
            if evaluation is None:
                continue
            if only_auto and evaluation.verdict is GateVerdict.WAIT:
                continue
            self.gates.record(self.state, gate, evaluation)
            if evaluation.verdict is GateVerdict.REJECT:
                self._on_rejected(gate)

    def _on_rejected(self, gate: Gate) -> None:
        state = self.state
        if not gate.required or not state.gate_enabled[gate.id] or state.is_terminal:
            return
        if state.effective_approval(gate) is ApprovalType.AUTOMATED:
            state.record(EventAction.RUN_FAILED, f"Execution failed: required gate {gate.name} rejected",
                         phase_index=state.definition.phase_index(gate.after_phase),
                         gate_id=gate.id, level=LogLevel.ERROR,
                         details={"reason": f"gate {gate.id} rejected"})
        elif state.run_status is RunStatus.ACTIVE:
            state.record(EventAction.RUN_BLOCKED, f"Execution blocked: gate {gate.name} rejected",
                         gate_id=gate.id, level=LogLevel.WARN, details={"gates": [gate.id]})

    def _advance(self, from_idx: int) -> None:
        to_idx = from_idx + 1
        phase = self.state.definition.phases[to_idx]
        self.state.record(EventAction.PHASE_ADVANCED, f"Advancing to phase {phase.name.value}",
                          phase_index=to_idx, details={"from_index": from_idx, "to_index": to_idx})

    def _sync_run_status(self, advance: bool = True) -> None:
        """Block an Active run that has blockers; unblock (and advance) a Blocked run that has none."""
        state = self.state
        if state.is_terminal:
            return
        blockers = self._blockers()
        if state.run_status is RunStatus.ACTIVE and blockers:
            state.record(EventAction.RUN_BLOCKED,
                         "Waiting for gate approval: " + ", ".join(g.name for g in blockers),
                         level=LogLevel.WARN, details={"gates": [g.id for g in blockers]})
        elif state.run_status is RunStatus.BLOCKED and not blockers:
            state.record(EventAction.RUN_UNBLOCKED, "Execution unblocked")
            pi = state.current_phase_index
            if advance and state.phase_done[pi] and pi < self._last_index:
                self._advance(pi)

    def _after_step_resolved(self, phase_idx: int) -> None:
        state = self.state
        if state.unresolved_steps(phase_idx) or state.phase_done[phase_idx]:
            return
        pending_gates = [g for g in state.definition.gates_after(phase_idx)
                         if self.gates.would_block(g, state)]
        if pending_gates:
            log_json("DEBUG", "phase_auto_advance_held", run=state.run_id,
                     details={"phase": state.definition.phases[phase_idx].name.value,
                              "gates": [g.id for g in pending_gates]})
            return
        self._finish_phase(phase_idx)
        self._sync_run_status(advance=False)
        if (state.run_status is RunStatus.ACTIVE and phase_idx < self._last_index
                and not state.holding_gates(phase_idx)):
            self._advance(phase_idx)

    # -----------------------------------------------------------------------
    # Run lifecycle
    # -----------------------------------------------------------------------

    def start_run(self, project: Optional[str] = None) -> List[LogEvent]:
        if len(self.state.log):
            raise TransitionError(f"Run {self.state.run_id} has already started.")
        mark = self._transition()
        self.state.record(
            EventAction.RUN_STARTED,
            f"Execution started: {self.state.definition.name}",
            phase_index=0,
            details={
                "loop_id": self.state.definition.id,
                "autonomy": self.state.autonomy.value,
                "mode": self.state.mode.value,
                "project": project,
            },
        )
        return self._since(mark)

    def abort(self, reason: str = "aborted by operator") -> List[LogEvent]:
        self._require_not_terminal()
        mark = self._transition()
        self.state.record(EventAction.RUN_ABORTED, f"Execution aborted: {reason}",
                          level=LogLevel.WARN, details={"reason": reason})
        return self._since(mark)

    # -----------------------------------------------------------------------
    # Step transitions
    # -----------------------------------------------------------------------

    def start_step(self, phase_idx: int, skill_idx: int) -> List[LogEvent]:
        self._require_active()
        skill = self._step(phase_idx, skill_idx)
        key = (phase_idx, skill_idx)
        if self.state.step_status[key] is not StepStatus.PENDING:
            raise TransitionError(
                f"Cannot start skill '{skill.skill_id}': it is {self.state.step_status[key].value}."
            )
        mark = self._transition()
        self.state.record(EventAction.STEP_STARTED, f"Executing skill: {skill.skill_id}",
                          phase_index=phase_idx, skill_index=skill_idx)
        return self._since(mark)

    def complete_step(self, phase_idx: int, skill_idx: int,
                      duration_ms: Optional[float] = None) -> List[LogEvent]:
        self._require_active()
        skill = self._step(phase_idx, skill_idx)
        self._require_open_step((phase_idx, skill_idx), skill, "complete")
        mark = self._transition()
        self.state.record(EventAction.STEP_COMPLETED, f"Skill completed: {skill.skill_id}",
                          phase_index=phase_idx, skill_index=skill_idx, duration_ms=duration_ms)
        self._after_step_resolved(phase_idx)
        return self._since(mark)

    def skip_step(self, phase_idx: int, skill_idx: int, reason: Optional[str] = None) -> List[LogEvent]:
        self._require_active()
        skill = self._step(phase_idx, skill_idx)
        self._require_open_step((phase_idx, skill_idx), skill, "skip")
        phase = self.state.definition.phases[phase_idx]
        if phase.required and skill.required:
            raise TransitionError(
                f"Skill '{skill.skill_id}' is required in required phase {phase.name.value}; it cannot be skipped."
            )
        reason = reason or "skipped by operator"
        mark = self._transition()
        self.state.record(EventAction.STEP_SKIPPED, f"Skill skipped: {skill.skill_id} ({reason})",
                          phase_index=phase_idx, skill_index=skill_idx, details={"reason": reason})
        self._after_step_resolved(phase_idx)
        return self._since(mark)

    def fail_step(self, phase_idx: int, skill_idx: int, reason: str) -> List[LogEvent]:
        self._require_active()
        skill = self._step(phase_idx, skill_idx)
        self._require_open_step((phase_idx, skill_idx), skill, "fail")
        mark = self._transition()
        self.state.record(EventAction.STEP_FAILED, f"Skill failed: {skill.skill_id} ({reason})",
                          phase_index=phase_idx, skill_index=skill_idx, level=LogLevel.ERROR,
                          details={"reason": reason})
        self.state.record(EventAction.RUN_FAILED, f"Execution failed: skill {skill.skill_id} failed",
                          phase_index=phase_idx, level=LogLevel.ERROR, details={"reason": reason})
        return self._since(mark)

    # -----------------------------------------------------------------------
    # Phase transitions
    # -----------------------------------------------------------------------

    def skip_phase(self, phase_idx: int, reason: Optional[str] = None) -> List[LogEvent]:
        """Skip every unresolved step of an optional phase in one transition."""
        self._require_active()
        self._require_current(phase_idx)
        phase = self.state.definition.phases[phase_idx]
        if phase.required:
            raise TransitionError(f"Phase {phase.name.value} is required; it cannot be skipped.")
        reason = reason or f"phase {phase.name.value} skipped"
        mark = self._transition()
        for key in self.state.unresolved_steps(phase_idx):
            skill_id = phase.skills[key[1]].skill_id
            self.state.record(EventAction.STEP_SKIPPED, f"Skill skipped: {skill_id} ({reason})",
                              phase_index=phase_idx, skill_index=key[1],
                              details={"reason": reason, "batch": True})
        self._after_step_resolved(phase_idx)
        return self._since(mark)

    def complete_phase(self, phase_idx: int) -> List[LogEvent]:
        state = self.state
        self._require_not_terminal()
        if state.run_status is RunStatus.BLOCKED:
            return self._retry_rejected_phase(phase_idx)
        self._require_current(phase_idx)
        pending = state.unresolved_steps(phase_idx)
        if pending:
            raise TransitionError(f"Cannot complete phase: {len(pending)} skills pending")
        mark = self._transition()
        self._finish_phase(phase_idx)
        self._sync_run_status(advance=False)
        return self._since(mark)

    def _retry_rejected_phase(self, phase_idx: int) -> List[LogEvent]:
        """Reopen rejected gates of the current phase, or of phases not completed yet."""
        state = self.state
        rejected = []
        for gate in state.definition.gates:
            gate_phase = state.definition.phase_index(gate.after_phase)
            if state.gate_status[gate.id] is GateStatus.REJECTED and (
                    gate_phase == phase_idx or not state.phase_done[gate_phase]):
                rejected.append(gate)
        if self.rejection_policy != "reopen" or phase_idx != state.current_phase_index or not rejected:
            names = ", ".join(g.id for g in self._blockers()) or "a gate"
            raise TransitionError(f"Run {state.run_id} is blocked on {names}.")
        mark = self._transition()
        for gate in rejected:
            state.record(EventAction.GATE_REOPENED, f"Gate reopened for retry: {gate.name}",
                         phase_index=state.definition.phase_index(gate.after_phase), gate_id=gate.id)
        if state.phase_done[phase_idx]:
            self._evaluate_gates(phase_idx, only_auto=False)
        elif not state.unresolved_steps(phase_idx):
            self._finish_phase(phase_idx)
        self._sync_run_status(advance=False)
        return self._since(mark)

    def advance_phase(self) -> List[LogEvent]:
        self._require_active()
        state = self.state
        pi = state.current_phase_index
        phase = state.definition.phases[pi]
        if not state.phase_done[pi]:
            raise TransitionError(f"Phase {phase.name.value} is not completed; it cannot be advanced past.")
        holding = state.holding_gates(pi)
        if holding:
            raise TransitionError(
                "Cannot advance past pending gate(s): " + ", ".join(g.id for g in holding)
            )
        mark = self._transition()
        if pi == self._last_index:
            state.record(EventAction.RUN_COMPLETED, "Execution completed successfully", phase_index=pi)
        else:
            self._advance(pi)
        return self._since(mark)

    # -----------------------------------------------------------------------
    # Gate decisions and configuration
    # -----------------------------------------------------------------------

    def approve_gate(self, gate_id: str, approved_by: Optional[str] = None,
                     feedback: Optional[str] = None) -> List[LogEvent]:
        self._require_not_terminal()
        gate = self._gate(gate_id)
        status = self.state.gate_status[gate.id]
        if status is GateStatus.CLEARED:
            return []
        if status is GateStatus.REJECTED:
            raise TransitionError(f"Gate '{gate_id}' was rejected; it cannot be approved.")
        mark = self._transition()
        self.gates.approve(self.state, gate, approved_by, feedback)
        self._sync_run_status()
        return self._since(mark)

    def reject_gate(self, gate_id: str, reason: str, rejected_by: Optional[str] = None) -> List[LogEvent]:
        self._require_not_terminal()
        gate = self._gate(gate_id)
        status = self.state.gate_status[gate.id]
        if status is not GateStatus.PENDING:
            raise TransitionError(f"Gate '{gate_id}' is already {status.value}.")
        if not reason or not reason.strip():
            raise TransitionError("A rejection reason is required.")
        mark = self._transition()
        self.gates.reject(self.state, gate, reason, rejected_by)
        self._on_rejected(gate)
        return self._since(mark)

    def refresh_gates(self) -> List[LogEvent]:
        """Re-evaluate gates after the current phase that can decide without an operator."""
        self._require_not_terminal()
        mark = self._transition()
        pi = self.state.current_phase_index
        if self.state.phase_done[pi]:
            self._evaluate_gates(pi, only_auto=True)
        self._sync_run_status()
        return self._since(mark)

    def configure_gates(self, gate_ids: List[str], enabled: Optional[bool] = None,
                        approval_override: Any = _UNSET) -> List[LogEvent]:
        """Enable/disable gates or override their approval type (None clears the override)."""
        self._require_not_terminal()
        gates = [self._gate(gid) for gid in gate_ids]
        override: Optional[ApprovalType] = None
        if approval_override is not _UNSET and approval_override is not None:
            override = parse_approval_type(approval_override)
        mark = self._transition()
        for gate in gates:
            details: Dict[str, Any] = {}
            parts = []
            if enabled is not None and self.state.gate_enabled[gate.id] != enabled:
                details["enabled"] = enabled
                parts.append("enabled" if enabled else "disabled")
            if approval_override is not _UNSET and self.state.gate_override[gate.id] != override:
                details["approval_override"] = override.value if override else None
                parts.append(f"approval type set to {override.value}" if override
                             else "approval override cleared")
            if not details:
                continue
            self.state.record(EventAction.GATE_CONFIGURED, f"Gate {gate.name} {', '.join(parts)}",
                              phase_index=self.state.definition.phase_index(gate.after_phase),
                              gate_id=gate.id, details=details)
        if len(self.state.log) == mark:
            return []
        pi = self.state.current_phase_index
        if self.state.phase_done[pi]:
            self._evaluate_gates(pi, only_auto=True)
        self._sync_run_status()
        return self._since(mark)
