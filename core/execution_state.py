"""
Mutable state of one loop run, and its read-only snapshot.

ExecutionState is a fold over its EventLog: ``record`` builds the next event
and applies it, ``apply`` is the only code that changes fields. The scheduler
and gate evaluator decide *which* events to record; they never assign state
directly. ``replay`` rebuilds a state from a definition and an event list.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.event_log import (
    EventAction,
    EventLog,
    LogEvent,
    LogLevel,
    category_for,
)
from core.exceptions import TransitionError
from core.loop_definition import Gate, LoopDefinition
from core.phases import (
    ApprovalType,
    Autonomy,
    GateStatus,
    LoopMode,
    PhaseTag,
    Quadrant,
    RunStatus,
    StepStatus,
    parse_approval_type,
    parse_autonomy,
    parse_mode,
)
from core import progress

StepKey = Tuple[int, int]


@dataclass(frozen=True)
class GateDecision:
    """Who resolved a gate, and with what note."""
    approved_by: Optional[str] = None
    feedback: Optional[str] = None
    decided_seq: Optional[int] = None


@dataclass(frozen=True)
class GateRejection:
    """A rejected gate as an ordinary run outcome (not an exception)."""
    gate_id: str
    reason: str
    approval_type: ApprovalType
    required: bool
    seq: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "reason": self.reason,
            "approval_type": self.approval_type.value,
            "required": self.required,
            "seq": self.seq,
        }


# ---------------------------------------------------------------------------
# Snapshot views
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StepView:
    phase_index: int
    skill_index: int
    phase: PhaseTag
    skill_id: str
    required: bool
    status: StepStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_index": self.phase_index,
            "skill_index": self.skill_index,
            "phase": self.phase.value,
            "skill_id": self.skill_id,
            "required": self.required,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class PhaseView:
    index: int
    name: PhaseTag
    required: bool
    done: bool
    resolved: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name.value,
            "required": self.required,
            "done": self.done,
            "resolved": self.resolved,
            "total": self.total,
        }


@dataclass(frozen=True)
class GateView:
    id: str
    name: str
    after_phase: PhaseTag
    required: bool
    approval_type: ApprovalType
    effective_approval_type: ApprovalType
    enabled: bool
    status: GateStatus
    holding: bool
    deliverables: Tuple[str, ...] = ()
    approved_by: Optional[str] = None
    feedback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "after_phase": self.after_phase.value,
            "required": self.required,
            "approval_type": self.approval_type.value,
            "effective_approval_type": self.effective_approval_type.value,
            "enabled": self.enabled,
            "status": self.status.value,
            "holding": self.holding,
            "deliverables": list(self.deliverables),
            "approved_by": self.approved_by,
            "feedback": self.feedback,
        }


@dataclass(frozen=True)
class ExecutionSnapshot:
    """Read-only copy of an ExecutionState at one point in its log."""
    run_id: str
    loop_id: str
    loop_name: str
    status: RunStatus
    autonomy: Autonomy
    mode: LoopMode
    project: Optional[str]
    current_phase_index: int
    current_phase: PhaseTag
    quadrant: Optional[Quadrant]
    progress: float
    resolved_steps: int
    total_steps: int
    phases: Tuple[PhaseView, ...]
    steps: Tuple[StepView, ...]
    gates: Tuple[GateView, ...]
    rejections: Tuple[GateRejection, ...]
    failure_reason: Optional[str]
    last_seq: int

    def step(self, skill_id: str) -> Optional[StepView]:
        for s in self.steps:
            if s.skill_id == skill_id:
                return s
        return None

    def gate(self, gate_id: str) -> Optional[GateView]:
        for g in self.gates:
            if g.id == gate_id:
                return g
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "loop_id": self.loop_id,
            "loop_name": self.loop_name,
            "status": self.status.value,
            "autonomy": self.autonomy.value,
            "mode": self.mode.value,
            "project": self.project,
            "current_phase_index": self.current_phase_index,
            "current_phase": self.current_phase.value,
            "quadrant": self.quadrant.value if self.quadrant else None,
            "progress": self.progress,
            "resolved_steps": self.resolved_steps,
            "total_steps": self.total_steps,
            "phases": [p.to_dict() for p in self.phases],
            "steps": [s.to_dict() for s in self.steps],
            "gates": [g.to_dict() for g in self.gates],
            "rejections": [r.to_dict() for r in self.rejections],
            "failure_reason": self.failure_reason,
            "last_seq": self.last_seq,
        }


# ---------------------------------------------------------------------------
# ExecutionState
# ---------------------------------------------------------------------------

class ExecutionState:
    """The record of one run: phase cursor, step/gate/run status and the log."""

    def __init__(self, definition: LoopDefinition, run_id: str):
        self.definition = definition
        self.run_id = run_id
        self.autonomy: Autonomy = definition.defaults.autonomy
        self.mode: LoopMode = definition.defaults.mode
        self.project: Optional[str] = None
        self.current_phase_index = 0
        self.step_status: Dict[StepKey, StepStatus] = {
            (pi, si): StepStatus.PENDING
            for pi, phase in enumerate(definition.phases)
            for si in range(len(phase.skills))
        }
        self.phase_done: List[bool] = [False] * len(definition.phases)
        self.gate_status: Dict[str, GateStatus] = {g.id: GateStatus.PENDING for g in definition.gates}
        self.gate_enabled: Dict[str, bool] = {g.id: True for g in definition.gates}
        self.gate_override: Dict[str, Optional[ApprovalType]] = {g.id: None for g in definition.gates}
        self.gate_decisions: Dict[str, GateDecision] = {}
        self.rejections: List[GateRejection] = []
        self.run_status = RunStatus.ACTIVE
        self.failure_reason: Optional[str] = None
        self.log = EventLog()

    # -- queries ---------------------------------------------------------------

    @property
    def current_phase(self):
        return self.definition.phases[self.current_phase_index]

    @property
    def is_terminal(self) -> bool:
        return self.run_status.terminal

    def phase_steps(self, phase_idx: int) -> List[StepKey]:
        return [(phase_idx, si) for si in range(len(self.definition.phases[phase_idx].skills))]

    def unresolved_steps(self, phase_idx: int) -> List[StepKey]:
        return [k for k in self.phase_steps(phase_idx) if not self.step_status[k].resolved]

    def effective_approval(self, gate: Gate) -> ApprovalType:
        return self.gate_override.get(gate.id) or gate.approval_type

    def gate_holds(self, gate: Gate) -> bool:
        """True when *gate* currently prevents leaving its phase."""
        if not self.gate_enabled.get(gate.id, True):
            return False
        status = self.gate_status[gate.id]
        if status is GateStatus.CLEARED:
            return False
        if status is GateStatus.REJECTED:
            return gate.required
        return gate.required or self.effective_approval(gate) is ApprovalType.CONDITIONAL

    def holding_gates(self, phase_idx: int) -> List[Gate]:
        return [g for g in self.definition.gates_after(phase_idx) if self.gate_holds(g)]

    # -- mutation --------------------------------------------------------------

    def record(
        self,
        action: EventAction,
        message: str,
        *,
        phase_index: Optional[int] = None,
        skill_index: Optional[int] = None,
        gate_id: Optional[str] = None,
        level: LogLevel = LogLevel.INFO,
        duration_ms: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> LogEvent:
        """Build the next event for this state and apply it."""
        pi = self.current_phase_index if phase_index is None else phase_index
        phase = self.definition.phases[pi]
        event = LogEvent(
            seq=self.log.next_seq,
            action=action,
            category=category_for(action),
            phase=phase.name,
            phase_index=pi,
            message=message,
            level=level,
            skill_id=phase.skills[skill_index].skill_id if skill_index is not None else None,
            skill_index=skill_index,
            gate_id=gate_id,
            duration_ms=duration_ms,
            details=dict(details or {}),
        )
        return self.apply(event)

    def apply(self, event: LogEvent) -> LogEvent:
        """Append *event* and apply its effect. The only place state fields change."""
        if self.run_status.terminal:
            raise TransitionError(
                f"Run {self.run_id} is {self.run_status.value}; its state is immutable."
            )
        self.log.append(event)
        action = event.action
        key = (event.phase_index, event.skill_index)
        d = event.details

        if action is EventAction.RUN_STARTED:
            self.autonomy = parse_autonomy(d.get("autonomy", self.autonomy))
            self.mode = parse_mode(d.get("mode", self.mode))
            self.project = d.get("project")
        elif action is EventAction.STEP_STARTED:
            self.step_status[key] = StepStatus.ACTIVE
        elif action is EventAction.STEP_COMPLETED:
            self.step_status[key] = StepStatus.COMPLETED
        elif action is EventAction.STEP_SKIPPED:
            self.step_status[key] = StepStatus.SKIPPED
        elif action is EventAction.STEP_FAILED:
            self.step_status[key] = StepStatus.FAILED
        elif action is EventAction.PHASE_COMPLETED:
            self.phase_done[event.phase_index] = True
        elif action is EventAction.PHASE_ADVANCED:
            self.current_phase_index = int(d["to_index"])
        elif action is EventAction.GATE_CLEARED:
            self.gate_status[event.gate_id] = GateStatus.CLEARED
            self.gate_decisions[event.gate_id] = GateDecision(
                approved_by=d.get("approved_by"), feedback=d.get("feedback"), decided_seq=event.seq)
        elif action is EventAction.GATE_REJECTED:
            gate = self.definition.gate(event.gate_id)
            reason = d.get("feedback") or ""
            self.gate_status[event.gate_id] = GateStatus.REJECTED
            self.gate_decisions[event.gate_id] = GateDecision(
                approved_by=d.get("rejected_by"), feedback=reason, decided_seq=event.seq)
            self.rejections.append(GateRejection(
                gate_id=event.gate_id,
                reason=reason,
                approval_type=self.effective_approval(gate),
                required=gate.required,
                seq=event.seq,
            ))
        elif action is EventAction.GATE_REOPENED:
            self.gate_status[event.gate_id] = GateStatus.PENDING
            self.gate_decisions.pop(event.gate_id, None)
        elif action is EventAction.GATE_CONFIGURED:
            if "enabled" in d:
                self.gate_enabled[event.gate_id] = bool(d["enabled"])
            if "approval_override" in d:
                override = d["approval_override"]
                self.gate_override[event.gate_id] = parse_approval_type(override) if override else None
        elif action is EventAction.RUN_BLOCKED:
            self.run_status = RunStatus.BLOCKED
        elif action is EventAction.RUN_UNBLOCKED:
            self.run_status = RunStatus.ACTIVE
        elif action is EventAction.RUN_COMPLETED:
            self.run_status = RunStatus.COMPLETED
        elif action in (EventAction.RUN_FAILED, EventAction.RUN_ABORTED):
            self.run_status = RunStatus.FAILED
            self.failure_reason = d.get("reason") or event.message
        # GATE_PENDING is informational: the gate is already Pending.
        return event

    # -- projections -------------------------------------------------------------

    def snapshot(self) -> ExecutionSnapshot:
        d = self.definition
        phases = tuple(
            PhaseView(
                index=pi,
                name=phase.name,
                required=phase.required,
                done=self.phase_done[pi],
                resolved=len(phase.skills) - len(self.unresolved_steps(pi)),
                total=len(phase.skills),
            )
            for pi, phase in enumerate(d.phases)
        )
        steps = tuple(
            StepView(pi, si, phase.name, skill.skill_id, skill.required, self.step_status[(pi, si)])
            for pi, phase in enumerate(d.phases)
            for si, skill in enumerate(phase.skills)
        )
        gates = tuple(
            GateView(
                id=g.id,
                name=g.name,
                after_phase=g.after_phase,
                required=g.required,
                approval_type=g.approval_type,
                effective_approval_type=self.effective_approval(g),
                enabled=self.gate_enabled[g.id],
                status=self.gate_status[g.id],
                holding=self.gate_holds(g),
                deliverables=g.deliverables,
                approved_by=self.gate_decisions.get(g.id, GateDecision()).approved_by,
                feedback=self.gate_decisions.get(g.id, GateDecision()).feedback,
            )
            for g in d.gates
        )
        last = self.log.last()
        return ExecutionSnapshot(
            run_id=self.run_id,
            loop_id=d.id,
            loop_name=d.name,
            status=self.run_status,
            autonomy=self.autonomy,
            mode=self.mode,
            project=self.project,
            current_phase_index=self.current_phase_index,
            current_phase=self.current_phase.name,
            quadrant=progress.phase_quadrant(d.phases, self.current_phase_index),
            progress=progress.progress_percent(self.step_status),
            resolved_steps=progress.resolved_count(self.step_status),
            total_steps=len(self.step_status),
            phases=phases,
            steps=steps,
            gates=gates,
            rejections=tuple(self.rejections),
            failure_reason=self.failure_reason,
            last_seq=last.seq if last else 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Full state, including the log. Two states are equivalent iff these match."""
        return {
            "run_id": self.run_id,
            "loop_id": self.definition.id,
            "autonomy": self.autonomy.value,
            "mode": self.mode.value,
            "project": self.project,
            "current_phase_index": self.current_phase_index,
            "run_status": self.run_status.value,
            "failure_reason": self.failure_reason,
            "step_status": {f"{pi}:{si}": s.value for (pi, si), s in sorted(self.step_status.items())},
            "phase_done": list(self.phase_done),
            "gate_status": {k: v.value for k, v in sorted(self.gate_status.items())},
            "gate_enabled": dict(sorted(self.gate_enabled.items())),
            "gate_override": {k: (v.value if v else None) for k, v in sorted(self.gate_override.items())},
            "gate_decisions": {
                k: {"approved_by": v.approved_by, "feedback": v.feedback, "decided_seq": v.decided_seq}
                for k, v in sorted(self.gate_decisions.items())
            },
            "rejections": [r.to_dict() for r in self.rejections],
            "log": [e.to_dict() for e in self.log],
        }


def replay(definition: LoopDefinition, events: Iterable[LogEvent], run_id: str) -> ExecutionState:
    """Rebuild an ExecutionState by applying *events* in order to a fresh state."""
    state = ExecutionState(definition, run_id)
    for event in events:
        state.apply(event)
    return state
