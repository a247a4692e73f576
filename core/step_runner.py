"""
Step runner capability.

Skills are opaque units of work performed outside the engine (by an operator
or an LLM agent). The engine only learns *whether* a step succeeded, failed
or was skipped, through a ``StepOutcome``, and whether an automated gate's
check passed, through a ``GateCheck``.

``SimulatedStepRunner`` is the default used by playback and headless runs: it
succeeds everything unless told otherwise.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

from core.loop_definition import Gate
from core.phases import PhaseTag


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepOutcome:
    kind: OutcomeKind
    reason: str = ""
    duration_ms: Optional[float] = None

    @classmethod
    def succeeded(cls, duration_ms: Optional[float] = None) -> "StepOutcome":
        return cls(OutcomeKind.SUCCEEDED, duration_ms=duration_ms)

    @classmethod
    def failed(cls, reason: str, duration_ms: Optional[float] = None) -> "StepOutcome":
        return cls(OutcomeKind.FAILED, reason=reason, duration_ms=duration_ms)

    @classmethod
    def skipped(cls, reason: str) -> "StepOutcome":
        return cls(OutcomeKind.SKIPPED, reason=reason)


@dataclass(frozen=True)
class GateCheck:
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class StepRef:
    """Identifies the step a runner is asked to perform."""
    phase_index: int
    skill_index: int
    phase: PhaseTag
    skill_id: str
    required: bool


class StepRunner(Protocol):
    def run_step(self, step: StepRef, snapshot) -> StepOutcome:
        ...

    def check_gate(self, gate: Gate, snapshot) -> GateCheck:
        ...


class SimulatedStepRunner:
    """Deterministic runner: succeeds unless a skill or gate id is listed as failing."""

    def __init__(
        self,
        failing_steps: Iterable[str] = (),
        skipped_steps: Iterable[str] = (),
        failing_gates: Iterable[str] = (),
        duration_ms: Optional[float] = None,
    ):
        self.failing_steps = set(failing_steps)
        self.skipped_steps = set(skipped_steps)
        self.failing_gates = set(failing_gates)
        self.duration_ms = duration_ms

    def run_step(self, step: StepRef, snapshot) -> StepOutcome:
        if step.skill_id in self.failing_steps:
            return StepOutcome.failed(f"simulated failure of {step.skill_id}", self.duration_ms)
        if step.skill_id in self.skipped_steps:
            return StepOutcome.skipped("simulated skip")
        return StepOutcome.succeeded(self.duration_ms)

    def check_gate(self, gate: Gate, snapshot) -> GateCheck:
        if gate.id in self.failing_gates:
            return GateCheck(False, f"simulated check failure for {gate.id}")
        return GateCheck(True, "all checks passed")
