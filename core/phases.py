"""
Phase vocabulary shared by every engine component.

PhaseTag is totally ordered (INIT < SCAFFOLD < ... < COMPLETE). META is a
reserved tag for skills that apply across phases; it has no position in the
ordering and can never appear as an executable phase of a loop.

The remaining enums carry the persisted string values used in loop.json and in
the HTTP / CLI surfaces. ``parse_*`` helpers accept the legacy aliases of the
original orchestrator ("auto", "full", "manual", "brownfield-polish", ...).
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple


class PhaseTag(str, Enum):
    INIT = "INIT"
    SCAFFOLD = "SCAFFOLD"
    IMPLEMENT = "IMPLEMENT"
    TEST = "TEST"
    VERIFY = "VERIFY"
    VALIDATE = "VALIDATE"
    DOCUMENT = "DOCUMENT"
    REVIEW = "REVIEW"
    SHIP = "SHIP"
    COMPLETE = "COMPLETE"
    META = "META"

    @property
    def order(self) -> Optional[int]:
        """Canonical position, or None for META."""
        return _PHASE_POSITIONS.get(self)

    @property
    def is_ordered(self) -> bool:
        return self is not PhaseTag.META


PHASE_ORDER: Tuple[PhaseTag, ...] = (
    PhaseTag.INIT,
    PhaseTag.SCAFFOLD,
    PhaseTag.IMPLEMENT,
    PhaseTag.TEST,
    PhaseTag.VERIFY,
    PhaseTag.VALIDATE,
    PhaseTag.DOCUMENT,
    PhaseTag.REVIEW,
    PhaseTag.SHIP,
    PhaseTag.COMPLETE,
)

_PHASE_POSITIONS: Dict[PhaseTag, int] = {tag: i for i, tag in enumerate(PHASE_ORDER)}


class ApprovalType(str, Enum):
    HUMAN = "human"
    CONDITIONAL = "conditional"
    AUTOMATED = "automated"


class Autonomy(str, Enum):
    SUPERVISED = "supervised"
    SEMI_AUTONOMOUS = "semi-autonomous"
    AUTONOMOUS = "autonomous"


class LoopMode(str, Enum):
    GREENFIELD = "greenfield"
    BROWNFIELD = "brownfield"


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def resolved(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.SKIPPED)


class GateStatus(str, Enum):
    PENDING = "pending"
    CLEARED = "cleared"
    REJECTED = "rejected"


class RunStatus(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class Quadrant(str, Enum):
    OBSERVE = "OBSERVE"
    ORIENT = "ORIENT"
    DECIDE = "DECIDE"
    ACT = "ACT"


QUADRANT_PHASES: Dict[Quadrant, Tuple[PhaseTag, ...]] = {
    Quadrant.OBSERVE: (PhaseTag.INIT,),
    Quadrant.ORIENT: (PhaseTag.SCAFFOLD,),
    Quadrant.DECIDE: (PhaseTag.IMPLEMENT, PhaseTag.TEST),
    Quadrant.ACT: (
        PhaseTag.VERIFY, PhaseTag.VALIDATE, PhaseTag.DOCUMENT,
        PhaseTag.REVIEW, PhaseTag.SHIP, PhaseTag.COMPLETE,
    ),
}


# ---------------------------------------------------------------------------
# Parsing helpers (persisted strings → enums)
# ---------------------------------------------------------------------------

_APPROVAL_ALIASES = {
    "human": ApprovalType.HUMAN,
    "conditional": ApprovalType.CONDITIONAL,
    "automated": ApprovalType.AUTOMATED,
    "auto": ApprovalType.AUTOMATED,
}

_AUTONOMY_ALIASES = {
    "supervised": Autonomy.SUPERVISED,
    "manual": Autonomy.SUPERVISED,
    "semi-autonomous": Autonomy.SEMI_AUTONOMOUS,
    "semi_autonomous": Autonomy.SEMI_AUTONOMOUS,
    "semiautonomous": Autonomy.SEMI_AUTONOMOUS,
    "autonomous": Autonomy.AUTONOMOUS,
    "full": Autonomy.AUTONOMOUS,
}

_MODE_ALIASES = {
    "greenfield": LoopMode.GREENFIELD,
    "brownfield": LoopMode.BROWNFIELD,
    "brownfield-polish": LoopMode.BROWNFIELD,
    "brownfield-enterprise": LoopMode.BROWNFIELD,
}

# Accepted spellings, for settings that are parsed later.
AUTONOMY_NAMES: Tuple[str, ...] = tuple(_AUTONOMY_ALIASES)
MODE_NAMES: Tuple[str, ...] = tuple(_MODE_ALIASES)


def _lookup(value, aliases: Dict[str, Enum], kind: str):
    if isinstance(value, Enum) and value in aliases.values():
        return value
    if isinstance(value, str):
        found = aliases.get(value.strip().lower())
        if found is not None:
            return found
    raise ValueError(f"Unknown {kind} {value!r}; expected one of {sorted(aliases)}")


def parse_phase_tag(value) -> PhaseTag:
    if isinstance(value, PhaseTag):
        return value
    if isinstance(value, str):
        try:
            return PhaseTag(value.strip().upper())
        except ValueError:
            pass
    raise ValueError(f"Unknown phase {value!r}; expected one of {[t.value for t in PhaseTag]}")


def parse_approval_type(value) -> ApprovalType:
    return _lookup(value, _APPROVAL_ALIASES, "approval type")


def parse_autonomy(value) -> Autonomy:
    return _lookup(value, _AUTONOMY_ALIASES, "autonomy")


def parse_mode(value) -> LoopMode:
    return _lookup(value, _MODE_ALIASES, "mode")


def quadrant_for(tag: PhaseTag) -> Optional[Quadrant]:
    """OODA quadrant a phase belongs to; None for META."""
    for quadrant, tags in QUADRANT_PHASES.items():
        if tag in tags:
            return quadrant
    return None
