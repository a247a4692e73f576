"""
Append-only event log for a single run.

Every state change of a run is recorded as a LogEvent, and ExecutionState is
built purely by applying events in order (see ``ExecutionState.apply``). The
log is therefore a complete audit trail: replaying it from a fresh state
reproduces the run exactly.

Ordering is by the logical sequence number ``seq`` (1, 2, 3, ...). No wall
clock is involved.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from core.phases import PhaseTag


class LogCategory(str, Enum):
    SKILL = "skill"
    GATE = "gate"
    PHASE = "phase"
    SYSTEM = "system"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventAction(str, Enum):
    RUN_STARTED = "run_started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_SKIPPED = "step_skipped"
    STEP_FAILED = "step_failed"
    PHASE_COMPLETED = "phase_completed"
    PHASE_ADVANCED = "phase_advanced"
    GATE_PENDING = "gate_pending"
    GATE_CLEARED = "gate_cleared"
    GATE_REJECTED = "gate_rejected"
    GATE_REOPENED = "gate_reopened"
    GATE_CONFIGURED = "gate_configured"
    RUN_BLOCKED = "run_blocked"
    RUN_UNBLOCKED = "run_unblocked"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_ABORTED = "run_aborted"


_CATEGORY_BY_ACTION = {
    EventAction.RUN_STARTED: LogCategory.SYSTEM,
    EventAction.STEP_STARTED: LogCategory.SKILL,
    EventAction.STEP_COMPLETED: LogCategory.SKILL,
    EventAction.STEP_SKIPPED: LogCategory.SKILL,
    EventAction.STEP_FAILED: LogCategory.SKILL,
    EventAction.PHASE_COMPLETED: LogCategory.PHASE,
    EventAction.PHASE_ADVANCED: LogCategory.PHASE,
    EventAction.GATE_PENDING: LogCategory.GATE,
    EventAction.GATE_CLEARED: LogCategory.GATE,
    EventAction.GATE_REJECTED: LogCategory.GATE,
    EventAction.GATE_REOPENED: LogCategory.GATE,
    EventAction.GATE_CONFIGURED: LogCategory.GATE,
    EventAction.RUN_BLOCKED: LogCategory.SYSTEM,
    EventAction.RUN_UNBLOCKED: LogCategory.SYSTEM,
    EventAction.RUN_COMPLETED: LogCategory.SYSTEM,
    EventAction.RUN_FAILED: LogCategory.SYSTEM,
    EventAction.RUN_ABORTED: LogCategory.SYSTEM,
}


def category_for(action: EventAction) -> LogCategory:
    return _CATEGORY_BY_ACTION[action]


@dataclass(frozen=True)
class LogEvent:
    """One appended record. Immutable once created."""
    seq: int
    action: EventAction
    category: LogCategory
    phase: PhaseTag
    phase_index: int
    message: str
    level: LogLevel = LogLevel.INFO
    skill_id: Optional[str] = None
    skill_index: Optional[int] = None
    gate_id: Optional[str] = None
    duration_ms: Optional[float] = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    @property
    def id(self) -> str:
        return f"evt-{self.seq:06d}"

    @property
    def timestamp_logical(self) -> int:
        return self.seq

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "seq": self.seq,
            "action": self.action.value,
            "category": self.category.value,
            "level": self.level.value,
            "phase": self.phase.value,
            "phase_index": self.phase_index,
            "message": self.message,
        }
        if self.skill_id is not None:
            out["skill_id"] = self.skill_id
            out["skill_index"] = self.skill_index
        if self.gate_id is not None:
            out["gate_id"] = self.gate_id
        if self.duration_ms is not None:
            out["duration_ms"] = self.duration_ms
        if self.details:
            out["details"] = dict(self.details)
        return out


class EventLog:
    """Ordered, append-only sequence of LogEvents with logical sequence numbers."""

    def __init__(self):
        self._events: List[LogEvent] = []

    @property
    def next_seq(self) -> int:
        return len(self._events) + 1

    def append(self, event: LogEvent) -> LogEvent:
        if event.seq != self.next_seq:
            raise ValueError(f"Out-of-order event seq {event.seq}; expected {self.next_seq}")
        self._events.append(event)
        return event

    def since(self, seq: int) -> Tuple[LogEvent, ...]:
        """Events with sequence number greater than *seq*."""
        return tuple(self._events[max(seq, 0):])

    def query(
        self,
        since: int = 0,
        level: Union[LogLevel, str, None] = None,
        category: Union[LogCategory, str, None] = None,
        limit: Optional[int] = None,
    ) -> Tuple[LogEvent, ...]:
        """
        Events after *since*, narrowed to one level and/or category.

        With *limit*, only the last *limit* matching events are kept.
        Unknown level or category names raise ValueError.
        """
        wanted_level = LogLevel(level) if level is not None else None
        wanted_category = LogCategory(category) if category is not None else None
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0):
            raise ValueError(f"limit must be a positive integer, got {limit!r}")
        found = [
            e for e in self.since(since)
            if (wanted_level is None or e.level is wanted_level)
            and (wanted_category is None or e.category is wanted_category)
        ]
        if limit is not None:
            found = found[-limit:]
        return tuple(found)

    def events(self) -> Tuple[LogEvent, ...]:
        return tuple(self._events)

    def last(self) -> Optional[LogEvent]:
        return self._events[-1] if self._events else None

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[LogEvent]:
        return iter(tuple(self._events))
