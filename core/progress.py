"""Pure projections over run state and the event log: progress, quadrant, timeline."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.event_log import EventAction, LogEvent
from core.phases import Quadrant, StepStatus, quadrant_for


def resolved_count(step_status: Mapping[Any, StepStatus]) -> int:
    return sum(1 for s in step_status.values() if s.resolved)


def progress_percent(step_status: Mapping[Any, StepStatus]) -> float:
    """completed-or-skipped / total, as a percentage rounded to one decimal."""
    total = len(step_status)
    if total == 0:
        return 0.0
    return round(100.0 * resolved_count(step_status) / total, 1)


def phase_quadrant(phases, current_phase_index: int) -> Optional[Quadrant]:
    if not phases:
        return None
    idx = min(max(current_phase_index, 0), len(phases) - 1)
    return quadrant_for(phases[idx].name)


def timeline(events: Iterable[LogEvent]) -> List[Dict[str, Any]]:
    """Phase spans derived from the log, for timeline visualisation.

    Each entry: phase tag, index, seq of its first step activity, seq at which
    the phase completed, and per-outcome step counts.
    """
    spans: Dict[int, Dict[str, Any]] = {}

    def span(event: LogEvent) -> Dict[str, Any]:
        return spans.setdefault(event.phase_index, {
            "phase": event.phase.value,
            "index": event.phase_index,
            "started_seq": None,
            "completed_seq": None,
            "completed": 0,
            "skipped": 0,
            "failed": 0,
        })

    for event in events:
        if event.action is EventAction.RUN_STARTED:
            continue
        if event.action in (EventAction.STEP_STARTED, EventAction.STEP_COMPLETED,
                            EventAction.STEP_SKIPPED, EventAction.STEP_FAILED):
            entry = span(event)
            if entry["started_seq"] is None:
                entry["started_seq"] = event.seq
            if event.action is EventAction.STEP_COMPLETED:
                entry["completed"] += 1
            elif event.action is EventAction.STEP_SKIPPED:
                entry["skipped"] += 1
            elif event.action is EventAction.STEP_FAILED:
                entry["failed"] += 1
        elif event.action is EventAction.PHASE_COMPLETED:
            span(event)["completed_seq"] = event.seq
    return [spans[k] for k in sorted(spans)]
