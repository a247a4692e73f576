"""
Loop Engine: control surface for validated, gated, multi-phase loop runs.

Concepts:
  LoopDefinition   - an author-supplied loop (phases of skills, gates between
                     phases, run defaults), validated before any run exists.
  LoopRun          - one live run of a definition. Owns its ExecutionState
                     exclusively; every mutation goes through the run's lock
                     and returns a TransitionResult (read-only snapshot plus
                     the events the transition appended).
  PhaseScheduler   - transition rules (complete/skip/fail steps, complete and
                     advance phases, gate decisions).
  PlaybackController - optional timer that auto-advances a run one step per
                     tick, serialized with external calls.
  LoopEngine       - definition catalog + in-memory run registry.

Usage example:
  engine = LoopEngine(registry=InMemorySkillRegistry({"spec": [], "build": ["spec"]}))
  run = engine.start(loop_document)
  run.complete_step("spec")
  result = run.complete_phase()
  result.snapshot.status          # RunStatus.BLOCKED when a human gate follows
  run.approve_gate("spec-gate", approved_by="lead")
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from core.config_manager import ConfigManager, get_config
from core.event_log import LogEvent
from core.exceptions import (
    DefinitionError,
    LoopEngineError,
    TransitionError,
    UnknownLoopError,
    UnknownRunError,
)
from core.execution_state import ExecutionSnapshot, ExecutionState, replay
from core.gate_evaluator import ConditionPredicate, GateEvaluator
from core.logging_utils import log_json
from core.loop_definition import LoopDefaults, LoopDefinition, discover_loops
from core.phases import (
    ApprovalType,
    Autonomy,
    LoopMode,
    parse_autonomy,
    parse_mode,
)
from core.playback import PlaybackController
from core import progress
from core.scheduler import PhaseScheduler
from core.skill_registry import DirectorySkillRegistry, PermissiveSkillRegistry, SkillRegistry
from core.step_runner import SimulatedStepRunner, StepRunner
from core.validator import ValidationResult, validate

StepAddress = Union[str, Tuple[int, int]]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """What every mutator returns: the state after the call and what it appended."""
    snapshot: ExecutionSnapshot
    events: Tuple[LogEvent, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict(),
            "events": [e.to_dict() for e in self.events],
        }


# ---------------------------------------------------------------------------
# LoopRun
# ---------------------------------------------------------------------------

class LoopRun:
    """One run of a validated loop definition."""

    def __init__(
        self,
        run_id: str,
        definition: LoopDefinition,
        runner: Optional[StepRunner] = None,
        *,
        autonomy: Optional[Autonomy] = None,
        mode: Optional[LoopMode] = None,
        project: Optional[str] = None,
        rejection_policy: str = "terminal",
        conditions: Optional[Dict[str, ConditionPredicate]] = None,
        playback_interval_ms: int = 800,
    ):
        self.run_id = run_id
        self.definition = definition
        self.runner: StepRunner = runner or SimulatedStepRunner()
        self.autonomy = parse_autonomy(autonomy) if autonomy else definition.defaults.autonomy
        self.mode = parse_mode(mode) if mode else definition.defaults.mode
        self.project = project
        self.rejection_policy = rejection_policy
        self._conditions = dict(conditions or {})
        self._lock = threading.RLock()
        self.resets = 0
        self.state, self._scheduler = self._fresh_state()
        self.playback = PlaybackController(self, playback_interval_ms)

    @property
    def lock(self) -> threading.RLock:
        """The single mutation entry point: every transition holds this lock."""
        return self._lock

    def _fresh_state(self) -> Tuple[ExecutionState, PhaseScheduler]:
        state = ExecutionState(self.definition, self.run_id)
        state.autonomy = self.autonomy
        state.mode = self.mode
        scheduler = PhaseScheduler(
            state,
            GateEvaluator(self.runner, self._conditions),
            rejection_policy=self.rejection_policy,
        )
        scheduler.start_run(project=self.project)
        return state, scheduler

    # -- plumbing ------------------------------------------------------------

    def _mutate(self, op: str, fn: Callable[[], List[LogEvent]], **context) -> TransitionResult:
        with self._lock:
            try:
                events = fn()
            except TransitionError as exc:
                log_json("WARN", "loop_transition_rejected", run=self.run_id,
                         details={"op": op, "error": str(exc), **context})
                raise
            snapshot = self.state.snapshot()
        log_json("INFO", "loop_transition", run=self.run_id,
                 details={"op": op, "events": len(events), "status": snapshot.status.value,
                          "phase": snapshot.current_phase.value, **context})
        return TransitionResult(snapshot, tuple(events))

    def _locate(self, step: StepAddress) -> Tuple[int, int]:
        """Resolve a skill id (searched in the current phase first) or pass an index pair through."""
        if isinstance(step, tuple):
            return step
        state = self.state
        pi = state.current_phase_index
        matches = [si for si, skill in enumerate(self.definition.phases[pi].skills) if skill.skill_id == step]
        if matches:
            open_matches = [si for si in matches if not state.step_status[(pi, si)].resolved]
            return pi, (open_matches or matches)[0]
        for other_pi, phase in enumerate(self.definition.phases):
            for si, skill in enumerate(phase.skills):
                if skill.skill_id == step:
                    return other_pi, si
        raise TransitionError(f"Skill '{step}' is not part of loop '{self.definition.id}'.")

    def _step_op(self, op: str, step: StepAddress, fn: Callable[[int, int], List[LogEvent]]) -> TransitionResult:
        def run() -> List[LogEvent]:
            pi, si = self._locate(step)
            return fn(pi, si)
        return self._mutate(op, run, step=step if isinstance(step, str) else list(step))

    # -- steps ---------------------------------------------------------------

    def start_step(self, step: StepAddress) -> TransitionResult:
        return self._step_op("start_step", step, lambda pi, si: self._scheduler.start_step(pi, si))

    def complete_step(self, step: StepAddress, duration_ms: Optional[float] = None) -> TransitionResult:
        return self._step_op("complete_step", step,
                             lambda pi, si: self._scheduler.complete_step(pi, si, duration_ms))

    def skip_step(self, step: StepAddress, reason: Optional[str] = None) -> TransitionResult:
        return self._step_op("skip_step", step, lambda pi, si: self._scheduler.skip_step(pi, si, reason))

    def fail_step(self, step: StepAddress, reason: str) -> TransitionResult:
        return self._step_op("fail_step", step, lambda pi, si: self._scheduler.fail_step(pi, si, reason))

    # -- phases --------------------------------------------------------------

    def skip_phase(self, reason: Optional[str] = None) -> TransitionResult:
        return self._mutate("skip_phase",
                            lambda: self._scheduler.skip_phase(self.state.current_phase_index, reason))

    def complete_phase(self) -> TransitionResult:
        return self._mutate("complete_phase",
                            lambda: self._scheduler.complete_phase(self.state.current_phase_index))

    def advance_phase(self) -> TransitionResult:
        return self._mutate("advance_phase", self._scheduler.advance_phase)

    # -- gates ---------------------------------------------------------------

    def approve_gate(self, gate_id: str, approved_by: Optional[str] = None,
                     feedback: Optional[str] = None) -> TransitionResult:
        return self._mutate("approve_gate",
                            lambda: self._scheduler.approve_gate(gate_id, approved_by, feedback),
                            gate=gate_id)

    def reject_gate(self, gate_id: str, reason: str, rejected_by: Optional[str] = None) -> TransitionResult:
        return self._mutate("reject_gate",
                            lambda: self._scheduler.reject_gate(gate_id, reason, rejected_by),
                            gate=gate_id)

    def refresh_gates(self) -> TransitionResult:
        return self._mutate("refresh_gates", self._scheduler.refresh_gates)

    def set_gate_enabled(self, gate_id: str, enabled: bool) -> TransitionResult:
        return self._mutate("set_gate_enabled",
                            lambda: self._scheduler.configure_gates([gate_id], enabled=bool(enabled)),
                            gate=gate_id)

    def disable_all_gates(self) -> TransitionResult:
        ids = [g.id for g in self.definition.gates]
        return self._mutate("disable_all_gates", lambda: self._scheduler.configure_gates(ids, enabled=False))

    def enable_all_gates(self) -> TransitionResult:
        ids = [g.id for g in self.definition.gates]
        return self._mutate("enable_all_gates", lambda: self._scheduler.configure_gates(ids, enabled=True))

    def set_gate_approval_type(self, gate_id: str, approval_type) -> TransitionResult:
        """Override a gate's approval type for this run; None restores the definition's."""
        return self._mutate("set_gate_approval_type",
                            lambda: self._scheduler.configure_gates([gate_id], approval_override=approval_type),
                            gate=gate_id)

    def configure_gate(self, gate_id: str, **changes) -> TransitionResult:
        """Apply 'enabled' and/or 'approval_type' to one gate in a single transition."""
        unknown = sorted(set(changes) - {"enabled", "approval_type"})
        if unknown:
            raise ValueError(f"Unknown gate settings: {', '.join(unknown)}")
        kwargs: Dict[str, Any] = {}
        if "enabled" in changes:
            kwargs["enabled"] = bool(changes["enabled"])
        if "approval_type" in changes:
            kwargs["approval_override"] = changes["approval_type"]
        return self._mutate("configure_gate",
                            lambda: self._scheduler.configure_gates([gate_id], **kwargs),
                            gate=gate_id)

    def set_all_gates_auto(self) -> TransitionResult:
        ids = [g.id for g in self.definition.gates]
        return self._mutate("set_all_gates_auto",
                            lambda: self._scheduler.configure_gates(ids, approval_override=ApprovalType.AUTOMATED))

    # -- run lifecycle -------------------------------------------------------

    def abort(self, reason: str = "aborted by operator") -> TransitionResult:
        self.playback.pause()
        return self._mutate("abort", lambda: self._scheduler.abort(reason))

    def reset(self) -> TransitionResult:
        """Discard the current state and start over. Legal from any status; idempotent."""
        self.playback.pause()
        with self._lock:
            previous = self.state.run_status
            self.state, self._scheduler = self._fresh_state()
            self.resets += 1
            snapshot = self.state.snapshot()
            events = self.state.log.events()
        log_json("INFO", "loop_run_reset", run=self.run_id,
                 details={"previous_status": previous.value, "resets": self.resets})
        return TransitionResult(snapshot, events)

    # -- playback ------------------------------------------------------------

    def play(self) -> TransitionResult:
        self.playback.play()
        return TransitionResult(self.snapshot())

    def pause(self) -> TransitionResult:
        self.playback.pause()
        return TransitionResult(self.snapshot())

    def set_speed(self, interval_ms: int) -> TransitionResult:
        self.playback.set_speed(interval_ms)
        return TransitionResult(self.snapshot())

    def tick(self) -> TransitionResult:
        with self._lock:
            events = self.playback.tick()
            return TransitionResult(self.state.snapshot(), tuple(events))

    # -- queries -------------------------------------------------------------

    def snapshot(self) -> ExecutionSnapshot:
        with self._lock:
            return self.state.snapshot()

    def events(self, since: int = 0, level=None, category=None,
               limit: Optional[int] = None) -> Tuple[LogEvent, ...]:
        """Log events after *since*, optionally one level/category only and at most the last *limit*."""
        with self._lock:
            return self.state.log.query(since, level=level, category=category, limit=limit)

    def timeline(self) -> List[Dict[str, Any]]:
        with self._lock:
            return progress.timeline(self.state.log.events())

    def replay(self) -> ExecutionState:
        """Rebuild this run's state from its event log alone."""
        with self._lock:
            return replay(self.definition, self.state.log.events(), self.run_id)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = self.state.snapshot()
            events = len(self.state.log)
        out = snapshot.to_dict()
        out["events"] = events
        out["playback"] = self.playback.status()
        out["resets"] = self.resets
        return out


# ---------------------------------------------------------------------------
# LoopEngine
# ---------------------------------------------------------------------------

def _registry_from_config(config: ConfigManager) -> SkillRegistry:
    skills_dir = Path(config.get("skills_dir"))
    if not config.get("strict_registry"):
        return PermissiveSkillRegistry()
    if not skills_dir.is_dir():
        log_json("WARN", "skill_registry_unavailable",
                 details={"path": str(skills_dir), "fallback": "permissive"})
        return PermissiveSkillRegistry()
    return DirectorySkillRegistry(skills_dir)


class LoopEngine:
    """Definition catalog plus the registry of live runs (in memory only)."""

    def __init__(
        self,
        registry: Optional[SkillRegistry] = None,
        runner: Optional[StepRunner] = None,
        config: Optional[ConfigManager] = None,
        conditions: Optional[Dict[str, ConditionPredicate]] = None,
    ):
        self.config = config or get_config()
        self.registry: SkillRegistry = registry if registry is not None else _registry_from_config(self.config)
        self.runner = runner
        self.conditions = dict(conditions or {})
        self._definitions: Dict[str, LoopDefinition] = {}
        self._runs: Dict[str, LoopRun] = {}
        self._global_lock = threading.Lock()

    @property
    def fallback_defaults(self) -> LoopDefaults:
        return LoopDefaults(
            mode=parse_mode(self.config.get("default_mode")),
            autonomy=parse_autonomy(self.config.get("default_autonomy")),
        )

    # -- definitions ---------------------------------------------------------

    def validate(self, document) -> ValidationResult:
        return validate(document, self.registry, self.fallback_defaults)

    def define(self, document) -> LoopDefinition:
        """Validate and register a loop definition. Raises DefinitionError with every error."""
        result = self.validate(document)
        if not result.ok:
            loop_id = document.get("id") if isinstance(document, Mapping) else getattr(document, "id", None)
            raise DefinitionError(result.errors, loop_id=loop_id)
        definition = result.definition
        with self._global_lock:
            replaced = definition.id in self._definitions
            self._definitions[definition.id] = definition
        log_json("INFO", "loop_defined",
                 details={"loop": definition.id, "phases": len(definition.phases),
                          "gates": len(definition.gates), "replaced": replaced})
        return definition

    def list_definitions(self) -> List[Dict[str, Any]]:
        with self._global_lock:
            return [d.summary() for d in self._definitions.values()]

    def get_definition(self, loop_id: str) -> LoopDefinition:
        with self._global_lock:
            if loop_id not in self._definitions:
                raise UnknownLoopError(f"Loop '{loop_id}' is not defined.")
            return self._definitions[loop_id]

    def load_directory(self, root=None) -> Dict[str, Any]:
        """Validate and register every ``<root>/<id>/loop.json``."""
        root = Path(root or self.config.get("loops_dir"))
        loaded: List[str] = []
        failed: Dict[str, List[Dict[str, Any]]] = {}
        for loop_id, document in discover_loops(root).items():
            try:
                loaded.append(self.define(document).id)
            except DefinitionError as exc:
                failed[loop_id] = [e.to_dict() for e in exc.errors]
        log_json("INFO", "loops_loaded",
                 details={"path": str(root), "loaded": len(loaded), "failed": len(failed)})
        return {"loaded": loaded, "failed": failed}

    # -- runs ----------------------------------------------------------------

    def start(
        self,
        definition,
        *,
        autonomy=None,
        mode=None,
        project: Optional[str] = None,
        runner: Optional[StepRunner] = None,
    ) -> LoopRun:
        """Start a run from a loop id, a raw document or a LoopDefinition.

        Raises DefinitionError (carrying every validation error) before any
        run exists when the definition is invalid.
        """
        if isinstance(definition, str):
            loop_def = self.get_definition(definition)
        else:
            result = self.validate(definition)
            if not result.ok:
                loop_id = definition.get("id") if isinstance(definition, Mapping) else getattr(definition, "id", None)
                raise DefinitionError(result.errors, loop_id=loop_id)
            loop_def = result.definition

        max_runs = self.config.get("max_runs")
        with self._global_lock:
            if len(self._runs) >= max_runs:
                self._evict_finished_locked()
            if len(self._runs) >= max_runs:
                raise LoopEngineError(f"Run limit reached ({max_runs}); discard finished runs first.")
            run = LoopRun(
                str(uuid.uuid4()),
                loop_def,
                runner or self.runner,
                autonomy=autonomy,
                mode=mode,
                project=project,
                rejection_policy=self.config.get("gate_rejection_policy"),
                conditions=self.conditions,
                playback_interval_ms=self.config.get("playback_interval_ms"),
            )
            self._runs[run.run_id] = run
        log_json("INFO", "loop_run_started", run=run.run_id,
                 details={"loop": loop_def.id, "autonomy": run.autonomy.value,
                          "mode": run.mode.value, "project": project})
        return run

    def _evict_finished_locked(self) -> None:
        for run_id in [rid for rid, r in self._runs.items() if r.state.is_terminal]:
            del self._runs[run_id]
            log_json("INFO", "loop_run_evicted", run=run_id)

    def get_run(self, run_id: str) -> LoopRun:
        with self._global_lock:
            run = self._runs.get(run_id)
        if run is None:
            raise UnknownRunError(f"Run '{run_id}' not found.")
        return run

    def list_runs(self, status_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._global_lock:
            runs = list(self._runs.values())
        out = []
        for run in runs:
            snap = run.snapshot()
            if status_filter and snap.status.value != status_filter:
                continue
            out.append({
                "run_id": run.run_id,
                "loop_id": snap.loop_id,
                "status": snap.status.value,
                "current_phase": snap.current_phase.value,
                "progress": snap.progress,
                "playing": run.playback.playing,
            })
        return out

    def discard_run(self, run_id: str) -> None:
        run = self.get_run(run_id)
        run.playback.pause()
        with self._global_lock:
            self._runs.pop(run_id, None)
        log_json("INFO", "loop_run_discarded", run=run_id)

    def shutdown(self) -> None:
        """Stop every playback timer."""
        with self._global_lock:
            runs = list(self._runs.values())
        for run in runs:
            run.playback.pause()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_engine: Optional[LoopEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> LoopEngine:
    """Return the process-wide LoopEngine singleton."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = LoopEngine()
    return _engine
