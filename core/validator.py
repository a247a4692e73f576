"""
Loop definition validator.

Four passes run over the persisted (raw mapping) form of a loop definition:

  schema       required fields, primitive types, enum values
  referential  skills resolve in the registry, gates reference declared
               phases, no duplicate phase names or gate ids
  dependency   prerequisites sit in the same or an earlier phase, no cycles in
               the transitive prerequisite graph
  semantic     canonical phase order, INIT first, COMPLETE last, META not
               executable, required gates never follow optional phases

Every pass runs and every error is collected. A defect is reported by the
first pass that can see it; later passes skip the elements an earlier pass
already rejected, so one defect never produces a cascade of errors.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

import networkx as nx

from core.logging_utils import log_json
from core.loop_definition import LoopDefaults, LoopDefinition, phase_skill_entries, skill_entry_id
from core.phases import (
    PhaseTag,
    parse_approval_type,
    parse_autonomy,
    parse_mode,
    parse_phase_tag,
)
from core.skill_registry import SkillRegistry


class ValidationPass(str, Enum):
    SCHEMA = "schema"
    REFERENTIAL = "referential"
    DEPENDENCY = "dependency"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class ValidationError:
    pass_name: ValidationPass
    path: str
    message: str
    refs: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"[{self.pass_name.value}] {self.path}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass": self.pass_name.value,
            "path": self.path,
            "message": self.message,
            "refs": list(self.refs),
        }


@dataclass
class ValidationResult:
    errors: List[ValidationError] = field(default_factory=list)
    definition: Optional[LoopDefinition] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def by_pass(self, pass_name: ValidationPass) -> List[ValidationError]:
        return [e for e in self.errors if e.pass_name == pass_name]

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "errors": [e.to_dict() for e in self.errors]}


# ---------------------------------------------------------------------------
# Intermediate view: the elements that survived the schema pass
# ---------------------------------------------------------------------------

@dataclass
class _PhaseView:
    index: int
    tag: Optional[PhaseTag]
    required: bool
    skills: List[Tuple[int, str]]  # (skill position, skill id)


@dataclass
class _GateView:
    index: int
    gate_id: Optional[str]
    after_phase: Optional[PhaseTag]
    required: bool


@dataclass
class _Context:
    errors: List[ValidationError] = field(default_factory=list)
    phases: List[_PhaseView] = field(default_factory=list)
    gates: List[_GateView] = field(default_factory=list)
    unknown_skills: Set[str] = field(default_factory=set)

    def add(self, pass_name: ValidationPass, path: str, message: str, *refs: str) -> None:
        self.errors.append(ValidationError(pass_name, path, message, tuple(refs)))


def _is_bool_or_absent(raw: Mapping, key: str) -> bool:
    return key not in raw or isinstance(raw[key], bool)


# ---------------------------------------------------------------------------
# Pass 1: schema
# ---------------------------------------------------------------------------

def _check_schema(data: Mapping[str, Any], ctx: _Context) -> None:
    S = ValidationPass.SCHEMA
    loop_id = data.get("id")
    if not isinstance(loop_id, str) or not loop_id.strip():
        ctx.add(S, "id", "required non-empty string")
    for key in ("name", "version", "description"):
        if key in data and data[key] is not None and not isinstance(data[key], str):
            ctx.add(S, key, f"must be a string, got {type(data[key]).__name__}")
    for key in ("ui", "skillUI", "metadata"):
        if key in data and data[key] is not None and not isinstance(data[key], Mapping):
            ctx.add(S, key, "must be an object")

    phases = data.get("phases")
    if not isinstance(phases, list) or not phases:
        ctx.add(S, "phases", "required non-empty list")
        phases = []
    for i, raw in enumerate(phases):
        path = f"phases[{i}]"
        if not isinstance(raw, Mapping):
            ctx.add(S, path, "must be an object")
            continue
        tag = None
        try:
            tag = parse_phase_tag(raw.get("name"))
        except ValueError as exc:
            ctx.add(S, f"{path}.name", str(exc))
        if not _is_bool_or_absent(raw, "required"):
            ctx.add(S, f"{path}.required", "must be a boolean")
        entries = phase_skill_entries(raw)
        skills: List[Tuple[int, str]] = []
        if not isinstance(entries, list) or not entries:
            ctx.add(S, f"{path}.skills", "required non-empty list of skill ids")
            entries = []
        for j, entry in enumerate(entries):
            sid = skill_entry_id(entry)
            if not sid or not sid.strip():
                ctx.add(S, f"{path}.skills[{j}]", "must be a skill id or an object with 'skillId'")
                continue
            if isinstance(entry, Mapping) and not _is_bool_or_absent(entry, "required"):
                ctx.add(S, f"{path}.skills[{j}].required", "must be a boolean")
                continue
            skills.append((j, sid))
        ctx.phases.append(_PhaseView(i, tag, raw.get("required") is not False, skills))

    gates = data.get("gates")
    if gates is None:
        gates = []
    elif not isinstance(gates, list):
        ctx.add(S, "gates", "must be a list")
        gates = []
    for i, raw in enumerate(gates):
        path = f"gates[{i}]"
        if not isinstance(raw, Mapping):
            ctx.add(S, path, "must be an object")
            continue
        gate_id = raw.get("id")
        if not isinstance(gate_id, str) or not gate_id.strip():
            ctx.add(S, f"{path}.id", "required non-empty string")
            gate_id = None
        if "name" in raw and not isinstance(raw["name"], str):
            ctx.add(S, f"{path}.name", "must be a string")
        after = None
        try:
            after = parse_phase_tag(raw.get("afterPhase"))
        except ValueError as exc:
            ctx.add(S, f"{path}.afterPhase", str(exc))
        if not _is_bool_or_absent(raw, "required"):
            ctx.add(S, f"{path}.required", "must be a boolean")
        if raw.get("approvalType") is not None:
            try:
                parse_approval_type(raw["approvalType"])
            except ValueError as exc:
                ctx.add(S, f"{path}.approvalType", str(exc))
        deliverables = raw.get("deliverables")
        if deliverables is not None and (
            not isinstance(deliverables, list) or not all(isinstance(d, str) for d in deliverables)
        ):
            ctx.add(S, f"{path}.deliverables", "must be a list of strings")
        if raw.get("condition") is not None and not isinstance(raw["condition"], str):
            ctx.add(S, f"{path}.condition", "must be a string")
        ctx.gates.append(_GateView(i, gate_id, after, raw.get("required") is not False))

    defaults = data.get("defaults")
    if defaults is not None:
        if not isinstance(defaults, Mapping):
            ctx.add(S, "defaults", "must be an object")
        else:
            for key, parser in (("mode", parse_mode), ("autonomy", parse_autonomy)):
                if defaults.get(key) is not None:
                    try:
                        parser(defaults[key])
                    except ValueError as exc:
                        ctx.add(S, f"defaults.{key}", str(exc))


# ---------------------------------------------------------------------------
# Pass 2: referential
# ---------------------------------------------------------------------------

def _check_references(ctx: _Context, registry: SkillRegistry) -> None:
    R = ValidationPass.REFERENTIAL
    for phase in ctx.phases:
        for j, sid in phase.skills:
            if registry.resolve(sid) is None:
                ctx.unknown_skills.add(sid)
                ctx.add(R, f"phases[{phase.index}].skills[{j}]",
                        f"skill '{sid}' not found in registry", sid)

    seen_phases: Dict[PhaseTag, int] = {}
    for phase in ctx.phases:
        if phase.tag is None:
            continue
        if phase.tag in seen_phases:
            ctx.add(R, f"phases[{phase.index}].name",
                    f"duplicate phase {phase.tag.value} (first declared at phases[{seen_phases[phase.tag]}])",
                    phase.tag.value)
        else:
            seen_phases[phase.tag] = phase.index

    seen_gates: Dict[str, int] = {}
    for gate in ctx.gates:
        if gate.gate_id is not None:
            if gate.gate_id in seen_gates:
                ctx.add(R, f"gates[{gate.index}].id",
                        f"duplicate gate id '{gate.gate_id}' (first declared at gates[{seen_gates[gate.gate_id]}])",
                        gate.gate_id)
            else:
                seen_gates[gate.gate_id] = gate.index
        if gate.after_phase is not None and gate.after_phase not in seen_phases:
            ctx.add(R, f"gates[{gate.index}].afterPhase",
                    f"gate references phase {gate.after_phase.value} which is not declared",
                    gate.gate_id or "", gate.after_phase.value)


# ---------------------------------------------------------------------------
# Pass 3: dependency
# ---------------------------------------------------------------------------

def _find_cycles(graph: Dict[str, Tuple[str, ...]]) -> List[Tuple[str, ...]]:
    """Every elementary cycle of the prerequisite graph, each rotated to start at its smallest id."""
    digraph = nx.DiGraph()
    digraph.add_nodes_from(graph)
    digraph.add_edges_from((sid, prereq) for sid, prereqs in graph.items() for prereq in prereqs)
    cycles = set()
    for cycle in nx.simple_cycles(digraph):
        pivot = cycle.index(min(cycle))
        cycles.add(tuple(cycle[pivot:] + cycle[:pivot]))
    return sorted(cycles)


def _check_dependencies(ctx: _Context, registry: SkillRegistry) -> None:
    D = ValidationPass.DEPENDENCY
    position: Dict[str, int] = {}
    for phase in ctx.phases:
        for _, sid in phase.skills:
            position.setdefault(sid, phase.index)

    graph: Dict[str, Tuple[str, ...]] = {}
    frontier = [sid for sid in position if sid not in ctx.unknown_skills]
    while frontier:
        sid = frontier.pop()
        if sid in graph:
            continue
        record = registry.resolve(sid)
        if record is None:
            continue
        graph[sid] = tuple(record.prerequisites)
        frontier.extend(p for p in record.prerequisites if p not in graph)

    for phase in ctx.phases:
        for j, sid in phase.skills:
            if sid not in graph:
                continue
            for prereq in graph[sid]:
                if prereq == sid:
                    continue  # reported as a cycle
                path = f"phases[{phase.index}].skills[{j}]"
                if prereq not in position:
                    ctx.add(D, path,
                            f"skill '{sid}' requires '{prereq}', which is not part of this loop",
                            sid, prereq)
                elif position[prereq] > phase.index:
                    later = ctx.phases[position[prereq]].tag
                    where = later.value if later else f"phases[{position[prereq]}]"
                    ctx.add(D, path,
                            f"skill '{sid}' depends on '{prereq}', which runs later (in {where})",
                            sid, prereq)

    for cycle in _find_cycles(graph):
        chain = " -> ".join(cycle + (cycle[0],))
        ctx.add(D, "prerequisites", f"dependency cycle: {chain}", *cycle)


# ---------------------------------------------------------------------------
# Pass 4: semantic
# ---------------------------------------------------------------------------

def _check_semantics(ctx: _Context) -> None:
    M = ValidationPass.SEMANTIC
    tagged = [p for p in ctx.phases if p.tag is not None]

    for phase in tagged:
        if phase.tag is PhaseTag.META:
            ctx.add(M, f"phases[{phase.index}].name",
                    "META is reserved and cannot be an executable phase", "META")

    seen: Set[PhaseTag] = set()
    last: Optional[_PhaseView] = None
    for phase in tagged:
        if not phase.tag.is_ordered or phase.tag in seen:
            continue  # META reported above, repeats by the referential pass
        seen.add(phase.tag)
        if last is not None and phase.tag.order < last.tag.order:
            ctx.add(M, f"phases[{phase.index}].name",
                    f"phase {phase.tag.value} is out of order (follows {last.tag.value})",
                    phase.tag.value, last.tag.value)
            continue
        last = phase

    if ctx.phases:
        first, final = ctx.phases[0], ctx.phases[-1]
        if first.tag is not None and first.tag.is_ordered and first.tag is not PhaseTag.INIT:
            ctx.add(M, "phases[0].name", f"first phase must be INIT, got {first.tag.value}",
                    first.tag.value)
        if final.tag is not None and final.tag.is_ordered and final.tag is not PhaseTag.COMPLETE:
            ctx.add(M, f"phases[{final.index}].name",
                    f"last phase must be COMPLETE, got {final.tag.value}", final.tag.value)

    required_by_tag: Dict[PhaseTag, bool] = {}
    for phase in tagged:
        required_by_tag.setdefault(phase.tag, phase.required)
    for gate in ctx.gates:
        if not gate.required or gate.after_phase not in required_by_tag:
            continue
        if not required_by_tag[gate.after_phase]:
            ctx.add(M, f"gates[{gate.index}].required",
                    f"required gate '{gate.gate_id}' follows optional phase {gate.after_phase.value}",
                    gate.gate_id or "", gate.after_phase.value)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate(definition, registry: SkillRegistry,
             fallback: Optional[LoopDefaults] = None) -> ValidationResult:
    """Validate a loop definition (raw mapping or LoopDefinition) against *registry*.

    Returns a ValidationResult holding every error found. When ``ok`` the
    result also carries the parsed ``LoopDefinition``.
    """
    data = definition.to_dict() if isinstance(definition, LoopDefinition) else definition
    ctx = _Context()
    if not isinstance(data, Mapping):
        ctx.add(ValidationPass.SCHEMA, "$", f"loop definition must be an object, got {type(data).__name__}")
        return ValidationResult(errors=ctx.errors)

    _check_schema(data, ctx)
    _check_references(ctx, registry)
    _check_dependencies(ctx, registry)
    _check_semantics(ctx)

    result = ValidationResult(errors=ctx.errors)
    loop_id = data.get("id")
    if result.ok:
        result.definition = LoopDefinition.from_dict(data, fallback)
        log_json("DEBUG", "loop_validated", details={"loop": loop_id})
    else:
        counts: Dict[str, int] = {}
        for err in ctx.errors:
            counts[err.pass_name.value] = counts.get(err.pass_name.value, 0) + 1
        log_json("WARN", "loop_validation_failed",
                 details={"loop": loop_id, "error_count": len(ctx.errors), "by_pass": counts})
    return result
