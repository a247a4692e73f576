"""
Loop definition model and loop.json loading.

A loop definition is immutable once built. ``LoopDefinition.from_dict`` is the
lenient constructor used *after* validation: it applies the persisted-form
defaults (phase and gate ``required`` default to true, ``approvalType`` to
human, ``version`` to 1.0.0, defaults to greenfield / supervised) and assumes
the structure has already passed ``core.validator.validate``.

Persisted shape (loop.json)::

    {
      "id": "engineering-loop",
      "name": "Engineering Loop",
      "version": "1.0.0",
      "phases": [
        {"name": "INIT", "skills": ["spec", {"skillId": "research", "required": false}]},
        ...
      ],
      "gates": [
        {"id": "spec-gate", "name": "Spec Approval", "afterPhase": "INIT",
         "approvalType": "human", "deliverables": ["SPEC.md"]}
      ],
      "defaults": {"mode": "greenfield", "autonomy": "supervised"},
      "ui": {}, "skillUI": {}, "metadata": {}
    }
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from core.exceptions import LoopLoadError
from core.logging_utils import log_json
from core.phases import (
    ApprovalType,
    Autonomy,
    LoopMode,
    PhaseTag,
    parse_approval_type,
    parse_autonomy,
    parse_mode,
    parse_phase_tag,
)

DEFAULT_VERSION = "1.0.0"
DEFAULT_CONDITION = "phase_executed"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PhaseSkill:
    """One step inside a phase. ``required=False`` marks it individually skippable."""
    skill_id: str
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"skillId": self.skill_id, "required": self.required}


@dataclass(frozen=True)
class Phase:
    name: PhaseTag
    skills: Tuple[PhaseSkill, ...]
    required: bool = True

    @property
    def skill_ids(self) -> Tuple[str, ...]:
        return tuple(s.skill_id for s in self.skills)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "skills": [s.to_dict() for s in self.skills],
            "required": self.required,
        }


@dataclass(frozen=True)
class Gate:
    id: str
    name: str
    after_phase: PhaseTag
    required: bool = True
    approval_type: ApprovalType = ApprovalType.HUMAN
    deliverables: Tuple[str, ...] = ()
    condition: str = DEFAULT_CONDITION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "afterPhase": self.after_phase.value,
            "required": self.required,
            "approvalType": self.approval_type.value,
            "deliverables": list(self.deliverables),
            "condition": self.condition,
        }


@dataclass(frozen=True)
class LoopDefaults:
    mode: LoopMode = LoopMode.GREENFIELD
    autonomy: Autonomy = Autonomy.SUPERVISED


@dataclass(frozen=True)
class LoopDefinition:
    """An author-supplied loop: ordered phases, gates between them, run defaults."""
    id: str
    phases: Tuple[Phase, ...]
    gates: Tuple[Gate, ...] = ()
    defaults: LoopDefaults = field(default_factory=LoopDefaults)
    name: str = ""
    version: str = DEFAULT_VERSION
    description: str = ""
    # Presentation-only; carried through, never interpreted.
    ui: Dict[str, Any] = field(default_factory=dict, compare=False)
    skill_ui: Dict[str, Any] = field(default_factory=dict, compare=False)
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    # -- lookups -------------------------------------------------------------

    @property
    def total_steps(self) -> int:
        return sum(len(p.skills) for p in self.phases)

    def phase_index(self, tag: PhaseTag) -> Optional[int]:
        for i, phase in enumerate(self.phases):
            if phase.name == tag:
                return i
        return None

    def gates_after(self, phase_idx: int) -> List[Gate]:
        tag = self.phases[phase_idx].name
        return [g for g in self.gates if g.after_phase == tag]

    def gate(self, gate_id: str) -> Optional[Gate]:
        for g in self.gates:
            if g.id == gate_id:
                return g
        return None

    def skill_ids(self) -> List[str]:
        return [sid for p in self.phases for sid in p.skill_ids]

    # -- (de)serialisation ---------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], fallback: Optional[LoopDefaults] = None) -> "LoopDefinition":
        """Build from the persisted form. *fallback* supplies mode/autonomy the document omits."""
        fallback = fallback or LoopDefaults()
        phases = tuple(_phase_from_dict(p) for p in data.get("phases") or [])
        gates = tuple(_gate_from_dict(g) for g in data.get("gates") or [])
        raw_defaults = data.get("defaults") or {}
        defaults = LoopDefaults(
            mode=parse_mode(raw_defaults.get("mode") or fallback.mode),
            autonomy=parse_autonomy(raw_defaults.get("autonomy") or fallback.autonomy),
        )
        loop_id = str(data["id"])
        return cls(
            id=loop_id,
            name=data.get("name") or loop_id,
            version=data.get("version") or DEFAULT_VERSION,
            description=data.get("description") or "",
            phases=phases,
            gates=gates,
            defaults=defaults,
            ui=dict(data.get("ui") or {}),
            skill_ui=dict(data.get("skillUI") or {}),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "phases": [p.to_dict() for p in self.phases],
            "gates": [g.to_dict() for g in self.gates],
            "defaults": {
                "mode": self.defaults.mode.value,
                "autonomy": self.defaults.autonomy.value,
            },
            "ui": dict(self.ui),
            "skillUI": dict(self.skill_ui),
            "metadata": dict(self.metadata),
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "phases": [p.name.value for p in self.phases],
            "gates": [g.id for g in self.gates],
            "skills": self.skill_ids(),
            "skill_count": self.total_steps,
        }


def phase_skill_entries(raw_phase: Mapping[str, Any]) -> Any:
    """Raw skill list of a persisted phase (``skills`` or ``skillIds``)."""
    if "skills" in raw_phase:
        return raw_phase.get("skills")
    return raw_phase.get("skillIds")


def skill_entry_id(entry: Any) -> Optional[str]:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, Mapping):
        sid = entry.get("skillId", entry.get("id"))
        return sid if isinstance(sid, str) else None
    return None


def _phase_from_dict(raw: Mapping[str, Any]) -> Phase:
    skills = []
    for entry in phase_skill_entries(raw) or []:
        required = True
        if isinstance(entry, Mapping):
            required = entry.get("required") is not False
        skills.append(PhaseSkill(skill_id=skill_entry_id(entry), required=required))
    return Phase(
        name=parse_phase_tag(raw["name"]),
        skills=tuple(skills),
        required=raw.get("required") is not False,
    )


def _gate_from_dict(raw: Mapping[str, Any]) -> Gate:
    return Gate(
        id=str(raw["id"]),
        name=raw.get("name") or str(raw["id"]),
        after_phase=parse_phase_tag(raw["afterPhase"]),
        required=raw.get("required") is not False,
        approval_type=parse_approval_type(raw.get("approvalType") or ApprovalType.HUMAN.value),
        deliverables=tuple(raw.get("deliverables") or ()),
        condition=raw.get("condition") or DEFAULT_CONDITION,
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_loop_document(path) -> Dict[str, Any]:
    """Read a loop.json file (or a directory containing one) into a raw mapping."""
    path = Path(path)
    if path.is_dir():
        path = path / "loop.json"
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LoopLoadError(f"Cannot read loop file {path}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        log_json("ERROR", "loop_parse_failed", details={"path": str(path), "error": str(exc)})
        raise LoopLoadError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise LoopLoadError(f"{path} must contain a JSON object, got {type(data).__name__}")
    log_json("DEBUG", "loop_document_loaded", details={"path": str(path), "id": data.get("id")})
    return data


def discover_loops(root) -> Dict[str, Dict[str, Any]]:
    """Find ``<root>/<name>/loop.json`` documents. Returns {loop_id: raw document}.

    Unreadable documents are logged and left out; the caller validates the rest.
    """
    root = Path(root)
    found: Dict[str, Dict[str, Any]] = {}
    if not root.is_dir():
        log_json("WARN", "loops_dir_missing", details={"path": str(root)})
        return found
    for loop_file in sorted(root.glob("*/loop.json")):
        try:
            doc = load_loop_document(loop_file)
        except LoopLoadError as exc:
            log_json("WARN", "loop_discovery_skipped", details={"path": str(loop_file), "error": str(exc)})
            continue
        loop_id = doc.get("id") if isinstance(doc.get("id"), str) else loop_file.parent.name
        found[loop_id] = doc
    return found
