"""
Skill registry interface and implementations.

The engine only needs one fact per skill: the ids of its prerequisite skills.
A registry is injected into the validator and the engine; there is no
process-wide registry, so tests and concurrent engines can use distinct ones.

``DirectorySkillRegistry`` reads the skills library layout used by the loop
authoring tools: ``<root>/<skill-id>/SKILL.md`` with a YAML frontmatter block
whose ``depends_on`` list names the prerequisites.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple

import yaml

from core.exceptions import SkillRegistryError
from core.logging_utils import log_json
from core.phases import PhaseTag, parse_phase_tag

_FRONTMATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)


@dataclass(frozen=True)
class SkillRecord:
    skill_id: str
    prerequisites: Tuple[str, ...] = ()
    phase: Optional[PhaseTag] = None
    description: str = field(default="", compare=False)


class SkillRegistry(Protocol):
    """Read-only prerequisite lookup. ``resolve`` returns None for unknown ids."""

    def resolve(self, skill_id: str) -> Optional[SkillRecord]:
        ...


class InMemorySkillRegistry:
    """Registry backed by a plain mapping of skill id → prerequisite ids."""

    def __init__(self, prerequisites: Optional[Mapping[str, Iterable[str]]] = None):
        self._records: Dict[str, SkillRecord] = {}
        for skill_id, prereqs in (prerequisites or {}).items():
            self.add(skill_id, prereqs)

    def add(self, skill_id: str, prerequisites: Iterable[str] = (), phase=None) -> SkillRecord:
        record = SkillRecord(
            skill_id=skill_id,
            prerequisites=tuple(prerequisites),
            phase=parse_phase_tag(phase) if phase else None,
        )
        self._records[skill_id] = record
        return record

    def resolve(self, skill_id: str) -> Optional[SkillRecord]:
        return self._records.get(skill_id)

    def __contains__(self, skill_id: object) -> bool:
        return skill_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class PermissiveSkillRegistry:
    """Resolves every id with no prerequisites. Used when strict_registry is off."""

    def resolve(self, skill_id: str) -> Optional[SkillRecord]:
        return SkillRecord(skill_id=skill_id)


def parse_skill_frontmatter(text: str) -> Dict:
    """Return the YAML frontmatter of a SKILL.md document ({} when absent)."""
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise SkillRegistryError(f"Invalid SKILL.md frontmatter: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SkillRegistryError("SKILL.md frontmatter must be a mapping")
    return data


class DirectorySkillRegistry(InMemorySkillRegistry):
    """Registry loaded from ``<root>/<skill-id>/SKILL.md`` documents."""

    def __init__(self, root):
        super().__init__()
        self.root = Path(root)
        self.errors: Dict[str, str] = {}
        self.reload()

    def reload(self) -> None:
        self._records.clear()
        self.errors.clear()
        if not self.root.is_dir():
            log_json("WARN", "skills_dir_missing", details={"path": str(self.root)})
            return
        for skill_file in sorted(self.root.glob("*/SKILL.md")):
            skill_id = skill_file.parent.name
            try:
                meta = parse_skill_frontmatter(skill_file.read_text(encoding="utf-8"))
            except (OSError, SkillRegistryError) as exc:
                self.errors[skill_id] = str(exc)
                log_json("WARN", "skill_load_failed",
                         details={"skill": skill_id, "error": str(exc)})
                continue
            depends_on = meta.get("depends_on") or []
            if not isinstance(depends_on, list):
                depends_on = [depends_on]
            phase = None
            try:
                phase = parse_phase_tag(meta["phase"]) if meta.get("phase") else None
            except ValueError:
                log_json("DEBUG", "skill_phase_unrecognised",
                         details={"skill": skill_id, "phase": meta.get("phase")})
            self._records[skill_id] = SkillRecord(
                skill_id=skill_id,
                prerequisites=tuple(str(d) for d in depends_on),
                phase=phase,
                description=str(meta.get("description") or ""),
            )
        log_json("INFO", "skill_registry_loaded",
                 details={"path": str(self.root), "skills": len(self._records),
                          "errors": len(self.errors)})
