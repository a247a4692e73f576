"""Shared loop documents and engine builders for the loop engine tests."""
import copy
from pathlib import Path
from typing import Any, Dict, Optional

from core.config_manager import ConfigManager
from core.loop_engine import LoopEngine
from core.skill_registry import InMemorySkillRegistry

REPO_ROOT = Path(__file__).resolve().parent.parent

SKILLS = {
    "spec": [],
    "research": [],
    "build": ["spec"],
    "lint": [],
    "finish": ["build"],
}

_THREE_PHASE = {
    "id": "three-phase",
    "name": "Three Phase",
    "phases": [
        {"name": "INIT", "skills": ["spec"]},
        {"name": "IMPLEMENT", "skills": ["build"]},
        {"name": "COMPLETE", "skills": ["finish"]},
    ],
    "gates": [
        {"id": "spec-gate", "name": "Spec Approval", "afterPhase": "INIT",
         "approvalType": "human", "deliverables": ["SPEC.md"]},
    ],
    "defaults": {"mode": "greenfield", "autonomy": "supervised"},
}


def three_phase_doc(**changes: Any) -> Dict[str, Any]:
    """INIT:{spec} -> IMPLEMENT:{build} -> COMPLETE:{finish}, one human gate after INIT."""
    doc = copy.deepcopy(_THREE_PHASE)
    doc.update(changes)
    return doc


def automated_gate_doc() -> Dict[str, Any]:
    return three_phase_doc(
        id="auto-gate",
        gates=[{"id": "build-check", "name": "Build Check", "afterPhase": "IMPLEMENT",
                "approvalType": "automated"}],
    )


def optional_phase_doc() -> Dict[str, Any]:
    """An optional SCAFFOLD phase guarded by a conditional gate."""
    return three_phase_doc(
        id="optional-phase",
        phases=[
            {"name": "INIT", "skills": ["spec", {"skillId": "research", "required": False}]},
            {"name": "SCAFFOLD", "required": False, "skills": ["lint"]},
            {"name": "IMPLEMENT", "skills": ["build"]},
            {"name": "COMPLETE", "skills": ["finish"]},
        ],
        gates=[{"id": "lint-ran", "name": "Lint Ran", "afterPhase": "SCAFFOLD",
                "approvalType": "conditional", "required": False}],
    )


def make_registry(extra: Optional[Dict[str, list]] = None) -> InMemorySkillRegistry:
    skills = dict(SKILLS)
    skills.update(extra or {})
    return InMemorySkillRegistry(skills)


def make_config(tmp_path: Path, **overrides: Any) -> ConfigManager:
    return ConfigManager(config_file=tmp_path / "loop_engine.config.json", overrides=overrides)


def make_engine(tmp_path: Path, runner=None, registry=None, **overrides: Any) -> LoopEngine:
    return LoopEngine(registry=registry or make_registry(), runner=runner,
                      config=make_config(tmp_path, **overrides))
