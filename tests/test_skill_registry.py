"""Tests for skill registries and SKILL.md frontmatter parsing (core/skill_registry.py)."""
import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from core.exceptions import SkillRegistryError
from core.phases import PhaseTag
from core.skill_registry import (
    DirectorySkillRegistry,
    InMemorySkillRegistry,
    PermissiveSkillRegistry,
    parse_skill_frontmatter,
)
from core.validator import validate
from tests.loop_test_utils import REPO_ROOT


def _write_skill(root: Path, name: str, text: str) -> None:
    (root / name).mkdir(parents=True, exist_ok=True)
    (root / name / "SKILL.md").write_text(text, encoding="utf-8")


class TestFrontmatter:
    def test_parses_mapping(self):
        meta = parse_skill_frontmatter("---\nname: build\ndepends_on: [spec]\n---\n# Build\n")
        assert meta == {"name": "build", "depends_on": ["spec"]}

    def test_no_frontmatter(self):
        assert parse_skill_frontmatter("# Just a heading\n") == {}

    def test_invalid_yaml(self):
        with pytest.raises(SkillRegistryError):
            parse_skill_frontmatter("---\nname: [unclosed\n---\n")

    def test_non_mapping(self):
        with pytest.raises(SkillRegistryError, match="mapping"):
            parse_skill_frontmatter("---\n- a\n- b\n---\n")


class TestInMemory:
    def test_resolve_and_add(self):
        registry = InMemorySkillRegistry({"spec": [], "build": ["spec"]})
        assert registry.resolve("build").prerequisites == ("spec",)
        assert registry.resolve("ghost") is None
        registry.add("ghost", ["build"])
        assert "ghost" in registry
        assert len(registry) == 3

    def test_permissive_resolves_anything(self):
        record = PermissiveSkillRegistry().resolve("anything")
        assert record.skill_id == "anything"
        assert record.prerequisites == ()


class TestDirectoryRegistry:
    def test_loads_depends_on(self, tmp_path):
        _write_skill(tmp_path, "spec", "---\nname: spec\nphase: INIT\n---\n")
        _write_skill(tmp_path, "build", "---\ndepends_on: spec\ndescription: Build it\n---\n")
        registry = DirectorySkillRegistry(tmp_path)
        assert registry.resolve("build").prerequisites == ("spec",)
        assert registry.resolve("build").description == "Build it"
        assert registry.resolve("spec").phase is PhaseTag.INIT
        assert registry.errors == {}

    def test_broken_skill_is_reported_not_loaded(self, tmp_path):
        _write_skill(tmp_path, "good", "---\nname: good\n---\n")
        _write_skill(tmp_path, "bad", "---\nname: [oops\n---\n")
        registry = DirectorySkillRegistry(tmp_path)
        assert registry.resolve("good") is not None
        assert registry.resolve("bad") is None
        assert list(registry.errors) == ["bad"]

    def test_reload_picks_up_new_skills(self, tmp_path):
        registry = DirectorySkillRegistry(tmp_path)
        assert len(registry) == 0
        _write_skill(tmp_path, "late", "---\nname: late\n---\n")
        registry.reload()
        assert "late" in registry

    def test_missing_directory_is_empty(self, tmp_path):
        assert len(DirectorySkillRegistry(tmp_path / "nope")) == 0

    def test_bundled_skills_validate_bundled_loop(self):
        import json
        registry = DirectorySkillRegistry(REPO_ROOT / "skills")
        doc = json.loads((REPO_ROOT / "loops" / "engineering-loop" / "loop.json").read_text())
        result = validate(doc, registry)
        assert result.ok, [str(e) for e in result.errors]
