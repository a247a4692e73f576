"""Tests for the loop-engine command line (loop_cli/cli_main.py)."""
import json
import sys
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from core.config_manager import DEFAULT_CONFIG
from core.phases import RunStatus
from core.step_runner import SimulatedStepRunner
from loop_cli.cli_main import EXIT_FAILED, EXIT_OK, EXIT_USAGE, EXIT_WAITING, drive_run, main
from tests.loop_test_utils import REPO_ROOT, make_engine, three_phase_doc

ENGINEERING_LOOP = REPO_ROOT / "loops" / "engineering-loop"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("PORT", "HOST", "SKILLS_PATH", "LOOP_LOG_STREAM"):
        monkeypatch.delenv(key, raising=False)
    for key in DEFAULT_CONFIG:
        monkeypatch.delenv(f"LOOP_{key.upper()}", raising=False)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "loop_engine.config.json"
    path.write_text(json.dumps({
        "skills_dir": str(REPO_ROOT / "skills"),
        "loops_dir": str(REPO_ROOT / "loops"),
    }))
    return str(path)


def _run_json(capsys, *argv):
    code = main(list(argv))
    return code, json.loads(capsys.readouterr().out)


class TestValidateCommand:
    def test_bundled_loop_is_valid(self, config_path, capsys):
        code, body = _run_json(capsys, "--config", config_path, "validate", str(ENGINEERING_LOOP), "--json")
        assert code == EXIT_OK
        assert body == {"ok": True, "errors": []}

    def test_invalid_loop(self, config_path, tmp_path, capsys):
        doc = json.loads((ENGINEERING_LOOP / "loop.json").read_text())
        doc["phases"][0]["skills"].append("no-such-skill")
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps(doc))
        code, body = _run_json(capsys, "--config", config_path, "validate", str(bad), "--json")
        assert code == EXIT_FAILED
        assert body["ok"] is False
        assert any("no-such-skill" in e["message"] for e in body["errors"])

    def test_unreadable_file(self, config_path, tmp_path):
        assert main(["--config", config_path, "validate", str(tmp_path / "missing.json")]) == EXIT_FAILED

    def test_human_readable_output(self, config_path, capsys):
        assert main(["--config", config_path, "validate", str(ENGINEERING_LOOP)]) == EXIT_OK
        assert "valid" in capsys.readouterr().out


class TestRunCommand:
    def test_runs_to_completion_with_approvals(self, config_path, capsys):
        code, body = _run_json(capsys, "--config", config_path, "run", str(ENGINEERING_LOOP),
                               "--approve-gates", "--json")
        assert code == EXIT_OK
        assert body["status"] == "completed"
        assert body["progress"] == 100.0
        approvals = [e for e in body["log"] if e["action"] == "gate_cleared"]
        assert len(approvals) == 5

    def test_waits_on_first_human_gate(self, config_path, capsys):
        code, body = _run_json(capsys, "--config", config_path, "run", str(ENGINEERING_LOOP), "--json")
        assert code == EXIT_WAITING
        assert body["status"] == "blocked"
        assert body["current_phase"] == "INIT"

    def test_autonomous_needs_no_approvals(self, config_path, capsys):
        code, body = _run_json(capsys, "--config", config_path, "run", str(ENGINEERING_LOOP),
                               "--autonomy", "autonomous", "--json")
        assert code == EXIT_OK
        assert body["status"] == "completed"

    def test_failed_automated_gate(self, config_path, capsys):
        code, body = _run_json(capsys, "--config", config_path, "run", str(ENGINEERING_LOOP),
                               "--approve-gates", "--fail-gate", "test-gate", "--json")
        assert code == EXIT_FAILED
        assert body["status"] == "failed"
        assert [r["gate_id"] for r in body["rejections"]] == ["test-gate"]

    def test_failed_step(self, config_path, capsys):
        code, body = _run_json(capsys, "--config", config_path, "run", str(ENGINEERING_LOOP),
                               "--approve-gates", "--fail-step", "implement", "--json")
        assert code == EXIT_FAILED
        assert body["current_phase"] == "IMPLEMENT"

    def test_rich_output(self, config_path, capsys):
        assert main(["--config", config_path, "run", str(ENGINEERING_LOOP), "--approve-gates"]) == EXIT_OK
        assert "Timeline" in capsys.readouterr().out


class TestMisc:
    def test_config_command(self, config_path, capsys):
        code, body = _run_json(capsys, "--config", config_path, "config")
        assert code == EXIT_OK
        assert body["skills_dir"] == str(REPO_ROOT / "skills")
        assert body["playback_interval_ms"] == 800

    def test_no_command(self, capsys):
        assert main([]) == EXIT_USAGE


class TestDriveRun:
    def test_stops_when_waiting(self, tmp_path):
        run = make_engine(tmp_path).start(three_phase_doc())
        snapshot = drive_run(run)
        assert snapshot.status is RunStatus.BLOCKED
        assert snapshot.gate("spec-gate").holding

    def test_approves_waiting_gates(self, tmp_path):
        run = make_engine(tmp_path).start(three_phase_doc())
        snapshot = drive_run(run, approve_gates=True)
        assert snapshot.status is RunStatus.COMPLETED
        assert snapshot.gate("spec-gate").approved_by == "loop-engine-cli"

    def test_tick_limit(self, tmp_path):
        run = make_engine(tmp_path).start(three_phase_doc())
        snapshot = drive_run(run, approve_gates=True, max_ticks=2)
        assert snapshot.status is RunStatus.ACTIVE

    def test_failing_step(self, tmp_path):
        engine = make_engine(tmp_path, runner=SimulatedStepRunner(failing_steps=["build"]))
        snapshot = drive_run(engine.start(three_phase_doc()), approve_gates=True)
        assert snapshot.status is RunStatus.FAILED
