"""Tests for the loop engine HTTP tool server (tools/loop_server.py)."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict
from unittest.mock import patch

import pytest

_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from tests.loop_test_utils import make_engine, three_phase_doc

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    engine = make_engine(tmp_path, playback_interval_ms=5)
    yield engine
    engine.shutdown()


@pytest.fixture
def client(engine, monkeypatch):
    """TestClient wired to a fresh engine instead of the process singleton."""
    from fastapi.testclient import TestClient
    import tools.loop_server as m

    monkeypatch.setattr(m, "_call_counts", {})
    monkeypatch.setattr(m, "_call_errors", {})
    with patch.object(m, "get_engine", return_value=engine):
        yield TestClient(m.app)


def _call(client, tool: str, **args: Any) -> Dict:
    resp = client.post("/call", json={"tool_name": tool, "args": args})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _ok(client, tool: str, **args: Any) -> Dict:
    body = _call(client, tool, **args)
    assert body["error"] is None, body["error"]
    return body["result"]


def _started_run(client) -> str:
    _ok(client, "loop_define", definition=three_phase_doc())
    return _ok(client, "run_start", loop_id="three-phase")["run_id"]


# ===========================================================================
# Discovery endpoints
# ===========================================================================

class TestDiscovery:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["runs_total"] == 0

    def test_tools_listing(self, client):
        names = {t["name"] for t in client.get("/tools").json()["tools"]}
        assert {"loop_define", "run_start", "gate_approve", "gates_set_auto",
                "playback_tick", "run_reset"} <= names
        for tool in client.get("/tools").json()["tools"]:
            assert tool["inputSchema"]["type"] == "object"

    def test_single_tool(self, client):
        body = client.get("/tool/gate_reject").json()
        assert body["inputSchema"]["required"] == ["run_id", "gate_id", "reason"]
        assert client.get("/tool/nope").status_code == 404

    def test_unknown_tool_call(self, client):
        resp = client.post("/call", json={"tool_name": "nope", "args": {}})
        assert resp.status_code == 404


# ===========================================================================
# Definitions
# ===========================================================================

class TestDefinitionTools:
    def test_define_and_list(self, client):
        result = _ok(client, "loop_define", definition=three_phase_doc())
        assert result["defined"] == "three-phase"
        loops = _ok(client, "loop_list")["loops"]
        assert [l["id"] for l in loops] == ["three-phase"]
        assert client.get("/loops").json()["loops"][0]["skill_count"] == 3
        assert loops[0]["skills"] == ["spec", "build", "finish"]

    def test_define_invalid_returns_every_error(self, client):
        doc = three_phase_doc()
        doc["phases"][1]["skills"] = ["ghost"]
        body = _call(client, "loop_define", definition=doc)
        assert "ghost" in body["error"]
        assert [e["pass"] for e in body["result"]["errors"]] == ["referential", "dependency"]

    def test_validate_does_not_register(self, client):
        result = _ok(client, "loop_validate", definition=three_phase_doc())
        assert result == {"ok": True, "errors": []}
        assert _ok(client, "loop_list")["loops"] == []

    def test_definition_must_be_object(self, client):
        body = _call(client, "loop_validate", definition="loop.json")
        assert "'definition' must be an object" in body["error"]

    def test_load_dir(self, client, tmp_path):
        import json
        (tmp_path / "loops" / "three").mkdir(parents=True)
        (tmp_path / "loops" / "three" / "loop.json").write_text(json.dumps(three_phase_doc()))
        result = _ok(client, "loop_load_dir", path=str(tmp_path / "loops"))
        assert result["loaded"] == ["three-phase"]


# ===========================================================================
# Runs
# ===========================================================================

class TestRunTools:
    def test_walkthrough(self, client):
        run_id = _started_run(client)
        _ok(client, "step_start", run_id=run_id, skill_id="spec")
        _ok(client, "step_complete", run_id=run_id, skill_id="spec", duration_ms=3)
        result = _ok(client, "phase_complete", run_id=run_id)
        assert result["snapshot"]["status"] == "blocked"
        assert [e["action"] for e in result["events"]] == ["phase_completed", "gate_pending", "run_blocked"]

        result = _ok(client, "gate_approve", run_id=run_id, gate_id="spec-gate", approved_by="lead")
        assert result["snapshot"]["status"] == "active"
        assert result["snapshot"]["current_phase_index"] == 1

        _ok(client, "step_complete", run_id=run_id, skill_id="build")
        _ok(client, "step_complete", run_id=run_id, skill_id="finish")
        result = _ok(client, "phase_advance", run_id=run_id)
        assert result["snapshot"]["status"] == "completed"
        assert result["snapshot"]["progress"] == 100.0

        status = client.get(f"/runs/{run_id}").json()
        assert status["status"] == "completed"
        assert status["playback"]["playing"] is False

    def test_start_inline_definition(self, client):
        result = _ok(client, "run_start", definition=three_phase_doc(), autonomy="autonomous",
                     project="acme")
        assert result["snapshot"]["autonomy"] == "autonomous"
        assert result["snapshot"]["project"] == "acme"

    def test_transition_error_is_reported(self, client):
        run_id = _started_run(client)
        body = _call(client, "step_complete", run_id=run_id, skill_id="build")
        assert "not the current phase" in body["error"]
        assert body["result"] is None

    def test_missing_arguments(self, client):
        run_id = _started_run(client)
        assert _call(client, "step_complete", run_id=run_id)["error"] == "'skill_id' is required."
        assert _call(client, "gate_reject", run_id=run_id, gate_id="spec-gate")["error"] == \
            "'reason' is required."
        assert "enabled" in _call(client, "gate_configure", run_id=run_id, gate_id="spec-gate")["error"]
        assert "boolean" in _call(client, "gate_configure", run_id=run_id, gate_id="spec-gate",
                                  enabled="no")["error"]

    def test_unknown_run(self, client):
        body = _call(client, "run_status", run_id="missing")
        assert body["error"] == "Run 'missing' not found."
        assert client.get("/runs/missing").status_code == 404

    def test_events_since(self, client):
        run_id = _started_run(client)
        _ok(client, "step_complete", run_id=run_id, skill_id="spec")
        events = _ok(client, "run_events", run_id=run_id, since=1)["events"]
        assert [e["action"] for e in events] == ["step_completed"]
        body = client.get(f"/runs/{run_id}/events", params={"since": 0}).json()
        assert body["count"] == 2

    def test_events_filters(self, client):
        run_id = _started_run(client)
        _ok(client, "step_complete", run_id=run_id, skill_id="spec")
        _ok(client, "phase_complete", run_id=run_id)
        events = _ok(client, "run_events", run_id=run_id, level="warn")["events"]
        assert [e["action"] for e in events] == ["gate_pending", "run_blocked"]
        events = _ok(client, "run_events", run_id=run_id, category="system", limit=1)["events"]
        assert [e["seq"] for e in events] == [5]

        body = client.get(f"/runs/{run_id}/events", params={"category": "gate"}).json()
        assert [e["action"] for e in body["events"]] == ["gate_pending"]
        body = client.get(f"/runs/{run_id}/events", params={"limit": 2}).json()
        assert [e["seq"] for e in body["events"]] == [4, 5]

    def test_events_bad_filters(self, client):
        run_id = _started_run(client)
        assert "loud" in _call(client, "run_events", run_id=run_id, level="loud")["error"]
        assert "positive integer" in _call(client, "run_events", run_id=run_id, limit=0)["error"]
        assert client.get(f"/runs/{run_id}/events", params={"category": "network"}).status_code == 400
        schema = client.get("/tool/run_events").json()["inputSchema"]
        assert schema["properties"]["level"]["enum"] == ["debug", "info", "warn", "error"]

    def test_list_and_filter(self, client):
        run_id = _started_run(client)
        _ok(client, "run_abort", run_id=run_id, reason="stop")
        assert [r["run_id"] for r in _ok(client, "run_list", status="failed")["runs"]] == [run_id]
        assert client.get("/runs", params={"status": "active"}).json()["runs"] == []

    def test_reset(self, client):
        run_id = _started_run(client)
        _ok(client, "step_fail", run_id=run_id, skill_id="spec", reason="boom")
        result = _ok(client, "run_reset", run_id=run_id)
        assert result["snapshot"]["status"] == "active"

    def test_gate_configuration_tools(self, client):
        run_id = _started_run(client)
        result = _ok(client, "gate_configure", run_id=run_id, gate_id="spec-gate", approval_type="automated")
        assert result["snapshot"]["gates"][0]["effective_approval_type"] == "automated"
        _ok(client, "gates_disable_all", run_id=run_id)
        result = _ok(client, "step_complete", run_id=run_id, skill_id="spec")
        assert result["snapshot"]["current_phase_index"] == 1
        assert _ok(client, "gates_enable_all", run_id=run_id)["snapshot"]["gates"][0]["enabled"] is True
        _ok(client, "gates_set_auto", run_id=run_id)
        _ok(client, "gate_refresh", run_id=run_id)

    def test_gate_configure_is_one_transition(self, client):
        run_id = _started_run(client)
        result = _ok(client, "gate_configure", run_id=run_id, gate_id="spec-gate",
                     enabled=False, approval_type="automated")
        assert [e["details"] for e in result["events"]] == [
            {"enabled": False, "approval_override": "automated"}]
        gate = result["snapshot"]["gates"][0]
        assert (gate["enabled"], gate["effective_approval_type"]) == (False, "automated")

    def test_timeline(self, client):
        run_id = _started_run(client)
        _ok(client, "gates_disable_all", run_id=run_id)
        _ok(client, "step_complete", run_id=run_id, skill_id="spec")
        timeline = _ok(client, "run_timeline", run_id=run_id)["timeline"]
        assert timeline[0]["phase"] == "INIT"
        assert timeline[0]["completed"] == 1


# ===========================================================================
# Playback and metrics
# ===========================================================================

class TestPlaybackTools:
    def test_tick(self, client):
        run_id = _started_run(client)
        result = _ok(client, "playback_tick", run_id=run_id)
        assert [e["action"] for e in result["events"]] == ["step_started"]

    def test_speed_validation(self, client):
        run_id = _started_run(client)
        assert _ok(client, "playback_speed", run_id=run_id, interval_ms=250)["playback"]["interval_ms"] == 250
        assert "positive integer" in _call(client, "playback_speed", run_id=run_id, interval_ms=0)["error"]

    def test_play_pause(self, client):
        run_id = _started_run(client)
        _ok(client, "playback_speed", run_id=run_id, interval_ms=60_000)
        assert _ok(client, "playback_play", run_id=run_id)["started"] is True
        assert _ok(client, "playback_pause", run_id=run_id)["stopped"] is True


class TestMetrics:
    def test_counts_calls_and_errors(self, client):
        run_id = _started_run(client)
        _call(client, "run_status", run_id=run_id)
        _call(client, "run_status", run_id="missing")
        metrics = client.get("/metrics").json()
        assert metrics["tools"]["run_status"] == {"calls": 2, "errors": 1}
        assert metrics["total_calls"] == 4
        assert metrics["total_errors"] == 1
        assert metrics["runs_total"] == 1
