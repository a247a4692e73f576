"""
Loop Engine tool server (port 3002 by default)

Exposes the loop engine as MCP-compatible HTTP tools.

Tools:
  Definitions:
    loop_define        register a loop definition (validated; all errors returned)
    loop_validate      validate a loop definition without registering it
    loop_list          list registered loop definitions
    loop_load_dir      register every <dir>/<id>/loop.json

  Runs:
    run_start          start a run from a loop id or an inline definition
    run_status         snapshot + playback state of a run
    run_events         log events after a sequence number
    run_timeline       per-phase spans derived from the log
    run_list           list runs with optional status filter
    run_abort          fail a run on purpose
    run_reset          discard a run's state and start fresh

  Steps and phases:
    step_start / step_complete / step_skip / step_fail
    phase_skip / phase_complete / phase_advance

  Gates:
    gate_approve / gate_reject / gate_refresh / gate_configure
    gates_disable_all / gates_enable_all / gates_set_auto

  Playback:
    playback_play / playback_pause / playback_speed / playback_tick

Endpoints:
  GET  /tools              → MCP tool descriptors
  POST /call               → invoke any tool by name
  GET  /tool/{name}        → single tool descriptor
  GET  /health             → health check + engine stats
  GET  /metrics            → call counts + error rates
  GET  /loops              → shortcut: list loop definitions
  GET  /runs               → shortcut: list runs
  GET  /runs/{run_id}      → shortcut: run status
  GET  /runs/{run_id}/events?since=N → shortcut: run events

Start:
  uvicorn tools.loop_server:app --port 3002
  # or:
  python tools/loop_server.py
"""
from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from core.event_log import LogCategory, LogLevel
from core.exceptions import DefinitionError, LoopEngineError, UnknownRunError
from core.logging_utils import log_json
from core.loop_engine import LoopRun, TransitionResult, get_engine

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Loop Engine Tool Server",
    description="MCP-compatible control surface for gated multi-phase loop runs.",
    version="1.0.0",
)

_SERVER_START = time.time()
_call_counts: Dict[str, int] = {}
_call_errors: Dict[str, int] = {}


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class ToolCallRequest(BaseModel):
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    tool_name: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    elapsed_ms: float = 0.0


# ---------------------------------------------------------------------------
# Tool schemas (MCP descriptors)
# ---------------------------------------------------------------------------

def _schema(description: str, properties: Optional[Dict] = None, required: Optional[List[str]] = None) -> Dict:
    input_schema: Dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        input_schema["required"] = required
    return {"description": description, "inputSchema": input_schema}


_RUN_ID = {"run_id": {"type": "string", "description": "Run id returned by run_start."}}
_STEP = {
    **_RUN_ID,
    "skill_id": {"type": "string", "description": "Skill id; resolved within the current phase."},
}
_GATE = {**_RUN_ID, "gate_id": {"type": "string"}}
_LOOP_DOC = {"type": "object", "description": "Loop definition in loop.json form."}

_TOOL_SCHEMAS: Dict[str, Dict] = {
    "loop_define": _schema("Validate and register a loop definition.",
                           {"definition": _LOOP_DOC}, ["definition"]),
    "loop_validate": _schema("Validate a loop definition; returns every error found.",
                             {"definition": _LOOP_DOC}, ["definition"]),
    "loop_list": _schema("List registered loop definitions."),
    "loop_load_dir": _schema("Register every <dir>/<id>/loop.json under a directory.",
                             {"path": {"type": "string", "description": "Defaults to the loops_dir setting."}}),
    "run_start": _schema(
        "Start a run from a registered loop id or an inline definition.",
        {
            "loop_id": {"type": "string"},
            "definition": _LOOP_DOC,
            "autonomy": {"type": "string", "enum": ["supervised", "semi-autonomous", "autonomous"]},
            "mode": {"type": "string", "enum": ["greenfield", "brownfield"]},
            "project": {"type": "string"},
        },
    ),
    "run_status": _schema("Snapshot and playback state of a run.", _RUN_ID, ["run_id"]),
    "run_events": _schema(
        "Log events with sequence number greater than 'since', optionally filtered; "
        "'limit' keeps the most recent matches.",
        {**_RUN_ID, "since": {"type": "integer", "default": 0},
         "level": {"type": "string", "enum": [lv.value for lv in LogLevel]},
         "category": {"type": "string", "enum": [c.value for c in LogCategory]},
         "limit": {"type": "integer", "minimum": 1}},
        ["run_id"],
    ),
    "run_timeline": _schema("Per-phase spans derived from the run log.", _RUN_ID, ["run_id"]),
    "run_list": _schema("List runs.", {"status": {"type": "string",
                                                  "enum": ["active", "blocked", "completed", "failed"]}}),
    "run_abort": _schema("Abort a run (status becomes failed).",
                         {**_RUN_ID, "reason": {"type": "string"}}, ["run_id"]),
    "run_reset": _schema("Discard a run's state and start it fresh.", _RUN_ID, ["run_id"]),
    "step_start": _schema("Mark a pending step active.", _STEP, ["run_id", "skill_id"]),
    "step_complete": _schema("Complete a step.",
                             {**_STEP, "duration_ms": {"type": "number"}}, ["run_id", "skill_id"]),
    "step_skip": _schema("Skip an optional step.",
                         {**_STEP, "reason": {"type": "string"}}, ["run_id", "skill_id"]),
    "step_fail": _schema("Fail a step (the run fails).",
                         {**_STEP, "reason": {"type": "string"}}, ["run_id", "skill_id", "reason"]),
    "phase_skip": _schema("Skip every remaining step of the current optional phase.",
                          {**_RUN_ID, "reason": {"type": "string"}}, ["run_id"]),
    "phase_complete": _schema("Complete the current phase and evaluate its gates.", _RUN_ID, ["run_id"]),
    "phase_advance": _schema("Advance to the next phase (finishes the run from COMPLETE).",
                             _RUN_ID, ["run_id"]),
    "gate_approve": _schema("Approve a gate.",
                            {**_GATE, "approved_by": {"type": "string"}, "feedback": {"type": "string"}},
                            ["run_id", "gate_id"]),
    "gate_reject": _schema("Reject a gate with a reason.",
                           {**_GATE, "reason": {"type": "string"}, "rejected_by": {"type": "string"}},
                           ["run_id", "gate_id", "reason"]),
    "gate_refresh": _schema("Re-evaluate gates that can decide without an operator.", _RUN_ID, ["run_id"]),
    "gate_configure": _schema(
        "Enable/disable a gate or override its approval type for this run.",
        {**_GATE, "enabled": {"type": "boolean"},
         "approval_type": {"type": ["string", "null"],
                           "description": "human | conditional | automated; null clears the override"}},
        ["run_id", "gate_id"],
    ),
    "gates_disable_all": _schema("Disable every gate of a run.", _RUN_ID, ["run_id"]),
    "gates_enable_all": _schema("Enable every gate of a run.", _RUN_ID, ["run_id"]),
    "gates_set_auto": _schema("Switch every gate of a run to automated approval.", _RUN_ID, ["run_id"]),
    "playback_play": _schema("Start timer-driven auto-advance.", _RUN_ID, ["run_id"]),
    "playback_pause": _schema("Stop timer-driven auto-advance.", _RUN_ID, ["run_id"]),
    "playback_speed": _schema("Set the playback interval.",
                              {**_RUN_ID, "interval_ms": {"type": "integer", "minimum": 1}},
                              ["run_id", "interval_ms"]),
    "playback_tick": _schema("Perform exactly one playback step now.", _RUN_ID, ["run_id"]),
}


def _build_descriptor(name: str) -> Dict:
    schema = _TOOL_SCHEMAS[name]
    return {"name": name, "description": schema["description"],
            "inputSchema": schema["inputSchema"]}


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------

def _require(args: Dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' is required.")
    return value.strip()


def _run(args: Dict) -> LoopRun:
    return get_engine().get_run(_require(args, "run_id"))


def _definition_arg(args: Dict) -> Dict:
    definition = args.get("definition")
    if not isinstance(definition, dict):
        raise ValueError("'definition' must be an object.")
    return definition


def _result(result: TransitionResult) -> Dict:
    return result.to_dict()


def _h_loop_define(args: Dict) -> Dict:
    definition = get_engine().define(_definition_arg(args))
    return {"defined": definition.id, "loop": definition.summary()}


def _h_loop_validate(args: Dict) -> Dict:
    return get_engine().validate(_definition_arg(args)).to_dict()


def _h_loop_list(args: Dict) -> Dict:
    return {"loops": get_engine().list_definitions()}


def _h_loop_load_dir(args: Dict) -> Dict:
    return get_engine().load_directory(args.get("path") or None)


def _h_run_start(args: Dict) -> Dict:
    engine = get_engine()
    if args.get("definition") is not None:
        source = _definition_arg(args)
    else:
        source = _require(args, "loop_id")
    run = engine.start(source, autonomy=args.get("autonomy"), mode=args.get("mode"),
                       project=args.get("project"))
    return {"run_id": run.run_id, "snapshot": run.snapshot().to_dict()}


def _h_run_status(args: Dict) -> Dict:
    return _run(args).status()


def _h_run_events(args: Dict) -> Dict:
    since = int(args.get("since", 0))
    limit = args.get("limit")
    events = _run(args).events(since, level=args.get("level"), category=args.get("category"),
                               limit=int(limit) if limit is not None else None)
    return {"events": [e.to_dict() for e in events], "count": len(events)}


def _h_run_timeline(args: Dict) -> Dict:
    return {"timeline": _run(args).timeline()}


def _h_run_list(args: Dict) -> Dict:
    return {"runs": get_engine().list_runs(status_filter=args.get("status"))}


def _h_run_abort(args: Dict) -> Dict:
    return _result(_run(args).abort(args.get("reason") or "aborted by operator"))


def _h_run_reset(args: Dict) -> Dict:
    return _result(_run(args).reset())


def _h_step_start(args: Dict) -> Dict:
    return _result(_run(args).start_step(_require(args, "skill_id")))


def _h_step_complete(args: Dict) -> Dict:
    duration = args.get("duration_ms")
    return _result(_run(args).complete_step(_require(args, "skill_id"),
                                            duration_ms=float(duration) if duration is not None else None))


def _h_step_skip(args: Dict) -> Dict:
    return _result(_run(args).skip_step(_require(args, "skill_id"), reason=args.get("reason")))


def _h_step_fail(args: Dict) -> Dict:
    return _result(_run(args).fail_step(_require(args, "skill_id"), reason=_require(args, "reason")))


def _h_phase_skip(args: Dict) -> Dict:
    return _result(_run(args).skip_phase(reason=args.get("reason")))


def _h_phase_complete(args: Dict) -> Dict:
    return _result(_run(args).complete_phase())


def _h_phase_advance(args: Dict) -> Dict:
    return _result(_run(args).advance_phase())


def _h_gate_approve(args: Dict) -> Dict:
    return _result(_run(args).approve_gate(_require(args, "gate_id"),
                                           approved_by=args.get("approved_by"),
                                           feedback=args.get("feedback")))


def _h_gate_reject(args: Dict) -> Dict:
    return _result(_run(args).reject_gate(_require(args, "gate_id"), _require(args, "reason"),
                                          rejected_by=args.get("rejected_by")))


def _h_gate_refresh(args: Dict) -> Dict:
    return _result(_run(args).refresh_gates())


def _h_gate_configure(args: Dict) -> Dict:
    run = _run(args)
    gate_id = _require(args, "gate_id")
    if "enabled" not in args and "approval_type" not in args:
        raise ValueError("Provide 'enabled' and/or 'approval_type'.")
    if "enabled" in args and not isinstance(args["enabled"], bool):
        raise ValueError("'enabled' must be a boolean.")
    changes = {key: args[key] for key in ("enabled", "approval_type") if key in args}
    return _result(run.configure_gate(gate_id, **changes))


def _h_gates_disable_all(args: Dict) -> Dict:
    return _result(_run(args).disable_all_gates())


def _h_gates_enable_all(args: Dict) -> Dict:
    return _result(_run(args).enable_all_gates())


def _h_gates_set_auto(args: Dict) -> Dict:
    return _result(_run(args).set_all_gates_auto())


def _h_playback_play(args: Dict) -> Dict:
    run = _run(args)
    started = run.playback.play()
    return {"started": started, "playback": run.playback.status()}


def _h_playback_pause(args: Dict) -> Dict:
    run = _run(args)
    stopped = run.playback.pause()
    return {"stopped": stopped, "playback": run.playback.status()}


def _h_playback_speed(args: Dict) -> Dict:
    run = _run(args)
    if "interval_ms" not in args:
        raise ValueError("'interval_ms' is required.")
    run.playback.set_speed(args["interval_ms"])
    return {"playback": run.playback.status()}


def _h_playback_tick(args: Dict) -> Dict:
    return _result(_run(args).tick())


_TOOL_HANDLERS: Dict[str, Callable[[Dict], Dict]] = {
    "loop_define":       _h_loop_define,
    "loop_validate":     _h_loop_validate,
    "loop_list":         _h_loop_list,
    "loop_load_dir":     _h_loop_load_dir,
    "run_start":         _h_run_start,
    "run_status":        _h_run_status,
    "run_events":        _h_run_events,
    "run_timeline":      _h_run_timeline,
    "run_list":          _h_run_list,
    "run_abort":         _h_run_abort,
    "run_reset":         _h_run_reset,
    "step_start":        _h_step_start,
    "step_complete":     _h_step_complete,
    "step_skip":         _h_step_skip,
    "step_fail":         _h_step_fail,
    "phase_skip":        _h_phase_skip,
    "phase_complete":    _h_phase_complete,
    "phase_advance":     _h_phase_advance,
    "gate_approve":      _h_gate_approve,
    "gate_reject":       _h_gate_reject,
    "gate_refresh":      _h_gate_refresh,
    "gate_configure":    _h_gate_configure,
    "gates_disable_all": _h_gates_disable_all,
    "gates_enable_all":  _h_gates_enable_all,
    "gates_set_auto":    _h_gates_set_auto,
    "playback_play":     _h_playback_play,
    "playback_pause":    _h_playback_pause,
    "playback_speed":    _h_playback_speed,
    "playback_tick":     _h_playback_tick,
}


# ---------------------------------------------------------------------------
# FastAPI routes
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> Dict:
    engine = get_engine()
    runs = engine.list_runs()
    return {
        "status": "ok",
        "uptime_s": round(time.time() - _SERVER_START, 1),
        "loops_defined": len(engine.list_definitions()),
        "runs_active": sum(1 for r in runs if r["status"] == "active"),
        "runs_blocked": sum(1 for r in runs if r["status"] == "blocked"),
        "runs_total": len(runs),
    }


@app.get("/tools")
async def list_tools() -> Dict:
    return {"tools": [_build_descriptor(name) for name in _TOOL_SCHEMAS]}


@app.get("/tool/{name}")
async def get_tool(name: str) -> Dict:
    if name not in _TOOL_SCHEMAS:
        raise HTTPException(status_code=404, detail=f"Tool '{name}' not found.")
    return _build_descriptor(name)


@app.get("/loops")
async def list_loops_route() -> Dict:
    return {"loops": get_engine().list_definitions()}


@app.get("/runs")
async def list_runs_route(status: Optional[str] = None) -> Dict:
    return {"runs": get_engine().list_runs(status_filter=status)}


@app.get("/runs/{run_id}")
async def run_status_route(run_id: str) -> Dict:
    try:
        return get_engine().get_run(run_id).status()
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@app.get("/runs/{run_id}/events")
async def run_events_route(run_id: str, since: int = 0, level: Optional[str] = None,
                           category: Optional[str] = None, limit: Optional[int] = None) -> Dict:
    try:
        events = get_engine().get_run(run_id).events(since, level=level, category=category, limit=limit)
    except UnknownRunError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"events": [e.to_dict() for e in events], "count": len(events)}


@app.post("/call")
def call_tool(request: ToolCallRequest) -> ToolResult:
    name = request.tool_name
    handler = _TOOL_HANDLERS.get(name)
    if not handler:
        raise HTTPException(status_code=404, detail=f"Tool '{name}' not found.")

    _call_counts[name] = _call_counts.get(name, 0) + 1
    t0 = time.time()
    try:
        result = handler(request.args)
        elapsed = round((time.time() - t0) * 1000, 2)
        log_json("INFO", "loop_server_tool_called",
                 details={"tool": name, "elapsed_ms": elapsed})
        return ToolResult(tool_name=name, result=result, elapsed_ms=elapsed)
    except DefinitionError as exc:
        elapsed = round((time.time() - t0) * 1000, 2)
        _call_errors[name] = _call_errors.get(name, 0) + 1
        log_json("WARN", "loop_server_invalid_definition",
                 details={"tool": name, "errors": len(exc.errors)})
        return ToolResult(tool_name=name, error=str(exc),
                          result={"errors": [e.to_dict() for e in exc.errors]}, elapsed_ms=elapsed)
    except (ValueError, KeyError, LoopEngineError) as exc:
        elapsed = round((time.time() - t0) * 1000, 2)
        _call_errors[name] = _call_errors.get(name, 0) + 1
        log_json("WARN", "loop_server_rejected",
                 details={"tool": name, "error": str(exc), "type": type(exc).__name__})
        return ToolResult(tool_name=name, error=str(exc), elapsed_ms=elapsed)
    except Exception as exc:
        elapsed = round((time.time() - t0) * 1000, 2)
        _call_errors[name] = _call_errors.get(name, 0) + 1
        log_json("ERROR", "loop_server_error",
                 details={"tool": name, "error": str(exc)})
        return ToolResult(tool_name=name, error=f"Internal error: {exc}", elapsed_ms=elapsed)


@app.get("/metrics")
async def get_metrics() -> Dict:
    total_calls = sum(_call_counts.values())
    total_errors = sum(_call_errors.values())
    engine = get_engine()
    return {
        "uptime_seconds": round(time.time() - _SERVER_START, 1),
        "total_calls": total_calls,
        "total_errors": total_errors,
        "error_rate": round(total_errors / max(total_calls, 1), 4),
        "runs_total": len(engine.list_runs()),
        "loops_total": len(engine.list_definitions()),
        "tools": {
            name: {
                "calls": _call_counts.get(name, 0),
                "errors": _call_errors.get(name, 0),
            }
            for name in _TOOL_SCHEMAS
        },
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def serve(host: Optional[str] = None, port: Optional[int] = None, load_loops: bool = True) -> None:
    import uvicorn
    engine = get_engine()
    if load_loops:
        engine.load_directory()
    host = host or engine.config.get("server_host")
    port = port or engine.config.get("server_port")
    log_json("INFO", "loop_server_starting", details={"host": host, "port": port})
    try:
        uvicorn.run(app, host=host, port=port, reload=False)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    serve(port=int(os.getenv("LOOP_SERVER_PORT", "0")) or None)
