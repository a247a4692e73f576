import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from rich.console import Console

from core.config_manager import ConfigManager
from core.exceptions import DefinitionError, LoopEngineError
from core.execution_state import ExecutionSnapshot
from core.logging_utils import log_json
from core.loop_definition import load_loop_document
from core.loop_engine import LoopEngine, LoopRun
from core.phases import ApprovalType, GateStatus, RunStatus
from core.step_runner import SimulatedStepRunner
from loop_cli.panels import build_gates_table, build_run_panel, build_timeline_table, build_validation_table

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_WAITING = 2
EXIT_USAGE = 3

DEFAULT_MAX_TICKS = 10_000


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loop-engine",
                                     description="Validate and execute gated multi-phase loops.")
    parser.add_argument("--config", default="loop_engine.config.json", help="Path to the JSON config file.")
    sub = parser.add_subparsers(dest="command")

    p_validate = sub.add_parser("validate", help="Validate a loop definition.")
    p_validate.add_argument("path", help="loop.json file or a directory containing one.")
    p_validate.add_argument("--json", action="store_true", help="Print the result as JSON.")

    p_run = sub.add_parser("run", help="Run a loop headlessly with the simulated step runner.")
    p_run.add_argument("path", help="loop.json file or a directory containing one.")
    p_run.add_argument("--autonomy", choices=["supervised", "semi-autonomous", "autonomous"])
    p_run.add_argument("--mode", choices=["greenfield", "brownfield"])
    p_run.add_argument("--project", help="Project label recorded on the run.")
    p_run.add_argument("--approve-gates", action="store_true",
                       help="Approve human gates as soon as they hold the run.")
    p_run.add_argument("--fail-gate", action="append", default=[], metavar="GATE_ID",
                       help="Make the automated check of this gate fail (repeatable).")
    p_run.add_argument("--fail-step", action="append", default=[], metavar="SKILL_ID",
                       help="Make this skill fail when executed (repeatable).")
    p_run.add_argument("--max-ticks", type=int, default=DEFAULT_MAX_TICKS)
    p_run.add_argument("--json", action="store_true", help="Print the final status and events as JSON.")

    p_serve = sub.add_parser("serve", help="Start the HTTP tool server.")
    p_serve.add_argument("--host")
    p_serve.add_argument("--port", type=int)
    p_serve.add_argument("--no-load", action="store_true", help="Do not register loops from loops_dir.")

    sub.add_parser("config", help="Print the effective configuration.")
    return parser


# ---------------------------------------------------------------------------
# Headless driver
# ---------------------------------------------------------------------------

def _waiting_gates(snapshot: ExecutionSnapshot):
    return [g for g in snapshot.gates
            if g.holding and g.status is GateStatus.PENDING
            and g.effective_approval_type is ApprovalType.HUMAN]


def drive_run(run: LoopRun, approve_gates: bool = False, max_ticks: int = DEFAULT_MAX_TICKS) -> ExecutionSnapshot:
    """Tick *run* until it finishes or stops making progress.

    Human gates that hold the run are approved on the spot when
    *approve_gates* is set; otherwise the run is left waiting for them.
    """
    idle = 0
    for _ in range(max_ticks):
        snapshot = run.snapshot()
        if snapshot.status.terminal:
            return snapshot
        waiting = _waiting_gates(snapshot)
        if waiting and approve_gates:
            for gate in waiting:
                run.approve_gate(gate.id, approved_by="loop-engine-cli")
            idle = 0
            continue
        result = run.tick()
        if result.events:
            idle = 0
            continue
        idle += 1
        if idle >= 2:
            log_json("INFO", "loop_cli_run_stalled", run=run.run_id,
                     details={"status": result.snapshot.status.value,
                              "phase": result.snapshot.current_phase.value,
                              "waiting_gates": [g.id for g in waiting]})
            return result.snapshot
    log_json("WARN", "loop_cli_tick_limit", run=run.run_id, details={"max_ticks": max_ticks})
    return run.snapshot()


def _exit_code(snapshot: ExecutionSnapshot) -> int:
    if snapshot.status is RunStatus.COMPLETED:
        return EXIT_OK
    if snapshot.status is RunStatus.FAILED:
        return EXIT_FAILED
    return EXIT_WAITING


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_validate(args, config: ConfigManager, console: Console) -> int:
    engine = LoopEngine(config=config)
    result = engine.validate(load_loop_document(args.path))
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    elif result.ok:
        console.print(f"[green]✔[/green] {args.path} is valid "
                      f"({len(result.definition.phases)} phases, {len(result.definition.gates)} gates)")
    else:
        console.print(build_validation_table(result, args.path))
        console.print(f"[red]{len(result.errors)} error(s)[/red]")
    return EXIT_OK if result.ok else EXIT_FAILED


def _cmd_run(args, config: ConfigManager, console: Console) -> int:
    runner = SimulatedStepRunner(failing_steps=args.fail_step, failing_gates=args.fail_gate)
    engine = LoopEngine(runner=runner, config=config)
    try:
        run = engine.start(load_loop_document(args.path), autonomy=args.autonomy,
                           mode=args.mode, project=args.project)
    except DefinitionError as exc:
        if args.json:
            print(json.dumps({"ok": False, "errors": [e.to_dict() for e in exc.errors]}, indent=2))
        else:
            console.print(f"[red]Invalid loop definition:[/red] {args.path}")
            for error in exc.errors:
                console.print(f"  - {error}")
        return EXIT_FAILED

    snapshot = drive_run(run, approve_gates=args.approve_gates, max_ticks=args.max_ticks)
    if args.json:
        out = run.status()
        out["log"] = [e.to_dict() for e in run.events()]
        print(json.dumps(out, indent=2, default=str))
    else:
        console.print(build_run_panel(snapshot))
        if snapshot.gates:
            console.print(build_gates_table(snapshot))
        console.print(build_timeline_table(run.timeline()))
        if snapshot.failure_reason:
            console.print(f"[red]Failed:[/red] {snapshot.failure_reason}")
        waiting = _waiting_gates(snapshot)
        if waiting and not snapshot.status.terminal:
            console.print("[yellow]Waiting for approval:[/yellow] " + ", ".join(g.id for g in waiting))
    return _exit_code(snapshot)


def _cmd_serve(args, config: ConfigManager, console: Console) -> int:
    from tools import loop_server
    loop_server.serve(host=args.host, port=args.port, load_loops=not args.no_load)
    return EXIT_OK


def _cmd_config(args, config: ConfigManager, console: Console) -> int:
    print(json.dumps(config.show_config(), indent=2, sort_keys=True))
    return EXIT_OK


_COMMANDS = {
    "validate": _cmd_validate,
    "run": _cmd_run,
    "serve": _cmd_serve,
    "config": _cmd_config,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    console = Console()
    try:
        config = ConfigManager(config_file=args.config)
        return _COMMANDS[args.command](args, config, console)
    except LoopEngineError as exc:
        log_json("ERROR", "loop_cli_command_failed",
                 details={"command": args.command, "error": str(exc), "type": type(exc).__name__})
        console.print(f"[red]Error:[/red] {exc}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
