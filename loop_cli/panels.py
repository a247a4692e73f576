"""Rich renderables for loop runs and validation reports."""
from __future__ import annotations

from typing import Any, Dict, List

from rich import box
from rich.panel import Panel
from rich.table import Table

from core.execution_state import ExecutionSnapshot
from core.phases import GateStatus, RunStatus, StepStatus
from core.validator import ValidationResult

_STEP_ICONS = {
    StepStatus.PENDING: "[dim]○[/dim]",
    StepStatus.ACTIVE: "[yellow]⟳[/yellow]",
    StepStatus.COMPLETED: "✅",
    StepStatus.SKIPPED: "[dim]⏭[/dim]",
    StepStatus.FAILED: "[red]❌[/red]",
}
_GATE_STYLES = {
    GateStatus.PENDING: "yellow",
    GateStatus.CLEARED: "green",
    GateStatus.REJECTED: "red",
}
_RUN_COLORS = {
    RunStatus.ACTIVE: "cyan",
    RunStatus.BLOCKED: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
}


def build_run_panel(snapshot: ExecutionSnapshot) -> Panel:
    """Phase-by-phase step table for one run."""
    table = Table(box=box.SIMPLE, show_header=True, expand=True)
    table.add_column("Phase", style="bold", width=10)
    table.add_column("Steps")
    table.add_column("Done", justify="right", width=7)

    for view in snapshot.phases:
        icons = " ".join(
            f"{_STEP_ICONS[s.status]} {s.skill_id}" for s in snapshot.steps if s.phase_index == view.index
        )
        label = view.name.value
        if view.index == snapshot.current_phase_index:
            label = f"[cyan]{label}[/cyan]"
        if not view.required:
            label += " [dim](opt)[/dim]"
        table.add_row(label, icons or "[dim]-[/dim]", f"{view.resolved}/{view.total}")

    color = _RUN_COLORS.get(snapshot.status, "white")
    quadrant = snapshot.quadrant.value if snapshot.quadrant else "-"
    title = (
        f"[bold blue]{snapshot.loop_name}[/bold blue] "
        f"[bold {color}]{snapshot.status.value}[/bold {color}] "
        f"[dim]|[/dim] {snapshot.progress:.1f}% [dim]|[/dim] {quadrant}"
    )
    return Panel(table, title=title, border_style=color)


def build_gates_table(snapshot: ExecutionSnapshot) -> Table:
    table = Table(title="Gates", box=box.ROUNDED, expand=True)
    table.add_column("Gate", style="bold")
    table.add_column("After", width=10)
    table.add_column("Type", width=12)
    table.add_column("Status", width=10)
    table.add_column("Notes")

    for gate in snapshot.gates:
        style = _GATE_STYLES.get(gate.status, "white")
        status = f"[{style}]{gate.status.value}[/{style}]"
        if not gate.enabled:
            status = "[dim]disabled[/dim]"
        kind = gate.effective_approval_type.value
        if gate.effective_approval_type != gate.approval_type:
            kind += "*"
        notes = []
        if gate.holding:
            notes.append("holding")
        if gate.approved_by:
            notes.append(f"by {gate.approved_by}")
        if gate.feedback:
            notes.append(gate.feedback)
        table.add_row(gate.name, gate.after_phase.value, kind, status, ", ".join(notes))
    return table


def build_timeline_table(timeline: List[Dict[str, Any]]) -> Table:
    table = Table(title="Timeline", box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Phase", style="bold")
    table.add_column("Start seq", justify="right")
    table.add_column("End seq", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    for span in timeline:
        table.add_row(
            str(span["index"]),
            span["phase"],
            str(span["started_seq"] if span["started_seq"] is not None else "-"),
            str(span["completed_seq"] if span["completed_seq"] is not None else "-"),
            str(span["completed"]),
            str(span["skipped"]),
            f"[red]{span['failed']}[/red]" if span["failed"] else "0",
        )
    return table


def build_validation_table(result: ValidationResult, source: str = "") -> Table:
    title = f"Validation: {source}" if source else "Validation"
    table = Table(title=title, box=box.ROUNDED, expand=True)
    table.add_column("Pass", style="bold", width=12)
    table.add_column("Path", width=28)
    table.add_column("Problem")
    for error in result.errors:
        table.add_row(error.pass_name.value, error.path, f"[red]{error.message}[/red]")
    return table
