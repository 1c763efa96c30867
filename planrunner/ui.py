"""
Rich terminal UI components for planrunner.

WHY THIS FILE EXISTS:
--------------------
The CLI needs to display plans, diffs and audit trails in a readable way.
Rich provides the terminal formatting: panels, tables, trees, syntax-coloured
diffs.

DESIGN PRINCIPLES:
-----------------
1. Consistent styling across all displays
2. Color-coded status and risk indicators
3. The engine's state is the only source of truth; nothing here mutates it

COMPONENTS:
----------
- show_plan() / show_plan_tree() - Display a plan and its steps
- show_file_change() / format_diff() - Display one file change and its diff
- show_summary() - Display the plan roll-up
- show_validation() - Display validation results
- show_audit_log() - Display audit entries
- show_sessions_list() - Display saved plans
- prompt_review() / prompt_step_confirmation() - Interactive review prompts
"""

from typing import Iterable

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .schemas import (
    ActionPlan,
    AuditLogEntry,
    DiffLineKind,
    FileChange,
    PlanStep,
    PlanSummary,
    ValidationResult,
)

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

RISK_COLORS = {
    "low": "green",
    "medium": "yellow",
    "high": "red",
}

STATUS_COLORS = {
    # execution
    "pending": "dim",
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim red",
    "rollback_pending": "magenta",
    "rollback_running": "magenta",
    "rollback_completed": "blue",
    # plan
    "planning": "dim",
    "approved": "cyan",
    "rejected": "red",
    "applying": "yellow",
    "applied": "green",
    "rolled_back": "blue",
    # audit
    "success": "green",
}

OPERATION_ICONS = {
    "create": "+",
    "modify": "~",
    "delete": "-",
    "rename": "→",
    "move": "→",
    "copy": "⧉",
}


def _status(value: str) -> str:
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _risk(value: str) -> str:
    color = RISK_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_section(title: str) -> None:
    """Display a section divider."""
    console.print(f"\n[bold cyan]{title}[/bold cyan]")
    console.print("─" * 40)


def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


# =============================================================================
# PLAN DISPLAY
# =============================================================================

def show_plan(plan: ActionPlan) -> None:
    """
    Display a plan: overview panel plus a table of steps.

    Args:
        plan: The ActionPlan to display
    """
    show_header(plan.title, f"plan {plan.id} · {plan.status.value}")

    if plan.description:
        console.print(Panel(
            plan.description,
            title="[bold]Overview[/bold]",
            border_style="blue",
            box=box.ROUNDED
        ))

    table = Table(
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
        title="[bold]Steps[/bold]"
    )
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="white")
    table.add_column("Type", style="dim")
    table.add_column("Risk", justify="center")
    table.add_column("Files", justify="right")
    table.add_column("Depends on", style="dim")
    table.add_column("Status")

    for step in plan.steps:
        title = step.title
        if step.metadata.requires_user_confirmation:
            title = f"{title} [bold yellow]![/bold yellow]"
        table.add_row(
            step.id,
            title,
            step.type.value,
            _risk(step.metadata.risk_level.value),
            str(len(step.file_changes)),
            ", ".join(step.dependencies) or "-",
            _status(step.status.value),
        )

    console.print(table)

    if any(s.metadata.requires_user_confirmation for s in plan.steps):
        console.print("\n[bold yellow]![/bold yellow] = Requires user confirmation")

    if plan.validation.pre_conditions:
        show_section("Pre-conditions")
        for condition in plan.validation.pre_conditions:
            console.print(f"  • {condition}")

    if plan.error:
        show_error(f"[{plan.error.code}] {plan.error.message}"
                   + (f" (step {plan.error.step_id})" if plan.error.step_id else ""))


def show_plan_tree(plan: ActionPlan) -> None:
    """Display plan -> steps -> file changes as a tree."""
    tree = Tree(f"[bold]{plan.title}[/bold] {_status(plan.status.value)}")

    for step in plan.steps:
        branch = tree.add(f"[cyan]{step.id}[/cyan] {step.title} {_status(step.status.value)}")
        for change in step.file_changes:
            icon = OPERATION_ICONS.get(change.operation.value, "?")
            target = f" → {change.new_path}" if change.new_path else ""
            branch.add(
                f"{icon} {change.file_path}{target} "
                f"[green]+{change.lines_added}[/green] [red]-{change.lines_removed}[/red] "
                f"{_status(change.status.value)}"
            )

    console.print(tree)


def show_step(step: PlanStep) -> None:
    """Display one step with its file changes."""
    content = Text()
    content.append("Type: ", style="bold")
    content.append(f"{step.type.value}\n")
    content.append("Status: ", style="bold")
    content.append(f"{step.status.value}\n", style=STATUS_COLORS.get(step.status.value, "white"))
    if step.description:
        content.append(f"\n{step.description}\n")
    if step.dependencies:
        content.append("\nDepends on: ", style="bold")
        content.append(", ".join(step.dependencies), style="dim")

    console.print(Panel(
        content,
        title=f"[bold cyan]{step.id}: {step.title}[/bold cyan]",
        border_style="cyan",
        box=box.ROUNDED
    ))


def format_diff(change: FileChange) -> str:
    """Render a file change's hunks as unified-diff text."""
    prefixes = {
        DiffLineKind.CONTEXT: " ",
        DiffLineKind.ADDED: "+",
        DiffLineKind.REMOVED: "-",
    }
    target = change.new_path or change.file_path
    lines = [f"--- a/{change.file_path}", f"+++ b/{target}"]

    for chunk in change.diff:
        old_count = len(chunk.old_side())
        new_count = len(chunk.new_side())
        lines.append(f"@@ -{chunk.start_line},{old_count} +{chunk.start_line},{new_count} @@")
        for line in chunk.lines:
            lines.append(f"{prefixes[line.kind]}{line.content}")

    return "\n".join(lines)


def show_file_change(change: FileChange, show_diff: bool = True) -> None:
    """
    Display a file change, optionally with its coloured diff.

    Args:
        change: The FileChange to display
        show_diff: Whether to print the hunks
    """
    icon = OPERATION_ICONS.get(change.operation.value, "?")
    target = f" → {change.new_path}" if change.new_path else ""
    console.print(
        f"\n[bold]{icon} {change.operation.value}[/bold] {change.file_path}{target} "
        f"[green]+{change.lines_added}[/green] [red]-{change.lines_removed}[/red] "
        f"{_status(change.status.value)}"
    )
    if change.description:
        console.print(f"  [dim]{change.description}[/dim]")
    if change.error_message:
        show_error(change.error_message)

    if show_diff and change.diff:
        console.print(Syntax(format_diff(change), "diff", theme="monokai", line_numbers=False))


# =============================================================================
# SUMMARY / VALIDATION
# =============================================================================

def show_summary(summary: PlanSummary) -> None:
    """Display the plan roll-up numbers."""
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Steps", f"{summary.completed_steps}/{summary.total_steps} completed")
    table.add_row("Failed steps", f"[red]{summary.failed_steps}[/red]" if summary.failed_steps else "0")
    table.add_row("Pending steps", str(summary.pending_steps))
    table.add_row("File changes", f"{summary.completed_file_changes}/{summary.total_file_changes} applied")
    table.add_row("Estimated duration", f"{summary.estimated_duration}s")
    table.add_row("Risk", _risk(summary.risk_level.value))
    table.add_row("Can roll back", "yes" if summary.can_rollback else "no")
    table.add_row("Needs user action", "[yellow]yes[/yellow]" if summary.requires_user_action else "no")

    console.print(Panel(table, title="[bold]Summary[/bold]", border_style="blue", box=box.ROUNDED))


def show_validation(result: ValidationResult) -> None:
    if result.passed:
        show_success("Validation passed")
        return

    show_error("Validation failed")
    for violation in result.violations:
        console.print(f"  [red]✗[/red] {violation}")


# =============================================================================
# AUDIT LOG DISPLAY
# =============================================================================

def show_audit_log(entries: Iterable[AuditLogEntry]) -> None:
    """
    Display audit entries, in the order given (newest first from the engine).
    """
    entries = list(entries)
    if not entries:
        console.print("[dim]No audit entries.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Status")
    table.add_column("Step", style="dim")
    table.add_column("Description")

    for entry in entries:
        description = entry.description
        if entry.error:
            description += f" [red][{entry.error.code}][/red]"
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            entry.action.value,
            _status(entry.status.value),
            entry.step_id or "-",
            description,
        )

    console.print(table)


# =============================================================================
# INTERACTIVE PROMPTS
# =============================================================================

def prompt_review(change: FileChange) -> str:
    """
    Show a file change and ask for a decision.

    Returns:
        One of: "approve", "reject", "skip"
    """
    show_file_change(change, show_diff=True)

    choice = Prompt.ask(
        "[bold]Decision[/bold] ([green]a[/green]pprove/[red]r[/red]eject/[dim]s[/dim]kip)",
        choices=["a", "r", "s", "approve", "reject", "skip"],
        default="a"
    )
    mapping = {
        "a": "approve", "approve": "approve",
        "r": "reject", "reject": "reject",
        "s": "skip", "skip": "skip",
    }
    return mapping[choice]


def prompt_step_confirmation(step: PlanStep) -> str:
    """
    Ask about a confirmation-required step that has no file changes.

    Returns:
        One of: "approve", "reject", "skip"
    """
    show_step(step)
    choice = Prompt.ask(
        "[bold]Mark this step[/bold] ([green]a[/green]pproved/[red]r[/red]ejected/[dim]s[/dim]kip)",
        choices=["a", "r", "s"],
        default="a"
    )
    return {"a": "approve", "r": "reject", "s": "skip"}[choice]


def prompt_continue(message: str = "Continue?") -> bool:
    """Simple yes/no confirmation prompt."""
    return Confirm.ask(f"[bold]{message}[/bold]", default=True)


def show_thinking(message: str = "Working..."):
    """
    Context manager that shows a spinner while processing.

    Usage:
        with show_thinking("Applying plan..."):
            await engine.execute_plan()
    """
    return console.status(f"[bold blue]{message}[/bold blue]", spinner="dots")


# =============================================================================
# SESSION LIST DISPLAY
# =============================================================================

def show_sessions_list(sessions: list[dict]) -> None:
    """
    Display saved plans.

    Args:
        sessions: List of session dicts from SessionManager.list_all()
    """
    if not sessions:
        console.print("[dim]No saved plans found.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Steps", justify="right")
    table.add_column("Updated", style="dim")

    for session in sessions:
        title = session.get("title", "")
        table.add_row(
            session.get("session_id", "?"),
            _status(session.get("status", "unknown")),
            title[:50] + "..." if len(title) > 50 else title,
            str(session.get("steps", 0)),
            session.get("updated_at", ""),
        )

    console.print(table)


# =============================================================================
# WORKSPACE DISPLAY
# =============================================================================

def show_workspace(structure: str, stats: dict) -> None:
    """
    Display a workspace tree with its file count and size.

    Args:
        structure: Output of Workspace.get_structure()
        stats: Output of Workspace.get_stats()
    """
    console.print(Panel(
        structure,
        title=f"[bold]{stats.get('name', 'workspace')}[/bold]",
        subtitle=(
            f"{stats.get('file_count', 0)} files · "
            f"{stats.get('total_size_bytes', 0)} bytes · "
            f"{stats.get('backups', 0)} backups"
        ),
        border_style="cyan",
        box=box.ROUNDED
    ))
