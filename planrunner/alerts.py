"""
Terminal alerts for planrunner.

WHAT THIS FILE DOES:
-------------------
Follows an engine's audit trail and turns the entries a reviewer must not
miss into rich panels: a failed step, an engine error, a finished or
incomplete rollback. Routine entries (a step starting) become a dim
one-line progress note; everything else is ignored.

    engine.subscribe(AlertManager().on_audit)
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel

from .schemas import AuditAction, AuditLogEntry, AuditStatus

# level -> (border style, title prefix)
LEVEL_STYLES = {
    "critical": ("bold red", "⚠️  "),
    "warning": ("bold yellow", "⚠️  "),
    "success": ("bold green", ""),
}


class AlertManager:
    """Renders audit entries as terminal alerts."""

    def __init__(self, terminal: bool = True, console: Optional[Console] = None):
        self.terminal_enabled = terminal
        self.console = console or Console()

    def notify(self, level: str, title: str, message: str = "") -> None:
        """Print a panel; critical alerts also ring the bell."""
        if not self.terminal_enabled:
            return

        style, prefix = LEVEL_STYLES.get(level, LEVEL_STYLES["warning"])
        self.console.print()
        self.console.print(Panel(
            f"[{style}]{message or title}[/{style}]",
            title=f"{prefix}{title}",
            border_style=style
        ))
        self.console.print()

        if level == "critical":
            self.console.bell()

    def progress(self, message: str) -> None:
        if self.terminal_enabled:
            self.console.print(f"[dim]→ {message}[/dim]")

    def on_audit(self, entry: AuditLogEntry) -> None:
        """Audit listener."""
        action = entry.action

        if action == AuditAction.ERROR:
            code = entry.error.code if entry.error else "ERROR"
            self.notify("critical", code, entry.error.message if entry.error else entry.description)
        elif action in (AuditAction.STEP_FAILED, AuditAction.VALIDATION_FAILED):
            title = "Validation failed" if action == AuditAction.VALIDATION_FAILED else "Step failed"
            self.notify("warning", title, entry.description)
        elif action == AuditAction.PLAN_EXECUTED and entry.status == AuditStatus.SUCCESS:
            self.notify("success", "Plan applied", entry.description)
        elif action == AuditAction.PLAN_ROLLED_BACK:
            if entry.status == AuditStatus.ROLLED_BACK:
                self.notify("success", "Plan rolled back", entry.description)
            else:
                self.notify("warning", "Rollback incomplete", entry.description)
        elif action == AuditAction.STEP_STARTED:
            self.progress(entry.description)
