#!/usr/bin/env python3
"""
planrunner CLI - review, apply and roll back AI-proposed action plans.

This is the main entry point for the planrunner command-line interface.
It wraps the execution engine with a rich terminal UI and keeps every run
on disk so it can be inspected, resumed or rolled back later.

USAGE:
------
  planrunner run plan.yaml --approve-all   - Apply a plan without prompts
  planrunner run plan.yaml --interactive   - Review each file change first
  planrunner validate plan.yaml            - Check dependencies and pre-conditions
  planrunner list --prune 30               - List saved plans, dropping stale ones
  planrunner show PLAN_ID --tree --diffs   - Inspect a saved plan
  planrunner audit PLAN_ID --limit 20      - Show the audit trail
  planrunner resume PLAN_ID                - Re-run what a failed plan left pending
  planrunner rollback PLAN_ID              - Undo an applied or failed plan

PLAN FILES:
----------
YAML or JSON documents in the AIResponse shape. An optional `files:` map
seeds the in-memory workspace the plan is applied to:

    title: Refactor Button
    validation:
      pre_conditions: ["Git repository is clean"]
    files:
      src/Button.tsx: |
        export const Button = () => null;
    steps:
      - title: Update Button
        file_changes:
          - operation: modify
            file_path: src/Button.tsx
            diff: [...]
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import yaml

from . import __version__
from . import ui
from .alerts import AlertManager
from .backing import StaticValidator
from .config import Config, load_config
from .errors import PendingApprovalRequired, PlanEngineError
from .execution import ExecutionEngine
from .plan import summarize
from .schemas import ActionPlan, ActionPlanStatus, ExecutionStatus
from .session import PlanSession, SessionManager
from .workspace import Workspace

logger = logging.getLogger("planrunner.cli")


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="planrunner",
        description="Review, apply and roll back AI-proposed action plans",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  planrunner run plan.yaml --approve-all
  planrunner run plan.yaml --interactive
  planrunner list
  planrunner show a1b2c3d4 --tree
  planrunner rollback a1b2c3d4
        """
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to a config file (default: search standard locations)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging and tracebacks on failure"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"planrunner {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # run
    run_parser = subparsers.add_parser("run", help="Create a plan from a file and apply it")
    run_parser.add_argument("plan_file", type=Path, help="YAML or JSON plan document")
    run_parser.add_argument(
        "-i", "--interactive",
        action="store_true",
        help="Review every file change before applying"
    )
    run_parser.add_argument(
        "--approve-all",
        action="store_true",
        help="Approve every file change and confirmation step without prompting"
    )
    run_parser.add_argument(
        "--no-validate",
        action="store_true",
        help="Skip pre-condition validation before executing"
    )
    run_parser.add_argument(
        "--deadline",
        type=float,
        metavar="SECONDS",
        help="Give up on execution after this many seconds"
    )

    # validate
    validate_parser = subparsers.add_parser("validate", help="Validate a plan file without applying it")
    validate_parser.add_argument("plan_file", type=Path, help="YAML or JSON plan document")

    # list
    list_parser = subparsers.add_parser("list", help="List saved plans")
    list_parser.add_argument(
        "--prune",
        type=int,
        metavar="DAYS",
        help="First delete saved plans not touched for DAYS days"
    )

    # show
    show_parser = subparsers.add_parser("show", help="Show a saved plan")
    show_parser.add_argument("plan_id", help="Plan ID")
    show_parser.add_argument("--tree", action="store_true", help="Show steps and file changes as a tree")
    show_parser.add_argument("--diffs", action="store_true", help="Show the diff of every file change")
    show_parser.add_argument("--files", action="store_true", help="Show the workspace the plan runs against")

    # audit
    audit_parser = subparsers.add_parser("audit", help="Show the audit trail of a saved plan")
    audit_parser.add_argument("plan_id", help="Plan ID")
    audit_parser.add_argument("-n", "--limit", type=int, help="Show at most N entries (newest first)")

    # resume
    resume_parser = subparsers.add_parser("resume", help="Resume a failed plan")
    resume_parser.add_argument("plan_id", help="Plan ID")

    # rollback
    rollback_parser = subparsers.add_parser("rollback", help="Roll back an applied or failed plan")
    rollback_parser.add_argument("plan_id", help="Plan ID")

    return parser


def configure_logging(config: Config, verbose: bool = False) -> None:
    """Send log records to stderr; stdout belongs to the UI."""
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )


# =============================================================================
# PLAN DOCUMENTS
# =============================================================================

def load_plan_document(path: Path) -> tuple[dict, dict[str, str]]:
    """
    Read a plan document.

    Returns:
        (AIResponse-shaped dict, workspace seed files)

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the document is not a mapping
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Plan file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)

    if not isinstance(data, dict):
        raise ValueError(f"Plan file {path} must contain a mapping, got {type(data).__name__}")

    files = data.pop("files", None) or {}
    if not isinstance(files, dict):
        raise ValueError(f"'files' in {path} must map paths to contents")

    return data, {str(p): str(content) for p, content in files.items()}


def build_engine(
    config: Config,
    workspace: Workspace,
    validate: bool = True,
    plan: Optional[ActionPlan] = None,
    session: Optional[PlanSession] = None
) -> ExecutionEngine:
    """Wire an engine to the workspace, the configured validator and alerts."""
    validator = StaticValidator(
        satisfied=config.validator.satisfied,
        accept_all=config.validator.accept_all
    )
    engine_config = replace(
        config.engine,
        validate_before_execute=config.engine.validate_before_execute and validate
    )

    if plan is not None:
        audit = session.get_audit_log(config.engine.audit_capacity) if session else None
        engine = ExecutionEngine.from_plan(plan, workspace, validator, audit, engine_config)
    else:
        engine = ExecutionEngine(workspace, validator, config=engine_config)

    alerts = AlertManager(terminal=config.alerts.terminal, console=ui.console)
    engine.subscribe(alerts.on_audit)
    return engine


# =============================================================================
# INTERACTIVE REVIEW
# =============================================================================

def review_interactively(engine: ExecutionEngine) -> bool:
    """
    Walk the reviewer through every pending file change and confirmation step.

    Returns:
        True if the reviewer wants to apply the plan
    """
    plan = engine.plan

    for step in plan.steps:
        ui.show_step(step)

        if step.file_changes:
            for change in step.file_changes:
                if change.is_reviewed or change.status != ExecutionStatus.PENDING:
                    continue
                decision = ui.prompt_review(change)
                if decision == "approve":
                    engine.approve_file_change(step.id, change.id)
                elif decision == "reject":
                    engine.reject_file_change(step.id, change.id)

        elif step.metadata.requires_user_confirmation and step.status == ExecutionStatus.PENDING:
            decision = ui.prompt_step_confirmation(step)
            if decision == "approve":
                engine.approve_step(step.id)
            elif decision == "reject":
                engine.reject_step(step.id)

    return ui.prompt_continue("Apply this plan?")


def approve_everything(engine: ExecutionEngine) -> None:
    """Approve all file changes and resolve confirmation-only steps."""
    approved = engine.approve_all()
    for step in engine.plan.steps:
        if (
            step.metadata.requires_user_confirmation
            and not step.file_changes
            and step.status == ExecutionStatus.PENDING
        ):
            engine.approve_step(step.id)
    ui.show_info(f"Approved {len(approved)} file change(s)")


# =============================================================================
# COMMANDS
# =============================================================================

async def run_plan(args: argparse.Namespace, config: Config, manager: SessionManager) -> int:
    """Create, review, approve and execute a plan from a file."""
    document, files = load_plan_document(args.plan_file)
    workspace = Workspace(files, name=args.plan_file.stem)
    engine = build_engine(config, workspace, validate=not args.no_validate)

    plan = engine.create_plan(document)
    session = manager.create(plan, engine.audit, workspace, source=str(args.plan_file))

    def persist() -> None:
        session.update(engine.plan, engine.audit, workspace)
        manager.save(session)

    persist()
    ui.show_plan(plan)

    if args.interactive:
        if not review_interactively(engine):
            engine.reject_plan("declined at review")
            persist()
            ui.show_warning(f"Plan {plan.id} rejected")
            return 0
    elif args.approve_all:
        approve_everything(engine)

    try:
        engine.approve_plan()
    except PendingApprovalRequired as e:
        persist()
        ui.show_error(e.message)
        ui.show_info("Rerun with --interactive or --approve-all to confirm these steps")
        return 1

    try:
        with ui.show_thinking("Applying plan..."):
            await engine.execute_plan(deadline=args.deadline)
    finally:
        persist()

    return report_outcome(engine.plan)


async def validate_plan_file(args: argparse.Namespace, config: Config) -> int:
    document, files = load_plan_document(args.plan_file)
    engine = build_engine(config, Workspace(files))
    plan = engine.create_plan(document)

    ui.show_plan(plan)
    result = await engine.validate()
    ui.show_validation(result)
    return 0 if result.passed else 1


def list_plans(args: argparse.Namespace, manager: SessionManager) -> int:
    """List all saved plans."""
    if args.prune is not None:
        deleted = manager.cleanup_old(days=args.prune)
        ui.show_info(f"Deleted {deleted} plan(s) older than {args.prune} days")

    sessions = manager.list_all()

    ui.show_header("Saved Plans")
    ui.show_sessions_list(sessions)

    resumable = manager.list_resumable()
    if resumable:
        ui.console.print(f"\n[dim]{len(resumable)} plan(s) not yet settled.[/dim]")
    return 0


def show_saved_plan(args: argparse.Namespace, manager: SessionManager) -> int:
    session = manager.load(args.plan_id)
    plan = session.get_plan()

    if args.tree:
        ui.show_plan_tree(plan)
    else:
        ui.show_plan(plan)

    if args.diffs:
        for step in plan.steps:
            for change in step.file_changes:
                ui.show_file_change(change, show_diff=True)

    if args.files:
        workspace = session.get_workspace()
        ui.show_workspace(workspace.get_structure(), workspace.get_stats())

    ui.show_summary(summarize(plan))
    return 0


def show_audit(args: argparse.Namespace, config: Config, manager: SessionManager) -> int:
    session = manager.load(args.plan_id)
    audit = session.get_audit_log(config.engine.audit_capacity)

    ui.show_header("Audit Trail", f"plan {args.plan_id} · {len(audit)} entries")
    ui.show_audit_log(audit.entries(args.limit))
    return 0


async def resume_plan(args: argparse.Namespace, config: Config, manager: SessionManager) -> int:
    """Re-enter a failed plan and run whatever is still pending."""
    session = manager.load(args.plan_id)
    workspace = session.get_workspace()
    engine = build_engine(config, workspace, plan=session.get_plan(), session=session)

    try:
        with ui.show_thinking("Resuming plan..."):
            await engine.execute_plan()
    finally:
        session.update(engine.plan, engine.audit, workspace)
        manager.save(session)

    return report_outcome(engine.plan)


async def rollback_saved_plan(args: argparse.Namespace, config: Config, manager: SessionManager) -> int:
    session = manager.load(args.plan_id)
    workspace = session.get_workspace()
    engine = build_engine(config, workspace, plan=session.get_plan(), session=session)

    try:
        with ui.show_thinking("Rolling back..."):
            plan = await engine.rollback_plan()
    finally:
        session.update(engine.plan, engine.audit, workspace)
        manager.save(session)

    ui.show_summary(summarize(plan))
    if plan.error and plan.error.code.startswith("ROLLBACK"):
        ui.show_warning(f"Rollback incomplete: {plan.error.message}")
        return 1
    ui.show_success(f"Plan {plan.id} rolled back")
    return 0


def report_outcome(plan: ActionPlan) -> int:
    """Print the summary and map the plan status to an exit code."""
    ui.show_summary(summarize(plan))

    if plan.status == ActionPlanStatus.APPLIED:
        ui.show_success(f"Plan {plan.id} applied")
        return 0

    if plan.error:
        ui.show_error(f"[{plan.error.code}] {plan.error.message}")
    ui.show_info(f"Inspect with: planrunner show {plan.id} --tree")
    return 1


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main function that handles all commands.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        config = load_config(args.config)
    except (FileNotFoundError, yaml.YAMLError) as e:
        ui.show_error(f"Could not load config: {e}")
        return 1

    configure_logging(config, args.verbose)

    if not args.command:
        ui.show_header("planrunner", f"v{__version__}")
        ui.show_info("Run 'planrunner --help' for the list of commands")
        return 0

    manager = SessionManager(config.storage.directory_path)

    try:
        if args.command == "run":
            return await run_plan(args, config, manager)
        if args.command == "validate":
            return await validate_plan_file(args, config)
        if args.command == "list":
            return list_plans(args, manager)
        if args.command == "show":
            return show_saved_plan(args, manager)
        if args.command == "audit":
            return show_audit(args, config, manager)
        if args.command == "resume":
            return await resume_plan(args, config, manager)
        if args.command == "rollback":
            return await rollback_saved_plan(args, config, manager)
    except PlanEngineError as e:
        ui.show_error(f"[{e.code}] {e.message}")
        if args.verbose:
            logger.exception(f"{args.command} failed")
        return 1
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        ui.show_error(str(e))
        if args.verbose:
            logger.exception(f"{args.command} failed")
        return 1

    ui.show_error(f"Unknown command: {args.command}")
    return 2


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    try:
        exit_code = asyncio.run(async_main(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        ui.show_warning("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
