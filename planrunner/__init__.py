"""
planrunner - safe execution of AI-proposed action plans.

An AI collaborator proposes a plan: ordered steps, each touching files via
diffs. planrunner holds that plan in a reviewable state, applies it step by
step against a backing store, records every transition in an audit trail,
and can roll it back.

LAYERS:
------
schemas / transitions   - Data model and state machines
tracker / steps / plan  - File change, step and plan behaviour
execution               - ExecutionEngine, the only writer of plan state
workspace / backing     - Backing stores and pre-condition validators
audit / session         - Audit trail and persistence
ui / alerts / cli       - Terminal front end
"""

__version__ = "0.1.0-alpha"

# Re-export key classes for convenience
from .schemas import (
    ActionPlan,
    ActionPlanStatus,
    AIResponse,
    AuditAction,
    AuditLogEntry,
    AuditStatus,
    DiffChunk,
    DiffLine,
    DiffLineKind,
    ExecutionStatus,
    FileChange,
    FileOperation,
    PlanStep,
    PlanSummary,
    ReviewDecision,
    RiskLevel,
    StepType,
    ValidationResult,
)

from .errors import (
    BackingStoreFailure,
    DependencyCycle,
    InvalidArgument,
    InvalidTransition,
    PendingApprovalRequired,
    PlanBusy,
    PlanEngineError,
    PlanNotFound,
    RollbackUnavailable,
    ValidationUnavailable,
)

from .audit import AuditLog

from .backing import (
    BackingStore,
    PreconditionValidator,
    StaticValidator,
)

from .workspace import Workspace

from .execution import ExecutionEngine

from .session import (
    PlanSession,
    SessionManager,
)

from .config import (
    Config,
    EngineConfig,
    load_config,
    get_default_config,
    save_config,
)

from .cli import main as cli_main

__all__ = [
    # Schemas
    "ActionPlan",
    "ActionPlanStatus",
    "AIResponse",
    "AuditAction",
    "AuditLogEntry",
    "AuditStatus",
    "DiffChunk",
    "DiffLine",
    "DiffLineKind",
    "ExecutionStatus",
    "FileChange",
    "FileOperation",
    "PlanStep",
    "PlanSummary",
    "ReviewDecision",
    "RiskLevel",
    "StepType",
    "ValidationResult",
    # Errors
    "BackingStoreFailure",
    "DependencyCycle",
    "InvalidArgument",
    "InvalidTransition",
    "PendingApprovalRequired",
    "PlanBusy",
    "PlanEngineError",
    "PlanNotFound",
    "RollbackUnavailable",
    "ValidationUnavailable",
    # Audit
    "AuditLog",
    # Collaborators
    "BackingStore",
    "PreconditionValidator",
    "StaticValidator",
    "Workspace",
    # Engine
    "ExecutionEngine",
    # Session
    "PlanSession",
    "SessionManager",
    # Config
    "Config",
    "EngineConfig",
    "load_config",
    "get_default_config",
    "save_config",
    # CLI
    "cli_main",
]
