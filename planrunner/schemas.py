"""
Pydantic schemas for action plans, steps, file changes and the audit trail.

WHY THIS FILE EXISTS:
--------------------
Every layer of planrunner (the engine, persistence, the CLI) passes the same
records around: a plan made of ordered steps, each step touching files via a
diff, and an audit entry for every transition. Keeping them as Pydantic
models gives us:
1. Validation of AI-supplied plan content before the engine touches it
2. Lossless JSON round-trips for persistence (enums, nullable timestamps)
3. Typed Python objects instead of loose dicts

HOW THE PIECES FIT:
------------------
    ActionPlan
    ├── steps: [PlanStep]
    │   └── file_changes: [FileChange]
    │       └── diff: [DiffChunk]
    │           └── lines: [DiffLine]
    ├── metadata / timeline / rollback / validation
    └── error (first failure, if any)

    AuditLogEntry  - one immutable record per transition

The models here are data only. State transitions live in transitions.py,
tracker.py and steps.py; the engine in execution.py is the only writer.
"""

from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


# =============================================================================
# ENUMS
# =============================================================================

class ExecutionStatus(str, Enum):
    """Status shared by file changes and plan steps."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLBACK_PENDING = "rollback_pending"
    ROLLBACK_RUNNING = "rollback_running"
    ROLLBACK_COMPLETED = "rollback_completed"


class ActionPlanStatus(str, Enum):
    """Lifecycle of a whole plan."""
    PLANNING = "planning"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class FileOperation(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"
    COPY = "copy"
    MOVE = "move"


class StepType(str, Enum):
    ANALYSIS = "analysis"
    PLANNING = "planning"
    VALIDATION = "validation"
    BACKUP = "backup"
    FILE_OPERATION = "file_operation"
    TEST = "test"
    CLEANUP = "cleanup"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DiffLineKind(str, Enum):
    CONTEXT = "context"
    ADDED = "added"
    REMOVED = "removed"


class ReviewDecision(str, Enum):
    """Reviewer intent for a file change, independent of execution status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditAction(str, Enum):
    """Every kind of event the engine records."""
    AI_RESPONSE = "ai_response"
    PLAN_CREATED = "plan_created"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    PLAN_EXECUTED = "plan_executed"
    PLAN_ROLLED_BACK = "plan_rolled_back"
    FILE_APPROVED = "file_approved"
    FILE_REJECTED = "file_rejected"
    FILE_APPLIED = "file_applied"
    FILE_ROLLBACK = "file_rollback"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    ERROR = "error"
    VALIDATION_FAILED = "validation_failed"
    BACKUP_CREATED = "backup_created"
    BACKUP_RESTORED = "backup_restored"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    PENDING = "pending"
    RUNNING = "running"


# Ordering used when a plan's overall risk is derived from its steps
RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


# =============================================================================
# DIFF SCHEMAS
# =============================================================================
# Produced upstream in one shot and never mutated afterwards.

class DiffLine(BaseModel):
    """
    One line of a hunk.

    Example:
        DiffLine(kind="removed", content="interface ButtonProps {", old_line_no=2)
    """
    model_config = ConfigDict(frozen=True)

    kind: DiffLineKind = Field(description="context, added or removed")
    content: str = Field(description="Line text without the trailing newline")
    old_line_no: Optional[int] = Field(default=None, ge=1, description="Line number in the original file")
    new_line_no: Optional[int] = Field(default=None, ge=1, description="Line number in the new file")


class DiffChunk(BaseModel):
    """
    A contiguous hunk of a diff.

    start_line/end_line are 1-based bounds in the source file. Lines keep
    source order; the removed/added interleaving is whatever the upstream
    differ produced.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Chunk identifier")
    start_line: int = Field(ge=1, description="First source line covered (1-based)")
    end_line: int = Field(ge=1, description="Last source line covered (1-based)")
    lines: tuple[DiffLine, ...] = Field(default=(), description="Ordered hunk lines")

    @model_validator(mode="after")
    def bounds_ordered(self) -> "DiffChunk":
        if self.end_line < self.start_line:
            raise ValueError(f"end_line {self.end_line} precedes start_line {self.start_line}")
        return self

    @property
    def added_count(self) -> int:
        """Number of added lines in this hunk."""
        return sum(1 for line in self.lines if line.kind == DiffLineKind.ADDED)

    @property
    def removed_count(self) -> int:
        """Number of removed lines in this hunk."""
        return sum(1 for line in self.lines if line.kind == DiffLineKind.REMOVED)

    def old_side(self) -> list[str]:
        """Lines as they read before the change (context + removed)."""
        return [line.content for line in self.lines if line.kind != DiffLineKind.ADDED]

    def new_side(self) -> list[str]:
        """Lines as they read after the change (context + added)."""
        return [line.content for line in self.lines if line.kind != DiffLineKind.REMOVED]


# =============================================================================
# FILE CHANGE SCHEMAS
# =============================================================================

class FileChangeMetadata(BaseModel):
    size_bytes: int = Field(default=0, ge=0, description="Size of the resulting file")
    lines_added: int = Field(default=0, ge=0)
    lines_removed: int = Field(default=0, ge=0)
    file_type: str = Field(default="text", description="Language or file kind, e.g. 'python'")
    encoding: Optional[str] = Field(default=None)


class FileChange(BaseModel):
    """
    One file-level edit proposed by the AI.

    new_path is set exactly for rename and move. backup_ref must exist before
    any non-create change reaches `completed`.
    """
    id: str = Field(description="File change identifier")
    operation: FileOperation = Field(description="What happens to the file")
    file_path: str = Field(description="Path the change applies to")
    new_path: Optional[str] = Field(default=None, description="Destination for rename/move")
    description: Optional[str] = Field(default=None)
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    review: ReviewDecision = Field(default=ReviewDecision.PENDING)
    diff: list[DiffChunk] = Field(default_factory=list)
    metadata: FileChangeMetadata = Field(default_factory=FileChangeMetadata)
    backup_ref: Optional[str] = Field(default=None)
    checksum: Optional[str] = Field(default=None)
    applied_at: Optional[datetime] = Field(default=None)
    rollback_at: Optional[datetime] = Field(default=None)
    error_message: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def new_path_matches_operation(self) -> "FileChange":
        relocates = self.operation in (FileOperation.RENAME, FileOperation.MOVE)
        if relocates and not self.new_path:
            raise ValueError(f"{self.operation.value} of {self.file_path} requires new_path")
        if not relocates and self.new_path:
            raise ValueError(f"new_path is only valid for rename/move, not {self.operation.value}")
        return self

    @property
    def lines_added(self) -> int:
        return sum(chunk.added_count for chunk in self.diff)

    @property
    def lines_removed(self) -> int:
        return sum(chunk.removed_count for chunk in self.diff)

    @property
    def requires_backup(self) -> bool:
        """Creates have nothing to back up; everything else mutates or deletes content."""
        return self.operation != FileOperation.CREATE

    @property
    def is_reviewed(self) -> bool:
        return self.review != ReviewDecision.PENDING

    @property
    def touched_paths(self) -> list[str]:
        return [self.file_path, self.new_path] if self.new_path else [self.file_path]


# =============================================================================
# PLAN STEP SCHEMAS
# =============================================================================

class StepMetadata(BaseModel):
    estimated_duration_sec: Optional[int] = Field(default=None, ge=0)
    risk_level: RiskLevel = Field(default=RiskLevel.LOW)
    requires_user_confirmation: bool = Field(default=False)
    can_rollback: bool = Field(default=True)


class PlanStep(BaseModel):
    """
    An ordered unit of work inside a plan.

    Example:
        PlanStep(
            id="step3",
            type="file_operation",
            title="Update Button Component",
            description="Refactor Button with variants",
            priority="high",
            dependencies=["step2"],
            file_changes=[...],
            metadata=StepMetadata(risk_level="medium", requires_user_confirmation=True),
        )
    """
    id: str = Field(description="Step identifier, unique within the plan")
    type: StepType = Field(description="Kind of work")
    title: str = Field(description="Brief title")
    description: str = Field(default="", description="What this step does")
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    priority: Priority = Field(default=Priority.MEDIUM)
    dependencies: list[str] = Field(
        default_factory=list,
        description="Step ids that must complete first"
    )
    file_changes: list[FileChange] = Field(default_factory=list)
    metadata: StepMetadata = Field(default_factory=StepMetadata)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    progress: Optional[int] = Field(default=None, ge=0, le=100)

    @field_validator("dependencies")
    @classmethod
    def unique_dependencies(cls, v: list[str]) -> list[str]:
        """Dependencies are a set; keep first-seen order for stable output."""
        return list(dict.fromkeys(v))

    def get_file_change(self, file_change_id: str) -> Optional[FileChange]:
        for change in self.file_changes:
            if change.id == file_change_id:
                return change
        return None


# =============================================================================
# ACTION PLAN SCHEMAS
# =============================================================================

class PlanMetadata(BaseModel):
    total_files: int = Field(default=0, ge=0)
    estimated_duration_sec: int = Field(default=0, ge=0)
    risk_level: RiskLevel = Field(default=RiskLevel.LOW)
    requires_git: bool = Field(default=False)
    requires_build: bool = Field(default=False)
    requires_test: bool = Field(default=False)


class PlanTimeline(BaseModel):
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    applied_at: Optional[datetime] = Field(default=None)
    rolled_back_at: Optional[datetime] = Field(default=None)


class RollbackInfo(BaseModel):
    is_available: bool = Field(default=False)
    rollback_point: Optional[str] = Field(default=None, description="Opaque token, e.g. a commit hash")


class PlanValidation(BaseModel):
    pre_conditions: list[str] = Field(default_factory=list)
    post_conditions: list[str] = Field(default_factory=list)
    tests: list[str] = Field(default_factory=list)


class PlanError(BaseModel):
    code: str = Field(description="Machine-readable code, e.g. STEP_FAILED")
    message: str = Field(description="Human-readable message")
    step_id: Optional[str] = Field(default=None)
    file_change_id: Optional[str] = Field(default=None)


class ActionPlan(BaseModel):
    """
    The aggregate root: everything the engine knows about one plan.

    Only the execution engine mutates status fields; everybody else reads.
    """
    id: str = Field(description="Plan identifier")
    project_id: str = Field(default="default")
    title: str = Field(description="Plan title")
    description: str = Field(default="")
    status: ActionPlanStatus = Field(default=ActionPlanStatus.PLANNING)
    priority: Priority = Field(default=Priority.MEDIUM)
    steps: list[PlanStep] = Field(default_factory=list)
    metadata: PlanMetadata = Field(default_factory=PlanMetadata)
    timeline: PlanTimeline = Field(default_factory=PlanTimeline)
    rollback: RollbackInfo = Field(default_factory=RollbackInfo)
    validation: PlanValidation = Field(default_factory=PlanValidation)
    execution_order: list[str] = Field(
        default_factory=list,
        description="Step ids in the order they started running"
    )
    error: Optional[PlanError] = Field(default=None)

    def get_step(self, step_id: str) -> Optional[PlanStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def steps_by_id(self) -> dict[str, PlanStep]:
        return {step.id: step for step in self.steps}

    @property
    def all_file_changes(self) -> list[FileChange]:
        return [change for step in self.steps for change in step.file_changes]


# =============================================================================
# AUDIT SCHEMAS
# =============================================================================

# Allowed metadata keys per audit action. Anything outside the set is rejected
# so fields are never silently dropped or misread between writers and readers.
AUDIT_METADATA_KEYS: dict[AuditAction, frozenset[str]] = {
    AuditAction.AI_RESPONSE: frozenset({"steps_count", "file_changes_count"}),
    AuditAction.PLAN_CREATED: frozenset({"steps_count", "total_files", "risk_level"}),
    AuditAction.PLAN_APPROVED: frozenset({"approved_files"}),
    AuditAction.PLAN_REJECTED: frozenset({"reason"}),
    AuditAction.PLAN_EXECUTED: frozenset({"completed_steps", "cancelled_steps", "resumed"}),
    AuditAction.PLAN_ROLLED_BACK: frozenset({"rolled_back_files", "failed_steps"}),
    AuditAction.FILE_APPROVED: frozenset({"operation", "bulk"}),
    AuditAction.FILE_REJECTED: frozenset({"operation"}),
    AuditAction.FILE_APPLIED: frozenset({"operation", "checksum", "retry"}),
    AuditAction.FILE_ROLLBACK: frozenset({"operation", "backup_ref"}),
    AuditAction.STEP_STARTED: frozenset({"step_type", "file_changes_count"}),
    AuditAction.STEP_COMPLETED: frozenset({"file_changes_count", "manual"}),
    AuditAction.STEP_FAILED: frozenset({"skipped", "blocked_by", "manual"}),
    AuditAction.ERROR: frozenset({"operation"}),
    AuditAction.VALIDATION_FAILED: frozenset({"violations"}),
    AuditAction.BACKUP_CREATED: frozenset({"backup_ref", "operation"}),
    AuditAction.BACKUP_RESTORED: frozenset({"backup_ref"}),
}


class AuditError(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    stack: Optional[str] = None


def _freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become mappingproxies, sequences tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


class AuditLogEntry(BaseModel):
    """
    Immutable record of one state transition or event.

    Example:
        AuditLogEntry(
            id="a1b2c3d4",
            action="step_failed",
            description='Step "Run Tests" failed',
            status="failed",
            project_id="1",
            step_id="step5",
            error=AuditError(code="STEP_FAILED", message="2 tests failed"),
        )
    """
    model_config = ConfigDict(frozen=True)

    id: str
    action: AuditAction
    description: str
    timestamp: datetime = Field(default_factory=datetime.now)
    status: AuditStatus
    project_id: str
    plan_id: Optional[str] = None
    files_affected: Optional[tuple[str, ...]] = None
    step_id: Optional[str] = None
    file_change_id: Optional[str] = None
    error: Optional[AuditError] = None
    metadata: Optional[Mapping[str, Any]] = None
    duration_ms: Optional[int] = Field(default=None, ge=0)

    @field_validator("metadata", mode="after")
    @classmethod
    def freeze_metadata(cls, value: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
        # Copied on the way in so callers can't reach into a stored entry
        return _freeze(value) if value is not None else None

    @field_serializer("metadata")
    def dump_metadata(self, value: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
        return _thaw(value) if value is not None else None

    @model_validator(mode="after")
    def metadata_keys_allowed(self) -> "AuditLogEntry":
        if self.metadata:
            allowed = AUDIT_METADATA_KEYS[self.action]
            unknown = set(self.metadata) - allowed
            if unknown:
                raise ValueError(
                    f"Metadata keys {sorted(unknown)} not allowed for {self.action.value}; "
                    f"allowed: {sorted(allowed)}"
                )
        return self


# =============================================================================
# ENGINE OUTPUT SCHEMAS
# =============================================================================

class PlanSummary(BaseModel):
    """Roll-up numbers for a plan, used by the CLI and by pollers."""
    total_steps: int
    completed_steps: int
    total_file_changes: int
    completed_file_changes: int
    estimated_duration: int
    risk_level: RiskLevel
    can_rollback: bool
    requires_user_action: bool
    failed_steps: int
    pending_steps: int


class ValidationResult(BaseModel):
    passed: bool
    violations: list[str] = Field(default_factory=list)


class StoreResult(BaseModel):
    """
    Result reported by a backing store for an apply or restore.
    """
    success: bool
    output: str = ""
    error: Optional[str] = None
    checksum: Optional[str] = None


# =============================================================================
# INBOUND AI RESPONSE SCHEMAS
# =============================================================================
# The AI collaborator hands us plan content in this shape. Ids are optional;
# the engine generates them when missing.

class FileChangeDraft(BaseModel):
    id: Optional[str] = None
    operation: FileOperation
    file_path: str
    new_path: Optional[str] = None
    description: Optional[str] = None
    diff: list[DiffChunk] = Field(default_factory=list)
    file_type: Optional[str] = None
    encoding: Optional[str] = None
    size_bytes: Optional[int] = Field(default=None, ge=0)


class StepDraft(BaseModel):
    id: Optional[str] = None
    type: StepType = StepType.FILE_OPERATION
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    dependencies: list[str] = Field(default_factory=list)
    file_changes: list[FileChangeDraft] = Field(default_factory=list)
    estimated_duration_sec: Optional[int] = Field(default=None, ge=0)
    risk_level: RiskLevel = RiskLevel.LOW
    requires_user_confirmation: bool = False
    can_rollback: bool = True


class AIResponse(BaseModel):
    """
    Plan content as produced by the AI collaborator.

    The engine treats the content as opaque; it only relies on the structure.
    """
    id: Optional[str] = None
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    steps: list[StepDraft] = Field(default_factory=list)
    requires_git: bool = False
    requires_build: bool = False
    requires_test: bool = False
    rollback_point: Optional[str] = None
    validation: PlanValidation = Field(default_factory=PlanValidation)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def get_json_schema(model: type[BaseModel]) -> dict:
    """
    Get the JSON schema for a Pydantic model.

    Handy for telling an AI collaborator what AIResponse shape we accept.
    """
    return model.model_json_schema()


ALL_SCHEMAS = [
    DiffLine,
    DiffChunk,
    FileChangeMetadata,
    FileChange,
    StepMetadata,
    PlanStep,
    PlanMetadata,
    PlanTimeline,
    RollbackInfo,
    PlanValidation,
    PlanError,
    ActionPlan,
    AuditError,
    AuditLogEntry,
    PlanSummary,
    ValidationResult,
    StoreResult,
    FileChangeDraft,
    StepDraft,
    AIResponse,
]
