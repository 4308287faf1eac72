"""vaultloop Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .audit import (
    SYSTEM_TASK_ID,
    AuditEntry,
    AuditQuery,
    AuditQueryResult,
    IntegrityResult,
    IntegritySummary,
)
from .enums import (
    DEFAULT_SEVERITY,
    SEVERITY_RANK,
    STATE_ORDER,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Actor,
    ApprovalStatus,
    CompletionStatus,
    ErrorType,
    Outcome,
    Priority,
    ResolutionStatus,
    Severity,
    TaskSource,
    TaskState,
    next_state,
    state_rank,
    validate_transition,
)
from .error_report import ErrorReport, ErrorReportInput, error_filename
from .plan import (
    Plan,
    PlanProgress,
    PlanStep,
    PlanValidationResult,
    StalePlan,
    plan_filename,
)
from .task import Task, TransitionOutcome, slugify, task_filename
from .vault import AnomalyType, InitResult, LoopStatus, VaultAnomaly, VaultStatus

__all__ = [
    # 枚举
    "TaskState",
    "TaskSource",
    "Priority",
    "ApprovalStatus",
    "Actor",
    "Outcome",
    "Severity",
    "ResolutionStatus",
    "ErrorType",
    "CompletionStatus",
    # 状态机
    "STATE_ORDER",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "next_state",
    "state_rank",
    "validate_transition",
    "DEFAULT_SEVERITY",
    "SEVERITY_RANK",
    # Task
    "Task",
    "TransitionOutcome",
    "slugify",
    "task_filename",
    # Plan
    "Plan",
    "PlanStep",
    "PlanProgress",
    "PlanValidationResult",
    "StalePlan",
    "plan_filename",
    # Audit
    "AuditEntry",
    "AuditQuery",
    "AuditQueryResult",
    "IntegrityResult",
    "IntegritySummary",
    "SYSTEM_TASK_ID",
    # ErrorReport
    "ErrorReport",
    "ErrorReportInput",
    "error_filename",
    # Vault
    "InitResult",
    "VaultStatus",
    "VaultAnomaly",
    "AnomalyType",
    "LoopStatus",
]
