"""枚举定义 -- 生命周期状态与各类封闭取值集合

包含 TaskState 八阶段状态、STATE_ORDER 固定顺序、VALID_TRANSITIONS 合法流转映射，
以及唯一的条件分叉：PLAN 之后按 requires_approval 进入 APPROVE 或 ACT。
"""

from enum import StrEnum


class TaskState(StrEnum):
    """Task 生命周期阶段"""

    WATCH = "WATCH"
    WRITE = "WRITE"
    REASON = "REASON"
    PLAN = "PLAN"
    APPROVE = "APPROVE"
    ACT = "ACT"
    LOG = "LOG"
    CLOSE = "CLOSE"


STATE_ORDER: tuple[TaskState, ...] = (
    TaskState.WATCH,
    TaskState.WRITE,
    TaskState.REASON,
    TaskState.PLAN,
    TaskState.APPROVE,
    TaskState.ACT,
    TaskState.LOG,
    TaskState.CLOSE,
)

# 合法流转；PLAN 的两个目标由 requires_approval 二选一
VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.WATCH: {TaskState.WRITE},
    TaskState.WRITE: {TaskState.REASON},
    TaskState.REASON: {TaskState.PLAN},
    TaskState.PLAN: {TaskState.APPROVE, TaskState.ACT},
    TaskState.APPROVE: {TaskState.ACT},
    TaskState.ACT: {TaskState.LOG},
    TaskState.LOG: {TaskState.CLOSE},
    # 终态不可再流转（重新打开走 reopen）
    TaskState.CLOSE: set(),
}

TERMINAL_STATES: set[TaskState] = {TaskState.CLOSE}


def state_rank(state: TaskState) -> int:
    """状态在固定顺序中的位置"""
    return STATE_ORDER.index(state)


def next_state(current: TaskState, requires_approval: bool) -> TaskState | None:
    """计算唯一合法的下一个状态

    Args:
        current: 当前状态
        requires_approval: 任务是否需要审批（仅影响 PLAN 的去向）

    Returns:
        下一个状态，终态返回 None
    """
    if current == TaskState.PLAN:
        return TaskState.APPROVE if requires_approval else TaskState.ACT
    allowed = VALID_TRANSITIONS.get(current, set())
    return next(iter(allowed), None)


def validate_transition(
    from_state: TaskState,
    to_state: TaskState,
    requires_approval: bool,
) -> bool:
    """验证状态流转是否合法

    Returns:
        True 如果 to_state 是唯一合法的下一个状态，否则 False
    """
    return next_state(from_state, requires_approval) == to_state


class TaskSource(StrEnum):
    """任务来源（intake 适配器标识）"""

    GMAIL = "gmail"
    WHATSAPP = "whatsapp"
    FILESYSTEM = "filesystem"
    FINANCE = "finance"
    MANUAL = "manual"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ApprovalStatus(StrEnum):
    """Plan 审批状态 -- 读取时由文档所在目录推导"""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NOT_REQUIRED = "not_required"


class Actor(StrEnum):
    """审计记录的操作者"""

    SYSTEM = "system"
    HUMAN = "human"
    EXECUTOR = "executor"


class Outcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# critical 排在最前
SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class ResolutionStatus(StrEnum):
    """错误报告处理状态

    当前仅实现 open -> resolved；acknowledged / ignored 可被表示但没有对应操作。
    """

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class ErrorType(StrEnum):
    """错误分类（封闭集合）"""

    TASK_PROCESSING = "task_processing"
    EXECUTOR = "executor"
    VALIDATION = "validation"
    STATE_TRANSITION = "state_transition"
    FILESYSTEM = "filesystem"
    AMBIGUITY = "ambiguity"


DEFAULT_SEVERITY: dict[ErrorType, Severity] = {
    ErrorType.TASK_PROCESSING: Severity.MEDIUM,
    ErrorType.EXECUTOR: Severity.HIGH,
    ErrorType.VALIDATION: Severity.MEDIUM,
    ErrorType.STATE_TRANSITION: Severity.HIGH,
    ErrorType.FILESYSTEM: Severity.MEDIUM,
    ErrorType.AMBIGUITY: Severity.LOW,
}


class CompletionStatus(StrEnum):
    """任务结束方式，决定归档目录"""

    COMPLETED = "completed"
    FAILED = "failed"
    INVALID = "invalid"
    REJECTED = "rejected"
