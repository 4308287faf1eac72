"""vaultloop 异常体系

按错误分类组织：配置、未找到、非法流转、校验、锁竞争。
所有异常继承 VaultLoopError，消息中带上出错的标识符。
"""

from pathlib import Path


class VaultLoopError(Exception):
    """vaultloop 基础异常"""


class ConfigError(VaultLoopError):
    """配置缺失或非法（启动阶段致命）"""


class VaultInitError(VaultLoopError):
    """Vault 目录初始化失败"""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"Vault 初始化失败: {path} -- {reason}")
        self.path = Path(path)
        self.reason = reason


class TaskNotFoundError(VaultLoopError):
    """任务不存在"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class PlanNotFoundError(VaultLoopError):
    """任务对应的 Plan 不存在"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Plan not found for task: {task_id}")
        self.task_id = task_id


class StepNotFoundError(VaultLoopError):
    """Plan 中不存在指定编号的步骤"""

    def __init__(self, task_id: str, step_number: int) -> None:
        super().__init__(f"Step {step_number} not found in plan for task: {task_id}")
        self.task_id = task_id
        self.step_number = step_number


class ErrorReportNotFoundError(VaultLoopError):
    """错误报告不存在"""

    def __init__(self, report_id: str) -> None:
        super().__init__(f"Error report not found: {report_id}")
        self.report_id = report_id


class InvalidTransitionError(VaultLoopError):
    """状态流转非法

    永远向调用方暴露，不做静默修正。
    """

    def __init__(
        self,
        task_id: str,
        current_state: str,
        attempted_state: str | None,
        reason: str = "",
    ) -> None:
        """
        Args:
            task_id: 任务 ID
            current_state: 当前状态
            attempted_state: 尝试进入的状态（终态之后为 None）
            reason: 附加说明
        """
        message = (
            f"Invalid state transition for task {task_id}: "
            f"{current_state} -> {attempted_state}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.task_id = task_id
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.reason = reason


class SignalRejectedError(VaultLoopError):
    """内存状态机拒绝当前状态下无效的信号"""

    def __init__(self, state: str, signal: str) -> None:
        super().__init__(f"Signal {signal} is not valid in state {state}")
        self.state = state
        self.signal = signal


class PlanValidationError(VaultLoopError):
    """Plan 内容不满足执行前置条件"""

    def __init__(self, task_id: str, errors: list[str]) -> None:
        super().__init__(f"Plan for task {task_id} is invalid: {'; '.join(errors)}")
        self.task_id = task_id
        self.errors = errors


class DocumentParseError(VaultLoopError):
    """文档格式错误（frontmatter 缺失闭合、YAML 非法、字段不符合模型）"""

    def __init__(self, path: Path | str | None, reason: str) -> None:
        super().__init__(f"Malformed document {path or '<memory>'}: {reason}")
        self.path = Path(path) if path is not None else None
        self.reason = reason


class FileLockError(VaultLoopError):
    """重试预算耗尽后仍未获得文件锁"""

    def __init__(self, path: Path | str, attempts: int) -> None:
        super().__init__(f"Failed to acquire lock on {path} after {attempts} attempts")
        self.path = Path(path)
        self.attempts = attempts
