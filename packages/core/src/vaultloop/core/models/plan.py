"""Plan Domain Model

步骤的勾选状态以正文 checkbox 为准；approval_status 以文档所在目录为准。
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .common import UtcDatetime
from .enums import ApprovalStatus

PLAN_FILENAME_SUFFIX = "-plan.md"


class PlanStep(BaseModel):
    """Plan 中的一个步骤"""

    number: int = Field(description="步骤编号（1 起）")
    description: str
    completed: bool = False
    completed_at: UtcDatetime | None = None
    outcome: str | None = None


class Plan(BaseModel):
    """Plan 数据模型"""

    task_id: str = Field(description="所属任务 ID")
    title: str = Field(default="", description="任务标题")
    steps: list[PlanStep] = Field(default_factory=list, exclude=True)
    approval_status: ApprovalStatus = Field(description="审批状态（由目录推导）")
    requires_approval: bool = False
    approval_reasons: list[str] = Field(default_factory=list)
    created_at: UtcDatetime
    approved_at: UtcDatetime | None = None
    approved_by: str | None = None
    completed_at: UtcDatetime | None = None
    rejection_reason: str | None = None
    body: str = Field(default="", exclude=True)
    path: Path | None = Field(default=None, exclude=True)

    def to_metadata(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class PlanProgress(BaseModel):
    completed: int
    total: int
    percentage: int


class PlanValidationResult(BaseModel):
    """Plan 校验结果：errors 阻止执行，warnings 仅提示"""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class StalePlan(BaseModel):
    """超过阈值仍待审批的 Plan"""

    task_id: str
    hours_pending: int
    path: Path


def plan_filename(task_id: str) -> str:
    return f"{task_id[:8]}{PLAN_FILENAME_SUFFIX}"
