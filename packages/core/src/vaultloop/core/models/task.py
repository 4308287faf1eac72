"""Task Domain Model

一个任务对应 intake 或归档目录中的一个文档。
元数据存放在 frontmatter，body 为任务正文，不写入元数据。
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .common import UtcDatetime
from .enums import CompletionStatus, Priority, TaskSource, TaskState

TASK_FILENAME_PREFIX = "task_"
SLUG_MAX_LENGTH = 50


class Task(BaseModel):
    """Task 数据模型

    current_state 只能沿固定顺序前进；CLOSE 之后文档被移入归档目录，
    除显式 reopen 外不再变化。
    """

    id: str = Field(description="唯一标识，128 位随机 UUID")
    title: str = Field(description="任务标题")
    source: TaskSource = Field(description="来源标识")
    created_at: UtcDatetime = Field(description="创建时间")
    current_state: TaskState = Field(default=TaskState.WATCH, description="当前阶段")
    priority: Priority = Field(default=Priority.NORMAL, description="优先级")
    requires_approval: bool = Field(default=False, description="是否需要人工审批")
    plan_reference: str | None = Field(default=None, description="Plan 文档文件名")
    error_count: int = Field(default=0, ge=0, description="失败次数")
    last_error: str | None = Field(default=None, description="最近一次失败信息")
    proposed_steps: list[str] = Field(default_factory=list, description="解读阶段给出的步骤")
    completed_at: UtcDatetime | None = Field(default=None, description="进入 CLOSE 的时间")
    completion_status: CompletionStatus | None = Field(default=None, description="结束方式")
    completion_notes: str | None = Field(default=None, description="结束备注")
    body: str = Field(default="", exclude=True, description="文档正文")
    path: Path | None = Field(default=None, exclude=True, description="文档当前路径")

    def to_metadata(self) -> dict[str, Any]:
        """序列化为 frontmatter 映射（去掉空值）"""
        return self.model_dump(mode="json", exclude_none=True)


class TransitionOutcome(BaseModel):
    """当前阶段的处理结果"""

    success: bool = True
    error: str | None = None
    plan_reference: str | None = None


def slugify(title: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """标题 -> 文件名片段（小写、连字符、最长 50）"""
    chars = [c if c.isalnum() else "-" for c in title.lower()]
    slug = "-".join(part for part in "".join(chars).split("-") if part)
    return slug[:max_length].rstrip("-") or "task"


def task_filename(task_id: str, title: str) -> str:
    return f"{TASK_FILENAME_PREFIX}{task_id[:8]}_{slugify(title)}.md"
