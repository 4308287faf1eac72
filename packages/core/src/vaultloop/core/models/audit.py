"""AuditEntry Domain Model -- 不可变、只追加的活动记录"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .enums import Actor, Outcome

SYSTEM_TASK_ID = "SYSTEM"


class AuditEntry(BaseModel):
    """审计记录

    checksum 为除 checksum 以外全部字段的确定性哈希。
    """

    model_config = {"frozen": True}

    timestamp: datetime = Field(description="发生时间（UTC）")
    task_id: str = Field(description="任务 ID，系统级事件为 SYSTEM")
    state_from: str | None = Field(default=None, description="原状态")
    state_to: str = Field(description="新状态或系统事件名")
    actor: Actor
    outcome: Outcome
    details: str | None = None
    checksum: str | None = Field(default=None, description="历史 7 列记录为 None，空单元格为空串")

    @field_validator("details", "state_from", mode="before")
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    def checksum_fields(self) -> dict[str, Any]:
        """参与 checksum 计算的字段"""
        return self.model_dump(mode="json", exclude={"checksum"})


class AuditQuery(BaseModel):
    """审计查询条件，未设置的字段不参与过滤"""

    task_id: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    actor: Actor | None = None
    outcome: Outcome | None = None
    state_to: str | None = None
    limit: int | None = Field(default=None, ge=1)


class AuditQueryResult(BaseModel):
    entries: list[AuditEntry]
    total: int
    date: str | None = None
    task_id: str | None = None


class IntegrityResult(BaseModel):
    """分区完整性校验结果 -- 列出每条异常记录的序号与原因"""

    valid: bool
    date: str
    total_entries: int
    invalid_entries: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    skipped_entries: int = Field(default=0, description="无 checksum 的历史记录数")


class IntegritySummary(BaseModel):
    total_dates: int
    valid_dates: int
    invalid_dates: list[str] = Field(default_factory=list)
    total_entries: int
    invalid_entries: int
