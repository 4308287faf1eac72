"""ErrorReport Domain Model -- 需要人工介入的失败报告"""

from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .common import UtcDatetime
from .enums import ErrorType, ResolutionStatus, Severity

ERROR_FILENAME_PREFIX = "ERROR_"
MIN_SUGGESTED_OPTIONS = 2


class ErrorReportInput(BaseModel):
    """创建错误报告的输入"""

    error_type: ErrorType
    details: str
    context: str = ""
    task_id: str | None = None
    severity: Severity | None = Field(default=None, description="为空时按错误类型取默认值")
    suggested_options: list[str] = Field(default_factory=list)


class ErrorReport(BaseModel):
    """错误报告

    suggested_options 至少两条；涉及资金或身份信息时 severity 强制为 critical。
    """

    id: str = Field(description="ULID")
    timestamp: UtcDatetime
    task_id: str | None = None
    error_type: ErrorType
    severity: Severity
    details: str
    context: str = ""
    suggested_options: list[str] = Field(min_length=MIN_SUGGESTED_OPTIONS)
    resolution_status: ResolutionStatus = ResolutionStatus.OPEN
    resolved_at: UtcDatetime | None = None
    resolution_notes: str | None = None
    path: Path | None = Field(default=None, exclude=True)

    def to_metadata(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def error_filename(timestamp: datetime, task_id: str | None = None) -> str:
    """ERROR_YYYYMMDD_HHMMSS[_task8].md"""
    stamp = timestamp.strftime("%Y%m%d_%H%M%S")
    suffix = f"_{task_id[:8]}" if task_id else ""
    return f"{ERROR_FILENAME_PREFIX}{stamp}{suffix}.md"
