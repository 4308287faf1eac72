"""Vault / 运行状态模型"""

from datetime import datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field


class InitResult(BaseModel):
    """Vault 初始化结果"""

    success: bool
    created: list[str] = Field(default_factory=list, description="本次新建的目录")
    existing: list[str] = Field(default_factory=list, description="已存在的目录")
    warnings: list[str] = Field(default_factory=list)


class VaultStatus(BaseModel):
    healthy: bool
    task_count: int = 0
    pending_approvals: int = 0
    errors_open: int = 0
    last_activity: datetime | None = None


class AnomalyType(StrEnum):
    MISSING_DIR = "missing_dir"
    PERMISSION_ERROR = "permission_error"
    INVALID_FILE = "invalid_file"


class VaultAnomaly(BaseModel):
    type: AnomalyType
    path: Path
    message: str


class LoopStatus(BaseModel):
    """编排器运行状态快照"""

    running: bool
    tasks_in_progress: int = 0
    tasks_waiting_approval: int = 0
    tasks_in_error: int = 0
    last_processed: datetime | None = None
    uptime_seconds: float = 0.0
