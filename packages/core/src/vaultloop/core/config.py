"""配置模块 -- Vault 目录布局 + 运行参数

从环境变量加载（VAULTLOOP_ 前缀），数值解析失败时记录 warning 并使用默认值，
只有根路径缺失会阻塞启动。
"""

import os
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, Field

from .exceptions import ConfigError

log = structlog.get_logger()

# Vault 内的逻辑目录（相对根路径）
INTAKE_DIR = "Needs_Action"
PLANS_DIR = "Plans"
PLANS_PENDING_DIR = "Plans/pending"
PLANS_APPROVED_DIR = "Plans/approved"
PLANS_REJECTED_DIR = "Plans/rejected"
ACCOUNTING_DIR = "Accounting"
DONE_DIR = "Done"
DONE_FAILED_DIR = "Done/failed"
DONE_INVALID_DIR = "Done/invalid"
LOGS_DIR = "Logs"

VAULT_DIRECTORIES: tuple[str, ...] = (
    INTAKE_DIR,
    PLANS_DIR,
    PLANS_PENDING_DIR,
    PLANS_APPROVED_DIR,
    PLANS_REJECTED_DIR,
    ACCOUNTING_DIR,
    DONE_DIR,
    DONE_FAILED_DIR,
    DONE_INVALID_DIR,
    LOGS_DIR,
)


class VaultConfig(BaseModel):
    """Vault 目录布局"""

    root_path: Path = Field(description="Vault 根目录")

    @property
    def intake(self) -> Path:
        return self.root_path / INTAKE_DIR

    @property
    def plans(self) -> Path:
        return self.root_path / PLANS_DIR

    @property
    def plans_pending(self) -> Path:
        return self.root_path / PLANS_PENDING_DIR

    @property
    def plans_approved(self) -> Path:
        return self.root_path / PLANS_APPROVED_DIR

    @property
    def plans_rejected(self) -> Path:
        return self.root_path / PLANS_REJECTED_DIR

    @property
    def accounting(self) -> Path:
        return self.root_path / ACCOUNTING_DIR

    @property
    def done(self) -> Path:
        return self.root_path / DONE_DIR

    @property
    def done_failed(self) -> Path:
        return self.root_path / DONE_FAILED_DIR

    @property
    def done_invalid(self) -> Path:
        return self.root_path / DONE_INVALID_DIR

    @property
    def logs(self) -> Path:
        return self.root_path / LOGS_DIR

    def directories(self) -> list[Path]:
        """所有受管目录的绝对路径（父目录在前）"""
        return [self.root_path / rel for rel in VAULT_DIRECTORIES]

    def task_locations(self) -> list[Path]:
        """Task 文档可能所在的目录，按查找优先级排列"""
        return [self.intake, self.done, self.done_failed, self.done_invalid]


class LockOptions(BaseModel):
    """Advisory 文件锁参数"""

    stale_s: float = Field(default=10.0, gt=0, description="锁文件超过该时长未刷新视为失效")
    retries: int = Field(default=3, ge=0, description="获取失败后的重试次数")
    retry_interval_s: float = Field(default=0.1, gt=0, description="首次重试等待（指数退避）")


class AppConfig(BaseModel):
    """运行配置

    环境变量:
        VAULTLOOP_VAULT_PATH: Vault 根目录（必填）
        VAULTLOOP_LOG_LEVEL: 日志级别（默认 info）
        VAULTLOOP_LOG_FORMAT: 日志渲染（dev/json）
        VAULTLOOP_APPROVAL_POLL_S: 审批轮询间隔（秒，默认 5）
        VAULTLOOP_SHUTDOWN_TIMEOUT_S: 优雅停机超时（秒，默认 30）
    """

    vault: VaultConfig
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info", description="日志级别"
    )
    log_format: Literal["dev", "json"] = Field(default="dev", description="日志渲染模式")
    approval_poll_s: float = Field(default=5.0, gt=0, description="审批状态轮询间隔（秒）")
    approval_timeout_s: float = Field(
        default=86400.0,
        gt=0,
        description="单次处理中等待审批的上限（秒），超时后任务留在 APPROVE 等待下次对账",
    )
    shutdown_timeout_s: float = Field(default=30.0, gt=0, description="优雅停机超时（秒）")
    reconcile_interval_s: float = Field(default=30.0, gt=0, description="周期对账间隔（秒）")
    stale_approval_hours: int = Field(default=24, ge=1, description="待审批提醒阈值（小时）")
    lock: LockOptions = Field(default_factory=LockOptions)


def create_vault_config(root_path: str | Path) -> VaultConfig:
    """用显式路径构建 VaultConfig"""
    return VaultConfig(root_path=Path(root_path).expanduser().resolve())


def validate_config(config: AppConfig) -> None:
    """启动前校验，非法时抛出 ConfigError"""
    if not str(config.vault.root_path).strip():
        raise ConfigError("Vault 根路径为空")
    if config.vault.root_path.exists() and not config.vault.root_path.is_dir():
        raise ConfigError(f"Vault 根路径不是目录: {config.vault.root_path}")


def _float_env(name: str, field: str, default: float, kwargs: dict) -> None:
    if val := os.environ.get(name):
        try:
            kwargs[field] = float(val)
        except ValueError:
            log.warning("invalid_numeric_config", env_var=name, value=val, fallback=default)
            # 使用默认值，不阻塞启动


def load_config() -> AppConfig:
    """从环境变量加载运行配置

    Returns:
        AppConfig 实例

    Raises:
        ConfigError: VAULTLOOP_VAULT_PATH 缺失或非法
    """
    root = os.environ.get("VAULTLOOP_VAULT_PATH", "").strip()
    if not root:
        raise ConfigError("缺少必填环境变量 VAULTLOOP_VAULT_PATH")

    kwargs: dict = {"vault": create_vault_config(root)}

    if val := os.environ.get("VAULTLOOP_LOG_LEVEL"):
        kwargs["log_level"] = val.lower()

    if val := os.environ.get("VAULTLOOP_LOG_FORMAT"):
        kwargs["log_format"] = val.lower()

    _float_env("VAULTLOOP_APPROVAL_POLL_S", "approval_poll_s", 5.0, kwargs)
    _float_env("VAULTLOOP_APPROVAL_TIMEOUT_S", "approval_timeout_s", 86400.0, kwargs)
    _float_env("VAULTLOOP_SHUTDOWN_TIMEOUT_S", "shutdown_timeout_s", 30.0, kwargs)
    _float_env("VAULTLOOP_RECONCILE_INTERVAL_S", "reconcile_interval_s", 30.0, kwargs)

    if val := os.environ.get("VAULTLOOP_STALE_APPROVAL_HOURS"):
        try:
            kwargs["stale_approval_hours"] = int(val)
        except ValueError:
            log.warning(
                "invalid_numeric_config",
                env_var="VAULTLOOP_STALE_APPROVAL_HOURS",
                value=val,
                fallback=24,
            )

    try:
        config = AppConfig(**kwargs)
    except ValueError as e:
        raise ConfigError(f"配置非法: {e}") from e

    validate_config(config)
    return config
