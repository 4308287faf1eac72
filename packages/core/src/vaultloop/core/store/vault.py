"""Vault 初始化与健康检查

initialize 幂等：重复执行得到相同的目录集合，第二次不会新建任何目录。
"""

import os
from datetime import UTC, datetime

import structlog

from ..config import VaultConfig
from ..document import read_document
from ..exceptions import DocumentParseError, VaultInitError
from ..models.enums import ResolutionStatus
from ..models.error_report import ERROR_FILENAME_PREFIX
from ..models.vault import AnomalyType, InitResult, VaultAnomaly, VaultStatus

log = structlog.get_logger()


async def initialize_vault(vault: VaultConfig) -> InitResult:
    """创建 Vault 目录结构

    Raises:
        VaultInitError: 根目录无法创建
    """
    try:
        vault.root_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise VaultInitError(vault.root_path, str(e)) from e

    result = InitResult(success=True)
    for directory in vault.directories():
        rel = str(directory.relative_to(vault.root_path))
        if directory.is_dir():
            result.existing.append(rel)
            continue
        try:
            directory.mkdir(parents=True, exist_ok=True)
            result.created.append(rel)
        except OSError as e:
            result.success = False
            result.warnings.append(f"{rel}: {e}")

    if not os.access(vault.root_path, os.W_OK):
        result.warnings.append(f"Vault 根目录不可写: {vault.root_path}")

    log.info(
        "vault_initialized",
        root=str(vault.root_path),
        created=len(result.created),
        existing=len(result.existing),
        success=result.success,
    )
    return result


async def verify_vault(vault: VaultConfig) -> list[VaultAnomaly]:
    """检查目录缺失、权限问题与无法解析的文档"""
    anomalies: list[VaultAnomaly] = []
    for directory in vault.directories():
        if not directory.is_dir():
            anomalies.append(
                VaultAnomaly(
                    type=AnomalyType.MISSING_DIR,
                    path=directory,
                    message=f"目录缺失: {directory.name}",
                )
            )
            continue
        if not os.access(directory, os.R_OK | os.W_OK):
            anomalies.append(
                VaultAnomaly(
                    type=AnomalyType.PERMISSION_ERROR,
                    path=directory,
                    message="目录不可读写",
                )
            )

    scan_dirs = [
        vault.intake,
        vault.plans,
        vault.plans_pending,
        vault.plans_approved,
        vault.plans_rejected,
    ]
    for directory in scan_dirs:
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob("*.md")):
            try:
                read_document(path)
            except DocumentParseError as e:
                anomalies.append(
                    VaultAnomaly(type=AnomalyType.INVALID_FILE, path=path, message=e.reason)
                )
            except OSError as e:
                anomalies.append(
                    VaultAnomaly(type=AnomalyType.PERMISSION_ERROR, path=path, message=str(e))
                )
    return anomalies


async def get_vault_status(vault: VaultConfig) -> VaultStatus:
    """统计任务数、待审批数、未处理错误报告数与最近活动时间"""
    anomalies = [
        a for a in await verify_vault(vault) if a.type != AnomalyType.INVALID_FILE
    ]
    status = VaultStatus(healthy=not anomalies)
    if not vault.root_path.is_dir():
        return status

    latest: float | None = None
    for directory in vault.task_locations():
        if not directory.is_dir():
            continue
        for path in directory.glob("*.md"):
            mtime = path.stat().st_mtime
            latest = mtime if latest is None or mtime > latest else latest
            if path.name.startswith(ERROR_FILENAME_PREFIX):
                try:
                    meta = read_document(path).metadata
                except DocumentParseError:
                    continue
                if meta.get("resolution_status") == ResolutionStatus.OPEN:
                    status.errors_open += 1
            elif path.name.startswith("task_"):
                status.task_count += 1

    if vault.plans_pending.is_dir():
        status.pending_approvals = len(list(vault.plans_pending.glob("*.md")))

    if latest is not None:
        status.last_activity = datetime.fromtimestamp(latest, tz=UTC)
    return status
