"""vaultloop Core Store -- 文件持久化实现

提供工厂函数创建共享同一 Vault 配置的 Store 实例组。
"""

from ..config import AppConfig
from .approval import ApprovalProtocol
from .audit_log import FileAuditLog
from .error_store import FileErrorStore, classify_exception
from .plan_store import FilePlanStore, default_steps
from .task_store import FileTaskStore, is_task_document
from .vault import get_vault_status, initialize_vault, verify_vault


class StoreGroup:
    """Store 实例组 -- 共享同一个 Vault 与锁参数"""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.vault = config.vault
        self.task_store = FileTaskStore(config.vault, config.lock)
        self.plan_store = FilePlanStore(config.vault, config.lock)
        self.approval = ApprovalProtocol(config.vault, self.plan_store, config.lock)
        self.audit_log = FileAuditLog(config.vault, config.lock)
        self.error_store = FileErrorStore(config.vault, config.lock)


async def create_store_group(config: AppConfig) -> StoreGroup:
    """初始化 Vault 目录并创建 Store 实例组

    Args:
        config: 运行配置

    Returns:
        StoreGroup 实例
    """
    await initialize_vault(config.vault)
    return StoreGroup(config)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "FileTaskStore",
    "FilePlanStore",
    "ApprovalProtocol",
    "FileAuditLog",
    "FileErrorStore",
    "classify_exception",
    "default_steps",
    "is_task_document",
    "initialize_vault",
    "verify_vault",
    "get_vault_status",
]
