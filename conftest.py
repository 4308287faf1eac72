"""全局 pytest 配置 -- 临时 Vault 与 Store 实例组 fixture"""

from pathlib import Path

import pytest
import pytest_asyncio
from vaultloop.core.config import AppConfig, LockOptions, VaultConfig
from vaultloop.core.store import StoreGroup, create_store_group


@pytest.fixture
def vault_config(tmp_path: Path) -> VaultConfig:
    """指向临时目录的 Vault 布局（尚未初始化）"""
    return VaultConfig(root_path=tmp_path / "vault")


@pytest.fixture
def app_config(vault_config: VaultConfig) -> AppConfig:
    """测试用运行配置：短轮询、短超时"""
    return AppConfig(
        vault=vault_config,
        approval_poll_s=0.05,
        approval_timeout_s=5,
        shutdown_timeout_s=2,
        reconcile_interval_s=0.2,
        lock=LockOptions(stale_s=5, retries=3, retry_interval_s=0.01),
    )


@pytest_asyncio.fixture
async def stores(app_config: AppConfig) -> StoreGroup:
    """已初始化 Vault 的 Store 实例组"""
    return await create_store_group(app_config)
