"""Vault 初始化与健康检查测试

测试内容：
1. 初始化创建全部目录，重复执行幂等
2. verify 报告缺失目录与无法解析的文档
3. status 统计任务、待审批与未处理错误
"""

from pathlib import Path

import pytest
from vaultloop.core.config import VAULT_DIRECTORIES, VaultConfig
from vaultloop.core.exceptions import VaultInitError
from vaultloop.core.models import AnomalyType, ErrorReportInput, ErrorType, TaskSource
from vaultloop.core.store import StoreGroup, get_vault_status, initialize_vault, verify_vault


class TestInitializeVault:
    async def test_creates_all_directories(self, vault_config: VaultConfig):
        result = await initialize_vault(vault_config)
        assert result.success is True
        assert len(result.created) == len(VAULT_DIRECTORIES)
        assert result.existing == []
        for directory in vault_config.directories():
            assert directory.is_dir()

    async def test_idempotent(self, vault_config: VaultConfig):
        first = await initialize_vault(vault_config)
        before = sorted(p for p in vault_config.root_path.rglob("*"))
        second = await initialize_vault(vault_config)
        after = sorted(p for p in vault_config.root_path.rglob("*"))

        assert second.success is True
        assert second.created == []
        assert sorted(second.existing) == sorted(first.created)
        assert before == after

    async def test_root_not_creatable(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(VaultInitError):
            await initialize_vault(VaultConfig(root_path=blocker / "vault"))


class TestVerifyVault:
    async def test_healthy_vault_has_no_anomalies(self, stores: StoreGroup):
        assert await verify_vault(stores.vault) == []

    async def test_missing_directory(self, stores: StoreGroup):
        stores.vault.plans_rejected.rmdir()
        anomalies = await verify_vault(stores.vault)
        assert [a.type for a in anomalies] == [AnomalyType.MISSING_DIR]
        assert anomalies[0].path == stores.vault.plans_rejected

    async def test_invalid_file(self, stores: StoreGroup):
        bad = stores.vault.intake / "task_broken.md"
        bad.write_text("---\nid: [oops\n---\nbody")
        anomalies = await verify_vault(stores.vault)
        assert len(anomalies) == 1
        assert anomalies[0].type == AnomalyType.INVALID_FILE
        assert anomalies[0].path == bad


class TestVaultStatus:
    async def test_empty(self, stores: StoreGroup):
        status = await get_vault_status(stores.vault)
        assert status.healthy is True
        assert status.task_count == 0
        assert status.pending_approvals == 0
        assert status.errors_open == 0
        assert status.last_activity is None

    async def test_counts(self, stores: StoreGroup):
        await stores.task_store.create("Organize the weekly reading list", TaskSource.MANUAL)
        task = await stores.task_store.create("Pay the electricity invoice", TaskSource.FINANCE)
        await stores.plan_store.generate(task)
        await stores.error_store.create(
            ErrorReportInput(error_type=ErrorType.TASK_PROCESSING, details="boom")
        )

        status = await get_vault_status(stores.vault)
        assert status.task_count == 2
        assert status.pending_approvals == 1
        assert status.errors_open == 1
        assert status.last_activity is not None

    async def test_unhealthy_when_directory_missing(self, stores: StoreGroup):
        stores.vault.logs.rmdir()
        status = await get_vault_status(stores.vault)
        assert status.healthy is False
