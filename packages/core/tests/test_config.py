"""配置加载单元测试

测试内容：
1. 缺少根路径 -> ConfigError
2. 环境变量覆盖默认值
3. 非法数值回退默认值
4. 目录布局
"""

from pathlib import Path

import pytest
from vaultloop.core.config import (
    VAULT_DIRECTORIES,
    AppConfig,
    VaultConfig,
    create_vault_config,
    load_config,
    validate_config,
)
from vaultloop.core.exceptions import ConfigError

ENV_VARS = (
    "VAULTLOOP_VAULT_PATH",
    "VAULTLOOP_LOG_LEVEL",
    "VAULTLOOP_LOG_FORMAT",
    "VAULTLOOP_APPROVAL_POLL_S",
    "VAULTLOOP_APPROVAL_TIMEOUT_S",
    "VAULTLOOP_SHUTDOWN_TIMEOUT_S",
    "VAULTLOOP_RECONCILE_INTERVAL_S",
    "VAULTLOOP_STALE_APPROVAL_HOURS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_missing_root_is_fatal(self):
        with pytest.raises(ConfigError):
            load_config()

    def test_blank_root_is_fatal(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("VAULTLOOP_VAULT_PATH", "   ")
        with pytest.raises(ConfigError):
            load_config()

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("VAULTLOOP_VAULT_PATH", str(tmp_path))
        config = load_config()
        assert config.vault.root_path == tmp_path.resolve()
        assert config.log_level == "info"
        assert config.approval_poll_s == 5.0
        assert config.shutdown_timeout_s == 30.0
        assert config.stale_approval_hours == 24

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("VAULTLOOP_VAULT_PATH", str(tmp_path))
        monkeypatch.setenv("VAULTLOOP_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("VAULTLOOP_LOG_FORMAT", "json")
        monkeypatch.setenv("VAULTLOOP_APPROVAL_POLL_S", "0.5")
        monkeypatch.setenv("VAULTLOOP_SHUTDOWN_TIMEOUT_S", "3")
        monkeypatch.setenv("VAULTLOOP_STALE_APPROVAL_HOURS", "12")
        config = load_config()
        assert config.log_level == "debug"
        assert config.log_format == "json"
        assert config.approval_poll_s == 0.5
        assert config.shutdown_timeout_s == 3.0
        assert config.stale_approval_hours == 12

    def test_invalid_numeric_falls_back(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("VAULTLOOP_VAULT_PATH", str(tmp_path))
        monkeypatch.setenv("VAULTLOOP_APPROVAL_POLL_S", "soon")
        monkeypatch.setenv("VAULTLOOP_STALE_APPROVAL_HOURS", "a day")
        config = load_config()
        assert config.approval_poll_s == 5.0
        assert config.stale_approval_hours == 24

    def test_invalid_log_level(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("VAULTLOOP_VAULT_PATH", str(tmp_path))
        monkeypatch.setenv("VAULTLOOP_LOG_LEVEL", "verbose")
        with pytest.raises(ConfigError):
            load_config()

    def test_root_is_a_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        not_a_dir = tmp_path / "file.txt"
        not_a_dir.write_text("x")
        monkeypatch.setenv("VAULTLOOP_VAULT_PATH", str(not_a_dir))
        with pytest.raises(ConfigError):
            load_config()


class TestVaultLayout:
    def test_directories(self, tmp_path: Path):
        vault = VaultConfig(root_path=tmp_path)
        assert len(vault.directories()) == len(VAULT_DIRECTORIES)
        assert vault.intake == tmp_path / "Needs_Action"
        assert vault.plans_pending == tmp_path / "Plans" / "pending"
        assert vault.done_invalid == tmp_path / "Done" / "invalid"

    def test_task_locations_start_with_intake(self, tmp_path: Path):
        vault = VaultConfig(root_path=tmp_path)
        assert vault.task_locations()[0] == vault.intake

    def test_create_vault_config_resolves(self, tmp_path: Path):
        vault = create_vault_config(tmp_path / "a" / ".." / "b")
        assert vault.root_path == (tmp_path / "b").resolve()

    def test_validate_ok(self, tmp_path: Path):
        validate_config(AppConfig(vault=VaultConfig(root_path=tmp_path)))
