"""CLI 入口模块 -- python -m vaultloop.engine <command>

支持的命令：
  init                 初始化 Vault 目录结构
  run                  启动编排器，直到收到 SIGINT/SIGTERM
  status               输出 Vault 健康状态
  verify-audit [date]  校验审计日志（默认全部日期）
"""

import asyncio
import signal
import sys

from vaultloop.core.config import AppConfig, load_config
from vaultloop.core.exceptions import VaultLoopError
from vaultloop.core.store import (
    create_store_group,
    get_vault_status,
    initialize_vault,
    verify_vault,
)

from .logging_config import setup_logging
from .orchestrator import LifecycleOrchestrator

USAGE = """用法: python -m vaultloop.engine <command>
命令:
  init                 初始化 Vault 目录结构
  run                  启动编排器
  status               输出 Vault 健康状态
  verify-audit [date]  校验审计日志"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    command = sys.argv[1]
    commands = {
        "init": init_vault,
        "run": run_loop,
        "status": show_status,
        "verify-audit": verify_audit,
    }
    if command not in commands:
        print(f"未知命令: {command}")
        print("可用命令: " + ", ".join(commands))
        sys.exit(1)

    try:
        config = load_config()
    except VaultLoopError as e:
        print(f"配置错误: {e}")
        sys.exit(2)

    setup_logging(config.log_level, config.log_format)
    exit_code = asyncio.run(commands[command](config, sys.argv[2:]))
    sys.exit(exit_code)


async def init_vault(config: AppConfig, args: list[str]) -> int:
    result = await initialize_vault(config.vault)
    print(f"Vault 路径: {config.vault.root_path}")
    print(f"新建目录: {len(result.created)}，已存在: {len(result.existing)}")
    for warning in result.warnings:
        print(f"警告: {warning}")
    return 0 if result.success else 1


async def run_loop(config: AppConfig, args: list[str]) -> int:
    """运行编排器直到收到停止信号"""
    stores = await create_store_group(config)
    orchestrator = LifecycleOrchestrator(config, stores)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await orchestrator.start()
    print(f"编排器已启动，监听 {config.vault.root_path}")
    await stop_requested.wait()

    graceful = await orchestrator.stop()
    print("已停止" if graceful else "已停止（超时，强制取消进行中的任务）")
    return 0 if graceful else 1


async def show_status(config: AppConfig, args: list[str]) -> int:
    status = await get_vault_status(config.vault)
    anomalies = await verify_vault(config.vault)
    print(f"Vault 路径: {config.vault.root_path}")
    print(f"健康: {'是' if status.healthy else '否'}")
    print(f"任务数: {status.task_count}")
    print(f"待审批: {status.pending_approvals}")
    print(f"未处理错误: {status.errors_open}")
    if status.last_activity is not None:
        print(f"最近活动: {status.last_activity.isoformat()}")
    for anomaly in anomalies:
        print(f"异常 [{anomaly.type}] {anomaly.path}: {anomaly.message}")
    return 0 if status.healthy else 1


async def verify_audit(config: AppConfig, args: list[str]) -> int:
    stores = await create_store_group(config)
    audit_log = stores.audit_log
    try:
        results = (
            [await audit_log.verify_integrity(args[0])] if args else await audit_log.verify_all()
        )
    except ValueError as e:
        print(f"日期格式错误（应为 YYYY-MM-DD）: {e}")
        return 2

    invalid = 0
    for result in results:
        mark = "OK" if result.valid else "INVALID"
        print(
            f"{result.date}: {mark} "
            f"({result.total_entries} 条，跳过 {result.skipped_entries} 条旧格式记录)"
        )
        for error in result.errors:
            print(f"  - {error}")
        invalid += len(result.invalid_entries)
    print(f"共校验 {len(results)} 个分区，异常记录 {invalid} 条")
    return 0 if invalid == 0 else 1


if __name__ == "__main__":
    main()
