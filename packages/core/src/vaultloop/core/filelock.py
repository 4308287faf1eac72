"""Advisory 文件锁 + 原子写 + 文件搬移

锁以 `<文件名>.lock` 旁路文件表示（与目标同目录，O_CREAT|O_EXCL 创建）。
持有期间后台任务定期刷新锁文件 mtime，超过 stale_s 未刷新的锁视为失效可被抢占。

锁是协作式的：只约束本系统自身的并发操作。人工通过文件管理器移动文档
不会经过该锁，这是人在回路（human-in-the-loop）契约的一部分。
"""

import asyncio
import contextlib
import os
import tempfile
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

import structlog

from .config import LockOptions
from .exceptions import FileLockError

log = structlog.get_logger()

LOCK_SUFFIX = ".lock"
RELOCATE_ATTEMPTS = 3


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + LOCK_SUFFIX)


def _try_create_lock(lock_path: Path) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f"{os.getpid()} {time.time():.3f}\n")
    return True


def _is_stale(lock_path: Path, stale_s: float) -> bool:
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        # 已被持有者释放，下一次尝试即可获取
        return False
    return age > stale_s


async def _heartbeat(lock_path: Path, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        with contextlib.suppress(FileNotFoundError):
            os.utime(lock_path)


@contextlib.asynccontextmanager
async def file_lock(path: Path, options: LockOptions | None = None) -> AsyncIterator[Path]:
    """获取 path 的 advisory 锁，在上下文内持有

    Args:
        path: 被保护的文档路径（文档本身可以不存在）
        options: 失效时长 / 重试次数 / 退避间隔

    Yields:
        锁文件路径

    Raises:
        FileLockError: 重试预算耗尽
    """
    opts = options or LockOptions()
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    attempts = 0
    while True:
        attempts += 1
        if _try_create_lock(lock_path):
            break
        if _is_stale(lock_path, opts.stale_s):
            log.warning("stale_lock_broken", lock_path=str(lock_path))
            with contextlib.suppress(FileNotFoundError):
                lock_path.unlink()
            if _try_create_lock(lock_path):
                break
        if attempts > opts.retries:
            raise FileLockError(path, attempts)
        await asyncio.sleep(opts.retry_interval_s * (2 ** (attempts - 1)))

    heartbeat = asyncio.create_task(_heartbeat(lock_path, opts.stale_s / 2))
    try:
        yield lock_path
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()


@contextlib.asynccontextmanager
async def lock_located(
    locate: Callable[[], Awaitable[Path]],
    options: LockOptions | None = None,
) -> AsyncIterator[Path]:
    """定位文档并持有其锁，等锁期间文档被搬走时按新位置重新定位

    Args:
        locate: 返回文档当前路径；文档不存在时抛出调用方的 NotFound 异常
        options: 锁参数

    Raises:
        FileLockError: 连续 RELOCATE_ATTEMPTS 次拿到锁时文档都已离开
    """
    path = await locate()
    for _ in range(RELOCATE_ATTEMPTS):
        async with file_lock(path, options):
            if path.is_file():
                yield path
                return
        log.info("locked_document_moved", path=str(path))
        path = await locate()
    raise FileLockError(path, RELOCATE_ATTEMPTS)


def atomic_write_text(path: Path, text: str) -> None:
    """同目录临时文件 + fsync + os.replace，读者永远看不到半写状态"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def relocate(path: Path, dest_dir: Path) -> Path:
    """把文档移动到 dest_dir（同名），返回新路径；已在目标目录时原样返回"""
    dest = dest_dir / path.name
    if dest == path:
        return path
    dest_dir.mkdir(parents=True, exist_ok=True)
    os.replace(path, dest)
    return dest
