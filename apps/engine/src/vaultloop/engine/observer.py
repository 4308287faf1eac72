"""变更观察器 -- watchdog 监听 intake 与三个审批目录

watchdog 回调运行在观察线程中，通过 loop.call_soon_threadsafe
把类型化事件投递回事件循环线程的 EventChannel。
通知可能丢失，编排器另有周期对账兜底。
"""

import asyncio
from enum import StrEnum
from pathlib import Path

import structlog
from vaultloop.core.config import VaultConfig
from vaultloop.core.models.error_report import ERROR_FILENAME_PREFIX
from vaultloop.core.store.task_store import REMINDER_FILENAME_PREFIX
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .events import EventChannel, ObserverEvent, ObserverEventKind

log = structlog.get_logger()


class ChangeKind(StrEnum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


def _task_hint(path: Path) -> str | None:
    name = path.name
    if name.startswith("task_"):
        return name.removeprefix("task_")[:8]
    if name.endswith("-plan.md"):
        return name.removesuffix("-plan.md")[:8]
    return None


def classify(path: Path, kind: ChangeKind, vault: VaultConfig) -> ObserverEvent | None:
    """文件变更 -> 观察器事件；与生命周期无关的变更返回 None"""
    if path.suffix != ".md" or path.name.startswith("."):
        return None

    parent = path.parent
    if parent == vault.intake:
        if path.name.startswith(REMINDER_FILENAME_PREFIX):
            return None
        if path.name.startswith(ERROR_FILENAME_PREFIX):
            if kind != ChangeKind.CREATED:
                return None
            return ObserverEvent(kind=ObserverEventKind.ERROR_NEW, path=path)
        event_kind = {
            ChangeKind.CREATED: ObserverEventKind.TASK_NEW,
            ChangeKind.MODIFIED: ObserverEventKind.TASK_CHANGED,
            ChangeKind.DELETED: ObserverEventKind.TASK_DELETED,
        }[kind]
        return ObserverEvent(kind=event_kind, path=path, task_hint=_task_hint(path))

    if kind != ChangeKind.CREATED:
        return None
    if parent == vault.plans_approved:
        return ObserverEvent(
            kind=ObserverEventKind.PLAN_APPROVED, path=path, task_hint=_task_hint(path)
        )
    if parent == vault.plans_rejected:
        return ObserverEvent(
            kind=ObserverEventKind.PLAN_REJECTED, path=path, task_hint=_task_hint(path)
        )
    return None


class _VaultEventHandler(FileSystemEventHandler):
    """把 watchdog 事件转交给 VaultObserver（运行在观察线程）"""

    def __init__(self, observer: "VaultObserver") -> None:
        super().__init__()
        self._observer = observer

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._observer.dispatch(Path(str(event.src_path)), ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._observer.dispatch(Path(str(event.src_path)), ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._observer.dispatch(Path(str(event.src_path)), ChangeKind.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        # 移出视为删除，移入视为新建（原子写入的 tmp -> .md 也走这里）
        self._observer.dispatch(Path(str(event.src_path)), ChangeKind.DELETED)
        self._observer.dispatch(Path(str(event.dest_path)), ChangeKind.CREATED)


class VaultObserver:
    """监听 Vault 目录并发布 ObserverEvent"""

    def __init__(self, vault: VaultConfig) -> None:
        self._vault = vault
        self.events: EventChannel[ObserverEvent] = EventChannel("observer")
        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._accepting = False

    def watched_directories(self) -> list[Path]:
        return [
            self._vault.intake,
            self._vault.plans_pending,
            self._vault.plans_approved,
            self._vault.plans_rejected,
        ]

    def start(self) -> None:
        """开始监听（必须在事件循环线程内调用）"""
        self._loop = asyncio.get_running_loop()
        observer = Observer()
        handler = _VaultEventHandler(self)
        for directory in self.watched_directories():
            directory.mkdir(parents=True, exist_ok=True)
            observer.schedule(handler, str(directory), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        self._accepting = True
        log.info("observer_started", directories=[d.name for d in self.watched_directories()])

    def stop(self) -> None:
        """停止接收新事件并关闭观察线程"""
        self._accepting = False
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        log.info("observer_stopped")

    @property
    def running(self) -> bool:
        return self._accepting

    def dispatch(self, path: Path, kind: ChangeKind) -> None:
        """由观察线程调用：分类后投递到事件循环"""
        if not self._accepting or self._loop is None:
            return
        event = classify(path, kind, self._vault)
        if event is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._publish, event)
        except RuntimeError:
            # 事件循环已关闭
            self._accepting = False

    def _publish(self, event: ObserverEvent) -> None:
        if self._accepting:
            self.events.publish(event)
