"""类型化事件通道 -- 基于 asyncio.Queue 的发布/订阅

每个订阅者持有一个有界队列；队列已满的订阅者视为失效并被移除，
不会阻塞发布方。变更观察器与编排器各自持有一个通道。
"""

import asyncio
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Generic, TypeVar

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()

T = TypeVar("T")


class EventChannel(Generic[T]):
    """单一事件类型的广播通道"""

    def __init__(self, name: str, queue_maxsize: int = 100) -> None:
        self.name = name
        self._subscribers: set[asyncio.Queue[T]] = set()
        self._queue_maxsize = queue_maxsize

    def subscribe(self) -> asyncio.Queue[T]:
        """订阅事件流

        Returns:
            asyncio.Queue 实例，新事件会被推送到此队列
        """
        queue: asyncio.Queue[T] = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[T]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: T) -> None:
        """向所有订阅者广播事件（非阻塞，必须在事件循环线程内调用）"""
        dead_queues = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead_queues.append(queue)

        # 清理已满的队列
        for q in dead_queues:
            self._subscribers.discard(q)
            log.warning("slow_subscriber_dropped", channel=self.name)


class ObserverEventKind(StrEnum):
    TASK_NEW = "task_new"
    TASK_CHANGED = "task_changed"
    TASK_DELETED = "task_deleted"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    ERROR_NEW = "error_new"


class ObserverEvent(BaseModel):
    """变更观察器事件"""

    kind: ObserverEventKind
    path: Path
    task_hint: str | None = Field(default=None, description="文件名中的 8 位任务 ID 前缀")


class LoopEventKind(StrEnum):
    LOOP_STARTED = "loop_started"
    LOOP_STOPPED = "loop_stopped"
    TASK_CREATED = "task_created"
    TASK_STATE_CHANGED = "task_state_changed"
    TASK_COMPLETED = "task_completed"
    TASK_ERROR = "task_error"
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_RECEIVED = "approval_received"


class LoopEvent(BaseModel):
    """编排器事件"""

    kind: LoopEventKind
    task_id: str | None = None
    state: str | None = None
    detail: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
