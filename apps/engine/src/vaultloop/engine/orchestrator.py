"""LifecycleOrchestrator -- 组合各 Store、观察器与 TaskProcessor

职责：
1. start/stop 生命周期（运行标志、启动时间由编排器实例持有，不使用全局单例）
2. 每个任务一个 TaskMachine 与一个 asyncio.Task，任务之间互不影响
3. 在边界捕获未处理异常 -> 错误报告 + 状态机进入 ERROR，任务留在最后持久化的状态
4. 观察器事件驱动 + 周期对账兜底（通知丢失时仍能推进）
"""

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import structlog
from vaultloop.core.config import AppConfig
from vaultloop.core.exceptions import DocumentParseError, SignalRejectedError
from vaultloop.core.models import (
    ErrorReportInput,
    ErrorType,
    LoopStatus,
    Outcome,
    Priority,
    Task,
    TaskSource,
    TaskState,
)
from vaultloop.core.store import StoreGroup, initialize_vault

from .events import EventChannel, LoopEvent, LoopEventKind, ObserverEvent, ObserverEventKind
from .machine import MachineState, Signal, TaskMachine
from .observer import VaultObserver
from .processor import TaskProcessor
from .protocols import EchoExecutor, Executor, Interpreter, KeywordInterpreter

log = structlog.get_logger()

MALFORMED_DOCUMENT_OPTIONS: list[str] = [
    "Fix the document metadata and move it back to Needs_Action",
    "Recreate the task from its original content",
    "Delete the document from Done/invalid if it is not needed",
]


class LifecycleOrchestrator:
    """任务生命周期编排器"""

    def __init__(
        self,
        config: AppConfig,
        stores: StoreGroup | None = None,
        interpreter: Interpreter | None = None,
        executor: Executor | None = None,
        watch: bool = True,
    ) -> None:
        self._config = config
        self._stores = stores or StoreGroup(config)
        self.events: EventChannel[LoopEvent] = EventChannel("orchestrator")
        self._processor = TaskProcessor(
            self._stores,
            config,
            interpreter or KeywordInterpreter(),
            executor or EchoExecutor(),
            self.events,
        )
        self._observer = VaultObserver(config.vault) if watch else None

        self._machines: dict[str, TaskMachine] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._background: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._running = False
        self._started_at: datetime | None = None
        self._last_processed: datetime | None = None
        self._adopting: set[Path] = set()

    @property
    def stores(self) -> StoreGroup:
        return self._stores

    @property
    def running(self) -> bool:
        return self._running

    def machine_for(self, task_id: str) -> TaskMachine | None:
        return self._machines.get(task_id)

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """初始化 Vault、启动观察器与对账循环，并恢复 intake 中的未完成任务"""
        if self._running:
            return
        await initialize_vault(self._config.vault)
        self._stopping.clear()
        self._running = True
        self._started_at = datetime.now(UTC)

        await self._stores.audit_log.log_system_event("loop_started")
        self.events.publish(LoopEvent(kind=LoopEventKind.LOOP_STARTED))

        if self._observer is not None:
            queue = self._observer.events.subscribe()
            self._observer.start()
            self._background.append(
                asyncio.create_task(
                    self._consume_observer_events(self._observer, queue), name="observer-consumer"
                )
            )
        self._background.append(asyncio.create_task(self._reconcile_loop(), name="reconcile"))

        resumed = await self.reconcile()
        log.info(
            "orchestrator_started",
            vault=str(self._config.vault.root_path),
            watch=self._observer is not None,
            resumed=resumed,
        )

    async def stop(self, timeout: float | None = None) -> bool:
        """停止编排器

        先让观察器停止接收新事件，再等待进行中的任务完成当前流转；
        超时后强制取消剩余任务。

        Returns:
            是否为优雅停机
        """
        if not self._running:
            return True
        timeout = self._config.shutdown_timeout_s if timeout is None else timeout

        self._stopping.set()
        if self._observer is not None:
            self._observer.stop()
        for wakeup in self._wakeups.values():
            wakeup.set()

        pending_tasks = [t for t in self._in_flight.values() if not t.done()]
        graceful = True
        if pending_tasks:
            _, still_pending = await asyncio.wait(pending_tasks, timeout=timeout)
            if still_pending:
                graceful = False
                for t in still_pending:
                    t.cancel()
                await asyncio.gather(*still_pending, return_exceptions=True)

        for t in self._background:
            t.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        self._running = False
        detail = "graceful" if graceful else "forced"
        await self._stores.audit_log.log_system_event(
            "loop_stopped",
            details=f"Shutdown {detail}",
            outcome=Outcome.SUCCESS if graceful else Outcome.FAILURE,
        )
        self.events.publish(LoopEvent(kind=LoopEventKind.LOOP_STOPPED, detail=detail))
        if graceful:
            log.info("orchestrator_stopped", graceful=True)
        else:
            log.warning("orchestrator_stopped", graceful=False, cancelled=len(pending_tasks))
        return graceful

    def get_status(self) -> LoopStatus:
        uptime = 0.0
        if self._running and self._started_at is not None:
            uptime = (datetime.now(UTC) - self._started_at).total_seconds()
        machines = list(self._machines.values())
        return LoopStatus(
            running=self._running,
            tasks_in_progress=sum(1 for t in self._in_flight.values() if not t.done()),
            tasks_waiting_approval=sum(1 for m in machines if m.state == MachineState.APPROVE),
            tasks_in_error=sum(1 for m in machines if m.in_error),
            last_processed=self._last_processed,
            uptime_seconds=uptime,
        )

    # ------------------------------------------------------------------
    # 任务调度
    # ------------------------------------------------------------------

    async def submit(
        self,
        content: str,
        source: TaskSource = TaskSource.MANUAL,
        title: str | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> Task:
        """创建任务、写审计记录并调度处理"""
        task = await self._stores.task_store.create(content, source, title=title, priority=priority)
        await self._stores.audit_log.log_task_created(task.id, source)
        self.events.publish(
            LoopEvent(kind=LoopEventKind.TASK_CREATED, task_id=task.id, state=task.current_state)
        )
        self.schedule(task.id)
        return task

    def schedule(self, task_id: str) -> asyncio.Task | None:
        """为任务启动处理协程；已在处理中时只唤醒它"""
        if not self._running or self._stopping.is_set():
            return None

        existing = self._in_flight.get(task_id)
        if existing is not None and not existing.done():
            self._wakeup_for(task_id).set()
            return existing

        machine = self._machines.get(task_id)
        if machine is not None and machine.in_error:
            log.debug("task_in_error_skipped", task_id=task_id)
            return None

        job = asyncio.create_task(self.process_task(task_id), name=f"task-{task_id[:8]}")
        self._in_flight[task_id] = job
        job.add_done_callback(lambda done: self._forget(task_id, done))
        return job

    def _forget(self, task_id: str, job: asyncio.Task) -> None:
        if self._in_flight.get(task_id) is job:
            del self._in_flight[task_id]

    def _wakeup_for(self, task_id: str) -> asyncio.Event:
        wakeup = self._wakeups.get(task_id)
        if wakeup is None:
            wakeup = self._wakeups[task_id] = asyncio.Event()
        return wakeup

    async def process_task(self, task_id: str) -> Task | None:
        """推进单个任务；未处理异常在此转换为错误报告

        Returns:
            最后一次持久化后的 Task；失败或状态机处于 ERROR 时返回 None
        """
        machine = self._machines.get(task_id)
        if machine is None:
            machine = self._machines[task_id] = TaskMachine(task_id)
        if machine.in_error:
            return None

        try:
            task = await self._processor.run(
                task_id, machine, self._stopping, self._wakeup_for(task_id)
            )
        except Exception as e:
            await self._handle_failure(task_id, machine, e)
            return None

        self._last_processed = datetime.now(UTC)
        if task.current_state == TaskState.CLOSE:
            self._machines.pop(task_id, None)
            self._wakeups.pop(task_id, None)
        return task

    async def _handle_failure(self, task_id: str, machine: TaskMachine, error: Exception) -> None:
        """记录失败：错误报告 + 状态机进入 ERROR，不自动重试"""
        failed_in = machine.state
        log.error(
            "task_processing_failed",
            task_id=task_id,
            state=failed_in,
            error_type=type(error).__name__,
            error=str(error),
        )
        if machine.can(Signal.FAIL):
            machine.send(Signal.FAIL, error=str(error))
        else:
            # 尚未进入生命周期（例如任务文档已不存在）
            self._machines.pop(task_id, None)

        try:
            await self._stores.error_store.create_from_exception(
                error,
                context=f"Unhandled failure while processing task {task_id} in {failed_in}",
                task_id=task_id,
            )
        except Exception as inner_e:
            log.error(
                "failed_to_record_failure",
                task_id=task_id,
                error_type=type(inner_e).__name__,
            )
        self.events.publish(
            LoopEvent(
                kind=LoopEventKind.TASK_ERROR,
                task_id=task_id,
                state=machine.state,
                detail=str(error),
            )
        )

    def reset(self, task_id: str) -> asyncio.Task | None:
        """显式把 ERROR 状态的状态机复位到 IDLE 并重新调度

        Raises:
            SignalRejectedError: 该任务的状态机不在 ERROR
        """
        machine = self._machines.get(task_id)
        if machine is None:
            raise SignalRejectedError(MachineState.IDLE, Signal.RESET)
        machine.send(Signal.RESET)
        log.info("task_machine_reset", task_id=task_id)
        return self.schedule(task_id)

    async def wait_until_idle(self, timeout: float | None = None) -> bool:
        """等待所有进行中的任务结束（测试与单次运行用）

        Returns:
            超时前是否全部结束
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            pending = [t for t in self._in_flight.values() if not t.done()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(pending, timeout=remaining)

    # ------------------------------------------------------------------
    # 对账
    # ------------------------------------------------------------------

    async def reconcile(self) -> int:
        """重新扫描 intake：接收漏掉通知的投递文档并隔离无法解析的文档，恢复未在处理中的任务，
        并为超时未审批的 Plan 生成提醒

        Returns:
            本次调度的任务数（不含新接收的投递文档）
        """
        store = self._stores.task_store
        for path in [*await store.list_unadopted(), *await store.list_malformed()]:
            await self.adopt(path)

        scheduled = 0
        for task in await self._stores.task_store.list_active():
            existing = self._in_flight.get(task.id)
            if existing is not None and not existing.done():
                continue
            machine = self._machines.get(task.id)
            if machine is not None and machine.in_error:
                continue
            if self.schedule(task.id) is not None:
                scheduled += 1

        approval = self._stores.approval
        stale = await approval.check_stale_pending(self._config.stale_approval_hours)
        for item in stale:
            await approval.create_approval_reminder(item.task_id, item.hours_pending)

        log.debug("reconciled", scheduled=scheduled, stale_approvals=len(stale))
        return scheduled

    async def _reconcile_loop(self) -> None:
        interval = self._config.reconcile_interval_s
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                pass
            else:
                break
            try:
                await self.reconcile()
            except Exception as e:
                log.error("reconcile_failed", error_type=type(e).__name__, error=str(e))

    # ------------------------------------------------------------------
    # 观察器事件
    # ------------------------------------------------------------------

    async def _consume_observer_events(
        self, observer: VaultObserver, queue: asyncio.Queue[ObserverEvent]
    ) -> None:
        try:
            while True:
                event = await queue.get()
                try:
                    await self.handle_observer_event(event)
                except Exception as e:
                    log.error(
                        "observer_event_failed",
                        kind=event.kind,
                        path=str(event.path),
                        error_type=type(e).__name__,
                        error=str(e),
                    )
        finally:
            observer.events.unsubscribe(queue)

    async def handle_observer_event(self, event: ObserverEvent) -> None:
        """按事件类型分发"""
        log.debug("observer_event", kind=event.kind, path=event.path.name)
        match event.kind:
            case ObserverEventKind.TASK_NEW:
                await self.adopt(event.path)
            case ObserverEventKind.PLAN_APPROVED | ObserverEventKind.PLAN_REJECTED:
                await self._on_plan_decided(event.path)
            case ObserverEventKind.ERROR_NEW:
                log.info("error_report_detected", path=event.path.name)
            case _:
                pass

    async def adopt(self, path: Path) -> Task | None:
        """接收 intake 中出现的文档

        无法解析的文档原样移入 Done/invalid 并生成 validation 错误报告，
        不影响其他任务。同一路径同时只处理一次（观察器与对账可能同时发现它）。
        """
        if path in self._adopting or not path.exists():
            return None
        self._adopting.add(path)
        try:
            return await self._adopt(path)
        finally:
            self._adopting.discard(path)

    async def _adopt(self, path: Path) -> Task | None:
        store = self._stores.task_store
        try:
            task = await store.ingest_file(path)
        except FileNotFoundError:
            # 读取前已被搬走
            return None
        except DocumentParseError as e:
            await store.quarantine(path, e.reason)
            await self._stores.error_store.create(
                ErrorReportInput(
                    error_type=ErrorType.VALIDATION,
                    details=e.reason,
                    context=f"Malformed document {path.name} was moved to Done/invalid",
                    suggested_options=MALFORMED_DOCUMENT_OPTIONS,
                )
            )
            return None

        if task.path != path:
            # 没有 id 的投递文档被重新创建为任务
            await self._stores.audit_log.log_task_created(task.id, task.source)
            self.events.publish(
                LoopEvent(kind=LoopEventKind.TASK_CREATED, task_id=task.id, state=task.current_state)
            )
        if task.current_state != TaskState.CLOSE:
            self.schedule(task.id)
        return task

    async def _on_plan_decided(self, path: Path) -> None:
        try:
            plan = self._stores.plan_store.read_from_file(path)
        except FileNotFoundError:
            return
        except DocumentParseError as e:
            log.warning("unreadable_plan_ignored", path=str(path), reason=e.reason)
            return
        self.schedule(plan.task_id)
