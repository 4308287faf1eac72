"""TaskProcessor -- 每个持久化阶段一个处理函数

处理流程从文档中持久化的 current_state 开始（天然支持崩溃恢复）：
1. WATCH: 接收任务
2. WRITE: 调用 Interpreter，把解读写入任务文档
3. REASON: 生成 Plan 并关联到任务
4. PLAN: 按 requires_approval 分叉到 APPROVE 或 ACT
5. APPROVE: 有界轮询 Plan 所在目录，批准 -> ACT，拒绝 -> CLOSE
6. ACT: 校验审批后调用 Executor，失败 -> Done/failed + 错误报告，不重试
7. LOG: 写入完成记录，进入 CLOSE 并归档

每个阶段先持久化流转，再写审计记录，最后推进内存状态机。
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from vaultloop.core.config import AppConfig
from vaultloop.core.exceptions import PlanNotFoundError, PlanValidationError
from vaultloop.core.models import (
    Actor,
    ApprovalStatus,
    CompletionStatus,
    ErrorReportInput,
    ErrorType,
    Outcome,
    Task,
    TaskState,
    TransitionOutcome,
)
from vaultloop.core.store import StoreGroup

from .events import EventChannel, LoopEvent, LoopEventKind
from .machine import MachineState, Signal, TaskMachine
from .protocols import Executor, Interpreter

log = structlog.get_logger()

DEFAULT_REJECTION_REASON = "Rejected by reviewer"

EXECUTOR_FAILURE_OPTIONS: list[str] = [
    "Review the executor output and perform the action manually",
    "Reopen the task to run it through the lifecycle again",
    "Leave the task in Done/failed and notify the requester",
]

Handler = Callable[[Task, TaskMachine, asyncio.Event, asyncio.Event], Awaitable[Task | None]]


class TaskProcessor:
    """单个任务的阶段推进"""

    def __init__(
        self,
        stores: StoreGroup,
        config: AppConfig,
        interpreter: Interpreter,
        executor: Executor,
        events: EventChannel[LoopEvent],
    ) -> None:
        self._stores = stores
        self._config = config
        self._interpreter = interpreter
        self._executor = executor
        self._events = events
        self._handlers: dict[TaskState, Handler] = {
            TaskState.WATCH: self._handle_watch,
            TaskState.WRITE: self._handle_write,
            TaskState.REASON: self._handle_reason,
            TaskState.PLAN: self._handle_plan,
            TaskState.APPROVE: self._handle_approve,
            TaskState.ACT: self._handle_act,
            TaskState.LOG: self._handle_log,
        }

    async def run(
        self,
        task_id: str,
        machine: TaskMachine,
        stopping: asyncio.Event,
        wakeup: asyncio.Event,
    ) -> Task:
        """从持久化状态开始推进，直到 CLOSE、等待审批超时或停机

        Returns:
            最后一次持久化后的 Task
        """
        task = await self._stores.task_store.get_by_id_or_raise(task_id)
        if machine.state == MachineState.IDLE:
            machine.requires_approval = task.requires_approval
            machine.resume(task.current_state)

        while not machine.is_terminal and task.current_state != TaskState.CLOSE:
            if stopping.is_set():
                log.info("task_processing_paused", task_id=task_id, state=task.current_state)
                break
            handler = self._handlers[task.current_state]
            updated = await handler(task, machine, stopping, wakeup)
            if updated is None:
                # 仍在等待外部决定
                break
            task = updated
        return task

    def _emit(self, kind: LoopEventKind, task: Task, detail: str | None = None) -> None:
        self._events.publish(
            LoopEvent(kind=kind, task_id=task.id, state=task.current_state, detail=detail)
        )

    async def _advance(
        self,
        task: Task,
        target: TaskState,
        details: str | None = None,
        outcome: TransitionOutcome | None = None,
        actor: Actor = Actor.SYSTEM,
        audit_outcome: Outcome = Outcome.SUCCESS,
    ) -> Task:
        updated = await self._stores.task_store.transition(task.id, outcome, target=target)
        await self._stores.audit_log.log_state_transition(
            task.id,
            task.current_state,
            updated.current_state,
            actor=actor,
            outcome=audit_outcome,
            details=details,
        )
        self._emit(LoopEventKind.TASK_STATE_CHANGED, updated, details)
        return updated

    # ------------------------------------------------------------------
    # 各阶段处理函数
    # ------------------------------------------------------------------

    async def _handle_watch(
        self, task: Task, machine: TaskMachine, stopping: asyncio.Event, wakeup: asyncio.Event
    ) -> Task:
        updated = await self._advance(task, TaskState.WRITE, "Task picked up")
        machine.send(Signal.WATCH_COMPLETE)
        return updated

    async def _handle_write(
        self, task: Task, machine: TaskMachine, stopping: asyncio.Event, wakeup: asyncio.Event
    ) -> Task:
        interpretation = await self._interpreter.interpret(task)
        store = self._stores.task_store
        await store.update(task.id, proposed_steps=interpretation.steps)
        task = await store.append_section(task.id, "Interpretation", interpretation.summary)
        updated = await self._advance(task, TaskState.REASON, "Interpretation recorded")
        machine.send(Signal.WRITE_COMPLETE)
        return updated

    async def _handle_reason(
        self, task: Task, machine: TaskMachine, stopping: asyncio.Event, wakeup: asyncio.Event
    ) -> Task:
        plan = await self._stores.plan_store.generate(task, task.proposed_steps)
        if plan.path is None:
            raise PlanNotFoundError(task.id)
        updated = await self._advance(
            task,
            TaskState.PLAN,
            f"Plan generated with {len(plan.steps)} steps",
            outcome=TransitionOutcome(plan_reference=plan.path.name),
        )
        machine.send(Signal.REASON_COMPLETE)
        return updated

    async def _handle_plan(
        self, task: Task, machine: TaskMachine, stopping: asyncio.Event, wakeup: asyncio.Event
    ) -> Task:
        # 以 PLAN 结束时刻的 requires_approval 为准，Plan 位置随之对齐
        status = await self._stores.approval.check_approval_status(task.id)
        if task.requires_approval and status == ApprovalStatus.NOT_REQUIRED:
            await self._stores.approval.submit_for_approval(task.id)
        elif not task.requires_approval and status == ApprovalStatus.PENDING:
            await self._stores.plan_store.move_to(task.id, ApprovalStatus.NOT_REQUIRED)

        target = TaskState.APPROVE if task.requires_approval else TaskState.ACT
        updated = await self._advance(
            task,
            target,
            "Awaiting human approval" if task.requires_approval else "No approval required",
            audit_outcome=Outcome.PENDING if task.requires_approval else Outcome.SUCCESS,
        )
        machine.requires_approval = task.requires_approval
        machine.send(Signal.PLAN_COMPLETE)
        if task.requires_approval:
            self._emit(LoopEventKind.APPROVAL_REQUIRED, updated)
        return updated

    async def _handle_approve(
        self, task: Task, machine: TaskMachine, stopping: asyncio.Event, wakeup: asyncio.Event
    ) -> Task | None:
        """有界轮询审批状态

        观察器检测到 Plan 被移入 approved/rejected 时通过 wakeup 提前唤醒；
        超过 approval_timeout_s 或停机时返回 None，任务留在 APPROVE。
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.approval_timeout_s
        approval = self._stores.approval

        while True:
            wakeup.clear()
            status = await approval.check_approval_status(task.id)
            if status == ApprovalStatus.APPROVED:
                return await self._on_approved(task, machine)
            if status == ApprovalStatus.REJECTED:
                return await self._on_rejected(task, machine)

            remaining = deadline - loop.time()
            if stopping.is_set() or remaining <= 0:
                log.info("approval_wait_suspended", task_id=task.id, status=status)
                return None

            try:
                await asyncio.wait_for(
                    wakeup.wait(), timeout=min(self._config.approval_poll_s, remaining)
                )
            except TimeoutError:
                pass

    async def _on_approved(self, task: Task, machine: TaskMachine) -> Task:
        plan = await self._stores.plan_store.get_or_raise(task.id)
        approved_by = plan.approved_by or "human"
        await self._stores.approval.mark_approved(task.id, approved_by=approved_by)
        await self._stores.audit_log.log_approval(task.id, approved=True, approved_by=approved_by)
        updated = await self._stores.task_store.transition(task.id, target=TaskState.ACT)
        machine.send(Signal.APPROVED)
        self._emit(LoopEventKind.APPROVAL_RECEIVED, updated, "approved")
        return updated

    async def _on_rejected(self, task: Task, machine: TaskMachine) -> Task:
        plan = await self._stores.plan_store.get_or_raise(task.id)
        reason = plan.rejection_reason or DEFAULT_REJECTION_REASON
        await self._stores.approval.mark_rejected(task.id, reason)
        await self._stores.audit_log.log_approval(task.id, approved=False, reason=reason)
        updated = await self._stores.task_store.reject(task.id, reason)
        machine.send(Signal.REJECTED)
        self._emit(LoopEventKind.APPROVAL_RECEIVED, updated, "rejected")
        self._emit(LoopEventKind.TASK_COMPLETED, updated, CompletionStatus.REJECTED)
        return updated

    async def _handle_act(
        self, task: Task, machine: TaskMachine, stopping: asyncio.Event, wakeup: asyncio.Event
    ) -> Task:
        # 进入 ACT 的前提：Plan 已批准或无需审批（以目录为准）
        status = await self._stores.approval.check_approval_status(task.id)
        if status not in (ApprovalStatus.APPROVED, ApprovalStatus.NOT_REQUIRED):
            raise PlanValidationError(task.id, [f"plan approval status is {status}"])
        validation = await self._stores.plan_store.validate(task.id)
        if not validation.valid:
            raise PlanValidationError(task.id, validation.errors)

        plan = await self._stores.plan_store.get_or_raise(task.id)
        result = await self._executor.execute(task, plan)

        if result.success:
            await self._stores.plan_store.complete_all_steps(
                task.id, outcome=result.detail or "done", step_outcomes=result.step_outcomes
            )
            updated = await self._advance(
                task,
                TaskState.LOG,
                result.detail or "Execution succeeded",
                outcome=TransitionOutcome(success=True),
                actor=Actor.EXECUTOR,
            )
            machine.send(Signal.ACT_COMPLETE)
            return updated

        detail = result.detail or "Executor reported failure"
        await self._stores.audit_log.log_state_transition(
            task.id,
            TaskState.ACT,
            TaskState.CLOSE,
            actor=Actor.EXECUTOR,
            outcome=Outcome.FAILURE,
            details=detail,
        )
        await self._stores.error_store.create(
            ErrorReportInput(
                error_type=ErrorType.EXECUTOR,
                details=detail,
                context=f"Executor failed for task \"{task.title}\" during ACT",
                task_id=task.id,
                suggested_options=EXECUTOR_FAILURE_OPTIONS,
            )
        )
        await self._stores.task_store.record_error(task.id, detail)
        updated = await self._stores.task_store.fail(task.id, detail)
        machine.send(Signal.ACT_FAILED)
        log.warning("task_execution_failed", task_id=task.id, detail=detail)
        self._emit(LoopEventKind.TASK_COMPLETED, updated, CompletionStatus.FAILED)
        return updated

    async def _handle_log(
        self, task: Task, machine: TaskMachine, stopping: asyncio.Event, wakeup: asyncio.Event
    ) -> Task:
        updated = await self._stores.task_store.transition(task.id, target=TaskState.CLOSE)
        await self._stores.audit_log.log_task_completed(
            task.id, CompletionStatus.COMPLETED, state_from=TaskState.LOG
        )
        machine.send(Signal.LOG_COMPLETE)
        self._emit(LoopEventKind.TASK_COMPLETED, updated, CompletionStatus.COMPLETED)
        return updated
