"""单个任务的内存状态机

除八个生命周期阶段外，还有处理前的 IDLE 与异常后的 ERROR。
每个状态只暴露其合法信号，其他信号一律拒绝；ERROR 只能通过 RESET 回到 IDLE。
每个任务一个实例，实例之间没有共享可变状态。
"""

from enum import StrEnum

import structlog
from vaultloop.core.exceptions import SignalRejectedError
from vaultloop.core.models import TaskState

log = structlog.get_logger()


class MachineState(StrEnum):
    IDLE = "IDLE"
    WATCH = "WATCH"
    WRITE = "WRITE"
    REASON = "REASON"
    PLAN = "PLAN"
    APPROVE = "APPROVE"
    ACT = "ACT"
    LOG = "LOG"
    CLOSE = "CLOSE"
    ERROR = "ERROR"


class Signal(StrEnum):
    TASK_RECEIVED = "TASK_RECEIVED"
    WATCH_COMPLETE = "WATCH_COMPLETE"
    WRITE_COMPLETE = "WRITE_COMPLETE"
    REASON_COMPLETE = "REASON_COMPLETE"
    PLAN_COMPLETE = "PLAN_COMPLETE"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ACT_COMPLETE = "ACT_COMPLETE"
    ACT_FAILED = "ACT_FAILED"
    LOG_COMPLETE = "LOG_COMPLETE"
    FAIL = "FAIL"
    RESET = "RESET"


TRANSITIONS: dict[MachineState, dict[Signal, MachineState]] = {
    MachineState.IDLE: {Signal.TASK_RECEIVED: MachineState.WATCH},
    MachineState.WATCH: {Signal.WATCH_COMPLETE: MachineState.WRITE},
    MachineState.WRITE: {Signal.WRITE_COMPLETE: MachineState.REASON},
    MachineState.REASON: {Signal.REASON_COMPLETE: MachineState.PLAN},
    # PLAN_COMPLETE 的目标由 requires_approval 决定，见 TaskMachine.send
    MachineState.PLAN: {Signal.PLAN_COMPLETE: MachineState.APPROVE},
    MachineState.APPROVE: {
        Signal.APPROVED: MachineState.ACT,
        Signal.REJECTED: MachineState.CLOSE,
    },
    MachineState.ACT: {
        Signal.ACT_COMPLETE: MachineState.LOG,
        Signal.ACT_FAILED: MachineState.CLOSE,
    },
    MachineState.LOG: {Signal.LOG_COMPLETE: MachineState.CLOSE},
    MachineState.CLOSE: {},
    MachineState.ERROR: {Signal.RESET: MachineState.IDLE},
}

# 处理中的状态都可以因异常进入 ERROR
ACTIVE_STATES: frozenset[MachineState] = frozenset(
    {
        MachineState.WATCH,
        MachineState.WRITE,
        MachineState.REASON,
        MachineState.PLAN,
        MachineState.APPROVE,
        MachineState.ACT,
        MachineState.LOG,
    }
)


class TaskMachine:
    """单个任务的状态机实例"""

    def __init__(self, task_id: str, requires_approval: bool = False) -> None:
        self.task_id = task_id
        self.requires_approval = requires_approval
        self.state = MachineState.IDLE
        self.history: list[MachineState] = [MachineState.IDLE]
        self.last_error: str | None = None

    def allowed_signals(self) -> set[Signal]:
        signals = set(TRANSITIONS[self.state])
        if self.state in ACTIVE_STATES:
            signals.add(Signal.FAIL)
        return signals

    def can(self, signal: Signal) -> bool:
        return signal in self.allowed_signals()

    def send(self, signal: Signal, error: str | None = None) -> MachineState:
        """发送信号，返回新状态

        Raises:
            SignalRejectedError: 当前状态不接受该信号
        """
        if not self.can(signal):
            raise SignalRejectedError(self.state, signal)

        if signal == Signal.FAIL:
            target = MachineState.ERROR
            self.last_error = error
        elif self.state == MachineState.PLAN and signal == Signal.PLAN_COMPLETE:
            target = MachineState.APPROVE if self.requires_approval else MachineState.ACT
        else:
            target = TRANSITIONS[self.state][signal]

        if signal == Signal.RESET:
            self.last_error = None

        log.debug(
            "machine_transition",
            task_id=self.task_id,
            state_from=self.state,
            signal=signal,
            state_to=target,
        )
        self.state = target
        self.history.append(target)
        return target

    def resume(self, persisted: TaskState) -> MachineState:
        """从 IDLE 直接进入文档中持久化的阶段（崩溃恢复）"""
        if self.state != MachineState.IDLE:
            raise SignalRejectedError(self.state, Signal.TASK_RECEIVED)
        self.send(Signal.TASK_RECEIVED)
        if persisted != TaskState.WATCH:
            self.state = MachineState(persisted.value)
            self.history.append(self.state)
        return self.state

    @property
    def is_terminal(self) -> bool:
        return self.state == MachineState.CLOSE

    @property
    def in_error(self) -> bool:
        return self.state == MachineState.ERROR
