"""apps/engine 测试配置 -- 解读器/执行器替身与编排器 fixture"""

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from vaultloop.core.config import AppConfig
from vaultloop.core.models import Plan, Task, TaskState
from vaultloop.core.store import StoreGroup
from vaultloop.engine.orchestrator import LifecycleOrchestrator
from vaultloop.engine.protocols import ExecutionResult, Interpretation


class ScriptedInterpreter:
    """按标题决定是否抛出异常的解读器"""

    def __init__(self, steps: list[str] | None = None) -> None:
        self.steps = steps or []
        self.fail_titles: set[str] = set()
        self.calls: list[str] = []

    async def interpret(self, task: Task) -> Interpretation:
        self.calls.append(task.id)
        if task.title in self.fail_titles:
            raise RuntimeError(f"interpreter could not read \"{task.title}\"")
        return Interpretation(summary=f"Interpreted {task.title}", steps=self.steps)


class RecordingExecutor:
    """记录调用次数的执行器；success=False 时报告失败"""

    def __init__(self, success: bool = True, delay: float = 0.0) -> None:
        self.success = success
        self.delay = delay
        self.executed: list[str] = []

    async def execute(self, task: Task, plan: Plan) -> ExecutionResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.executed.append(task.id)
        if not self.success:
            return ExecutionResult(success=False, detail="Printer offline")
        return ExecutionResult(success=True, detail="Executed")


async def wait_for_state(
    stores: StoreGroup, task_id: str, state: TaskState, timeout: float = 5.0
) -> Task:
    """轮询任务文档直到进入指定状态"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        task = await stores.task_store.get_by_id(task_id)
        if task is not None and task.current_state == state:
            return task
        if loop.time() > deadline:
            raise AssertionError(f"task {task_id} did not reach {state}")
        await asyncio.sleep(0.02)


@pytest.fixture
def interpreter() -> ScriptedInterpreter:
    return ScriptedInterpreter()


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest_asyncio.fixture
async def orchestrator(
    app_config: AppConfig,
    stores: StoreGroup,
    interpreter: ScriptedInterpreter,
    executor: RecordingExecutor,
) -> AsyncGenerator[LifecycleOrchestrator, None]:
    """未启用文件监听的编排器（测试结束时停止）"""
    orch = LifecycleOrchestrator(
        app_config, stores, interpreter=interpreter, executor=executor, watch=False
    )
    yield orch
    await orch.stop(timeout=1)


@pytest.fixture
def await_state(stores: StoreGroup):
    """wait_for_state 的绑定版本：await await_state(task_id, state)"""

    async def _wait(task_id: str, state: TaskState, timeout: float = 5.0) -> Task:
        return await wait_for_state(stores, task_id, state, timeout)

    return _wait
