"""集成测试共享 fixture -- 启用文件监听的编排器"""

import asyncio
from collections.abc import AsyncGenerator, Callable

import pytest_asyncio
from vaultloop.core.config import AppConfig
from vaultloop.core.models import Task, TaskState
from vaultloop.core.store import StoreGroup
from vaultloop.engine.orchestrator import LifecycleOrchestrator


@pytest_asyncio.fixture
async def make_orchestrator(
    app_config: AppConfig, stores: StoreGroup
) -> AsyncGenerator[Callable[..., LifecycleOrchestrator], None]:
    """编排器工厂；测试结束时停止所有实例"""
    created: list[LifecycleOrchestrator] = []

    def _make(**kwargs) -> LifecycleOrchestrator:
        orch = LifecycleOrchestrator(app_config, stores, **kwargs)
        created.append(orch)
        return orch

    yield _make

    for orch in created:
        await orch.stop(timeout=1)


@pytest_asyncio.fixture
async def wait_for_state(stores: StoreGroup):
    """轮询任务文档直到进入指定状态"""

    async def _wait(task_id: str, state: TaskState, timeout: float = 10.0) -> Task:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            task = await stores.task_store.get_by_id(task_id)
            if task is not None and task.current_state == state:
                return task
            if loop.time() > deadline:
                raise AssertionError(f"task {task_id} did not reach {state}")
            await asyncio.sleep(0.05)

    return _wait
