"""packages/core 测试配置 -- 核心层 fixture"""

from collections.abc import Awaitable, Callable

import pytest_asyncio
from vaultloop.core.models import Plan, Task, TaskSource, TaskState, TransitionOutcome
from vaultloop.core.store import StoreGroup


@pytest_asyncio.fixture
async def make_task(stores: StoreGroup) -> Callable[..., Awaitable[Task]]:
    """创建任务的工厂（默认内容不含敏感词）"""

    async def _make(
        content: str = "Organize the weekly reading list",
        source: TaskSource = TaskSource.MANUAL,
        **kwargs,
    ) -> Task:
        return await stores.task_store.create(content, source, **kwargs)

    return _make


@pytest_asyncio.fixture
async def planned_task(stores: StoreGroup, make_task) -> Callable[..., Awaitable[tuple[Task, Plan]]]:
    """推进到 PLAN 并生成 Plan 的工厂"""

    async def _make(content: str = "Organize the weekly reading list", steps=None):
        task = await make_task(content)
        store = stores.task_store
        await store.transition(task.id, target=TaskState.WRITE)
        task = await store.transition(task.id, target=TaskState.REASON)
        plan = await stores.plan_store.generate(task, steps)
        task = await store.transition(
            task.id,
            TransitionOutcome(plan_reference=plan.path.name),
            target=TaskState.PLAN,
        )
        return task, plan

    return _make
