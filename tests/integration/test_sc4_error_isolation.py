"""SC-4 错误隔离

一个任务解读失败：恰好一份 open 错误报告（引用该任务，至少两条建议），
该任务停在最后持久化的阶段；另一个任务照常结束。
"""

from vaultloop.core.models import ResolutionStatus, Task, TaskState
from vaultloop.core.store import StoreGroup
from vaultloop.engine.protocols import Interpretation

BROKEN_TITLE = "Sort the photo albums"


class SelectiveInterpreter:
    async def interpret(self, task: Task) -> Interpretation:
        if task.title == BROKEN_TITLE:
            raise RuntimeError("interpreter could not read the album index")
        return Interpretation(summary=f"Interpreted {task.title}")


class TestSC4ErrorIsolation:
    async def test_one_failure_does_not_block_others(
        self, make_orchestrator, stores: StoreGroup, wait_for_state
    ):
        orchestrator = make_orchestrator(interpreter=SelectiveInterpreter())
        await orchestrator.start()

        broken = await orchestrator.submit(BROKEN_TITLE, title=BROKEN_TITLE)
        healthy = await orchestrator.submit("Water the plants", title="Water the plants")

        await wait_for_state(healthy.id, TaskState.CLOSE)
        assert await orchestrator.wait_until_idle(timeout=5)

        reports = await stores.error_store.list_open()
        assert len(reports) == 1
        report = reports[0]
        assert report.task_id == broken.id
        assert report.resolution_status == ResolutionStatus.OPEN
        assert len(report.suggested_options) >= 2
        assert "album index" in report.details

        stuck = await stores.task_store.get_by_id_or_raise(broken.id)
        assert stuck.current_state == TaskState.WRITE
        assert stuck.path.parent == stores.vault.intake

        # 对账不会重复生成报告
        await orchestrator.reconcile()
        assert await orchestrator.wait_until_idle(timeout=5)
        assert len(await stores.error_store.list_open()) == 1

        resolved = await stores.error_store.resolve(report.id, "Rebuilt the album index")
        assert resolved.resolution_status == ResolutionStatus.RESOLVED
        assert await stores.error_store.list_open() == []
