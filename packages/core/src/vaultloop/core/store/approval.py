"""审批协议 -- 以文档所在目录作为审批信号

人工通过把 Plan 文档从 Plans/pending 移到 Plans/approved 或 Plans/rejected
表达决定，没有其他命令通道。文档随时可能被系统之外的人移动，
因此每次查询都重新探测目录，不缓存结果。
"""

from datetime import UTC, datetime
from pathlib import Path

import structlog

from ..config import LockOptions, VaultConfig
from ..document import write_document
from ..exceptions import PlanNotFoundError
from ..filelock import file_lock
from ..models.enums import ApprovalStatus
from ..models.plan import Plan, StalePlan
from .plan_store import FilePlanStore
from .task_store import REMINDER_FILENAME_PREFIX

log = structlog.get_logger()

DEFAULT_STALE_HOURS = 24


def reminder_filename(task_id: str) -> str:
    return f"{REMINDER_FILENAME_PREFIX}{task_id[:8]}_approval.md"


class ApprovalProtocol:
    """基于目录位置的审批协议"""

    def __init__(
        self,
        vault: VaultConfig,
        plan_store: FilePlanStore,
        lock: LockOptions | None = None,
    ) -> None:
        self._vault = vault
        self._plans = plan_store
        self._lock = lock or LockOptions()

    async def check_approval_status(self, task_id: str) -> ApprovalStatus:
        """按 approved > rejected > pending > 无需审批 的顺序探测，第一个命中的目录决定状态

        Raises:
            PlanNotFoundError: 任何目录中都没有该任务的 Plan
        """
        path = await self._plans.get_file_path(task_id)
        if path is None:
            raise PlanNotFoundError(task_id)
        return self._plans.status_for(path)

    async def submit_for_approval(self, task_id: str) -> Plan:
        return await self._plans.move_to(
            task_id,
            ApprovalStatus.PENDING,
            requires_approval=True,
            approved_at=None,
            approved_by=None,
            rejection_reason=None,
        )

    async def mark_approved(self, task_id: str, approved_by: str = "human") -> Plan:
        """记录批准时间与批准人，并确保文档位于 approved 目录"""
        plan = await self._plans.move_to(
            task_id,
            ApprovalStatus.APPROVED,
            approved_at=datetime.now(UTC),
            approved_by=approved_by,
        )
        log.info("plan_approved", task_id=task_id, approved_by=approved_by)
        return plan

    async def mark_rejected(self, task_id: str, reason: str) -> Plan:
        plan = await self._plans.move_to(
            task_id,
            ApprovalStatus.REJECTED,
            rejection_reason=reason,
        )
        log.info("plan_rejected", task_id=task_id, reason=reason)
        return plan

    async def check_stale_pending(
        self,
        threshold_hours: int = DEFAULT_STALE_HOURS,
        now: datetime | None = None,
    ) -> list[StalePlan]:
        """返回等待审批超过 threshold_hours 的 Plan（按小时取整）"""
        now = now or datetime.now(UTC)
        stale: list[StalePlan] = []
        for plan in await self._plans.list_pending():
            hours = int((now - plan.created_at).total_seconds() // 3600)
            if hours >= threshold_hours and plan.path is not None:
                stale.append(StalePlan(task_id=plan.task_id, hours_pending=hours, path=plan.path))
        return stale

    async def create_approval_reminder(self, task_id: str, hours_pending: int) -> Path:
        """在 intake 写入（或覆盖）一份审批提醒"""
        path = self._vault.intake / reminder_filename(task_id)
        metadata = {
            "type": "approval_reminder",
            "task_id": task_id,
            "hours_pending": hours_pending,
            "created_at": datetime.now(UTC).isoformat(),
        }
        body = (
            f"# Approval Reminder\n\n"
            f"The plan for task `{task_id}` has been waiting for approval "
            f"for {hours_pending} hours.\n\n"
            f"Move `Plans/pending/{task_id[:8]}-plan.md` to `Plans/approved/` "
            f"or `Plans/rejected/` to continue.\n"
        )
        async with file_lock(path, self._lock):
            write_document(path, metadata, body)
        log.info("approval_reminder_created", task_id=task_id, hours_pending=hours_pending)
        return path
