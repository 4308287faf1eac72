"""PlanStore 文件实现

Plan 文档存放在四个目录之一：Plans/（无需审批）、pending、approved、rejected。
审批状态只由所在目录推导，元数据中的 approval_status 仅作展示；
步骤完成情况只由正文 checkbox 决定，按出现位置解析。
"""

import re
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from ..approval_criteria import approval_reasons
from ..config import LockOptions, VaultConfig
from ..document import (
    extract_step_number,
    insert_note_after,
    note_lines_after,
    parse_checkboxes,
    read_document,
    remove_notes_after,
    set_checkbox,
    strip_step_number,
    write_document,
)
from ..exceptions import DocumentParseError, PlanNotFoundError, StepNotFoundError
from ..filelock import file_lock, lock_located, relocate
from ..models.enums import ApprovalStatus
from ..models.plan import (
    Plan,
    PlanProgress,
    PlanStep,
    PlanValidationResult,
    plan_filename,
)
from ..models.task import Task

log = structlog.get_logger()

DEFAULT_STEPS: tuple[str, ...] = (
    "Review task requirements",
    "Prepare necessary resources",
    "Execute primary action",
    "Verify results",
    "Document completion",
)

COMPLETED_NOTE_PREFIX = "Completed:"
COMPLETED_NOTE_PATTERN = re.compile(r"^\s+-\s+Completed:\s*(.*?)\s*\(([^()]*)\)\s*$")

# 探测顺序即优先级：approved > rejected > pending > 无需审批
PROBE_ORDER: tuple[ApprovalStatus, ...] = (
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.PENDING,
    ApprovalStatus.NOT_REQUIRED,
)


def default_steps() -> list[str]:
    return list(DEFAULT_STEPS)


def render_plan_body(
    task: Task,
    steps: list[str],
    reasons: list[str],
    requires_approval: bool,
) -> str:
    lines = [f"# Plan: {task.title}", "", f"**Task ID:** {task.id}", ""]
    if requires_approval:
        lines += [
            "## Approval Required",
            "",
            "This plan requires human approval before execution.",
            "",
            "**Reasons:**",
            *[f"- {reason}" for reason in reasons or ["Flagged for review"]],
            "",
            "To approve, move this file to `Plans/approved/`.",
            "To reject, move this file to `Plans/rejected/` "
            "and optionally set `rejection_reason` in the metadata.",
            "",
        ]
    lines += ["## Steps", ""]
    lines += [f"- [ ] {i}. {description}" for i, description in enumerate(steps, start=1)]
    lines += ["", "## Risk Assessment", "", "[To be assessed]", ""]
    return "\n".join(lines)


def parse_steps(body: str) -> list[PlanStep]:
    """从正文 checkbox 解析步骤（编号缺失时按位置补齐）"""
    steps: list[PlanStep] = []
    lines = body.split("\n")
    for box in parse_checkboxes(body):
        completed_at = None
        outcome = None
        start, end = note_lines_after(body, box.position)
        for line in lines[start:end]:
            if match := COMPLETED_NOTE_PATTERN.match(line):
                outcome = match.group(1) or None
                try:
                    completed_at = datetime.fromisoformat(match.group(2))
                except ValueError:
                    completed_at = None
                break
        steps.append(
            PlanStep(
                number=extract_step_number(box.text) or box.position + 1,
                description=strip_step_number(box.text),
                completed=box.checked,
                completed_at=completed_at if box.checked else None,
                outcome=outcome if box.checked else None,
            )
        )
    return steps


class FilePlanStore:
    """PlanStore 的文件实现"""

    def __init__(self, vault: VaultConfig, lock: LockOptions | None = None) -> None:
        self._vault = vault
        self._lock = lock or LockOptions()

    # ------------------------------------------------------------------
    # 位置
    # ------------------------------------------------------------------

    def directory_for(self, status: ApprovalStatus) -> Path:
        return {
            ApprovalStatus.APPROVED: self._vault.plans_approved,
            ApprovalStatus.REJECTED: self._vault.plans_rejected,
            ApprovalStatus.PENDING: self._vault.plans_pending,
            ApprovalStatus.NOT_REQUIRED: self._vault.plans,
        }[status]

    def status_for(self, path: Path) -> ApprovalStatus:
        """目录 -> 审批状态"""
        for status in PROBE_ORDER:
            if path.parent == self.directory_for(status):
                return status
        raise DocumentParseError(path, "Plan 文档不在任何 Plan 目录中")

    async def get_file_path(self, task_id: str) -> Path | None:
        """按优先级探测四个目录，第一个匹配的文档胜出"""
        filename = plan_filename(task_id)
        for status in PROBE_ORDER:
            directory = self.directory_for(status)
            candidate = directory / filename
            if candidate.is_file() and self._matches(candidate, task_id):
                return candidate

        # 文件被人工改名时退化为全量扫描
        for status in PROBE_ORDER:
            directory = self.directory_for(status)
            if not directory.is_dir():
                continue
            for candidate in sorted(directory.glob("*.md")):
                if candidate.name != filename and self._matches(candidate, task_id):
                    return candidate
        return None

    @staticmethod
    def _matches(path: Path, task_id: str) -> bool:
        try:
            return read_document(path).metadata.get("task_id") == task_id
        except (DocumentParseError, OSError):
            return False

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    def read_from_file(self, path: Path) -> Plan:
        doc = read_document(path)
        metadata = {**doc.metadata, "approval_status": self.status_for(path)}
        try:
            plan = Plan.model_validate(metadata)
        except ValidationError as e:
            raise DocumentParseError(path, f"Plan 元数据非法: {e.error_count()} 个字段错误") from e
        plan.steps = parse_steps(doc.body)
        plan.body = doc.body
        plan.path = path
        return plan

    async def get_by_task_id(self, task_id: str) -> Plan | None:
        path = await self.get_file_path(task_id)
        if path is None:
            return None
        return self.read_from_file(path)

    async def get_or_raise(self, task_id: str) -> Plan:
        plan = await self.get_by_task_id(task_id)
        if plan is None:
            raise PlanNotFoundError(task_id)
        return plan

    async def list_by_status(self, status: ApprovalStatus) -> list[Plan]:
        directory = self.directory_for(status)
        plans: list[Plan] = []
        if not directory.is_dir():
            return plans
        for path in sorted(directory.glob("*.md")):
            try:
                plans.append(self.read_from_file(path))
            except DocumentParseError as e:
                log.warning("malformed_plan_skipped", path=str(path), reason=e.reason)
            except FileNotFoundError:
                continue
        return plans

    async def list_pending(self) -> list[Plan]:
        return await self.list_by_status(ApprovalStatus.PENDING)

    # ------------------------------------------------------------------
    # 生成 / 修改
    # ------------------------------------------------------------------

    async def generate(self, task: Task, steps: list[str] | None = None) -> Plan:
        """为任务生成 Plan

        需要审批时写入 pending，否则写入 Plans/。
        同一任务已有 Plan 时直接返回已有的 Plan（恢复处理时可重复调用）。
        """
        existing = await self.get_by_task_id(task.id)
        if existing is not None:
            log.info("plan_already_exists", task_id=task.id, status=existing.approval_status)
            return existing

        descriptions = [s.strip() for s in steps or [] if s.strip()] or default_steps()
        reasons = approval_reasons(task.title, task.body) if task.requires_approval else []
        status = ApprovalStatus.PENDING if task.requires_approval else ApprovalStatus.NOT_REQUIRED

        plan = Plan(
            task_id=task.id,
            title=task.title,
            approval_status=status,
            requires_approval=task.requires_approval,
            approval_reasons=reasons,
            created_at=datetime.now(UTC),
        )
        body = render_plan_body(task, descriptions, reasons, task.requires_approval)
        path = self.directory_for(status) / plan_filename(task.id)
        async with file_lock(path, self._lock):
            write_document(path, plan.to_metadata(), body)
            result = self.read_from_file(path)

        log.info("plan_generated", task_id=task.id, steps=len(descriptions), status=status)
        return result

    async def _locate_or_raise(self, task_id: str) -> Path:
        path = await self.get_file_path(task_id)
        if path is None:
            raise PlanNotFoundError(task_id)
        return path

    def _locked(self, task_id: str) -> AbstractAsyncContextManager[Path]:
        return lock_located(partial(self._locate_or_raise, task_id), self._lock)

    def _write(self, path: Path, plan: Plan, body: str) -> None:
        write_document(path, plan.to_metadata(), body)

    @staticmethod
    def _position_of(plan: Plan, step_number: int) -> int:
        for position, step in enumerate(plan.steps):
            if step.number == step_number:
                return position
        raise StepNotFoundError(plan.task_id, step_number)

    async def complete_step(self, task_id: str, step_number: int, outcome: str = "") -> Plan:
        """勾选一个步骤并记录结果

        最后一个未完成步骤被勾选时写入 completed_at（只写一次）。
        步骤已完成时不做修改。

        Raises:
            PlanNotFoundError: Plan 不存在
            StepNotFoundError: 步骤编号不存在
        """
        async with self._locked(task_id) as path:
            plan = self.read_from_file(path)
            position = self._position_of(plan, step_number)
            if plan.steps[position].completed:
                return plan

            now = datetime.now(UTC)
            body = set_checkbox(plan.body, position, checked=True)
            body = insert_note_after(
                body, position, f"{COMPLETED_NOTE_PREFIX} {outcome or 'done'} ({now.isoformat()})"
            )
            steps = parse_steps(body)
            if steps and all(s.completed for s in steps) and plan.completed_at is None:
                plan.completed_at = now
            self._write(path, plan, body)
            result = self.read_from_file(path)

        log.info("plan_step_completed", task_id=task_id, step=step_number)
        return result

    async def uncomplete_step(self, task_id: str, step_number: int) -> Plan:
        async with self._locked(task_id) as path:
            plan = self.read_from_file(path)
            position = self._position_of(plan, step_number)
            body = set_checkbox(plan.body, position, checked=False)
            body = remove_notes_after(body, position, COMPLETED_NOTE_PREFIX)
            plan.completed_at = None
            self._write(path, plan, body)
            return self.read_from_file(path)

    async def complete_all_steps(
        self,
        task_id: str,
        outcome: str = "",
        step_outcomes: dict[int, str] | None = None,
    ) -> Plan:
        """按顺序勾选所有未完成步骤"""
        plan = await self.get_or_raise(task_id)
        step_outcomes = step_outcomes or {}
        for step in plan.steps:
            if not step.completed:
                plan = await self.complete_step(
                    task_id, step.number, step_outcomes.get(step.number, outcome)
                )
        return plan

    async def update_meta(self, task_id: str, **fields: Any) -> Plan:
        """更新元数据（approval_status 由目录决定，不可通过此方法修改）"""
        if "approval_status" in fields or "task_id" in fields:
            raise ValueError("approval_status / task_id 不能通过 update_meta 修改")
        async with self._locked(task_id) as path:
            plan = self.read_from_file(path)
            updated = Plan.model_validate({**plan.to_metadata(), **fields})
            self._write(path, updated, plan.body)
            return self.read_from_file(path)

    async def move_to(self, task_id: str, status: ApprovalStatus, **fields: Any) -> Plan:
        """搬移到 status 对应目录并更新元数据，返回搬移后的 Plan"""
        async with self._locked(task_id) as path:
            plan = self.read_from_file(path)
            updated = Plan.model_validate(
                {**plan.to_metadata(), **fields, "approval_status": status}
            )
            self._write(path, updated, plan.body)
            dest = relocate(path, self.directory_for(status))
            result = self.read_from_file(dest)
        log.info(
            "plan_relocated",
            task_id=task_id,
            status_from=plan.approval_status,
            status_to=status,
        )
        return result

    # ------------------------------------------------------------------
    # 进度与校验
    # ------------------------------------------------------------------

    @staticmethod
    def progress_of(plan: Plan) -> PlanProgress:
        total = len(plan.steps)
        completed = sum(1 for s in plan.steps if s.completed)
        percentage = round(completed * 100 / total) if total else 0
        return PlanProgress(completed=completed, total=total, percentage=percentage)

    async def get_progress(self, task_id: str) -> PlanProgress:
        return self.progress_of(await self.get_or_raise(task_id))

    async def is_complete(self, task_id: str) -> bool:
        plan = await self.get_or_raise(task_id)
        return bool(plan.steps) and all(s.completed for s in plan.steps)

    @staticmethod
    def validate_plan(plan: Plan) -> PlanValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if not plan.steps:
            errors.append("Plan has no steps")
        for step in plan.steps:
            if not step.description:
                errors.append(f"Step {step.number} has no description")
        numbers = [s.number for s in plan.steps]
        if len(numbers) != len(set(numbers)):
            errors.append("Duplicate step numbers")

        if plan.approval_status == ApprovalStatus.APPROVED and plan.approved_at is None:
            warnings.append("Approved plan has no approved_at timestamp")
        if plan.approval_status == ApprovalStatus.REJECTED and not plan.rejection_reason:
            warnings.append("Rejected plan has no rejection reason")
        if plan.steps and all(s.completed for s in plan.steps) and plan.completed_at is None:
            warnings.append("All steps completed but completed_at is not set")

        return PlanValidationResult(valid=not errors, errors=errors, warnings=warnings)

    async def validate(self, task_id: str) -> PlanValidationResult:
        return self.validate_plan(await self.get_or_raise(task_id))

    async def is_ready_for_execution(self, task_id: str) -> bool:
        """已批准或无需审批、校验通过且尚未全部完成"""
        plan = await self.get_by_task_id(task_id)
        if plan is None:
            return False
        if plan.approval_status not in (ApprovalStatus.APPROVED, ApprovalStatus.NOT_REQUIRED):
            return False
        if not self.validate_plan(plan).valid:
            return False
        return not all(s.completed for s in plan.steps)

    async def next_step(self, task_id: str) -> PlanStep | None:
        plan = await self.get_or_raise(task_id)
        return next((s for s in plan.steps if not s.completed), None)
