"""TaskStore 文件实现

任务文档存放在 intake 目录，进入 CLOSE 后移入 Done / Done/failed / Done/invalid。
所有写操作在文档的 advisory 锁内完成 读取-修改-写入-搬移 序列，
等锁期间文档被搬走时按新位置重新定位；
读取总是从文档重新解析，不保留内存缓存。
"""

import uuid
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from ..approval_criteria import requires_approval as detect_approval
from ..config import LockOptions, VaultConfig
from ..document import extract_title, read_document, write_document
from ..exceptions import DocumentParseError, InvalidTransitionError, TaskNotFoundError
from ..filelock import file_lock, lock_located, relocate
from ..models.enums import (
    CompletionStatus,
    Priority,
    TaskSource,
    TaskState,
    next_state,
    state_rank,
)
from ..models.error_report import ERROR_FILENAME_PREFIX
from ..models.task import TASK_FILENAME_PREFIX, Task, TransitionOutcome, task_filename

log = structlog.get_logger()

REMINDER_FILENAME_PREFIX = "REMINDER_"

# 非任务文档（错误报告、审批提醒）与任务共享 intake 目录
NON_TASK_PREFIXES: tuple[str, ...] = (ERROR_FILENAME_PREFIX, REMINDER_FILENAME_PREFIX)


def is_task_document(path: Path) -> bool:
    return path.suffix == ".md" and not path.name.startswith(NON_TASK_PREFIXES)


def render_task_body(title: str, content: str) -> str:
    return f"# Task: {title}\n\n## Original Content\n\n{content.rstrip()}\n"


class FileTaskStore:
    """TaskStore 的文件实现"""

    def __init__(self, vault: VaultConfig, lock: LockOptions | None = None) -> None:
        self._vault = vault
        self._lock = lock or LockOptions()

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    def read_from_file(self, path: Path) -> Task:
        """解析任务文档

        Raises:
            DocumentParseError: frontmatter 非法或字段不符合 Task 模型
        """
        doc = read_document(path)
        try:
            task = Task.model_validate(doc.metadata)
        except ValidationError as e:
            raise DocumentParseError(path, f"任务元数据非法: {e.error_count()} 个字段错误") from e
        task.body = doc.body
        task.path = path
        return task

    def _candidates(self, task_id: str) -> list[Path]:
        paths: list[Path] = []
        for directory in self._vault.task_locations():
            if directory.is_dir():
                paths.extend(sorted(directory.glob(f"{TASK_FILENAME_PREFIX}{task_id[:8]}_*.md")))
        return paths

    def _scan(self) -> list[Path]:
        paths: list[Path] = []
        for directory in self._vault.task_locations():
            if directory.is_dir():
                paths.extend(p for p in sorted(directory.glob("*.md")) if is_task_document(p))
        return paths

    async def get_file_path(self, task_id: str) -> Path | None:
        """定位任务文档；文件名只用于加速，以元数据中的 id 为准"""
        prefixed = self._candidates(task_id)
        others = [p for p in self._scan() if p not in prefixed]
        for path in [*prefixed, *others]:
            try:
                meta = read_document(path).metadata
            except (DocumentParseError, OSError):
                continue
            if meta.get("id") == task_id:
                return path
        return None

    async def get_by_id(self, task_id: str) -> Task | None:
        path = await self.get_file_path(task_id)
        if path is None:
            return None
        return self.read_from_file(path)

    async def get_by_id_or_raise(self, task_id: str) -> Task:
        task = await self.get_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_all(self) -> list[Task]:
        """扫描全部位置，跳过无法解析的文档"""
        tasks: list[Task] = []
        for path in self._scan():
            try:
                tasks.append(self.read_from_file(path))
            except DocumentParseError as e:
                log.warning("malformed_task_skipped", path=str(path), reason=e.reason)
            except FileNotFoundError:
                # 扫描期间被搬走
                continue
        return tasks

    async def list_by_state(self, state: TaskState) -> list[Task]:
        return [t for t in await self.list_all() if t.current_state == state]

    async def list_active(self) -> list[Task]:
        """intake 中尚未结束的任务，按创建时间排序"""
        tasks = [
            t
            for t in await self.list_all()
            if t.path is not None
            and t.path.parent == self._vault.intake
            and t.current_state != TaskState.CLOSE
        ]
        return sorted(tasks, key=lambda t: t.created_at)

    def _intake_documents(self) -> list[Path]:
        if not self._vault.intake.is_dir():
            return []
        return [p for p in sorted(self._vault.intake.glob("*.md")) if is_task_document(p)]

    async def list_unadopted(self) -> list[Path]:
        """intake 中尚未分配 id 的投递文档"""
        paths: list[Path] = []
        for path in self._intake_documents():
            try:
                meta = read_document(path).metadata
            except (DocumentParseError, OSError):
                continue
            if not meta.get("id"):
                paths.append(path)
        return paths

    async def list_malformed(self) -> list[Path]:
        """intake 中无法解析的任务文档（frontmatter 非法，或带 id 但字段不符合 Task 模型）"""
        paths: list[Path] = []
        for path in self._intake_documents():
            try:
                doc = read_document(path)
                if doc.metadata.get("id"):
                    self.read_from_file(path)
            except DocumentParseError:
                paths.append(path)
            except OSError:
                continue
        return paths

    # ------------------------------------------------------------------
    # 创建
    # ------------------------------------------------------------------

    async def create(
        self,
        content: str,
        source: TaskSource,
        title: str | None = None,
        priority: Priority = Priority.NORMAL,
        requires_approval: bool | None = None,
    ) -> Task:
        """创建任务并写入 intake

        Args:
            content: 任务正文
            source: 来源
            title: 标题，为空时从正文提取
            priority: 优先级
            requires_approval: 为 None 时按敏感词判定
        """
        title = title or extract_title(content)
        if requires_approval is None:
            requires_approval = detect_approval(title, content)

        task = Task(
            id=str(uuid.uuid4()),
            title=title,
            source=source,
            created_at=datetime.now(UTC),
            priority=priority,
            requires_approval=requires_approval,
            body=render_task_body(title, content),
        )
        path = self._vault.intake / task_filename(task.id, title)
        async with file_lock(path, self._lock):
            write_document(path, task.to_metadata(), task.body)
        task.path = path

        log.info(
            "task_created",
            task_id=task.id,
            source=source,
            requires_approval=requires_approval,
        )
        return task

    async def ingest_file(self, path: Path) -> Task:
        """接收 intake 适配器投递的文档

        没有 id 的文档按其正文重新创建任务并删除原文件；
        有 id 的文档直接解析。

        Raises:
            DocumentParseError: 文档无法解析
        """
        doc = read_document(path)
        if doc.metadata.get("id"):
            return self.read_from_file(path)

        meta = doc.metadata
        try:
            source = TaskSource(meta.get("source", TaskSource.FILESYSTEM))
            priority = Priority(meta.get("priority", Priority.NORMAL))
        except ValueError as e:
            raise DocumentParseError(path, str(e)) from e

        flag = meta.get("requires_approval")
        task = await self.create(
            content=doc.body,
            source=source,
            title=meta.get("title") or None,
            priority=priority,
            requires_approval=flag if isinstance(flag, bool) else None,
        )
        async with file_lock(path, self._lock):
            path.unlink(missing_ok=True)
        log.info("task_ingested", task_id=task.id, original=path.name)
        return task

    # ------------------------------------------------------------------
    # 状态流转
    # ------------------------------------------------------------------

    async def _locate_or_raise(self, task_id: str) -> Path:
        path = await self.get_file_path(task_id)
        if path is None:
            raise TaskNotFoundError(task_id)
        return path

    def _locked(self, task_id: str) -> AbstractAsyncContextManager[Path]:
        return lock_located(partial(self._locate_or_raise, task_id), self._lock)

    def _write(self, path: Path, task: Task) -> None:
        write_document(path, task.to_metadata(), task.body)

    async def transition(
        self,
        task_id: str,
        outcome: TransitionOutcome | None = None,
        target: TaskState | None = None,
    ) -> Task:
        """推进到唯一合法的下一个状态

        Args:
            task_id: 任务 ID
            outcome: 当前阶段的处理结果，失败时累计 error_count / last_error
            target: 期望进入的状态；与合法下一状态不一致时拒绝

        Returns:
            刷新后的 Task

        Raises:
            TaskNotFoundError: 任务不存在
            InvalidTransitionError: 非法流转，文档不做任何修改
        """
        outcome = outcome or TransitionOutcome()

        async with self._locked(task_id) as path:
            task = self.read_from_file(path)
            current = task.current_state
            expected = next_state(current, task.requires_approval)

            if expected is None:
                raise InvalidTransitionError(task_id, current, target, "终态不可再流转")
            if target is not None and target != expected:
                raise InvalidTransitionError(
                    task_id, current, target, f"唯一合法目标为 {expected}"
                )

            plan_reference = outcome.plan_reference or task.plan_reference
            if state_rank(expected) >= state_rank(TaskState.PLAN) and not plan_reference:
                raise InvalidTransitionError(
                    task_id, current, expected, "进入 PLAN 之前必须关联 Plan"
                )

            if not outcome.success:
                task.error_count += 1
                task.last_error = outcome.error or "unknown error"

            task.current_state = expected
            task.plan_reference = plan_reference

            if expected == TaskState.CLOSE:
                task.completed_at = datetime.now(UTC)
                task.completion_status = CompletionStatus.COMPLETED
                self._write(path, task)
                path = relocate(path, self._vault.done)
            else:
                self._write(path, task)
            result = self.read_from_file(path)

        log.info(
            "task_transitioned",
            task_id=task_id,
            state_from=current,
            state_to=expected,
            success=outcome.success,
        )
        return result

    async def force_transition(self, task_id: str, state: TaskState) -> Task:
        """不做校验直接设置状态（仅用于错误恢复）"""
        async with self._locked(task_id) as path:
            task = self.read_from_file(path)
            previous = task.current_state
            task.current_state = state
            self._write(path, task)
            result = self.read_from_file(path)
        log.warning("task_force_transitioned", task_id=task_id, state_from=previous, state_to=state)
        return result

    async def update(self, task_id: str, **fields: Any) -> Task:
        """更新元数据，不改变状态

        Raises:
            ValueError: 试图通过 update 修改 current_state 或 id
        """
        if {"current_state", "id"} & fields.keys():
            raise ValueError("current_state / id 不能通过 update 修改")

        async with self._locked(task_id) as path:
            task = self.read_from_file(path)
            updated = Task.model_validate({**task.to_metadata(), **fields})
            updated.body = task.body
            self._write(path, updated)
            return self.read_from_file(path)

    async def record_error(self, task_id: str, message: str) -> Task:
        async with self._locked(task_id) as path:
            task = self.read_from_file(path)
            task.error_count += 1
            task.last_error = message
            self._write(path, task)
            return self.read_from_file(path)

    async def append_section(self, task_id: str, heading: str, text: str) -> Task:
        """在正文末尾追加（或替换同名）二级标题段落"""
        async with self._locked(task_id) as path:
            task = self.read_from_file(path)
            marker = f"\n## {heading}\n"
            body = task.body
            if marker in body:
                body = body[: body.index(marker)]
            task.body = f"{body.rstrip()}\n{marker}\n{text.rstrip()}\n"
            self._write(path, task)
            return self.read_from_file(path)

    # ------------------------------------------------------------------
    # 结束 / 恢复
    # ------------------------------------------------------------------

    def _destination(self, status: CompletionStatus) -> Path:
        return {
            CompletionStatus.COMPLETED: self._vault.done,
            CompletionStatus.FAILED: self._vault.done_failed,
            CompletionStatus.INVALID: self._vault.done_invalid,
            # 拒绝属于正常结束，带拒绝备注
            CompletionStatus.REJECTED: self._vault.done,
        }[status]

    async def complete(
        self,
        task_id: str,
        status: CompletionStatus,
        notes: str | None = None,
    ) -> Task:
        """结束任务：状态置为 CLOSE，记录结束方式并移入对应归档目录"""
        async with self._locked(task_id) as path:
            task = self.read_from_file(path)
            previous = task.current_state
            task.current_state = TaskState.CLOSE
            task.completed_at = datetime.now(UTC)
            task.completion_status = status
            if notes:
                task.completion_notes = notes
                task.body = f"{task.body.rstrip()}\n\n## Completion Notes\n\n{notes}\n"
            self._write(path, task)
            path = relocate(path, self._destination(status))
            result = self.read_from_file(path)

        log.info(
            "task_completed",
            task_id=task_id,
            state_from=previous,
            status=status,
            location=path.parent.name,
        )
        return result

    async def fail(self, task_id: str, error: str) -> Task:
        return await self.complete(task_id, CompletionStatus.FAILED, f"Error: {error}")

    async def invalidate(self, task_id: str, reason: str) -> Task:
        return await self.complete(task_id, CompletionStatus.INVALID, f"Invalid: {reason}")

    async def reject(self, task_id: str, reason: str) -> Task:
        return await self.complete(task_id, CompletionStatus.REJECTED, f"Rejected: {reason}")

    async def archive(self, task_id: str) -> Path:
        """移入 Done，不修改元数据"""
        async with self._locked(task_id) as path:
            return relocate(path, self._vault.done)

    async def reopen(self, task_id: str) -> Task:
        """重置为 WATCH 并移回 intake（人工恢复用）"""
        async with self._locked(task_id) as path:
            task = self.read_from_file(path)
            task.current_state = TaskState.WATCH
            task.completed_at = None
            task.completion_status = None
            task.completion_notes = None
            self._write(path, task)
            path = relocate(path, self._vault.intake)
            result = self.read_from_file(path)
        log.info("task_reopened", task_id=task_id)
        return result

    async def quarantine(self, path: Path, reason: str) -> Path:
        """把无法解析的文档原样移入 Done/invalid"""
        async with file_lock(path, self._lock):
            dest = relocate(path, self._vault.done_invalid)
        log.warning("document_quarantined", path=str(path), reason=reason)
        return dest

    async def delete(self, task_id: str) -> None:
        """显式管理删除"""
        async with self._locked(task_id) as path:
            path.unlink()
        log.warning("task_deleted", task_id=task_id)
