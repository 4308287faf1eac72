"""AuditLog 文件实现 -- 按日分区、只追加、逐条 checksum

分区文件 Logs/YYYY-MM-DD.log.md：一级标题 + Markdown 表格，每条记录一行，
保存完整时间戳、完整任务 ID 与 checksum。文件只以追加模式打开，
已写入的字节不会被改写。

历史分区中的 7 列记录（截断 ID、只有时分秒、无 checksum）仍可读取，
完整性校验时跳过 checksum 比对。
"""

import os
import re
from collections import Counter
from datetime import UTC, date, datetime, time
from pathlib import Path

import structlog
from pydantic import ValidationError

from ..checksum import compute_checksum, verify_checksum
from ..config import LockOptions, VaultConfig
from ..filelock import file_lock
from ..models.common import ensure_utc
from ..models.audit import (
    SYSTEM_TASK_ID,
    AuditEntry,
    AuditQuery,
    AuditQueryResult,
    IntegrityResult,
    IntegritySummary,
)
from ..models.enums import Actor, CompletionStatus, Outcome, TaskSource, TaskState

log = structlog.get_logger()

PARTITION_SUFFIX = ".log.md"
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TABLE_COLUMNS: tuple[str, ...] = (
    "Timestamp",
    "Task ID",
    "From",
    "To",
    "Actor",
    "Outcome",
    "Details",
    "Checksum",
)
LEGACY_COLUMN_COUNT = 7
SHORT_ID_LENGTH = 8
EMPTY_CELL = "-"
# 历史分区里外部执行者记作 mcp
LEGACY_ACTORS: dict[str, str] = {"mcp": Actor.EXECUTOR.value}


def partition_header(day: str) -> str:
    head = "| " + " | ".join(TABLE_COLUMNS) + " |"
    sep = "|" + "|".join("-" * (len(c) + 2) for c in TABLE_COLUMNS) + "|"
    return f"# Audit Log: {day}\n\n{head}\n{sep}\n"


def escape_cell(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("|", "\\|")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def split_row(line: str) -> list[str] | None:
    """拆分表格行，处理 `\\|` `\\n` 等转义；不是表格行时返回 None"""
    line = line.strip()
    if not (line.startswith("|") and line.endswith("|")):
        return None

    cells: list[str] = []
    buf: list[str] = []
    chars = iter(line[1:])
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            buf.append({"n": "\n", "r": "\r"}.get(nxt, nxt))
        elif ch == "|":
            cells.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
    return cells


def format_row(entry: AuditEntry) -> str:
    timestamp = entry.checksum_fields()["timestamp"]
    cells = [
        timestamp,
        entry.task_id,
        entry.state_from or EMPTY_CELL,
        entry.state_to,
        entry.actor.value,
        entry.outcome.value,
        entry.details or "",
        entry.checksum or "",
    ]
    return "| " + " | ".join(escape_cell(c) for c in cells) + " |\n"


def _is_header_row(cells: list[str]) -> bool:
    if cells and cells[0] == TABLE_COLUMNS[0]:
        return True
    return all(set(c) <= {"-", ":"} for c in cells)


def _parse_timestamp(value: str, day: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        # 历史格式只记录了时分秒
        return datetime.combine(date.fromisoformat(day), time.fromisoformat(value), tzinfo=UTC)


def parse_row(cells: list[str], day: str) -> AuditEntry:
    """表格单元 -> AuditEntry

    Raises:
        ValueError: 列数不对或字段非法
    """
    if len(cells) not in (len(TABLE_COLUMNS), LEGACY_COLUMN_COUNT):
        raise ValueError(f"unexpected column count: {len(cells)}")

    legacy = len(cells) == LEGACY_COLUMN_COUNT
    details = cells[6]
    if legacy and details == EMPTY_CELL:
        details = ""
    return AuditEntry(
        timestamp=_parse_timestamp(cells[0], day),
        task_id=cells[1],
        state_from=None if cells[2] == EMPTY_CELL else cells[2],
        state_to=cells[3],
        actor=Actor(LEGACY_ACTORS.get(cells[4], cells[4]) if legacy else cells[4]),
        outcome=Outcome(cells[5]),
        details=details or None,
        checksum=None if legacy else cells[7],
    )


def task_id_matches(entry_task_id: str, task_id: str) -> bool:
    """完整 ID 与 8 位截断 ID 互相匹配"""
    if entry_task_id == task_id:
        return True
    if SYSTEM_TASK_ID in (entry_task_id, task_id):
        return False
    short = min(len(entry_task_id), len(task_id))
    if short != SHORT_ID_LENGTH:
        return False
    return entry_task_id[:short] == task_id[:short]


class FileAuditLog:
    """AuditLog 的文件实现"""

    def __init__(self, vault: VaultConfig, lock: LockOptions | None = None) -> None:
        self._vault = vault
        self._lock = lock or LockOptions()

    def partition_path(self, day: str) -> Path:
        if not DATE_PATTERN.match(day):
            raise ValueError(f"invalid partition date: {day}")
        return self._vault.logs / f"{day}{PARTITION_SUFFIX}"

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    async def log(
        self,
        *,
        task_id: str,
        state_to: str,
        actor: Actor = Actor.SYSTEM,
        outcome: Outcome = Outcome.SUCCESS,
        state_from: str | None = None,
        details: str | None = None,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """追加一条审计记录

        timestamp 为空时在分区锁内取当前时间，保证同一分区内时间戳不递减。
        """
        day = (timestamp or datetime.now(UTC)).astimezone(UTC).date().isoformat()
        path = self.partition_path(day)

        async with file_lock(path, self._lock):
            draft = AuditEntry(
                timestamp=timestamp or datetime.now(UTC),
                task_id=task_id,
                state_from=str(state_from) if state_from else None,
                state_to=str(state_to),
                actor=actor,
                outcome=outcome,
                details=details,
            )
            entry = draft.model_copy(update={"checksum": compute_checksum(draft.checksum_fields())})
            self._append(path, day, format_row(entry))

        log.debug(
            "audit_logged",
            task_id=task_id,
            state_from=state_from,
            state_to=state_to,
            outcome=outcome,
        )
        return entry

    @staticmethod
    def _append(path: Path, day: str, row: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with path.open("x", encoding="utf-8") as handle:
                handle.write(partition_header(day))
        except FileExistsError:
            pass
        with path.open("a", encoding="utf-8") as handle:
            handle.write(row)
            handle.flush()
            os.fsync(handle.fileno())

    async def log_state_transition(
        self,
        task_id: str,
        state_from: TaskState | None,
        state_to: TaskState,
        actor: Actor = Actor.SYSTEM,
        outcome: Outcome = Outcome.SUCCESS,
        details: str | None = None,
    ) -> AuditEntry:
        return await self.log(
            task_id=task_id,
            state_from=state_from,
            state_to=state_to,
            actor=actor,
            outcome=outcome,
            details=details,
        )

    async def log_system_event(
        self,
        event: str,
        details: str | None = None,
        outcome: Outcome = Outcome.SUCCESS,
    ) -> AuditEntry:
        return await self.log(
            task_id=SYSTEM_TASK_ID,
            state_to=event,
            actor=Actor.SYSTEM,
            outcome=outcome,
            details=details,
        )

    async def log_task_created(self, task_id: str, source: TaskSource) -> AuditEntry:
        return await self.log(
            task_id=task_id,
            state_to=TaskState.WATCH,
            details=f"Task created from {source}",
        )

    async def log_task_completed(
        self,
        task_id: str,
        status: CompletionStatus,
        state_from: TaskState | None = None,
        details: str | None = None,
    ) -> AuditEntry:
        success = status in (CompletionStatus.COMPLETED, CompletionStatus.REJECTED)
        return await self.log(
            task_id=task_id,
            state_from=state_from,
            state_to=TaskState.CLOSE,
            outcome=Outcome.SUCCESS if success else Outcome.FAILURE,
            details=details or f"Task {status}",
        )

    async def log_approval(
        self,
        task_id: str,
        approved: bool,
        approved_by: str | None = None,
        reason: str | None = None,
    ) -> AuditEntry:
        if approved:
            details = f"Approved by {approved_by}" if approved_by else "Approved"
        else:
            details = f"Rejected: {reason}" if reason else "Rejected"
        return await self.log(
            task_id=task_id,
            state_from=TaskState.APPROVE,
            state_to=TaskState.ACT if approved else TaskState.CLOSE,
            actor=Actor.HUMAN,
            outcome=Outcome.SUCCESS if approved else Outcome.FAILURE,
            details=details,
        )

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    def _read_rows(self, day: str) -> list[tuple[AuditEntry | None, str]]:
        """分区中的所有记录行：(解析结果或 None, 失败原因)"""
        path = self.partition_path(day)
        if not path.is_file():
            return []
        rows: list[tuple[AuditEntry | None, str]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            cells = split_row(line)
            if cells is None or _is_header_row(cells):
                continue
            try:
                rows.append((parse_row(cells, day), ""))
            except (ValueError, ValidationError) as e:
                rows.append((None, f"unparseable row: {e}"))
        return rows

    def read_partition(self, day: str) -> list[AuditEntry]:
        entries = []
        for entry, reason in self._read_rows(day):
            if entry is None:
                log.warning("audit_row_unparseable", date=day, reason=reason)
                continue
            entries.append(entry)
        return entries

    async def log_dates(self) -> list[str]:
        if not self._vault.logs.is_dir():
            return []
        days = [
            p.name.removesuffix(PARTITION_SUFFIX)
            for p in self._vault.logs.glob(f"*{PARTITION_SUFFIX}")
        ]
        return sorted(d for d in days if DATE_PATTERN.match(d))

    async def get_by_date(self, day: str) -> AuditQueryResult:
        entries = self.read_partition(day)
        return AuditQueryResult(entries=entries, total=len(entries), date=day)

    async def get_all(self) -> list[AuditEntry]:
        entries: list[AuditEntry] = []
        for day in await self.log_dates():
            entries.extend(self.read_partition(day))
        return entries

    async def get_by_task_id(self, task_id: str) -> AuditQueryResult:
        entries = [e for e in await self.get_all() if task_id_matches(e.task_id, task_id)]
        return AuditQueryResult(entries=entries, total=len(entries), task_id=task_id)

    async def query(self, filters: AuditQuery) -> AuditQueryResult:
        days = await self.log_dates()
        if filters.date_from:
            days = [d for d in days if d >= filters.date_from]
        if filters.date_to:
            days = [d for d in days if d <= filters.date_to]

        entries: list[AuditEntry] = []
        for day in days:
            for entry in self.read_partition(day):
                if filters.task_id and not task_id_matches(entry.task_id, filters.task_id):
                    continue
                if filters.actor and entry.actor != filters.actor:
                    continue
                if filters.outcome and entry.outcome != filters.outcome:
                    continue
                if filters.state_to and entry.state_to != filters.state_to:
                    continue
                entries.append(entry)

        total = len(entries)
        if filters.limit:
            entries = entries[-filters.limit :]
        return AuditQueryResult(entries=entries, total=total, task_id=filters.task_id)

    async def get_recent(self, limit: int = 10) -> list[AuditEntry]:
        """最近的 limit 条记录，新的在前"""
        entries: list[AuditEntry] = []
        for day in reversed(await self.log_dates()):
            entries = self.read_partition(day) + entries
            if len(entries) >= limit:
                break
        return list(reversed(entries[-limit:]))

    async def count_by_outcome(self, day: str | None = None) -> dict[Outcome, int]:
        entries = self.read_partition(day) if day else await self.get_all()
        counts = Counter(e.outcome for e in entries)
        return {outcome: counts.get(outcome, 0) for outcome in Outcome}

    # ------------------------------------------------------------------
    # 完整性校验
    # ------------------------------------------------------------------

    async def verify_integrity(self, day: str) -> IntegrityResult:
        """重新计算每条记录的 checksum 并检查时间戳不递减

        时间戳只与上一条通过 checksum 校验的记录比较，
        单条记录被篡改时只标记该条记录。
        没有 checksum 列的历史记录只在第一条带 checksum 的记录之前被跳过；
        8 列记录的 checksum 为空时视为缺失。
        """
        rows = self._read_rows(day)
        invalid: list[int] = []
        errors: list[str] = []
        skipped = 0
        previous: datetime | None = None
        checksummed = False

        for index, (entry, reason) in enumerate(rows):
            if entry is None:
                invalid.append(index)
                errors.append(f"entry {index}: {reason}")
                continue

            if entry.checksum is None and not checksummed:
                skipped += 1
            elif not entry.checksum:
                invalid.append(index)
                errors.append(f"entry {index}: missing checksum")
                continue
            elif not verify_checksum(entry.checksum_fields(), entry.checksum):
                invalid.append(index)
                errors.append(f"entry {index}: checksum mismatch")
                continue
            else:
                checksummed = True

            if previous is not None and ensure_utc(entry.timestamp) < ensure_utc(previous):
                invalid.append(index)
                errors.append(
                    f"entry {index}: timestamp {entry.timestamp.isoformat()} "
                    f"is earlier than previous entry {previous.isoformat()}"
                )
                continue
            previous = entry.timestamp

        result = IntegrityResult(
            valid=not invalid,
            date=day,
            total_entries=len(rows),
            invalid_entries=invalid,
            errors=errors,
            skipped_entries=skipped,
        )
        if not result.valid:
            log.warning("audit_integrity_violation", date=day, invalid_entries=invalid)
        return result

    async def verify_all(self) -> list[IntegrityResult]:
        return [await self.verify_integrity(day) for day in await self.log_dates()]

    async def integrity_summary(self) -> IntegritySummary:
        results = await self.verify_all()
        return IntegritySummary(
            total_dates=len(results),
            valid_dates=sum(1 for r in results if r.valid),
            invalid_dates=[r.date for r in results if not r.valid],
            total_entries=sum(r.total_entries for r in results),
            invalid_entries=sum(len(r.invalid_entries) for r in results),
        )
