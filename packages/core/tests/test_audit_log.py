"""FileAuditLog 测试

测试内容：
1. 按日分区追加、表头只写一次
2. checksum 可复算；篡改任一记录只标记该条
3. 时间戳倒退被标记
4. 历史 7 列记录可读、校验时跳过；checksum 被清空或整列删除时标记该条
5. 查询：任务（完整/截断 ID）、日期、过滤条件、统计
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from vaultloop.core.checksum import verify_checksum
from vaultloop.core.models import (
    SYSTEM_TASK_ID,
    Actor,
    AuditQuery,
    CompletionStatus,
    Outcome,
    TaskSource,
    TaskState,
)
from vaultloop.core.store import StoreGroup
from vaultloop.core.store.audit_log import escape_cell, split_row, task_id_matches

DAY = "2026-01-05"
T0 = datetime(2026, 1, 5, 10, 0, 0, tzinfo=UTC)
TASK_ID = "3f2b9c1e-8d4a-4f6b-9e2a-1c5d7e9f0a3b"


def data_lines(path: Path) -> list[int]:
    """分区文件中记录行的行号"""
    lines = path.read_text(encoding="utf-8").splitlines()
    return [i for i, line in enumerate(lines) if line.startswith("| 20")]


def rewrite_line(path: Path, line_no: int, old: str, new: str) -> None:
    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
    assert old in lines[line_no]
    lines[line_no] = lines[line_no].replace(old, new, 1)
    path.write_text("".join(lines), encoding="utf-8")


async def log_three(stores: StoreGroup) -> Path:
    audit = stores.audit_log
    states = [TaskState.WATCH, TaskState.WRITE, TaskState.REASON]
    previous = None
    for offset, state in enumerate(states):
        await audit.log(
            task_id=TASK_ID,
            state_from=previous,
            state_to=state,
            details=f"step {offset}",
            timestamp=T0 + timedelta(seconds=offset),
        )
        previous = state
    return audit.partition_path(DAY)


class TestAppend:
    async def test_partition_created_with_header(self, stores: StoreGroup):
        path = await log_three(stores)
        text = path.read_text(encoding="utf-8")
        assert text.startswith(f"# Audit Log: {DAY}")
        assert text.count("| Timestamp |") == 1
        assert len(data_lines(path)) == 3

    async def test_entry_checksum_recomputes(self, stores: StoreGroup):
        entry = await stores.audit_log.log(task_id=TASK_ID, state_to=TaskState.WATCH)
        assert entry.checksum is not None
        assert verify_checksum(entry.checksum_fields(), entry.checksum)

        stored = (await stores.audit_log.get_by_task_id(TASK_ID)).entries[0]
        assert stored.checksum == entry.checksum
        assert stored.timestamp == entry.timestamp
        assert verify_checksum(stored.checksum_fields(), stored.checksum)

    async def test_details_escaped(self, stores: StoreGroup):
        details = "line one | pipe\nline two \\ slash"
        await stores.audit_log.log(task_id=TASK_ID, state_to="WRITE", details=details)
        entry = (await stores.audit_log.get_by_task_id(TASK_ID)).entries[0]
        assert entry.details == details
        assert (await stores.audit_log.verify_all())[0].valid is True

    async def test_invalid_partition_date(self, stores: StoreGroup):
        with pytest.raises(ValueError):
            stores.audit_log.partition_path("2026/01/05")


class TestIntegrity:
    async def test_clean_partition(self, stores: StoreGroup):
        await log_three(stores)
        result = await stores.audit_log.verify_integrity(DAY)
        assert result.valid is True
        assert result.total_entries == 3
        assert result.invalid_entries == []

    @pytest.mark.parametrize(
        "old,new",
        [
            ("step 1", "step X"),
            ("| system |", "| human |"),
            ("| success |", "| failure |"),
            ("| WATCH |", "| PLAN |"),
        ],
    )
    async def test_single_field_corruption_flags_only_that_entry(
        self, stores: StoreGroup, old: str, new: str
    ):
        path = await log_three(stores)
        rewrite_line(path, data_lines(path)[1], old, new)
        result = await stores.audit_log.verify_integrity(DAY)
        assert result.valid is False
        assert result.invalid_entries == [1]
        assert "checksum mismatch" in result.errors[0]

    async def test_blanked_checksum_flags_only_that_entry(self, stores: StoreGroup):
        path = await log_three(stores)
        checksum = stores.audit_log.read_partition(DAY)[1].checksum
        line_no = data_lines(path)[1]
        rewrite_line(path, line_no, "step 1", "step X")
        rewrite_line(path, line_no, f"| {checksum} |", "|  |")

        result = await stores.audit_log.verify_integrity(DAY)
        assert result.valid is False
        assert result.invalid_entries == [1]
        assert result.skipped_entries == 0
        assert "missing checksum" in result.errors[0]

    async def test_dropped_checksum_column_after_checksummed_rows(self, stores: StoreGroup):
        path = await log_three(stores)
        checksum = stores.audit_log.read_partition(DAY)[1].checksum
        line_no = data_lines(path)[1]
        rewrite_line(path, line_no, "step 1", "step X")
        rewrite_line(path, line_no, f" {checksum} |", "")

        result = await stores.audit_log.verify_integrity(DAY)
        assert result.invalid_entries == [1]
        assert "missing checksum" in result.errors[0]

    async def test_timestamp_regression_flagged(self, stores: StoreGroup):
        path = await log_three(stores)
        await stores.audit_log.log(
            task_id=TASK_ID,
            state_to=TaskState.PLAN,
            timestamp=T0 - timedelta(minutes=5),
        )
        assert len(data_lines(path)) == 4
        result = await stores.audit_log.verify_integrity(DAY)
        assert result.invalid_entries == [3]
        assert "earlier than previous" in result.errors[0]

    async def test_unparseable_row_flagged(self, stores: StoreGroup):
        path = await log_three(stores)
        with path.open("a", encoding="utf-8") as handle:
            handle.write("| garbage | row |\n")
        result = await stores.audit_log.verify_integrity(DAY)
        assert result.invalid_entries == [3]

    async def test_missing_partition(self, stores: StoreGroup):
        result = await stores.audit_log.verify_integrity("2020-01-01")
        assert result.valid is True
        assert result.total_entries == 0

    async def test_summary(self, stores: StoreGroup):
        path = await log_three(stores)
        await stores.audit_log.log(task_id=TASK_ID, state_to="WATCH")
        rewrite_line(path, data_lines(path)[0], "step 0", "step 9")
        summary = await stores.audit_log.integrity_summary()
        assert summary.total_dates == 2
        assert summary.valid_dates == 1
        assert summary.invalid_dates == [DAY]
        assert summary.invalid_entries == 1


class TestLegacyRows:
    def write_legacy(self, stores: StoreGroup) -> Path:
        path = stores.audit_log.partition_path("2025-12-31")
        path.write_text(
            "# Audit Log: 2025-12-31\n\n"
            "| Timestamp | Task ID | From | To | Actor | Outcome | Details |\n"
            "|------|---------|------|----|-------|---------|---------|\n"
            f"| 09:00:00 | {TASK_ID[:8]} | - | WATCH | system | success | - |\n"
            f"| 09:05:00 | {TASK_ID[:8]} | ACT | LOG | mcp | success | Sent |\n",
            encoding="utf-8",
        )
        return path

    async def test_legacy_rows_read(self, stores: StoreGroup):
        self.write_legacy(stores)
        entries = (await stores.audit_log.get_by_date("2025-12-31")).entries
        assert len(entries) == 2
        assert entries[0].timestamp == datetime(2025, 12, 31, 9, 0, tzinfo=UTC)
        assert entries[0].details is None
        assert entries[1].actor == Actor.EXECUTOR
        assert entries[1].checksum is None

    async def test_legacy_rows_skipped_in_verification(self, stores: StoreGroup):
        self.write_legacy(stores)
        result = await stores.audit_log.verify_integrity("2025-12-31")
        assert result.valid is True
        assert result.skipped_entries == 2

    async def test_full_id_matches_truncated_history(self, stores: StoreGroup):
        self.write_legacy(stores)
        await stores.audit_log.log(task_id=TASK_ID, state_to="CLOSE")
        result = await stores.audit_log.get_by_task_id(TASK_ID)
        assert result.total == 3


class TestQueries:
    async def test_query_filters(self, stores: StoreGroup):
        audit = stores.audit_log
        await audit.log_task_created(TASK_ID, TaskSource.MANUAL)
        await audit.log_approval(TASK_ID, approved=False, reason="no budget")
        await audit.log_system_event("loop_started")

        human = await audit.query(AuditQuery(actor=Actor.HUMAN))
        assert human.total == 1
        assert human.entries[0].details == "Rejected: no budget"
        assert human.entries[0].state_to == TaskState.CLOSE

        failures = await audit.query(AuditQuery(outcome=Outcome.FAILURE))
        assert failures.total == 1

        by_task = await audit.query(AuditQuery(task_id=TASK_ID, limit=1))
        assert by_task.total == 2
        assert len(by_task.entries) == 1

    async def test_date_range(self, stores: StoreGroup):
        await log_three(stores)
        await stores.audit_log.log(task_id=TASK_ID, state_to="PLAN")
        result = await stores.audit_log.query(AuditQuery(date_from=DAY, date_to=DAY))
        assert result.total == 3

    async def test_system_events_not_matched_by_prefix(self, stores: StoreGroup):
        await stores.audit_log.log_system_event("loop_started")
        assert (await stores.audit_log.get_by_task_id(SYSTEM_TASK_ID)).total == 1
        assert (await stores.audit_log.get_by_task_id(TASK_ID)).total == 0

    async def test_recent_newest_first(self, stores: StoreGroup):
        await log_three(stores)
        recent = await stores.audit_log.get_recent(2)
        assert [e.state_to for e in recent] == ["REASON", "WRITE"]

    async def test_count_by_outcome(self, stores: StoreGroup):
        await stores.audit_log.log_task_completed(TASK_ID, CompletionStatus.COMPLETED)
        await stores.audit_log.log_task_completed(TASK_ID, CompletionStatus.FAILED)
        counts = await stores.audit_log.count_by_outcome()
        assert counts[Outcome.SUCCESS] == 1
        assert counts[Outcome.FAILURE] == 1
        assert counts[Outcome.PENDING] == 0

    async def test_log_dates_sorted(self, stores: StoreGroup):
        await log_three(stores)
        await stores.audit_log.log(
            task_id=TASK_ID, state_to="WATCH", timestamp=datetime(2025, 6, 1, tzinfo=UTC)
        )
        assert await stores.audit_log.log_dates() == ["2025-06-01", DAY]


class TestRowHelpers:
    def test_split_row_escapes(self):
        cells = split_row("| a \\| b | c\\nd | \\\\ |")
        assert cells == ["a | b", "c\nd", "\\"]

    def test_split_non_row(self):
        assert split_row("# heading") is None

    def test_escape_cell(self):
        assert escape_cell("a|b\nc") == "a\\|b\\nc"

    def test_task_id_matches(self):
        assert task_id_matches(TASK_ID, TASK_ID[:8])
        assert task_id_matches(TASK_ID[:8], TASK_ID)
        assert not task_id_matches(TASK_ID, "3f2b9c1e-ffff")
        assert not task_id_matches(SYSTEM_TASK_ID, "SYSTEM12")
