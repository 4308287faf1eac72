"""ErrorStore 文件实现 -- 需要人工介入的失败报告

报告写入 intake 目录，文件名 ERROR_YYYYMMDD_HHMMSS[_task8].md 便于人工浏览；
报告身份以元数据中的 id 为准，文件名不作为查找依据。
"""

from datetime import UTC, datetime
from pathlib import Path

import structlog
from pydantic import ValidationError
from ulid import ULID

from ..approval_criteria import involves_money_or_identity
from ..config import LockOptions, VaultConfig
from ..document import read_document, write_document
from ..exceptions import (
    DocumentParseError,
    ErrorReportNotFoundError,
    FileLockError,
    InvalidTransitionError,
    PlanValidationError,
    SignalRejectedError,
)
from ..filelock import file_lock
from ..models.enums import (
    DEFAULT_SEVERITY,
    SEVERITY_RANK,
    ErrorType,
    ResolutionStatus,
    Severity,
)
from ..models.error_report import (
    ERROR_FILENAME_PREFIX,
    MIN_SUGGESTED_OPTIONS,
    ErrorReport,
    ErrorReportInput,
    error_filename,
)

log = structlog.get_logger()

FALLBACK_OPTIONS: tuple[str, ...] = (
    "Contact system administrator",
    "Review the error details and resolve manually",
)

DEFAULT_EXCEPTION_OPTIONS: tuple[str, ...] = (
    "Retry the operation after reviewing the error",
    "Reset the task and reprocess it from its last state",
    "Move the task to Done/failed manually",
    "Contact system administrator",
)

RESOLUTION_PLACEHOLDER = "[To be filled by human operator]"

_EXECUTOR_HINTS = ("timeout", "timed out", "executor", "connection", "unreachable")
_FILESYSTEM_HINTS = ("enoent", "eacces", "no such file", "permission denied", "not a directory")
_TRANSITION_HINTS = ("transition",)


def pad_options(options: list[str]) -> list[str]:
    """保证至少两条建议，不足时补充通用兜底项"""
    padded = [o.strip() for o in options if o.strip()]
    for fallback in FALLBACK_OPTIONS:
        if len(padded) >= MIN_SUGGESTED_OPTIONS:
            break
        if fallback not in padded:
            padded.append(fallback)
    return padded


def classify_exception(error: BaseException) -> ErrorType:
    """按异常类型与消息把任意失败归入封闭的错误分类"""
    message = f"{type(error).__name__}: {error}".lower()

    if isinstance(error, InvalidTransitionError | SignalRejectedError) or any(
        hint in message for hint in _TRANSITION_HINTS
    ):
        return ErrorType.STATE_TRANSITION
    # TimeoutError 是 OSError 的子类，先于文件系统判断
    if isinstance(error, TimeoutError | ConnectionError) or any(
        hint in message for hint in _EXECUTOR_HINTS
    ):
        return ErrorType.EXECUTOR
    if isinstance(error, OSError | FileLockError) or any(
        hint in message for hint in _FILESYSTEM_HINTS
    ):
        return ErrorType.FILESYSTEM
    if isinstance(error, DocumentParseError | PlanValidationError | ValidationError):
        return ErrorType.VALIDATION
    return ErrorType.TASK_PROCESSING


def render_report_body(report: ErrorReport) -> str:
    options = "\n".join(f"{i}. {o}" for i, o in enumerate(report.suggested_options, start=1))
    task_line = f"**Task ID:** {report.task_id}\n" if report.task_id else ""
    return (
        f"# Error: {report.error_type}\n\n"
        f"**Severity:** {report.severity}\n"
        f"{task_line}"
        f"**Time:** {report.timestamp.isoformat()}\n\n"
        f"## Context\n\n{report.context or '(none)'}\n\n"
        f"## Technical Details\n\n```\n{report.details}\n```\n\n"
        f"## Suggested Options\n\n{options}\n\n"
        f"## Resolution\n\n{RESOLUTION_PLACEHOLDER}\n"
    )


class FileErrorStore:
    """ErrorStore 的文件实现"""

    def __init__(self, vault: VaultConfig, lock: LockOptions | None = None) -> None:
        self._vault = vault
        self._lock = lock or LockOptions()

    def _unique_path(self, filename: str) -> Path:
        path = self._vault.intake / filename
        counter = 2
        while path.exists():
            path = self._vault.intake / f"{Path(filename).stem}_{counter}.md"
            counter += 1
        return path

    async def create(self, data: ErrorReportInput) -> ErrorReport:
        """创建错误报告

        建议项不足两条时补齐；severity 为空时按错误类型取默认值；
        涉及资金或身份信息时强制为 critical。
        """
        severity = data.severity or DEFAULT_SEVERITY[data.error_type]
        if involves_money_or_identity(f"{data.details}\n{data.context}"):
            severity = Severity.CRITICAL

        report = ErrorReport(
            id=str(ULID()),
            timestamp=datetime.now(UTC),
            task_id=data.task_id,
            error_type=data.error_type,
            severity=severity,
            details=data.details,
            context=data.context,
            suggested_options=pad_options(data.suggested_options),
        )

        path = self._unique_path(error_filename(report.timestamp, report.task_id))
        async with file_lock(path, self._lock):
            write_document(path, report.to_metadata(), render_report_body(report))
        report.path = path

        log.error(
            "error_report_created",
            report_id=report.id,
            task_id=report.task_id,
            error_type=report.error_type,
            severity=report.severity,
        )
        return report

    async def create_from_exception(
        self,
        error: BaseException,
        context: str,
        task_id: str | None = None,
    ) -> ErrorReport:
        return await self.create(
            ErrorReportInput(
                error_type=classify_exception(error),
                details=f"{type(error).__name__}: {error}",
                context=context,
                task_id=task_id,
                suggested_options=list(DEFAULT_EXCEPTION_OPTIONS),
            )
        )

    def _read(self, path: Path) -> ErrorReport:
        doc = read_document(path)
        try:
            report = ErrorReport.model_validate(doc.metadata)
        except ValidationError as e:
            raise DocumentParseError(path, f"错误报告元数据非法: {e.error_count()} 个字段错误") from e
        report.path = path
        return report

    async def list_all(self) -> list[ErrorReport]:
        reports: list[ErrorReport] = []
        if not self._vault.intake.is_dir():
            return reports
        for path in sorted(self._vault.intake.glob(f"{ERROR_FILENAME_PREFIX}*.md")):
            try:
                reports.append(self._read(path))
            except DocumentParseError as e:
                log.warning("malformed_error_report_skipped", path=str(path), reason=e.reason)
        return reports

    async def list_open(self) -> list[ErrorReport]:
        """未处理的报告：critical 在前，同级别内新的在前"""
        reports = [r for r in await self.list_all() if r.resolution_status == ResolutionStatus.OPEN]
        reports.sort(key=lambda r: r.timestamp, reverse=True)
        reports.sort(key=lambda r: SEVERITY_RANK[r.severity])
        return reports

    async def list_for_task(self, task_id: str) -> list[ErrorReport]:
        return [r for r in await self.list_all() if r.task_id == task_id]

    async def get_by_id(self, report_id: str) -> ErrorReport | None:
        for report in await self.list_all():
            if report.id == report_id:
                return report
        return None

    async def resolve(self, report_id: str, notes: str) -> ErrorReport:
        """标记为 resolved 并记录处理说明

        Raises:
            ErrorReportNotFoundError: intake 中没有该 id 的报告
        """
        report = await self.get_by_id(report_id)
        if report is None or report.path is None:
            raise ErrorReportNotFoundError(report_id)

        path = report.path
        async with file_lock(path, self._lock):
            doc = read_document(path)
            current = self._read(path)
            current.resolution_status = ResolutionStatus.RESOLVED
            current.resolved_at = datetime.now(UTC)
            current.resolution_notes = notes
            resolution = f"**Resolved:** {current.resolved_at.isoformat()}\n\n{notes}"
            if RESOLUTION_PLACEHOLDER in doc.body:
                body = doc.body.replace(RESOLUTION_PLACEHOLDER, resolution)
            else:
                body = f"{doc.body.rstrip()}\n\n## Resolution\n\n{resolution}\n"
            write_document(path, current.to_metadata(), body)

        log.info("error_report_resolved", report_id=report_id)
        return self._read(path)
