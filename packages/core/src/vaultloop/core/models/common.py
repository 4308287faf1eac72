"""共享字段类型"""

from datetime import UTC, datetime
from typing import Annotated

from pydantic import AfterValidator


def ensure_utc(value: datetime) -> datetime:
    """不带时区的时间按 UTC 解释（人工编辑的 frontmatter 常见）"""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
