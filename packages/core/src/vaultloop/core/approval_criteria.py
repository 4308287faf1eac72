"""审批判定 -- 基于关键词的敏感内容识别

五类敏感词表：资金、对外沟通、法律/情感、社交媒体、删除。
命中任意一类即需要人工审批；资金或法律类升级为 elevated。
"""

import re
from enum import StrEnum
from functools import lru_cache

from pydantic import BaseModel

FINANCIAL_KEYWORDS: tuple[str, ...] = (
    "payment", "pay", "transfer", "invoice", "money", "amount", "charge",
    "refund", "reimburse", "bill", "fee", "cost", "purchase", "buy", "sell",
    "transaction", "account", "$", "€", "£", "usd", "eur", "gbp",
)

COMMUNICATION_KEYWORDS: tuple[str, ...] = (
    "email", "send", "reply", "message", "contact", "reach out", "respond",
    "write to", "notify", "inform", "tell",
)

LEGAL_EMOTIONAL_KEYWORDS: tuple[str, ...] = (
    "legal", "contract", "agreement", "sign", "commit", "sorry", "apologize",
    "apology", "condolence", "sympathy", "complaint", "grievance", "dispute",
    "lawsuit", "attorney", "confidential", "sensitive", "private",
)

SOCIAL_MEDIA_KEYWORDS: tuple[str, ...] = (
    "post", "tweet", "publish", "share", "social media", "facebook", "twitter",
    "linkedin", "instagram", "tiktok", "youtube", "blog", "announcement",
)

DELETION_KEYWORDS: tuple[str, ...] = (
    "delete", "remove", "cancel", "terminate", "close account", "unsubscribe",
    "revoke", "destroy", "erase",
)

# 仅用于错误报告严重级别判定
IDENTITY_KEYWORDS: tuple[str, ...] = (
    "identity", "password", "passport", "ssn", "social security", "credential",
    "login", "driver license", "national id", "tax id", "date of birth",
)


class ApprovalLevel(StrEnum):
    AUTO = "auto"
    MANUAL = "manual"
    ELEVATED = "elevated"


class ApprovalCriteria(BaseModel):
    """各类敏感内容的命中情况"""

    financial: bool = False
    communication: bool = False
    legal_emotional: bool = False
    social_media: bool = False
    deletion: bool = False

    @property
    def any(self) -> bool:
        return (
            self.financial
            or self.communication
            or self.legal_emotional
            or self.social_media
            or self.deletion
        )


_REASONS: dict[str, str] = {
    "financial": "Involves financial transactions",
    "communication": "Requires sending communications",
    "legal_emotional": "Contains legal or emotional content",
    "social_media": "Involves social media posting",
    "deletion": "Involves deletion or cancellation",
}


@lru_cache(maxsize=None)
def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    if not keyword[0].isalnum():
        # 货币符号等直接按子串匹配
        return re.compile(re.escape(keyword))
    return re.compile(rf"(?<!\w){re.escape(keyword)}(?:s|es|ed|ing)?(?!\w)", re.IGNORECASE)


def contains_keyword(text: str, keywords: tuple[str, ...]) -> bool:
    return any(_keyword_pattern(kw).search(text) for kw in keywords)


def analyze_criteria(title: str, content: str = "") -> ApprovalCriteria:
    text = f"{title}\n{content}"
    return ApprovalCriteria(
        financial=contains_keyword(text, FINANCIAL_KEYWORDS),
        communication=contains_keyword(text, COMMUNICATION_KEYWORDS),
        legal_emotional=contains_keyword(text, LEGAL_EMOTIONAL_KEYWORDS),
        social_media=contains_keyword(text, SOCIAL_MEDIA_KEYWORDS),
        deletion=contains_keyword(text, DELETION_KEYWORDS),
    )


def requires_approval(title: str, content: str = "") -> bool:
    return analyze_criteria(title, content).any


def approval_reasons(title: str, content: str = "") -> list[str]:
    """命中的审批原因（人类可读）"""
    criteria = analyze_criteria(title, content)
    return [reason for field, reason in _REASONS.items() if getattr(criteria, field)]


def approval_level(title: str, content: str = "") -> ApprovalLevel:
    criteria = analyze_criteria(title, content)
    if criteria.financial or criteria.legal_emotional:
        return ApprovalLevel.ELEVATED
    if criteria.any:
        return ApprovalLevel.MANUAL
    return ApprovalLevel.AUTO


def involves_money_or_identity(text: str) -> bool:
    """错误报告是否涉及资金或身份信息"""
    return contains_keyword(text, FINANCIAL_KEYWORDS) or contains_keyword(
        text, IDENTITY_KEYWORDS
    )
