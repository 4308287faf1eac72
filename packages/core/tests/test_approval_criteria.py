"""审批判定单元测试"""

import pytest
from vaultloop.core.approval_criteria import (
    ApprovalLevel,
    analyze_criteria,
    approval_level,
    approval_reasons,
    contains_keyword,
    involves_money_or_identity,
    requires_approval,
)


class TestKeywordMatching:
    def test_word_boundary(self):
        assert contains_keyword("please pay the bill", ("pay",))
        assert not contains_keyword("the paycheck arrived", ("pay",))

    def test_inflections(self):
        assert contains_keyword("Payments overdue", ("payment",))
        assert contains_keyword("I emailed them", ("email",))

    def test_case_insensitive(self):
        assert contains_keyword("URGENT INVOICE", ("invoice",))

    def test_symbol_substring(self):
        assert contains_keyword("costs $40", ("$",))


class TestAnalyzeCriteria:
    @pytest.mark.parametrize(
        "text,field",
        [
            ("Send payment to vendor", "financial"),
            ("Reply to the landlord", "communication"),
            ("Review the contract", "legal_emotional"),
            ("Tweet about the launch", "social_media"),
            ("Delete old backups", "deletion"),
        ],
    )
    def test_each_vocabulary(self, text: str, field: str):
        criteria = analyze_criteria(text)
        assert getattr(criteria, field) is True
        assert criteria.any is True

    def test_neutral_content(self):
        criteria = analyze_criteria("Organize the weekly reading list", "Sort by author")
        assert criteria.any is False
        assert requires_approval("Organize the weekly reading list") is False

    def test_content_considered(self):
        assert requires_approval("Quarterly review", "Pay the invoice by Friday") is True


class TestReasonsAndLevel:
    def test_reasons(self):
        reasons = approval_reasons("Pay invoice and email the receipt")
        assert "Involves financial transactions" in reasons
        assert "Requires sending communications" in reasons

    def test_levels(self):
        assert approval_level("Organize the weekly reading list") == ApprovalLevel.AUTO
        assert approval_level("Delete old backups") == ApprovalLevel.MANUAL
        assert approval_level("Pay the invoice") == ApprovalLevel.ELEVATED
        assert approval_level("Review the contract") == ApprovalLevel.ELEVATED

    def test_money_or_identity(self):
        assert involves_money_or_identity("refund failed")
        assert involves_money_or_identity("password reset failed")
        assert not involves_money_or_identity("disk quota exceeded")
