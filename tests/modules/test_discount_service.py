"""
Tests for DiscountRuleService.

Covers:
- Rule upsert with kind-specific validation and versioning
- Standalone application with DiscountApplied recording
- Usage caps against recorded history
- Append-only application log
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from ssp_engines.discounts import DiscountKind, DiscountLine, PropParams, SkipReason
from ssp_kernel.exceptions import (
    DiscountRuleNotFoundError,
    DuplicateAllocationError,
    InvalidDiscountParamsError,
)
from tests.conftest import TEST_ACTOR_ID, TEST_COMPANY


def _rule(discount_service, code="TEN", kind="PROP", params=None, **kwargs):
    return discount_service.upsert_discount_rule(
        company_id=kwargs.pop("company_id", TEST_COMPANY),
        code=code,
        kind=kind,
        params=params if params is not None else {"pct": "0.10"},
        effective_from=kwargs.pop("effective_from", date(2024, 1, 1)),
        actor_id=TEST_ACTOR_ID,
        **kwargs,
    )


def _apply(discount_service, invoice_id="INV-1", run_id="RUN-1", gross="1000.00", **kwargs):
    return discount_service.apply_discount_rules(
        company_id=TEST_COMPANY,
        invoice_id=invoice_id,
        run_id=run_id,
        invoice_date=kwargs.pop("invoice_date", date(2024, 3, 1)),
        currency="USD",
        gross_total=Decimal(gross),
        actor_id=TEST_ACTOR_ID,
        **kwargs,
    )


class TestRuleManagement:
    def test_upsert_parses_params(self, discount_service):
        rule = _rule(discount_service)

        assert rule.params == PropParams(pct=Decimal("0.10"))
        stored = discount_service.get_discount_rule(rule.id)
        assert stored.params.kind is DiscountKind.PROP
        assert stored.params.pct == Decimal("0.10")

    def test_typed_params_accepted(self, discount_service):
        rule = _rule(discount_service, params=PropParams(pct=Decimal("0.05")))
        assert rule.params.pct == Decimal("0.05")

    def test_typed_params_must_match_kind(self, discount_service):
        with pytest.raises(InvalidDiscountParamsError):
            _rule(discount_service, kind="TIERED", params=PropParams(pct=Decimal("0.05")))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"params": {"pct": "2"}},
            {"kind": "PARTNER", "params": {"pct": "0.1"}},
            {"code": " "},
            {"priority": "high"},
            {"max_usage_count": 0},
            {"max_usage_amount": Decimal("-5")},
            {"effective_to": date(2023, 1, 1)},
        ],
    )
    def test_invalid_rule_rejected(self, discount_service, overrides):
        with pytest.raises(InvalidDiscountParamsError):
            _rule(discount_service, **overrides)
        assert discount_service.query_discount_rules(TEST_COMPANY) == ()

    def test_new_version_end_dates_previous(self, discount_service):
        first = _rule(discount_service)
        second = _rule(discount_service, params={"pct": "0.15"}, effective_from=date(2024, 6, 1))

        assert discount_service.get_discount_rule(first.id).effective_to == date(2024, 5, 31)
        effective = discount_service.query_discount_rules(TEST_COMPANY, as_of=date(2024, 6, 1))
        assert [r.id for r in effective] == [second.id]

    def test_same_start_updates_in_place(self, discount_service):
        first = _rule(discount_service)
        second = _rule(discount_service, params={"pct": "0.20"}, priority=5)

        assert second.id == first.id
        stored = discount_service.get_discount_rule(first.id)
        assert stored.params.pct == Decimal("0.20")
        assert stored.priority == 5

    def test_query_filters(self, discount_service):
        _rule(discount_service, code="A", priority=20)
        _rule(discount_service, code="B", kind="PARTNER", params={"pct": "0.1", "partner_customers": ["C1"]}, priority=10)

        assert [r.code for r in discount_service.query_discount_rules(TEST_COMPANY)] == ["B", "A"]
        assert [r.code for r in discount_service.query_discount_rules(TEST_COMPANY, kind="PARTNER")] == ["B"]
        assert [r.code for r in discount_service.query_discount_rules(TEST_COMPANY, code="A")] == ["A"]

    def test_deactivate(self, discount_service):
        rule = _rule(discount_service)
        discount_service.set_discount_rule_active(rule.id, False, TEST_ACTOR_ID)
        assert discount_service.query_discount_rules(TEST_COMPANY, active=True) == ()

    def test_unknown_rule(self, discount_service):
        with pytest.raises(DiscountRuleNotFoundError):
            discount_service.get_discount_rule(uuid4())


class TestApplication:
    def test_applied_rules_recorded_once(self, discount_service):
        rule = _rule(discount_service)
        outcome = _apply(discount_service)

        assert outcome.result.total_discount == Decimal("100.00")
        assert outcome.result.net_total == Decimal("900.00")
        records = discount_service.get_discount_applications(TEST_COMPANY, "INV-1")
        assert len(records) == 1
        assert records[0].rule_id == rule.id
        assert records[0].computed_amount == Decimal("100.00")
        assert records[0].allocation_audit_id is None
        assert records[0].detail["total_after"] == "900.00"

    def test_repeat_run_rejected(self, discount_service):
        _rule(discount_service)
        _apply(discount_service)
        with pytest.raises(DuplicateAllocationError):
            _apply(discount_service)
        assert len(discount_service.get_discount_applications(TEST_COMPANY, "INV-1")) == 1

    def test_stacking_order_by_priority(self, discount_service):
        _rule(discount_service, code="LATE", priority=50)
        _rule(discount_service, code="EARLY", params={"pct": "0.50"}, priority=1)
        outcome = _apply(discount_service)

        records = discount_service.get_discount_applications(TEST_COMPANY, "INV-1", "RUN-1")
        assert [(r.rule_code, r.sequence) for r in records] == [("EARLY", 1), ("LATE", 2)]
        assert outcome.result.net_total == Decimal("450.00")

    def test_usage_count_cap(self, discount_service):
        rule = _rule(discount_service, max_usage_count=1)
        _apply(discount_service, invoice_id="INV-1")
        second = _apply(discount_service, invoice_id="INV-2")

        assert second.records == ()
        assert second.result.skipped[0].reason is SkipReason.USAGE_COUNT_EXHAUSTED
        usage = discount_service.get_rule_usage(rule.id)
        assert usage.application_count == 1
        assert usage.applied_amount == Decimal("100.00")

    def test_usage_amount_cap(self, discount_service):
        _rule(discount_service, max_usage_amount=Decimal("150.00"))
        _apply(discount_service, invoice_id="INV-1")
        second = _apply(discount_service, invoice_id="INV-2")

        assert second.result.applications[0].computed_amount == Decimal("50.00")
        assert second.result.applications[0].capped

    def test_partner_rule_uses_customer(self, discount_service):
        _rule(discount_service, code="P", kind="PARTNER", params={"pct": "0.2", "partner_customers": ["VIP"]})
        assert _apply(discount_service, invoice_id="INV-1", customer_id="VIP").result.total_discount == Decimal("200.00")
        assert _apply(discount_service, invoice_id="INV-2", customer_id="OTHER").result.total_discount == Decimal("0")

    def test_residual_rule_uses_lines(self, discount_service):
        _rule(discount_service, code="R", kind="RESIDUAL", params={"pct": "0.5", "residual_products": ["SUPPORT"]})
        outcome = _apply(
            discount_service,
            lines=[DiscountLine("LICENSE", Decimal("800.00")), DiscountLine("SUPPORT", Decimal("200.00"))],
        )
        assert outcome.result.total_discount == Decimal("100.00")

    def test_policy_rounding_is_used(self, discount_service, ssp_policy):
        ssp_policy(rounding="BANKERS")
        _rule(discount_service, params={"pct": "0.5"})
        # 0.5 * 0.05 = 0.025 -> 0.02 under banker's rounding
        assert _apply(discount_service, gross="0.05").result.total_discount == Decimal("0.02")

    def test_rules_not_yet_effective_are_ignored(self, discount_service):
        _rule(discount_service, effective_from=date(2024, 6, 1))
        assert _apply(discount_service).records == ()

    def test_application_log_event(self, discount_service, captured_logs):
        _rule(discount_service)
        _apply(discount_service)

        events = [r for r in captured_logs() if r["message"] == "discount_rules_applied"]
        assert events[-1]["applied_count"] == 1
        assert events[-1]["total_discount"] == "100.00"
