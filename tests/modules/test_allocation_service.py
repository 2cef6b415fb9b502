"""
Tests for AllocationService.

Covers:
- End-to-end relative SSP and residual allocation
- Discounts applied before allocation and recorded against the audit
- Bundle expansion into component lines
- Duplicate runs and unresolved pricing (no audit written)
- Audit queries and the audit summary
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from ssp_engines.allocation import AllocationBasis, AllocationMethod
from ssp_kernel.exceptions import AllocationAuditNotFoundError, UnresolvedPricingError
from ssp_modules.allocation.models import AllocationStatus
from ssp_modules.allocation.orm import UnresolvedPricingModel
from tests.conftest import TEST_ACTOR_ID, TEST_COMPANY


def _allocate(allocation_service, invoice, run_id="RUN-1", **kwargs):
    return allocation_service.allocate_invoice(
        invoice, run_id=run_id, actor_id=TEST_ACTOR_ID, **kwargs
    )


@pytest.fixture
def priced_catalog(ssp_policy, approved_ssp):
    ssp_policy()
    approved_ssp("A", "100.00")
    approved_ssp("B", "300.00")


class TestRelativeSspAllocation:
    def test_allocates_by_ssp_weight(self, allocation_service, priced_catalog, make_invoice):
        invoice = make_invoice([("A", "600.00"), ("B", "400.00")])
        outcome = _allocate(allocation_service, invoice)

        assert outcome.status is AllocationStatus.ALLOCATED
        assert outcome.is_allocated
        audit = outcome.audit
        assert audit.method is AllocationMethod.RELATIVE_SSP
        assert audit.allocated_amounts == {"L1": Decimal("250.00"), "L2": Decimal("750.00")}
        assert audit.total_allocated_amount == audit.total_invoice_amount == Decimal("1000.00")
        assert audit.total_discount == Decimal("0")
        assert not audit.corridor_flag

    def test_audit_persisted_with_lines(self, allocation_service, priced_catalog, make_invoice):
        outcome = _allocate(allocation_service, make_invoice([("A", "600.00"), ("B", "400.00")]))

        stored = allocation_service.get_allocation_audit(TEST_COMPANY, "INV-1", "RUN-1")
        assert stored.id == outcome.audit_id
        assert [line.line_id for line in stored.lines] == ["L1", "L2"]
        assert [line.allocated_amount for line in stored.lines] == [Decimal("250"), Decimal("750")]
        assert all(line.basis is AllocationBasis.SSP for line in stored.lines)
        assert stored.inputs["invoice"]["total_amount"] == "1000.00"
        assert stored.inputs["policy"]["rounding"] == "HALF_UP"
        assert stored.results["method"] == "RELATIVE_SSP"

    def test_line_records_reference_catalog_entries(
        self, allocation_service, ssp_policy, approved_ssp, make_invoice
    ):
        ssp_policy()
        entry = approved_ssp("A", "100.00")
        outcome = _allocate(allocation_service, make_invoice([("A", "100.00")]))

        line = outcome.lines[0]
        assert line.ssp_entry_id == str(entry.id)
        assert line.unit_ssp == Decimal("100.00")
        assert line.weight == Decimal("1")

    def test_explicit_relative_request_needs_approved_ssp(
        self, allocation_service, ssp_policy, approved_ssp, make_invoice
    ):
        ssp_policy(residual_eligible_products=["B"])
        approved_ssp("A", "100.00")
        outcome = _allocate(
            allocation_service,
            make_invoice([("A", "500.00"), ("B", "500.00")]),
            requested_strategy="RELATIVE_SSP",
        )

        assert outcome.status is AllocationStatus.UNRESOLVED_PRICING
        assert outcome.unresolved.reason == "MISSING_APPROVED_SSP"
        assert outcome.unresolved.missing_products == ("B",)

    def test_corridor_band_flags_allocation(
        self, allocation_service, ssp_policy, approved_ssp, make_invoice, captured_logs
    ):
        ssp_policy()
        approved_ssp("A", "100.00", corridor_min_pct=Decimal("0.10"), corridor_max_pct=Decimal("0.10"))
        approved_ssp("B", "300.00")
        outcome = _allocate(allocation_service, make_invoice([("A", "600.00"), ("B", "400.00")]))

        assert outcome.audit.corridor_flag
        assert outcome.audit.corridor_flags[0]["reason"] == "UNIT_PRICE_OUT_OF_BAND"
        assert outcome.lines[0].corridor_flag
        assert not outcome.lines[1].corridor_flag
        assert any(r["message"] == "allocation_flagged" for r in captured_logs())


class TestDiscounts:
    def test_discount_reduces_allocated_total(
        self, allocation_service, discount_service, priced_catalog, make_invoice
    ):
        discount_service.upsert_discount_rule(
            company_id=TEST_COMPANY,
            code="TEN",
            kind="PROP",
            params={"pct": "0.10"},
            effective_from=date(2024, 1, 1),
            actor_id=TEST_ACTOR_ID,
        )
        outcome = _allocate(allocation_service, make_invoice([("A", "600.00"), ("B", "400.00")]))

        audit = outcome.audit
        assert audit.gross_invoice_amount == Decimal("1000.00")
        assert audit.total_discount == Decimal("100.00")
        assert audit.total_invoice_amount == Decimal("900.00")
        assert audit.allocated_amounts == {"L1": Decimal("225.00"), "L2": Decimal("675.00")}

        records = discount_service.get_discount_applications(TEST_COMPANY, "INV-1", "RUN-1")
        assert len(records) == 1
        assert records[0].allocation_audit_id == audit.id
        assert records[0].computed_amount == Decimal("100.00")


class TestResidualAllocation:
    def test_residual_line_takes_remainder(
        self, allocation_service, ssp_policy, approved_ssp, make_invoice
    ):
        ssp_policy(residual_eligible_products=["SUPPORT"])
        approved_ssp("LICENSE", "400.00")
        outcome = _allocate(
            allocation_service, make_invoice([("LICENSE", "500.00"), ("SUPPORT", "500.00")])
        )

        assert outcome.audit.method is AllocationMethod.RESIDUAL
        assert outcome.audit.allocated_amounts == {
            "L1": Decimal("400.00"),
            "L2": Decimal("600.00"),
        }
        assert [line.basis for line in outcome.lines] == [
            AllocationBasis.SSP,
            AllocationBasis.RESIDUAL,
        ]

    def test_residual_prices_from_draft_entry(
        self, allocation_service, catalog_service, ssp_policy, make_invoice
    ):
        ssp_policy(residual_eligible_products=["SUPPORT"])
        catalog_service.upsert_ssp_entry(
            company_id=TEST_COMPANY,
            product_id="LICENSE",
            currency="USD",
            unit_ssp=Decimal("300.00"),
            method="BENCHMARK",
            effective_from=date(2024, 1, 1),
            actor_id=TEST_ACTOR_ID,
        )
        outcome = _allocate(
            allocation_service, make_invoice([("LICENSE", "500.00"), ("SUPPORT", "500.00")])
        )

        assert outcome.audit.allocated_amounts["L1"] == Decimal("300.00")
        assert outcome.audit.allocated_amounts["L2"] == Decimal("700.00")

    def test_residual_not_allowed_is_unresolved(
        self, allocation_service, ssp_policy, approved_ssp, make_invoice, captured_logs
    ):
        ssp_policy(residual_allowed=False, residual_eligible_products=["SUPPORT"])
        approved_ssp("LICENSE", "400.00")
        outcome = _allocate(
            allocation_service, make_invoice([("LICENSE", "500.00"), ("SUPPORT", "500.00")])
        )

        assert outcome.status is AllocationStatus.UNRESOLVED_PRICING
        assert outcome.audit is None
        assert outcome.unresolved.reason == "RESIDUAL_NOT_ALLOWED"
        assert outcome.unresolved.missing_products == ("SUPPORT",)
        assert outcome.unresolved.residual_allowed is False
        events = [r for r in captured_logs() if r["message"] == "allocation_unresolved"]
        assert events[-1]["invoice_id"] == "INV-1"


class TestBundles:
    def test_bundle_line_expands_into_components(
        self, allocation_service, bundle_service, ssp_policy, approved_ssp, make_invoice
    ):
        ssp_policy()
        bundle_service.upsert_bundle(
            company_id=TEST_COMPANY,
            sku="SUITE",
            name="Suite",
            effective_from=date(2024, 1, 1),
            components=[
                {"product_id": "LICENSE", "weight_pct": "0.6"},
                {"product_id": "SUPPORT", "weight_pct": "0.4"},
            ],
            actor_id=TEST_ACTOR_ID,
        )
        approved_ssp("LICENSE", "800.00")
        approved_ssp("SUPPORT", "200.00")
        outcome = _allocate(allocation_service, make_invoice([("SUITE", "1000.00")]))

        assert outcome.audit.allocated_amounts == {
            "L1:LICENSE": Decimal("800.00"),
            "L1:SUPPORT": Decimal("200.00"),
        }
        assert [line.source_line_id for line in outcome.lines] == ["L1", "L1"]
        assert [line.listed_amount for line in outcome.lines] == [
            Decimal("600.00"),
            Decimal("400.00"),
        ]


class TestNothingWritten:
    def test_duplicate_run_returns_existing_audit(
        self, allocation_service, priced_catalog, make_invoice, captured_logs
    ):
        invoice = make_invoice([("A", "600.00"), ("B", "400.00")])
        first = _allocate(allocation_service, invoice)
        second = _allocate(allocation_service, invoice)

        assert second.status is AllocationStatus.DUPLICATE
        assert second.existing_audit_id == first.audit.id
        assert second.audit_id == first.audit.id
        assert second.lines == ()
        assert len(allocation_service.list_allocation_audits(TEST_COMPANY, "INV-1")) == 1
        assert any(r["message"] == "allocation_duplicate_rejected" for r in captured_logs())

    def test_new_run_is_a_new_audit(self, allocation_service, priced_catalog, make_invoice):
        invoice = make_invoice([("A", "600.00"), ("B", "400.00")])
        _allocate(allocation_service, invoice, run_id="RUN-1")
        _allocate(allocation_service, invoice, run_id="RUN-2")

        audits = allocation_service.list_allocation_audits(TEST_COMPANY, "INV-1")
        assert {a.run_id for a in audits} == {"RUN-1", "RUN-2"}

    def test_missing_policy_is_unresolved(self, allocation_service, approved_ssp, make_invoice):
        approved_ssp("A", "100.00")
        outcome = _allocate(allocation_service, make_invoice([("A", "100.00")]))

        assert outcome.status is AllocationStatus.UNRESOLVED_PRICING
        assert outcome.unresolved.reason == "MISSING_POLICY"
        assert allocation_service.list_allocation_audits(TEST_COMPANY, "INV-1") == ()

    def test_unresolved_writes_no_discounts(
        self, allocation_service, discount_service, ssp_policy, make_invoice
    ):
        ssp_policy(residual_allowed=False)
        discount_service.upsert_discount_rule(
            company_id=TEST_COMPANY,
            code="TEN",
            kind="PROP",
            params={"pct": "0.10"},
            effective_from=date(2024, 1, 1),
            actor_id=TEST_ACTOR_ID,
        )
        outcome = _allocate(allocation_service, make_invoice([("UNKNOWN", "100.00")]))

        assert outcome.status is AllocationStatus.UNRESOLVED_PRICING
        assert discount_service.get_discount_applications(TEST_COMPANY, "INV-1") == ()

    def test_discounts_recorded_for_run_are_a_duplicate(
        self, allocation_service, discount_service, priced_catalog, make_invoice, captured_logs
    ):
        discount_service.upsert_discount_rule(
            company_id=TEST_COMPANY,
            code="TEN",
            kind="PROP",
            params={"pct": "0.10"},
            effective_from=date(2024, 1, 1),
            actor_id=TEST_ACTOR_ID,
        )
        discount_service.apply_discount_rules(
            company_id=TEST_COMPANY,
            invoice_id="INV-1",
            run_id="RUN-1",
            invoice_date=date(2024, 3, 1),
            currency="USD",
            gross_total=Decimal("1000.00"),
            actor_id=TEST_ACTOR_ID,
        )

        outcome = _allocate(allocation_service, make_invoice([("A", "600.00"), ("B", "400.00")]))

        assert outcome.status is AllocationStatus.DUPLICATE
        assert outcome.existing_audit_id is None
        assert allocation_service.list_allocation_audits(TEST_COMPANY, "INV-1") == ()
        assert len(discount_service.get_discount_applications(TEST_COMPANY, "INV-1", "RUN-1")) == 1
        rejected = [r for r in captured_logs() if r["message"] == "allocation_duplicate_rejected"]
        assert rejected[-1]["discounts_already_recorded"] is True

        other_run = _allocate(
            allocation_service, make_invoice([("A", "600.00"), ("B", "400.00")]), run_id="RUN-2",
        )
        assert other_run.status is AllocationStatus.ALLOCATED

    def test_unresolved_records_blocking_products(
        self, allocation_service, session, ssp_policy, approved_ssp, make_invoice
    ):
        ssp_policy(residual_allowed=False)
        approved_ssp("LICENSE", "400.00")
        invoice = make_invoice([("LICENSE", "500.00"), ("WIDGET", "100.00")])

        first = _allocate(allocation_service, invoice)
        second = _allocate(allocation_service, invoice)

        assert first.status is second.status is AllocationStatus.UNRESOLVED_PRICING
        assert first.unresolved.missing_products == ("WIDGET",)
        rows = session.scalars(
            select(UnresolvedPricingModel).where(UnresolvedPricingModel.invoice_id == "INV-1")
        ).all()
        assert [(r.product_id, r.run_id, r.reason) for r in rows] == [
            ("WIDGET", "RUN-1", first.unresolved.reason)
        ]
        assert rows[0].invoice_date == date(2024, 3, 1)

    def test_ssp_not_yet_effective(self, allocation_service, ssp_policy, approved_ssp, make_invoice):
        ssp_policy(residual_allowed=False)
        approved_ssp("A", "100.00", effective_from=date(2024, 6, 1))
        outcome = _allocate(allocation_service, make_invoice([("A", "100.00")]))

        assert outcome.status is AllocationStatus.UNRESOLVED_PRICING
        assert outcome.unresolved.as_of_date == date(2024, 3, 1)


class TestStrategyDetermination:
    def test_relative_when_all_approved(self, allocation_service, priced_catalog, make_invoice):
        invoice = make_invoice([("A", "600.00"), ("B", "400.00")])
        assert allocation_service.determine_allocation_strategy(invoice) is AllocationMethod.RELATIVE_SSP

    def test_residual_when_eligible_line_present(
        self, allocation_service, ssp_policy, approved_ssp, make_invoice
    ):
        ssp_policy(residual_eligible_products=["SUPPORT"])
        approved_ssp("LICENSE", "400.00")
        invoice = make_invoice([("LICENSE", "500.00"), ("SUPPORT", "500.00")])
        assert allocation_service.determine_allocation_strategy(invoice) is AllocationMethod.RESIDUAL

    def test_no_eligible_line(self, allocation_service, ssp_policy, make_invoice):
        ssp_policy()
        with pytest.raises(UnresolvedPricingError) as exc_info:
            allocation_service.determine_allocation_strategy(make_invoice([("X", "10.00")]))
        assert exc_info.value.reason == "NO_RESIDUAL_ELIGIBLE_LINE"

    def test_missing_policy(self, allocation_service, make_invoice):
        with pytest.raises(UnresolvedPricingError) as exc_info:
            allocation_service.determine_allocation_strategy(make_invoice([("X", "10.00")]))
        assert exc_info.value.reason == "MISSING_POLICY"

    def test_determination_writes_nothing(self, allocation_service, priced_catalog, make_invoice):
        allocation_service.determine_allocation_strategy(make_invoice([("A", "100.00")]))
        assert allocation_service.list_allocation_audits(TEST_COMPANY, "INV-1") == ()


class TestAuditQueries:
    def test_unknown_audit(self, allocation_service):
        with pytest.raises(AllocationAuditNotFoundError):
            allocation_service.get_allocation_audit(TEST_COMPANY, "NOPE", "RUN-1")

    def test_summary(self, allocation_service, priced_catalog, make_invoice):
        _allocate(allocation_service, make_invoice([("A", "600.00"), ("B", "400.00")]))
        _allocate(
            allocation_service,
            make_invoice([("A", "100.00")], invoice_id="INV-2", invoice_date=date(2024, 4, 15)),
        )

        summary = allocation_service.get_allocation_audit_summary(TEST_COMPANY)
        assert summary.audit_count == 2
        assert summary.flagged_count == 0
        assert summary.method_breakdown == {"RELATIVE_SSP": 2}
        assert summary.total_allocated == {"USD": Decimal("1100.00")}

        april = allocation_service.get_allocation_audit_summary(
            TEST_COMPANY, from_date=date(2024, 4, 1), to_date=date(2024, 4, 30)
        )
        assert april.audit_count == 1
        assert april.total_allocated == {"USD": Decimal("100.00")}

    def test_empty_summary(self, allocation_service):
        summary = allocation_service.get_allocation_audit_summary(TEST_COMPANY)
        assert summary.audit_count == 0
        assert summary.average_processing_time_ms == Decimal("0")
        assert summary.total_allocated == {}
