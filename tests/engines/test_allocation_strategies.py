"""
Tests for the allocation strategies and strategy determination.

Covers:
- Relative-SSP weights and rounding leftovers
- Residual allocation, including the negative remainder case
- AUTO strategy determination and explicit overrides
- Per-entry unit-price bands and peer-median corridor flags
- Malformed input
"""

from datetime import date
from decimal import Decimal

import pytest

from ssp_engines.allocation import (
    AllocationBasis,
    AllocationLineInput,
    AllocationMethod,
    AllocationPolicy,
    FlagReason,
    RelativeSspStrategy,
    ResidualStrategy,
    ResolvedSsp,
    StrategyRequest,
    UnresolvedReason,
    determine_allocation_strategy,
    get_strategy,
)
from ssp_kernel.domain.values import Money, RoundingMode


def _ssp(unit: str, status: str = "APPROVED", entry_id: str = "e", **kwargs) -> ResolvedSsp:
    return ResolvedSsp(
        entry_id=entry_id,
        unit_ssp=Decimal(unit),
        status=status,
        method="OBSERVABLE",
        effective_from=date(2024, 1, 1),
        **kwargs,
    )


def _line(
    line_id: str,
    product_id: str,
    *,
    listed: str = "0",
    qty: str = "1",
    approved: str | None = None,
    working: str | None = None,
    **ssp_kwargs,
) -> AllocationLineInput:
    approved_ssp = _ssp(approved, entry_id=f"{product_id}-a", **ssp_kwargs) if approved else None
    if working is not None:
        working_ssp = _ssp(working, status="DRAFT", entry_id=f"{product_id}-w", **ssp_kwargs)
    else:
        working_ssp = approved_ssp
    return AllocationLineInput(
        line_id=line_id,
        product_id=product_id,
        quantity=Decimal(qty),
        listed_amount=Decimal(listed),
        approved_ssp=approved_ssp,
        working_ssp=working_ssp,
    )


def _usd(amount: str) -> Money:
    return Money.of(amount, "USD")


class TestRelativeSsp:
    def setup_method(self):
        self.strategy = RelativeSspStrategy()
        self.policy = AllocationPolicy()

    def test_splits_by_ssp_times_quantity(self):
        lines = [
            _line("L1", "A", approved="100", qty="1"),
            _line("L2", "B", approved="150", qty="2"),
        ]
        result = self.strategy.allocate(lines=lines, total=_usd("1000.00"), policy=self.policy)

        assert [ln.allocated_amount for ln in result.lines] == [Decimal("250.00"), Decimal("750.00")]
        assert [ln.weight for ln in result.lines] == [Decimal("0.250000000"), Decimal("0.750000000")]
        assert all(ln.basis is AllocationBasis.SSP for ln in result.lines)
        assert result.method is AllocationMethod.RELATIVE_SSP
        assert result.rounding_adjustment == Decimal("0")

    def test_rounding_leftover_goes_to_lowest_index_on_tie(self):
        lines = [_line(f"L{i}", f"P{i}", approved="10") for i in range(3)]
        result = self.strategy.allocate(lines=lines, total=_usd("100.00"), policy=self.policy)

        assert [ln.allocated_amount for ln in result.lines] == [
            Decimal("33.34"), Decimal("33.33"), Decimal("33.33"),
        ]
        assert result.rounding_adjustment == Decimal("0.01")
        assert result.total_allocated == Decimal("100.00")

    def test_rounding_leftover_goes_to_largest_line(self):
        lines = [
            _line("L1", "A", approved="1"),
            _line("L2", "B", approved="2"),
            _line("L3", "C", approved="3"),
        ]
        result = self.strategy.allocate(lines=lines, total=_usd("100.00"), policy=self.policy)

        # 16.666.., 33.333.., 50.00 -> 16.67 + 33.33 + 50.00 = 100.00
        assert [ln.allocated_amount for ln in result.lines] == [
            Decimal("16.67"), Decimal("33.33"), Decimal("50.00"),
        ]

    @pytest.mark.parametrize(
        "rounding, expected",
        [
            (RoundingMode.HALF_UP, [Decimal("0.02"), Decimal("0.03")]),
            (RoundingMode.BANKERS, [Decimal("0.03"), Decimal("0.02")]),
        ],
    )
    def test_rounding_mode_changes_split_but_not_total(self, rounding, expected):
        lines = [_line("L1", "A", approved="1"), _line("L2", "B", approved="1")]
        result = self.strategy.allocate(
            lines=lines, total=_usd("0.05"), policy=AllocationPolicy(rounding=rounding),
        )
        assert [ln.allocated_amount for ln in result.lines] == expected
        assert result.total_allocated == Decimal("0.05")

    def test_zero_decimal_currency(self):
        lines = [_line(f"L{i}", f"P{i}", approved="1") for i in range(3)]
        result = self.strategy.allocate(lines=lines, total=Money.of("1000", "JPY"), policy=self.policy)
        assert [ln.allocated_amount for ln in result.lines] == [
            Decimal("334"), Decimal("333"), Decimal("333"),
        ]

    def test_check_reports_missing_approved_products(self):
        lines = [_line("L1", "A", approved="100"), _line("L2", "B", working="50")]
        check = self.strategy.check(lines, self.policy)
        assert not check.resolvable
        assert check.missing_products == ("B",)
        assert check.reason is UnresolvedReason.MISSING_APPROVED_SSP

    def test_allocate_rejects_unresolvable_lines(self):
        lines = [_line("L1", "A", working="50")]
        with pytest.raises(ValueError, match="cannot price"):
            self.strategy.allocate(lines=lines, total=_usd("10.00"), policy=self.policy)

    def test_zero_weight_is_unresolvable(self):
        lines = [_line("L1", "A", approved="0"), _line("L2", "B", approved="0")]
        check = self.strategy.check(lines, self.policy)
        assert check.reason is UnresolvedReason.ZERO_SSP_WEIGHT

    def test_total_finer_than_minor_unit_is_rejected(self):
        lines = [_line("L1", "A", approved="1")]
        with pytest.raises(ValueError):
            self.strategy.allocate(lines=lines, total=_usd("10.001"), policy=self.policy)

    def test_unit_price_outside_band_is_flagged(self):
        lines = [
            _line("L1", "A", approved="100", corridor_min_pct=Decimal("0.10"), corridor_max_pct=Decimal("0.10")),
            _line("L2", "B", approved="100"),
        ]
        # Each line gets 50.00 against an SSP of 100: A's band is [90, 110].
        result = self.strategy.allocate(lines=lines, total=_usd("100.00"), policy=self.policy)

        assert result.corridor_flag
        assert [f.reason for f in result.corridor_flags] == [FlagReason.UNIT_PRICE_OUT_OF_BAND]
        assert result.lines[0].corridor_flag
        assert not result.lines[1].corridor_flag

    def test_ssp_far_from_peer_median_is_flagged(self):
        lines = [
            _line("L1", "A", approved="130", peer_median=Decimal("100")),
            _line("L2", "B", approved="100", peer_median=Decimal("100")),
        ]
        result = self.strategy.allocate(lines=lines, total=_usd("230.00"), policy=self.policy)

        flags = result.corridor_flags
        assert len(flags) == 1
        assert flags[0].reason is FlagReason.SSP_OUT_OF_CORRIDOR
        assert flags[0].product_id == "A"
        assert flags[0].to_dict()["detail"]["median_ssp"] == "100"


class TestResidual:
    def setup_method(self):
        self.strategy = ResidualStrategy()
        self.policy = AllocationPolicy(residual_eligible_products=frozenset({"SUPPORT"}))

    def test_priced_lines_at_ssp_remainder_to_residual_line(self):
        lines = [
            _line("L1", "A", working="400", listed="500"),
            _line("L2", "SUPPORT", listed="500"),
        ]
        result = self.strategy.allocate(lines=lines, total=_usd("1000.00"), policy=self.policy)

        assert [ln.allocated_amount for ln in result.lines] == [Decimal("400.00"), Decimal("600.00")]
        assert [ln.basis for ln in result.lines] == [AllocationBasis.SSP, AllocationBasis.RESIDUAL]
        assert result.lines[0].ssp_entry_id == "A-w"
        assert result.lines[1].unit_ssp is None
        assert not result.corridor_flag

    def test_remainder_split_across_residual_lines_by_listed_amount(self):
        policy = AllocationPolicy(residual_eligible_products=frozenset({"S1", "S2"}))
        lines = [
            _line("L1", "A", working="100"),
            _line("L2", "S1", listed="300"),
            _line("L3", "S2", listed="100"),
        ]
        result = self.strategy.allocate(lines=lines, total=_usd("500.00"), policy=policy)
        assert [ln.allocated_amount for ln in result.lines] == [
            Decimal("100.00"), Decimal("300.00"), Decimal("100.00"),
        ]

    def test_eligible_product_with_ssp_still_takes_residual(self):
        lines = [
            _line("L1", "A", working="400"),
            _line("L2", "SUPPORT", working="50", listed="100"),
        ]
        result = self.strategy.allocate(lines=lines, total=_usd("1000.00"), policy=self.policy)
        assert result.lines[1].allocated_amount == Decimal("600.00")
        assert result.lines[1].basis is AllocationBasis.RESIDUAL

    def test_negative_remainder_clips_residual_and_flags(self):
        lines = [
            _line("L1", "A", working="800"),
            _line("L2", "B", working="400"),
            _line("L3", "SUPPORT", listed="100"),
        ]
        result = self.strategy.allocate(lines=lines, total=_usd("1000.00"), policy=self.policy)

        assert [ln.allocated_amount for ln in result.lines] == [
            Decimal("666.67"), Decimal("333.33"), Decimal("0"),
        ]
        assert result.total_allocated == Decimal("1000.00")
        assert all(ln.allocated_amount >= 0 for ln in result.lines)
        assert result.corridor_flag
        assert result.corridor_flags[0].reason is FlagReason.NEGATIVE_RESIDUAL
        assert result.lines[2].corridor_flag

    def test_without_residual_lines_total_is_spread_over_priced_lines(self):
        lines = [_line("L1", "A", working="100"), _line("L2", "B", working="300")]
        result = self.strategy.allocate(lines=lines, total=_usd("1000.00"), policy=self.policy)
        assert [ln.allocated_amount for ln in result.lines] == [Decimal("250.00"), Decimal("750.00")]
        assert not result.corridor_flag

    def test_unpriced_non_eligible_line_is_unresolvable(self):
        lines = [_line("L1", "A"), _line("L2", "SUPPORT", listed="10")]
        check = self.strategy.check(lines, self.policy)
        assert not check.resolvable
        assert check.missing_products == ("A",)
        assert check.reason is UnresolvedReason.UNPRICED_LINES


class TestDetermineStrategy:
    def test_all_approved_is_relative_ssp(self):
        decision = determine_allocation_strategy(
            lines=[_line("L1", "A", approved="1"), _line("L2", "B", approved="2")],
            requested=StrategyRequest.AUTO,
            policy=AllocationPolicy(),
        )
        assert decision.method is AllocationMethod.RELATIVE_SSP
        assert decision.is_resolved

    def test_missing_ssp_with_eligible_product_is_residual(self):
        decision = determine_allocation_strategy(
            lines=[_line("L1", "A"), _line("L2", "SUPPORT")],
            requested=StrategyRequest.AUTO,
            policy=AllocationPolicy(residual_allowed=True, residual_eligible_products=frozenset({"SUPPORT"})),
        )
        assert decision.method is AllocationMethod.RESIDUAL
        assert decision.eligible_products_present == ("SUPPORT",)

    def test_residual_not_allowed_is_unresolved(self):
        decision = determine_allocation_strategy(
            lines=[_line("L1", "A"), _line("L2", "SUPPORT")],
            requested=StrategyRequest.AUTO,
            policy=AllocationPolicy(residual_allowed=False, residual_eligible_products=frozenset({"SUPPORT"})),
        )
        assert decision.method is None
        assert decision.reason is UnresolvedReason.RESIDUAL_NOT_ALLOWED
        assert decision.missing_products == ("A", "SUPPORT")

    def test_no_eligible_line_is_unresolved(self):
        decision = determine_allocation_strategy(
            lines=[_line("L1", "A", approved="1"), _line("L2", "B")],
            requested=StrategyRequest.AUTO,
            policy=AllocationPolicy(residual_allowed=True),
        )
        assert not decision.is_resolved
        assert decision.reason is UnresolvedReason.NO_RESIDUAL_ELIGIBLE_LINE
        assert decision.missing_products == ("B",)

    @pytest.mark.parametrize(
        "requested, method",
        [
            (StrategyRequest.RELATIVE_SSP, AllocationMethod.RELATIVE_SSP),
            (StrategyRequest.RESIDUAL, AllocationMethod.RESIDUAL),
        ],
    )
    def test_explicit_request_is_returned_unchanged(self, requested, method):
        decision = determine_allocation_strategy(
            lines=[_line("L1", "A")],
            requested=requested,
            policy=AllocationPolicy(residual_allowed=False),
        )
        assert decision.method is method

    def test_get_strategy(self):
        assert isinstance(get_strategy(AllocationMethod.RESIDUAL), ResidualStrategy)
        assert isinstance(get_strategy("RELATIVE_SSP"), RelativeSspStrategy)


class TestMalformedInput:
    def test_negative_quantity_rejected(self):
        with pytest.raises(ValueError, match="negative quantity"):
            _line("L1", "A", qty="-1", approved="1")

    def test_float_listed_amount_rejected(self):
        with pytest.raises(ValueError):
            AllocationLineInput(line_id="L1", product_id="A", quantity=Decimal("1"), listed_amount=1.5)

    def test_non_finite_amount_rejected(self):
        with pytest.raises(ValueError):
            AllocationLineInput(
                line_id="L1", product_id="A", quantity=Decimal("1"), listed_amount=Decimal("NaN"),
            )
