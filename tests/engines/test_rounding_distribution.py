"""
Tests for proportional distribution in currency minor units.
"""

from decimal import Decimal

import pytest

from ssp_engines.rounding import distribute_proportionally, largest_index, require_minor_units
from ssp_kernel.domain.values import Currency, RoundingMode

USD = Currency("USD")


def test_exact_split_has_no_adjustment():
    result = distribute_proportionally(
        Decimal("100.00"), [Decimal("1"), Decimal("3")], USD, RoundingMode.HALF_UP,
    )
    assert result.amounts == (Decimal("25.00"), Decimal("75.00"))
    assert result.rounding_adjustment == 0
    assert result.adjusted_index is None


def test_leftover_lands_on_largest_share():
    result = distribute_proportionally(
        Decimal("10.00"), [Decimal("1"), Decimal("1"), Decimal("2")], USD, RoundingMode.HALF_UP,
    )
    # 2.50 / 2.50 / 5.00: exact
    assert sum(result.amounts) == Decimal("10.00")

    result = distribute_proportionally(
        Decimal("1.00"), [Decimal("1"), Decimal("1"), Decimal("1")], USD, RoundingMode.HALF_UP,
    )
    assert result.amounts == (Decimal("0.34"), Decimal("0.33"), Decimal("0.33"))
    assert result.adjusted_index == 0


def test_negative_leftover():
    result = distribute_proportionally(
        Decimal("0.05"), [Decimal("1"), Decimal("1")], USD, RoundingMode.HALF_UP,
    )
    assert result.rounding_adjustment == Decimal("-0.01")
    assert result.amounts == (Decimal("0.02"), Decimal("0.03"))


def test_zero_bases_split_equally():
    result = distribute_proportionally(
        Decimal("9.00"), [Decimal("0"), Decimal("0"), Decimal("0")], USD, RoundingMode.HALF_UP,
    )
    assert result.amounts == (Decimal("3.00"), Decimal("3.00"), Decimal("3.00"))


def test_empty_bases_rejected():
    with pytest.raises(ValueError):
        distribute_proportionally(Decimal("1.00"), [], USD, RoundingMode.HALF_UP)


def test_largest_index_prefers_lowest_on_tie():
    assert largest_index([Decimal("5"), Decimal("7"), Decimal("7")]) == 1


def test_require_minor_units():
    require_minor_units(Decimal("1.50"), USD)
    with pytest.raises(ValueError, match="minor units"):
        require_minor_units(Decimal("1.505"), USD)
    with pytest.raises(ValueError):
        require_minor_units(Decimal("1.5"), Currency("JPY"))
