"""
Tests for the SSP corridor engine.

Covers:
- Median and relative variance
- Boundary-inclusive compliance
- Empty peer groups and zero medians
- Batch breach detection with a minimum peer group
"""

from decimal import Decimal

import pytest

from ssp_engines.corridor import (
    PeerEntry,
    check_corridor_compliance,
    compute_median,
    compute_variance,
    find_corridor_breaches,
    unit_price_band,
)


class TestMedianAndVariance:
    def test_median_odd_and_even(self):
        assert compute_median([Decimal("3"), Decimal("1"), Decimal("2")]) == Decimal("2")
        assert compute_median([Decimal("100"), Decimal("200")]) == Decimal("150")

    def test_median_of_nothing(self):
        assert compute_median([]) is None

    def test_variance(self):
        assert compute_variance(Decimal("120"), Decimal("100")) == Decimal("0.2")
        assert compute_variance(Decimal("80"), Decimal("100")) == Decimal("0.2")

    def test_variance_without_usable_median(self):
        assert compute_variance(Decimal("5"), None) is None
        assert compute_variance(Decimal("5"), Decimal("0")) is None

    def test_float_rejected(self):
        with pytest.raises(ValueError):
            compute_median([1.0, 2.0])


class TestCompliance:
    @pytest.mark.parametrize(
        "tolerance, compliant",
        [(Decimal("0.20"), True), (Decimal("0.15"), False)],
    )
    def test_tolerance_boundary(self, tolerance, compliant):
        check = check_corridor_compliance(
            candidate_ssp=Decimal("120"),
            peer_ssps=(Decimal("100"),),
            tolerance_pct=tolerance,
        )
        assert check.compliant is compliant
        assert check.median_ssp == Decimal("100")
        assert check.variance == Decimal("0.2")
        assert check.peer_count == 1

    def test_empty_peer_group_is_compliant(self):
        check = check_corridor_compliance(
            candidate_ssp=Decimal("999"), peer_ssps=(), tolerance_pct=Decimal("0.01"),
        )
        assert check.compliant
        assert check.median_ssp is None
        assert check.variance is None

    def test_zero_median_is_compliant(self):
        check = check_corridor_compliance(
            candidate_ssp=Decimal("10"), peer_ssps=(Decimal("0"),), tolerance_pct=Decimal("0.1"),
        )
        assert check.compliant
        assert check.variance is None


class TestBreaches:
    def _entry(self, entry_id, product_id, unit_ssp, currency="USD"):
        return PeerEntry(entry_id, product_id, currency, Decimal(unit_ssp))

    def test_outlier_reported_against_group_median(self):
        entries = [
            self._entry("e1", "A", "100"),
            self._entry("e2", "A", "100"),
            self._entry("e3", "A", "150"),
        ]
        breaches = find_corridor_breaches(entries=entries, threshold_pct=Decimal("0.2"))

        assert [b.entry_id for b in breaches] == ["e3"]
        assert breaches[0].median_ssp == Decimal("100")
        assert breaches[0].variance_pct == Decimal("0.5")

    def test_groups_split_by_currency_and_small_groups_skipped(self):
        entries = [
            self._entry("e1", "A", "100"),
            self._entry("e2", "A", "500", currency="EUR"),
            self._entry("e3", "B", "10"),
            self._entry("e4", "B", "30"),
        ]
        breaches = find_corridor_breaches(entries=entries, threshold_pct=Decimal("0.2"))

        # B's median is 20; both entries deviate by 50%
        assert [(b.product_id, b.entry_id) for b in breaches] == [("B", "e3"), ("B", "e4")]

    def test_minimum_group_size_is_configurable(self):
        entries = [self._entry("e1", "A", "100"), self._entry("e2", "A", "300")]
        assert find_corridor_breaches(
            entries=entries, threshold_pct=Decimal("0.2"), minimum_peer_group_size=3,
        ) == ()


class TestUnitPriceBand:
    def test_band(self):
        assert unit_price_band(Decimal("100"), Decimal("0.1"), Decimal("0.2")) == (
            Decimal("90.0"), Decimal("120.0"),
        )

    def test_no_bounds(self):
        assert unit_price_band(Decimal("100"), None, None) is None

    def test_one_sided(self):
        low, high = unit_price_band(Decimal("100"), None, Decimal("0.1"))
        assert low == Decimal("-Infinity")
        assert high == Decimal("110.0")
