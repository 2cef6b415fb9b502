"""
Tests for BundleService.

Covers:
- Weight-sum enforcement for ACTIVE bundles
- Versioning by effective_from with predecessor end-dating
- Status changes and re-validation
- Effective and by-product lookups
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from ssp_kernel.exceptions import (
    BundleNotFoundError,
    InvalidBundleError,
    InvalidStatusTransitionError,
    UnbalancedBundleError,
)
from ssp_modules.bundles.models import BundleStatus
from tests.conftest import TEST_ACTOR_ID, TEST_COMPANY

SUITE = [
    {"product_id": "LICENSE", "weight_pct": "0.6"},
    {"product_id": "SUPPORT", "weight_pct": "0.4"},
]


def _bundle(bundle_service, components=SUITE, **kwargs):
    return bundle_service.upsert_bundle(
        company_id=kwargs.pop("company_id", TEST_COMPANY),
        sku=kwargs.pop("sku", "SUITE"),
        name=kwargs.pop("name", "Suite"),
        effective_from=kwargs.pop("effective_from", date(2024, 1, 1)),
        components=components,
        actor_id=TEST_ACTOR_ID,
        **kwargs,
    )


class TestUpsert:
    def test_balanced_bundle_saved(self, bundle_service):
        bundle = _bundle(bundle_service)

        assert bundle.status is BundleStatus.ACTIVE
        assert bundle.product_ids == ("LICENSE", "SUPPORT")
        assert bundle.weight_total == Decimal("1.0")
        assert [c.sequence for c in bundle.components] == [0, 1]

    def test_unbalanced_active_bundle_rejected(self, bundle_service, captured_logs):
        with pytest.raises(UnbalancedBundleError):
            _bundle(
                bundle_service,
                components=[
                    {"product_id": "LICENSE", "weight_pct": "0.6"},
                    {"product_id": "SUPPORT", "weight_pct": "0.5"},
                ],
            )
        assert any(r["message"] == "bundle_weights_unbalanced" for r in captured_logs())
        assert bundle_service.query_bundles(TEST_COMPANY) == ()

    def test_unbalanced_inactive_bundle_allowed(self, bundle_service):
        bundle = _bundle(
            bundle_service,
            components=[{"product_id": "LICENSE", "weight_pct": "0.5"}],
            status="INACTIVE",
        )
        assert bundle.status is BundleStatus.INACTIVE

    @pytest.mark.parametrize(
        "components",
        [
            [],
            [{"weight_pct": "1"}],
            [{"product_id": "A", "weight_pct": 1.0}],
            [{"product_id": "A", "weight_pct": "0.5"}, {"product_id": "A", "weight_pct": "0.5"}],
        ],
    )
    def test_structural_problems(self, bundle_service, components):
        with pytest.raises(InvalidBundleError):
            _bundle(bundle_service, components=components)

    def test_blank_sku(self, bundle_service):
        with pytest.raises(InvalidBundleError):
            _bundle(bundle_service, sku="  ")

    def test_same_start_replaces_components(self, bundle_service):
        first = _bundle(bundle_service)
        second = _bundle(
            bundle_service,
            components=[
                {"product_id": "LICENSE", "weight_pct": "0.7"},
                {"product_id": "TRAINING", "weight_pct": "0.3"},
            ],
        )
        assert second.id == first.id
        assert second.product_ids == ("LICENSE", "TRAINING")

    def test_new_version_end_dates_predecessor(self, bundle_service):
        first = _bundle(bundle_service)
        second = _bundle(bundle_service, effective_from=date(2024, 7, 1))

        assert bundle_service.get_bundle(first.id).effective_to == date(2024, 6, 30)
        assert bundle_service.get_effective_bundle(TEST_COMPANY, "SUITE", date(2024, 6, 30)).id == first.id
        assert bundle_service.get_effective_bundle(TEST_COMPANY, "SUITE", date(2024, 7, 1)).id == second.id

    def test_earlier_version_overlapping_open_bundle_rejected(self, bundle_service):
        _bundle(bundle_service, effective_from=date(2024, 7, 1))
        with pytest.raises(InvalidBundleError, match="overlaps"):
            _bundle(bundle_service, effective_from=date(2024, 1, 1))


class TestStatus:
    def test_deactivate_and_reactivate(self, bundle_service):
        bundle = _bundle(bundle_service)
        inactive = bundle_service.update_bundle_status(bundle.id, "INACTIVE", TEST_ACTOR_ID)
        assert inactive.status is BundleStatus.INACTIVE
        assert bundle_service.get_effective_bundle(TEST_COMPANY, "SUITE", date(2024, 3, 1)) is None

        active = bundle_service.update_bundle_status(bundle.id, "ACTIVE", TEST_ACTOR_ID)
        assert active.status is BundleStatus.ACTIVE

    def test_reactivating_unbalanced_bundle_fails(self, bundle_service):
        bundle = _bundle(
            bundle_service,
            components=[{"product_id": "LICENSE", "weight_pct": "0.5"}],
            status="INACTIVE",
        )
        with pytest.raises(UnbalancedBundleError):
            bundle_service.update_bundle_status(bundle.id, "ACTIVE", TEST_ACTOR_ID)

    def test_archived_is_terminal(self, bundle_service):
        bundle = _bundle(bundle_service)
        bundle_service.update_bundle_status(bundle.id, "ARCHIVED", TEST_ACTOR_ID)
        with pytest.raises(InvalidStatusTransitionError):
            bundle_service.update_bundle_status(bundle.id, "ACTIVE", TEST_ACTOR_ID)

    def test_unknown_bundle(self, bundle_service):
        with pytest.raises(BundleNotFoundError):
            bundle_service.update_bundle_status(uuid4(), "INACTIVE", TEST_ACTOR_ID)


class TestLookups:
    def test_load_effective_bundles_skips_unknown_skus(self, bundle_service):
        _bundle(bundle_service)
        found = bundle_service.load_effective_bundles(TEST_COMPANY, ["SUITE", "WIDGET"], date(2024, 3, 1))
        assert list(found) == ["SUITE"]

    def test_not_effective_before_start(self, bundle_service):
        _bundle(bundle_service, effective_from=date(2024, 6, 1))
        assert bundle_service.get_effective_bundle(TEST_COMPANY, "SUITE", date(2024, 5, 31)) is None

    def test_bundles_by_product(self, bundle_service):
        _bundle(bundle_service)
        _bundle(
            bundle_service,
            sku="STARTER",
            components=[{"product_id": "LICENSE", "weight_pct": "1"}],
        )

        assert [b.sku for b in bundle_service.get_bundles_by_product(TEST_COMPANY, "LICENSE")] == [
            "STARTER", "SUITE",
        ]
        assert [b.sku for b in bundle_service.get_bundles_by_product(TEST_COMPANY, "SUPPORT")] == ["SUITE"]

    def test_query_by_status(self, bundle_service):
        bundle = _bundle(bundle_service)
        bundle_service.update_bundle_status(bundle.id, "INACTIVE", TEST_ACTOR_ID)

        assert bundle_service.query_bundles(TEST_COMPANY, status="ACTIVE") == ()
        assert len(bundle_service.query_bundles(TEST_COMPANY, status="INACTIVE")) == 1
