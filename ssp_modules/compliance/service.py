"""
Module: ssp_modules.compliance.service
Responsibility:
    Advisory batch checks over the SSP catalog: corridor breaches against
    the alert threshold, point-in-time catalog snapshots, and policy
    compliance issues (missing policy, missing SSP, stale drafts).

Architecture:
    ssp_modules layer -- read-only.  Holds a Session but never writes or
    commits.  Statistics are delegated to ssp_engines.corridor.

Invariants:
    - No check mutates state.
    - Checks read without locking and tolerate concurrent catalog edits.

Audit relevance:
    - Each detected breach is logged as ``corridor_breach_detected``;
      each run of a check logs its totals.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ssp_config import SspEngineConfig, get_active_config
from ssp_engines.corridor import PeerEntry, find_corridor_breaches
from ssp_kernel.domain.clock import Clock, SystemClock
from ssp_kernel.logging_config import get_logger
from ssp_modules.allocation.orm import (
    AllocationAuditModel,
    AllocationLineModel,
    UnresolvedPricingModel,
)
from ssp_modules.bundles.orm import BundleModel
from ssp_modules.catalog.models import SspStatus
from ssp_modules.catalog.orm import SspCatalogEntryModel, SspPolicyModel
from ssp_modules.compliance.models import (
    ComplianceIssue,
    CorridorBreachReport,
    IssueCode,
    Severity,
    SspStateSnapshot,
)

logger = get_logger("modules.compliance.service")


class ComplianceService:
    """
    Runs the compliance and alert checks for one company at a time.

    Contract:
        Every method is a pure read.  Results are ordered deterministically
        so two runs over the same data compare equal.

    Non-goals:
        - Does NOT notify anyone; callers route issues to a review queue.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: SspEngineConfig | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()

    def _policy(self, company_id: str) -> SspPolicyModel | None:
        stmt = select(SspPolicyModel).where(SspPolicyModel.company_id == company_id)
        return self._session.scalars(stmt).first()

    # =========================================================================
    # Corridor breaches
    # =========================================================================

    def check_corridor_breaches(self, company_id: str) -> tuple[CorridorBreachReport, ...]:
        """
        APPROVED entries whose variance from their peer median exceeds the
        policy's ``alert_threshold_pct``.

        Peer groups are (product, currency).  Groups smaller than the
        configured ``minimum_peer_group_size`` are not evaluated.
        """
        policy = self._policy(company_id)
        threshold = (
            policy.alert_threshold_pct
            if policy is not None
            else self._config.policy_defaults.alert_threshold_pct
        )
        stmt = select(
            SspCatalogEntryModel.id,
            SspCatalogEntryModel.product_id,
            SspCatalogEntryModel.currency,
            SspCatalogEntryModel.unit_ssp,
        ).where(
            SspCatalogEntryModel.company_id == company_id,
            SspCatalogEntryModel.status == SspStatus.APPROVED.value,
        )
        entries = [
            PeerEntry(entry_id=str(entry_id), product_id=product_id, currency=currency, unit_ssp=unit_ssp)
            for entry_id, product_id, currency, unit_ssp in self._session.execute(stmt)
        ]
        breaches = find_corridor_breaches(
            entries=entries,
            threshold_pct=threshold,
            minimum_peer_group_size=self._config.minimum_peer_group_size,
        )

        reports = tuple(
            CorridorBreachReport(
                entry_id=b.entry_id,
                product_id=b.product_id,
                currency=b.currency,
                unit_ssp=b.unit_ssp,
                median_ssp=b.median_ssp,
                variance_pct=b.variance_pct,
                threshold_pct=b.threshold_pct,
            )
            for b in breaches
        )
        for report in reports:
            logger.warning(
                "corridor_breach_detected",
                extra={
                    "company_id": company_id,
                    "entry_id": report.entry_id,
                    "product_id": report.product_id,
                    "currency": report.currency,
                    "variance_pct": str(report.variance_pct),
                    "threshold_pct": str(report.threshold_pct),
                },
            )
        logger.info(
            "corridor_breach_check_completed",
            extra={
                "company_id": company_id,
                "entries_checked": len(entries),
                "breach_count": len(reports),
            },
        )
        return reports

    # =========================================================================
    # Snapshot
    # =========================================================================

    def generate_ssp_state_snapshot(self, company_id: str) -> SspStateSnapshot:
        """Counts of catalog entries by currency, method and status."""
        now = self._clock.now()
        today = self._clock.today()
        stmt = select(
            SspCatalogEntryModel.currency,
            SspCatalogEntryModel.method,
            SspCatalogEntryModel.status,
            SspCatalogEntryModel.effective_from,
            SspCatalogEntryModel.effective_to,
        ).where(SspCatalogEntryModel.company_id == company_id)

        by_currency: Counter[str] = Counter()
        by_method: Counter[str] = Counter()
        by_status: Counter[str] = Counter()
        effective = 0
        total = 0
        for currency, method, status, effective_from, effective_to in self._session.execute(stmt):
            total += 1
            by_currency[currency] += 1
            by_method[method] += 1
            by_status[status] += 1
            if (
                status == SspStatus.APPROVED.value
                and effective_from <= today
                and (effective_to is None or effective_to >= today)
            ):
                effective += 1

        snapshot = SspStateSnapshot(
            company_id=company_id,
            as_of=now,
            total_entries=total,
            by_currency=dict(sorted(by_currency.items())),
            by_method=dict(sorted(by_method.items())),
            by_status=dict(sorted(by_status.items())),
            effective_approved_on=today,
            effective_approved_count=effective,
        )
        logger.info(
            "ssp_state_snapshot_generated",
            extra={"company_id": company_id, "total_entries": total},
        )
        return snapshot

    # =========================================================================
    # Policy compliance
    # =========================================================================

    def check_ssp_policy_compliance(
        self,
        company_id: str,
        billed_products: Iterable[str] | None = None,
    ) -> tuple[ComplianceIssue, ...]:
        """
        Issues for the review queue.

        - MISSING_POLICY (HIGH): the company has no SSP policy.
        - MISSING_SSP (MEDIUM): a billed product has no catalog entry in
          any status.  Billed products default to every product seen on
          the company's allocation lines or recorded as blocking an
          unresolved allocation; bundle SKUs are not products.
        - STALE_DRAFTS (LOW): a DRAFT entry older than
          ``stale_draft_days``.
        """
        issues: list[ComplianceIssue] = []

        if self._policy(company_id) is None:
            issues.append(
                ComplianceIssue(
                    company_id=company_id,
                    code=IssueCode.MISSING_POLICY,
                    severity=Severity.HIGH,
                    subject=company_id,
                    message=f"Company {company_id} has no SSP policy; allocations cannot run",
                )
            )

        issues.extend(self._missing_ssp_issues(company_id, billed_products))
        issues.extend(self._stale_draft_issues(company_id))

        logger.info(
            "ssp_policy_compliance_checked",
            extra={
                "company_id": company_id,
                "issue_count": len(issues),
                "issue_codes": sorted({i.code.value for i in issues}),
            },
        )
        return tuple(issues)

    def _billed_products(self, company_id: str) -> set[str]:
        stmt = (
            select(AllocationLineModel.product_id)
            .join(AllocationAuditModel, AllocationLineModel.audit_id == AllocationAuditModel.id)
            .where(AllocationAuditModel.company_id == company_id)
            .distinct()
        )
        unresolved = (
            select(UnresolvedPricingModel.product_id)
            .where(UnresolvedPricingModel.company_id == company_id)
            .distinct()
        )
        return set(self._session.scalars(stmt)) | set(self._session.scalars(unresolved))

    def _missing_ssp_issues(
        self,
        company_id: str,
        billed_products: Iterable[str] | None,
    ) -> list[ComplianceIssue]:
        billed = (
            set(billed_products) if billed_products is not None else self._billed_products(company_id)
        )
        if not billed:
            return []
        catalogued = set(
            self._session.scalars(
                select(SspCatalogEntryModel.product_id)
                .where(
                    SspCatalogEntryModel.company_id == company_id,
                    SspCatalogEntryModel.product_id.in_(billed),
                )
                .distinct()
            )
        )
        bundle_skus = set(
            self._session.scalars(
                select(BundleModel.sku)
                .where(BundleModel.company_id == company_id, BundleModel.sku.in_(billed))
                .distinct()
            )
        )
        return [
            ComplianceIssue(
                company_id=company_id,
                code=IssueCode.MISSING_SSP,
                severity=Severity.MEDIUM,
                subject=product_id,
                message=f"Product {product_id} is billed but has no SSP catalog entry",
            )
            for product_id in sorted(billed - catalogued - bundle_skus)
        ]

    def _stale_draft_issues(self, company_id: str) -> list[ComplianceIssue]:
        now = self._clock.now()
        cutoff = now - timedelta(days=self._config.stale_draft_days)
        stmt = (
            select(SspCatalogEntryModel)
            .where(
                SspCatalogEntryModel.company_id == company_id,
                SspCatalogEntryModel.status == SspStatus.DRAFT.value,
            )
            .order_by(SspCatalogEntryModel.created_at, SspCatalogEntryModel.product_id)
        )
        issues: list[ComplianceIssue] = []
        for entry in self._session.scalars(stmt):
            created = entry.created_at
            # SQLite hands back naive datetimes.
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            if created >= cutoff:
                continue
            age_days = (now - created).days
            issues.append(
                ComplianceIssue(
                    company_id=company_id,
                    code=IssueCode.STALE_DRAFTS,
                    severity=Severity.LOW,
                    subject=str(entry.id),
                    message=(
                        f"Draft SSP for {entry.product_id}/{entry.currency} "
                        f"has been pending for {age_days} days"
                    ),
                    detail={
                        "product_id": entry.product_id,
                        "currency": entry.currency,
                        "unit_ssp": str(entry.unit_ssp),
                        "age_days": str(age_days),
                    },
                )
            )
        return issues
