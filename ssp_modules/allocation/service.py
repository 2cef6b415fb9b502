"""
Module: ssp_modules.allocation.service
Responsibility:
    Orchestration of one invoice allocation: read the pricing snapshot,
    plan the allocation with the pure helpers, and write the audit record,
    its per-line allocations and the applied discounts as one atomic unit.
    Also serves the audit read contracts used by the recognition scheduler
    and by review tooling.

Architecture:
    ssp_modules layer -- holds a Session and owns commit/rollback.  All
    arithmetic happens in ssp_engines via ``helpers.plan_allocation``.

    Dependency direction (strict):
        service.py  -->  ssp_modules.allocation.helpers (pure planning)
        service.py  -->  catalog / bundles / discounts services (reads, staging)
        service.py  -->  ssp_kernel                     (clock, logging, errors)

Invariants:
    - At most one audit per (company, invoice, run).  A repeat invocation
      returns a DUPLICATE outcome; the original audit stands.  Discounts
      already recorded for the run by the standalone discount operation
      are also a DUPLICATE, with no audit id.
    - Every read happens before computation starts; every write happens
      after it, in a single commit.
    - Unresolved pricing writes no audit.  The products that blocked it
      are recorded in ssp_unresolved_pricing so the compliance check can
      report them as billed without an SSP.

Failure modes:
    - Business conditions (unresolved pricing, duplicate run) are returned
      as an AllocationOutcome status, not raised.
    - Storage faults propagate after rollback.
    - AllocationAuditNotFoundError from ``get_allocation_audit``.

Audit relevance:
    - The audit stores the invoice snapshot, the pricing it was priced
      against, the discount sequence and every per-line result, so the
      allocation can be replayed and explained after the fact.
"""

from __future__ import annotations

import time
from collections import Counter, defaultdict
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ssp_config import SspEngineConfig, get_active_config
from ssp_engines.allocation import (
    AllocationMethod,
    StrategyRequest,
    determine_allocation_strategy,
)
from ssp_kernel.domain.clock import Clock, SystemClock
from ssp_kernel.exceptions import AllocationAuditNotFoundError, UnresolvedPricingError
from ssp_kernel.logging_config import LogContext, get_logger
from ssp_modules.allocation.helpers import (
    MISSING_POLICY,
    attach_pricing,
    expand_invoice_lines,
    plan_allocation,
    priced_products,
)
from ssp_modules.allocation.models import (
    AllocationAudit,
    AllocationAuditSummary,
    AllocationLineRecord,
    AllocationOutcome,
    AllocationPlan,
    AllocationStatus,
    InvoiceSnapshot,
    PricingSnapshot,
)
from ssp_modules.allocation.orm import (
    AllocationAuditModel,
    AllocationLineModel,
    UnresolvedPricingModel,
)
from ssp_modules.bundles.service import BundleService
from ssp_modules.catalog.service import SspCatalogService
from ssp_modules.discounts.service import DiscountRuleService

logger = get_logger("modules.allocation.service")


def _resolved_dict(ssp) -> dict[str, Any] | None:
    if ssp is None:
        return None
    return {
        "entry_id": ssp.entry_id,
        "unit_ssp": str(ssp.unit_ssp),
        "status": ssp.status,
        "method": ssp.method,
        "effective_from": ssp.effective_from.isoformat(),
        "peer_median": str(ssp.peer_median) if ssp.peer_median is not None else None,
    }


def _snapshot_inputs(invoice: InvoiceSnapshot, snapshot: PricingSnapshot) -> dict[str, Any]:
    """JSON-safe record of everything the allocation was computed from."""
    policy = snapshot.policy
    return {
        "invoice": invoice.to_snapshot_dict(),
        "policy": {
            "rounding": policy.rounding.value,
            "residual_allowed": policy.residual_allowed,
            "residual_eligible_products": sorted(policy.residual_eligible_products),
            "corridor_tolerance_pct": str(policy.corridor_tolerance_pct),
        },
        "bundles": {
            sku: {"bundle_id": str(b.id), "effective_from": b.effective_from.isoformat()}
            for sku, b in sorted(snapshot.bundles.items())
        },
        "pricing": {
            product_id: {
                "approved": _resolved_dict(p.approved),
                "working": _resolved_dict(p.working),
            }
            for product_id, p in sorted(snapshot.pricing.items())
        },
        "rules": [
            {"rule_id": r.rule_id, "code": r.code, "kind": r.kind.value, "priority": r.priority}
            for r in snapshot.rules
        ],
    }


def _plan_results(plan: AllocationPlan) -> dict[str, Any]:
    computation = plan.computation
    return {
        "method": computation.method.value,
        "requested": plan.decision.requested.value,
        "net_total": str(computation.total.amount),
        "rounding_adjustment": str(computation.rounding_adjustment),
        "discounts": [app.detail for app in plan.discounts.applications],
        "skipped_discounts": [
            {"rule_id": s.rule_id, "code": s.code, "reason": s.reason.value}
            for s in plan.discounts.skipped
        ],
        "lines": [
            {
                "line_id": line.line_id,
                "product_id": line.product_id,
                "allocated_amount": str(line.allocated_amount),
                "weight": str(line.weight),
                "basis": line.basis.value,
            }
            for line in computation.lines
        ],
    }


class AllocationService:
    """
    Allocates invoices and serves the resulting audit trail.

    Contract:
        ``allocate_invoice`` takes an InvoiceSnapshot from the billing flow
        and returns an AllocationOutcome.  It owns its transaction.

    Guarantees:
        - An ALLOCATED outcome's lines sum exactly to the post-discount
          invoice total.
        - Audit, lines and DiscountApplied rows are committed together or
          not at all.

    Non-goals:
        - Does NOT schedule revenue recognition; it hands the per-line
          allocated amounts and the audit id to the scheduler.
        - Does NOT retry; storage faults go back to the caller.
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
        self._catalog = SspCatalogService(session, self._clock, self._config)
        self._bundles = BundleService(session, self._clock, self._config)
        self._discounts = DiscountRuleService(session, self._clock, self._config)

    # =========================================================================
    # Snapshot read
    # =========================================================================

    def _load_snapshot(self, invoice: InvoiceSnapshot) -> PricingSnapshot:
        """Read policy, bundles, pricing and discount rules for one invoice."""
        policy = self._catalog.get_ssp_policy(invoice.company_id)
        if policy is None:
            return PricingSnapshot(policy=None)
        bundles = self._bundles.load_effective_bundles(
            invoice.company_id, invoice.product_ids, invoice.invoice_date,
        )
        pricing = self._catalog.resolve_ssp_batch(
            invoice.company_id,
            priced_products(invoice, bundles),
            invoice.currency,
            invoice.invoice_date,
        )
        rules, usage = self._discounts.load_rules_with_usage(
            invoice.company_id, invoice.invoice_date,
        )
        return PricingSnapshot(
            policy=policy,
            bundles=bundles,
            pricing=pricing,
            rules=rules,
            usage=usage,
        )

    def _find_existing_audit_id(self, company_id: str, invoice_id: str, run_id: str) -> UUID | None:
        stmt = select(AllocationAuditModel.id).where(
            AllocationAuditModel.company_id == company_id,
            AllocationAuditModel.invoice_id == invoice_id,
            AllocationAuditModel.run_id == run_id,
        )
        return self._session.scalars(stmt).first()

    # =========================================================================
    # Strategy determination
    # =========================================================================

    def determine_allocation_strategy(
        self,
        invoice: InvoiceSnapshot,
        requested: StrategyRequest | str = StrategyRequest.AUTO,
    ) -> AllocationMethod:
        """
        Method an allocation of ``invoice`` would use, without allocating.

        Raises:
            UnresolvedPricingError: AUTO cannot pick a method, or no policy
                exists for the company.
        """
        snapshot = self._load_snapshot(invoice)
        policy = snapshot.policy
        if policy is None:
            raise UnresolvedPricingError(
                company_id=invoice.company_id,
                invoice_id=invoice.id,
                as_of_date=invoice.invoice_date,
                missing_products=invoice.product_ids,
                residual_allowed=False,
                eligible_products_present=(),
                reason=MISSING_POLICY,
            )
        lines = attach_pricing(
            expand_invoice_lines(invoice, snapshot.bundles, policy.rounding),
            snapshot.pricing,
        )
        decision = determine_allocation_strategy(
            lines=lines,
            requested=StrategyRequest(requested),
            policy=policy.to_allocation_policy(),
        )
        if not decision.is_resolved:
            raise UnresolvedPricingError(
                company_id=invoice.company_id,
                invoice_id=invoice.id,
                as_of_date=invoice.invoice_date,
                missing_products=decision.missing_products,
                residual_allowed=policy.residual_allowed,
                eligible_products_present=decision.eligible_products_present,
                reason=decision.reason.value,
            )
        return decision.method

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate_invoice(
        self,
        invoice: InvoiceSnapshot,
        *,
        run_id: str,
        actor_id: UUID,
        requested_strategy: StrategyRequest | str = StrategyRequest.AUTO,
    ) -> AllocationOutcome:
        """
        Allocate one invoice for one billing run.

        Preconditions:
            - ``invoice`` is a validated InvoiceSnapshot.
        Postconditions:
            - ALLOCATED: one audit, one line row per (expanded) line and one
              DiscountApplied row per applied rule were committed.
            - UNRESOLVED_PRICING: no audit was written; one unresolved-pricing
              row per missing product was recorded.
            - DUPLICATE: nothing was written.
        """
        requested = StrategyRequest(requested_strategy)
        with LogContext.bind(
            company_id=invoice.company_id,
            invoice_id=invoice.id,
            run_id=run_id,
            actor_id=str(actor_id),
        ):
            existing = self._find_existing_audit_id(invoice.company_id, invoice.id, run_id)
            if existing is not None:
                return self._duplicate(invoice, run_id, existing)
            if self._has_recorded_discounts(invoice, run_id):
                return self._duplicate(invoice, run_id, None)

            started = time.perf_counter()
            snapshot = self._load_snapshot(invoice)
            try:
                plan = plan_allocation(
                    invoice, snapshot, requested, self._config.discount_tie_break,
                )
            except UnresolvedPricingError as exc:
                logger.warning(
                    "allocation_unresolved",
                    extra={
                        "reason": exc.reason,
                        "missing_products": list(exc.missing_products),
                        "residual_allowed": exc.residual_allowed,
                        "eligible_products_present": list(exc.eligible_products_present),
                        "as_of_date": exc.as_of_date.isoformat(),
                    },
                )
                self._record_unresolved(invoice, run_id, actor_id, exc)
                return AllocationOutcome(
                    status=AllocationStatus.UNRESOLVED_PRICING,
                    invoice_id=invoice.id,
                    run_id=run_id,
                    unresolved=exc,
                )
            elapsed_ms = int((time.perf_counter() - started) * 1000)

            audit = self._build_audit(invoice, run_id, requested, snapshot, plan, elapsed_ms)
            try:
                self._write_audit(audit, plan, invoice, run_id, actor_id)
                self._session.commit()
            except IntegrityError:
                self._session.rollback()
                existing = self._find_existing_audit_id(invoice.company_id, invoice.id, run_id)
                if existing is not None:
                    return self._duplicate(invoice, run_id, existing)
                if self._has_recorded_discounts(invoice, run_id):
                    return self._duplicate(invoice, run_id, None)
                raise
            except Exception:
                self._session.rollback()
                raise

            if audit.corridor_flag:
                logger.warning(
                    "allocation_flagged",
                    extra={
                        "audit_id": str(audit.id),
                        "flag_reasons": sorted({f["reason"] for f in audit.corridor_flags}),
                    },
                )
            logger.info(
                "allocation_completed",
                extra={
                    "audit_id": str(audit.id),
                    "method": audit.method.value,
                    "line_count": len(audit.lines),
                    "gross_amount": str(audit.gross_invoice_amount),
                    "total_discount": str(audit.total_discount),
                    "allocated_amount": str(audit.total_allocated_amount),
                    "rounding_adjustment": str(audit.rounding_adjustment),
                    "corridor_flag": audit.corridor_flag,
                    "processing_time_ms": audit.processing_time_ms,
                },
            )
            return AllocationOutcome(
                status=AllocationStatus.ALLOCATED,
                invoice_id=invoice.id,
                run_id=run_id,
                audit=audit,
            )

    def _has_recorded_discounts(self, invoice: InvoiceSnapshot, run_id: str) -> bool:
        return bool(
            self._discounts.get_discount_applications(invoice.company_id, invoice.id, run_id)
        )

    def _record_unresolved(
        self,
        invoice: InvoiceSnapshot,
        run_id: str,
        actor_id: UUID,
        exc: UnresolvedPricingError,
    ) -> None:
        """Record the products that blocked this attempt, once per run."""
        products = sorted(set(exc.missing_products))
        if not products:
            return
        already = set(
            self._session.scalars(
                select(UnresolvedPricingModel.product_id).where(
                    UnresolvedPricingModel.company_id == invoice.company_id,
                    UnresolvedPricingModel.invoice_id == invoice.id,
                    UnresolvedPricingModel.run_id == run_id,
                )
            )
        )
        now = self._clock.now()
        rows = [
            UnresolvedPricingModel(
                company_id=invoice.company_id,
                invoice_id=invoice.id,
                run_id=run_id,
                product_id=product_id,
                currency=invoice.currency,
                invoice_date=invoice.invoice_date,
                reason=exc.reason,
                created_at=now,
                updated_at=now,
                created_by_id=actor_id,
            )
            for product_id in products
            if product_id not in already
        ]
        if not rows:
            return
        try:
            self._session.add_all(rows)
            self._session.commit()
        except IntegrityError:
            # A concurrent attempt for the same run recorded them first.
            self._session.rollback()
            logger.warning(
                "unresolved_pricing_already_recorded",
                extra={"product_ids": products},
            )
            return
        except Exception:
            self._session.rollback()
            raise
        logger.info(
            "unresolved_pricing_recorded",
            extra={"product_ids": [r.product_id for r in rows], "reason": exc.reason},
        )

    def _duplicate(
        self,
        invoice: InvoiceSnapshot,
        run_id: str,
        existing: UUID | None,
    ) -> AllocationOutcome:
        logger.warning(
            "allocation_duplicate_rejected",
            extra={
                "existing_audit_id": str(existing) if existing is not None else None,
                "discounts_already_recorded": existing is None,
            },
        )
        return AllocationOutcome(
            status=AllocationStatus.DUPLICATE,
            invoice_id=invoice.id,
            run_id=run_id,
            existing_audit_id=existing,
        )

    def _build_audit(
        self,
        invoice: InvoiceSnapshot,
        run_id: str,
        requested: StrategyRequest,
        snapshot: PricingSnapshot,
        plan: AllocationPlan,
        elapsed_ms: int,
    ) -> AllocationAudit:
        audit_id = uuid4()
        computation = plan.computation
        lines = tuple(
            AllocationLineRecord(
                id=uuid4(),
                audit_id=audit_id,
                line_index=index,
                line_id=line.line_id,
                product_id=line.product_id,
                quantity=line.quantity,
                listed_amount=line.listed_amount,
                allocated_amount=line.allocated_amount,
                weight=line.weight,
                basis=line.basis,
                unit_ssp=line.unit_ssp,
                ssp_entry_id=line.ssp_entry_id,
                source_line_id=line.source_line_id,
                corridor_flag=line.corridor_flag,
            )
            for index, line in enumerate(computation.lines)
        )
        return AllocationAudit(
            id=audit_id,
            company_id=invoice.company_id,
            invoice_id=invoice.id,
            run_id=run_id,
            invoice_date=invoice.invoice_date,
            currency=invoice.currency,
            method=computation.method,
            strategy=requested,
            gross_invoice_amount=invoice.total_amount,
            total_discount=plan.discounts.total_discount,
            total_invoice_amount=computation.total.amount,
            total_allocated_amount=computation.total_allocated,
            rounding_adjustment=computation.rounding_adjustment,
            corridor_flag=computation.corridor_flag,
            processing_time_ms=elapsed_ms,
            inputs=_snapshot_inputs(invoice, snapshot),
            results=_plan_results(plan),
            corridor_flags=tuple(flag.to_dict() for flag in computation.corridor_flags),
            lines=lines,
            created_at=self._clock.now(),
        )

    def _write_audit(
        self,
        audit: AllocationAudit,
        plan: AllocationPlan,
        invoice: InvoiceSnapshot,
        run_id: str,
        actor_id: UUID,
    ) -> None:
        # Audit row first: lines and discounts reference it.
        self._session.add(AllocationAuditModel.from_dto(audit, created_by_id=actor_id))
        self._session.flush()
        self._session.add_all(
            AllocationLineModel.from_dto(line, created_by_id=actor_id, created_at=audit.created_at)
            for line in audit.lines
        )
        self._discounts.stage_applications(
            company_id=invoice.company_id,
            invoice_id=invoice.id,
            run_id=run_id,
            currency=invoice.currency,
            applications=plan.discounts.applications,
            actor_id=actor_id,
            allocation_audit_id=audit.id,
        )
        self._session.flush()

    # =========================================================================
    # Audit queries
    # =========================================================================

    def get_allocation_audit(self, company_id: str, invoice_id: str, run_id: str) -> AllocationAudit:
        stmt = select(AllocationAuditModel).where(
            AllocationAuditModel.company_id == company_id,
            AllocationAuditModel.invoice_id == invoice_id,
            AllocationAuditModel.run_id == run_id,
        )
        model = self._session.scalars(stmt).first()
        if model is None:
            raise AllocationAuditNotFoundError(f"{company_id}/{invoice_id}/{run_id}")
        return model.to_dto()

    def list_allocation_audits(self, company_id: str, invoice_id: str) -> tuple[AllocationAudit, ...]:
        """Every run's audit for an invoice, oldest first."""
        stmt = (
            select(AllocationAuditModel)
            .where(
                AllocationAuditModel.company_id == company_id,
                AllocationAuditModel.invoice_id == invoice_id,
            )
            .order_by(AllocationAuditModel.created_at, AllocationAuditModel.run_id)
        )
        return tuple(m.to_dto() for m in self._session.scalars(stmt))

    def get_allocation_audit_summary(
        self,
        company_id: str,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> AllocationAuditSummary:
        """
        Aggregate the audits whose invoice date falls in [from_date, to_date].

        ``total_allocated`` is keyed by currency.
        """
        stmt = select(
            AllocationAuditModel.method,
            AllocationAuditModel.currency,
            AllocationAuditModel.total_allocated_amount,
            AllocationAuditModel.corridor_flag,
            AllocationAuditModel.processing_time_ms,
        ).where(AllocationAuditModel.company_id == company_id)
        if from_date is not None:
            stmt = stmt.where(AllocationAuditModel.invoice_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(AllocationAuditModel.invoice_date <= to_date)

        methods: Counter[str] = Counter()
        totals: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        count = flagged = elapsed = 0
        for method, currency, allocated, flag, ms in self._session.execute(stmt):
            count += 1
            flagged += 1 if flag else 0
            elapsed += ms
            methods[method] += 1
            totals[currency] += allocated

        average = (
            (Decimal(elapsed) / Decimal(count)).quantize(Decimal("0.01"))
            if count
            else Decimal("0")
        )
        return AllocationAuditSummary(
            company_id=company_id,
            from_date=from_date,
            to_date=to_date,
            audit_count=count,
            flagged_count=flagged,
            average_processing_time_ms=average,
            method_breakdown=dict(sorted(methods.items())),
            total_allocated=dict(sorted(totals.items())),
        )
