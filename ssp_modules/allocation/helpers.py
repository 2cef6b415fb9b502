"""
Module: ssp_modules.allocation.helpers
Responsibility:
    Pure planning for one invoice allocation: bundle expansion, pricing
    attachment, sequential discounting, strategy determination and the
    strategy run.  Consumes a PricingSnapshot; performs no I/O.

Architecture:
    ssp_modules layer -- pure functions called by AllocationService
    between its batched read and its atomic write.  Replaying a stored
    snapshot through ``plan_allocation`` reproduces the audit results.

Invariants:
    - Discounts reduce the total before the strategy runs; allocation
      always operates on the post-discount total.
    - Unresolvable pricing raises UnresolvedPricingError carrying the
      missing products, the residual flag and the eligible products seen.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace

from ssp_engines.allocation import (
    AllocationLineInput,
    StrategyRequest,
    determine_allocation_strategy,
    get_strategy,
)
from ssp_engines.bundles import ExpandableLine, expand_bundle_line
from ssp_engines.discounts import DiscountCalculator, DiscountContext, DiscountLine
from ssp_kernel.domain.values import Currency, Money, RoundingMode
from ssp_kernel.exceptions import UnresolvedPricingError
from ssp_modules.allocation.models import AllocationPlan, InvoiceSnapshot, PricingSnapshot
from ssp_modules.bundles.models import Bundle
from ssp_modules.catalog.models import ProductPricing, SspPolicy

MISSING_POLICY = "MISSING_POLICY"


def priced_products(invoice: InvoiceSnapshot, bundles: Mapping[str, Bundle]) -> tuple[str, ...]:
    """Products that may appear on the invoice after bundle expansion."""
    products: list[str] = []
    for line in invoice.lines:
        bundle = bundles.get(line.product_id)
        if bundle is None:
            products.append(line.product_id)
        else:
            products.extend(bundle.product_ids)
    return tuple(dict.fromkeys(products))


def expand_invoice_lines(
    invoice: InvoiceSnapshot,
    bundles: Mapping[str, Bundle],
    rounding: RoundingMode,
) -> tuple[AllocationLineInput, ...]:
    """
    Replace bundle lines with one line per component.

    Component lines keep the bundle line id as ``source_line_id``.  Lines
    that are not bundle SKUs pass through unchanged.
    """
    currency = Currency(invoice.currency)
    lines: list[AllocationLineInput] = []
    for line in invoice.lines:
        bundle = bundles.get(line.product_id)
        if bundle is None:
            lines.append(
                AllocationLineInput(
                    line_id=line.id,
                    product_id=line.product_id,
                    quantity=line.qty,
                    listed_amount=line.amount,
                )
            )
            continue
        parts = expand_bundle_line(
            line=ExpandableLine(
                line_id=line.id,
                product_id=line.product_id,
                quantity=line.qty,
                amount=line.amount,
            ),
            components=bundle.component_specs(),
            currency=currency,
            rounding=rounding,
        )
        lines.extend(
            AllocationLineInput(
                line_id=part.line_id,
                product_id=part.product_id,
                quantity=part.quantity,
                listed_amount=part.amount,
                source_line_id=part.source_line_id,
            )
            for part in parts
        )
    return tuple(lines)


def attach_pricing(
    lines: tuple[AllocationLineInput, ...],
    pricing: Mapping[str, ProductPricing],
) -> tuple[AllocationLineInput, ...]:
    attached = []
    for line in lines:
        product = pricing.get(line.product_id)
        if product is None:
            attached.append(line)
        else:
            attached.append(
                replace(line, approved_ssp=product.approved, working_ssp=product.working)
            )
    return tuple(attached)


def _unresolved(
    invoice: InvoiceSnapshot,
    policy: SspPolicy | None,
    missing: tuple[str, ...],
    eligible: tuple[str, ...],
    reason: str,
) -> UnresolvedPricingError:
    return UnresolvedPricingError(
        company_id=invoice.company_id,
        invoice_id=invoice.id,
        as_of_date=invoice.invoice_date,
        missing_products=missing,
        residual_allowed=policy.residual_allowed if policy is not None else False,
        eligible_products_present=eligible,
        reason=reason,
    )


def plan_allocation(
    invoice: InvoiceSnapshot,
    snapshot: PricingSnapshot,
    requested: StrategyRequest = StrategyRequest.AUTO,
    tie_break: str = "code",
) -> AllocationPlan:
    """
    Compute the full allocation for an invoice from a snapshot.

    Steps: expand bundles, attach pricing, apply discounts sequentially,
    determine the strategy, verify it can price every line, allocate the
    post-discount total.

    Raises:
        UnresolvedPricingError: No policy, no usable strategy, or a
            strategy that cannot price every line.
    """
    policy = snapshot.policy
    if policy is None:
        raise _unresolved(invoice, None, invoice.product_ids, (), MISSING_POLICY)
    allocation_policy = policy.to_allocation_policy()
    currency = Currency(invoice.currency)

    lines = attach_pricing(
        expand_invoice_lines(invoice, snapshot.bundles, policy.rounding),
        snapshot.pricing,
    )

    discounts = DiscountCalculator().apply(
        rules=snapshot.rules,
        usage=snapshot.usage,
        context=DiscountContext(
            invoice_date=invoice.invoice_date,
            customer_id=invoice.customer_id,
            currency=currency,
            gross_total=invoice.total_amount,
            lines=tuple(DiscountLine(ln.product_id, ln.listed_amount) for ln in lines),
        ),
        rounding=policy.rounding,
        tie_break=tie_break,
    )

    decision = determine_allocation_strategy(
        lines=lines,
        requested=requested,
        policy=allocation_policy,
    )
    if not decision.is_resolved:
        raise _unresolved(
            invoice, policy, decision.missing_products,
            decision.eligible_products_present, decision.reason.value,
        )

    strategy = get_strategy(decision.method)
    check = strategy.check(lines, allocation_policy)
    if not check.resolvable:
        raise _unresolved(
            invoice, policy, check.missing_products,
            decision.eligible_products_present, check.reason.value,
        )

    computation = strategy.allocate(
        lines=lines,
        total=Money(discounts.net_total, currency),
        policy=allocation_policy,
    )
    return AllocationPlan(
        lines=lines,
        discounts=discounts,
        decision=decision,
        computation=computation,
    )
