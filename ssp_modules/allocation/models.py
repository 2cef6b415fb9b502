"""
Module: ssp_modules.allocation.models
Responsibility:
    Frozen DTOs for invoice allocation: the invoice snapshot supplied by
    billing, the allocation audit and its per-line rows, the outcome
    returned to the billing flow, and the audit summary.

Architecture:
    ssp_modules layer -- pure data definitions with ZERO I/O.
    All monetary fields use Decimal -- NEVER float.

Invariants:
    - An InvoiceSnapshot has at least one line; amounts are finite and
      expressed in the currency minor unit; quantities are non-negative.
    - ``AllocationAudit.total_allocated_amount == total_invoice_amount``.

Failure modes:
    - ValueError on a malformed InvoiceSnapshot.  This is a programming
      contract violation by the caller, not a business condition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from ssp_engines.allocation import (
    AllocationBasis,
    AllocationComputation,
    AllocationLineInput,
    AllocationMethod,
    StrategyDecision,
    StrategyRequest,
)
from ssp_engines.discounts import DiscountResult, DiscountRuleSnapshot, RuleUsage
from ssp_kernel.domain.validation import require_decimal
from ssp_kernel.domain.values import Currency
from ssp_kernel.exceptions import UnresolvedPricingError
from ssp_modules.bundles.models import Bundle
from ssp_modules.catalog.models import ProductPricing, SspPolicy


class AllocationStatus(str, Enum):
    """
    Outcome of one allocation invocation.

    Contract:
        ALLOCATED -- an audit was written.
        UNRESOLVED_PRICING -- no audit was written; catalog or policy data
            must change before retrying.
        DUPLICATE -- an audit, or discounts recorded by the standalone
            discount operation, already exist for (invoice, run); the
            original stands.
    """

    ALLOCATED = "ALLOCATED"
    UNRESOLVED_PRICING = "UNRESOLVED_PRICING"
    DUPLICATE = "DUPLICATE"


@dataclass(frozen=True)
class InvoiceLine:
    """One billed line as supplied by the billing subsystem."""

    id: str
    product_id: str
    amount: Decimal
    qty: Decimal = Decimal("1")
    uom: str | None = None
    end_date: date | None = None


@dataclass(frozen=True)
class InvoiceSnapshot:
    """
    Invoice as consumed by the allocation engine.

    ``total_amount`` is the pre-discount total; line amounts are the
    listed (pre-discount) reference used by residual mode.
    """

    id: str
    company_id: str
    invoice_date: date
    currency: str
    total_amount: Decimal
    lines: tuple[InvoiceLine, ...]
    contract_id: str | None = None
    customer_id: str | None = None

    def __post_init__(self) -> None:
        currency = Currency(self.currency)
        object.__setattr__(self, "currency", currency.code)
        object.__setattr__(self, "lines", tuple(self.lines))
        if not self.lines:
            raise ValueError(f"Invoice {self.id} has no lines")
        self._require_minor_units(self.total_amount, currency, "total_amount")
        seen: set[str] = set()
        for line in self.lines:
            if line.id in seen:
                raise ValueError(f"Invoice {self.id} has duplicate line id {line.id}")
            seen.add(line.id)
            self._require_minor_units(line.amount, currency, f"line {line.id} amount")
            require_decimal(line.qty, f"line {line.id} qty")
            if line.qty < 0:
                raise ValueError(f"Invoice {self.id} line {line.id} has negative qty")

    @staticmethod
    def _require_minor_units(amount: Decimal, currency: Currency, name: str) -> None:
        require_decimal(amount, name)
        if amount != amount.quantize(currency.minor_unit):
            raise ValueError(f"{name} {amount} is finer than the {currency.code} minor unit")

    @property
    def product_ids(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(line.product_id for line in self.lines))

    def to_snapshot_dict(self) -> dict[str, Any]:
        """JSON-safe copy stored as the audit ``inputs``."""
        return {
            "id": self.id,
            "company_id": self.company_id,
            "contract_id": self.contract_id,
            "customer_id": self.customer_id,
            "invoice_date": self.invoice_date.isoformat(),
            "currency": self.currency,
            "total_amount": str(self.total_amount),
            "lines": [
                {
                    "id": line.id,
                    "product_id": line.product_id,
                    "amount": str(line.amount),
                    "qty": str(line.qty),
                    "uom": line.uom,
                    "end_date": line.end_date.isoformat() if line.end_date else None,
                }
                for line in self.lines
            ],
        }


@dataclass(frozen=True)
class AllocationLineRecord:
    """Persisted allocation for one (possibly bundle-expanded) line."""

    id: UUID
    audit_id: UUID
    line_index: int
    line_id: str
    product_id: str
    quantity: Decimal
    listed_amount: Decimal
    allocated_amount: Decimal
    weight: Decimal
    basis: AllocationBasis
    unit_ssp: Decimal | None = None
    ssp_entry_id: str | None = None
    source_line_id: str | None = None
    corridor_flag: bool = False


@dataclass(frozen=True)
class AllocationAudit:
    """
    Durable evidence of one allocation run.  Never mutated.

    Guarantees:
        - ``total_allocated_amount == total_invoice_amount``.
        - ``total_invoice_amount == gross_invoice_amount - total_discount``.
    """

    id: UUID
    company_id: str
    invoice_id: str
    run_id: str
    invoice_date: date
    currency: str
    method: AllocationMethod
    strategy: StrategyRequest
    gross_invoice_amount: Decimal
    total_discount: Decimal
    total_invoice_amount: Decimal
    total_allocated_amount: Decimal
    rounding_adjustment: Decimal
    corridor_flag: bool
    processing_time_ms: int
    inputs: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    corridor_flags: tuple[dict[str, Any], ...] = ()
    lines: tuple[AllocationLineRecord, ...] = ()
    created_at: datetime | None = None

    @property
    def allocated_amounts(self) -> dict[str, Decimal]:
        """Allocated amount keyed by line id, for the recognition scheduler."""
        return {line.line_id: line.allocated_amount for line in self.lines}


@dataclass(frozen=True)
class AllocationOutcome:
    """
    Structured result returned to the billing flow.

    Exactly one of ``audit`` (ALLOCATED), ``unresolved``
    (UNRESOLVED_PRICING) or ``existing_audit_id`` (DUPLICATE) is set.
    A DUPLICATE caused by discounts recorded without an allocation has
    no ``existing_audit_id``.
    """

    status: AllocationStatus
    invoice_id: str
    run_id: str
    audit: AllocationAudit | None = None
    unresolved: UnresolvedPricingError | None = None
    existing_audit_id: UUID | None = None

    @property
    def is_allocated(self) -> bool:
        return self.status is AllocationStatus.ALLOCATED

    @property
    def audit_id(self) -> UUID | None:
        return self.audit.id if self.audit is not None else self.existing_audit_id

    @property
    def lines(self) -> tuple[AllocationLineRecord, ...]:
        return self.audit.lines if self.audit is not None else ()


@dataclass(frozen=True)
class AllocationAuditSummary:
    """Aggregate view over a company's allocation audits."""

    company_id: str
    from_date: date | None
    to_date: date | None
    audit_count: int
    flagged_count: int
    average_processing_time_ms: Decimal
    method_breakdown: dict[str, int] = field(default_factory=dict)
    total_allocated: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class PricingSnapshot:
    """
    Everything an allocation reads, copied out of storage in one pass
    before computation starts.

    ``pricing`` covers every product that can appear after bundle
    expansion; ``usage`` is keyed by rule id.
    """

    policy: SspPolicy | None
    bundles: dict[str, Bundle] = field(default_factory=dict)
    pricing: dict[str, ProductPricing] = field(default_factory=dict)
    rules: tuple[DiscountRuleSnapshot, ...] = ()
    usage: dict[str, RuleUsage] = field(default_factory=dict)


@dataclass(frozen=True)
class AllocationPlan:
    """Pure result of planning an allocation, before anything is written."""

    lines: tuple[AllocationLineInput, ...]
    discounts: DiscountResult
    decision: StrategyDecision
    computation: AllocationComputation
