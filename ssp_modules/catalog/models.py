"""
Module: ssp_modules.catalog.models
Responsibility:
    Frozen domain DTOs for the SSP catalog: catalog entries, supporting
    evidence, the per-company SSP policy, and the per-product pricing
    snapshot handed to the allocation engine.

Architecture:
    ssp_modules layer -- pure data definitions with ZERO I/O.
    All models are frozen dataclasses (immutable after construction).
    All monetary fields use Decimal -- NEVER float.

Invariants:
    - Lifecycle is DRAFT -> REVIEWED -> APPROVED, one step at a time.
    - Effective windows are inclusive on both ends; ``effective_to`` None
      means open-ended.
    - SspPolicy percentages lie in [0, 1].

Failure modes:
    - InvalidPolicyError on an out-of-range policy value.
    - ValueError on invalid enum construction.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ssp_engines.allocation import AllocationPolicy, ResolvedSsp
from ssp_kernel.domain.values import RoundingMode
from ssp_kernel.exceptions import InvalidPolicyError


class SspMethod(str, Enum):
    """How a standalone selling price was determined."""

    OBSERVABLE = "OBSERVABLE"
    BENCHMARK = "BENCHMARK"
    ADJ_COST = "ADJ_COST"
    RESIDUAL = "RESIDUAL"


class SspStatus(str, Enum):
    """
    Catalog entry lifecycle.

    Contract:
        Transitions are one-way and cannot skip a step.  Only APPROVED
        entries are eligible for Relative-SSP allocation.
    """

    DRAFT = "DRAFT"
    REVIEWED = "REVIEWED"
    APPROVED = "APPROVED"

    @property
    def next_status(self) -> SspStatus | None:
        return _NEXT_STATUS.get(self)

    def can_transition_to(self, target: SspStatus) -> bool:
        return self.next_status is target


_NEXT_STATUS: dict[SspStatus, SspStatus] = {
    SspStatus.DRAFT: SspStatus.REVIEWED,
    SspStatus.REVIEWED: SspStatus.APPROVED,
}


def windows_overlap(
    a_from: date,
    a_to: date | None,
    b_from: date,
    b_to: date | None,
) -> bool:
    """True when two inclusive date windows share at least one day."""
    a_ends_before_b = a_to is not None and a_to < b_from
    b_ends_before_a = b_to is not None and b_to < a_from
    return not (a_ends_before_b or b_ends_before_a)


@dataclass(frozen=True)
class SspCatalogEntry:
    """
    A standalone selling price for one (company, product, currency).

    Contract:
        Frozen dataclass -- immutable after construction.
    Guarantees:
        - ``unit_ssp`` is a non-negative Decimal.
        - ``override_reason`` is set when the price was saved outside its
          corridor.
    """

    id: UUID
    company_id: str
    product_id: str
    currency: str
    unit_ssp: Decimal
    method: SspMethod
    effective_from: date
    effective_to: date | None = None
    corridor_min_pct: Decimal | None = None
    corridor_max_pct: Decimal | None = None
    status: SspStatus = SspStatus.DRAFT
    override_reason: str | None = None
    created_at: datetime | None = None

    def is_effective_on(self, as_of: date) -> bool:
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or self.effective_to >= as_of

    def overlaps(self, other: SspCatalogEntry) -> bool:
        return windows_overlap(
            self.effective_from, self.effective_to,
            other.effective_from, other.effective_to,
        )

    def to_resolved(self, peer_median: Decimal | None = None) -> ResolvedSsp:
        return ResolvedSsp(
            entry_id=str(self.id),
            unit_ssp=self.unit_ssp,
            status=self.status.value,
            method=self.method.value,
            effective_from=self.effective_from,
            corridor_min_pct=self.corridor_min_pct,
            corridor_max_pct=self.corridor_max_pct,
            peer_median=peer_median,
        )


@dataclass(frozen=True)
class SspEvidence:
    """Supporting evidence attached to a catalog entry."""

    id: UUID
    catalog_entry_id: UUID
    source: str
    note: str | None = None
    value: dict = field(default_factory=dict)
    doc_uri: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SspPolicy:
    """
    Per-company SSP policy, read on every allocation.

    Guarantees:
        - ``corridor_tolerance_pct`` and ``alert_threshold_pct`` are in [0, 1].
        - ``residual_eligible_products`` is a frozenset.
    """

    company_id: str
    rounding: RoundingMode = RoundingMode.HALF_UP
    residual_allowed: bool = True
    residual_eligible_products: frozenset[str] = frozenset()
    default_method: SspMethod = SspMethod.OBSERVABLE
    corridor_tolerance_pct: Decimal = Decimal("0.20")
    alert_threshold_pct: Decimal = Decimal("0.15")

    def __post_init__(self) -> None:
        if not self.company_id:
            raise InvalidPolicyError("company_id", "must not be empty")
        for name in ("corridor_tolerance_pct", "alert_threshold_pct"):
            value = getattr(self, name)
            if not isinstance(value, Decimal) or not value.is_finite():
                raise InvalidPolicyError(name, f"must be a finite Decimal, got {value!r}")
            if not (Decimal("0") <= value <= Decimal("1")):
                raise InvalidPolicyError(name, f"must be within [0, 1], got {value}")
        object.__setattr__(
            self, "residual_eligible_products", frozenset(self.residual_eligible_products)
        )

    def to_allocation_policy(self) -> AllocationPolicy:
        return AllocationPolicy(
            rounding=self.rounding,
            residual_allowed=self.residual_allowed,
            residual_eligible_products=self.residual_eligible_products,
            corridor_tolerance_pct=self.corridor_tolerance_pct,
        )


@dataclass(frozen=True)
class ProductPricing:
    """
    Pricing snapshot for one product as of an invoice date.

    ``approved`` is the effective APPROVED entry; ``working`` is the best
    effective entry in any status (the approved one when it exists).
    """

    product_id: str
    approved: ResolvedSsp | None = None
    working: ResolvedSsp | None = None


_STATUS_RANK = {SspStatus.APPROVED: 0, SspStatus.REVIEWED: 1, SspStatus.DRAFT: 2}


def pick_effective_entry(
    entries: Iterable[SspCatalogEntry],
    as_of: date,
    statuses: frozenset[SspStatus] = frozenset({SspStatus.APPROVED}),
) -> SspCatalogEntry | None:
    """
    Select the entry effective on ``as_of`` among the given statuses.

    Higher lifecycle status wins, then the latest ``effective_from``; the
    most recently created entry breaks any remaining tie.
    """
    candidates = [e for e in entries if e.status in statuses and e.is_effective_on(as_of)]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda e: (
            _STATUS_RANK[e.status],
            -e.effective_from.toordinal(),
            -(e.created_at.timestamp() if e.created_at else 0.0),
            str(e.id),
        ),
    )
