"""
Module: ssp_modules.bundles.models
Responsibility:
    Frozen DTOs for the bundle registry: a bundle SKU with an effective
    window, a status, and an ordered list of weighted components.

Architecture:
    ssp_modules layer -- pure data definitions with ZERO I/O.

Invariants:
    - An ACTIVE bundle's component weights sum to 1 within the configured
      tolerance (enforced by BundleService, never normalized).
    - Components are ordered by ``sequence``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ssp_engines.bundles import BundleComponentSpec


class BundleStatus(str, Enum):
    """
    Bundle lifecycle.

    Contract:
        ARCHIVED is terminal.  Moving back to ACTIVE re-validates weights.
    """

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


@dataclass(frozen=True)
class BundleComponent:
    product_id: str
    weight_pct: Decimal
    required: bool = True
    min_qty: Decimal = Decimal("1")
    max_qty: Decimal | None = None
    sequence: int = 0

    def to_spec(self) -> BundleComponentSpec:
        return BundleComponentSpec(
            product_id=self.product_id,
            weight_pct=self.weight_pct,
            required=self.required,
            min_qty=self.min_qty,
            max_qty=self.max_qty,
        )


@dataclass(frozen=True)
class Bundle:
    """
    A named composite of weighted products sold under one SKU.

    Guarantees:
        - ``components`` is ordered by ``sequence``.
    """

    id: UUID
    company_id: str
    sku: str
    name: str
    effective_from: date
    effective_to: date | None = None
    status: BundleStatus = BundleStatus.ACTIVE
    components: tuple[BundleComponent, ...] = ()
    created_at: datetime | None = None

    @property
    def weight_total(self) -> Decimal:
        return sum((c.weight_pct for c in self.components), Decimal("0"))

    @property
    def product_ids(self) -> tuple[str, ...]:
        return tuple(c.product_id for c in self.components)

    def is_effective_on(self, as_of: date) -> bool:
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or self.effective_to >= as_of

    def component_specs(self) -> tuple[BundleComponentSpec, ...]:
        return tuple(c.to_spec() for c in self.components)
