"""
Module: ssp_engines.bundles
Responsibility:
    Validate bundle component definitions and expand an invoice line sold
    as a bundle SKU into one line per component.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Component weights lie in (0, 1] and sum to 1 within the configured
      tolerance.  Unbalanced bundles are reported, never normalized.
    - Expansion conserves the listed amount: component amounts sum exactly
      to the source line amount, with the rounding leftover on the
      heaviest component.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from ssp_engines.rounding import distribute_proportionally
from ssp_engines.tracer import traced_engine
from ssp_kernel.domain.validation import require_decimal
from ssp_kernel.domain.values import Currency, RoundingMode

DEFAULT_WEIGHT_TOLERANCE = Decimal("0.000001")


@dataclass(frozen=True)
class BundleComponentSpec:
    """One weighted component of a bundle."""

    product_id: str
    weight_pct: Decimal
    required: bool = True
    min_qty: Decimal = Decimal("1")
    max_qty: Decimal | None = None


@dataclass(frozen=True)
class BundleWeightCheck:
    """
    Result of validating a component list.

    ``errors`` holds structural problems only; the weight-sum invariant is
    reported separately through ``balanced``.
    """

    weight_total: Decimal
    balanced: bool
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def valid(self) -> bool:
        return self.balanced and not self.errors


@dataclass(frozen=True)
class ExpandableLine:
    line_id: str
    product_id: str
    quantity: Decimal
    amount: Decimal


@dataclass(frozen=True)
class ExpandedLine:
    line_id: str
    source_line_id: str
    product_id: str
    quantity: Decimal
    amount: Decimal
    weight_pct: Decimal


def validate_bundle_components(
    components: Sequence[BundleComponentSpec],
    tolerance: Decimal = DEFAULT_WEIGHT_TOLERANCE,
) -> BundleWeightCheck:
    """
    Check component structure and the weight-sum invariant.

    Postconditions:
        - ``balanced`` is True iff the weights sum to 1 within ``tolerance``.
        - ``weight_total`` is the exact sum of all weights.
    """
    errors: list[str] = []
    if not components:
        errors.append("bundle must have at least one component")

    seen: set[str] = set()
    total = Decimal("0")
    for component in components:
        require_decimal(component.weight_pct, "weight_pct")
        total += component.weight_pct
        if component.product_id in seen:
            errors.append(f"duplicate component product {component.product_id}")
        seen.add(component.product_id)
        if not (Decimal("0") < component.weight_pct <= Decimal("1")):
            errors.append(
                f"weight_pct for {component.product_id} must be in (0, 1], "
                f"got {component.weight_pct}"
            )
        if component.min_qty < Decimal("1"):
            errors.append(f"min_qty for {component.product_id} must be at least 1")
        if component.max_qty is not None and component.max_qty < component.min_qty:
            errors.append(f"max_qty for {component.product_id} is below min_qty")

    balanced = bool(components) and abs(total - Decimal("1")) <= tolerance
    return BundleWeightCheck(weight_total=total, balanced=balanced, errors=tuple(errors))


@traced_engine(
    "bundle_expansion", "1.0",
    fingerprint_fields=("line", "components"),
)
def expand_bundle_line(
    *,
    line: ExpandableLine,
    components: Sequence[BundleComponentSpec],
    currency: Currency,
    rounding: RoundingMode,
) -> tuple[ExpandedLine, ...]:
    """
    Replace a bundle line with its components.

    Each component receives ``line.quantity * min_qty`` units and a share of
    the listed amount proportional to its weight.

    Raises:
        ValueError: If ``components`` is empty.
    """
    if not components:
        raise ValueError(f"Bundle line {line.line_id} has no components to expand")
    distribution = distribute_proportionally(
        line.amount,
        [c.weight_pct for c in components],
        currency,
        rounding,
    )
    return tuple(
        ExpandedLine(
            line_id=f"{line.line_id}:{component.product_id}",
            source_line_id=line.line_id,
            product_id=component.product_id,
            quantity=line.quantity * component.min_qty,
            amount=amount,
            weight_pct=component.weight_pct,
        )
        for component, amount in zip(components, distribution.amounts)
    )
