"""
Module: ssp_engines.rounding
Responsibility:
    Split an amount across weighted bases in currency minor units so that
    the parts sum exactly to the whole.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - sum(amounts) == total exactly.  Each share is rounded independently
      with the policy rounding mode; the leftover is added to the share
      with the largest rounded amount (ties go to the lowest index).
    - A zero basis total falls back to an equal split.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from ssp_kernel.domain.validation import require_decimal
from ssp_kernel.domain.values import Currency, RoundingMode

# Weights are reported (and stored) at 9 decimal places
WEIGHT_QUANTUM = Decimal("0.000000001")


@dataclass(frozen=True)
class Distribution:
    """Result of a proportional split."""

    amounts: tuple[Decimal, ...]
    weights: tuple[Decimal, ...]
    rounding_adjustment: Decimal
    adjusted_index: int | None


def largest_index(amounts: Sequence[Decimal]) -> int:
    """Index of the largest amount; the lowest index wins ties."""
    best = 0
    for i, amount in enumerate(amounts):
        if amount > amounts[best]:
            best = i
    return best


def require_minor_units(amount: Decimal, currency: Currency, name: str = "total") -> None:
    """Raise ValueError unless amount has no digits below the minor unit."""
    require_decimal(amount, name)
    if amount != amount.quantize(currency.minor_unit):
        raise ValueError(
            f"{name} {amount} is not expressed in {currency.code} minor units"
        )


def distribute_proportionally(
    total: Decimal,
    bases: Sequence[Decimal],
    currency: Currency,
    rounding: RoundingMode,
) -> Distribution:
    """
    Distribute ``total`` across ``bases`` in proportion to each basis.

    Preconditions:
        - ``bases`` is non-empty and every element is a finite Decimal.
        - ``total`` is expressed in the currency minor unit.
    Postconditions:
        - ``sum(result.amounts) == total``.
        - ``len(result.amounts) == len(bases)``.
    Raises:
        ValueError: On empty bases or non-finite / over-precise inputs.
    """
    if not bases:
        raise ValueError("Cannot distribute across zero bases")
    require_minor_units(total, currency)
    for i, basis in enumerate(bases):
        require_decimal(basis, f"bases[{i}]")

    basis_total = sum(bases, Decimal("0"))
    if basis_total == 0:
        count = Decimal(len(bases))
        weights = [Decimal("1") / count for _ in bases]
    else:
        weights = [basis / basis_total for basis in bases]

    rounded = [currency.quantize(total * w, rounding) for w in weights]

    residual = total - sum(rounded, Decimal("0"))
    adjusted_index: int | None = None
    if residual != 0:
        adjusted_index = largest_index(rounded)
        rounded[adjusted_index] += residual

    # INVARIANT: parts sum exactly to the whole
    assert sum(rounded, Decimal("0")) == total, "distribution does not conserve total"

    return Distribution(
        amounts=tuple(rounded),
        weights=tuple(w.quantize(WEIGHT_QUANTUM) for w in weights),
        rounding_adjustment=residual,
        adjusted_index=adjusted_index,
    )
