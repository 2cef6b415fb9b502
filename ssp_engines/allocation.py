"""
Module: ssp_engines.allocation
Responsibility:
    Distribute a post-discount invoice total across its lines for revenue
    recognition.  Provides the strategy interface, the Relative-SSP and
    Residual strategies, and the deterministic strategy determination.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Pricing (resolved SSPs, policy) arrives as a snapshot read by the
    caller before computation starts.

Invariants enforced:
    - Sum-to-total: sum(allocated_amount) == total exactly, in minor units,
      for every strategy and rounding mode.
    - Relative-SSP uses APPROVED SSPs only; Residual accepts an SSP in any
      status.
    - Rounding leftovers go to the line with the largest rounded amount
      (ties to the lowest line index).
    - A negative residual never produces a negative allocation: residual
      lines are clipped to zero, priced lines are scaled back to the total,
      and the result carries a NEGATIVE_RESIDUAL corridor flag.

Failure modes:
    - ValueError when a strategy is asked to allocate lines it reported as
      unresolvable, or on malformed input (non-finite amounts, negative
      quantities, totals finer than the currency minor unit).

Audit relevance:
    The AllocationComputation is persisted verbatim as the allocation audit
    results.  Every strategy call is traced with an input fingerprint so a
    replay can be matched to its original run.

Usage:
    decision = determine_allocation_strategy(
        lines=lines, requested=StrategyRequest.AUTO, policy=policy,
    )
    strategy = get_strategy(decision.method)
    computation = strategy.allocate(lines=lines, total=total, policy=policy)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import ClassVar

from ssp_engines.corridor import compute_variance, unit_price_band
from ssp_engines.rounding import WEIGHT_QUANTUM, distribute_proportionally, require_minor_units
from ssp_engines.tracer import traced_engine
from ssp_kernel.domain.validation import require_decimal
from ssp_kernel.domain.values import Money, RoundingMode
from ssp_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


class AllocationMethod(str, Enum):
    RELATIVE_SSP = "RELATIVE_SSP"
    RESIDUAL = "RESIDUAL"


class StrategyRequest(str, Enum):
    """Caller's choice; AUTO defers to determine_allocation_strategy."""

    AUTO = "AUTO"
    RELATIVE_SSP = "RELATIVE_SSP"
    RESIDUAL = "RESIDUAL"


class AllocationBasis(str, Enum):
    """How a line's allocation was derived."""

    SSP = "SSP"
    RESIDUAL = "RESIDUAL"


class FlagReason(str, Enum):
    NEGATIVE_RESIDUAL = "NEGATIVE_RESIDUAL"
    UNIT_PRICE_OUT_OF_BAND = "UNIT_PRICE_OUT_OF_BAND"
    SSP_OUT_OF_CORRIDOR = "SSP_OUT_OF_CORRIDOR"


class UnresolvedReason(str, Enum):
    MISSING_APPROVED_SSP = "MISSING_APPROVED_SSP"
    NO_RESIDUAL_ELIGIBLE_LINE = "NO_RESIDUAL_ELIGIBLE_LINE"
    RESIDUAL_NOT_ALLOWED = "RESIDUAL_NOT_ALLOWED"
    UNPRICED_LINES = "UNPRICED_LINES"
    ZERO_SSP_WEIGHT = "ZERO_SSP_WEIGHT"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedSsp:
    """An SSP catalog entry as seen by the engine."""

    entry_id: str
    unit_ssp: Decimal
    status: str
    method: str
    effective_from: date
    corridor_min_pct: Decimal | None = None
    corridor_max_pct: Decimal | None = None
    peer_median: Decimal | None = None

    @property
    def is_approved(self) -> bool:
        return self.status == "APPROVED"


@dataclass(frozen=True)
class AllocationLineInput:
    """
    One invoice line with its pricing snapshot.

    ``approved_ssp`` is the APPROVED entry effective on the invoice date;
    ``working_ssp`` is the best entry in any status (the approved one when
    it exists) and is what residual mode prices against.
    """

    line_id: str
    product_id: str
    quantity: Decimal
    listed_amount: Decimal
    approved_ssp: ResolvedSsp | None = None
    working_ssp: ResolvedSsp | None = None
    source_line_id: str | None = None

    def __post_init__(self) -> None:
        require_decimal(self.quantity, "quantity")
        require_decimal(self.listed_amount, "listed_amount")
        if self.quantity < 0:
            raise ValueError(f"Line {self.line_id} has negative quantity {self.quantity}")


@dataclass(frozen=True)
class AllocationPolicy:
    rounding: RoundingMode = RoundingMode.HALF_UP
    residual_allowed: bool = True
    residual_eligible_products: frozenset[str] = frozenset()
    corridor_tolerance_pct: Decimal = Decimal("0.20")

    def is_residual_eligible(self, product_id: str) -> bool:
        return product_id in self.residual_eligible_products


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CorridorFlag:
    reason: FlagReason
    line_id: str | None = None
    product_id: str | None = None
    detail: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "line_id": self.line_id,
            "product_id": self.product_id,
            "detail": dict(self.detail),
        }


@dataclass(frozen=True)
class AllocatedLine:
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
class AllocationComputation:
    """
    Complete result of one strategy run.

    Guarantees:
        - ``total_allocated == total`` (checked at construction).
    """

    method: AllocationMethod
    total: Money
    lines: tuple[AllocatedLine, ...]
    rounding_adjustment: Decimal
    corridor_flags: tuple[CorridorFlag, ...] = ()

    def __post_init__(self) -> None:
        # INVARIANT: sum-to-total
        if self.total_allocated != self.total.amount:
            raise ValueError(
                f"Allocation does not sum to total: {self.total_allocated} != {self.total.amount}"
            )

    @property
    def total_allocated(self) -> Decimal:
        return sum((line.allocated_amount for line in self.lines), Decimal("0"))

    @property
    def corridor_flag(self) -> bool:
        return bool(self.corridor_flags)


@dataclass(frozen=True)
class StrategyCheck:
    """Whether a strategy can price every line it was given."""

    resolvable: bool
    missing_products: tuple[str, ...] = ()
    reason: UnresolvedReason | None = None


@dataclass(frozen=True)
class StrategyDecision:
    method: AllocationMethod | None
    requested: StrategyRequest
    missing_products: tuple[str, ...] = ()
    eligible_products_present: tuple[str, ...] = ()
    reason: UnresolvedReason | None = None

    @property
    def is_resolved(self) -> bool:
        return self.method is not None


def _distinct(products: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(products))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class AllocationStrategy(ABC):
    """
    Strategy interface for splitting an invoice total across lines.

    Contract:
        ``check`` reports whether every line can be priced; ``allocate`` may
        only be called when ``check`` is resolvable.
    Guarantees:
        - ``allocate`` returns a computation whose lines sum to the total.
    """

    method: ClassVar[AllocationMethod]

    @abstractmethod
    def check(
        self,
        lines: Sequence[AllocationLineInput],
        policy: AllocationPolicy,
    ) -> StrategyCheck:
        ...

    @abstractmethod
    def allocate(
        self,
        *,
        lines: Sequence[AllocationLineInput],
        total: Money,
        policy: AllocationPolicy,
    ) -> AllocationComputation:
        ...

    def _require_resolvable(
        self, lines: Sequence[AllocationLineInput], total: Money, policy: AllocationPolicy
    ) -> None:
        if not lines:
            raise ValueError("Cannot allocate an invoice without lines")
        require_minor_units(total.amount, total.currency)
        check = self.check(lines, policy)
        if not check.resolvable:
            raise ValueError(
                f"{self.method.value} cannot price lines: {check.reason} "
                f"(missing: {', '.join(check.missing_products)})"
            )


def _band_flags(
    line: AllocationLineInput,
    ssp: ResolvedSsp,
    allocated: Decimal,
    tolerance: Decimal,
) -> list[CorridorFlag]:
    flags: list[CorridorFlag] = []
    band = unit_price_band(ssp.unit_ssp, ssp.corridor_min_pct, ssp.corridor_max_pct)
    if band is not None and line.quantity > 0:
        unit_price = allocated / line.quantity
        low, high = band
        if unit_price < low or unit_price > high:
            flags.append(
                CorridorFlag(
                    reason=FlagReason.UNIT_PRICE_OUT_OF_BAND,
                    line_id=line.line_id,
                    product_id=line.product_id,
                    detail={
                        "unit_price": str(unit_price.quantize(WEIGHT_QUANTUM)),
                        "low": str(low),
                        "high": str(high),
                    },
                )
            )
    variance = compute_variance(ssp.unit_ssp, ssp.peer_median)
    if variance is not None and variance > tolerance:
        flags.append(
            CorridorFlag(
                reason=FlagReason.SSP_OUT_OF_CORRIDOR,
                line_id=line.line_id,
                product_id=line.product_id,
                detail={
                    "unit_ssp": str(ssp.unit_ssp),
                    "median_ssp": str(ssp.peer_median),
                    "variance_pct": str(variance.quantize(WEIGHT_QUANTUM)),
                },
            )
        )
    return flags


class RelativeSspStrategy(AllocationStrategy):
    """
    Allocate in proportion to ssp x quantity using APPROVED SSPs.

    Contract:
        w_i = ssp_i * q_i / sum(ssp_j * q_j); a_i = round(w_i * total).
    Guarantees:
        - Sum-to-total via the largest-line rounding adjustment.
        - Lines whose allocated unit price leaves their SSP band, or whose
          SSP is out of corridor against its peer median, are flagged.
    """

    method = AllocationMethod.RELATIVE_SSP

    def check(self, lines, policy) -> StrategyCheck:
        missing = _distinct([ln.product_id for ln in lines if ln.approved_ssp is None])
        if missing:
            return StrategyCheck(False, missing, UnresolvedReason.MISSING_APPROVED_SSP)
        if all(ln.approved_ssp.unit_ssp * ln.quantity == 0 for ln in lines):
            return StrategyCheck(
                False, _distinct([ln.product_id for ln in lines]), UnresolvedReason.ZERO_SSP_WEIGHT
            )
        return StrategyCheck(True)

    @traced_engine(
        "relative_ssp", "1.0",
        fingerprint_fields=("lines", "total", "policy"),
    )
    def allocate(self, *, lines, total, policy) -> AllocationComputation:
        self._require_resolvable(lines, total, policy)

        distribution = distribute_proportionally(
            total.amount,
            [ln.approved_ssp.unit_ssp * ln.quantity for ln in lines],
            total.currency,
            policy.rounding,
        )

        allocated: list[AllocatedLine] = []
        flags: list[CorridorFlag] = []
        for line, amount, weight in zip(lines, distribution.amounts, distribution.weights):
            line_flags = _band_flags(line, line.approved_ssp, amount, policy.corridor_tolerance_pct)
            flags.extend(line_flags)
            allocated.append(
                AllocatedLine(
                    line_id=line.line_id,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    listed_amount=line.listed_amount,
                    allocated_amount=amount,
                    weight=weight,
                    basis=AllocationBasis.SSP,
                    unit_ssp=line.approved_ssp.unit_ssp,
                    ssp_entry_id=line.approved_ssp.entry_id,
                    source_line_id=line.source_line_id,
                    corridor_flag=bool(line_flags),
                )
            )

        return AllocationComputation(
            method=self.method,
            total=total,
            lines=tuple(allocated),
            rounding_adjustment=distribution.rounding_adjustment,
            corridor_flags=tuple(flags),
        )


class ResidualStrategy(AllocationStrategy):
    """
    Price observable lines at ssp x quantity and give the rest to the
    residual-eligible lines.

    Contract:
        - A line whose product is residual-eligible takes part in the
          residual split even if it also has an SSP.
        - Every other line must have an SSP in some status.
        - The remainder is split across residual lines by listed amount
          (equally when listed amounts sum to zero).
        - With no residual lines, the total is spread over priced lines in
          proportion to ssp x quantity.
    Guarantees:
        - Sum-to-total.  A negative remainder clips residual lines to zero,
          scales priced lines back to the total and raises a
          NEGATIVE_RESIDUAL flag.
    """

    method = AllocationMethod.RESIDUAL

    def _partition(self, lines, policy):
        priced, residual, unpriced = [], [], []
        for index, line in enumerate(lines):
            if policy.is_residual_eligible(line.product_id):
                residual.append(index)
            elif line.working_ssp is not None:
                priced.append(index)
            else:
                unpriced.append(index)
        return priced, residual, unpriced

    def check(self, lines, policy) -> StrategyCheck:
        priced, residual, unpriced = self._partition(lines, policy)
        if unpriced:
            return StrategyCheck(
                False,
                _distinct([lines[i].product_id for i in unpriced]),
                UnresolvedReason.UNPRICED_LINES,
            )
        if not residual and all(
            lines[i].working_ssp.unit_ssp * lines[i].quantity == 0 for i in priced
        ):
            return StrategyCheck(
                False, _distinct([ln.product_id for ln in lines]), UnresolvedReason.ZERO_SSP_WEIGHT
            )
        return StrategyCheck(True)

    @traced_engine(
        "residual", "1.0",
        fingerprint_fields=("lines", "total", "policy"),
    )
    def allocate(self, *, lines, total, policy) -> AllocationComputation:
        self._require_resolvable(lines, total, policy)
        currency = total.currency
        rounding = policy.rounding
        priced, residual, _ = self._partition(lines, policy)

        amounts: dict[int, Decimal] = {}
        weights: dict[int, Decimal] = {}
        flags: list[CorridorFlag] = []
        adjustment = Decimal("0")
        clipped = False

        priced_bases = [lines[i].working_ssp.unit_ssp * lines[i].quantity for i in priced]
        for i, basis in zip(priced, priced_bases):
            amounts[i] = currency.quantize(basis, rounding)
        remainder = total.amount - sum((amounts[i] for i in priced), Decimal("0"))

        if residual and (remainder >= 0 or not priced):
            split = distribute_proportionally(
                remainder, [lines[i].listed_amount for i in residual], currency, rounding
            )
            adjustment = split.rounding_adjustment
            for i, amount in zip(residual, split.amounts):
                amounts[i] = amount
        else:
            if remainder < 0:
                clipped = True
                logger.warning(
                    "negative_residual_clipped",
                    extra={
                        "remainder": str(remainder),
                        "residual_line_count": len(residual),
                        "priced_line_count": len(priced),
                    },
                )
                flags.append(
                    CorridorFlag(
                        reason=FlagReason.NEGATIVE_RESIDUAL,
                        detail={
                            "remainder": str(remainder),
                            "clipped_lines": ",".join(lines[i].line_id for i in residual),
                        },
                    )
                )
            for i in residual:
                amounts[i] = Decimal("0")
            if priced:
                rebalance = distribute_proportionally(total.amount, priced_bases, currency, rounding)
                adjustment = rebalance.rounding_adjustment
                for i, amount in zip(priced, rebalance.amounts):
                    amounts[i] = amount

        if total.amount != 0:
            for i, amount in amounts.items():
                weights[i] = (amount / total.amount).quantize(WEIGHT_QUANTUM)

        allocated: list[AllocatedLine] = []
        residual_set = set(residual)
        for index, line in enumerate(lines):
            amount = amounts[index]
            is_residual = index in residual_set
            ssp = None if is_residual else line.working_ssp
            line_flags = (
                []
                if ssp is None
                else _band_flags(line, ssp, amount, policy.corridor_tolerance_pct)
            )
            flags.extend(line_flags)
            allocated.append(
                AllocatedLine(
                    line_id=line.line_id,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    listed_amount=line.listed_amount,
                    allocated_amount=amount,
                    weight=weights.get(index, Decimal("0")),
                    basis=AllocationBasis.RESIDUAL if is_residual else AllocationBasis.SSP,
                    unit_ssp=ssp.unit_ssp if ssp else None,
                    ssp_entry_id=ssp.entry_id if ssp else None,
                    source_line_id=line.source_line_id,
                    corridor_flag=bool(line_flags) or (is_residual and clipped),
                )
            )

        return AllocationComputation(
            method=self.method,
            total=total,
            lines=tuple(allocated),
            rounding_adjustment=adjustment,
            corridor_flags=tuple(flags),
        )


_STRATEGIES: dict[AllocationMethod, AllocationStrategy] = {
    AllocationMethod.RELATIVE_SSP: RelativeSspStrategy(),
    AllocationMethod.RESIDUAL: ResidualStrategy(),
}


def get_strategy(method: AllocationMethod) -> AllocationStrategy:
    """Return the registered strategy for a method."""
    try:
        return _STRATEGIES[AllocationMethod(method)]
    except KeyError as e:
        raise ValueError(f"No strategy registered for {method}") from e


# ---------------------------------------------------------------------------
# Determination
# ---------------------------------------------------------------------------


@traced_engine(
    "strategy_determination", "1.0",
    fingerprint_fields=("lines", "requested", "policy"),
)
def determine_allocation_strategy(
    *,
    lines: Sequence[AllocationLineInput],
    requested: StrategyRequest,
    policy: AllocationPolicy,
) -> StrategyDecision:
    """
    Choose the allocation method for an invoice.

    An explicit request is returned unchanged.  AUTO yields RELATIVE_SSP
    when every line has an APPROVED SSP; otherwise RESIDUAL when the policy
    allows residual allocation and at least one line sells an eligible
    product; otherwise the decision is unresolved, with the missing
    products and the reason attached.
    """
    requested = StrategyRequest(requested)
    missing = _distinct([ln.product_id for ln in lines if ln.approved_ssp is None])
    eligible = _distinct([ln.product_id for ln in lines if policy.is_residual_eligible(ln.product_id)])

    match requested:
        case StrategyRequest.RELATIVE_SSP:
            method = AllocationMethod.RELATIVE_SSP
        case StrategyRequest.RESIDUAL:
            method = AllocationMethod.RESIDUAL
        case StrategyRequest.AUTO:
            if not missing:
                method = AllocationMethod.RELATIVE_SSP
            elif policy.residual_allowed and eligible:
                method = AllocationMethod.RESIDUAL
            else:
                reason = (
                    UnresolvedReason.RESIDUAL_NOT_ALLOWED
                    if not policy.residual_allowed
                    else UnresolvedReason.NO_RESIDUAL_ELIGIBLE_LINE
                )
                return StrategyDecision(
                    method=None,
                    requested=requested,
                    missing_products=missing,
                    eligible_products_present=eligible,
                    reason=reason,
                )

    return StrategyDecision(
        method=method,
        requested=requested,
        missing_products=missing,
        eligible_products_present=eligible,
    )
