"""
Module: ssp_engines.discounts
Responsibility:
    Kind-specific discount parameters as a tagged union, their validation,
    and the sequential application of discount rules to an invoice total.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Usage history is passed
    in by the caller; applications are returned, not written.

Invariants enforced:
    - Each rule kind has exactly one params variant; ``compute_discount``
      matches exhaustively over the variants.
    - Rules apply in (priority ascending, tie-break) order.  Each discount
      is computed against the running total left by the previous rule, so
      discounts stack sequentially.
    - Rules whose cumulative usage has reached ``max_usage_count`` or
      ``max_usage_amount`` are skipped; a single application is capped at
      the remaining amount headroom.
    - A discount never exceeds the running total, so the net total is never
      negative.
    - Amounts are rounded to the currency minor unit with the policy mode.

Failure modes:
    - InvalidDiscountParamsError from ``parse_discount_params`` when params
      do not fit the kind.
    - ValueError for programming errors (unknown tie-break, non-Decimal).

Usage:
    calculator = DiscountCalculator()
    result = calculator.apply(
        rules=rules,
        usage={},
        context=DiscountContext(...),
        rounding=RoundingMode.HALF_UP,
    )
    net = result.net_total
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, ClassVar, assert_never

from ssp_engines.tracer import traced_engine
from ssp_kernel.domain.validation import to_decimal
from ssp_kernel.domain.values import Currency, RoundingMode
from ssp_kernel.exceptions import InvalidDiscountParamsError
from ssp_kernel.logging_config import get_logger

logger = get_logger("engines.discounts")


class DiscountKind(str, Enum):
    PROP = "PROP"
    RESIDUAL = "RESIDUAL"
    TIERED = "TIERED"
    PROMO = "PROMO"
    PARTNER = "PARTNER"


# ---------------------------------------------------------------------------
# Params variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PropParams:
    """Flat percentage of the running total."""

    kind: ClassVar[DiscountKind] = DiscountKind.PROP
    pct: Decimal


@dataclass(frozen=True)
class ResidualParams:
    """Percentage of the listed amount of lines selling residual products."""

    kind: ClassVar[DiscountKind] = DiscountKind.RESIDUAL
    pct: Decimal
    residual_products: frozenset[str]


@dataclass(frozen=True)
class DiscountTier:
    threshold: Decimal
    pct: Decimal


@dataclass(frozen=True)
class TieredParams:
    """Highest tier whose threshold the running total meets."""

    kind: ClassVar[DiscountKind] = DiscountKind.TIERED
    tiers: tuple[DiscountTier, ...]


@dataclass(frozen=True)
class PromoParams:
    """Percentage of the running total inside an inclusive date window."""

    kind: ClassVar[DiscountKind] = DiscountKind.PROMO
    pct: Decimal
    start_date: date
    end_date: date


@dataclass(frozen=True)
class PartnerParams:
    """Percentage of the running total for partner customers only."""

    kind: ClassVar[DiscountKind] = DiscountKind.PARTNER
    pct: Decimal
    partner_customers: frozenset[str]


DiscountParams = PropParams | ResidualParams | TieredParams | PromoParams | PartnerParams


def _require_pct(kind: DiscountKind, value: Any, name: str = "pct") -> Decimal:
    if value is None:
        raise InvalidDiscountParamsError(kind.value, f"{name} is required")
    try:
        pct = to_decimal(value, name)
    except ValueError as e:
        raise InvalidDiscountParamsError(kind.value, str(e)) from e
    if not (Decimal("0") < pct <= Decimal("1")):
        raise InvalidDiscountParamsError(kind.value, f"{name} must satisfy 0 < {name} <= 1, got {pct}")
    return pct


def _require_date(kind: DiscountKind, value: Any, name: str) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as e:
            raise InvalidDiscountParamsError(kind.value, f"{name} is not an ISO date: {value!r}") from e
    raise InvalidDiscountParamsError(kind.value, f"{name} is required")


def _require_str_set(kind: DiscountKind, value: Any, name: str) -> frozenset[str]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidDiscountParamsError(kind.value, f"{name} must be a list")
    items = frozenset(str(v) for v in value)
    if not items:
        raise InvalidDiscountParamsError(kind.value, f"{name} must not be empty")
    return items


def _parse_tiers(raw: Mapping[str, Any]) -> tuple[DiscountTier, ...]:
    kind = DiscountKind.TIERED
    if "tiers" in raw:
        raw_tiers = raw["tiers"]
    elif "threshold" in raw:
        # single-tier shorthand {threshold, pct}
        raw_tiers = [{"threshold": raw["threshold"], "pct": raw.get("pct")}]
    else:
        raise InvalidDiscountParamsError(kind.value, "tiers is required")
    if not isinstance(raw_tiers, (list, tuple)) or not raw_tiers:
        raise InvalidDiscountParamsError(kind.value, "tiers must be a non-empty list")

    tiers: list[DiscountTier] = []
    for i, item in enumerate(raw_tiers):
        if not isinstance(item, Mapping):
            raise InvalidDiscountParamsError(kind.value, f"tiers[{i}] must be an object")
        try:
            threshold = to_decimal(item.get("threshold"), f"tiers[{i}].threshold")
        except ValueError as e:
            raise InvalidDiscountParamsError(kind.value, str(e)) from e
        if threshold < 0:
            raise InvalidDiscountParamsError(kind.value, f"tiers[{i}].threshold cannot be negative")
        tiers.append(DiscountTier(threshold, _require_pct(kind, item.get("pct"), f"tiers[{i}].pct")))

    tiers.sort(key=lambda t: t.threshold)
    thresholds = [t.threshold for t in tiers]
    if len(set(thresholds)) != len(thresholds):
        raise InvalidDiscountParamsError(kind.value, "tier thresholds must be unique")
    return tuple(tiers)


def parse_discount_params(kind: DiscountKind | str, raw: Mapping[str, Any]) -> DiscountParams:
    """
    Validate a raw params mapping against its kind and build the variant.

    Raises:
        InvalidDiscountParamsError: If the mapping does not fit the kind.
    """
    try:
        kind = DiscountKind(kind)
    except ValueError as e:
        raise InvalidDiscountParamsError(str(kind), "unknown discount kind") from e
    if not isinstance(raw, Mapping):
        raise InvalidDiscountParamsError(kind.value, "params must be an object")

    match kind:
        case DiscountKind.PROP:
            return PropParams(pct=_require_pct(kind, raw.get("pct")))
        case DiscountKind.RESIDUAL:
            return ResidualParams(
                pct=_require_pct(kind, raw.get("pct")),
                residual_products=_require_str_set(kind, raw.get("residual_products"), "residual_products"),
            )
        case DiscountKind.TIERED:
            return TieredParams(tiers=_parse_tiers(raw))
        case DiscountKind.PROMO:
            start = _require_date(kind, raw.get("start_date"), "start_date")
            end = _require_date(kind, raw.get("end_date"), "end_date")
            if end < start:
                raise InvalidDiscountParamsError(kind.value, "end_date is before start_date")
            return PromoParams(pct=_require_pct(kind, raw.get("pct")), start_date=start, end_date=end)
        case DiscountKind.PARTNER:
            return PartnerParams(
                pct=_require_pct(kind, raw.get("pct")),
                partner_customers=_require_str_set(kind, raw.get("partner_customers"), "partner_customers"),
            )
        case _:
            assert_never(kind)


def params_to_dict(params: DiscountParams) -> dict[str, Any]:
    """JSON-safe representation for storage; decimals become strings."""
    match params:
        case PropParams(pct=pct):
            return {"pct": str(pct)}
        case ResidualParams(pct=pct, residual_products=products):
            return {"pct": str(pct), "residual_products": sorted(products)}
        case TieredParams(tiers=tiers):
            return {"tiers": [{"threshold": str(t.threshold), "pct": str(t.pct)} for t in tiers]}
        case PromoParams(pct=pct, start_date=start, end_date=end):
            return {"pct": str(pct), "start_date": start.isoformat(), "end_date": end.isoformat()}
        case PartnerParams(pct=pct, partner_customers=customers):
            return {"pct": str(pct), "partner_customers": sorted(customers)}
        case _:
            assert_never(params)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


class SkipReason(str, Enum):
    INACTIVE = "INACTIVE"
    NOT_EFFECTIVE = "NOT_EFFECTIVE"
    USAGE_COUNT_EXHAUSTED = "USAGE_COUNT_EXHAUSTED"
    USAGE_AMOUNT_EXHAUSTED = "USAGE_AMOUNT_EXHAUSTED"
    OUTSIDE_PROMO_WINDOW = "OUTSIDE_PROMO_WINDOW"
    NOT_PARTNER_CUSTOMER = "NOT_PARTNER_CUSTOMER"
    BELOW_TIER_THRESHOLD = "BELOW_TIER_THRESHOLD"
    NO_RESIDUAL_LINES = "NO_RESIDUAL_LINES"
    NOTHING_TO_DISCOUNT = "NOTHING_TO_DISCOUNT"
    ZERO_AMOUNT = "ZERO_AMOUNT"


@dataclass(frozen=True)
class DiscountRuleSnapshot:
    """Read-only copy of a discount rule taken before computation."""

    rule_id: str
    code: str
    params: DiscountParams
    priority: int
    effective_from: date
    effective_to: date | None = None
    active: bool = True
    max_usage_count: int | None = None
    max_usage_amount: Decimal | None = None

    @property
    def kind(self) -> DiscountKind:
        return self.params.kind

    def is_effective(self, as_of: date) -> bool:
        return self.effective_from <= as_of and (
            self.effective_to is None or self.effective_to >= as_of
        )


@dataclass(frozen=True)
class RuleUsage:
    """Cumulative history of a rule's recorded applications."""

    application_count: int = 0
    applied_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class DiscountLine:
    product_id: str
    amount: Decimal


@dataclass(frozen=True)
class DiscountContext:
    invoice_date: date
    customer_id: str | None
    currency: Currency
    gross_total: Decimal
    lines: tuple[DiscountLine, ...] = ()


@dataclass(frozen=True)
class DiscountApplication:
    """One rule applied to the running total."""

    rule_id: str
    code: str
    kind: DiscountKind
    sequence: int
    base_amount: Decimal
    pct: Decimal
    computed_amount: Decimal
    total_before: Decimal
    total_after: Decimal
    capped: bool = False

    @property
    def detail(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "sequence": self.sequence,
            "base_amount": str(self.base_amount),
            "pct": str(self.pct),
            "total_before": str(self.total_before),
            "total_after": str(self.total_after),
            "capped": self.capped,
        }


@dataclass(frozen=True)
class SkippedRule:
    rule_id: str
    code: str
    reason: SkipReason


@dataclass(frozen=True)
class DiscountResult:
    gross_total: Decimal
    applications: tuple[DiscountApplication, ...] = field(default_factory=tuple)
    skipped: tuple[SkippedRule, ...] = field(default_factory=tuple)

    @property
    def total_discount(self) -> Decimal:
        return sum((a.computed_amount for a in self.applications), Decimal("0"))

    @property
    def net_total(self) -> Decimal:
        return self.gross_total - self.total_discount


def order_rules(
    rules: Sequence[DiscountRuleSnapshot],
    tie_break: str = "code",
) -> list[DiscountRuleSnapshot]:
    """Sort by priority ascending, then by the configured tie-break."""
    match tie_break:
        case "code":
            return sorted(rules, key=lambda r: (r.priority, r.code, r.rule_id))
        case "effective_from":
            return sorted(rules, key=lambda r: (r.priority, r.effective_from, r.code, r.rule_id))
        case _:
            raise ValueError(f"Unknown discount tie-break: {tie_break}")


def compute_discount(
    params: DiscountParams,
    running_total: Decimal,
    context: DiscountContext,
) -> tuple[Decimal, Decimal, SkipReason | None]:
    """
    Unrounded discount for one rule against the running total.

    Returns:
        (base_amount, pct, skip_reason).  When skip_reason is set the rule
        does not apply and base/pct are informational only.
    """
    match params:
        case PropParams(pct=pct):
            return running_total, pct, None
        case ResidualParams(pct=pct, residual_products=products):
            base = sum(
                (line.amount for line in context.lines if line.product_id in products),
                Decimal("0"),
            )
            if base <= 0:
                return Decimal("0"), pct, SkipReason.NO_RESIDUAL_LINES
            return min(base, running_total), pct, None
        case TieredParams(tiers=tiers):
            met = [t for t in tiers if running_total >= t.threshold]
            if not met:
                return running_total, Decimal("0"), SkipReason.BELOW_TIER_THRESHOLD
            return running_total, met[-1].pct, None
        case PromoParams(pct=pct, start_date=start, end_date=end):
            if not (start <= context.invoice_date <= end):
                return running_total, pct, SkipReason.OUTSIDE_PROMO_WINDOW
            return running_total, pct, None
        case PartnerParams(pct=pct, partner_customers=customers):
            if context.customer_id is None or context.customer_id not in customers:
                return running_total, pct, SkipReason.NOT_PARTNER_CUSTOMER
            return running_total, pct, None
        case _:
            assert_never(params)


class DiscountCalculator:
    """
    Apply discount rules sequentially to an invoice total.

    Contract:
        Pure function of its inputs: the rules, their usage history and the
        invoice context are snapshots read by the caller.
    Guarantees:
        - ``result.net_total == gross_total - sum(applications)``.
        - Every applied amount is positive, rounded to the minor unit, and
          no larger than the running total at that step.
    Non-goals:
        - Does not persist applications; the caller records them.
    """

    @traced_engine(
        "discounts", "1.0",
        fingerprint_fields=("rules", "usage", "context", "rounding", "tie_break"),
    )
    def apply(
        self,
        *,
        rules: Sequence[DiscountRuleSnapshot],
        usage: Mapping[str, RuleUsage],
        context: DiscountContext,
        rounding: RoundingMode,
        tie_break: str = "code",
    ) -> DiscountResult:
        currency = context.currency
        running = context.gross_total
        applications: list[DiscountApplication] = []
        skipped: list[SkippedRule] = []

        for rule in order_rules(rules, tie_break):
            reason = self._precheck(rule, usage.get(rule.rule_id, RuleUsage()), context, running)
            if reason is not None:
                skipped.append(SkippedRule(rule.rule_id, rule.code, reason))
                continue

            base, pct, reason = compute_discount(rule.params, running, context)
            if reason is not None:
                skipped.append(SkippedRule(rule.rule_id, rule.code, reason))
                continue

            amount = currency.quantize(base * pct, rounding)
            capped = False
            if rule.max_usage_amount is not None:
                headroom = rule.max_usage_amount - usage.get(rule.rule_id, RuleUsage()).applied_amount
                if amount > headroom:
                    amount = headroom.quantize(currency.minor_unit, rounding=ROUND_DOWN)
                    capped = True
            if amount > running:
                amount = running
                capped = True
            if amount <= 0:
                skipped.append(SkippedRule(rule.rule_id, rule.code, SkipReason.ZERO_AMOUNT))
                continue

            application = DiscountApplication(
                rule_id=rule.rule_id,
                code=rule.code,
                kind=rule.kind,
                sequence=len(applications) + 1,
                base_amount=base,
                pct=pct,
                computed_amount=amount,
                total_before=running,
                total_after=running - amount,
                capped=capped,
            )
            applications.append(application)
            running = application.total_after
            logger.info(
                "discount_rule_applied",
                extra={
                    "rule_id": rule.rule_id,
                    "code": rule.code,
                    "kind": rule.kind.value,
                    "computed_amount": str(amount),
                    "total_after": str(running),
                    "capped": capped,
                },
            )

        return DiscountResult(
            gross_total=context.gross_total,
            applications=tuple(applications),
            skipped=tuple(skipped),
        )

    def _precheck(
        self,
        rule: DiscountRuleSnapshot,
        usage: RuleUsage,
        context: DiscountContext,
        running: Decimal,
    ) -> SkipReason | None:
        if not rule.active:
            return SkipReason.INACTIVE
        if not rule.is_effective(context.invoice_date):
            return SkipReason.NOT_EFFECTIVE
        if rule.max_usage_count is not None and usage.application_count >= rule.max_usage_count:
            return SkipReason.USAGE_COUNT_EXHAUSTED
        if rule.max_usage_amount is not None and usage.applied_amount >= rule.max_usage_amount:
            return SkipReason.USAGE_AMOUNT_EXHAUSTED
        if running <= 0:
            return SkipReason.NOTHING_TO_DISCOUNT
        return None
