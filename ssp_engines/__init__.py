"""
Module: ssp_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the canonical import surface for
    ssp_modules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import ssp_kernel (domain values, exceptions, logging) and
    sibling engine modules.  MUST NOT import ssp_modules or ssp_config.

Invariants enforced:
    - Purity: engines never read the clock or the database.  Dates and
      pricing snapshots are passed in explicitly.
    - Decimal-only arithmetic: floats are rejected at the boundary.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine entry point is traced via ``@traced_engine``, emitting
    SSP_ENGINE_TRACE records with engine name, version, input fingerprint
    and duration.
"""

from ssp_engines.allocation import (
    AllocatedLine,
    AllocationBasis,
    AllocationComputation,
    AllocationLineInput,
    AllocationMethod,
    AllocationPolicy,
    AllocationStrategy,
    CorridorFlag,
    FlagReason,
    RelativeSspStrategy,
    ResidualStrategy,
    ResolvedSsp,
    StrategyCheck,
    StrategyDecision,
    StrategyRequest,
    UnresolvedReason,
    determine_allocation_strategy,
    get_strategy,
)
from ssp_engines.bundles import (
    BundleComponentSpec,
    BundleWeightCheck,
    ExpandableLine,
    ExpandedLine,
    expand_bundle_line,
    validate_bundle_components,
)
from ssp_engines.corridor import (
    CorridorBreach,
    CorridorCheck,
    PeerEntry,
    check_corridor_compliance,
    compute_median,
    compute_variance,
    find_corridor_breaches,
    unit_price_band,
)
from ssp_engines.discounts import (
    DiscountApplication,
    DiscountCalculator,
    DiscountContext,
    DiscountKind,
    DiscountLine,
    DiscountParams,
    DiscountResult,
    DiscountRuleSnapshot,
    DiscountTier,
    PartnerParams,
    PromoParams,
    PropParams,
    ResidualParams,
    RuleUsage,
    SkippedRule,
    SkipReason,
    TieredParams,
    parse_discount_params,
    params_to_dict,
)
from ssp_engines.rounding import Distribution, distribute_proportionally

__all__ = [
    # allocation
    "AllocatedLine",
    "AllocationBasis",
    "AllocationComputation",
    "AllocationLineInput",
    "AllocationMethod",
    "AllocationPolicy",
    "AllocationStrategy",
    "CorridorFlag",
    "FlagReason",
    "RelativeSspStrategy",
    "ResidualStrategy",
    "ResolvedSsp",
    "StrategyCheck",
    "StrategyDecision",
    "StrategyRequest",
    "UnresolvedReason",
    "determine_allocation_strategy",
    "get_strategy",
    # bundles
    "BundleComponentSpec",
    "BundleWeightCheck",
    "ExpandableLine",
    "ExpandedLine",
    "expand_bundle_line",
    "validate_bundle_components",
    # corridor
    "CorridorBreach",
    "CorridorCheck",
    "PeerEntry",
    "check_corridor_compliance",
    "compute_median",
    "compute_variance",
    "find_corridor_breaches",
    "unit_price_band",
    # discounts
    "DiscountApplication",
    "DiscountCalculator",
    "DiscountContext",
    "DiscountKind",
    "DiscountLine",
    "DiscountParams",
    "DiscountResult",
    "DiscountRuleSnapshot",
    "DiscountTier",
    "PartnerParams",
    "PromoParams",
    "PropParams",
    "ResidualParams",
    "RuleUsage",
    "SkippedRule",
    "SkipReason",
    "TieredParams",
    "parse_discount_params",
    "params_to_dict",
    # rounding
    "Distribution",
    "distribute_proportionally",
]
