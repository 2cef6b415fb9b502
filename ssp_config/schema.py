"""
SSP engine configuration schema.

Frozen dataclasses produced by ``ssp_config.loader`` from the YAML sets.
Everything here is validated on construction so a bad overlay fails at
load time rather than in the middle of an allocation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from ssp_kernel.domain.values import RoundingMode

VALID_METHODS = frozenset({"OBSERVABLE", "BENCHMARK", "ADJ_COST", "RESIDUAL"})
VALID_TIE_BREAKS = frozenset({"code", "effective_from"})


@dataclass(frozen=True)
class PolicyDefaults:
    """Values used when a company SSP policy omits a field or does not exist."""

    rounding: RoundingMode = RoundingMode.HALF_UP
    residual_allowed: bool = True
    default_method: str = "OBSERVABLE"
    corridor_tolerance_pct: Decimal = Decimal("0.20")
    alert_threshold_pct: Decimal = Decimal("0.15")

    def __post_init__(self) -> None:
        if self.default_method not in VALID_METHODS:
            raise ValueError(f"Unknown default_method: {self.default_method}")
        if not Decimal("0") <= self.corridor_tolerance_pct <= Decimal("1"):
            raise ValueError("corridor_tolerance_pct must be between 0 and 1")
        if not Decimal("0") <= self.alert_threshold_pct <= Decimal("1"):
            raise ValueError("alert_threshold_pct must be between 0 and 1")


@dataclass(frozen=True)
class SspEngineConfig:
    """
    Resolved runtime configuration.

    Guarantees:
        - ``checksum`` is the SHA-256 of the merged YAML data, so two
          configs with the same checksum behave identically.
    """

    config_id: str
    version: int
    company_id: str | None
    bundle_weight_tolerance: Decimal
    stale_draft_days: int
    minimum_peer_group_size: int
    discount_tie_break: str
    policy_defaults: PolicyDefaults
    checksum: str = ""

    def __post_init__(self) -> None:
        if self.bundle_weight_tolerance < Decimal("0"):
            raise ValueError("bundle_weight_tolerance cannot be negative")
        if self.stale_draft_days < 0:
            raise ValueError("stale_draft_days cannot be negative")
        if self.minimum_peer_group_size < 1:
            raise ValueError("minimum_peer_group_size must be at least 1")
        if self.discount_tie_break not in VALID_TIE_BREAKS:
            raise ValueError(
                f"discount_tie_break must be one of {sorted(VALID_TIE_BREAKS)}, "
                f"got {self.discount_tie_break!r}"
            )
