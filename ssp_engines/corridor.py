"""
Module: ssp_engines.corridor
Responsibility:
    Statistical corridor checks for standalone selling prices: the median
    of a peer group, the relative variance of a candidate against it, the
    batch scan for breaches, and the per-entry unit-price band.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - variance = |candidate - median| / median.
    - An empty peer group is trivially compliant with no median.
    - A zero median cannot produce a variance; the candidate is treated
      as compliant and the variance is reported as None.
    - compliant <=> variance <= tolerance (boundary inclusive).

Failure modes:
    - ValueError on non-Decimal or non-finite inputs.

Usage:
    check = check_corridor_compliance(
        candidate_ssp=Decimal("120"),
        peer_ssps=(Decimal("100"),),
        tolerance_pct=Decimal("0.20"),
    )
    assert check.compliant and check.variance == Decimal("0.2")
"""

from __future__ import annotations

import statistics
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from ssp_engines.tracer import traced_engine
from ssp_kernel.domain.validation import require_decimal
from ssp_kernel.logging_config import get_logger

logger = get_logger("engines.corridor")


@dataclass(frozen=True)
class CorridorCheck:
    """Outcome of comparing one candidate SSP to its peer median."""

    compliant: bool
    median_ssp: Decimal | None
    variance: Decimal | None
    tolerance_pct: Decimal
    peer_count: int


@dataclass(frozen=True)
class PeerEntry:
    """One APPROVED catalog price participating in a peer group."""

    entry_id: str
    product_id: str
    currency: str
    unit_ssp: Decimal


@dataclass(frozen=True)
class CorridorBreach:
    entry_id: str
    product_id: str
    currency: str
    unit_ssp: Decimal
    median_ssp: Decimal
    variance_pct: Decimal
    threshold_pct: Decimal


def compute_median(values: Sequence[Decimal]) -> Decimal | None:
    """Median of the values, or None for an empty sequence."""
    if not values:
        return None
    for i, v in enumerate(values):
        require_decimal(v, f"values[{i}]")
    return Decimal(statistics.median(values))


def compute_variance(candidate: Decimal, median: Decimal | None) -> Decimal | None:
    """Relative deviation of candidate from median; None without a usable median."""
    require_decimal(candidate, "candidate")
    if median is None or median == 0:
        return None
    return abs(candidate - median) / median


@traced_engine(
    "corridor_compliance", "1.0",
    fingerprint_fields=("candidate_ssp", "peer_ssps", "tolerance_pct"),
)
def check_corridor_compliance(
    *,
    candidate_ssp: Decimal,
    peer_ssps: Sequence[Decimal],
    tolerance_pct: Decimal,
) -> CorridorCheck:
    """
    Compare a candidate SSP to the median of its peers.

    Preconditions:
        - ``peer_ssps`` holds the APPROVED prices for the same
          (company, product, currency).
    Postconditions:
        - ``compliant`` is True for an empty peer group.
    """
    require_decimal(tolerance_pct, "tolerance_pct")
    median = compute_median(peer_ssps)
    variance = compute_variance(candidate_ssp, median)
    compliant = variance is None or variance <= tolerance_pct
    return CorridorCheck(
        compliant=compliant,
        median_ssp=median,
        variance=variance,
        tolerance_pct=tolerance_pct,
        peer_count=len(peer_ssps),
    )


@traced_engine(
    "corridor_breaches", "1.0",
    fingerprint_fields=("entries", "threshold_pct", "minimum_peer_group_size"),
)
def find_corridor_breaches(
    *,
    entries: Sequence[PeerEntry],
    threshold_pct: Decimal,
    minimum_peer_group_size: int = 2,
) -> tuple[CorridorBreach, ...]:
    """
    Scan APPROVED entries for prices that drift beyond the alert threshold.

    Entries are grouped by (product, currency); each entry is compared to
    the median of its whole group.  Groups smaller than
    ``minimum_peer_group_size`` are skipped since a lone price is its own
    median.  Results are ordered by (product, currency, entry_id).
    """
    require_decimal(threshold_pct, "threshold_pct")
    groups: dict[tuple[str, str], list[PeerEntry]] = defaultdict(list)
    for entry in entries:
        groups[(entry.product_id, entry.currency)].append(entry)

    breaches: list[CorridorBreach] = []
    for (product_id, currency), members in sorted(groups.items()):
        if len(members) < minimum_peer_group_size:
            logger.debug(
                "corridor_group_skipped",
                extra={
                    "product_id": product_id,
                    "currency": currency,
                    "peer_count": len(members),
                },
            )
            continue
        median = compute_median([m.unit_ssp for m in members])
        for member in sorted(members, key=lambda m: m.entry_id):
            variance = compute_variance(member.unit_ssp, median)
            if variance is not None and variance > threshold_pct:
                breaches.append(
                    CorridorBreach(
                        entry_id=member.entry_id,
                        product_id=product_id,
                        currency=currency,
                        unit_ssp=member.unit_ssp,
                        median_ssp=median,
                        variance_pct=variance,
                        threshold_pct=threshold_pct,
                    )
                )
    return tuple(breaches)


def unit_price_band(
    unit_ssp: Decimal,
    corridor_min_pct: Decimal | None,
    corridor_max_pct: Decimal | None,
) -> tuple[Decimal, Decimal] | None:
    """
    Acceptable unit-price band around an SSP, or None when the entry
    defines no corridor bounds.

    A missing bound is treated as unbounded on that side.
    """
    if corridor_min_pct is None and corridor_max_pct is None:
        return None
    low = unit_ssp * (Decimal("1") - corridor_min_pct) if corridor_min_pct is not None else Decimal("-Infinity")
    high = unit_ssp * (Decimal("1") + corridor_max_pct) if corridor_max_pct is not None else Decimal("Infinity")
    return low, high
