"""
Module: ssp_modules.discounts.models
Responsibility:
    Frozen DTOs for discount rules and the append-only discount
    application log.

Architecture:
    ssp_modules layer -- pure data definitions with ZERO I/O.
    Rule params are the tagged union from ssp_engines.discounts, never a
    raw dict.

Invariants:
    - ``DiscountRule.kind`` always equals ``params.kind``.
    - DiscountApplied rows are never edited after creation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from ssp_engines.discounts import (
    DiscountKind,
    DiscountParams,
    DiscountResult,
    DiscountRuleSnapshot,
)


@dataclass(frozen=True)
class DiscountRule:
    """
    A discount rule version.

    Contract:
        ``priority`` ascending is application order; lower applies first.
    """

    id: UUID
    company_id: str
    code: str
    params: DiscountParams
    effective_from: date
    effective_to: date | None = None
    priority: int = 100
    active: bool = True
    max_usage_count: int | None = None
    max_usage_amount: Decimal | None = None
    created_at: datetime | None = None

    @property
    def kind(self) -> DiscountKind:
        return self.params.kind

    def to_snapshot(self) -> DiscountRuleSnapshot:
        return DiscountRuleSnapshot(
            rule_id=str(self.id),
            code=self.code,
            params=self.params,
            priority=self.priority,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            active=self.active,
            max_usage_count=self.max_usage_count,
            max_usage_amount=self.max_usage_amount,
        )


@dataclass(frozen=True)
class DiscountApplied:
    """One rule actually applied to one invoice in one run."""

    id: UUID
    company_id: str
    invoice_id: str
    run_id: str
    rule_id: UUID
    rule_code: str
    kind: DiscountKind
    sequence: int
    computed_amount: Decimal
    currency: str
    applied_at: datetime
    applied_by: UUID
    detail: dict[str, Any] = field(default_factory=dict)
    allocation_audit_id: UUID | None = None


@dataclass(frozen=True)
class DiscountOutcome:
    """Engine result plus the rows recorded for it."""

    result: DiscountResult
    records: tuple[DiscountApplied, ...] = ()

    @property
    def total_discount(self) -> Decimal:
        return self.result.total_discount

    @property
    def net_total(self) -> Decimal:
        return self.result.net_total
