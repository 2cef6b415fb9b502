"""
Module: ssp_modules.discounts.orm
Responsibility:
    SQLAlchemy ORM persistence models for discount rules and applied
    discounts.

Architecture position:
    **Modules layer** -- ORM models inheriting from ``TrackedBase``.

Invariants enforced:
    - One rule version per (company, code, effective_from)
      (uq_ssp_discount_rule_version).
    - A rule is applied at most once per (company, invoice, run)
      (uq_ssp_discount_applied_once).
    - DiscountAppliedModel is append-only; the kernel immutability
      listeners reject UPDATE and DELETE.
    - Params are stored as JSON with decimals as strings.

Failure modes:
    - IntegrityError on duplicate versions or repeated applications.
    - ImmutabilityViolationError on any edit to an applied discount.

Audit relevance:
    - DiscountAppliedModel is the usage history against which
      ``max_usage_count`` and ``max_usage_amount`` are enforced.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ssp_kernel.db.base import TrackedBase, UUIDString


class DiscountRuleModel(TrackedBase):
    """A versioned discount rule."""

    __tablename__ = "ssp_discount_rules"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "code", "effective_from", name="uq_ssp_discount_rule_version",
        ),
        Index("idx_ssp_discount_rule_active", "company_id", "active", "effective_from"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    params: Mapped[dict[str, Any]] = mapped_column(nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[date] = mapped_column(nullable=False)
    effective_to: Mapped[date | None] = mapped_column(nullable=True)
    max_usage_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_usage_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    def to_dto(self):
        from ssp_engines.discounts import parse_discount_params
        from ssp_modules.discounts.models import DiscountRule

        return DiscountRule(
            id=self.id,
            company_id=self.company_id,
            code=self.code,
            params=parse_discount_params(self.kind, self.params),
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            priority=self.priority,
            active=self.active,
            max_usage_count=self.max_usage_count,
            max_usage_amount=self.max_usage_amount,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "DiscountRuleModel":
        from ssp_engines.discounts import params_to_dict

        return cls(
            id=dto.id,
            company_id=dto.company_id,
            code=dto.code,
            kind=dto.kind.value,
            params=params_to_dict(dto.params),
            priority=dto.priority,
            active=dto.active,
            effective_from=dto.effective_from,
            effective_to=dto.effective_to,
            max_usage_count=dto.max_usage_count,
            max_usage_amount=dto.max_usage_amount,
            created_at=dto.created_at,
            updated_at=dto.created_at,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<DiscountRuleModel {self.code} {self.kind} p={self.priority}>"


class DiscountAppliedModel(TrackedBase):
    """Append-only record of one rule applied to one invoice."""

    __tablename__ = "ssp_discounts_applied"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "invoice_id", "run_id", "rule_id",
            name="uq_ssp_discount_applied_once",
        ),
        Index("idx_ssp_discount_applied_rule", "rule_id"),
        Index("idx_ssp_discount_applied_invoice", "company_id", "invoice_id"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[str] = mapped_column(String(100), nullable=False)
    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ssp_discount_rules.id"),
        nullable=False,
    )
    rule_code: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    computed_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    detail: Mapped[dict[str, Any]] = mapped_column(default=dict)
    applied_at: Mapped[datetime] = mapped_column(nullable=False)
    applied_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    allocation_audit_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("ssp_allocation_audits.id"),
        nullable=True,
    )

    def to_dto(self):
        from ssp_engines.discounts import DiscountKind
        from ssp_modules.discounts.models import DiscountApplied

        return DiscountApplied(
            id=self.id,
            company_id=self.company_id,
            invoice_id=self.invoice_id,
            run_id=self.run_id,
            rule_id=self.rule_id,
            rule_code=self.rule_code,
            kind=DiscountKind(self.kind),
            sequence=self.sequence,
            computed_amount=self.computed_amount,
            currency=self.currency,
            applied_at=self.applied_at,
            applied_by=self.applied_by,
            detail=dict(self.detail or {}),
            allocation_audit_id=self.allocation_audit_id,
        )

    @classmethod
    def from_dto(cls, dto) -> "DiscountAppliedModel":
        return cls(
            id=dto.id,
            company_id=dto.company_id,
            invoice_id=dto.invoice_id,
            run_id=dto.run_id,
            rule_id=dto.rule_id,
            rule_code=dto.rule_code,
            kind=dto.kind.value,
            sequence=dto.sequence,
            computed_amount=dto.computed_amount,
            currency=dto.currency,
            detail=dict(dto.detail),
            applied_at=dto.applied_at,
            applied_by=dto.applied_by,
            allocation_audit_id=dto.allocation_audit_id,
            created_at=dto.applied_at,
            updated_at=dto.applied_at,
            created_by_id=dto.applied_by,
        )
