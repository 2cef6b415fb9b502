"""
Module: ssp_modules.allocation.orm
Responsibility:
    SQLAlchemy ORM persistence models for allocation audits, their
    per-line allocations, and the products behind unresolved attempts.

Architecture position:
    **Modules layer** -- ORM models inheriting from ``TrackedBase``.

Invariants enforced:
    - At most one audit per (company, invoice, run)
      (uq_ssp_allocation_audit_run).
    - Products that blocked an allocation are recorded once per
      (company, invoice, run, product) (uq_ssp_unresolved_pricing_product).
    - Audits, lines and unresolved-pricing rows are immutable from
      creation; the kernel immutability listeners reject UPDATE and DELETE.
    - All monetary fields use Decimal (Numeric(38,9)).

Failure modes:
    - IntegrityError on a concurrent duplicate run; the service maps it to
      a DUPLICATE outcome.
    - ImmutabilityViolationError on any edit.

Audit relevance:
    - AllocationAuditModel is the durable evidence trail for every
      allocated invoice: inputs snapshot, per-line results, corridor
      flags, totals and processing time.
    - AllocationLineModel rows are what the recognition scheduler reads.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ssp_kernel.db.base import TrackedBase, UUIDString


class AllocationAuditModel(TrackedBase):
    """One completed allocation run for one invoice."""

    __tablename__ = "ssp_allocation_audits"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "invoice_id", "run_id", name="uq_ssp_allocation_audit_run",
        ),
        Index("idx_ssp_allocation_audit_date", "company_id", "invoice_date"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_date: Mapped[date] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    gross_invoice_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_discount: Mapped[Decimal] = mapped_column(nullable=False)
    total_invoice_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_allocated_amount: Mapped[Decimal] = mapped_column(nullable=False)
    rounding_adjustment: Mapped[Decimal] = mapped_column(nullable=False)
    corridor_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    corridor_flags: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    inputs: Mapped[dict[str, Any]] = mapped_column(default=dict)
    results: Mapped[dict[str, Any]] = mapped_column(default=dict)

    lines: Mapped[list["AllocationLineModel"]] = relationship(
        "AllocationLineModel",
        back_populates="audit",
        order_by="AllocationLineModel.line_index",
        lazy="selectin",
    )

    def to_dto(self):
        from ssp_engines.allocation import AllocationMethod, StrategyRequest
        from ssp_modules.allocation.models import AllocationAudit

        return AllocationAudit(
            id=self.id,
            company_id=self.company_id,
            invoice_id=self.invoice_id,
            run_id=self.run_id,
            invoice_date=self.invoice_date,
            currency=self.currency,
            method=AllocationMethod(self.method),
            strategy=StrategyRequest(self.strategy),
            gross_invoice_amount=self.gross_invoice_amount,
            total_discount=self.total_discount,
            total_invoice_amount=self.total_invoice_amount,
            total_allocated_amount=self.total_allocated_amount,
            rounding_adjustment=self.rounding_adjustment,
            corridor_flag=self.corridor_flag,
            processing_time_ms=self.processing_time_ms,
            inputs=dict(self.inputs or {}),
            results=dict(self.results or {}),
            corridor_flags=tuple(self.corridor_flags or ()),
            lines=tuple(line.to_dto() for line in self.lines),
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "AllocationAuditModel":
        return cls(
            id=dto.id,
            company_id=dto.company_id,
            invoice_id=dto.invoice_id,
            run_id=dto.run_id,
            invoice_date=dto.invoice_date,
            currency=dto.currency,
            method=dto.method.value,
            strategy=dto.strategy.value,
            gross_invoice_amount=dto.gross_invoice_amount,
            total_discount=dto.total_discount,
            total_invoice_amount=dto.total_invoice_amount,
            total_allocated_amount=dto.total_allocated_amount,
            rounding_adjustment=dto.rounding_adjustment,
            corridor_flag=dto.corridor_flag,
            corridor_flags=list(dto.corridor_flags),
            processing_time_ms=dto.processing_time_ms,
            inputs=dto.inputs,
            results=dto.results,
            created_at=dto.created_at,
            updated_at=dto.created_at,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<AllocationAuditModel {self.invoice_id}/{self.run_id} {self.method}>"


class AllocationLineModel(TrackedBase):
    """Allocated amount for one line of an audited run."""

    __tablename__ = "ssp_allocation_lines"

    __table_args__ = (
        UniqueConstraint("audit_id", "line_index", name="uq_ssp_allocation_line_index"),
        Index("idx_ssp_allocation_line_product", "product_id"),
    )

    audit_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ssp_allocation_audits.id"),
        nullable=False,
    )
    line_index: Mapped[int] = mapped_column(Integer, nullable=False)
    line_id: Mapped[str] = mapped_column(String(200), nullable=False)
    source_line_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    listed_amount: Mapped[Decimal] = mapped_column(nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(nullable=False)
    weight: Mapped[Decimal] = mapped_column(nullable=False)
    basis: Mapped[str] = mapped_column(String(20), nullable=False)
    unit_ssp: Mapped[Decimal | None] = mapped_column(nullable=True)
    ssp_entry_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    corridor_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    audit: Mapped["AllocationAuditModel"] = relationship(
        "AllocationAuditModel",
        back_populates="lines",
    )

    def to_dto(self):
        from ssp_engines.allocation import AllocationBasis
        from ssp_modules.allocation.models import AllocationLineRecord

        return AllocationLineRecord(
            id=self.id,
            audit_id=self.audit_id,
            line_index=self.line_index,
            line_id=self.line_id,
            product_id=self.product_id,
            quantity=self.quantity,
            listed_amount=self.listed_amount,
            allocated_amount=self.allocated_amount,
            weight=self.weight,
            basis=AllocationBasis(self.basis),
            unit_ssp=self.unit_ssp,
            ssp_entry_id=self.ssp_entry_id,
            source_line_id=self.source_line_id,
            corridor_flag=self.corridor_flag,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID, created_at: datetime) -> "AllocationLineModel":
        return cls(
            id=dto.id,
            audit_id=dto.audit_id,
            line_index=dto.line_index,
            line_id=dto.line_id,
            source_line_id=dto.source_line_id,
            product_id=dto.product_id,
            quantity=dto.quantity,
            listed_amount=dto.listed_amount,
            allocated_amount=dto.allocated_amount,
            weight=dto.weight,
            basis=dto.basis.value,
            unit_ssp=dto.unit_ssp,
            ssp_entry_id=dto.ssp_entry_id,
            corridor_flag=dto.corridor_flag,
            created_at=created_at,
            updated_at=created_at,
            created_by_id=created_by_id,
        )


class UnresolvedPricingModel(TrackedBase):
    """
    A product that blocked an allocation attempt.

    Written when an invoice ends UNRESOLVED_PRICING, one row per missing
    product.  No audit exists for such invoices, so these rows are the
    only record that the product was billed; the compliance check reads
    them when reporting MISSING_SSP.
    """

    __tablename__ = "ssp_unresolved_pricing"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "invoice_id", "run_id", "product_id",
            name="uq_ssp_unresolved_pricing_product",
        ),
        Index("idx_ssp_unresolved_pricing_product", "company_id", "product_id"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    invoice_id: Mapped[str] = mapped_column(String(100), nullable=False)
    run_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    invoice_date: Mapped[date] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)

    def __repr__(self) -> str:
        return f"<UnresolvedPricingModel {self.invoice_id}/{self.run_id} {self.product_id}>"
