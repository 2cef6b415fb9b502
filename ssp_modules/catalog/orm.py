"""
Module: ssp_modules.catalog.orm
Responsibility:
    SQLAlchemy ORM persistence models for the SSP catalog.  Maps frozen
    dataclass DTOs from ``ssp_modules.catalog.models`` to relational tables.

Architecture position:
    **Modules layer** -- ORM models inheriting from ``TrackedBase``
    (kernel DB base).

Invariants enforced:
    - All monetary and percentage fields use Decimal (Numeric(38,9)).
    - Enum fields stored as String(20) / String(50).
    - One policy row per company (uq_ssp_policy_company).
    - APPROVED entries are protected by the kernel immutability listeners;
      only ``effective_to`` and audit metadata may change.

Failure modes:
    - IntegrityError on duplicate unique constraints.
    - ImmutabilityViolationError on edits to an APPROVED entry's price.

Audit relevance:
    - SspCatalogEntryModel is the priced input to every Relative-SSP
      allocation; allocation lines reference its id.
    - SspEvidenceModel records why a price is what it is.
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ssp_kernel.db.base import TrackedBase, UUIDString


class SspCatalogEntryModel(TrackedBase):
    """
    One effective-dated standalone selling price.

    Guarantees:
        - ``status`` is one of DRAFT, REVIEWED, APPROVED.
        - ``effective_to`` NULL means open-ended.
    """

    __tablename__ = "ssp_catalog_entries"

    __table_args__ = (
        Index(
            "idx_ssp_catalog_lookup",
            "company_id", "product_id", "currency", "status",
        ),
        Index("idx_ssp_catalog_effective", "effective_from", "effective_to"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    unit_ssp: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    effective_from: Mapped[date] = mapped_column(nullable=False)
    effective_to: Mapped[date | None] = mapped_column(nullable=True)
    corridor_min_pct: Mapped[Decimal | None] = mapped_column(nullable=True)
    corridor_max_pct: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="DRAFT", nullable=False)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    evidence: Mapped[list["SspEvidenceModel"]] = relationship(
        "SspEvidenceModel",
        back_populates="entry",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self):
        from ssp_modules.catalog.models import SspCatalogEntry, SspMethod, SspStatus

        return SspCatalogEntry(
            id=self.id,
            company_id=self.company_id,
            product_id=self.product_id,
            currency=self.currency,
            unit_ssp=self.unit_ssp,
            method=SspMethod(self.method),
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            corridor_min_pct=self.corridor_min_pct,
            corridor_max_pct=self.corridor_max_pct,
            status=SspStatus(self.status),
            override_reason=self.override_reason,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "SspCatalogEntryModel":
        return cls(
            id=dto.id,
            company_id=dto.company_id,
            product_id=dto.product_id,
            currency=dto.currency,
            unit_ssp=dto.unit_ssp,
            method=dto.method.value,
            effective_from=dto.effective_from,
            effective_to=dto.effective_to,
            corridor_min_pct=dto.corridor_min_pct,
            corridor_max_pct=dto.corridor_max_pct,
            status=dto.status.value,
            override_reason=dto.override_reason,
            created_at=dto.created_at,
            updated_at=dto.created_at,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return (
            f"<SspCatalogEntryModel {self.product_id}/{self.currency} "
            f"{self.unit_ssp} {self.effective_from} ({self.status})>"
        )


class SspEvidenceModel(TrackedBase):
    """Evidence supporting a catalog entry (quotes, benchmarks, cost builds)."""

    __tablename__ = "ssp_evidence"

    __table_args__ = (
        Index("idx_ssp_evidence_entry", "catalog_entry_id"),
    )

    catalog_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ssp_catalog_entries.id"),
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[dict[str, Any]] = mapped_column(default=dict)
    doc_uri: Mapped[str | None] = mapped_column(String(500), nullable=True)

    entry: Mapped["SspCatalogEntryModel"] = relationship(
        "SspCatalogEntryModel",
        back_populates="evidence",
    )

    def to_dto(self):
        from ssp_modules.catalog.models import SspEvidence

        return SspEvidence(
            id=self.id,
            catalog_entry_id=self.catalog_entry_id,
            source=self.source,
            note=self.note,
            value=dict(self.value or {}),
            doc_uri=self.doc_uri,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "SspEvidenceModel":
        return cls(
            id=dto.id,
            catalog_entry_id=dto.catalog_entry_id,
            source=dto.source,
            note=dto.note,
            value=dict(dto.value),
            doc_uri=dto.doc_uri,
            created_at=dto.created_at,
            updated_at=dto.created_at,
            created_by_id=created_by_id,
        )


class SspPolicyModel(TrackedBase):
    """Per-company SSP policy.  Exactly one row per company."""

    __tablename__ = "ssp_policies"

    __table_args__ = (
        UniqueConstraint("company_id", name="uq_ssp_policy_company"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    rounding: Mapped[str] = mapped_column(String(20), default="HALF_UP", nullable=False)
    residual_allowed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    residual_eligible_products: Mapped[list[str]] = mapped_column(JSON, default=list)
    default_method: Mapped[str] = mapped_column(String(50), default="OBSERVABLE", nullable=False)
    corridor_tolerance_pct: Mapped[Decimal] = mapped_column(nullable=False)
    alert_threshold_pct: Mapped[Decimal] = mapped_column(nullable=False)

    def to_dto(self):
        from ssp_kernel.domain.values import RoundingMode
        from ssp_modules.catalog.models import SspMethod, SspPolicy

        return SspPolicy(
            company_id=self.company_id,
            rounding=RoundingMode(self.rounding),
            residual_allowed=self.residual_allowed,
            residual_eligible_products=frozenset(self.residual_eligible_products or ()),
            default_method=SspMethod(self.default_method),
            corridor_tolerance_pct=self.corridor_tolerance_pct,
            alert_threshold_pct=self.alert_threshold_pct,
        )

    def apply_dto(self, dto, updated_by_id: UUID) -> None:
        self.rounding = dto.rounding.value
        self.residual_allowed = dto.residual_allowed
        self.residual_eligible_products = sorted(dto.residual_eligible_products)
        self.default_method = dto.default_method.value
        self.corridor_tolerance_pct = dto.corridor_tolerance_pct
        self.alert_threshold_pct = dto.alert_threshold_pct
        self.updated_by_id = updated_by_id

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "SspPolicyModel":
        model = cls(company_id=dto.company_id, created_by_id=created_by_id)
        model.apply_dto(dto, updated_by_id=created_by_id)
        return model
