"""
Module: ssp_modules.bundles.orm
Responsibility:
    SQLAlchemy ORM persistence models for the bundle registry.

Architecture position:
    **Modules layer** -- ORM models inheriting from ``TrackedBase``.

Invariants enforced:
    - Weights and quantities use Decimal (Numeric(38,9)).
    - One bundle version per (company, sku, effective_from)
      (uq_ssp_bundle_version).
    - Components are loaded in ``sequence`` order.

Failure modes:
    - IntegrityError on a duplicate bundle version.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ssp_kernel.db.base import TrackedBase, UUIDString


class BundleModel(TrackedBase):
    """One version of a bundle SKU."""

    __tablename__ = "ssp_bundles"

    __table_args__ = (
        UniqueConstraint(
            "company_id", "sku", "effective_from", name="uq_ssp_bundle_version",
        ),
        Index("idx_ssp_bundle_sku", "company_id", "sku", "status"),
    )

    company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    effective_from: Mapped[date] = mapped_column(nullable=False)
    effective_to: Mapped[date | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)

    components: Mapped[list["BundleComponentModel"]] = relationship(
        "BundleComponentModel",
        back_populates="bundle",
        cascade="all, delete-orphan",
        order_by="BundleComponentModel.sequence",
        lazy="selectin",
    )

    def to_dto(self):
        from ssp_modules.bundles.models import Bundle, BundleStatus

        return Bundle(
            id=self.id,
            company_id=self.company_id,
            sku=self.sku,
            name=self.name,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            status=BundleStatus(self.status),
            components=tuple(c.to_dto() for c in self.components),
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "BundleModel":
        model = cls(
            id=dto.id,
            company_id=dto.company_id,
            sku=dto.sku,
            name=dto.name,
            effective_from=dto.effective_from,
            effective_to=dto.effective_to,
            status=dto.status.value,
            created_at=dto.created_at,
            updated_at=dto.created_at,
            created_by_id=created_by_id,
        )
        model.components = [
            BundleComponentModel.from_dto(c, created_by_id=created_by_id)
            for c in dto.components
        ]
        return model

    def __repr__(self) -> str:
        return f"<BundleModel {self.sku} {self.effective_from} ({self.status})>"


class BundleComponentModel(TrackedBase):
    """A weighted component of a bundle."""

    __tablename__ = "ssp_bundle_components"

    __table_args__ = (
        UniqueConstraint("bundle_id", "product_id", name="uq_ssp_bundle_component"),
        Index("idx_ssp_bundle_component_product", "product_id"),
    )

    bundle_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ssp_bundles.id"),
        nullable=False,
    )
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    weight_pct: Mapped[Decimal] = mapped_column(nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    min_qty: Mapped[Decimal] = mapped_column(default=Decimal("1"), nullable=False)
    max_qty: Mapped[Decimal | None] = mapped_column(nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    bundle: Mapped["BundleModel"] = relationship(
        "BundleModel",
        back_populates="components",
    )

    def to_dto(self):
        from ssp_modules.bundles.models import BundleComponent

        return BundleComponent(
            product_id=self.product_id,
            weight_pct=self.weight_pct,
            required=self.required,
            min_qty=self.min_qty,
            max_qty=self.max_qty,
            sequence=self.sequence,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "BundleComponentModel":
        return cls(
            product_id=dto.product_id,
            weight_pct=dto.weight_pct,
            required=dto.required,
            min_qty=dto.min_qty,
            max_qty=dto.max_qty,
            sequence=dto.sequence,
            created_by_id=created_by_id,
        )
