"""
Module: ssp_modules.bundles.service
Responsibility:
    Bundle registry management: versioned upsert with weight validation,
    effective lookups, status changes, and the batched bundle read used by
    the allocation service for line expansion.

Architecture:
    ssp_modules layer -- holds a Session and owns commit/rollback.
    Weight validation is delegated to ssp_engines.bundles.

Invariants:
    - An ACTIVE bundle's weights sum to 1 within
      ``config.bundle_weight_tolerance``; unbalanced bundles are rejected,
      never normalized.
    - At most one ACTIVE version of a SKU is effective on any date.  A new
      ACTIVE version end-dates the open predecessor the day before it
      starts.
    - ARCHIVED is terminal.

Failure modes:
    - UnbalancedBundleError when ACTIVE weights do not sum to 1.
    - InvalidBundleError on structural problems or conflicting windows.
    - InvalidStatusTransitionError when leaving ARCHIVED.
    - BundleNotFoundError on an unknown bundle id.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ssp_config import SspEngineConfig, get_active_config
from ssp_engines.bundles import validate_bundle_components
from ssp_kernel.domain.clock import Clock, SystemClock
from ssp_kernel.domain.validation import to_decimal
from ssp_kernel.exceptions import (
    BundleNotFoundError,
    InvalidBundleError,
    InvalidStatusTransitionError,
    UnbalancedBundleError,
)
from ssp_kernel.logging_config import get_logger
from ssp_modules.bundles.models import Bundle, BundleComponent, BundleStatus
from ssp_modules.bundles.orm import BundleComponentModel, BundleModel

logger = get_logger("modules.bundles.service")


def _coerce_component(sku: str, raw: BundleComponent | Mapping[str, Any], sequence: int) -> BundleComponent:
    if isinstance(raw, BundleComponent):
        return BundleComponent(
            product_id=raw.product_id,
            weight_pct=raw.weight_pct,
            required=raw.required,
            min_qty=raw.min_qty,
            max_qty=raw.max_qty,
            sequence=sequence,
        )
    try:
        product_id = str(raw["product_id"]).strip()
        weight = to_decimal(raw["weight_pct"], "weight_pct")
        min_qty = to_decimal(raw.get("min_qty", 1), "min_qty")
        max_raw = raw.get("max_qty")
        max_qty = to_decimal(max_raw, "max_qty") if max_raw is not None else None
    except KeyError as e:
        raise InvalidBundleError(sku, f"component {sequence} is missing {e.args[0]}") from e
    except ValueError as e:
        raise InvalidBundleError(sku, f"component {sequence}: {e}") from e
    if not product_id:
        raise InvalidBundleError(sku, f"component {sequence} has no product_id")
    return BundleComponent(
        product_id=product_id,
        weight_pct=weight,
        required=bool(raw.get("required", True)),
        min_qty=min_qty,
        max_qty=max_qty,
        sequence=sequence,
    )


class BundleService:
    """
    Manages bundle definitions.

    Contract:
        Each write method owns its transaction boundary (commit on
        success, rollback on failure).  Reads return frozen DTOs.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: SspEngineConfig | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()

    def upsert_bundle(
        self,
        *,
        company_id: str,
        sku: str,
        name: str,
        effective_from: date,
        components: Sequence[BundleComponent | Mapping[str, Any]],
        actor_id: UUID,
        effective_to: date | None = None,
        status: BundleStatus | str = BundleStatus.ACTIVE,
    ) -> Bundle:
        """
        Create or replace the bundle version starting ``effective_from``.

        Preconditions:
            - ``components`` is non-empty with distinct products.
            - For ACTIVE bundles, weights sum to 1 within tolerance.

        Postconditions:
            - An open ACTIVE predecessor with the same SKU that starts
              earlier is end-dated the day before ``effective_from``.

        Raises:
            UnbalancedBundleError: ACTIVE weights do not sum to 1.
            InvalidBundleError: Structural problem or window conflict.
        """
        sku = (sku or "").strip()
        if not sku:
            raise InvalidBundleError("<blank>", "sku must not be empty")
        if not name or not name.strip():
            raise InvalidBundleError(sku, "name must not be empty")
        if effective_to is not None and effective_to < effective_from:
            raise InvalidBundleError(sku, "effective_to is before effective_from")
        try:
            status = BundleStatus(status)
        except ValueError as e:
            raise InvalidBundleError(sku, f"unknown status {status!r}") from e

        parts = tuple(_coerce_component(sku, c, i) for i, c in enumerate(components))
        self._validate_components(sku, parts, require_balanced=status is BundleStatus.ACTIVE)

        now = self._clock.now()
        try:
            existing = self._session.scalars(
                select(BundleModel).where(
                    BundleModel.company_id == company_id,
                    BundleModel.sku == sku,
                    BundleModel.effective_from == effective_from,
                )
            ).first()

            closed: list[str] = []
            if status is BundleStatus.ACTIVE:
                closed = self._close_predecessors(
                    company_id, sku, effective_from, effective_to,
                    exclude_id=existing.id if existing else None,
                    actor_id=actor_id,
                )

            if existing is None:
                dto = Bundle(
                    id=uuid4(),
                    company_id=company_id,
                    sku=sku,
                    name=name.strip(),
                    effective_from=effective_from,
                    effective_to=effective_to,
                    status=status,
                    components=parts,
                    created_at=now,
                )
                model = BundleModel.from_dto(dto, created_by_id=actor_id)
                self._session.add(model)
            else:
                model = existing
                if model.status == BundleStatus.ARCHIVED.value:
                    raise InvalidStatusTransitionError(
                        "Bundle", str(model.id), model.status, status.value,
                    )
                model.name = name.strip()
                model.effective_to = effective_to
                model.status = status.value
                model.updated_at = now
                model.updated_by_id = actor_id
                model.components.clear()
                self._session.flush()
                model.components.extend(
                    BundleComponentModel.from_dto(c, created_by_id=actor_id) for c in parts
                )
            self._session.flush()
            result = model.to_dto()
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "bundle_upserted",
            extra={
                "bundle_id": str(result.id),
                "company_id": company_id,
                "sku": sku,
                "status": status.value,
                "component_count": len(parts),
                "end_dated_bundle_ids": closed,
            },
        )
        return result

    def _validate_components(
        self,
        sku: str,
        components: Sequence[BundleComponent],
        require_balanced: bool,
    ) -> None:
        tolerance = self._config.bundle_weight_tolerance
        check = validate_bundle_components([c.to_spec() for c in components], tolerance)
        if check.errors:
            raise InvalidBundleError(sku, "; ".join(check.errors))
        # INVARIANT: ACTIVE weights sum to 1 within tolerance
        if require_balanced and not check.balanced:
            logger.warning(
                "bundle_weights_unbalanced",
                extra={"sku": sku, "weight_total": str(check.weight_total)},
            )
            raise UnbalancedBundleError(sku, str(check.weight_total), str(tolerance))

    def _close_predecessors(
        self,
        company_id: str,
        sku: str,
        effective_from: date,
        effective_to: date | None,
        exclude_id: UUID | None,
        actor_id: UUID,
    ) -> list[str]:
        stmt = select(BundleModel).where(
            BundleModel.company_id == company_id,
            BundleModel.sku == sku,
            BundleModel.status == BundleStatus.ACTIVE.value,
        )
        if exclude_id is not None:
            stmt = stmt.where(BundleModel.id != exclude_id)

        closed: list[str] = []
        for other in self._session.scalars(stmt):
            ends_before = other.effective_to is not None and other.effective_to < effective_from
            starts_after = effective_to is not None and other.effective_from > effective_to
            if ends_before or starts_after:
                continue
            if other.effective_to is None and other.effective_from < effective_from:
                other.effective_to = effective_from - timedelta(days=1)
                other.updated_at = self._clock.now()
                other.updated_by_id = actor_id
                closed.append(str(other.id))
                continue
            raise InvalidBundleError(
                sku,
                f"window starting {effective_from} overlaps active bundle "
                f"version starting {other.effective_from}",
            )
        return closed

    def get_bundle(self, bundle_id: UUID) -> Bundle:
        return self._get_model(bundle_id).to_dto()

    def _get_model(self, bundle_id: UUID) -> BundleModel:
        model = self._session.get(BundleModel, bundle_id)
        if model is None:
            raise BundleNotFoundError(str(bundle_id))
        return model

    def get_effective_bundle(self, company_id: str, sku: str, as_of: date) -> Bundle | None:
        """The ACTIVE version of ``sku`` effective on ``as_of``, or None."""
        bundles = self.load_effective_bundles(company_id, [sku], as_of)
        return bundles.get(sku)

    def load_effective_bundles(
        self,
        company_id: str,
        skus: Iterable[str],
        as_of: date,
    ) -> dict[str, Bundle]:
        """
        Effective ACTIVE bundles keyed by SKU, read in one query.

        SKUs with no effective bundle are absent from the result.  If more
        than one version matches, the latest ``effective_from`` wins.
        """
        wanted = sorted(set(skus))
        if not wanted:
            return {}
        stmt = (
            select(BundleModel)
            .where(
                BundleModel.company_id == company_id,
                BundleModel.sku.in_(wanted),
                BundleModel.status == BundleStatus.ACTIVE.value,
                BundleModel.effective_from <= as_of,
                or_(BundleModel.effective_to.is_(None), BundleModel.effective_to >= as_of),
            )
            .order_by(BundleModel.sku, BundleModel.effective_from)
        )
        found: dict[str, Bundle] = {}
        for model in self._session.scalars(stmt):
            found[model.sku] = model.to_dto()
        return found

    def query_bundles(
        self,
        company_id: str,
        *,
        status: BundleStatus | str | None = None,
        as_of: date | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[Bundle, ...]:
        stmt = select(BundleModel).where(BundleModel.company_id == company_id)
        if status is not None:
            stmt = stmt.where(BundleModel.status == BundleStatus(status).value)
        if as_of is not None:
            stmt = stmt.where(
                BundleModel.effective_from <= as_of,
                or_(BundleModel.effective_to.is_(None), BundleModel.effective_to >= as_of),
            )
        stmt = (
            stmt.order_by(BundleModel.sku, BundleModel.effective_from)
            .limit(limit)
            .offset(offset)
        )
        return tuple(m.to_dto() for m in self._session.scalars(stmt))

    def get_bundles_by_product(
        self,
        company_id: str,
        product_id: str,
        as_of: date | None = None,
    ) -> tuple[Bundle, ...]:
        """Bundles that contain ``product_id`` as a component."""
        stmt = (
            select(BundleModel)
            .join(BundleComponentModel, BundleComponentModel.bundle_id == BundleModel.id)
            .where(
                BundleModel.company_id == company_id,
                BundleComponentModel.product_id == product_id,
            )
        )
        if as_of is not None:
            stmt = stmt.where(
                BundleModel.effective_from <= as_of,
                or_(BundleModel.effective_to.is_(None), BundleModel.effective_to >= as_of),
            )
        stmt = stmt.order_by(BundleModel.sku, BundleModel.effective_from)
        return tuple(m.to_dto() for m in self._session.scalars(stmt).unique())

    def update_bundle_status(
        self,
        bundle_id: UUID,
        status: BundleStatus | str,
        actor_id: UUID,
    ) -> Bundle:
        """
        Change a bundle's status.

        Raises:
            InvalidStatusTransitionError: The bundle is ARCHIVED.
            UnbalancedBundleError: Re-activating a bundle whose weights no
                longer sum to 1.
        """
        target = BundleStatus(status)
        model = self._get_model(bundle_id)
        current = BundleStatus(model.status)
        if current is target:
            return model.to_dto()
        if current is BundleStatus.ARCHIVED:
            raise InvalidStatusTransitionError(
                "Bundle", str(bundle_id), current.value, target.value,
            )

        try:
            if target is BundleStatus.ACTIVE:
                dto = model.to_dto()
                self._validate_components(dto.sku, dto.components, require_balanced=True)
                self._close_predecessors(
                    model.company_id, model.sku, model.effective_from, model.effective_to,
                    exclude_id=model.id, actor_id=actor_id,
                )
            model.status = target.value
            model.updated_at = self._clock.now()
            model.updated_by_id = actor_id
            self._session.flush()
            result = model.to_dto()
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "bundle_status_changed",
            extra={
                "bundle_id": str(bundle_id),
                "sku": result.sku,
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return result
