"""
Module: ssp_modules.catalog.service
Responsibility:
    Administrative write operations and read contracts for the SSP
    catalog and the per-company SSP policy: entry upsert with corridor
    enforcement, the DRAFT -> REVIEWED -> APPROVED lifecycle with
    supersession, evidence, effective lookups, and the batched pricing
    read used by the allocation service.

Architecture:
    ssp_modules layer -- holds a Session and owns commit/rollback for
    every write method.  Corridor statistics are delegated to
    ssp_engines.corridor; no arithmetic lives here.

    Dependency direction (strict):
        service.py  -->  ssp_engines.corridor   (statistics)
        service.py  -->  ssp_kernel             (clock, exceptions, logging)
        service.py  -->  ssp_config             (defaults, at construction)

Invariants:
    - For a (company, product, currency), windows of non-DRAFT entries
      never overlap.  The first non-DRAFT transition closes an open-ended
      APPROVED predecessor that starts earlier; every other overlap is
      rejected.
    - Between review and approval of a successor, RELATIVE_SSP cannot
      price dates on or after its start: the predecessor is already
      closed and the successor is not yet APPROVED.  Review logs
      ``ssp_pricing_gap_opened`` for each such cut-over.
    - Only DRAFT entries may be edited.  APPROVED entries only ever have
      their ``effective_to`` closed.
    - An out-of-corridor price is saved only with an override reason.

Failure modes:
    - InvalidSspEntryError / InvalidPolicyError on malformed input.
    - CorridorBreachError when an out-of-corridor price has no reason.
    - InvalidStatusTransitionError on skipped or backwards transitions.
    - EffectiveWindowOverlapError on a conflicting window.
    - SspEntryNotFoundError on an unknown entry id.
    - Session rollback on any exception during a write.

Audit relevance:
    - Every write logs a structured event (ssp_entry_upserted,
      ssp_entry_transitioned, ssp_entry_superseded, ssp_policy_upserted).
    - Override reasons are persisted with the entry.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ssp_config import SspEngineConfig, get_active_config
from ssp_engines.corridor import CorridorCheck, check_corridor_compliance, compute_median
from ssp_kernel.domain.clock import Clock, SystemClock
from ssp_kernel.domain.currency import CurrencyRegistry
from ssp_kernel.domain.values import RoundingMode
from ssp_kernel.exceptions import (
    CorridorBreachError,
    EffectiveWindowOverlapError,
    InvalidPolicyError,
    InvalidSspEntryError,
    InvalidStatusTransitionError,
    SspEntryNotFoundError,
)
from ssp_kernel.logging_config import get_logger
from ssp_modules.catalog.models import (
    ProductPricing,
    SspCatalogEntry,
    SspEvidence,
    SspMethod,
    SspPolicy,
    SspStatus,
    pick_effective_entry,
)
from ssp_modules.catalog.orm import SspCatalogEntryModel, SspEvidenceModel, SspPolicyModel

logger = get_logger("modules.catalog.service")

_ANY_STATUS = frozenset(SspStatus)


def _require_text(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidSspEntryError(field, "must not be empty")
    return str(value).strip()


def _require_bounded(value: Any, field: str, maximum: Decimal | None = Decimal("1")) -> Decimal:
    if not isinstance(value, Decimal) or not value.is_finite():
        raise InvalidSspEntryError(field, f"must be a finite Decimal, got {value!r}")
    if value < 0 or (maximum is not None and value > maximum):
        bound = f"[0, {maximum}]" if maximum is not None else ">= 0"
        raise InvalidSspEntryError(field, f"must be {bound}, got {value}")
    return value


def _json_safe(value: Mapping[str, Any]) -> dict[str, Any]:
    safe: dict[str, Any] = {}
    for key, item in value.items():
        if isinstance(item, Decimal):
            safe[str(key)] = str(item)
        elif isinstance(item, date):
            safe[str(key)] = item.isoformat()
        elif isinstance(item, Mapping):
            safe[str(key)] = _json_safe(item)
        else:
            safe[str(key)] = item
    return safe


class SspCatalogService:
    """
    Manages SSP catalog entries, evidence and policies.

    Contract:
        Callers supply a live SQLAlchemy Session, an optional Clock and an
        optional SspEngineConfig (defaults to ``get_active_config()``).
        Each write method owns its transaction boundary (commit on success,
        rollback on failure).

    Guarantees:
        - All returned objects are frozen DTOs, never ORM instances.
        - ``resolve_ssp_batch`` reads the catalog with a single query.

    Non-goals:
        - Does not allocate; see AllocationService.
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

    # =========================================================================
    # Catalog entries
    # =========================================================================

    def upsert_ssp_entry(
        self,
        *,
        company_id: str,
        product_id: str,
        currency: str,
        unit_ssp: Decimal,
        method: SspMethod | str,
        effective_from: date,
        actor_id: UUID,
        effective_to: date | None = None,
        corridor_min_pct: Decimal | None = None,
        corridor_max_pct: Decimal | None = None,
        override_reason: str | None = None,
        entry_id: UUID | None = None,
    ) -> SspCatalogEntry:
        """
        Create a DRAFT entry, or edit an existing DRAFT entry.

        Preconditions:
            - ``unit_ssp`` is a non-negative Decimal.
            - ``effective_to`` is None or on/after ``effective_from``.

        Postconditions:
            - New entries are persisted with status DRAFT.
            - An out-of-corridor price is persisted only with
              ``override_reason``, which is stored on the entry.

        Raises:
            InvalidSspEntryError: On malformed input or a non-DRAFT edit.
            CorridorBreachError: Out of corridor with no override reason.
            SspEntryNotFoundError: ``entry_id`` does not exist.
        """
        company_id = _require_text(company_id, "company_id")
        product_id = _require_text(product_id, "product_id")
        currency = _require_text(currency, "currency").upper()
        if not CurrencyRegistry.is_valid(currency):
            raise InvalidSspEntryError("currency", f"unknown ISO 4217 code {currency}")
        # INVARIANT: SSP amounts are non-negative Decimals, never float
        unit_ssp = _require_bounded(unit_ssp, "unit_ssp", maximum=None)
        try:
            method = SspMethod(method)
        except ValueError as e:
            raise InvalidSspEntryError("method", f"unknown method {method!r}") from e
        if not isinstance(effective_from, date):
            raise InvalidSspEntryError("effective_from", "must be a date")
        if effective_to is not None and effective_to < effective_from:
            raise InvalidSspEntryError("effective_to", "is before effective_from")
        if corridor_min_pct is not None:
            _require_bounded(corridor_min_pct, "corridor_min_pct")
        if corridor_max_pct is not None:
            _require_bounded(corridor_max_pct, "corridor_max_pct", maximum=None)
        reason = override_reason.strip() if override_reason else None

        check = self.check_corridor_compliance(
            company_id, product_id, currency, unit_ssp, exclude_entry_id=entry_id,
        )
        if not check.compliant:
            if not reason:
                logger.warning(
                    "ssp_corridor_breach_rejected",
                    extra={
                        "company_id": company_id,
                        "product_id": product_id,
                        "unit_ssp": str(unit_ssp),
                        "median_ssp": str(check.median_ssp),
                        "variance_pct": str(check.variance),
                    },
                )
                raise CorridorBreachError(
                    product_id=product_id,
                    unit_ssp=str(unit_ssp),
                    median=str(check.median_ssp),
                    variance_pct=str(check.variance),
                    tolerance_pct=str(check.tolerance_pct),
                )
            logger.warning(
                "ssp_corridor_override_accepted",
                extra={
                    "company_id": company_id,
                    "product_id": product_id,
                    "unit_ssp": str(unit_ssp),
                    "variance_pct": str(check.variance),
                    "override_reason": reason,
                },
            )

        now = self._clock.now()
        try:
            if entry_id is None:
                dto = SspCatalogEntry(
                    id=uuid4(),
                    company_id=company_id,
                    product_id=product_id,
                    currency=currency,
                    unit_ssp=unit_ssp,
                    method=method,
                    effective_from=effective_from,
                    effective_to=effective_to,
                    corridor_min_pct=corridor_min_pct,
                    corridor_max_pct=corridor_max_pct,
                    status=SspStatus.DRAFT,
                    override_reason=reason,
                    created_at=now,
                )
                model = SspCatalogEntryModel.from_dto(dto, created_by_id=actor_id)
                self._session.add(model)
            else:
                model = self._get_entry_model(entry_id)
                if model.status != SspStatus.DRAFT.value:
                    raise InvalidSspEntryError(
                        "status", f"only DRAFT entries can be edited, entry is {model.status}"
                    )
                if (model.company_id, model.product_id, model.currency) != (
                    company_id, product_id, currency,
                ):
                    raise InvalidSspEntryError(
                        "product_id", "company, product and currency of an entry cannot change"
                    )
                model.unit_ssp = unit_ssp
                model.method = method.value
                model.effective_from = effective_from
                model.effective_to = effective_to
                model.corridor_min_pct = corridor_min_pct
                model.corridor_max_pct = corridor_max_pct
                model.override_reason = reason
                model.updated_at = now
                model.updated_by_id = actor_id
            self._session.flush()
            result = model.to_dto()
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "ssp_entry_upserted",
            extra={
                "entry_id": str(result.id),
                "company_id": company_id,
                "product_id": product_id,
                "currency": currency,
                "unit_ssp": str(unit_ssp),
                "is_new": entry_id is None,
                "overridden": reason is not None and not check.compliant,
            },
        )
        return result

    def transition_ssp_entry(
        self,
        entry_id: UUID,
        target_status: SspStatus | str,
        actor_id: UUID,
    ) -> SspCatalogEntry:
        """
        Move an entry one step along DRAFT -> REVIEWED -> APPROVED.

        Every non-DRAFT status is subject to the no-overlap invariant, so
        window conflicts are resolved here: an open-ended APPROVED
        predecessor starting earlier is closed the day before this entry
        starts; any other overlapping non-DRAFT entry is a conflict.

        Raises:
            InvalidStatusTransitionError: The step is not allowed.
            EffectiveWindowOverlapError: A conflicting window exists.
            SspEntryNotFoundError: Unknown entry id.
        """
        target = SspStatus(target_status)
        model = self._get_entry_model(entry_id)
        current = SspStatus(model.status)
        if not current.can_transition_to(target):
            raise InvalidStatusTransitionError(
                entity_type="SspCatalogEntry",
                entity_id=str(entry_id),
                current_status=current.value,
                requested_status=target.value,
            )

        try:
            superseded = self._resolve_window_conflicts(model, target, actor_id)
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
            "ssp_entry_transitioned",
            extra={
                "entry_id": str(entry_id),
                "product_id": result.product_id,
                "from_status": current.value,
                "to_status": target.value,
                "superseded_entry_ids": superseded,
            },
        )
        return result

    def review_ssp_entry(self, entry_id: UUID, actor_id: UUID) -> SspCatalogEntry:
        """DRAFT -> REVIEWED."""
        return self.transition_ssp_entry(entry_id, SspStatus.REVIEWED, actor_id)

    def approve_ssp_entry(self, entry_id: UUID, actor_id: UUID) -> SspCatalogEntry:
        """REVIEWED -> APPROVED."""
        return self.transition_ssp_entry(entry_id, SspStatus.APPROVED, actor_id)

    def get_ssp_entry(self, entry_id: UUID) -> SspCatalogEntry:
        return self._get_entry_model(entry_id).to_dto()

    def _get_entry_model(self, entry_id: UUID) -> SspCatalogEntryModel:
        model = self._session.get(SspCatalogEntryModel, entry_id)
        if model is None:
            raise SspEntryNotFoundError(str(entry_id))
        return model

    def _resolve_window_conflicts(
        self,
        model: SspCatalogEntryModel,
        target: SspStatus,
        actor_id: UUID,
    ) -> list[str]:
        entry = model.to_dto()
        stmt = select(SspCatalogEntryModel).where(
            SspCatalogEntryModel.company_id == entry.company_id,
            SspCatalogEntryModel.product_id == entry.product_id,
            SspCatalogEntryModel.currency == entry.currency,
            SspCatalogEntryModel.status != SspStatus.DRAFT.value,
            SspCatalogEntryModel.id != entry.id,
        )

        to_close: list[SspCatalogEntryModel] = []
        for other_model in self._session.scalars(stmt):
            other = other_model.to_dto()
            if not entry.overlaps(other):
                continue
            if (
                other.status is SspStatus.APPROVED
                and other.effective_to is None
                and other.effective_from < entry.effective_from
            ):
                to_close.append(other_model)
                continue
            raise EffectiveWindowOverlapError(
                product_id=entry.product_id,
                currency=entry.currency,
                effective_from=entry.effective_from,
                conflicting_entry_id=str(other.id),
            )

        new_end = entry.effective_from - timedelta(days=1)
        for other_model in to_close:
            other_model.effective_to = new_end
            other_model.updated_at = self._clock.now()
            other_model.updated_by_id = actor_id
            logger.info(
                "ssp_entry_superseded",
                extra={
                    "entry_id": str(other_model.id),
                    "superseded_by": str(entry.id),
                    "effective_to": new_end,
                },
            )
            if target is not SspStatus.APPROVED:
                logger.warning(
                    "ssp_pricing_gap_opened",
                    extra={
                        "entry_id": str(other_model.id),
                        "successor_entry_id": str(entry.id),
                        "successor_status": target.value,
                        "product_id": entry.product_id,
                        "currency": entry.currency,
                        "unpriced_from": entry.effective_from,
                    },
                )
        return [str(m.id) for m in to_close]

    # =========================================================================
    # Evidence
    # =========================================================================

    def add_ssp_evidence(
        self,
        *,
        catalog_entry_id: UUID,
        source: str,
        actor_id: UUID,
        note: str | None = None,
        value: Mapping[str, Any] | None = None,
        doc_uri: str | None = None,
    ) -> SspEvidence:
        """Attach supporting evidence to an entry in any status."""
        source = _require_text(source, "source")
        self._get_entry_model(catalog_entry_id)
        dto = SspEvidence(
            id=uuid4(),
            catalog_entry_id=catalog_entry_id,
            source=source,
            note=note,
            value=_json_safe(value or {}),
            doc_uri=doc_uri,
            created_at=self._clock.now(),
        )
        try:
            self._session.add(SspEvidenceModel.from_dto(dto, created_by_id=actor_id))
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.info(
            "ssp_evidence_added",
            extra={"entry_id": str(catalog_entry_id), "source": source},
        )
        return dto

    def list_ssp_evidence(self, catalog_entry_id: UUID) -> tuple[SspEvidence, ...]:
        stmt = (
            select(SspEvidenceModel)
            .where(SspEvidenceModel.catalog_entry_id == catalog_entry_id)
            .order_by(SspEvidenceModel.created_at, SspEvidenceModel.id)
        )
        return tuple(m.to_dto() for m in self._session.scalars(stmt))

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_effective_ssp(
        self,
        company_id: str,
        product_id: str,
        currency: str,
        as_of_date: date,
    ) -> SspCatalogEntry | None:
        """
        The APPROVED entry effective on ``as_of_date``, or None.

        Windows are inclusive on both ends.  If several entries match, the
        latest ``effective_from`` wins.
        """
        stmt = select(SspCatalogEntryModel).where(
            SspCatalogEntryModel.company_id == company_id,
            SspCatalogEntryModel.product_id == product_id,
            SspCatalogEntryModel.currency == currency.upper(),
            SspCatalogEntryModel.status == SspStatus.APPROVED.value,
            SspCatalogEntryModel.effective_from <= as_of_date,
            or_(
                SspCatalogEntryModel.effective_to.is_(None),
                SspCatalogEntryModel.effective_to >= as_of_date,
            ),
        )
        entries = [m.to_dto() for m in self._session.scalars(stmt)]
        return pick_effective_entry(entries, as_of_date)

    def query_ssp_catalog(
        self,
        company_id: str,
        *,
        product_id: str | None = None,
        currency: str | None = None,
        method: SspMethod | str | None = None,
        status: SspStatus | str | None = None,
        effective_from: date | None = None,
        effective_to: date | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[SspCatalogEntry, ...]:
        """
        Filter catalog entries.

        ``effective_from`` / ``effective_to`` select entries whose window
        intersects the given range.  Results are ordered by product,
        currency and start date.
        """
        stmt = select(SspCatalogEntryModel).where(SspCatalogEntryModel.company_id == company_id)
        if product_id is not None:
            stmt = stmt.where(SspCatalogEntryModel.product_id == product_id)
        if currency is not None:
            stmt = stmt.where(SspCatalogEntryModel.currency == currency.upper())
        if method is not None:
            stmt = stmt.where(SspCatalogEntryModel.method == SspMethod(method).value)
        if status is not None:
            stmt = stmt.where(SspCatalogEntryModel.status == SspStatus(status).value)
        if effective_from is not None:
            stmt = stmt.where(
                or_(
                    SspCatalogEntryModel.effective_to.is_(None),
                    SspCatalogEntryModel.effective_to >= effective_from,
                )
            )
        if effective_to is not None:
            stmt = stmt.where(SspCatalogEntryModel.effective_from <= effective_to)
        stmt = (
            stmt.order_by(
                SspCatalogEntryModel.product_id,
                SspCatalogEntryModel.currency,
                SspCatalogEntryModel.effective_from,
                SspCatalogEntryModel.id,
            )
            .limit(limit)
            .offset(offset)
        )
        return tuple(m.to_dto() for m in self._session.scalars(stmt))

    def resolve_ssp_batch(
        self,
        company_id: str,
        product_ids: Iterable[str],
        currency: str,
        as_of_date: date,
    ) -> dict[str, ProductPricing]:
        """
        Pricing snapshot for many products in one read.

        For each product: the effective APPROVED entry, the best effective
        entry in any status, and the median of all APPROVED prices for the
        product (used for the corridor flag).  Products with no entries map
        to an empty ProductPricing.
        """
        products = sorted(set(product_ids))
        pricing = {p: ProductPricing(product_id=p) for p in products}
        if not products:
            return pricing

        stmt = select(SspCatalogEntryModel).where(
            SspCatalogEntryModel.company_id == company_id,
            SspCatalogEntryModel.currency == currency.upper(),
            SspCatalogEntryModel.product_id.in_(products),
        )
        by_product: dict[str, list[SspCatalogEntry]] = defaultdict(list)
        for model in self._session.scalars(stmt):
            by_product[model.product_id].append(model.to_dto())

        for product_id, entries in by_product.items():
            median = compute_median(
                [e.unit_ssp for e in entries if e.status is SspStatus.APPROVED]
            )
            approved = pick_effective_entry(entries, as_of_date)
            working = pick_effective_entry(entries, as_of_date, _ANY_STATUS)
            pricing[product_id] = ProductPricing(
                product_id=product_id,
                approved=approved.to_resolved(median) if approved else None,
                working=working.to_resolved(median) if working else None,
            )

        logger.debug(
            "ssp_batch_resolved",
            extra={
                "company_id": company_id,
                "product_count": len(products),
                "approved_count": sum(1 for p in pricing.values() if p.approved),
            },
        )
        return pricing

    # =========================================================================
    # Corridor
    # =========================================================================

    def check_corridor_compliance(
        self,
        company_id: str,
        product_id: str,
        currency: str,
        candidate_ssp: Decimal,
        exclude_entry_id: UUID | None = None,
    ) -> CorridorCheck:
        """
        Compare a candidate price to the median of APPROVED peers.

        The tolerance is the company policy's ``corridor_tolerance_pct``,
        or the configured default when no policy exists.
        """
        stmt = select(SspCatalogEntryModel.unit_ssp).where(
            SspCatalogEntryModel.company_id == company_id,
            SspCatalogEntryModel.product_id == product_id,
            SspCatalogEntryModel.currency == currency.upper(),
            SspCatalogEntryModel.status == SspStatus.APPROVED.value,
        )
        if exclude_entry_id is not None:
            stmt = stmt.where(SspCatalogEntryModel.id != exclude_entry_id)
        peers = list(self._session.scalars(stmt))

        policy = self.get_ssp_policy(company_id)
        tolerance = (
            policy.corridor_tolerance_pct
            if policy is not None
            else self._config.policy_defaults.corridor_tolerance_pct
        )
        return check_corridor_compliance(
            candidate_ssp=candidate_ssp,
            peer_ssps=peers,
            tolerance_pct=tolerance,
        )

    # =========================================================================
    # Policy
    # =========================================================================

    def get_ssp_policy(self, company_id: str) -> SspPolicy | None:
        model = self._get_policy_model(company_id)
        return model.to_dto() if model is not None else None

    def _get_policy_model(self, company_id: str) -> SspPolicyModel | None:
        stmt = select(SspPolicyModel).where(SspPolicyModel.company_id == company_id)
        return self._session.scalars(stmt).first()

    def upsert_ssp_policy(
        self,
        *,
        company_id: str,
        actor_id: UUID,
        rounding: RoundingMode | str | None = None,
        residual_allowed: bool | None = None,
        residual_eligible_products: Iterable[str] | None = None,
        default_method: SspMethod | str | None = None,
        corridor_tolerance_pct: Decimal | None = None,
        alert_threshold_pct: Decimal | None = None,
    ) -> SspPolicy:
        """
        Create or update the company policy.

        Fields left as None keep their current value, or take the
        configured default for a new policy.

        Raises:
            InvalidPolicyError: On an unknown enum value or out-of-range
                percentage.
        """
        if not company_id:
            raise InvalidPolicyError("company_id", "must not be empty")
        model = self._get_policy_model(company_id)
        defaults = self._config.policy_defaults
        base = (
            model.to_dto()
            if model is not None
            else SspPolicy(
                company_id=company_id,
                rounding=defaults.rounding,
                residual_allowed=defaults.residual_allowed,
                default_method=SspMethod(defaults.default_method),
                corridor_tolerance_pct=defaults.corridor_tolerance_pct,
                alert_threshold_pct=defaults.alert_threshold_pct,
            )
        )
        try:
            rounding_mode = RoundingMode(rounding) if rounding is not None else base.rounding
        except ValueError as e:
            raise InvalidPolicyError("rounding", f"unknown rounding mode {rounding!r}") from e
        try:
            method = SspMethod(default_method) if default_method is not None else base.default_method
        except ValueError as e:
            raise InvalidPolicyError("default_method", f"unknown method {default_method!r}") from e

        policy = SspPolicy(
            company_id=company_id,
            rounding=rounding_mode,
            residual_allowed=(
                base.residual_allowed if residual_allowed is None else bool(residual_allowed)
            ),
            residual_eligible_products=(
                base.residual_eligible_products
                if residual_eligible_products is None
                else frozenset(residual_eligible_products)
            ),
            default_method=method,
            corridor_tolerance_pct=(
                base.corridor_tolerance_pct
                if corridor_tolerance_pct is None
                else corridor_tolerance_pct
            ),
            alert_threshold_pct=(
                base.alert_threshold_pct if alert_threshold_pct is None else alert_threshold_pct
            ),
        )

        try:
            if model is None:
                model = SspPolicyModel.from_dto(policy, created_by_id=actor_id)
                model.created_at = self._clock.now()
                model.updated_at = model.created_at
                self._session.add(model)
            else:
                model.apply_dto(policy, updated_by_id=actor_id)
                model.updated_at = self._clock.now()
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "ssp_policy_upserted",
            extra={
                "company_id": company_id,
                "rounding": policy.rounding.value,
                "residual_allowed": policy.residual_allowed,
                "residual_eligible_count": len(policy.residual_eligible_products),
            },
        )
        return policy
