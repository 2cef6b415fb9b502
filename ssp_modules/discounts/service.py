"""
Module: ssp_modules.discounts.service
Responsibility:
    Discount rule management and the recording side of discount
    application: versioned rule upsert with kind-specific validation,
    rule queries, usage history, and the append-only DiscountApplied log.

Architecture:
    ssp_modules layer -- holds a Session.  Discount arithmetic lives in
    ssp_engines.discounts (DiscountCalculator); this service loads the
    rule and usage snapshot for it and records what it returns.

Invariants:
    - Params are validated per kind before anything is persisted.
    - Upserting a new version of a code end-dates the open active
      version that starts earlier.
    - DiscountApplied rows are written once and never edited.
    - Usage caps are evaluated against the cumulative DiscountApplied
      history of the rule.

Failure modes:
    - InvalidDiscountParamsError on malformed params or caps.
    - DiscountRuleNotFoundError on an unknown rule id.
    - DuplicateAllocationError when discounts were already recorded for
      the (invoice, run).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ssp_config import SspEngineConfig, get_active_config
from ssp_engines.discounts import (
    DiscountApplication,
    DiscountCalculator,
    DiscountContext,
    DiscountKind,
    DiscountLine,
    DiscountParams,
    DiscountRuleSnapshot,
    RuleUsage,
    params_to_dict,
    parse_discount_params,
)
from ssp_kernel.domain.clock import Clock, SystemClock
from ssp_kernel.domain.values import Currency, RoundingMode
from ssp_kernel.exceptions import (
    DiscountRuleNotFoundError,
    DuplicateAllocationError,
    InvalidDiscountParamsError,
)
from ssp_kernel.logging_config import get_logger
from ssp_modules.catalog.orm import SspPolicyModel
from ssp_modules.discounts.models import DiscountApplied, DiscountOutcome, DiscountRule
from ssp_modules.discounts.orm import DiscountAppliedModel, DiscountRuleModel

logger = get_logger("modules.discounts.service")


class DiscountRuleService:
    """
    Manages discount rules and their application history.

    Contract:
        Management and ``apply_discount_rules`` own their transaction
        boundary.  ``stage_applications`` only adds rows to the session so
        the allocation service can commit them with its audit record.
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
        self._calculator = DiscountCalculator()

    # =========================================================================
    # Rule management
    # =========================================================================

    def upsert_discount_rule(
        self,
        *,
        company_id: str,
        code: str,
        kind: DiscountKind | str,
        params: Mapping[str, Any] | DiscountParams,
        effective_from: date,
        actor_id: UUID,
        effective_to: date | None = None,
        priority: int = 100,
        active: bool = True,
        max_usage_count: int | None = None,
        max_usage_amount: Decimal | None = None,
    ) -> DiscountRule:
        """
        Create or replace the rule version for (company, code, effective_from).

        Raises:
            InvalidDiscountParamsError: Params do not fit the kind, or a
                cap, priority or window is out of range.
        """
        if isinstance(params, Mapping):
            parsed = parse_discount_params(kind, params)
        else:
            parsed = params
            if parsed.kind is not DiscountKind(kind):
                raise InvalidDiscountParamsError(
                    str(kind), f"params are for kind {parsed.kind.value}"
                )
        kind_name = parsed.kind.value
        code = (code or "").strip()
        if not code:
            raise InvalidDiscountParamsError(kind_name, "code must not be empty")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise InvalidDiscountParamsError(kind_name, "priority must be an integer")
        if effective_to is not None and effective_to < effective_from:
            raise InvalidDiscountParamsError(kind_name, "effective_to is before effective_from")
        if max_usage_count is not None and max_usage_count < 1:
            raise InvalidDiscountParamsError(kind_name, "max_usage_count must be at least 1")
        if max_usage_amount is not None and (
            not isinstance(max_usage_amount, Decimal)
            or not max_usage_amount.is_finite()
            or max_usage_amount <= 0
        ):
            raise InvalidDiscountParamsError(kind_name, "max_usage_amount must be a positive Decimal")

        now = self._clock.now()
        try:
            existing = self._session.scalars(
                select(DiscountRuleModel).where(
                    DiscountRuleModel.company_id == company_id,
                    DiscountRuleModel.code == code,
                    DiscountRuleModel.effective_from == effective_from,
                )
            ).first()
            rule = DiscountRule(
                id=existing.id if existing else uuid4(),
                company_id=company_id,
                code=code,
                params=parsed,
                effective_from=effective_from,
                effective_to=effective_to,
                priority=priority,
                active=active,
                max_usage_count=max_usage_count,
                max_usage_amount=max_usage_amount,
                created_at=existing.created_at if existing else now,
            )
            closed = self._end_date_previous(rule, actor_id) if active else []
            if existing is None:
                self._session.add(DiscountRuleModel.from_dto(rule, created_by_id=actor_id))
            else:
                existing.kind = kind_name
                existing.params = params_to_dict(parsed)
                existing.priority = priority
                existing.active = active
                existing.effective_to = effective_to
                existing.max_usage_count = max_usage_count
                existing.max_usage_amount = max_usage_amount
                existing.updated_at = now
                existing.updated_by_id = actor_id
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "discount_rule_upserted",
            extra={
                "rule_id": str(rule.id),
                "company_id": company_id,
                "code": code,
                "kind": kind_name,
                "priority": priority,
                "is_new": existing is None,
                "end_dated_rule_ids": closed,
            },
        )
        return rule

    def _end_date_previous(self, rule: DiscountRule, actor_id: UUID) -> list[str]:
        stmt = select(DiscountRuleModel).where(
            DiscountRuleModel.company_id == rule.company_id,
            DiscountRuleModel.code == rule.code,
            DiscountRuleModel.active.is_(True),
            DiscountRuleModel.effective_to.is_(None),
            DiscountRuleModel.effective_from < rule.effective_from,
            DiscountRuleModel.id != rule.id,
        )
        closed: list[str] = []
        for previous in self._session.scalars(stmt):
            previous.effective_to = rule.effective_from - timedelta(days=1)
            previous.updated_at = self._clock.now()
            previous.updated_by_id = actor_id
            closed.append(str(previous.id))
        return closed

    def get_discount_rule(self, rule_id: UUID) -> DiscountRule:
        return self._get_model(rule_id).to_dto()

    def _get_model(self, rule_id: UUID) -> DiscountRuleModel:
        model = self._session.get(DiscountRuleModel, rule_id)
        if model is None:
            raise DiscountRuleNotFoundError(str(rule_id))
        return model

    def query_discount_rules(
        self,
        company_id: str,
        *,
        kind: DiscountKind | str | None = None,
        code: str | None = None,
        active: bool | None = None,
        as_of: date | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[DiscountRule, ...]:
        """Filter rules; ordered by priority, then code, then start date."""
        stmt = select(DiscountRuleModel).where(DiscountRuleModel.company_id == company_id)
        if kind is not None:
            stmt = stmt.where(DiscountRuleModel.kind == DiscountKind(kind).value)
        if code is not None:
            stmt = stmt.where(DiscountRuleModel.code == code)
        if active is not None:
            stmt = stmt.where(DiscountRuleModel.active.is_(active))
        if as_of is not None:
            stmt = stmt.where(
                DiscountRuleModel.effective_from <= as_of,
                or_(DiscountRuleModel.effective_to.is_(None), DiscountRuleModel.effective_to >= as_of),
            )
        stmt = (
            stmt.order_by(
                DiscountRuleModel.priority,
                DiscountRuleModel.code,
                DiscountRuleModel.effective_from,
            )
            .limit(limit)
            .offset(offset)
        )
        return tuple(m.to_dto() for m in self._session.scalars(stmt))

    def set_discount_rule_active(self, rule_id: UUID, active: bool, actor_id: UUID) -> DiscountRule:
        model = self._get_model(rule_id)
        try:
            model.active = bool(active)
            model.updated_at = self._clock.now()
            model.updated_by_id = actor_id
            self._session.flush()
            result = model.to_dto()
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.info(
            "discount_rule_active_changed",
            extra={"rule_id": str(rule_id), "code": result.code, "active": result.active},
        )
        return result

    # =========================================================================
    # Usage history
    # =========================================================================

    def get_discount_applications(
        self,
        company_id: str,
        invoice_id: str,
        run_id: str | None = None,
    ) -> tuple[DiscountApplied, ...]:
        stmt = select(DiscountAppliedModel).where(
            DiscountAppliedModel.company_id == company_id,
            DiscountAppliedModel.invoice_id == invoice_id,
        )
        if run_id is not None:
            stmt = stmt.where(DiscountAppliedModel.run_id == run_id)
        stmt = stmt.order_by(DiscountAppliedModel.run_id, DiscountAppliedModel.sequence)
        return tuple(m.to_dto() for m in self._session.scalars(stmt))

    def get_rule_usage(self, rule_id: UUID) -> RuleUsage:
        return self._usage_for([rule_id]).get(str(rule_id), RuleUsage())

    def _usage_for(self, rule_ids: Iterable[UUID]) -> dict[str, RuleUsage]:
        ids = list(rule_ids)
        if not ids:
            return {}
        stmt = (
            select(
                DiscountAppliedModel.rule_id,
                func.count(DiscountAppliedModel.id),
                func.coalesce(func.sum(DiscountAppliedModel.computed_amount), 0),
            )
            .where(DiscountAppliedModel.rule_id.in_(ids))
            .group_by(DiscountAppliedModel.rule_id)
        )
        usage: dict[str, RuleUsage] = {}
        for rule_id, count, amount in self._session.execute(stmt):
            usage[str(rule_id)] = RuleUsage(
                application_count=int(count),
                applied_amount=Decimal(str(amount)),
            )
        return usage

    def load_rules_with_usage(
        self,
        company_id: str,
        as_of: date,
    ) -> tuple[tuple[DiscountRuleSnapshot, ...], dict[str, RuleUsage]]:
        """
        Active rules effective on ``as_of`` and their cumulative usage.

        Two queries regardless of rule count.
        """
        stmt = select(DiscountRuleModel).where(
            DiscountRuleModel.company_id == company_id,
            DiscountRuleModel.active.is_(True),
            DiscountRuleModel.effective_from <= as_of,
            or_(DiscountRuleModel.effective_to.is_(None), DiscountRuleModel.effective_to >= as_of),
        )
        rules = [m.to_dto() for m in self._session.scalars(stmt)]
        usage = self._usage_for([r.id for r in rules])
        return tuple(r.to_snapshot() for r in rules), usage

    # =========================================================================
    # Application
    # =========================================================================

    def stage_applications(
        self,
        *,
        company_id: str,
        invoice_id: str,
        run_id: str,
        currency: str,
        applications: Sequence[DiscountApplication],
        actor_id: UUID,
        allocation_audit_id: UUID | None = None,
    ) -> tuple[DiscountApplied, ...]:
        """
        Add one DiscountApplied row per application to the session.

        Does not flush or commit; the caller owns the transaction.
        """
        applied_at = self._clock.now()
        records = tuple(
            DiscountApplied(
                id=uuid4(),
                company_id=company_id,
                invoice_id=invoice_id,
                run_id=run_id,
                rule_id=UUID(app.rule_id),
                rule_code=app.code,
                kind=app.kind,
                sequence=app.sequence,
                computed_amount=app.computed_amount,
                currency=currency,
                applied_at=applied_at,
                applied_by=actor_id,
                detail=app.detail,
                allocation_audit_id=allocation_audit_id,
            )
            for app in applications
        )
        self._session.add_all(DiscountAppliedModel.from_dto(r) for r in records)
        return records

    def apply_discount_rules(
        self,
        *,
        company_id: str,
        invoice_id: str,
        run_id: str,
        invoice_date: date,
        currency: str,
        gross_total: Decimal,
        actor_id: UUID,
        customer_id: str | None = None,
        lines: Sequence[DiscountLine] = (),
        rounding: RoundingMode | None = None,
    ) -> DiscountOutcome:
        """
        Apply every active, effective rule to an invoice and record it.

        Rules stack sequentially in priority order; each one is computed
        against the total left by the previous one.

        Postconditions:
            - One DiscountApplied row per applied rule, committed together.

        Raises:
            DuplicateAllocationError: Discounts already recorded for
                (invoice, run).
        """
        if self.get_discount_applications(company_id, invoice_id, run_id):
            raise DuplicateAllocationError(invoice_id=invoice_id, run_id=run_id)

        rules, usage = self.load_rules_with_usage(company_id, invoice_date)
        context = DiscountContext(
            invoice_date=invoice_date,
            customer_id=customer_id,
            currency=Currency(currency),
            gross_total=gross_total,
            lines=tuple(lines),
        )
        result = self._calculator.apply(
            rules=rules,
            usage=usage,
            context=context,
            rounding=rounding or self._policy_rounding(company_id),
            tie_break=self._config.discount_tie_break,
        )

        try:
            records = self.stage_applications(
                company_id=company_id,
                invoice_id=invoice_id,
                run_id=run_id,
                currency=context.currency.code,
                applications=result.applications,
                actor_id=actor_id,
            )
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info(
            "discount_rules_applied",
            extra={
                "company_id": company_id,
                "invoice_id": invoice_id,
                "run_id": run_id,
                "applied_count": len(records),
                "skipped_count": len(result.skipped),
                "total_discount": str(result.total_discount),
            },
        )
        return DiscountOutcome(result=result, records=records)

    def _policy_rounding(self, company_id: str) -> RoundingMode:
        stmt = select(SspPolicyModel.rounding).where(SspPolicyModel.company_id == company_id)
        value = self._session.scalars(stmt).first()
        return RoundingMode(value) if value else self._config.policy_defaults.rounding
