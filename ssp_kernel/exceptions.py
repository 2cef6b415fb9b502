"""
Typed Exception Hierarchy for the SSP allocation engine.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from SspEngineError:

    SspEngineError (base)
    |
    +-- ValidationError
    |   +-- InvalidSspEntryError
    |   +-- InvalidPolicyError
    |   +-- InvalidBundleError
    |   +-- UnbalancedBundleError
    |   +-- InvalidDiscountParamsError
    |   +-- InvalidStatusTransitionError
    |   +-- EffectiveWindowOverlapError
    |   +-- CorridorBreachError
    |
    +-- NotFoundError
    |   +-- SspEntryNotFoundError
    |   +-- BundleNotFoundError
    |   +-- DiscountRuleNotFoundError
    |   +-- AllocationAuditNotFoundError
    |
    +-- AllocationError
    |   +-- UnresolvedPricingError
    |   +-- DuplicateAllocationError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES
===============================================================================

Every exception carries a class-level ``code`` that is stable across
releases. Callers catch by type and report by code:

    try:
        service.approve_entry(entry_id, actor_id)
    except InvalidStatusTransitionError as e:
        api_response(code=e.code, current=e.current_status)

Programming errors (malformed arguments handed to pure engines) are raised
as plain ``ValueError``; business outcomes of an allocation are reported
through ``AllocationOutcome`` rather than raised.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID


class SspEngineError(Exception):
    """Base exception for all SSP engine errors."""

    code: str = "SSP_ENGINE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# Validation-related exceptions


class ValidationError(SspEngineError):
    """Input failed a domain validation rule."""

    code: str = "VALIDATION_ERROR"


class InvalidSspEntryError(ValidationError):
    """SSP catalog entry fields are out of range or inconsistent."""

    code: str = "INVALID_SSP_ENTRY"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid SSP entry field '{field}': {reason}")


class InvalidPolicyError(ValidationError):
    """SSP policy settings are out of range."""

    code: str = "INVALID_SSP_POLICY"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid SSP policy field '{field}': {reason}")


class InvalidBundleError(ValidationError):
    """Bundle definition is structurally invalid."""

    code: str = "INVALID_BUNDLE"

    def __init__(self, bundle_sku: str, reason: str):
        self.bundle_sku = bundle_sku
        self.reason = reason
        super().__init__(f"Invalid bundle {bundle_sku}: {reason}")


class UnbalancedBundleError(ValidationError):
    """Bundle component weights do not sum to 1."""

    code: str = "UNBALANCED_BUNDLE"

    def __init__(self, bundle_sku: str, weight_total: str, tolerance: str):
        self.bundle_sku = bundle_sku
        self.weight_total = weight_total
        self.tolerance = tolerance
        super().__init__(
            f"Bundle {bundle_sku} weights sum to {weight_total}, "
            f"expected 1 within {tolerance}"
        )


class InvalidDiscountParamsError(ValidationError):
    """Discount rule parameters do not match the rule kind."""

    code: str = "INVALID_DISCOUNT_PARAMS"

    def __init__(self, kind: str, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(f"Invalid params for {kind} discount: {reason}")


class InvalidStatusTransitionError(ValidationError):
    """Requested lifecycle transition is not allowed from the current state."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_status: str,
        requested_status: str,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"{entity_type} {entity_id} cannot move from "
            f"{current_status} to {requested_status}"
        )


class EffectiveWindowOverlapError(ValidationError):
    """A non-draft SSP entry window overlaps another for the same key."""

    code: str = "EFFECTIVE_WINDOW_OVERLAP"

    def __init__(
        self,
        product_id: str,
        currency: str,
        effective_from: date,
        conflicting_entry_id: str,
    ):
        self.product_id = product_id
        self.currency = currency
        self.effective_from = effective_from
        self.conflicting_entry_id = conflicting_entry_id
        super().__init__(
            f"SSP window for {product_id}/{currency} starting {effective_from} "
            f"overlaps entry {conflicting_entry_id}"
        )


class CorridorBreachError(ValidationError):
    """SSP price falls outside its policy corridor without an override."""

    code: str = "CORRIDOR_BREACH"

    def __init__(
        self,
        product_id: str,
        unit_ssp: str,
        median: str,
        variance_pct: str,
        tolerance_pct: str,
    ):
        self.product_id = product_id
        self.unit_ssp = unit_ssp
        self.median = median
        self.variance_pct = variance_pct
        self.tolerance_pct = tolerance_pct
        super().__init__(
            f"SSP {unit_ssp} for {product_id} deviates {variance_pct} from "
            f"median {median}, beyond tolerance {tolerance_pct}; "
            "an override reason is required"
        )


# Not-found exceptions


class NotFoundError(SspEngineError):
    """Requested record does not exist."""

    code: str = "NOT_FOUND"


class SspEntryNotFoundError(NotFoundError):
    code: str = "SSP_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"SSP entry not found: {entry_id}")


class BundleNotFoundError(NotFoundError):
    code: str = "BUNDLE_NOT_FOUND"

    def __init__(self, bundle_ref: str):
        self.bundle_ref = bundle_ref
        super().__init__(f"Bundle not found: {bundle_ref}")


class DiscountRuleNotFoundError(NotFoundError):
    code: str = "DISCOUNT_RULE_NOT_FOUND"

    def __init__(self, rule_ref: str):
        self.rule_ref = rule_ref
        super().__init__(f"Discount rule not found: {rule_ref}")


class AllocationAuditNotFoundError(NotFoundError):
    code: str = "ALLOCATION_AUDIT_NOT_FOUND"

    def __init__(self, audit_ref: str):
        self.audit_ref = audit_ref
        super().__init__(f"Allocation audit not found: {audit_ref}")


# Allocation-related exceptions


class AllocationError(SspEngineError):
    """Base for errors raised while allocating an invoice."""

    code: str = "ALLOCATION_ERROR"


class UnresolvedPricingError(AllocationError):
    """
    The invoice cannot be allocated with the available pricing data.

    Carries the diagnostic the caller needs to fix the catalog: which
    products lacked an SSP, whether residual was permitted, and whether any
    residual-eligible product appeared on the invoice.
    """

    code: str = "UNRESOLVED_PRICING"

    def __init__(
        self,
        company_id: str,
        invoice_id: str,
        as_of_date: date,
        missing_products: tuple[str, ...],
        residual_allowed: bool,
        eligible_products_present: tuple[str, ...],
        reason: str,
    ):
        self.company_id = company_id
        self.invoice_id = invoice_id
        self.as_of_date = as_of_date
        self.missing_products = missing_products
        self.residual_allowed = residual_allowed
        self.eligible_products_present = eligible_products_present
        self.reason = reason
        super().__init__(
            f"Unresolved pricing for invoice {invoice_id} as of {as_of_date}: "
            f"{reason} (missing: {', '.join(missing_products) or 'none'})"
        )


class DuplicateAllocationError(AllocationError):
    """An audit already exists for (company, invoice, run)."""

    code: str = "DUPLICATE_ALLOCATION"

    def __init__(
        self,
        invoice_id: str,
        run_id: str,
        existing_audit_id: UUID | None = None,
    ):
        self.invoice_id = invoice_id
        self.run_id = run_id
        self.existing_audit_id = existing_audit_id
        super().__init__(
            f"Invoice {invoice_id} already allocated in run {run_id}"
        )


# Immutability-related exceptions


class ImmutabilityError(SspEngineError):
    """Base for append-only persistence violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Allocation audits, their lines, and applied discounts are immutable
    from creation. Approved SSP entries may only have their window closed.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
