"""
ORM-level immutability enforcement for the SSP engine's append-only records.

SQLAlchemy fires ``before_update`` / ``before_delete`` mapper events before
any SQL reaches the database.  The listeners registered here check:

    session.flush()
         |
         v
    [before_update] --> _check_*_update() --> ImmutabilityViolationError
         |
         v
    [before_delete] --> _check_*_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Protected entities:

Entity                 | When immutable            | What may still change
-----------------------|---------------------------|------------------------------
AllocationAuditModel   | always (from creation)    | updated_at, updated_by_id
AllocationLineModel    | always (from creation)    | updated_at, updated_by_id
DiscountAppliedModel   | always (from creation)    | updated_at, updated_by_id
UnresolvedPricingModel | always (from creation)    | updated_at, updated_by_id
SspCatalogEntryModel   | once persisted APPROVED   | effective_to, updated_at, updated_by_id

An APPROVED entry can only be closed (supersession), never repriced or
deleted.  The transition REVIEWED -> APPROVED itself is allowed: the check
looks at the status the row had *before* the flush.

Model imports are inline because the kernel sits below ssp_modules.

Usage:

    # ssp_kernel.db.engine.init_engine_from_url() calls this at startup
    from ssp_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

    # tests only
    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from ssp_kernel.exceptions import ImmutabilityViolationError
from ssp_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_METADATA = frozenset({"updated_at", "updated_by_id"})
_APPROVED_MUTABLE = _AUDIT_METADATA | {"effective_to"}


def _changed_fields(target, allowed: frozenset[str]) -> list[str]:
    """Column attributes with pending changes, excluding ``allowed``."""
    insp = inspect(target)
    changed = []
    for attr in insp.mapper.column_attrs:
        if attr.key in allowed:
            continue
        if insp.attrs[attr.key].history.has_changes():
            changed.append(attr.key)
    return changed


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Always-immutable records
# ---------------------------------------------------------------------------


def _check_append_only_update(mapper, connection, target):
    """
    Reject any change to an append-only record.

    ``before_update`` also fires for rows that are merely dirty through a
    relationship; those carry no column changes and pass.
    """
    changed = _changed_fields(target, _AUDIT_METADATA)
    if changed:
        _block(
            type(target).__name__,
            target,
            "UPDATE",
            f"{type(target).__name__} rows are append-only; cannot modify '{changed[0]}'",
            field=changed[0],
        )


def _check_append_only_delete(mapper, connection, target):
    _block(
        type(target).__name__,
        target,
        "DELETE",
        f"{type(target).__name__} rows are append-only and cannot be deleted",
    )


# ---------------------------------------------------------------------------
# Catalog entries
# ---------------------------------------------------------------------------


def _was_approved(target) -> bool:
    """Status the row had before this flush."""
    status_history = get_history(target, "status")
    if status_history.deleted:
        old_status = status_history.deleted[0]
    elif not status_history.added:
        old_status = target.status
    else:
        return False
    return str(getattr(old_status, "value", old_status)) == "APPROVED"


def _check_catalog_entry_update(mapper, connection, target):
    from ssp_modules.catalog.orm import SspCatalogEntryModel

    if not isinstance(target, SspCatalogEntryModel):
        return
    if not _was_approved(target):
        return
    changed = _changed_fields(target, _APPROVED_MUTABLE)
    if changed:
        _block(
            "SspCatalogEntry",
            target,
            "UPDATE",
            f"Cannot modify field '{changed[0]}' on an approved SSP entry; "
            "only effective_to may be closed",
            field=changed[0],
        )


def _check_catalog_entry_delete(mapper, connection, target):
    from ssp_modules.catalog.orm import SspCatalogEntryModel

    if not isinstance(target, SspCatalogEntryModel):
        return
    if _was_approved(target):
        _block(
            "SspCatalogEntry",
            target,
            "DELETE",
            "Approved SSP entries cannot be deleted",
        )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _append_only_models():
    from ssp_modules.allocation.orm import (
        AllocationAuditModel,
        AllocationLineModel,
        UnresolvedPricingModel,
    )
    from ssp_modules.discounts.orm import DiscountAppliedModel

    return (
        AllocationAuditModel,
        AllocationLineModel,
        DiscountAppliedModel,
        UnresolvedPricingModel,
    )


def register_immutability_listeners():
    """
    Register all immutability listeners.  Idempotent.
    """
    from ssp_modules.catalog.orm import SspCatalogEntryModel

    for model in _append_only_models():
        if not event.contains(model, "before_update", _check_append_only_update):
            event.listen(model, "before_update", _check_append_only_update)
        if not event.contains(model, "before_delete", _check_append_only_delete):
            event.listen(model, "before_delete", _check_append_only_delete)

    if not event.contains(SspCatalogEntryModel, "before_update", _check_catalog_entry_update):
        event.listen(SspCatalogEntryModel, "before_update", _check_catalog_entry_update)
    if not event.contains(SspCatalogEntryModel, "before_delete", _check_catalog_entry_delete):
        event.listen(SspCatalogEntryModel, "before_delete", _check_catalog_entry_delete)

    logger.info("immutability_listeners_registered")


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove the immutability listeners.

    WARNING: test use only.
    """
    from ssp_modules.catalog.orm import SspCatalogEntryModel

    for model in _append_only_models():
        _safe_remove_listener(model, "before_update", _check_append_only_update)
        _safe_remove_listener(model, "before_delete", _check_append_only_delete)

    _safe_remove_listener(SspCatalogEntryModel, "before_update", _check_catalog_entry_update)
    _safe_remove_listener(SspCatalogEntryModel, "before_delete", _check_catalog_entry_delete)
