"""
Module: ssp_modules.allocation
Responsibility:
    Invoice allocation orchestration, the immutable allocation audit and
    the per-line allocations consumed by revenue recognition.
"""

from ssp_modules.allocation.models import (
    AllocationAudit,
    AllocationAuditSummary,
    AllocationLineRecord,
    AllocationOutcome,
    AllocationStatus,
    InvoiceLine,
    InvoiceSnapshot,
    PricingSnapshot,
)
from ssp_modules.allocation.service import AllocationService

__all__ = [
    "AllocationAudit",
    "AllocationAuditSummary",
    "AllocationLineRecord",
    "AllocationOutcome",
    "AllocationService",
    "AllocationStatus",
    "InvoiceLine",
    "InvoiceSnapshot",
    "PricingSnapshot",
]
