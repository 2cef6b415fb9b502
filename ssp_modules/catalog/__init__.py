"""
Module: ssp_modules.catalog
Responsibility:
    SSP catalog: effective-dated standalone selling prices per
    (company, product, currency), their evidence, and the per-company SSP
    policy read on every allocation.
"""

from ssp_modules.catalog.models import (
    ProductPricing,
    SspCatalogEntry,
    SspEvidence,
    SspMethod,
    SspPolicy,
    SspStatus,
    pick_effective_entry,
    windows_overlap,
)
from ssp_modules.catalog.service import SspCatalogService

__all__ = [
    "ProductPricing",
    "SspCatalogEntry",
    "SspCatalogService",
    "SspEvidence",
    "SspMethod",
    "SspPolicy",
    "SspStatus",
    "pick_effective_entry",
    "windows_overlap",
]
