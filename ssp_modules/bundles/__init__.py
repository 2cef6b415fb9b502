"""
Module: ssp_modules.bundles
Responsibility:
    Bundle registry: SKUs composed of weighted component products, used to
    expand bundle lines before allocation.
"""

from ssp_modules.bundles.models import Bundle, BundleComponent, BundleStatus
from ssp_modules.bundles.service import BundleService

__all__ = [
    "Bundle",
    "BundleComponent",
    "BundleService",
    "BundleStatus",
]
