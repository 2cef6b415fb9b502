"""
Module: ssp_modules.discounts
Responsibility:
    Discount rule catalog and the append-only record of applied discounts.
"""

from ssp_modules.discounts.models import DiscountApplied, DiscountOutcome, DiscountRule
from ssp_modules.discounts.service import DiscountRuleService

__all__ = [
    "DiscountApplied",
    "DiscountOutcome",
    "DiscountRule",
    "DiscountRuleService",
]
