"""
Pure domain layer.

Value objects and clocks with NO dependencies on the ORM, the database,
or I/O. All domain objects are immutable and deterministic.
"""

from ssp_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from ssp_kernel.domain.currency import CurrencyInfo, CurrencyRegistry
from ssp_kernel.domain.values import Currency, Money, RoundingMode

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CurrencyInfo",
    "CurrencyRegistry",
    "Currency",
    "Money",
    "RoundingMode",
]
