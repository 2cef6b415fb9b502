"""
Module: ssp_modules.compliance.models
Responsibility:
    Frozen DTOs produced by the compliance batch checks: issues for the
    human review queue, corridor breach reports and catalog snapshots.

Architecture:
    ssp_modules layer -- pure data definitions with ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class IssueCode(str, Enum):
    MISSING_POLICY = "MISSING_POLICY"
    MISSING_SSP = "MISSING_SSP"
    STALE_DRAFTS = "STALE_DRAFTS"


@dataclass(frozen=True)
class ComplianceIssue:
    """
    One finding for the review queue.

    ``subject`` names what the issue is about: a product id for
    MISSING_SSP, a catalog entry id for STALE_DRAFTS, the company for
    MISSING_POLICY.
    """

    company_id: str
    code: IssueCode
    severity: Severity
    subject: str
    message: str
    detail: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CorridorBreachReport:
    """An APPROVED entry whose price drifted beyond the alert threshold."""

    entry_id: str
    product_id: str
    currency: str
    unit_ssp: Decimal
    median_ssp: Decimal
    variance_pct: Decimal
    threshold_pct: Decimal


@dataclass(frozen=True)
class SspStateSnapshot:
    """Point-in-time counts of a company's catalog entries."""

    company_id: str
    as_of: datetime
    total_entries: int
    by_currency: dict[str, int] = field(default_factory=dict)
    by_method: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)
    effective_approved_on: date | None = None
    effective_approved_count: int = 0
