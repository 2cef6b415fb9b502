"""
Module: ssp_modules.compliance
Responsibility:
    Advisory compliance and alert checks over the SSP catalog.
"""

from ssp_modules.compliance.models import (
    ComplianceIssue,
    CorridorBreachReport,
    IssueCode,
    Severity,
    SspStateSnapshot,
)
from ssp_modules.compliance.service import ComplianceService

__all__ = [
    "ComplianceIssue",
    "ComplianceService",
    "CorridorBreachReport",
    "IssueCode",
    "Severity",
    "SspStateSnapshot",
]
