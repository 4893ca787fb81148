"""Pydantic schemas package."""

from .curtailment import CurtailmentObservation
from .reconciliation import (
    DateResult,
    DateStatus,
    PeriodComparison,
    RangeReport,
    ReconciliationStatus,
    SkippedItem,
    SpotFixResult,
    VerificationResult,
)

__all__ = [
    "CurtailmentObservation",
    "DateResult",
    "DateStatus",
    "PeriodComparison",
    "RangeReport",
    "ReconciliationStatus",
    "SkippedItem",
    "SpotFixResult",
    "VerificationResult",
]
