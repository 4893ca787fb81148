"""Database models package."""

from .bitcoin_calculation import BitcoinCalculation
from .curtailment_record import CurtailmentRecord
from .difficulty import BitcoinDifficulty
from .reconciliation_run import DateClaim, ReconciliationRun, ReconciliationRunStatus
from .summaries import (
    BitcoinDailySummary,
    BitcoinMonthlySummary,
    BitcoinYearlySummary,
    DailySummary,
    MonthlySummary,
    YearlySummary,
)

__all__ = [
    "BitcoinCalculation",
    "BitcoinDailySummary",
    "BitcoinDifficulty",
    "BitcoinMonthlySummary",
    "BitcoinYearlySummary",
    "CurtailmentRecord",
    "DailySummary",
    "DateClaim",
    "MonthlySummary",
    "ReconciliationRun",
    "ReconciliationRunStatus",
    "YearlySummary",
]
