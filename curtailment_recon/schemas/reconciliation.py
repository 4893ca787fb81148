"""Schemas for reconciliation results and reports."""

import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class DateStatus(str, Enum):
    """Outcome of reconciling a single date."""
    SUCCESS = "success"
    RETRIED = "retried"  # Succeeded after at least one transient failure
    FAILED = "failed"
    SKIPPED = "skipped"  # Already completed in a resumed run


class SkippedItem(BaseModel):
    """A record or key that was skipped because of a data error."""

    settlement_period: Optional[int] = None
    farm_id: Optional[str] = None
    miner_model: Optional[str] = None
    reason: str


class ReconciliationStatus(BaseModel):
    """Completeness of the derived calculation store."""

    date: Optional[datetime.date] = None
    total_records: int = 0
    total_calculations: int = 0
    expected_calculations: int = 0
    missing_count: int = 0
    completion_percentage: float = 100.0
    by_model: Dict[str, int] = Field(default_factory=dict)


class DateResult(BaseModel):
    """Result of reconciling one date."""

    date: datetime.date
    status: DateStatus = DateStatus.SUCCESS
    records_processed: int = 0
    records_ingested: Optional[int] = None
    calculations_written: int = 0
    calculations_removed: int = 0
    bitcoin_mined: Decimal = Decimal("0")  # Bitcoin in the calculations written
    attempts: int = 1
    error: Optional[str] = None
    skipped: List[SkippedItem] = Field(default_factory=list)


class RangeReport(BaseModel):
    """Per-date results of a range reconciliation."""

    run_key: str
    start_date: datetime.date
    end_date: datetime.date
    results: List[DateResult] = Field(default_factory=list)
    completion_percentage: Optional[float] = None

    @property
    def succeeded(self) -> List[datetime.date]:
        return [r.date for r in self.results if r.status in (DateStatus.SUCCESS, DateStatus.RETRIED)]

    @property
    def retried(self) -> List[datetime.date]:
        return [r.date for r in self.results if r.status == DateStatus.RETRIED]

    @property
    def failed(self) -> List[datetime.date]:
        return [r.date for r in self.results if r.status == DateStatus.FAILED]

    @property
    def skipped(self) -> List[datetime.date]:
        return [r.date for r in self.results if r.status == DateStatus.SKIPPED]

    @property
    def records_processed(self) -> int:
        return sum(r.records_processed for r in self.results)

    @property
    def calculations_written(self) -> int:
        return sum(r.calculations_written for r in self.results)

    @property
    def incomplete_without_failures(self) -> bool:
        """No date failed, yet the store is still missing calculations for the range."""
        return (
            self.completion_percentage is not None
            and self.completion_percentage < 100
            and not self.failed
        )


class SpotFixResult(BaseModel):
    """Result of recomputing a single (date, period, farm) key."""

    date: datetime.date
    settlement_period: int
    farm_id: str
    record_found: bool
    refetched: bool = False
    calculations: Dict[str, Optional[float]] = Field(default_factory=dict)
    removed_models: List[str] = Field(default_factory=list)
    skipped: List[SkippedItem] = Field(default_factory=list)


class PeriodComparison(BaseModel):
    """Source vs store totals for one settlement period."""

    settlement_period: int
    api_volume: float
    api_payment: float
    db_volume: float
    db_payment: float

    @property
    def volume_diff(self) -> float:
        return abs(self.api_volume - self.db_volume)

    @property
    def payment_diff(self) -> float:
        return abs(self.api_payment - self.db_payment)


class VerificationResult(BaseModel):
    """Sampled comparison of the store against the settlement API."""

    date: datetime.date
    periods: List[PeriodComparison] = Field(default_factory=list)
    mismatched_periods: List[int] = Field(default_factory=list)

    @property
    def needs_reprocessing(self) -> bool:
        return bool(self.mismatched_periods)
