"""Models for reconciliation run checkpoints and per-date claims."""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import JSON, Date, DateTime, Float, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from curtailment_recon.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ReconciliationRunStatus(str, Enum):
    """Status of a reconciliation run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"  # Finished with at least one failed date
    FAILED = "failed"


class ReconciliationRun(Base):
    """Resumable progress of a range reconciliation.

    Advisory state only: the stores are authoritative, this row just lets an
    interrupted range pick up where it stopped.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    run_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=ReconciliationRunStatus.PENDING.value, nullable=False, index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Progress
    last_completed_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    pending_dates: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    completed_dates: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    retried_dates: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    failed_dates: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict, nullable=False)

    # Running totals
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    calculations_written: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_bitcoin: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=0, nullable=False)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    options: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reconciliation_runs_recent", "created_at"),
    )

    def mark_running(self):
        """Mark run as running."""
        self.status = ReconciliationRunStatus.RUNNING.value
        self.started_at = _utcnow()
        self.completed_at = None
        self.duration_seconds = None

    def mark_finished(self):
        """Mark run as finished, partial if any date failed."""
        self.status = (
            ReconciliationRunStatus.PARTIAL.value
            if self.failed_dates
            else ReconciliationRunStatus.SUCCESS.value
        )
        self._stop_clock()

    def mark_failed(self, error_message: str):
        """Mark run as aborted."""
        self.status = ReconciliationRunStatus.FAILED.value
        self.error_message = error_message
        self._stop_clock()

    def _stop_clock(self):
        self.completed_at = _utcnow()
        if self.started_at:
            self.duration_seconds = (self.completed_at - self.started_at).total_seconds()

    def __repr__(self) -> str:
        return f"<ReconciliationRun(run_key={self.run_key}, status={self.status})>"


class DateClaim(Base):
    """Advisory single-writer claim on a settlement date."""

    __tablename__ = "reconciliation_date_claims"

    claim_date: Mapped[date] = mapped_column(Date, primary_key=True)
    run_key: Mapped[str] = mapped_column(String(100), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
