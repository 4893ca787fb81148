"""Daily, monthly and yearly roll-up tables."""

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Date, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from curtailment_recon.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DailySummary(Base):
    """Curtailed energy and payment for one settlement date."""

    __tablename__ = "daily_summaries"

    summary_date: Mapped[date] = mapped_column(Date, primary_key=True)
    total_curtailed_energy: Mapped[Decimal] = mapped_column(Numeric(16, 4), nullable=False, default=0)
    total_payment: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<DailySummary(date={self.summary_date}, energy={self.total_curtailed_energy})>"


class MonthlySummary(Base):
    """Sum of the daily summaries of one month."""

    __tablename__ = "monthly_summaries"

    year_month: Mapped[str] = mapped_column(String(7), primary_key=True)  # YYYY-MM
    total_curtailed_energy: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=0)
    total_payment: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<MonthlySummary(year_month={self.year_month}, energy={self.total_curtailed_energy})>"


class YearlySummary(Base):
    """Sum of the monthly summaries of one year."""

    __tablename__ = "yearly_summaries"

    year: Mapped[str] = mapped_column(String(4), primary_key=True)
    total_curtailed_energy: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False, default=0)
    total_payment: Mapped[Decimal] = mapped_column(Numeric(22, 4), nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<YearlySummary(year={self.year}, energy={self.total_curtailed_energy})>"


class BitcoinDailySummary(Base):
    """Bitcoin mined per miner model for one settlement date."""

    __tablename__ = "bitcoin_daily_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    summary_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    miner_model: Mapped[str] = mapped_column(String(20), nullable=False)
    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("summary_date", "miner_model", name="uq_bitcoin_daily_date_model"),
    )

    def __repr__(self) -> str:
        return f"<BitcoinDailySummary(date={self.summary_date}, model={self.miner_model}, btc={self.bitcoin_mined})>"


class BitcoinMonthlySummary(Base):
    """Bitcoin mined per miner model for one month."""

    __tablename__ = "bitcoin_monthly_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    miner_model: Mapped[str] = mapped_column(String(20), nullable=False)
    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(22, 8), nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("year_month", "miner_model", name="uq_bitcoin_monthly_month_model"),
    )


class BitcoinYearlySummary(Base):
    """Bitcoin mined per miner model for one year."""

    __tablename__ = "bitcoin_yearly_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[str] = mapped_column(String(4), nullable=False, index=True)
    miner_model: Mapped[str] = mapped_column(String(20), nullable=False)
    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("year", "miner_model", name="uq_bitcoin_yearly_year_model"),
    )
