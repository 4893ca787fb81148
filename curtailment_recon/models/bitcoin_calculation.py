"""Hypothetical mining yield per curtailment key and miner model."""

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Date, DateTime, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from curtailment_recon.core.database import Base


class BitcoinCalculation(Base):
    """Bitcoin that could have been mined with one record's curtailed energy."""

    __tablename__ = "historical_bitcoin_calculations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    settlement_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    settlement_period: Mapped[int] = mapped_column(Integer, nullable=False)
    farm_id: Mapped[str] = mapped_column(String(50), nullable=False)
    miner_model: Mapped[str] = mapped_column(String(20), nullable=False)

    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    # Snapshot of the network difficulty used for the calculation
    difficulty: Mapped[Decimal] = mapped_column(Numeric(30, 4), nullable=False)

    calculated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc).replace(tzinfo=None),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "settlement_date", "settlement_period", "farm_id", "miner_model",
            name="uq_bitcoin_calc_key",
        ),
        Index("idx_bitcoin_calc_date_model", "settlement_date", "miner_model"),
    )

    def __repr__(self) -> str:
        return (
            f"<BitcoinCalculation(date={self.settlement_date}, period={self.settlement_period}, "
            f"farm_id={self.farm_id}, miner_model={self.miner_model}, bitcoin_mined={self.bitcoin_mined})>"
        )
