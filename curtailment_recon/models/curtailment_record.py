"""Raw curtailment records ingested from the settlement API."""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from curtailment_recon.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CurtailmentRecord(Base):
    """One accepted curtailment for a farm in a settlement period."""

    __tablename__ = "curtailment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    settlement_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    settlement_period: Mapped[int] = mapped_column(Integer, nullable=False)
    farm_id: Mapped[str] = mapped_column(String(50), nullable=False)

    lead_party_name: Mapped[Optional[str]] = mapped_column(String(200))

    # Values (volume is negative for curtailment)
    volume: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    payment: Mapped[Decimal] = mapped_column(Numeric(16, 4), nullable=False)
    original_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    final_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)

    # Regulatory reason the bid was accepted
    so_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cadl_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "settlement_date", "settlement_period", "farm_id",
            name="uq_curtailment_date_period_farm",
        ),
        Index("idx_curtailment_date_period", "settlement_date", "settlement_period"),
    )

    def __repr__(self) -> str:
        return (
            f"<CurtailmentRecord(date={self.settlement_date}, period={self.settlement_period}, "
            f"farm_id={self.farm_id}, volume={self.volume})>"
        )
