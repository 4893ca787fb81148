"""Network difficulty history used by the yield calculation."""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from curtailment_recon.core.database import Base


class BitcoinDifficulty(Base):
    """Difficulty in force from ``difficulty_date`` until the next row."""

    __tablename__ = "bitcoin_difficulty"

    difficulty_date: Mapped[date] = mapped_column(Date, primary_key=True)
    difficulty: Mapped[Decimal] = mapped_column(Numeric(30, 4), nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc).replace(tzinfo=None),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<BitcoinDifficulty(date={self.difficulty_date}, difficulty={self.difficulty})>"
