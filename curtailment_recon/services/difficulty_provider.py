"""Network difficulty lookups."""

from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Mapping, Optional, Protocol, Union

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from curtailment_recon.core.database import upsert
from curtailment_recon.core.exceptions import DifficultyUnavailable, InvalidDifficulty
from curtailment_recon.models.difficulty import BitcoinDifficulty

logger = structlog.get_logger()


class DifficultyProvider(Protocol):
    """Returns the mining difficulty to use for a settlement date."""

    async def get_difficulty(self, settlement_date: date) -> Decimal:
        ...


class StaticDifficultyProvider:
    """Difficulty from a fixed value or a per-date mapping."""

    def __init__(
        self,
        difficulty: Union[Decimal, float, int, None] = None,
        by_date: Optional[Mapping[date, Union[Decimal, float, int]]] = None,
    ):
        self.default = Decimal(str(difficulty)) if difficulty is not None else None
        self.by_date: Dict[date, Decimal] = {
            d: Decimal(str(v)) for d, v in (by_date or {}).items()
        }

    async def get_difficulty(self, settlement_date: date) -> Decimal:
        value = self.by_date.get(settlement_date, self.default)
        if value is None:
            raise DifficultyUnavailable(
                f"No difficulty configured for {settlement_date}",
                {"date": settlement_date.isoformat()},
            )
        return value


class DatabaseDifficultyProvider:
    """Difficulty from the bitcoin_difficulty table.

    Uses the latest row on or before the settlement date, which mirrors how
    difficulty stays in force until the next retarget. Opens its own session
    per lookup so concurrent dates can share one provider.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory
        self._cache: Dict[date, Decimal] = {}

    async def get_difficulty(self, settlement_date: date) -> Decimal:
        if settlement_date in self._cache:
            return self._cache[settlement_date]

        async with self.session_factory() as db:
            result = await db.execute(
                select(BitcoinDifficulty.difficulty)
                .where(BitcoinDifficulty.difficulty_date <= settlement_date)
                .order_by(BitcoinDifficulty.difficulty_date.desc())
                .limit(1)
            )
            value = result.scalar_one_or_none()
        if value is None:
            raise DifficultyUnavailable(
                f"No difficulty recorded on or before {settlement_date}",
                {"date": settlement_date.isoformat()},
            )

        value = Decimal(str(value))
        self._cache[settlement_date] = value
        return value


async def set_difficulty(
    db: AsyncSession,
    difficulty_date: date,
    difficulty: Union[Decimal, float, int],
    source: str = "manual",
) -> None:
    """Record the difficulty in force from ``difficulty_date``."""
    value = Decimal(str(difficulty))
    if value <= 0:
        raise InvalidDifficulty(difficulty)

    await upsert(
        db,
        BitcoinDifficulty,
        [{"difficulty_date": difficulty_date, "difficulty": value, "source": source}],
        index_elements=["difficulty_date"],
        update_columns=["difficulty", "source"],
    )
    await db.commit()
    logger.info("Difficulty recorded", date=difficulty_date.isoformat(), difficulty=str(value))
