"""Derived calculation store: bitcoin yield per (date, period, farm, model)."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import and_, delete, exists, func, select, tuple_
from sqlalchemy.ext.asyncio import AsyncSession

from curtailment_recon.core.database import upsert
from curtailment_recon.core.exceptions import DataError
from curtailment_recon.models.bitcoin_calculation import BitcoinCalculation
from curtailment_recon.models.curtailment_record import CurtailmentRecord
from curtailment_recon.schemas.reconciliation import SkippedItem
from curtailment_recon.services.difficulty_provider import DifficultyProvider
from curtailment_recon.services.eligibility import EligibilityPolicy
from curtailment_recon.services.mining_calculator import calculate_yield, get_miner_profile

logger = structlog.get_logger()

Key = Tuple[int, str]  # (settlement_period, farm_id)


def _within(query, column, start_date: Optional[date], end_date: Optional[date]):
    if start_date is not None:
        query = query.where(column >= start_date)
    if end_date is not None:
        query = query.where(column <= end_date)
    return query


@dataclass
class CalculationResult:
    """Outcome of calculating one miner model for one date."""
    settlement_date: date
    miner_model: str
    eligible_keys: int = 0
    written: int = 0
    removed: int = 0
    total_bitcoin: Decimal = Decimal("0")
    skipped: List[SkippedItem] = field(default_factory=list)


class BitcoinCalculationService:
    """Keeps historical_bitcoin_calculations a function of the record store."""

    def __init__(
        self,
        db: AsyncSession,
        difficulty_provider: DifficultyProvider,
        policy: Optional[EligibilityPolicy] = None,
    ):
        self.db = db
        self.difficulty_provider = difficulty_provider
        self.policy = policy or EligibilityPolicy.from_settings()

    async def eligible_energy(self, settlement_date: date) -> Dict[Key, Decimal]:
        """Curtailed energy (|volume|, MWh) of every eligible key on a date."""
        result = await self.db.execute(
            select(
                CurtailmentRecord.settlement_period,
                CurtailmentRecord.farm_id,
                func.sum(func.abs(CurtailmentRecord.volume)),
            )
            .where(CurtailmentRecord.settlement_date == settlement_date, self.policy.sql_filter())
            .group_by(CurtailmentRecord.settlement_period, CurtailmentRecord.farm_id)
        )
        return {(period, farm): Decimal(str(energy)) for period, farm, energy in result.all()}

    async def existing_keys(self, settlement_date: date, miner_model: str) -> Set[Key]:
        result = await self.db.execute(
            select(BitcoinCalculation.settlement_period, BitcoinCalculation.farm_id).where(
                BitcoinCalculation.settlement_date == settlement_date,
                BitcoinCalculation.miner_model == miner_model,
            )
        )
        return {(period, farm) for period, farm in result.all()}

    async def calculate_for_date(
        self,
        settlement_date: date,
        miner_model: str,
        force: bool = False,
    ) -> CalculationResult:
        """
        Bring one model's calculations for a date in line with the records.

        Keys without a calculation are computed (every key when ``force``),
        and calculations whose key is no longer eligible are removed.

        Raises:
            DifficultyUnavailable: no difficulty for the date
        """
        result = CalculationResult(settlement_date=settlement_date, miner_model=miner_model)

        try:
            miner_model = get_miner_profile(miner_model).name
        except DataError as e:
            logger.error("Skipping miner model", date=settlement_date.isoformat(), error=e.message)
            result.skipped.append(SkippedItem(miner_model=miner_model, reason=e.message))
            return result
        result.miner_model = miner_model

        energy = await self.eligible_energy(settlement_date)
        existing = await self.existing_keys(settlement_date, miner_model)
        result.eligible_keys = len(energy)

        stale = existing - set(energy)
        targets = sorted(energy) if force else sorted(set(energy) - existing)

        rows = []
        if targets:
            difficulty = await self.difficulty_provider.get_difficulty(settlement_date)
            calculated_at = datetime.now(timezone.utc).replace(tzinfo=None)

            for period, farm_id in targets:
                try:
                    bitcoin = calculate_yield(energy[(period, farm_id)], miner_model, difficulty, settlement_date)
                except DataError as e:
                    logger.warning(
                        "Skipping calculation",
                        date=settlement_date.isoformat(),
                        period=period,
                        farm_id=farm_id,
                        miner_model=miner_model,
                        error=e.message,
                    )
                    result.skipped.append(
                        SkippedItem(
                            settlement_period=period,
                            farm_id=farm_id,
                            miner_model=miner_model,
                            reason=e.message,
                        )
                    )
                    continue

                rows.append({
                    "settlement_date": settlement_date,
                    "settlement_period": period,
                    "farm_id": farm_id,
                    "miner_model": miner_model,
                    "bitcoin_mined": bitcoin,
                    "difficulty": difficulty,
                    "calculated_at": calculated_at,
                })
                result.total_bitcoin += bitcoin

        try:
            if stale:
                removed = await self.db.execute(
                    delete(BitcoinCalculation).where(
                        BitcoinCalculation.settlement_date == settlement_date,
                        BitcoinCalculation.miner_model == miner_model,
                        tuple_(BitcoinCalculation.settlement_period, BitcoinCalculation.farm_id).in_(sorted(stale)),
                    )
                )
                result.removed = removed.rowcount or 0

            result.written = await upsert(
                self.db,
                BitcoinCalculation,
                rows,
                index_elements=["settlement_date", "settlement_period", "farm_id", "miner_model"],
                update_columns=["bitcoin_mined", "difficulty", "calculated_at"],
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Failed to store calculations",
                date=settlement_date.isoformat(),
                miner_model=miner_model,
                error=str(e),
            )
            raise

        logger.info(
            "Calculations updated",
            date=settlement_date.isoformat(),
            miner_model=miner_model,
            eligible_keys=result.eligible_keys,
            written=result.written,
            removed=result.removed,
            skipped=len(result.skipped),
            bitcoin=str(result.total_bitcoin),
        )
        return result

    async def calculate_for_key(
        self,
        settlement_date: date,
        settlement_period: int,
        farm_id: str,
        miner_model: str,
    ) -> Optional[Decimal]:
        """
        Recompute one key for one model.

        Returns the bitcoin mined, or None when the key has no eligible
        record (any calculation for it is removed). Data errors propagate.
        """
        miner_model = get_miner_profile(miner_model).name
        key_filter = and_(
            BitcoinCalculation.settlement_date == settlement_date,
            BitcoinCalculation.settlement_period == settlement_period,
            BitcoinCalculation.farm_id == farm_id,
            BitcoinCalculation.miner_model == miner_model,
        )

        energy_result = await self.db.execute(
            select(func.sum(func.abs(CurtailmentRecord.volume))).where(
                CurtailmentRecord.settlement_date == settlement_date,
                CurtailmentRecord.settlement_period == settlement_period,
                CurtailmentRecord.farm_id == farm_id,
                self.policy.sql_filter(),
            )
        )
        energy = energy_result.scalar_one_or_none()

        try:
            if energy is None:
                await self.db.execute(delete(BitcoinCalculation).where(key_filter))
                await self.db.commit()
                return None

            difficulty = await self.difficulty_provider.get_difficulty(settlement_date)
            bitcoin = calculate_yield(Decimal(str(energy)), miner_model, difficulty, settlement_date)

            await upsert(
                self.db,
                BitcoinCalculation,
                [{
                    "settlement_date": settlement_date,
                    "settlement_period": settlement_period,
                    "farm_id": farm_id,
                    "miner_model": miner_model,
                    "bitcoin_mined": bitcoin,
                    "difficulty": difficulty,
                    "calculated_at": datetime.now(timezone.utc).replace(tzinfo=None),
                }],
                index_elements=["settlement_date", "settlement_period", "farm_id", "miner_model"],
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return bitcoin

    async def count_calculations(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, int]:
        """Number of calculations per miner model."""
        query = select(BitcoinCalculation.miner_model, func.count()).group_by(BitcoinCalculation.miner_model)
        query = _within(query, BitcoinCalculation.settlement_date, start_date, end_date)
        result = await self.db.execute(query)
        return {model: count for model, count in result.all()}

    async def count_eligible_records(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> int:
        query = select(func.count()).select_from(CurtailmentRecord).where(self.policy.sql_filter())
        query = _within(query, CurtailmentRecord.settlement_date, start_date, end_date)
        result = await self.db.execute(query)
        return result.scalar_one()

    def _missing_clause(self, miner_model: str):
        return ~exists().where(
            BitcoinCalculation.settlement_date == CurtailmentRecord.settlement_date,
            BitcoinCalculation.settlement_period == CurtailmentRecord.settlement_period,
            BitcoinCalculation.farm_id == CurtailmentRecord.farm_id,
            BitcoinCalculation.miner_model == miner_model,
        )

    async def count_missing(
        self,
        miner_model: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> int:
        """Eligible records that have no calculation for ``miner_model``."""
        query = (
            select(func.count())
            .select_from(CurtailmentRecord)
            .where(self.policy.sql_filter(), self._missing_clause(miner_model))
        )
        query = _within(query, CurtailmentRecord.settlement_date, start_date, end_date)
        result = await self.db.execute(query)
        return result.scalar_one()

    async def incomplete_dates(
        self,
        start_date: date,
        end_date: date,
        miner_models: Iterable[str],
    ) -> List[date]:
        """Dates in the range with an eligible record missing any model's calculation."""
        dates: Set[date] = set()
        for miner_model in miner_models:
            result = await self.db.execute(
                select(CurtailmentRecord.settlement_date)
                .where(
                    CurtailmentRecord.settlement_date >= start_date,
                    CurtailmentRecord.settlement_date <= end_date,
                    self.policy.sql_filter(),
                    self._missing_clause(miner_model),
                )
                .distinct()
            )
            dates.update(result.scalars().all())
        return sorted(dates)
