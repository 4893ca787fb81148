"""Record store: ingest settlement stack data into curtailment_records."""

import asyncio
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import and_, delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from curtailment_recon.core.config import get_settings
from curtailment_recon.core.retry import retry_async
from curtailment_recon.models.curtailment_record import CurtailmentRecord
from curtailment_recon.schemas.curtailment import CurtailmentObservation
from curtailment_recon.services.elexon_client import CurtailmentSource, settlement_periods_for
from curtailment_recon.services.eligibility import EligibilityPolicy

logger = structlog.get_logger()

FOUR_PLACES = Decimal("0.0001")


def _decimal(value: float) -> Decimal:
    return Decimal(repr(value)).quantize(FOUR_PLACES)


@dataclass
class IngestionResult:
    """Counts from ingesting a date or a single period."""
    settlement_date: date
    periods_fetched: int = 0
    observations: int = 0
    filtered: int = 0  # Not eligible curtailment
    merged: int = 0  # Duplicate (period, farm) items folded together
    records_ingested: int = 0
    records_deleted: int = 0
    total_volume: float = 0.0
    total_payment: float = 0.0
    periods_with_data: List[int] = field(default_factory=list)


class CurtailmentIngestionService:
    """Fetches curtailment for a date and replaces the date's records.

    The eligibility predicate is applied here, at the boundary where source
    data enters the record store.
    """

    def __init__(
        self,
        db: AsyncSession,
        source: CurtailmentSource,
        policy: Optional[EligibilityPolicy] = None,
    ):
        settings = get_settings()
        self.db = db
        self.source = source
        self.policy = policy or EligibilityPolicy.from_settings()
        self.concurrency = settings.ELEXON_PERIOD_CONCURRENCY
        self.retry_attempts = settings.RETRY_MAX_ATTEMPTS
        self.retry_base_delay = settings.RETRY_BASE_DELAY
        self.retry_max_delay = settings.RETRY_MAX_DELAY

    async def fetch_period(self, settlement_date: date, settlement_period: int) -> List[CurtailmentObservation]:
        """Fetch one period from the source, retrying transport errors."""
        return await retry_async(
            lambda: self.source.fetch_bids_offers(settlement_date, settlement_period),
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            description=f"fetch {settlement_date.isoformat()} period {settlement_period}",
        )

    async def fetch_date(self, settlement_date: date) -> Dict[int, List[CurtailmentObservation]]:
        """Fetch every settlement period of a date.

        At most ``ELEXON_PERIOD_CONCURRENCY`` requests are in flight. If any
        period still fails after its retries the error is raised once every
        other period has finished, so no request is left running.
        """
        semaphore = asyncio.Semaphore(self.concurrency)
        periods = list(range(1, settlement_periods_for(settlement_date) + 1))

        async def fetch(period: int) -> List[CurtailmentObservation]:
            async with semaphore:
                return await self.fetch_period(settlement_date, period)

        results = await asyncio.gather(*(fetch(p) for p in periods), return_exceptions=True)

        by_period: Dict[int, List[CurtailmentObservation]] = {}
        for period, result in zip(periods, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Period fetch failed",
                    date=settlement_date.isoformat(),
                    period=period,
                    error=str(result),
                )
                raise result
            by_period[period] = result
        return by_period

    def build_rows(
        self,
        settlement_date: date,
        by_period: Dict[int, List[CurtailmentObservation]],
        result: IngestionResult,
    ) -> List[Dict[str, Any]]:
        """Filter eligible observations and fold duplicates per (period, farm)."""
        rows: Dict[Tuple[int, str], Dict[str, Any]] = {}

        for period, observations in sorted(by_period.items()):
            result.periods_fetched += 1
            result.observations += len(observations)

            for obs in observations:
                if not self.policy.is_eligible(obs.volume, obs.so_flag, obs.cadl_flag):
                    result.filtered += 1
                    continue

                key = (period, obs.farm_id)
                existing = rows.get(key)
                if existing is None:
                    rows[key] = {
                        "settlement_date": settlement_date,
                        "settlement_period": period,
                        "farm_id": obs.farm_id,
                        "lead_party_name": obs.lead_party_name,
                        "volume": obs.volume,
                        "payment": obs.payment,
                        "original_price": obs.original_price,
                        "final_price": obs.final_price,
                        "so_flag": obs.so_flag,
                        "cadl_flag": obs.cadl_flag,
                    }
                else:
                    result.merged += 1
                    existing["volume"] += obs.volume
                    existing["payment"] += obs.payment
                    existing["so_flag"] = existing["so_flag"] or obs.so_flag
                    existing["cadl_flag"] = existing["cadl_flag"] or obs.cadl_flag

        records = []
        for row in rows.values():
            result.total_volume += abs(row["volume"])
            result.total_payment += row["payment"]
            for column in ("volume", "payment", "original_price", "final_price"):
                row[column] = _decimal(row[column])
            records.append(row)

        result.periods_with_data = sorted({row["settlement_period"] for row in records})
        return records

    async def ingest_date(self, settlement_date: date) -> IngestionResult:
        """Fetch, filter and replace all records of ``settlement_date``.

        Nothing is deleted unless every period was fetched.
        """
        result = IngestionResult(settlement_date=settlement_date)
        logger.info("Ingesting curtailment", date=settlement_date.isoformat())

        by_period = await self.fetch_date(settlement_date)
        rows = self.build_rows(settlement_date, by_period, result)

        await self._replace(
            [CurtailmentRecord.settlement_date == settlement_date],
            rows,
            result,
        )

        logger.info(
            "Curtailment ingested",
            date=settlement_date.isoformat(),
            periods=result.periods_fetched,
            observations=result.observations,
            filtered=result.filtered,
            records=result.records_ingested,
            deleted=result.records_deleted,
            volume_mwh=round(result.total_volume, 2),
            payment=round(result.total_payment, 2),
        )
        return result

    async def ingest_period(
        self,
        settlement_date: date,
        settlement_period: int,
        farm_id: Optional[str] = None,
    ) -> IngestionResult:
        """Replace the records of one period, or of one farm in that period."""
        result = IngestionResult(settlement_date=settlement_date)

        observations = await self.fetch_period(settlement_date, settlement_period)
        if farm_id is not None:
            observations = [o for o in observations if o.farm_id == farm_id]
        rows = self.build_rows(settlement_date, {settlement_period: observations}, result)

        conditions = [
            CurtailmentRecord.settlement_date == settlement_date,
            CurtailmentRecord.settlement_period == settlement_period,
        ]
        if farm_id is not None:
            conditions.append(CurtailmentRecord.farm_id == farm_id)

        await self._replace(conditions, rows, result)

        logger.info(
            "Period re-ingested",
            date=settlement_date.isoformat(),
            period=settlement_period,
            farm_id=farm_id,
            records=result.records_ingested,
        )
        return result

    async def _replace(self, conditions, rows: List[Dict[str, Any]], result: IngestionResult) -> None:
        try:
            deleted = await self.db.execute(delete(CurtailmentRecord).where(and_(*conditions)))
            result.records_deleted = deleted.rowcount or 0
            if rows:
                await self.db.execute(insert(CurtailmentRecord), rows)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("Failed to replace curtailment records", error=str(e))
            raise
        result.records_ingested = len(rows)

    async def records_for_date(
        self,
        settlement_date: date,
        eligible_only: bool = True,
    ) -> List[CurtailmentRecord]:
        query = select(CurtailmentRecord).where(CurtailmentRecord.settlement_date == settlement_date)
        if eligible_only:
            query = query.where(self.policy.sql_filter())
        query = query.order_by(CurtailmentRecord.settlement_period, CurtailmentRecord.farm_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def record_totals(self, settlement_date: date) -> Dict[int, Dict[str, float]]:
        """Eligible |volume| and payment per settlement period."""
        result = await self.db.execute(
            select(
                CurtailmentRecord.settlement_period,
                func.sum(func.abs(CurtailmentRecord.volume)),
                func.sum(CurtailmentRecord.payment),
            )
            .where(CurtailmentRecord.settlement_date == settlement_date, self.policy.sql_filter())
            .group_by(CurtailmentRecord.settlement_period)
        )
        return {
            period: {"volume": float(volume or 0), "payment": float(payment or 0)}
            for period, volume, payment in result.all()
        }
