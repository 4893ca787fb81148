"""Aggregate roll-up engine: daily -> monthly -> yearly summaries.

Every level is a full recompute from its immediate children, upserted by
key. Monthly rows read only daily rows and yearly rows read only monthly
rows, so a cascade must run bottom-up.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from curtailment_recon.core.config import get_settings
from curtailment_recon.core.database import upsert
from curtailment_recon.core.exceptions import ConsistencyError
from curtailment_recon.models.bitcoin_calculation import BitcoinCalculation
from curtailment_recon.models.curtailment_record import CurtailmentRecord
from curtailment_recon.models.summaries import (
    BitcoinDailySummary,
    BitcoinMonthlySummary,
    BitcoinYearlySummary,
    DailySummary,
    MonthlySummary,
    YearlySummary,
)
from curtailment_recon.services.eligibility import EligibilityPolicy
from curtailment_recon.services.mining_calculator import BITCOIN_QUANTUM

logger = structlog.get_logger()

ENERGY_QUANTUM = Decimal("0.0001")


def _energy(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(ENERGY_QUANTUM)


def _bitcoin(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(BITCOIN_QUANTUM)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def month_bounds(year_month: str) -> tuple:
    """First and last date of a ``YYYY-MM`` month."""
    try:
        first = datetime.strptime(year_month, "%Y-%m").date()
    except ValueError:
        raise ValueError(f"Invalid year_month '{year_month}', expected YYYY-MM")
    last = first + relativedelta(months=1) - timedelta(days=1)
    return first, last


@dataclass
class RollupTotals:
    """Totals written for one summary key."""
    key: str
    total_curtailed_energy: Decimal = Decimal("0")
    total_payment: Decimal = Decimal("0")
    record_count: int = 0
    bitcoin_by_model: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class CascadeResult:
    daily: RollupTotals
    monthly: RollupTotals
    yearly: RollupTotals


class SummaryRollupService:
    """Recomputes the energy and bitcoin summary tables."""

    def __init__(
        self,
        db: AsyncSession,
        policy: Optional[EligibilityPolicy] = None,
        miner_models: Optional[Sequence[str]] = None,
    ):
        self.db = db
        self.policy = policy or EligibilityPolicy.from_settings()
        if miner_models is None:
            miner_models = get_settings().MINER_MODELS
        self.miner_models = list(miner_models)

    def _with_configured_models(self, sums: Dict[str, Decimal]) -> Dict[str, Decimal]:
        """Every configured model gets a row, zero when it mined nothing."""
        by_model = {model: _bitcoin(0) for model in self.miner_models}
        by_model.update(sums)
        return by_model

    async def rollup_daily(self, summary_date: date) -> RollupTotals:
        """Recompute DailySummary and BitcoinDailySummary rows for a date.

        A date with no eligible records still gets a zero-total row.
        """
        totals = RollupTotals(key=summary_date.isoformat())

        energy = await self.db.execute(
            select(
                func.count(),
                func.sum(func.abs(CurtailmentRecord.volume)),
                func.sum(CurtailmentRecord.payment),
            )
            .select_from(CurtailmentRecord)
            .where(CurtailmentRecord.settlement_date == summary_date, self.policy.sql_filter())
        )
        count, volume, payment = energy.one()
        totals.record_count = count or 0
        totals.total_curtailed_energy = _energy(volume)
        totals.total_payment = _energy(payment)

        bitcoin = await self.db.execute(
            select(BitcoinCalculation.miner_model, func.sum(BitcoinCalculation.bitcoin_mined))
            .where(BitcoinCalculation.settlement_date == summary_date)
            .group_by(BitcoinCalculation.miner_model)
        )
        totals.bitcoin_by_model = self._with_configured_models(
            {model: _bitcoin(mined) for model, mined in bitcoin.all()}
        )

        now = _utcnow()
        try:
            await upsert(
                self.db,
                DailySummary,
                [{
                    "summary_date": summary_date,
                    "total_curtailed_energy": totals.total_curtailed_energy,
                    "total_payment": totals.total_payment,
                    "record_count": totals.record_count,
                    "updated_at": now,
                }],
                index_elements=["summary_date"],
            )
            await self._replace_bitcoin_rows(
                BitcoinDailySummary,
                BitcoinDailySummary.summary_date,
                "summary_date",
                summary_date,
                totals.bitcoin_by_model,
                now,
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("Daily rollup failed", date=summary_date.isoformat(), error=str(e))
            raise

        logger.info(
            "Daily summary updated",
            date=summary_date.isoformat(),
            records=totals.record_count,
            energy_mwh=str(totals.total_curtailed_energy),
            payment=str(totals.total_payment),
        )
        return totals

    async def unsummarized_dates(self, year_month: str) -> List[date]:
        """Dates in the month with records or calculations but no daily row."""
        first, last = month_bounds(year_month)

        summarized = await self.db.execute(
            select(DailySummary.summary_date).where(DailySummary.summary_date.between(first, last))
        )
        have_daily = set(summarized.scalars().all())

        record_dates = await self.db.execute(
            select(CurtailmentRecord.settlement_date)
            .where(CurtailmentRecord.settlement_date.between(first, last), self.policy.sql_filter())
            .distinct()
        )
        calc_dates = await self.db.execute(
            select(BitcoinCalculation.settlement_date)
            .where(BitcoinCalculation.settlement_date.between(first, last))
            .distinct()
        )
        data_dates = set(record_dates.scalars().all()) | set(calc_dates.scalars().all())
        return sorted(data_dates - have_daily)

    async def check_daily_children(self, year_month: str) -> None:
        """
        Raise ConsistencyError if a date in the month has data but no daily row.

        Such a month would be summed from a missing child.
        """
        missing = await self.unsummarized_dates(year_month)
        if missing:
            raise ConsistencyError(
                f"Monthly rollup for {year_month} would skip {len(missing)} unsummarized date(s)",
                {"year_month": year_month, "dates": [d.isoformat() for d in missing]},
            )

    async def rollup_monthly(self, year_month: str) -> RollupTotals:
        """Recompute the month's rows from its daily summaries."""
        await self.check_daily_children(year_month)
        first, last = month_bounds(year_month)
        totals = RollupTotals(key=year_month)

        energy = await self.db.execute(
            select(
                func.sum(DailySummary.total_curtailed_energy),
                func.sum(DailySummary.total_payment),
                func.sum(DailySummary.record_count),
            ).where(DailySummary.summary_date.between(first, last))
        )
        volume, payment, count = energy.one()
        totals.total_curtailed_energy = _energy(volume)
        totals.total_payment = _energy(payment)
        totals.record_count = int(count or 0)

        bitcoin = await self.db.execute(
            select(BitcoinDailySummary.miner_model, func.sum(BitcoinDailySummary.bitcoin_mined))
            .where(BitcoinDailySummary.summary_date.between(first, last))
            .group_by(BitcoinDailySummary.miner_model)
        )
        totals.bitcoin_by_model = self._with_configured_models(
            {model: _bitcoin(mined) for model, mined in bitcoin.all()}
        )

        now = _utcnow()
        try:
            await upsert(
                self.db,
                MonthlySummary,
                [{
                    "year_month": year_month,
                    "total_curtailed_energy": totals.total_curtailed_energy,
                    "total_payment": totals.total_payment,
                    "updated_at": now,
                }],
                index_elements=["year_month"],
            )
            await self._replace_bitcoin_rows(
                BitcoinMonthlySummary,
                BitcoinMonthlySummary.year_month,
                "year_month",
                year_month,
                totals.bitcoin_by_model,
                now,
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("Monthly rollup failed", year_month=year_month, error=str(e))
            raise

        logger.info(
            "Monthly summary updated",
            year_month=year_month,
            energy_mwh=str(totals.total_curtailed_energy),
            payment=str(totals.total_payment),
        )
        return totals

    async def rollup_yearly(self, year: str) -> RollupTotals:
        """Recompute the year's rows from its monthly summaries."""
        year = str(year)
        first_month, last_month = f"{year}-01", f"{year}-12"
        totals = RollupTotals(key=year)

        energy = await self.db.execute(
            select(
                func.sum(MonthlySummary.total_curtailed_energy),
                func.sum(MonthlySummary.total_payment),
            ).where(MonthlySummary.year_month.between(first_month, last_month))
        )
        volume, payment = energy.one()
        totals.total_curtailed_energy = _energy(volume)
        totals.total_payment = _energy(payment)

        bitcoin = await self.db.execute(
            select(BitcoinMonthlySummary.miner_model, func.sum(BitcoinMonthlySummary.bitcoin_mined))
            .where(BitcoinMonthlySummary.year_month.between(first_month, last_month))
            .group_by(BitcoinMonthlySummary.miner_model)
        )
        totals.bitcoin_by_model = self._with_configured_models(
            {model: _bitcoin(mined) for model, mined in bitcoin.all()}
        )

        now = _utcnow()
        try:
            await upsert(
                self.db,
                YearlySummary,
                [{
                    "year": year,
                    "total_curtailed_energy": totals.total_curtailed_energy,
                    "total_payment": totals.total_payment,
                    "updated_at": now,
                }],
                index_elements=["year"],
            )
            await self._replace_bitcoin_rows(
                BitcoinYearlySummary,
                BitcoinYearlySummary.year,
                "year",
                year,
                totals.bitcoin_by_model,
                now,
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("Yearly rollup failed", year=year, error=str(e))
            raise

        logger.info("Yearly summary updated", year=year, energy_mwh=str(totals.total_curtailed_energy))
        return totals

    async def cascade(self, summary_date: date) -> CascadeResult:
        """Daily, then monthly, then yearly for the date's ancestors.

        Other dates of the month that have data but no daily row yet are
        summarized first, so the month is never summed from a missing child.
        """
        daily = await self.rollup_daily(summary_date)
        year_month = summary_date.strftime("%Y-%m")
        for stale_date in await self.unsummarized_dates(year_month):
            logger.info(
                "Summarizing date not yet rolled up",
                date=stale_date.isoformat(),
                year_month=year_month,
            )
            await self.rollup_daily(stale_date)
        monthly = await self.rollup_monthly(year_month)
        yearly = await self.rollup_yearly(str(summary_date.year))
        return CascadeResult(daily=daily, monthly=monthly, yearly=yearly)

    async def _replace_bitcoin_rows(self, model, key_column, key_name: str, key_value, by_model: Dict[str, Decimal], now: datetime) -> None:
        await self.db.execute(
            delete(model).where(key_column == key_value, model.miner_model.notin_(list(by_model)))
        )
        rows: List[dict] = [
            {key_name: key_value, "miner_model": miner_model, "bitcoin_mined": mined, "updated_at": now}
            for miner_model, mined in sorted(by_model.items())
        ]
        await upsert(
            self.db,
            model,
            rows,
            index_elements=[key_name, "miner_model"],
            update_columns=["bitcoin_mined", "updated_at"],
        )
