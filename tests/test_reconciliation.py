"""Tests for the reconciliation driver."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from curtailment_recon.core.exceptions import ConfigurationError, TransportError
from curtailment_recon.models.bitcoin_calculation import BitcoinCalculation
from curtailment_recon.models.curtailment_record import CurtailmentRecord
from curtailment_recon.models.reconciliation_run import DateClaim, ReconciliationRun
from curtailment_recon.models.summaries import DailySummary, MonthlySummary, YearlySummary
from curtailment_recon.schemas.reconciliation import DateStatus
from curtailment_recon.services.difficulty_provider import StaticDifficultyProvider
from curtailment_recon.services.reconciliation import ReconciliationService, date_range

from conftest import DIFFICULTY, MINER_MODELS, add_records, make_reconciler

DAY = date(2025, 3, 31)


async def calculation_keys(session_factory, settlement_date=DAY):
    async with session_factory() as db:
        result = await db.execute(
            select(
                BitcoinCalculation.settlement_period,
                BitcoinCalculation.farm_id,
                BitcoinCalculation.miner_model,
            ).where(BitcoinCalculation.settlement_date == settlement_date)
        )
        return set(result.all())


async def daily_summary(session_factory, settlement_date=DAY):
    async with session_factory() as db:
        return await db.get(DailySummary, settlement_date)


async def assert_month_matches_days(session_factory, year_month, first, last):
    async with session_factory() as db:
        result = await db.execute(
            select(DailySummary.total_curtailed_energy).where(DailySummary.summary_date.between(first, last))
        )
        daily_total = sum(float(v) for v in result.scalars().all())
        monthly = await db.get(MonthlySummary, year_month)
    assert monthly is not None
    assert float(monthly.total_curtailed_energy) == pytest.approx(daily_total)
    assert daily_total > 0


class FlakyDifficultyProvider:
    """Raises a transport error on the first lookup only."""

    def __init__(self, difficulty):
        self.difficulty = difficulty
        self.calls = 0

    async def get_difficulty(self, settlement_date):
        self.calls += 1
        if self.calls == 1:
            raise TransportError("difficulty feed timed out")
        return self.difficulty


class TestDateRange:
    def test_inclusive(self):
        assert date_range(date(2025, 1, 30), date(2025, 2, 2)) == [
            date(2025, 1, 30), date(2025, 1, 31), date(2025, 2, 1), date(2025, 2, 2),
        ]

    def test_reversed(self):
        with pytest.raises(ValueError):
            date_range(date(2025, 2, 2), date(2025, 1, 30))


class TestReconcileDate:
    """Tests for reconcile_date."""

    async def test_zero_volume_excluded(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [
            {"period": 1, "farm_id": "T_X-1", "volume": -10},
            {"period": 2, "farm_id": "T_X-1", "volume": -20},
            {"period": 3, "farm_id": "T_X-1", "volume": 0},
        ])

        result = await reconciler.reconcile_date(DAY)

        assert result.status == DateStatus.SUCCESS
        assert result.records_processed == 2
        assert result.calculations_written == 2 * len(MINER_MODELS)
        assert result.bitcoin_mined > 0

        keys = await calculation_keys(session_factory)
        assert {(p, f) for p, f, _ in keys} == {(1, "T_X-1"), (2, "T_X-1")}
        assert {m for _, _, m in keys} == set(MINER_MODELS)

        daily = await daily_summary(session_factory)
        assert daily.total_curtailed_energy == Decimal("30")
        assert daily.record_count == 2

        async with session_factory() as db:
            assert (await db.get(MonthlySummary, "2025-03")).total_curtailed_energy == Decimal("30")
            assert (await db.get(YearlySummary, "2025")).total_curtailed_energy == Decimal("30")

    async def test_restores_exactly_the_missing_calculation(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [
            {"period": 1, "volume": -10},
            {"period": 2, "volume": -20},
        ])
        await reconciler.reconcile_date(DAY)
        before = await calculation_keys(session_factory)

        await test_session.execute(
            delete(BitcoinCalculation).where(
                BitcoinCalculation.settlement_period == 2,
                BitcoinCalculation.miner_model == "S9",
            )
        )
        await test_session.commit()

        result = await reconciler.reconcile_date(DAY)

        assert result.calculations_written == 1
        assert result.calculations_removed == 0
        assert await calculation_keys(session_factory) == before
        async with session_factory() as db:
            count = await db.scalar(select(func.count()).select_from(BitcoinCalculation))
        assert count == 2 * len(MINER_MODELS)

    async def test_idempotent(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [{"period": 5, "volume": -7.25}])

        await reconciler.reconcile_date(DAY)
        first = await daily_summary(session_factory)
        second_result = await reconciler.reconcile_date(DAY)
        second = await daily_summary(session_factory)

        assert second_result.calculations_written == 0
        assert second_result.calculations_removed == 0
        assert (first.total_curtailed_energy, first.total_payment, first.record_count) == (
            second.total_curtailed_energy, second.total_payment, second.record_count
        )

    async def test_force_recomputes_everything(self, test_session, reconciler):
        await add_records(test_session, DAY, [{"period": 5, "volume": -7.25}])
        await reconciler.reconcile_date(DAY)

        result = await reconciler.reconcile_date(DAY, force=True)
        assert result.calculations_written == len(MINER_MODELS)

    async def test_unflagged_records_are_ignored(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [
            {"period": 1, "farm_id": "A", "volume": -10},
            {"period": 1, "farm_id": "B", "volume": -50, "so_flag": False, "cadl_flag": False},
            {"period": 2, "farm_id": "C", "volume": -5, "so_flag": False, "cadl_flag": True},
        ])

        await reconciler.reconcile_date(DAY)

        keys = await calculation_keys(session_factory)
        assert {f for _, f, _ in keys} == {"A", "C"}
        assert (await daily_summary(session_factory)).total_curtailed_energy == Decimal("15")

    async def test_calculation_removed_when_record_disappears(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [
            {"period": 1, "volume": -10},
            {"period": 2, "volume": -20},
        ])
        await reconciler.reconcile_date(DAY)

        await test_session.execute(delete(CurtailmentRecord).where(CurtailmentRecord.settlement_period == 2))
        await test_session.commit()

        result = await reconciler.reconcile_date(DAY)

        assert result.calculations_removed == len(MINER_MODELS)
        assert {p for p, _, _ in await calculation_keys(session_factory)} == {1}
        assert (await daily_summary(session_factory)).total_curtailed_energy == Decimal("10")

    async def test_empty_date_gets_zero_summary(self, session_factory, reconciler):
        result = await reconciler.reconcile_date(date(2025, 4, 2))

        assert result.status == DateStatus.SUCCESS
        daily = await daily_summary(session_factory, date(2025, 4, 2))
        assert daily.total_curtailed_energy == 0
        assert daily.record_count == 0

    async def test_reingest_fetches_from_source(self, session_factory, reconciler, fake_source):
        fake_source.add(DAY, 12, "T_A-1", -3.5)
        fake_source.add(DAY, 12, "T_B-1", 2.0)

        result = await reconciler.reconcile_date(DAY, reingest=True)

        assert result.records_ingested == 1
        assert {(p, f) for p, f, _ in await calculation_keys(session_factory)} == {(12, "T_A-1")}
        assert (await daily_summary(session_factory)).total_payment == Decimal("175")

    async def test_reingest_without_source_is_fatal(self, session_factory, difficulty_provider):
        reconciler = make_reconciler(session_factory, difficulty_provider, source=None)
        with pytest.raises(ConfigurationError):
            await reconciler.reconcile_date(DAY, reingest=True)

    async def test_transient_failure_is_retried(self, test_session, session_factory):
        await add_records(test_session, DAY, [{"period": 1, "volume": -10}])
        provider = FlakyDifficultyProvider(DIFFICULTY)
        reconciler = make_reconciler(session_factory, provider)

        result = await reconciler.reconcile_date(DAY)

        assert result.status == DateStatus.RETRIED
        assert result.attempts == 2
        assert len(await calculation_keys(session_factory)) == len(MINER_MODELS)

    async def test_missing_difficulty_fails_the_date(self, test_session, session_factory):
        await add_records(test_session, DAY, [{"period": 1, "volume": -10}])
        reconciler = make_reconciler(session_factory, StaticDifficultyProvider())

        result = await reconciler.reconcile_date(DAY)

        assert result.status == DateStatus.FAILED
        assert result.attempts == 1
        assert "No difficulty" in result.error
        assert await calculation_keys(session_factory) == set()

    async def test_claimed_date_is_not_touched(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [{"period": 1, "volume": -10}])
        test_session.add(DateClaim(
            claim_date=DAY,
            run_key="range:other-operator",
            claimed_at=datetime.now(timezone.utc).replace(tzinfo=None),
        ))
        await test_session.commit()

        result = await reconciler.reconcile_date(DAY)

        assert result.status == DateStatus.FAILED
        assert "range:other-operator" in result.error
        assert await calculation_keys(session_factory) == set()

    async def test_expired_claim_is_taken_over(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [{"period": 1, "volume": -10}])
        test_session.add(DateClaim(
            claim_date=DAY,
            run_key="range:crashed",
            claimed_at=datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=2),
        ))
        await test_session.commit()

        result = await reconciler.reconcile_date(DAY)

        assert result.status == DateStatus.SUCCESS
        async with session_factory() as db:
            assert await db.get(DateClaim, DAY) is None


class TestReconcileRange:
    """Tests for reconcile_range."""

    def test_shared_connection_sessions_take_turns(self, session_factory, reconciler):
        assert reconciler._connection_lock is not None

        engine = create_async_engine("sqlite+aiosqlite:///unused.db")
        pooled = make_reconciler(async_sessionmaker(bind=engine), StaticDifficultyProvider(DIFFICULTY))
        assert pooled._connection_lock is None

    async def test_failed_date_reported_and_resumed(self, session_factory, reconciler, fake_source):
        dates = date_range(date(2025, 1, 1), date(2025, 1, 5))
        for d in dates:
            fake_source.add(d, 10, "T_A-1", -4.0)
        fake_source.failing_dates.add(dates[2])

        report = await reconciler.reconcile_range(dates[0], dates[-1], batch_size=1, reingest=True)

        assert report.succeeded == [dates[0], dates[1], dates[3], dates[4]]
        assert report.failed == [dates[2]]
        assert "connection reset" in next(r.error for r in report.results if r.date == dates[2])

        async with session_factory() as db:
            run = (await db.execute(select(ReconciliationRun))).scalar_one()
            assert run.status == "partial"
            assert set(run.failed_dates) == {"2025-01-03"}
            assert len(run.completed_dates) == 4

        fake_source.failing_dates.clear()
        fake_source.calls.clear()

        resumed = await reconciler.reconcile_range(dates[0], dates[-1], batch_size=1, reingest=True)

        assert fake_source.dates_called() == {dates[2]}
        assert resumed.succeeded == [dates[2]]
        assert resumed.skipped == [dates[0], dates[1], dates[3], dates[4]]
        assert resumed.completion_percentage == 100.0

        async with session_factory() as db:
            run = (await db.execute(select(ReconciliationRun))).scalar_one()
            assert run.status == "success"
            assert run.failed_dates == {}
            assert len(run.completed_dates) == 5

    async def test_no_resume_reprocesses_everything(self, test_session, reconciler):
        for d in date_range(date(2025, 1, 1), date(2025, 1, 3)):
            await add_records(test_session, d, [{"period": 1, "volume": -1}])

        await reconciler.reconcile_range(date(2025, 1, 1), date(2025, 1, 3), batch_size=1)
        report = await reconciler.reconcile_range(date(2025, 1, 1), date(2025, 1, 3), batch_size=1, resume=False)

        assert report.skipped == []
        assert len(report.succeeded) == 3

    async def test_month_rolls_up_every_date(self, test_session, session_factory, reconciler):
        dates = date_range(date(2025, 2, 1), date(2025, 2, 4))
        for d in dates:
            await add_records(test_session, d, [{"period": 3, "volume": -2}])

        report = await reconciler.reconcile_range(dates[0], dates[-1], batch_size=1)

        assert report.succeeded == dates
        async with session_factory() as db:
            monthly = await db.get(MonthlySummary, "2025-02")
            assert monthly.total_curtailed_energy == Decimal("8")

    async def test_existing_records_across_a_month(self, test_session, session_factory, reconciler):
        dates = [date(2025, 3, 1), date(2025, 3, 2), date(2025, 3, 3)]
        for i, d in enumerate(dates, start=1):
            await add_records(test_session, d, [
                {"period": 1, "farm_id": "T_A-1", "volume": -i},
                {"period": 2, "farm_id": "T_B-1", "volume": -0.5},
            ])

        report = await reconciler.reconcile_range(dates[0], dates[-1], batch_size=1)

        assert report.succeeded == dates
        assert report.failed == []
        assert report.completion_percentage == 100.0
        await assert_month_matches_days(session_factory, "2025-03", dates[0], date(2025, 3, 31))

    @pytest.mark.parametrize("batch_size", [3, 6])
    async def test_concurrent_dates_keep_every_row(self, test_session, session_factory, reconciler, batch_size):
        dates = date_range(date(2025, 5, 1), date(2025, 5, 6))
        for d in dates:
            await add_records(test_session, d, [
                {"period": p, "farm_id": f"T_F{p}-1", "volume": -(p + d.day)} for p in range(1, 6)
            ])

        report = await reconciler.reconcile_range(dates[0], dates[-1], batch_size=batch_size)

        assert report.succeeded == dates
        assert report.completion_percentage == 100.0
        assert not report.incomplete_without_failures
        async with session_factory() as db:
            calculations = await db.scalar(select(func.count()).select_from(BitcoinCalculation))
            assert calculations == len(dates) * 5 * len(MINER_MODELS)
            run = (await db.execute(select(ReconciliationRun))).scalar_one()
            assert len(run.completed_dates) == len(dates)
        for d in dates:
            assert len(await calculation_keys(session_factory, d)) == 5 * len(MINER_MODELS)
        await assert_month_matches_days(session_factory, "2025-05", dates[0], date(2025, 5, 31))

    async def test_concurrent_dates_across_months(self, test_session, session_factory, reconciler):
        dates = date_range(date(2025, 6, 28), date(2025, 7, 3))
        for d in dates:
            await add_records(test_session, d, [{"period": 7, "farm_id": "T_A-1", "volume": -3}])

        report = await reconciler.reconcile_range(dates[0], dates[-1], batch_size=4)

        assert report.succeeded == dates
        await assert_month_matches_days(session_factory, "2025-06", date(2025, 6, 1), date(2025, 6, 30))
        await assert_month_matches_days(session_factory, "2025-07", date(2025, 7, 1), date(2025, 7, 31))
        async with session_factory() as db:
            yearly = await db.get(YearlySummary, "2025")
            assert float(yearly.total_curtailed_energy) == pytest.approx(18.0)

    async def test_skipped_keys_flag_an_incomplete_range(self, test_session, session_factory):
        await add_records(test_session, date(2025, 8, 1), [{"period": 1, "volume": -5}])
        reconciler = make_reconciler(session_factory, StaticDifficultyProvider(0))

        report = await reconciler.reconcile_range(date(2025, 8, 1), date(2025, 8, 1), batch_size=1)

        assert report.failed == []
        assert report.succeeded == [date(2025, 8, 1)]
        assert report.completion_percentage == 0.0
        assert report.incomplete_without_failures

    async def test_only_missing(self, test_session, reconciler):
        await add_records(test_session, date(2025, 1, 1), [{"period": 1, "volume": -1}])
        await add_records(test_session, date(2025, 1, 2), [{"period": 1, "volume": -1}])
        await reconciler.reconcile_date(date(2025, 1, 1))

        assert await reconciler.missing_dates(date(2025, 1, 1), date(2025, 1, 3)) == [date(2025, 1, 2)]

        report = await reconciler.reconcile_range(
            date(2025, 1, 1), date(2025, 1, 3), batch_size=1, only_missing=True
        )
        assert [r.date for r in report.results] == [date(2025, 1, 2)]
        assert report.completion_percentage == 100.0

    async def test_nothing_missing(self, reconciler):
        report = await reconciler.reconcile_range(
            date(2025, 1, 1), date(2025, 1, 3), only_missing=True
        )
        assert report.results == []


class TestStatus:
    """Tests for status."""

    async def test_counts(self, test_session, reconciler):
        await add_records(test_session, DAY, [
            {"period": 1, "volume": -10},
            {"period": 2, "volume": -20},
            {"period": 3, "volume": -5, "so_flag": False},
        ])

        before = await reconciler.status(DAY)
        assert before.total_records == 2
        assert before.expected_calculations == 6
        assert before.missing_count == 6
        assert before.completion_percentage == 0.0

        await reconciler.reconcile_date(DAY)

        after = await reconciler.status(DAY)
        assert after.date == DAY
        assert after.total_calculations == 6
        assert after.missing_count == 0
        assert after.completion_percentage == 100.0
        assert after.by_model == {model: 2 for model in MINER_MODELS}

    async def test_empty_store_is_complete(self, reconciler):
        status = await reconciler.status()
        assert status.total_records == 0
        assert status.completion_percentage == 100.0


class TestSpotFix:
    """Tests for spot_fix."""

    async def test_recomputes_one_key(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [
            {"period": 5, "farm_id": "A", "volume": -10},
            {"period": 6, "farm_id": "A", "volume": -10},
        ])

        fix = await reconciler.spot_fix(DAY, 5, "A")

        assert fix.record_found is True
        assert set(fix.calculations) == set(MINER_MODELS)
        assert all(v > 0 for v in fix.calculations.values())
        assert {(p, f) for p, f, _ in await calculation_keys(session_factory)} == {(5, "A")}
        # Daily summary covers every eligible record, not only the fixed key
        assert (await daily_summary(session_factory)).total_curtailed_energy == Decimal("20")

    async def test_removes_calculation_without_record(self, test_session, session_factory, reconciler):
        await add_records(test_session, DAY, [{"period": 5, "farm_id": "A", "volume": -10}])
        await reconciler.reconcile_date(DAY)
        await test_session.execute(delete(CurtailmentRecord))
        await test_session.commit()

        fix = await reconciler.spot_fix(DAY, 5, "A")

        assert fix.record_found is False
        assert sorted(fix.removed_models) == sorted(MINER_MODELS)
        assert await calculation_keys(session_factory) == set()
        assert (await daily_summary(session_factory)).total_curtailed_energy == 0

    async def test_refetch(self, test_session, session_factory, reconciler, fake_source):
        await add_records(test_session, DAY, [{"period": 5, "farm_id": "A", "volume": -10}])
        fake_source.add(DAY, 5, "A", -4.0)

        fix = await reconciler.spot_fix(DAY, 5, "A", refetch=True)

        assert fix.refetched is True
        assert fake_source.calls == [(DAY, 5)]
        assert (await daily_summary(session_factory)).total_curtailed_energy == Decimal("4")

    async def test_period_out_of_range(self, reconciler):
        with pytest.raises(ValueError):
            await reconciler.spot_fix(DAY, 49, "A")
        with pytest.raises(ValueError):
            await reconciler.spot_fix(date(2025, 3, 30), 47, "A")


class TestVerify:
    """Tests for verify."""

    async def test_matching_store(self, test_session, reconciler, fake_source):
        await add_records(test_session, DAY, [{"period": 1, "farm_id": "A", "volume": -10}])
        fake_source.add(DAY, 1, "A", -10.0)
        fake_source.add(DAY, 1, "B", -99.0, so_flag=False, cadl_flag=False)

        result = await reconciler.verify(DAY)

        assert [p.settlement_period for p in result.periods] == [1, 12, 24, 36, 48]
        assert result.mismatched_periods == []
        assert result.needs_reprocessing is False

    async def test_mismatch_flags_period(self, test_session, reconciler, fake_source):
        await add_records(test_session, DAY, [{"period": 12, "farm_id": "A", "volume": -5}])

        result = await reconciler.verify(DAY)

        assert result.mismatched_periods == [12]
        period = next(p for p in result.periods if p.settlement_period == 12)
        assert period.api_volume == 0
        assert period.db_volume == pytest.approx(5.0)
        assert result.needs_reprocessing is True

    async def test_short_day_skips_missing_periods(self, reconciler):
        result = await reconciler.verify(date(2025, 3, 30))
        assert [p.settlement_period for p in result.periods] == [1, 12, 24, 36]


class TestRunAll:
    """The first unexpected error cancels the dates still running."""

    async def test_cancels_remaining(self):
        cancelled = []

        async def boom():
            raise RuntimeError("checkpoint store gone")

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        with pytest.raises(RuntimeError, match="checkpoint store gone"):
            await ReconciliationService._run_all([slow(), boom()])
        assert cancelled == [True]
