"""Tests for ingesting curtailment into the record store."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from curtailment_recon.core.exceptions import TransportError
from curtailment_recon.models.curtailment_record import CurtailmentRecord
from curtailment_recon.services.curtailment_ingestion import CurtailmentIngestionService
from curtailment_recon.services.eligibility import EligibilityPolicy

from conftest import add_records

DAY = date(2025, 2, 10)


async def stored(session, settlement_date=DAY):
    result = await session.execute(
        select(CurtailmentRecord)
        .where(CurtailmentRecord.settlement_date == settlement_date)
        .order_by(CurtailmentRecord.settlement_period, CurtailmentRecord.farm_id)
    )
    return list(result.scalars().all())


class TestIngestDate:
    """Tests for ingest_date."""

    async def test_filters_ineligible_and_stores_payment(self, test_session, fake_source, policy):
        fake_source.add(DAY, 1, "T_A-1", -10.0, original_price=-50.0)
        fake_source.add(DAY, 1, "T_B-1", -5.0, so_flag=False, cadl_flag=False)
        fake_source.add(DAY, 2, "T_A-1", 3.0)
        fake_source.add(DAY, 3, "T_A-1", -2.0, so_flag=False, cadl_flag=True)

        service = CurtailmentIngestionService(test_session, fake_source, policy)
        result = await service.ingest_date(DAY)

        assert result.periods_fetched == 48
        assert result.observations == 4
        assert result.filtered == 2
        assert result.records_ingested == 2
        assert result.periods_with_data == [1, 3]

        records = await stored(test_session)
        assert [(r.settlement_period, r.farm_id) for r in records] == [(1, "T_A-1"), (3, "T_A-1")]
        assert records[0].volume == Decimal("-10")
        assert records[0].payment == Decimal("500")
        assert records[1].cadl_flag is True

    async def test_relaxed_policy_keeps_unflagged(self, test_session, fake_source):
        fake_source.add(DAY, 1, "T_B-1", -5.0, so_flag=False, cadl_flag=False)
        service = CurtailmentIngestionService(test_session, fake_source, EligibilityPolicy(require_flags=False))
        result = await service.ingest_date(DAY)
        assert result.records_ingested == 1

    async def test_duplicate_keys_are_merged(self, test_session, fake_source, policy):
        fake_source.add(DAY, 5, "T_A-1", -10.0, original_price=-20.0)
        fake_source.add(DAY, 5, "T_A-1", -4.0, original_price=-20.0, so_flag=False, cadl_flag=True)

        service = CurtailmentIngestionService(test_session, fake_source, policy)
        result = await service.ingest_date(DAY)

        assert result.merged == 1
        records = await stored(test_session)
        assert len(records) == 1
        assert records[0].volume == Decimal("-14")
        assert records[0].payment == Decimal("280")
        assert records[0].so_flag is True
        assert records[0].cadl_flag is True

    async def test_replaces_previous_records(self, test_session, fake_source, policy):
        await add_records(test_session, DAY, [
            {"period": 1, "farm_id": "OLD-1", "volume": -99},
            {"period": 2, "farm_id": "OLD-2", "volume": -99},
        ])
        await add_records(test_session, date(2025, 2, 11), [{"period": 1, "farm_id": "NEXT-1", "volume": -1}])
        fake_source.add(DAY, 4, "T_A-1", -1.5)

        service = CurtailmentIngestionService(test_session, fake_source, policy)
        result = await service.ingest_date(DAY)

        assert result.records_deleted == 2
        assert [r.farm_id for r in await stored(test_session)] == ["T_A-1"]
        assert len(await stored(test_session, date(2025, 2, 11))) == 1

    async def test_failed_period_leaves_existing_records(self, test_session, fake_source, policy):
        await add_records(test_session, DAY, [{"period": 1, "farm_id": "OLD-1", "volume": -9}])
        fake_source.add(DAY, 1, "T_A-1", -1.0)
        fake_source.failing_dates.add(DAY)

        service = CurtailmentIngestionService(test_session, fake_source, policy)
        with pytest.raises(TransportError):
            await service.ingest_date(DAY)

        assert [r.farm_id for r in await stored(test_session)] == ["OLD-1"]

    async def test_transient_period_failure_is_retried(self, test_session, fake_source, policy):
        fake_source.add(DAY, 10, "T_A-1", -3.0)
        fake_source.fail_times[(DAY, 10)] = 2

        service = CurtailmentIngestionService(test_session, fake_source, policy)
        result = await service.ingest_date(DAY)

        assert result.records_ingested == 1
        assert fake_source.calls.count((DAY, 10)) == 3

    async def test_clock_change_day_fetches_46_periods(self, test_session, fake_source, policy):
        service = CurtailmentIngestionService(test_session, fake_source, policy)
        result = await service.ingest_date(date(2025, 3, 30))
        assert result.periods_fetched == 46
        assert max(p for _, p in fake_source.calls) == 46


class TestIngestPeriod:
    """Tests for ingest_period."""

    async def test_replaces_only_one_farm(self, test_session, fake_source, policy):
        await add_records(test_session, DAY, [
            {"period": 12, "farm_id": "T_A-1", "volume": -1},
            {"period": 12, "farm_id": "T_B-1", "volume": -2},
            {"period": 13, "farm_id": "T_A-1", "volume": -3},
        ])
        fake_source.add(DAY, 12, "T_A-1", -8.0)
        fake_source.add(DAY, 12, "T_B-1", -100.0)

        service = CurtailmentIngestionService(test_session, fake_source, policy)
        result = await service.ingest_period(DAY, 12, "T_A-1")

        assert result.records_ingested == 1
        volumes = {(r.settlement_period, r.farm_id): r.volume for r in await stored(test_session)}
        assert volumes == {
            (12, "T_A-1"): Decimal("-8"),
            (12, "T_B-1"): Decimal("-2"),
            (13, "T_A-1"): Decimal("-3"),
        }


class TestReadHelpers:
    """Tests for records_for_date and record_totals."""

    async def test_totals_per_period(self, test_session, fake_source, policy):
        await add_records(test_session, DAY, [
            {"period": 1, "farm_id": "A", "volume": -10, "original_price": -50},
            {"period": 1, "farm_id": "B", "volume": -5, "original_price": -50},
            {"period": 2, "farm_id": "A", "volume": -1, "so_flag": False},
        ])
        service = CurtailmentIngestionService(test_session, fake_source, policy)

        totals = await service.record_totals(DAY)
        assert totals == {1: {"volume": pytest.approx(15.0), "payment": pytest.approx(750.0)}}

        assert [r.farm_id for r in await service.records_for_date(DAY)] == ["A", "B"]
        assert len(await service.records_for_date(DAY, eligible_only=False)) == 3
