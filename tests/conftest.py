"""Pytest configuration and fixtures."""

import os

# Force testing environment before settings are imported
os.environ["TESTING"] = "true"
os.environ["RETRY_BASE_DELAY"] = "0"
os.environ["RETRY_MAX_DELAY"] = "0"
os.environ["ELEXON_RATE_LIMIT_WAIT"] = "0"

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from curtailment_recon import models  # noqa: F401
from curtailment_recon.core.database import Base
from curtailment_recon.core.exceptions import TransportError
from curtailment_recon.models.curtailment_record import CurtailmentRecord
from curtailment_recon.schemas.curtailment import CurtailmentObservation
from curtailment_recon.services.difficulty_provider import StaticDifficultyProvider
from curtailment_recon.services.eligibility import EligibilityPolicy
from curtailment_recon.services.reconciliation import ReconciliationService

# Use SQLite for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

MINER_MODELS = ["S19J_PRO", "S9", "M20S"]
DIFFICULTY = Decimal("113757508810854")


class FakeCurtailmentSource:
    """In-memory curtailment source.

    ``failing_dates`` raise a TransportError on every fetch; ``fail_times``
    raises for the first N fetches of a (date, period).
    """

    def __init__(self):
        self.data: Dict[Tuple[date, int], List[dict]] = {}
        self.failing_dates: Set[date] = set()
        self.fail_times: Dict[Tuple[date, int], int] = {}
        self.calls: List[Tuple[date, int]] = []

    def add(self, settlement_date: date, period: int, farm_id: str, volume: float,
            original_price: float = -50.0, so_flag: bool = True, cadl_flag: bool = False):
        self.data.setdefault((settlement_date, period), []).append({
            "id": farm_id,
            "volume": volume,
            "originalPrice": original_price,
            "finalPrice": original_price,
            "soFlag": so_flag,
            "cadlFlag": cadl_flag,
            "leadPartyName": "Test Lead Party",
        })

    async def fetch_bids_offers(self, settlement_date: date, settlement_period: int) -> List[CurtailmentObservation]:
        key = (settlement_date, settlement_period)
        self.calls.append(key)
        if settlement_date in self.failing_dates:
            raise TransportError("connection reset", {"date": settlement_date.isoformat()})
        if self.fail_times.get(key, 0) > 0:
            self.fail_times[key] -= 1
            raise TransportError("timeout", {"date": settlement_date.isoformat()})
        return [CurtailmentObservation.model_validate(item) for item in self.data.get(key, [])]

    def dates_called(self) -> Set[date]:
        return {d for d, _ in self.calls}


async def no_sleep(_delay: float) -> None:
    return None


async def add_records(session: AsyncSession, settlement_date: date, rows: List[dict]) -> None:
    """Insert curtailment records directly into the record store."""
    for row in rows:
        volume = Decimal(str(row["volume"]))
        price = Decimal(str(row.get("original_price", -50)))
        session.add(CurtailmentRecord(
            settlement_date=settlement_date,
            settlement_period=row["period"],
            farm_id=row.get("farm_id", "T_X-1"),
            lead_party_name=row.get("lead_party_name"),
            volume=volume,
            payment=abs(volume) * price * -1,
            original_price=price,
            final_price=price,
            so_flag=row.get("so_flag", True),
            cadl_flag=row.get("cadl_flag", False),
        ))
    await session.commit()


@pytest.fixture(scope="function")
async def test_engine():
    """Create a test engine for each test function."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables and dispose engine
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def policy():
    return EligibilityPolicy(require_flags=True)


@pytest.fixture
def difficulty_provider():
    return StaticDifficultyProvider(DIFFICULTY)


@pytest.fixture
def fake_source():
    return FakeCurtailmentSource()


@pytest.fixture
def reconciler(session_factory, difficulty_provider, fake_source, policy):
    """Reconciliation service wired to the in-memory store and fakes."""
    return make_reconciler(session_factory, difficulty_provider, fake_source, policy)


def make_reconciler(session_factory, difficulty_provider, source=None,
                    policy: Optional[EligibilityPolicy] = None) -> ReconciliationService:
    return ReconciliationService(
        session_factory,
        difficulty_provider,
        source=source,
        policy=policy or EligibilityPolicy(require_flags=True),
        miner_models=MINER_MODELS,
        sleep=no_sleep,
    )
