"""Async engine, sessions and the upsert helper shared by every store."""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from curtailment_recon.core.config import Settings, get_settings

logger = structlog.get_logger()

# Keeps bound parameters under the asyncpg and SQLite limits
UPSERT_CHUNK_SIZE = 500

# Created on first use so importing models never needs a database
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    """Declarative base for every reconciler table."""


def _engine_options(settings: Settings) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": settings.DB_ECHO, "future": True}
    if settings.database_url_async.startswith("sqlite"):
        # One shared connection, otherwise each session sees its own in-memory database
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=settings.DB_POOL_PRE_PING,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url_async, **_engine_options(settings))
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Session factory bound to the shared engine; one session per unit of work."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def init_db() -> None:
    """Create every table that is not there yet."""
    from curtailment_recon import models  # noqa: F401

    try:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("Could not create tables", error=str(e))
        raise
    logger.info("Tables created")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_factory = None


def _insert_for(session: AsyncSession, model: Type[Base]):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


async def upsert(
    session: AsyncSession,
    model: Type[Base],
    rows: Sequence[Dict[str, Any]],
    index_elements: Iterable[str],
    update_columns: Optional[List[str]] = None,
) -> int:
    """Insert rows, replacing the value columns of rows whose key already exists.

    Every write in this project is either a delete-by-date or an upsert keyed
    by the entity identity, so this is the only write path for summaries and
    calculations.
    """
    if not rows:
        return 0

    index_elements = list(index_elements)
    if update_columns is None:
        update_columns = [c for c in rows[0].keys() if c not in index_elements]

    rows = list(rows)
    for offset in range(0, len(rows), UPSERT_CHUNK_SIZE):
        stmt = _insert_for(session, model).values(rows[offset:offset + UPSERT_CHUNK_SIZE])
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={column: stmt.excluded[column] for column in update_columns},
        )
        await session.execute(stmt)
    return len(rows)
