"""Reconciliation driver.

Brings the calculation store and every summary table back in line with the
record store, one date at a time. Dates are independent units of work: a
failed date is reported and the rest of the range carries on.
"""

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager, nullcontext
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from curtailment_recon.core.config import get_settings
from curtailment_recon.core.exceptions import (
    ConfigurationError,
    DataError,
    DateClaimedError,
    ReconcilerError,
)
from curtailment_recon.core.retry import retry_async
from curtailment_recon.models.reconciliation_run import DateClaim
from curtailment_recon.schemas.reconciliation import (
    DateResult,
    DateStatus,
    PeriodComparison,
    RangeReport,
    ReconciliationStatus,
    SkippedItem,
    SpotFixResult,
    VerificationResult,
)
from curtailment_recon.services.bitcoin_calculation import BitcoinCalculationService
from curtailment_recon.services.checkpoint import CheckpointService, run_key_for
from curtailment_recon.services.curtailment_ingestion import CurtailmentIngestionService
from curtailment_recon.services.difficulty_provider import DifficultyProvider
from curtailment_recon.services.elexon_client import CurtailmentSource, settlement_periods_for
from curtailment_recon.services.eligibility import EligibilityPolicy
from curtailment_recon.services.summary_rollup import SummaryRollupService

logger = structlog.get_logger()

# Largest source/store difference still treated as a match (MWh and GBP)
VERIFY_TOLERANCE = 0.01


def date_range(start_date: date, end_date: date) -> List[date]:
    if end_date < start_date:
        raise ValueError(f"End date {end_date} is before start date {start_date}")
    return [start_date + timedelta(days=i) for i in range((end_date - start_date).days + 1)]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _shares_one_connection(session_factory) -> bool:
    """True when every session from the factory runs on the same DBAPI connection."""
    bind = getattr(session_factory, "kw", {}).get("bind")
    if bind is None:
        return False
    engine = getattr(bind, "sync_engine", bind)
    return isinstance(engine.pool, StaticPool)


class ReconciliationService:
    """Orchestrates ingestion, calculation and roll-up per date."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        difficulty_provider: DifficultyProvider,
        source: Optional[CurtailmentSource] = None,
        policy: Optional[EligibilityPolicy] = None,
        miner_models: Optional[Sequence[str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.difficulty_provider = difficulty_provider
        self.source = source
        self.policy = policy or EligibilityPolicy.from_settings()
        self.miner_models = list(miner_models if miner_models is not None else settings.MINER_MODELS)
        self.batch_size = settings.RECONCILE_BATCH_SIZE
        self.retry_attempts = settings.RETRY_MAX_ATTEMPTS
        self.retry_base_delay = settings.RETRY_BASE_DELAY
        self.retry_max_delay = settings.RETRY_MAX_DELAY
        self.sample_periods = settings.SAMPLE_PERIODS
        self.claim_ttl = settings.DATE_CLAIM_TTL_SECONDS
        self._sleep = sleep
        # Sessions on a single shared connection must take turns
        self._connection_lock: Optional[asyncio.Lock] = (
            asyncio.Lock() if _shares_one_connection(session_factory) else None
        )
        # Monthly and yearly rows are recomputed from their children; one writer per year
        self._rollup_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

        if not self.miner_models:
            raise ConfigurationError("No miner models configured")

    def _store_guard(self):
        return self._connection_lock if self._connection_lock is not None else nullcontext()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._store_guard():
            async with self.session_factory() as db:
                yield db

    def _rollup_lock(self, settlement_date: date) -> asyncio.Lock:
        return self._rollup_locks[settlement_date.year]

    def _require_source(self) -> CurtailmentSource:
        if self.source is None:
            raise ConfigurationError("A curtailment source is required for re-ingestion")
        return self.source

    async def _with_retry(self, operation, description: str, on_retry=None):
        return await retry_async(
            operation,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            description=description,
            on_retry=on_retry,
            sleep=self._sleep,
        )

    # Status

    async def status(
        self,
        settlement_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> ReconciliationStatus:
        """Completeness of the calculation store. Read-only."""
        start = settlement_date
        end = end_date or settlement_date

        async with self._session() as db:
            calc = BitcoinCalculationService(db, self.difficulty_provider, self.policy)
            total_records = await calc.count_eligible_records(start, end)
            by_model = await calc.count_calculations(start, end)
            missing = 0
            for miner_model in self.miner_models:
                missing += await calc.count_missing(miner_model, start, end)

        expected = total_records * len(self.miner_models)
        completion = 100.0 if expected == 0 else round((expected - missing) / expected * 100, 2)

        return ReconciliationStatus(
            date=settlement_date if end_date is None else None,
            total_records=total_records,
            total_calculations=sum(by_model.get(m, 0) for m in self.miner_models),
            expected_calculations=expected,
            missing_count=missing,
            completion_percentage=completion,
            by_model=by_model,
        )

    # Per-date claims

    async def _claim(self, settlement_date: date, run_key: str) -> None:
        """Take the single-writer claim on a date."""
        async with self._session() as db:
            claim = await db.get(DateClaim, settlement_date)
            now = _utcnow()
            if claim is not None:
                age = (now - claim.claimed_at).total_seconds()
                if claim.run_key != run_key and age < self.claim_ttl:
                    raise DateClaimedError(
                        f"{settlement_date} is being reconciled by {claim.run_key}",
                        {"date": settlement_date.isoformat(), "owner": claim.run_key},
                    )
                claim.run_key = run_key
                claim.claimed_at = now
            else:
                db.add(DateClaim(claim_date=settlement_date, run_key=run_key, claimed_at=now))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise DateClaimedError(
                    f"{settlement_date} was claimed concurrently",
                    {"date": settlement_date.isoformat()},
                )

    async def _release(self, settlement_date: date, run_key: str) -> None:
        async with self._session() as db:
            await db.execute(
                delete(DateClaim).where(DateClaim.claim_date == settlement_date, DateClaim.run_key == run_key)
            )
            await db.commit()

    # Single date

    async def reconcile_date(
        self,
        settlement_date: date,
        force: bool = False,
        reingest: bool = False,
        run_key: Optional[str] = None,
    ) -> DateResult:
        """
        Reconcile one date: optional re-ingest, calculations, then cascade.

        Transient failures are retried for the whole date. Any other failure
        is returned as a FAILED result; only configuration errors raise.
        """
        run_key = run_key or f"date:{settlement_date.isoformat()}:{uuid.uuid4().hex[:8]}"
        result = DateResult(date=settlement_date, attempts=0)
        log = logger.bind(date=settlement_date.isoformat(), run_key=run_key)

        def count_retry(attempt: int, exc: BaseException) -> None:
            log.warning("Date will be retried", attempt=attempt, error=str(exc))

        async def attempt() -> DateResult:
            result.attempts += 1
            return await self._reconcile_once(settlement_date, force, reingest, result)

        try:
            if reingest:
                self._require_source()
            await self._claim(settlement_date, run_key)
            try:
                await self._with_retry(attempt, f"reconcile {settlement_date.isoformat()}", count_retry)
            finally:
                await self._release(settlement_date, run_key)
        except ConfigurationError:
            raise
        except Exception as e:
            result.status = DateStatus.FAILED
            result.error = e.message if isinstance(e, ReconcilerError) else f"{type(e).__name__}: {e}"
            log.error("Date reconciliation failed", attempts=result.attempts, error=result.error)
            return result

        result.attempts = max(result.attempts, 1)
        result.status = DateStatus.RETRIED if result.attempts > 1 else DateStatus.SUCCESS
        log.info(
            "Date reconciled",
            status=result.status.value,
            records=result.records_processed,
            calculations_written=result.calculations_written,
            calculations_removed=result.calculations_removed,
            skipped=len(result.skipped),
            attempts=result.attempts,
        )
        return result

    async def _reconcile_once(
        self,
        settlement_date: date,
        force: bool,
        reingest: bool,
        result: DateResult,
    ) -> DateResult:
        result.records_ingested = None
        result.calculations_written = 0
        result.calculations_removed = 0
        result.skipped = []
        result.bitcoin_mined = Decimal("0")

        async with self._session() as db:
            # Records must be complete before calculations, and calculations before roll-up
            if reingest:
                ingestion = CurtailmentIngestionService(db, self._require_source(), self.policy)
                ingested = await ingestion.ingest_date(settlement_date)
                result.records_ingested = ingested.records_ingested

            calc = BitcoinCalculationService(db, self.difficulty_provider, self.policy)
            bitcoin = Decimal("0")
            for miner_model in self.miner_models:
                calculated = await calc.calculate_for_date(settlement_date, miner_model, force=force)
                result.calculations_written += calculated.written
                result.calculations_removed += calculated.removed
                result.skipped.extend(calculated.skipped)
                bitcoin += calculated.total_bitcoin

            result.records_processed = await calc.count_eligible_records(settlement_date, settlement_date)

            rollup = SummaryRollupService(db, self.policy, self.miner_models)
            async with self._rollup_lock(settlement_date):
                await rollup.cascade(settlement_date)

        result.bitcoin_mined = bitcoin
        return result

    # Ranges

    async def missing_dates(self, start_date: date, end_date: date) -> List[date]:
        """Dates with eligible records whose calculations are incomplete."""
        async with self._session() as db:
            calc = BitcoinCalculationService(db, self.difficulty_provider, self.policy)
            return await calc.incomplete_dates(start_date, end_date, self.miner_models)

    async def reconcile_range(
        self,
        start_date: date,
        end_date: date,
        batch_size: Optional[int] = None,
        force: bool = False,
        reingest: bool = False,
        resume: bool = True,
        only_missing: bool = False,
    ) -> RangeReport:
        """
        Reconcile every date in ``[start_date, end_date]``.

        Up to ``batch_size`` dates run at once. Progress is checkpointed
        after each date; a resumed run only processes dates that are not yet
        completed. Failed dates are reported, not raised.
        """
        batch_size = max(batch_size or self.batch_size, 1)
        if reingest:
            self._require_source()

        dates = date_range(start_date, end_date)
        run_key = run_key_for(start_date, end_date)
        if only_missing:
            dates = await self.missing_dates(start_date, end_date)
            run_key += ":missing"

        report = RangeReport(run_key=run_key, start_date=start_date, end_date=end_date)
        if not dates:
            logger.info("Nothing to reconcile", run_key=run_key)
            report.completion_percentage = (await self.status(start_date, end_date)).completion_percentage
            return report

        logger.info(
            "Starting range reconciliation",
            run_key=run_key,
            dates=len(dates),
            batch_size=batch_size,
            force=force,
            reingest=reingest,
        )

        async with self.session_factory() as checkpoint_db:
            checkpoints = CheckpointService(checkpoint_db)
            async with self._store_guard():
                run, pending = await checkpoints.start_or_resume(
                    run_key,
                    dates,
                    resume=resume,
                    options={"force": force, "reingest": reingest, "batch_size": batch_size},
                )

            pending_set = set(pending)
            for d in dates:
                if d not in pending_set:
                    report.results.append(DateResult(date=d, status=DateStatus.SKIPPED, attempts=0))

            semaphore = asyncio.Semaphore(batch_size)
            checkpoint_lock = asyncio.Lock()

            async def process(d: date) -> None:
                async with semaphore:
                    result = await self.reconcile_date(d, force=force, reingest=reingest, run_key=run_key)
                async with checkpoint_lock, self._store_guard():
                    if result.status == DateStatus.FAILED:
                        await checkpoints.mark_date_failed(run, d, result.error or "unknown error")
                    else:
                        await checkpoints.mark_date_completed(run, d, result)
                    report.results.append(result)

            try:
                await self._run_all([process(d) for d in pending])
            except Exception as e:
                async with checkpoint_lock, self._store_guard():
                    await checkpoints.abort(run, str(e))
                raise

            async with self._store_guard():
                await checkpoints.finish(run)

        report.results.sort(key=lambda r: r.date)
        report.completion_percentage = (await self.status(start_date, end_date)).completion_percentage
        if report.incomplete_without_failures:
            logger.warning(
                "Range finished without failed dates but calculations are incomplete",
                run_key=run_key,
                completion_percentage=report.completion_percentage,
                skipped_items=sum(len(r.skipped) for r in report.results),
            )

        logger.info(
            "Range reconciliation finished",
            run_key=run_key,
            succeeded=len(report.succeeded),
            retried=len(report.retried),
            failed=len(report.failed),
            skipped=len(report.skipped),
            completion_percentage=report.completion_percentage,
        )
        return report

    @staticmethod
    async def _run_all(coroutines) -> None:
        """Run coroutines concurrently; on the first error cancel the rest and raise."""
        tasks = [asyncio.ensure_future(c) for c in coroutines]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    # Surgical fixes

    async def spot_fix(
        self,
        settlement_date: date,
        settlement_period: int,
        farm_id: str,
        refetch: bool = False,
    ) -> SpotFixResult:
        """Recompute one (date, period, farm) key for every miner model, then cascade."""
        max_period = settlement_periods_for(settlement_date)
        if not 1 <= settlement_period <= max_period:
            raise ValueError(f"Settlement period must be between 1 and {max_period} on {settlement_date}")
        if refetch:
            self._require_source()

        run_key = f"spot-fix:{settlement_date.isoformat()}:{uuid.uuid4().hex[:8]}"
        log = logger.bind(date=settlement_date.isoformat(), period=settlement_period, farm_id=farm_id)

        async def attempt() -> SpotFixResult:
            fix = SpotFixResult(
                date=settlement_date,
                settlement_period=settlement_period,
                farm_id=farm_id,
                record_found=False,
                refetched=refetch,
            )
            async with self._session() as db:
                if refetch:
                    ingestion = CurtailmentIngestionService(db, self._require_source(), self.policy)
                    await ingestion.ingest_period(settlement_date, settlement_period, farm_id)

                calc = BitcoinCalculationService(db, self.difficulty_provider, self.policy)
                for miner_model in self.miner_models:
                    try:
                        bitcoin = await calc.calculate_for_key(
                            settlement_date, settlement_period, farm_id, miner_model
                        )
                    except DataError as e:
                        log.warning("Skipping calculation", miner_model=miner_model, error=e.message)
                        fix.skipped.append(
                            SkippedItem(
                                settlement_period=settlement_period,
                                farm_id=farm_id,
                                miner_model=miner_model,
                                reason=e.message,
                            )
                        )
                        continue
                    if bitcoin is None:
                        fix.removed_models.append(miner_model)
                        fix.calculations[miner_model] = None
                    else:
                        fix.record_found = True
                        fix.calculations[miner_model] = float(bitcoin)

                rollup = SummaryRollupService(db, self.policy, self.miner_models)
                async with self._rollup_lock(settlement_date):
                    await rollup.cascade(settlement_date)
            return fix

        await self._claim(settlement_date, run_key)
        try:
            fix = await self._with_retry(attempt, f"spot-fix {settlement_date.isoformat()} p{settlement_period}")
        finally:
            await self._release(settlement_date, run_key)

        log.info(
            "Spot fix complete",
            record_found=fix.record_found,
            removed_models=fix.removed_models,
            skipped=len(fix.skipped),
        )
        return fix

    # Verification

    async def verify(self, settlement_date: date) -> VerificationResult:
        """Compare sampled periods from the source against the record store."""
        source = self._require_source()
        max_period = settlement_periods_for(settlement_date)
        periods = [p for p in self.sample_periods if 1 <= p <= max_period]
        verification = VerificationResult(date=settlement_date)

        async with self._session() as db:
            ingestion = CurtailmentIngestionService(db, source, self.policy)
            stored = await ingestion.record_totals(settlement_date)

            for period in periods:
                observations = await ingestion.fetch_period(settlement_date, period)
                eligible = [
                    o for o in observations
                    if self.policy.is_eligible(o.volume, o.so_flag, o.cadl_flag)
                ]
                db_totals = stored.get(period, {"volume": 0.0, "payment": 0.0})
                comparison = PeriodComparison(
                    settlement_period=period,
                    api_volume=round(sum(abs(o.volume) for o in eligible), 4),
                    api_payment=round(sum(o.payment for o in eligible), 4),
                    db_volume=round(db_totals["volume"], 4),
                    db_payment=round(db_totals["payment"], 4),
                )
                verification.periods.append(comparison)
                if comparison.volume_diff > VERIFY_TOLERANCE or comparison.payment_diff > VERIFY_TOLERANCE:
                    verification.mismatched_periods.append(period)

        logger.info(
            "Verification complete",
            date=settlement_date.isoformat(),
            sampled=len(periods),
            mismatched=verification.mismatched_periods,
            needs_reprocessing=verification.needs_reprocessing,
        )
        return verification
