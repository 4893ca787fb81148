"""Durable checkpoints for range reconciliations."""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from curtailment_recon.models.reconciliation_run import ReconciliationRun
from curtailment_recon.schemas.reconciliation import DateResult, DateStatus

logger = structlog.get_logger()


def run_key_for(start_date: date, end_date: date) -> str:
    return f"range:{start_date.isoformat()}:{end_date.isoformat()}"


class CheckpointService:
    """Persists which dates of a range are done, so a rerun can resume.

    The JSON progress columns are reassigned, never mutated in place, so the
    ORM sees every change.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, run_key: str) -> Optional[ReconciliationRun]:
        result = await self.db.execute(
            select(ReconciliationRun).where(ReconciliationRun.run_key == run_key)
        )
        return result.scalar_one_or_none()

    async def latest(self) -> Optional[ReconciliationRun]:
        result = await self.db.execute(
            select(ReconciliationRun)
            .order_by(ReconciliationRun.created_at.desc(), ReconciliationRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def start_or_resume(
        self,
        run_key: str,
        dates: Sequence[date],
        resume: bool = True,
        options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ReconciliationRun, List[date]]:
        """
        Load or create the run for ``run_key``.

        Returns:
            The run, and the dates still to process. A resumed run skips
            every date it already completed; failed dates are retried.
        """
        run = await self.get(run_key)
        dates = sorted(set(dates))

        if run is not None and resume:
            completed = set(run.completed_dates or [])
            pending = [d for d in dates if d.isoformat() not in completed]
            logger.info(
                "Resuming reconciliation run",
                run_key=run_key,
                previous_status=run.status,
                completed=len(completed),
                pending=len(pending),
                previously_failed=len(run.failed_dates or {}),
            )
        else:
            if run is None:
                run = ReconciliationRun(run_key=run_key, start_date=dates[0], end_date=dates[-1])
                self.db.add(run)
            else:
                logger.info("Restarting reconciliation run", run_key=run_key)
            run.completed_dates = []
            run.retried_dates = []
            run.failed_dates = {}
            run.last_completed_date = None
            run.records_processed = 0
            run.calculations_written = 0
            run.total_bitcoin = Decimal("0")
            run.error_message = None
            pending = list(dates)

        run.pending_dates = [d.isoformat() for d in pending]
        if options is not None:
            run.options = options
        run.mark_running()
        await self.db.commit()
        return run, pending

    async def mark_date_completed(
        self,
        run: ReconciliationRun,
        settlement_date: date,
        result: DateResult,
    ) -> None:
        key = settlement_date.isoformat()

        run.pending_dates = [d for d in run.pending_dates if d != key]
        run.completed_dates = sorted(set(run.completed_dates) | {key})
        run.failed_dates = {d: e for d, e in run.failed_dates.items() if d != key}
        if result.status == DateStatus.RETRIED:
            run.retried_dates = sorted(set(run.retried_dates) | {key})

        if run.last_completed_date is None or settlement_date > run.last_completed_date:
            run.last_completed_date = settlement_date
        run.records_processed += result.records_processed
        run.calculations_written += result.calculations_written
        run.total_bitcoin = Decimal(str(run.total_bitcoin or 0)) + result.bitcoin_mined

        await self.db.commit()

    async def mark_date_failed(self, run: ReconciliationRun, settlement_date: date, error: str) -> None:
        key = settlement_date.isoformat()
        run.pending_dates = [d for d in run.pending_dates if d != key]
        run.failed_dates = {**run.failed_dates, key: error}
        await self.db.commit()

    async def finish(self, run: ReconciliationRun) -> ReconciliationRun:
        run.mark_finished()
        await self.db.commit()
        logger.info(
            "Reconciliation run finished",
            run_key=run.run_key,
            status=run.status,
            completed=len(run.completed_dates),
            failed=len(run.failed_dates),
            duration_seconds=run.duration_seconds,
        )
        return run

    async def abort(self, run: ReconciliationRun, error_message: str) -> ReconciliationRun:
        run.mark_failed(error_message)
        await self.db.commit()
        logger.error("Reconciliation run aborted", run_key=run.run_key, error=error_message)
        return run
