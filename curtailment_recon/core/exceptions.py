"""Exception taxonomy for ingestion and reconciliation."""

from typing import Any, Dict, Optional

import httpx
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError


class ReconcilerError(Exception):
    """Base class for custom exceptions."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ConfigurationError(ReconcilerError):
    """Fatal configuration problem; aborts the whole run."""


class TransportError(ReconcilerError):
    """Transient failure talking to the source API or the database."""


class RateLimitedError(TransportError):
    """HTTP 429 from the source API."""

    def __init__(self, message: str, retry_after: float, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.retry_after = retry_after


class DataError(ReconcilerError):
    """Bad input data. Never retried; the offending record is skipped."""


class UnknownMinerModel(DataError):
    """Miner model has no hardware profile."""

    def __init__(self, miner_model: str):
        super().__init__(f"Unknown miner model: {miner_model}", {"miner_model": miner_model})
        self.miner_model = miner_model


class InvalidDifficulty(DataError):
    """Difficulty is zero or negative."""

    def __init__(self, difficulty: Any):
        super().__init__(f"Invalid difficulty: {difficulty}", {"difficulty": str(difficulty)})
        self.difficulty = difficulty


class MalformedRecord(DataError):
    """Curtailment observation failed validation."""


class DifficultyUnavailable(ReconcilerError):
    """No difficulty is known for the requested date."""


class ConsistencyError(ReconcilerError):
    """An aggregate would be computed from stale or missing children."""


class DateClaimedError(ReconcilerError):
    """Another reconciliation run currently owns the date."""


def is_retryable(exc: BaseException) -> bool:
    """Return True for transport failures worth retrying."""
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False
