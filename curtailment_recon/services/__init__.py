"""Business logic services package."""

from .bitcoin_calculation import BitcoinCalculationService
from .checkpoint import CheckpointService
from .curtailment_ingestion import CurtailmentIngestionService
from .difficulty_provider import DatabaseDifficultyProvider, StaticDifficultyProvider
from .elexon_client import ElexonClient
from .eligibility import EligibilityPolicy
from .reconciliation import ReconciliationService
from .summary_rollup import SummaryRollupService

__all__ = [
    "BitcoinCalculationService",
    "CheckpointService",
    "CurtailmentIngestionService",
    "DatabaseDifficultyProvider",
    "ElexonClient",
    "EligibilityPolicy",
    "ReconciliationService",
    "StaticDifficultyProvider",
    "SummaryRollupService",
]
