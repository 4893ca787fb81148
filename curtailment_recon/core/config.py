"""Settings read from the environment and `.env`."""

import json
import os
from typing import Annotated, List, Optional, Union

from pydantic import PostgresDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from curtailment_recon.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Reconciler settings; names match the environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "Curtailment Mining Reconciler"

    # Database
    DATABASE_URL: Optional[PostgresDsn] = None
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False

    # Database connection health settings
    DB_POOL_PRE_PING: bool = True
    DB_POOL_RECYCLE: int = 300  # Recycle connections after 5 minutes

    # Testing
    TESTING: bool = os.getenv("TESTING", "false").lower() == "true"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Elexon Integration
    ELEXON_BASE_URL: str = "https://data.elexon.co.uk/bmrs/api/v1"
    ELEXON_API_KEY: Optional[str] = None
    ELEXON_REQUEST_TIMEOUT: float = 30.0
    ELEXON_PERIOD_CONCURRENCY: int = 3  # Keep well under the API rate limit
    ELEXON_RATE_LIMIT_WAIT: float = 60.0  # Fixed wait after HTTP 429
    BMU_MAPPING_PATH: Optional[str] = None

    # Mining
    MINER_MODELS: Annotated[List[str], NoDecode] = ["S19J_PRO", "S9", "M20S"]
    ELIGIBILITY_REQUIRE_FLAGS: bool = True

    # Reconciliation
    RECONCILE_BATCH_SIZE: int = 5
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0
    SAMPLE_PERIODS: Annotated[List[int], NoDecode] = [1, 12, 24, 36, 48]
    DATE_CLAIM_TTL_SECONDS: int = 6 * 3600  # Older claims are treated as abandoned

    @field_validator("MINER_MODELS", mode="before")
    @classmethod
    def assemble_miner_models(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse miner models from a comma separated or JSON string."""
        if isinstance(v, str):
            if not v.startswith("["):
                return [i.strip().upper() for i in v.split(",") if i.strip()]
            try:
                return [str(i).upper() for i in json.loads(v)]
            except json.JSONDecodeError:
                raise ValueError(f"Invalid JSON format for miner models: {v}")
        elif isinstance(v, list):
            return [str(i).upper() for i in v]
        raise ValueError(f"Miner models must be string or list, got {type(v)}")

    @field_validator("SAMPLE_PERIODS", mode="before")
    @classmethod
    def assemble_sample_periods(cls, v: Union[str, List[int]]) -> List[int]:
        """Parse sample periods from a comma separated string."""
        if isinstance(v, str):
            if v.startswith("["):
                return [int(i) for i in json.loads(v)]
            return [int(i) for i in v.split(",") if i.strip()]
        return v

    @property
    def database_url_sync(self) -> str:
        """Driver-less URL for tools that connect synchronously."""
        if self.TESTING:
            return "sqlite:///:memory:"

        if not self.DATABASE_URL:
            raise ConfigurationError("DATABASE_URL is not set")

        url = str(self.DATABASE_URL)
        if url.startswith("postgresql+asyncpg://"):
            return url.replace("postgresql+asyncpg://", "postgresql://")
        return url

    @property
    def database_url_async(self) -> str:
        """asyncpg URL for the engine; in-memory SQLite when testing."""
        if self.TESTING:
            return "sqlite+aiosqlite:///:memory:"

        if not self.DATABASE_URL:
            raise ConfigurationError("DATABASE_URL is not set")

        url = str(self.DATABASE_URL)
        if url.startswith("postgresql://") and not url.startswith("postgresql+asyncpg://"):
            return url.replace("postgresql://", "postgresql+asyncpg://")
        return url


def get_settings() -> Settings:
    """Fresh settings, so tests can change the environment between calls."""
    return Settings()
