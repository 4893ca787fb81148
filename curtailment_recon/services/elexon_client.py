"""Elexon API client for settlement stack (bid/offer) data."""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Set
from zoneinfo import ZoneInfo

import httpx
import pandas as pd
import structlog
from pydantic import ValidationError

from curtailment_recon.core.config import get_settings
from curtailment_recon.core.exceptions import (
    ConfigurationError,
    DataError,
    RateLimitedError,
    TransportError,
)
from curtailment_recon.schemas.curtailment import CurtailmentObservation

logger = structlog.get_logger()

UK_TZ = ZoneInfo("Europe/London")


def settlement_periods_for(settlement_date: date) -> int:
    """Number of settlement periods in a UK settlement day.

    Normal days have 48 periods, the spring clock change 46 and the
    autumn clock change 50.
    """
    start = datetime.combine(settlement_date, datetime.min.time(), tzinfo=UK_TZ)
    end = datetime.combine(settlement_date + timedelta(days=1), datetime.min.time(), tzinfo=UK_TZ)
    elapsed = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
    return int(elapsed.total_seconds() // 1800)


class CurtailmentSource(Protocol):
    """Anything that returns the curtailment observations of a period."""

    async def fetch_bids_offers(self, settlement_date: date, settlement_period: int) -> List[CurtailmentObservation]:
        ...


def load_bmu_ids(mapping_path: str) -> Set[str]:
    """Load the wind farm BM Unit IDs from a mapping file."""
    path = Path(mapping_path)
    try:
        mapping = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not load BMU mapping from {path}: {e}")

    ids = set()
    for entry in mapping:
        if isinstance(entry, str):
            ids.add(entry)
        elif isinstance(entry, dict) and entry.get("elexonBmUnit"):
            ids.add(entry["elexonBmUnit"])
    logger.info("Loaded BMU mapping", path=str(path), bm_units=len(ids))
    return ids


class ElexonClient:
    """Client for the Elexon Insights settlement stack endpoints."""

    STACK_PATH = "/balancing/settlement/stack/all/{side}/{date}/{period}"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        bm_units: Optional[Set[str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.ELEXON_BASE_URL).rstrip("/")
        self.api_key = api_key or settings.ELEXON_API_KEY
        self.timeout = settings.ELEXON_REQUEST_TIMEOUT
        self.rate_limit_wait = settings.ELEXON_RATE_LIMIT_WAIT
        self.headers = {"Accept": "application/json"}
        if self.api_key:
            self.headers["x-api-key"] = self.api_key

        if bm_units is None and settings.BMU_MAPPING_PATH:
            bm_units = load_bmu_ids(settings.BMU_MAPPING_PATH)
        self.bm_units = bm_units
        self._http_client = http_client

    async def fetch_bids_offers(
        self,
        settlement_date: date,
        settlement_period: int,
    ) -> List[CurtailmentObservation]:
        """
        Fetch accepted bids and offers for one settlement period.

        Args:
            settlement_date: Settlement date (UK local day)
            settlement_period: Settlement period (1-50)

        Returns:
            Validated observations for the known wind farms. Malformed items
            are logged and dropped.

        Raises:
            RateLimitedError: HTTP 429
            TransportError: timeouts, connection failures and 5xx responses
            DataError: any other non-200 response or an unreadable body
        """
        if self._http_client is not None:
            bids, offers = await asyncio.gather(
                self._get_stack(self._http_client, "bid", settlement_date, settlement_period),
                self._get_stack(self._http_client, "offer", settlement_date, settlement_period),
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                bids, offers = await asyncio.gather(
                    self._get_stack(client, "bid", settlement_date, settlement_period),
                    self._get_stack(client, "offer", settlement_date, settlement_period),
                )

        observations = self._to_observations(bids + offers, settlement_date, settlement_period)

        if observations:
            total_volume = sum(abs(o.volume) for o in observations)
            logger.debug(
                "Fetched settlement stack",
                date=settlement_date.isoformat(),
                period=settlement_period,
                records=len(observations),
                volume_mwh=round(total_volume, 2),
            )
        return observations

    async def _get_stack(
        self,
        client: httpx.AsyncClient,
        side: str,
        settlement_date: date,
        settlement_period: int,
    ) -> List[Dict[str, Any]]:
        url = self.base_url + self.STACK_PATH.format(
            side=side, date=settlement_date.isoformat(), period=settlement_period
        )
        context = {"date": settlement_date.isoformat(), "period": settlement_period, "side": side}

        try:
            response = await client.get(url, headers=self.headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"Elexon request timed out: {e}", context)
        except httpx.TransportError as e:
            raise TransportError(f"Elexon connection error: {e}", context)

        if response.status_code == 429:
            logger.warning("Elexon rate limit hit", **context)
            raise RateLimitedError(
                "Elexon API rate limited the request",
                retry_after=self.rate_limit_wait,
                context=context,
            )
        if response.status_code >= 500:
            raise TransportError(f"Elexon API error: {response.status_code}", context)
        if response.status_code != 200:
            raise DataError(
                f"Elexon API error: {response.status_code} - {response.text[:200]}", context
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise DataError(f"Elexon API returned invalid JSON: {e}", context)

        data = payload.get("data") if isinstance(payload, dict) else None
        if data is None:
            raise DataError("Elexon API response has no data array", context)
        return data

    def _to_observations(
        self,
        items: List[Dict[str, Any]],
        settlement_date: date,
        settlement_period: int,
    ) -> List[CurtailmentObservation]:
        if not items:
            return []

        df = pd.DataFrame(items)

        if "id" not in df.columns or "volume" not in df.columns:
            logger.error(
                "Elexon stack items missing id/volume columns",
                date=settlement_date.isoformat(),
                period=settlement_period,
                columns=df.columns.tolist(),
            )
            return []

        if self.bm_units is not None:
            df = df[df["id"].isin(self.bm_units)].copy()

        df["volume"] = pd.to_numeric(df["volume"], errors="coerce")
        for column in ("originalPrice", "finalPrice"):
            if column in df.columns:
                df[column] = pd.to_numeric(df[column], errors="coerce")

        df = df.astype(object).where(pd.notna(df), None)

        observations = []
        for item in df.to_dict(orient="records"):
            try:
                observations.append(CurtailmentObservation.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed settlement stack item",
                    date=settlement_date.isoformat(),
                    period=settlement_period,
                    farm_id=item.get("id"),
                    error=str(e.errors()[0]["msg"]) if e.errors() else str(e),
                )
        return observations
