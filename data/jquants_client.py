"""
J-Quants API V2 Client.
Primary data source for the listed-instrument master and daily price bars.
"""

import time
from datetime import date
from typing import Any, Dict, List, Optional

import backoff
import httpx

from config.settings import Settings, get_settings
from data.models import Bar, Instrument
from utils.helpers import to_api_date
from utils.logging import get_logger, log_api_call

logger = get_logger(__name__)

SERVICE_NAME = "J-Quants"


class JQuantsError(Exception):
    """J-Quants API error."""
    pass


class JQuantsNotFoundError(JQuantsError):
    """No data exists for the requested date or instrument."""
    pass


class JQuantsRateLimitError(JQuantsError):
    """Rate limit exceeded."""
    pass


class JQuantsAuthError(JQuantsError):
    """API key missing or rejected."""
    pass


def _parse_bars(records: List[Dict[str, Any]], subject: str) -> List[Bar]:
    """Normalize daily-bar records, dropping days the instrument did not trade."""
    bars = []
    for record in records:
        if Bar.is_untraded(record):
            logger.debug(
                f"Skipping untraded bar {record.get('Code', '?')} on {record.get('Date', '?')} ({subject})"
            )
            continue
        bars.append(Bar.from_vendor(record))
    return bars


class JQuantsClient:
    """
    Async client for the J-Quants API V2.

    Provides access to:
    - Listed instrument master (code, name, market segment)
    - Market-wide daily bars for a single date
    - Per-instrument daily bars over a date range
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize J-Quants client.

        Args:
            api_key: J-Quants API key. If None, loads from settings.
            settings: Application settings.
            transport: Optional httpx transport (used to stub the API in tests).
        """
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.jquants_api_key
        self.base_url = self.settings.jquants_base_url.rstrip("/")
        self.timeout = self.settings.request_timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @backoff.on_exception(
        backoff.expo,
        (JQuantsRateLimitError, httpx.TransportError),
        max_tries=3,
    )
    async def _request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        subject: str = "",
    ) -> Dict[str, Any]:
        """
        Make an API request.

        Args:
            endpoint: API endpoint (e.g., "/equities/master")
            params: Query parameters
            subject: Instrument code or date the call is for (logging only)

        Returns:
            Decoded JSON body

        Raises:
            JQuantsAuthError: Missing or rejected API key (401/403)
            JQuantsNotFoundError: HTTP 404
            JQuantsRateLimitError: HTTP 429 (retried with backoff first)
            JQuantsError: Any other non-2xx status or an unexpected body
        """
        if not self.has_credentials:
            raise JQuantsAuthError("J-Quants API key is not configured (set JQUANTS_API_KEY)")

        url = f"{self.base_url}{endpoint}"
        client = await self._get_client()
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        try:
            response = await client.get(
                url,
                params=params,
                headers={"X-API-Key": self.api_key},
            )
        except httpx.TransportError as e:
            log_api_call(SERVICE_NAME, endpoint, subject, False, elapsed_ms(), error=repr(e))
            raise

        status = response.status_code
        if status >= 400:
            log_api_call(SERVICE_NAME, endpoint, subject, False, elapsed_ms(), error=f"HTTP {status}")

            if status == 404:
                raise JQuantsNotFoundError(f"No data for {subject or endpoint}")
            if status == 429:
                raise JQuantsRateLimitError("Rate limit exceeded")
            if status in (401, 403):
                raise JQuantsAuthError(f"HTTP {status}: API key rejected")
            raise JQuantsError(f"HTTP {status}: {response.text[:200]}")

        log_api_call(SERVICE_NAME, endpoint, subject, True, elapsed_ms())

        try:
            data = response.json()
        except ValueError as e:
            raise JQuantsError(f"Invalid JSON from {endpoint}: {e}") from e

        if not isinstance(data, dict):
            raise JQuantsError(f"Unexpected response shape from {endpoint}: {type(data).__name__}")

        return data

    async def _get_paginated(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        subject: str = "",
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a list endpoint, following `pagination_key`."""
        params = dict(params or {})
        records: List[Dict[str, Any]] = []
        seen_keys = set()

        while True:
            payload = await self._request(endpoint, params=params, subject=subject)
            records.extend(payload.get("data") or [])

            pagination_key = payload.get("pagination_key")
            if not pagination_key or pagination_key in seen_keys:
                break

            seen_keys.add(pagination_key)
            params["pagination_key"] = pagination_key
            logger.debug(f"Following pagination for {endpoint} ({len(records)} records so far)")

        return records

    # =========================================================================
    # Instrument Master
    # =========================================================================

    async def get_listed_info(self) -> List[Instrument]:
        """
        Get the full listed-instrument master.

        Returns:
            Every listed instrument with its company and market segment names
        """
        records = await self._get_paginated("/equities/master", subject="all")
        return [Instrument.from_vendor(r) for r in records if r.get("Code")]

    # =========================================================================
    # Daily Bars
    # =========================================================================

    async def get_daily_bars_by_date(self, day: date) -> List[Bar]:
        """
        Get market-wide daily bars for a single date.

        Instruments that did not trade that day (null OHLC) are left out.

        Raises:
            JQuantsNotFoundError: The date has no data (holiday, weekend, future)
        """
        date_str = to_api_date(day)
        records = await self._get_paginated(
            "/equities/bars/daily",
            params={"date": date_str},
            subject=date_str,
        )
        return _parse_bars(records, date_str)

    async def get_daily_bars(
        self,
        code: str,
        start: date,
        end: date,
    ) -> List[Bar]:
        """
        Get one instrument's daily bars between two dates (inclusive).

        Args:
            code: Instrument code (4 or 5 characters)
            start: First date of the window
            end: Last date of the window

        Returns:
            Bars sorted oldest first; empty if the API has no data for the code
        """
        params = {
            "code": code,
            "from": to_api_date(start),
            "to": to_api_date(end),
        }

        try:
            records = await self._get_paginated("/equities/bars/daily", params=params, subject=code)
        except JQuantsNotFoundError:
            return []

        bars = _parse_bars(records, code)
        bars.sort(key=lambda b: b.date)
        return bars
