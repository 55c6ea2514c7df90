"""
Latest trading day resolution.

Holidays and suspensions make "the most recent trading day" unknowable up
front, so the resolver asks for market-wide bars one calendar day at a time,
walking backward from a reference date until a day returns data.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from data.jquants_client import JQuantsClient, JQuantsNotFoundError
from data.models import Bar
from utils.logging import get_logger

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class ProbeStatus(Enum):
    """Outcome of asking for one day's market-wide bars."""

    FOUND = "found"
    NOT_FOUND = "not_found"  # API reported no data for the date
    EMPTY = "empty"  # 200 with an empty data list
    ERROR = "error"


@dataclass
class ProbeOutcome:
    """Result of probing a single calendar day."""

    day: date
    status: ProbeStatus
    bars: List[Bar] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status == ProbeStatus.FOUND


@dataclass
class Snapshot:
    """Market-wide bars for the resolved trading day."""

    bars: List[Bar]
    trade_date: Optional[date]

    @property
    def is_empty(self) -> bool:
        return self.trade_date is None or not self.bars


class TradingDayResolver:
    """
    Finds the latest day with market-wide price data.

    Every probe that does not find data is followed by a fixed pause,
    including the last one before giving up.
    """

    def __init__(
        self,
        client: JQuantsClient,
        probe_delay: float = 0.2,
        sleep: Optional[SleepFunc] = None,
    ):
        """
        Initialize the resolver.

        Args:
            client: J-Quants API client
            probe_delay: Seconds to wait between day probes
            sleep: Awaitable sleep function (defaults to asyncio.sleep)
        """
        self.client = client
        self.probe_delay = probe_delay
        self._sleep = sleep or asyncio.sleep

    async def probe_days(
        self,
        end_date: date,
        max_lookback_days: int = 7,
    ) -> AsyncIterator[ProbeOutcome]:
        """
        Probe end_date, end_date - 1, ... end_date - max_lookback_days.

        Stops after the first day with data. Yields one outcome per probe,
        newest date first.
        """
        if max_lookback_days < 0:
            raise ValueError("max_lookback_days must be >= 0")

        for offset in range(max_lookback_days + 1):
            day = end_date - timedelta(days=offset)
            outcome = await self._probe(day)
            yield outcome

            if outcome.found:
                return

            await self._sleep(self.probe_delay)

    async def resolve_latest_snapshot(
        self,
        end_date: date,
        max_lookback_days: int = 7,
    ) -> Snapshot:
        """
        Resolve the latest trading day's market-wide bars.

        Args:
            end_date: Newest date to try
            max_lookback_days: How many days before end_date may be tried

        Returns:
            Snapshot with the day's bars, or an empty Snapshot with
            trade_date=None when the whole window had no data
        """
        async for outcome in self.probe_days(end_date, max_lookback_days):
            if outcome.found:
                return Snapshot(bars=outcome.bars, trade_date=outcome.day)

        logger.warning(
            f"No market data between {end_date - timedelta(days=max_lookback_days)} and {end_date}"
        )
        return Snapshot(bars=[], trade_date=None)

    async def _probe(self, day: date) -> ProbeOutcome:
        """Request one day's market-wide bars and classify the response."""
        try:
            bars = await self.client.get_daily_bars_by_date(day)
        except JQuantsNotFoundError:
            logger.debug(f"{day}: no data (not a trading day?)")
            return ProbeOutcome(day=day, status=ProbeStatus.NOT_FOUND)
        except Exception as e:
            logger.warning(f"{day}: probe failed, trying previous day: {e}")
            return ProbeOutcome(day=day, status=ProbeStatus.ERROR, error=str(e))

        if not bars:
            return ProbeOutcome(day=day, status=ProbeStatus.EMPTY)

        logger.info(f"{day}: {len(bars)} bars")
        return ProbeOutcome(day=day, status=ProbeStatus.FOUND, bars=bars)
