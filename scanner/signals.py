"""
Stop-high detection over one instrument's daily bars.

A stop-high day is one whose intraday high rose at least `threshold_rate`
over the previous session's close. On the Tokyo exchanges that roughly
matches hitting the daily limit-up price for mid-priced stocks.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from data.models import Bar
from utils.helpers import days_between

BAR_COLUMNS = ["code", "date", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class StopHighEvent:
    """A single flagged day."""

    date: str
    high: float
    close: float
    open: float
    prev_close: float
    rise_rate: float
    close_rise_rate: float


@dataclass(frozen=True)
class StopHighResult:
    """Stop-high summary for one instrument."""

    count: int = 0
    latest_date: Optional[str] = None
    latest_price: Optional[float] = None  # High of the latest flagged day
    prev_day_stop_high: bool = False
    closed_at_stop_high: bool = False
    opening_stop_high: bool = False

    @classmethod
    def empty(cls) -> "StopHighResult":
        return cls()

    @property
    def detected(self) -> bool:
        return self.count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "latestDate": self.latest_date,
            "latestPrice": self.latest_price,
            "prevDayStopHigh": self.prev_day_stop_high,
            "closedAtStopHigh": self.closed_at_stop_high,
            "openingStopHigh": self.opening_stop_high,
        }


@dataclass
class StopHighConfig:
    """Configuration for stop-high detection thresholds."""

    # Intraday high vs previous close
    threshold_rate: float = 0.13  # Default: 13%

    # Opening stop-high: open and close within this many yen
    opening_tolerance: float = 0.01

    # Consecutive stop-high: calendar days between the last two flagged days
    max_streak_gap_days: int = 1


class StopHighDetector:
    """Detects stop-high days in an instrument's price history."""

    def __init__(self, config: Optional[StopHighConfig] = None):
        """Initialize with optional custom configuration."""
        self.config = config or StopHighConfig()

    def find_events(self, bars: Iterable[Bar]) -> List[StopHighEvent]:
        """
        Flag every day whose high cleared the threshold over the prior close.

        Args:
            bars: Daily bars for one instrument, in any order

        Returns:
            Flagged days, oldest first
        """
        df = self._to_frame(bars)
        if len(df) < 2:
            return []

        df["prev_close"] = df["close"].shift(1)
        df["rise_rate"] = (df["high"] - df["prev_close"]) / df["prev_close"]
        df["close_rise_rate"] = (df["close"] - df["prev_close"]) / df["prev_close"]

        # First row has no previous close (NaN compares False)
        flagged = df[(df["prev_close"] > 0) & (df["rise_rate"] >= self.config.threshold_rate)]

        return [
            StopHighEvent(
                date=row.date,
                high=float(row.high),
                close=float(row.close),
                open=float(row.open),
                prev_close=float(row.prev_close),
                rise_rate=float(row.rise_rate),
                close_rise_rate=float(row.close_rise_rate),
            )
            for row in flagged.itertuples(index=False)
        ]

    def detect(self, bars: Iterable[Bar]) -> StopHighResult:
        """
        Summarize stop-high activity for one instrument.

        Args:
            bars: Daily bars for one instrument, in any order

        Returns:
            StopHighResult describing the latest flagged day
        """
        events = self.find_events(bars)
        if not events:
            return StopHighResult.empty()

        latest = events[-1]
        threshold = self.config.threshold_rate

        return StopHighResult(
            count=len(events),
            latest_date=latest.date,
            latest_price=latest.high,
            prev_day_stop_high=self._is_streak(events),
            closed_at_stop_high=latest.close_rise_rate >= threshold,
            opening_stop_high=(
                abs(latest.open - latest.close) < self.config.opening_tolerance
                and latest.rise_rate >= threshold
            ),
        )

    def _is_streak(self, events: List[StopHighEvent]) -> bool:
        """Check whether the last two flagged days are back to back."""
        if len(events) < 2:
            return False

        # Raw calendar days: a Friday/Monday pair is a gap of 3 and does not count
        gap = days_between(events[-2].date, events[-1].date)
        return gap is not None and gap <= self.config.max_streak_gap_days

    def _to_frame(self, bars: Iterable[Bar]) -> pd.DataFrame:
        """Build a date-sorted DataFrame from bars."""
        df = pd.DataFrame([b.to_dict() for b in bars], columns=BAR_COLUMNS)
        if df.empty:
            return df

        # Price columns break date ties so input order never matters
        df = df.sort_values(["date", "close", "high", "open", "low"], kind="mergesort")
        return df.reset_index(drop=True)


def detect_stop_high(
    bars: Iterable[Bar],
    threshold_rate: float = 0.13,
) -> StopHighResult:
    """
    Convenience wrapper around StopHighDetector.

    Args:
        bars: Daily bars for one instrument
        threshold_rate: Minimum (high - prev_close) / prev_close to flag a day

    Returns:
        StopHighResult for the series
    """
    return StopHighDetector(StopHighConfig(threshold_rate=threshold_rate)).detect(bars)
