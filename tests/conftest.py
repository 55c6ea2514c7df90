"""Shared fixtures: bar factory, in-memory J-Quants stub, recording sleep."""

from datetime import date
from typing import Dict, List, Optional, Tuple, Union

import pytest

from config.settings import Settings
from data.jquants_client import JQuantsError, JQuantsNotFoundError
from data.models import Bar, Instrument


def make_bar(
    day: str,
    close: float,
    high: Optional[float] = None,
    open: Optional[float] = None,
    low: Optional[float] = None,
    code: str = "7203",
    volume: int = 1000,
) -> Bar:
    """Build a Bar; high/open default to close, low to the smaller of open/close."""
    high = close if high is None else high
    open = close if open is None else open
    low = min(open, close) if low is None else low
    return Bar(code=code, date=day, open=open, high=high, low=low, close=close, volume=volume)


class FakeJQuantsClient:
    """
    In-memory stand-in for JQuantsClient.

    snapshots: date -> bars, or an exception to raise; dates missing from the
        mapping raise JQuantsNotFoundError like a non-trading day.
    histories: code -> bars, or an exception to raise; missing codes return [].
    """

    def __init__(
        self,
        instruments: Optional[List[Instrument]] = None,
        snapshots: Optional[Dict[date, Union[List[Bar], Exception]]] = None,
        histories: Optional[Dict[str, Union[List[Bar], Exception]]] = None,
        api_key: Optional[str] = "test-key",
    ):
        self.instruments = instruments or []
        self.snapshots = snapshots or {}
        self.histories = histories or {}
        self.api_key = api_key
        self.probed_days: List[date] = []
        self.history_calls: List[Tuple[str, date, date]] = []
        self.closed = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    async def get_listed_info(self) -> List[Instrument]:
        return list(self.instruments)

    async def get_daily_bars_by_date(self, day: date) -> List[Bar]:
        self.probed_days.append(day)
        if day not in self.snapshots:
            raise JQuantsNotFoundError(f"No data for {day}")
        value = self.snapshots[day]
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def get_daily_bars(self, code: str, start: date, end: date) -> List[Bar]:
        self.history_calls.append((code, start, end))
        value = self.histories.get(code, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    async def close(self) -> None:
        self.closed = True


class SleepRecorder:
    """Awaitable replacement for asyncio.sleep that records durations."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(jquants_api_key="test-key", _env_file=None)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def bar():
    """Bar factory."""
    return make_bar


@pytest.fixture
def fake_client_cls():
    return FakeJQuantsClient


@pytest.fixture
def http_error():
    """Factory for a generic (non-404) source failure."""
    def _make(message: str = "HTTP 500: upstream failure") -> JQuantsError:
        return JQuantsError(message)
    return _make
