"""Tests for the scan orchestrator and its event stream."""

import asyncio
from datetime import date

import pytest

from data.models import Instrument
from output.stream import EventType, iter_ndjson
from scanner.scanner import (
    ScanFailedError,
    ScanOptions,
    ScanState,
    StopHighScanner,
)

AS_OF = date(2024, 3, 10)  # Sunday
TRADE_DAY = date(2024, 3, 8)  # Friday


def instrument(code: str, name: str = "", market: str = "プライム") -> Instrument:
    return Instrument(code, name or f"Company {code}", market)


def stop_high_history(bar, code: str):
    """One stop-high on 03-07, then a slightly lower close on 03-08."""
    return [
        bar("2024-03-06", close=100, code=code),
        bar("2024-03-07", close=114, high=115, open=100, code=code),
        bar("2024-03-08", close=113, code=code),
    ]


def flat_history(bar, code: str):
    return [
        bar("2024-03-06", close=200, code=code),
        bar("2024-03-07", close=201, code=code),
        bar("2024-03-08", close=202, code=code),
    ]


def collect(scanner: StopHighScanner, options: ScanOptions, as_of: date = AS_OF):
    async def _collect():
        return [event async for event in scanner.stream(options, as_of)]
    return asyncio.run(_collect())


def messages(events):
    return [e.message for e in events if e.message is not None]


@pytest.fixture
def options() -> ScanOptions:
    return ScanOptions(delay=0.6, probe_delay=0.2)


@pytest.fixture
def happy_client(fake_client_cls, bar):
    """Three priced instruments: one stop-high, one flat, one with no history."""
    day = TRADE_DAY.isoformat()
    return fake_client_cls(
        instruments=[
            instrument("1001", "Alpha", "プライム"),
            instrument("1002", "Beta", "スタンダード"),
            instrument("1003", "Gamma", "グロース"),
            instrument("1004", "Delta", "TOKYO PRO MARKET"),
        ],
        snapshots={TRADE_DAY: [
            bar(day, close=300, code="10010"),
            bar(day, close=200, code="10020"),
            bar(day, close=250, code="10030"),
            bar(day, close=900, code="10050"),
        ]},
        histories={
            "1001": stop_high_history(bar, "1001"),
            "1002": flat_history(bar, "1002"),
        },
    )


def priced_client(fake_client_cls, bar, count: int, histories=None):
    """`count` Prime instruments all priced inside the default band on AS_OF."""
    codes = [str(1000 + i) for i in range(1, count + 1)]
    return fake_client_cls(
        instruments=[instrument(code) for code in codes],
        snapshots={AS_OF: [bar(AS_OF.isoformat(), close=300, code=f"{code}0") for code in codes]},
        histories=histories or {},
    )


class TestHappyPath:
    """A complete scan over a small universe."""

    def test_result_is_single_and_last(self, happy_client, settings, sleep, options) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        events = collect(scanner, options)

        results = [e for e in events if e.type == EventType.RESULT]
        assert len(results) == 1
        assert events[-1] is results[0]
        assert all(e.type == EventType.LOG for e in events[:-1])

    def test_report_contents(self, happy_client, settings, sleep, options) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        data = collect(scanner, options)[-1].data

        assert data["success"] is True
        assert data["tradeDate"] == "2024-03-08"
        assert data["summary"] == {
            "targets": 3,
            "processed": 3,
            "detected": 1,
            "errors": 0,
            "aborted": False,
        }
        assert data["results"] == [{
            "code": "1001",
            "companyName": "Alpha",
            "market": "プライム",
            "stopHighCount": 1,
            "latestStopHighDate": "2024-03-07",
            "latestStopHighPrice": 115.0,
            "latestClose": 113.0,
            "prevDayStopHigh": False,
            "closedAtStopHigh": True,
            "openingStopHigh": False,
        }]

    def test_instruments_scanned_in_order_with_no_data_logged(
        self, happy_client, settings, sleep, options
    ) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        events = collect(scanner, options)

        assert [call[0] for call in happy_client.history_calls] == ["1001", "1002", "1003"]
        text = messages(events)
        assert "  -> no data" in text
        assert "  -> no stop-high" in text
        assert text.index("[1/3] 1001 (Alpha)") < text.index("[2/3] 1002 (Beta)") < text.index("[3/3] 1003 (Gamma)")

    def test_throttles(self, happy_client, settings, sleep, options) -> None:
        """Two empty days before the snapshot, then a pause between each instrument."""
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        collect(scanner, options)

        assert happy_client.probed_days == [AS_OF, date(2024, 3, 9), TRADE_DAY]
        assert sleep.calls == [0.2, 0.2, 0.6, 0.6]

    def test_probe_progress_precedes_scanning(self, happy_client, settings, sleep, options) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        text = messages(collect(scanner, options))

        probe_lines = [m for m in text if m.startswith("  2024-03-")]
        assert probe_lines == [
            "  2024-03-10: no data, trying previous day",
            "  2024-03-09: no data, trying previous day",
            "  2024-03-08: 4 bars",
        ]
        assert text.index(probe_lines[-1]) < text.index("[1/3] 1001 (Alpha)")

    def test_state_transitions(self, happy_client, settings, sleep, options) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        collect(scanner, options)

        assert scanner.state == ScanState.COMPLETED
        assert scanner.state_history == [
            ScanState.IDLE,
            ScanState.FETCHING_DIRECTORY,
            ScanState.FILTERING_UNIVERSE,
            ScanState.RESOLVING_SNAPSHOT,
            ScanState.SCANNING_INSTRUMENTS,
            ScanState.COMPLETED,
        ]

    def test_history_window(self, happy_client, settings, sleep, options) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        collect(scanner, options)

        assert happy_client.history_calls[0] == ("1001", date(2023, 12, 10), AS_OF)

    def test_max_stocks_caps_the_scan(self, happy_client, settings, sleep) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)

        events = collect(scanner, ScanOptions(max_stocks=2))

        assert len(happy_client.history_calls) == 2
        assert events[-1].data["summary"]["targets"] == 2
        assert "Limiting scan to the first 2 instruments" in messages(events)

    def test_run_returns_report(self, happy_client, settings, sleep, options) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)
        seen = []

        report = asyncio.run(scanner.run(options, AS_OF, on_event=seen.append))

        assert report.trade_date == "2024-03-08"
        assert [r.code for r in report.results] == ["1001"]
        assert seen[-1].data == report.to_dict()

    def test_progress_line_every_ten(self, fake_client_cls, bar, settings, sleep) -> None:
        client = priced_client(fake_client_cls, bar, 12)
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        text = messages(collect(scanner, ScanOptions()))

        assert [m for m in text if "Progress:" in m] == ["  Progress: 10/12"]


class TestFailureBudget:
    """Per-instrument failures are counted; reaching the budget stops early."""

    def test_default_budget_stops_after_tenth_failure(
        self, fake_client_cls, bar, settings, sleep, http_error
    ) -> None:
        histories = {str(1000 + i): http_error() for i in range(1, 11)}
        client = priced_client(fake_client_cls, bar, 12, histories)
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        events = collect(scanner, ScanOptions(delay=0.6))

        assert len(client.history_calls) == 10
        assert events[-1].type == EventType.RESULT
        assert events[-1].data["summary"] == {
            "targets": 12,
            "processed": 10,
            "detected": 0,
            "errors": 10,
            "aborted": True,
        }
        errors = [e for e in events if e.type == EventType.ERROR]
        assert len(errors) == 11
        assert "budget" in errors[-1].message
        assert scanner.state == ScanState.ABORTED
        # No pause after the instrument that exhausted the budget
        assert sleep.calls == [0.6] * 9

    def test_partial_results_survive_abort(
        self, fake_client_cls, bar, settings, sleep, http_error
    ) -> None:
        histories = {
            "1001": http_error(),
            "1002": http_error(),
            "1003": stop_high_history(bar, "1003"),
            "1004": http_error(),
            "1005": stop_high_history(bar, "1005"),
        }
        client = priced_client(fake_client_cls, bar, 6, histories)
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        report = asyncio.run(scanner.run(ScanOptions(failure_budget=3), AS_OF))

        assert [r.code for r in report.results] == ["1003"]
        assert report.summary.aborted is True
        assert report.summary.processed == 4
        assert [call[0] for call in client.history_calls] == ["1001", "1002", "1003", "1004"]

    def test_failures_below_budget_complete_normally(
        self, fake_client_cls, bar, settings, sleep, http_error
    ) -> None:
        histories = {"1001": http_error(), "1002": stop_high_history(bar, "1002"), "1003": ValueError("bad bar")}
        client = priced_client(fake_client_cls, bar, 3, histories)
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        events = collect(scanner, ScanOptions())

        summary = events[-1].data["summary"]
        assert summary["errors"] == 2
        assert summary["aborted"] is False
        assert summary["detected"] == 1
        assert scanner.state == ScanState.COMPLETED
        assert [e.message for e in events if e.type == EventType.ERROR] == [
            "  -> error: 1001: HTTP 500: upstream failure",
            "  -> error: 1003: bad bar",
        ]


def _empty_directory(fake_client_cls, bar):
    return fake_client_cls(instruments=[])


def _no_target_markets(fake_client_cls, bar):
    return fake_client_cls(instruments=[instrument("1001", market="TOKYO PRO MARKET"), instrument("1002", market="")])


def _no_snapshot(fake_client_cls, bar):
    return fake_client_cls(instruments=[instrument("1001")])


def _nothing_in_band(fake_client_cls, bar):
    return fake_client_cls(
        instruments=[instrument("1001")],
        snapshots={AS_OF: [bar(AS_OF.isoformat(), close=5000, code="10010")]},
    )


class TestStructuralFailures:
    """Empty inputs stop the scan with a terminal error and no result."""

    @pytest.mark.parametrize(
        "build, expected",
        [
            (_empty_directory, "Instrument master is empty"),
            (_no_target_markets, "No instruments in target markets"),
            (_no_snapshot, "No market data"),
            (_nothing_in_band, "No instruments matched the price band"),
        ],
    )
    def test_terminal_error_without_result(
        self, build, expected, fake_client_cls, bar, settings, sleep
    ) -> None:
        client = build(fake_client_cls, bar)
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        events = collect(scanner, ScanOptions())

        assert events[-1].type == EventType.ERROR
        assert events[-1].message.startswith("Error: ")
        assert expected in events[-1].message
        assert not any(e.type == EventType.RESULT for e in events)
        assert client.history_calls == []
        assert scanner.state == ScanState.FAILED
        assert scanner.last_report is None

    def test_run_raises(self, fake_client_cls, bar, settings, sleep) -> None:
        scanner = StopHighScanner(_empty_directory(fake_client_cls, bar), settings=settings, sleep=sleep)

        with pytest.raises(ScanFailedError, match="Instrument master is empty"):
            asyncio.run(scanner.run(ScanOptions(), AS_OF))

    def test_snapshot_search_is_bounded(self, fake_client_cls, bar, settings, sleep) -> None:
        client = _no_snapshot(fake_client_cls, bar)
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        collect(scanner, ScanOptions(max_lookback_days=3))

        assert client.probed_days == [date(2024, 3, d) for d in (10, 9, 8, 7)]

    def test_missing_credentials_single_event(self, fake_client_cls, settings, sleep) -> None:
        client = fake_client_cls(instruments=[instrument("1001")], api_key=None)
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        events = collect(scanner, ScanOptions())

        assert len(events) == 1
        assert events[0].type == EventType.ERROR
        assert "JQUANTS_API_KEY" in events[0].message
        assert client.probed_days == []

    def test_unexpected_exception_becomes_terminal_error(
        self, fake_client_cls, settings, sleep
    ) -> None:
        client = fake_client_cls()

        async def broken():
            raise RuntimeError("connection reset")

        client.get_listed_info = broken
        scanner = StopHighScanner(client, settings=settings, sleep=sleep)

        events = collect(scanner, ScanOptions())

        assert events[-1].type == EventType.ERROR
        assert "connection reset" in events[-1].message
        assert scanner.state == ScanState.FAILED


class TestStreamEncoding:
    """The event sequence survives NDJSON framing and arbitrary chunking."""

    def test_round_trip_through_ndjson(self, happy_client, settings, sleep, options) -> None:
        scanner = StopHighScanner(happy_client, settings=settings, sleep=sleep)
        events = collect(scanner, options)

        payload = "".join(e.to_json_line() for e in events).encode("utf-8")
        chunks = [payload[i:i + 7] for i in range(0, len(payload), 7)]
        records = list(iter_ndjson(chunks))

        assert len(records) == len(events)
        assert records[-1] == {"type": "result", "data": scanner.last_report.to_dict()}
        assert [r["type"] for r in records[:-1]] == ["log"] * (len(events) - 1)


class TestScanOptions:
    """Option validation and settings overrides."""

    def test_inverted_price_band_rejected(self) -> None:
        with pytest.raises(ValueError, match="min_price"):
            ScanOptions(min_price=700, max_price=600)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_stocks": 0},
            {"delay": -1},
            {"failure_budget": 0},
            {"history_months": 0},
            {"max_lookback_days": -1},
            {"threshold_rate": 0},
        ],
    )
    def test_invalid_values_rejected(self, kwargs) -> None:
        with pytest.raises(ValueError):
            ScanOptions(**kwargs)

    def test_from_settings_applies_non_none_overrides(self, settings) -> None:
        options = ScanOptions.from_settings(settings, min_price=150, max_stocks=None)

        assert options.min_price == 150
        assert options.max_price == settings.max_price
        assert options.max_stocks == settings.max_stocks
        assert options.delay == settings.scan_delay_seconds
        assert options.failure_budget == settings.failure_budget
