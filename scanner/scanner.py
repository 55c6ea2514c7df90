"""
Main scanner class that orchestrates stop-high detection.

Coordinates J-Quants API calls, universe filtering, trading-day resolution
and per-instrument detection, and reports progress as a stream of events.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from config.settings import DEFAULT_TARGET_MARKETS, Settings, get_settings
from data.jquants_client import JQuantsClient
from data.models import Bar
from output.stream import ScanEvent
from scanner.signals import StopHighConfig, StopHighDetector, StopHighResult
from scanner.trading_day import ProbeOutcome, ProbeStatus, Snapshot, TradingDayResolver
from scanner.universe import Candidate, filter_by_price, filter_target_markets
from utils.helpers import format_percentage, market_today, subtract_months
from utils.logging import get_logger, log_step

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class ScanState(Enum):
    """Lifecycle of a single scan."""

    IDLE = "idle"
    FETCHING_DIRECTORY = "fetching_directory"
    FILTERING_UNIVERSE = "filtering_universe"
    RESOLVING_SNAPSHOT = "resolving_snapshot"
    SCANNING_INSTRUMENTS = "scanning_instruments"
    COMPLETED = "completed"
    ABORTED = "aborted"  # Failure budget exhausted; partial results returned
    FAILED = "failed"  # Structural failure; no result


class ScanFailedError(Exception):
    """The scan stopped before producing a result."""
    pass


@dataclass
class ScanOptions:
    """Per-invocation scan parameters."""

    min_price: float = 100.0
    max_price: float = 600.0
    max_stocks: Optional[int] = None  # Cap on instruments scanned (for short test runs)
    delay: float = 0.6  # Seconds between instruments
    failure_budget: int = 10
    history_months: int = 3
    max_lookback_days: int = 7
    probe_delay: float = 0.2  # Seconds between trading-day probes
    threshold_rate: float = 0.13
    target_markets: List[str] = field(default_factory=lambda: list(DEFAULT_TARGET_MARKETS))

    def __post_init__(self):
        if self.min_price > self.max_price:
            raise ValueError(f"min_price ({self.min_price}) exceeds max_price ({self.max_price})")
        if self.max_stocks is not None and self.max_stocks <= 0:
            raise ValueError("max_stocks must be positive")
        if self.delay < 0 or self.probe_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.failure_budget <= 0:
            raise ValueError("failure_budget must be positive")
        if self.history_months <= 0:
            raise ValueError("history_months must be positive")
        if self.max_lookback_days < 0:
            raise ValueError("max_lookback_days must be >= 0")
        if self.threshold_rate <= 0:
            raise ValueError("threshold_rate must be positive")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides: Any) -> "ScanOptions":
        """
        Build options from settings, applying any non-None overrides.

        Args:
            settings: Application settings (default: cached settings)
            **overrides: ScanOptions fields to replace (None values are ignored)
        """
        settings = settings or get_settings()
        values = {
            "min_price": settings.min_price,
            "max_price": settings.max_price,
            "max_stocks": settings.max_stocks,
            "delay": settings.scan_delay_seconds,
            "failure_budget": settings.failure_budget,
            "history_months": settings.history_months,
            "max_lookback_days": settings.max_lookback_days,
            "probe_delay": settings.probe_delay_seconds,
            "threshold_rate": settings.stop_high_threshold,
            "target_markets": list(settings.target_markets),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class ScanResultRow:
    """One instrument with at least one stop-high in its history window."""

    code: str
    company_name: str
    market: str
    stop_high_count: int
    latest_stop_high_date: Optional[str]
    latest_stop_high_price: Optional[float]
    latest_close: Optional[float]
    prev_day_stop_high: bool
    closed_at_stop_high: bool
    opening_stop_high: bool

    @classmethod
    def from_detection(
        cls,
        candidate: Candidate,
        result: StopHighResult,
        latest_close: Optional[float],
    ) -> "ScanResultRow":
        return cls(
            code=candidate.code,
            company_name=candidate.company_name,
            market=candidate.market,
            stop_high_count=result.count,
            latest_stop_high_date=result.latest_date,
            latest_stop_high_price=result.latest_price,
            latest_close=latest_close,
            prev_day_stop_high=result.prev_day_stop_high,
            closed_at_stop_high=result.closed_at_stop_high,
            opening_stop_high=result.opening_stop_high,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "code": self.code,
            "companyName": self.company_name,
            "market": self.market,
            "stopHighCount": self.stop_high_count,
            "latestStopHighDate": self.latest_stop_high_date,
            "latestStopHighPrice": self.latest_stop_high_price,
            "latestClose": self.latest_close,
            "prevDayStopHigh": self.prev_day_stop_high,
            "closedAtStopHigh": self.closed_at_stop_high,
            "openingStopHigh": self.opening_stop_high,
        }


@dataclass
class ScanSummary:
    """Counts reported with the final result."""

    targets: int  # Instruments queued for scanning (after max_stocks)
    processed: int  # Instruments actually attempted
    detected: int
    errors: int
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targets": self.targets,
            "processed": self.processed,
            "detected": self.detected,
            "errors": self.errors,
            "aborted": self.aborted,
        }


@dataclass
class ScanReport:
    """Complete scan report carried by the terminal result event."""

    success: bool
    trade_date: Optional[str]
    results: List[ScanResultRow]
    summary: ScanSummary

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "success": self.success,
            "tradeDate": self.trade_date,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
        }


class StopHighScanner:
    """
    Stop-high scanner over the Tokyo equity universe.

    Instruments are scanned strictly one at a time with a pause between
    them; that sequencing is the rate limit against the upstream API.
    """

    def __init__(
        self,
        jquants_client: Optional[JQuantsClient] = None,
        settings: Optional[Settings] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        """
        Initialize the scanner.

        Args:
            jquants_client: J-Quants API client (creates new one if not provided)
            settings: Application settings
            sleep: Awaitable sleep used for both throttles (defaults to asyncio.sleep)
        """
        self.settings = settings or get_settings()
        self.jquants = jquants_client or JQuantsClient(settings=self.settings)
        self._sleep = sleep or asyncio.sleep
        self.state = ScanState.IDLE
        self.state_history: List[ScanState] = [ScanState.IDLE]
        self.last_report: Optional[ScanReport] = None

    async def stream(
        self,
        options: Optional[ScanOptions] = None,
        as_of: Optional[date] = None,
    ) -> AsyncIterator[ScanEvent]:
        """
        Run a scan, yielding progress events and exactly one terminal event.

        The terminal event is a result event on success (including an early
        stop on the failure budget) or an error event on structural failure.

        Args:
            options: Scan parameters (default: from settings)
            as_of: Reference date for the trading-day search and the history
                window (default: today in the market timezone)
        """
        options = options or ScanOptions.from_settings(self.settings)
        as_of = as_of or market_today(self.settings.market_timezone)

        self.last_report = None
        self.state_history = []
        self._set_state(ScanState.IDLE)

        if not self.jquants.has_credentials:
            yield self._fail("J-Quants API key is not configured (set JQUANTS_API_KEY)")
            return

        try:
            async for event in self._run_pipeline(options, as_of):
                yield event
        except Exception as e:
            logger.exception("Scan failed")
            yield self._fail(f"Scan failed: {e}")

    async def run(
        self,
        options: Optional[ScanOptions] = None,
        as_of: Optional[date] = None,
        on_event: Optional[Callable[[ScanEvent], None]] = None,
    ) -> ScanReport:
        """
        Run a scan to completion and return its report.

        Args:
            options: Scan parameters
            as_of: Reference date
            on_event: Called with every event as it is produced

        Raises:
            ScanFailedError: The scan ended with an error instead of a result
        """
        terminal: Optional[ScanEvent] = None
        async for event in self.stream(options, as_of):
            if on_event:
                on_event(event)
            terminal = event

        if terminal is not None and terminal.is_terminal_result and self.last_report:
            return self.last_report

        raise ScanFailedError(terminal.message if terminal else "Scan produced no events")

    async def _run_pipeline(
        self,
        options: ScanOptions,
        as_of: date,
    ) -> AsyncIterator[ScanEvent]:
        """Directory → market filter → snapshot → price filter → per-instrument scan."""
        yield ScanEvent.log("Starting stop-high scan...")
        yield ScanEvent.log(
            f"Reference date {as_of}, price band {options.min_price:g}-{options.max_price:g}, "
            f"threshold {format_percentage(options.threshold_rate)}, "
            f"history {options.history_months} months"
        )

        # Step 1: instrument master
        self._set_state(ScanState.FETCHING_DIRECTORY)
        yield ScanEvent.log("[Step 1] Fetching instrument master...")
        with log_step("instrument master"):
            instruments = await self.jquants.get_listed_info()
        if not instruments:
            yield self._fail("Instrument master is empty")
            return
        yield ScanEvent.log(f"Instrument master: {len(instruments)} instruments")

        self._set_state(ScanState.FILTERING_UNIVERSE)
        in_markets = filter_target_markets(instruments, options.target_markets)
        if not in_markets:
            yield self._fail(f"No instruments in target markets ({', '.join(options.target_markets)})")
            return
        yield ScanEvent.log(f"Target market instruments: {len(in_markets)}")

        # Step 2: latest trading day
        self._set_state(ScanState.RESOLVING_SNAPSHOT)
        yield ScanEvent.log("[Step 2] Resolving latest trading day...")
        resolver = TradingDayResolver(self.jquants, probe_delay=options.probe_delay, sleep=self._sleep)
        snapshot = Snapshot(bars=[], trade_date=None)

        with log_step("trading day", as_of=as_of.isoformat()):
            async for outcome in resolver.probe_days(as_of, options.max_lookback_days):
                yield ScanEvent.log(self._describe_probe(outcome))
                if outcome.found:
                    snapshot = Snapshot(bars=outcome.bars, trade_date=outcome.day)

        if snapshot.is_empty:
            yield self._fail(f"No market data in the {options.max_lookback_days} days before {as_of}")
            return

        trade_date = snapshot.trade_date.isoformat()
        yield ScanEvent.log(f"Market snapshot: {len(snapshot.bars)} bars (trade date {trade_date})")

        # Step 3: price band
        yield ScanEvent.log(
            f"[Step 3] Filtering by close price ({options.min_price:g} - {options.max_price:g} yen)..."
        )
        candidates = filter_by_price(snapshot.bars, in_markets, options.min_price, options.max_price)
        if not candidates:
            yield self._fail("No instruments matched the price band")
            return
        yield ScanEvent.log(f"Price band matches: {len(candidates)}")

        targets = candidates[: options.max_stocks] if options.max_stocks else candidates
        if options.max_stocks and options.max_stocks < len(candidates):
            yield ScanEvent.log(f"Limiting scan to the first {options.max_stocks} instruments")

        # Step 4: per-instrument history
        self._set_state(ScanState.SCANNING_INSTRUMENTS)
        yield ScanEvent.log("[Step 4] Scanning instrument histories for stop-highs...")
        yield ScanEvent.log(f"Instruments to scan: {len(targets)}")

        detector = StopHighDetector(StopHighConfig(threshold_rate=options.threshold_rate))
        history_start = subtract_months(as_of, options.history_months)

        rows: List[ScanResultRow] = []
        errors = 0
        processed = 0
        aborted = False
        total = len(targets)

        for index, candidate in enumerate(targets, 1):
            yield ScanEvent.log(f"[{index}/{total}] {candidate.code} ({candidate.company_name})")
            processed += 1

            bars: List[Bar] = []
            row: Optional[ScanResultRow] = None
            failure: Optional[Exception] = None
            try:
                bars = await self.jquants.get_daily_bars(candidate.code, history_start, as_of)
                row = self._scan_bars(detector, candidate, bars)
            except Exception as e:
                failure = e

            if failure is not None:
                errors += 1
                logger.warning(f"Failed to scan {candidate.code}: {failure}")
                yield ScanEvent.error(f"  -> error: {candidate.code}: {failure}")

                if errors >= options.failure_budget:
                    yield ScanEvent.error(
                        f"Error budget ({options.failure_budget}) reached, stopping scan"
                    )
                    aborted = True
                    break
            elif not bars:
                yield ScanEvent.log("  -> no data")
            elif row is not None:
                rows.append(row)
                yield ScanEvent.log(
                    f"  -> stop-high x{row.stop_high_count} (latest {row.latest_stop_high_date})"
                )
            else:
                yield ScanEvent.log("  -> no stop-high")

            if index % 10 == 0:
                yield ScanEvent.log(f"  Progress: {index}/{total}")

            if index < total:
                await self._sleep(options.delay)

        self._set_state(ScanState.ABORTED if aborted else ScanState.COMPLETED)

        # Step 5: summary
        yield ScanEvent.log("[Step 5] Scan finished")
        yield ScanEvent.log(f"Trade date: {trade_date}")
        yield ScanEvent.log(f"Instruments scanned: {processed}/{total}")
        yield ScanEvent.log(f"Stop-high instruments: {len(rows)}")
        yield ScanEvent.log(f"Errors: {errors}")

        if rows:
            yield ScanEvent.log("--- Detected ---")
            for row in rows:
                yield ScanEvent.log(
                    f"{row.code} {row.company_name}: {row.stop_high_count} stop-high(s) "
                    f"(latest {row.latest_stop_high_date})"
                )
        else:
            yield ScanEvent.log("No stop-high instruments found.")

        report = ScanReport(
            success=True,
            trade_date=trade_date,
            results=rows,
            summary=ScanSummary(
                targets=total,
                processed=processed,
                detected=len(rows),
                errors=errors,
                aborted=aborted,
            ),
        )
        self.last_report = report

        logger.info(
            f"Scan complete: {len(rows)} stop-high instruments, "
            f"{processed}/{total} scanned, {errors} errors"
        )
        yield ScanEvent.result(report.to_dict())

    def _scan_bars(
        self,
        detector: StopHighDetector,
        candidate: Candidate,
        bars: List[Bar],
    ) -> Optional[ScanResultRow]:
        """Run detection on one instrument's history; None if nothing was flagged."""
        if not bars:
            return None

        result = detector.detect(bars)
        if not result.detected:
            return None

        latest_close = max(bars, key=lambda b: b.date).close
        return ScanResultRow.from_detection(candidate, result, latest_close)

    def _describe_probe(self, outcome: ProbeOutcome) -> str:
        """Progress line for one trading-day probe."""
        if outcome.status == ProbeStatus.FOUND:
            return f"  {outcome.day}: {len(outcome.bars)} bars"
        if outcome.status == ProbeStatus.ERROR:
            return f"  {outcome.day}: request failed ({outcome.error}), trying previous day"
        return f"  {outcome.day}: no data, trying previous day"

    def _set_state(self, state: ScanState) -> None:
        self.state = state
        self.state_history.append(state)
        logger.debug(f"Scan state: {state.value}")

    def _fail(self, message: str) -> ScanEvent:
        """Mark the scan failed and build its terminal error event."""
        self._set_state(ScanState.FAILED)
        logger.error(message)
        return ScanEvent.error(f"Error: {message}")

    async def close(self):
        """Clean up resources."""
        await self.jquants.close()
