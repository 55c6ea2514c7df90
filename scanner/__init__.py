"""
Stop-High Scanner.

Finds Tokyo-listed stocks that hit a stop-high (limit-up) in recent months.

Modules:
- signals: Stop-high detection over one instrument's daily bars
- universe: Code normalization, market and price-band filters
- trading_day: Latest trading day resolution by backward probing
- scanner: Sequential, throttled scan with a streamed event protocol
"""

from scanner.signals import (
    StopHighConfig,
    StopHighDetector,
    StopHighEvent,
    StopHighResult,
    detect_stop_high,
)
from scanner.universe import (
    Candidate,
    build_latest_snapshot,
    filter_by_price,
    filter_target_markets,
    normalize_code,
)
from scanner.trading_day import ProbeOutcome, ProbeStatus, Snapshot, TradingDayResolver
from scanner.scanner import (
    ScanFailedError,
    ScanOptions,
    ScanReport,
    ScanResultRow,
    ScanState,
    ScanSummary,
    StopHighScanner,
)

__all__ = [
    # Detection
    "StopHighConfig",
    "StopHighDetector",
    "StopHighEvent",
    "StopHighResult",
    "detect_stop_high",
    # Universe
    "Candidate",
    "build_latest_snapshot",
    "filter_by_price",
    "filter_target_markets",
    "normalize_code",
    # Trading day
    "ProbeOutcome",
    "ProbeStatus",
    "Snapshot",
    "TradingDayResolver",
    # Orchestration
    "ScanFailedError",
    "ScanOptions",
    "ScanReport",
    "ScanResultRow",
    "ScanState",
    "ScanSummary",
    "StopHighScanner",
]
