#!/usr/bin/env python3
"""
Stop-High Scanner - Main Entry Point

Scans Prime/Standard/Growth stocks in a price band for stop-high (limit-up)
days over the last few months, streaming progress as it goes.

Usage:
    # Full scan, NDJSON event stream on stdout
    python main.py

    # Human-readable progress and a results table
    python main.py --format console

    # Quick run over the first 20 instruments
    python main.py --max-stocks 20 --format console

    # Custom price band and threshold
    python main.py --min-price 200 --max-price 1000 --threshold 0.15
"""

import argparse
import asyncio
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import get_settings
from output.stream import EventType, ScanEvent
from scanner.scanner import ScanFailedError, ScanOptions, ScanReport, StopHighScanner
from utils.helpers import format_flag, format_percentage, format_price
from utils.logging import setup_logging, get_logger


console = Console(stderr=True)
logger = get_logger("main")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Scan Tokyo-listed stocks for recent stop-high days",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py                               # NDJSON stream on stdout
    python main.py --format console              # Rich progress + table
    python main.py --max-stocks 20               # Bounded test run
    python main.py --as-of 2024-03-15            # Fixed reference date
        """,
    )

    # Universe
    parser.add_argument(
        "--min-price",
        type=float,
        help="Minimum latest close in yen, inclusive (default: 100)",
    )
    parser.add_argument(
        "--max-price",
        type=float,
        help="Maximum latest close in yen, inclusive (default: 600)",
    )
    parser.add_argument(
        "--max-stocks", "-n",
        type=int,
        help="Scan at most N instruments (default: all)",
    )

    # Detection
    parser.add_argument(
        "--threshold",
        type=float,
        help="Stop-high threshold (0-1, default: 0.13 = 13%% over previous close)",
    )
    parser.add_argument(
        "--months",
        type=int,
        help="Months of history to scan per instrument (default: 3)",
    )

    # Scheduling
    parser.add_argument(
        "--delay",
        type=float,
        help="Seconds to wait between instruments (default: 0.6)",
    )
    parser.add_argument(
        "--lookback-days",
        type=int,
        help="Days to search back for the latest trading day (default: 7)",
    )
    parser.add_argument(
        "--as-of",
        type=date.fromisoformat,
        help="Reference date YYYY-MM-DD (default: today in Tokyo)",
    )

    # Output options
    parser.add_argument(
        "--format", "-f",
        choices=["ndjson", "console"],
        default="ndjson",
        help="Output format (default: ndjson)",
    )

    # Logging
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress non-essential output",
    )
    parser.add_argument(
        "--log-file",
        help="Also write logs to this file (default: LOG_FILE setting)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Write the log file as JSON records",
    )

    return parser.parse_args(argv)


def build_options(args: argparse.Namespace) -> ScanOptions:
    """Build scan options from settings plus any CLI overrides."""
    return ScanOptions.from_settings(
        get_settings(),
        min_price=args.min_price,
        max_price=args.max_price,
        max_stocks=args.max_stocks,
        delay=args.delay,
        threshold_rate=args.threshold,
        history_months=args.months,
        max_lookback_days=args.lookback_days,
    )


def write_ndjson(event: ScanEvent) -> None:
    """Write one event line to stdout and flush so consumers see it immediately."""
    sys.stdout.write(event.to_json_line())
    sys.stdout.flush()


def print_event(event: ScanEvent) -> None:
    """Render a progress event on the console."""
    if event.type == EventType.ERROR:
        console.print(f"[red]{event.message}[/red]")
    elif event.type == EventType.LOG:
        console.print(event.message, highlight=False)


def display_results_table(report: ScanReport) -> None:
    """Display a table of detected stop-high instruments."""
    if not report.results:
        console.print("[yellow]No stop-high instruments detected.[/yellow]")
        return

    table = Table(title=f"Stop-High Instruments (trade date {report.trade_date})")
    table.add_column("Code", style="cyan", width=6)
    table.add_column("Name", width=24)
    table.add_column("Market", width=12)
    table.add_column("Count", justify="right", width=5)
    table.add_column("Latest", width=10)
    table.add_column("High", justify="right", width=9)
    table.add_column("Close", justify="right", width=9)
    table.add_column("Streak", justify="center", width=6)
    table.add_column("Closed", justify="center", width=6)
    table.add_column("Opening", justify="center", width=7)

    for row in report.results:
        table.add_row(
            row.code,
            row.company_name[:24],
            row.market,
            str(row.stop_high_count),
            row.latest_stop_high_date or "-",
            format_price(row.latest_stop_high_price),
            format_price(row.latest_close),
            format_flag(row.prev_day_stop_high),
            format_flag(row.closed_at_stop_high),
            format_flag(row.opening_stop_high),
        )

    console.print(table)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    options = build_options(args)
    settings = get_settings()

    if args.format == "console" and not args.quiet:
        console.print(Panel(
            "[bold blue]Stop-High Scanner[/bold blue]\n\n"
            f"Price band: {options.min_price:g} - {options.max_price:g} yen\n"
            f"Threshold: {format_percentage(options.threshold_rate)} | "
            f"History: {options.history_months} months\n"
            f"Markets: {', '.join(options.target_markets)}",
            expand=False,
        ))

    on_event = write_ndjson if args.format == "ndjson" else print_event
    scanner = StopHighScanner(settings=settings)

    try:
        report = await scanner.run(options, as_of=args.as_of, on_event=on_event)

        if args.format == "console":
            console.print()
            display_results_table(report)
            summary = report.summary
            console.print(
                f"Scanned {summary.processed}/{summary.targets}, "
                f"detected {summary.detected}, errors {summary.errors}"
                + (" [red](stopped early)[/red]" if summary.aborted else "")
            )

        return 0

    except ScanFailedError as e:
        logger.error(f"Scan did not complete: {e}")
        return 1

    finally:
        await scanner.close()


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Setup logging
    log_level = "DEBUG" if args.verbose else ("WARNING" if args.quiet else "INFO")
    setup_logging(
        level=log_level,
        log_file=args.log_file,
        serialize=True if args.log_json else None,
    )

    try:
        return asyncio.run(main_async(args))
    except ValueError as e:
        console.print(f"[red]Invalid options: {e}[/red]")
        return 2
    except KeyboardInterrupt:
        console.print("\n[yellow]Scan interrupted by user[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
