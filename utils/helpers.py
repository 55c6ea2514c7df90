"""
Helper functions for the Stop-High Scanner.
Common utilities for formatting and date handling.
"""

import calendar
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo


# =============================================================================
# Formatting Functions
# =============================================================================

def format_price(
    value: Union[int, float, None],
    decimals: int = 1,
) -> str:
    """
    Format a yen price with thousands separators.

    Args:
        value: Price to format
        decimals: Decimal places

    Returns:
        Formatted price string, "-" when missing
    """
    if value is None:
        return "-"

    return f"{value:,.{decimals}f}"


def format_percentage(
    value: Union[int, float, None],
    decimals: int = 1,
    include_sign: bool = False,
) -> str:
    """
    Format a number as percentage.

    Args:
        value: Number to format (0.15 = 15%)
        decimals: Decimal places
        include_sign: Include + for positive values

    Returns:
        Formatted percentage string
    """
    if value is None:
        return "N/A"

    pct = value * 100
    sign = "+" if include_sign and pct > 0 else ""
    return f"{sign}{pct:.{decimals}f}%"


def format_flag(value: bool) -> str:
    """Render a boolean as the ○/× marks used in Japanese market tables."""
    return "○" if value else "×"


# =============================================================================
# Date/Time Utilities
# =============================================================================

def market_today(timezone: str = "Asia/Tokyo") -> date:
    """Get today's date in the exchange's timezone."""
    return datetime.now(ZoneInfo(timezone)).date()


def to_api_date(value: date) -> str:
    """Format a date as YYYYMMDD for J-Quants query parameters."""
    return value.strftime("%Y%m%d")


def to_iso_date(value: str) -> str:
    """
    Normalize a vendor date string to ISO YYYY-MM-DD.

    Accepts "YYYY-MM-DD" (returned unchanged, time part dropped) or "YYYYMMDD".
    """
    value = str(value).strip()
    if len(value) == 8 and value.isdigit():
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value[:10]


def parse_iso_date(value: str) -> date:
    """Parse an ISO date string (or the date part of a timestamp)."""
    return date.fromisoformat(to_iso_date(value))


def subtract_months(
    reference: date,
    months: int,
) -> date:
    """
    Step back a number of calendar months, clamping to the month's last day.

    Args:
        reference: Starting date
        months: Months to subtract

    Returns:
        Date `months` months before `reference` (e.g. May 31 - 3 → Feb 28/29)
    """
    total = reference.year * 12 + (reference.month - 1) - months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(reference.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def days_between(
    earlier: str,
    later: str,
) -> Optional[int]:
    """Calendar days from `earlier` to `later` (ISO strings), None if unparseable."""
    try:
        return (parse_iso_date(later) - parse_iso_date(earlier)).days
    except ValueError:
        return None
