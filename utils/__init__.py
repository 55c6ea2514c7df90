"""
Utility modules for the Stop-High Scanner.
"""

from utils.logging import setup_logging, get_logger, log_api_call, log_step
from utils.helpers import (
    format_price,
    format_percentage,
    format_flag,
    market_today,
    to_api_date,
    to_iso_date,
    parse_iso_date,
    subtract_months,
    days_between,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "log_api_call",
    "log_step",
    "format_price",
    "format_percentage",
    "format_flag",
    "market_today",
    "to_api_date",
    "to_iso_date",
    "parse_iso_date",
    "subtract_months",
    "days_between",
]
