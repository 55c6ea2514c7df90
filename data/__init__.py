"""
Data clients for the Stop-High Scanner.

Primary data source: J-Quants API V2
"""

from data.jquants_client import (
    JQuantsAuthError,
    JQuantsClient,
    JQuantsError,
    JQuantsNotFoundError,
    JQuantsRateLimitError,
)
from data.models import Bar, Instrument

__all__ = [
    "JQuantsClient",
    "JQuantsError",
    "JQuantsNotFoundError",
    "JQuantsRateLimitError",
    "JQuantsAuthError",
    "Bar",
    "Instrument",
]
