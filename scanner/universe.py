"""
Universe narrowing: market segment and closing-price band.

The instrument master and the daily-bars endpoint do not agree on code
width (the master may list "7203" while bars carry "72030"), so every join
here goes through normalize_code first.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence

from config.settings import DEFAULT_TARGET_MARKETS
from data.models import Bar, Instrument
from utils.logging import get_logger

logger = get_logger(__name__)

CODE_PADDING_DIGIT = "0"


def normalize_code(code) -> str:
    """
    Normalize an instrument code to its join key.

    A 5-character code ending in the padding digit is the same instrument as
    its 4-character form ("72030" -> "7203"). Everything else, including
    5-character codes with a meaningful last character ("72031"), is returned
    as-is after trimming.

    Examples:
        >>> normalize_code("72030")
        '7203'
        >>> normalize_code("7203")
        '7203'
        >>> normalize_code("130A0")
        '130A'
    """
    text = str(code).strip()
    if len(text) == 5 and text.endswith(CODE_PADDING_DIGIT):
        return text[:4]
    return text


@dataclass(frozen=True)
class Candidate:
    """An instrument that passed both filters, ready for history scanning."""

    code: str
    company_name: str
    market: str
    latest_price: float


def filter_target_markets(
    instruments: Iterable[Instrument],
    markets: Optional[Sequence[str]] = None,
) -> List[Instrument]:
    """
    Keep instruments listed on one of the target market segments.

    Matching is a case-sensitive substring test, since segment names carry
    prefixes and suffixes (e.g. "プライム（内国株式）").

    Args:
        instruments: Full instrument master
        markets: Segment labels to keep (default: Prime, Standard, Growth)

    Returns:
        Instruments whose market name contains any label
    """
    markets = list(markets) if markets is not None else DEFAULT_TARGET_MARKETS

    return [
        inst for inst in instruments
        if inst.market_name and any(label in inst.market_name for label in markets)
    ]


def build_latest_snapshot(bars: Iterable[Bar]) -> Dict[str, Bar]:
    """
    Reduce market-wide bars to the latest bar per instrument.

    Args:
        bars: Bars from one market-wide fetch, in any order

    Returns:
        Normalized code -> the bar with the greatest date for that code
    """
    latest: Dict[str, Bar] = {}

    for bar in bars:
        code = normalize_code(bar.code)
        existing = latest.get(code)
        if existing is None or bar.date > existing.date:
            latest[code] = replace(bar, code=code)

    return latest


def filter_by_price(
    snapshot_bars: Iterable[Bar],
    instruments: Iterable[Instrument],
    min_price: float = 100,
    max_price: float = 600,
) -> List[Candidate]:
    """
    Keep instruments whose latest close lies within [min_price, max_price].

    Args:
        snapshot_bars: Market-wide bars for the resolved trading day
        instruments: Instrument master (usually already market-filtered)
        min_price: Lower bound, inclusive
        max_price: Upper bound, inclusive

    Returns:
        Candidates in snapshot order. A priced instrument missing from the
        master is kept with empty name and market.
    """
    latest = build_latest_snapshot(snapshot_bars)
    if not latest:
        return []

    directory = {normalize_code(inst.code): inst for inst in instruments}

    candidates = []
    for code, bar in latest.items():
        if not (min_price <= bar.close <= max_price):
            continue

        inst = directory.get(code)
        candidates.append(Candidate(
            code=code,
            company_name=inst.company_name if inst else "",
            market=inst.market_name if inst else "",
            latest_price=bar.close,
        ))

    logger.debug(
        f"Price band {min_price}-{max_price}: {len(candidates)}/{len(latest)} instruments"
    )
    return candidates
