"""
Canonical records for instruments and daily bars.

J-Quants V2 abbreviates most field names (H, C, O, L, Vo); V1 and some
mirrors use the long names. Both shapes normalize into the same records here
so nothing downstream sees vendor keys.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

from utils.helpers import to_iso_date


# Canonical field -> vendor keys, first match wins
BAR_FIELD_ALIASES: Dict[str, Sequence[str]] = {
    "code": ("Code",),
    "date": ("Date",),
    "open": ("O", "Open"),
    "high": ("H", "High"),
    "low": ("L", "Low"),
    "close": ("C", "Close"),
    "volume": ("Vo", "Volume"),
}

PRICE_FIELDS = ("open", "high", "low", "close")


def _first_present(record: Dict[str, Any], keys: Sequence[str]) -> Optional[Any]:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class Instrument:
    """A listed instrument from the J-Quants master."""

    code: str
    company_name: str = ""
    market_name: str = ""

    @classmethod
    def from_vendor(cls, record: Dict[str, Any]) -> "Instrument":
        """Create an Instrument from a J-Quants master record."""
        return cls(
            code=str(record.get("Code", "")).strip(),
            company_name=record.get("CoName") or record.get("CompanyName") or "",
            market_name=record.get("MktNm") or record.get("MarketCodeName") or "",
        )


@dataclass(frozen=True)
class Bar:
    """One instrument's OHLCV for one trading day."""

    code: str
    date: str  # ISO YYYY-MM-DD
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    @staticmethod
    def is_untraded(record: Dict[str, Any]) -> bool:
        """True when the record has no OHLC (J-Quants sends nulls for days without trades)."""
        return any(
            _first_present(record, BAR_FIELD_ALIASES[name]) is None
            for name in PRICE_FIELDS
        )

    @classmethod
    def from_vendor(cls, record: Dict[str, Any]) -> "Bar":
        """
        Create a Bar from a J-Quants daily-bars record.

        Untraded records should be filtered with is_untraded first.

        Raises:
            ValueError: If the code, date or any price field is missing.
        """
        values = {
            name: _first_present(record, keys)
            for name, keys in BAR_FIELD_ALIASES.items()
        }

        missing = [
            name for name in ("code", "date") + PRICE_FIELDS
            if values[name] is None
        ]
        if missing:
            raise ValueError(
                f"Bar record for {record.get('Code', '?')} on {record.get('Date', '?')} "
                f"is missing {', '.join(missing)}"
            )

        return cls(
            code=str(values["code"]).strip(),
            date=to_iso_date(values["date"]),
            open=float(values["open"]),
            high=float(values["high"]),
            low=float(values["low"]),
            close=float(values["close"]),
            volume=int(float(values["volume"] or 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
