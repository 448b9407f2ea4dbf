import re
from datetime import datetime
from typing import Any, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")

_BR_DATETIME = re.compile(
    r"(\d{1,2})/(\d{1,2})/(\d{4})(?:[ T,]+(\d{1,2}):(\d{2})(?::(\d{2}))?)?"
)


def normalize_name(name: str) -> str:
    """Grouping key for product names: trimmed and lower-cased."""
    return (name or "").strip().lower()


def to_float(val: Any, default: Optional[float] = None) -> Optional[float]:
    """Parse numbers as written on Brazilian receipts.

    Handles inputs like '14,70', '1.470,00', '1,253' (kg), 'R$ 9,99',
    plain numbers and numeric strings with a dot decimal.
    """
    if val is None or isinstance(val, bool):
        return default
    if isinstance(val, (int, float)):
        return float(val)
    s = str(val).strip().replace("R$", "").replace(" ", "")
    if not s:
        return default
    if "," in s:
        # Comma is the decimal separator; dots are thousands.
        s = s.replace(".", "").replace(",", ".")
    m = re.search(r"-?\d+(?:\.\d+)?", s)
    if not m:
        return default
    try:
        return float(m.group(0))
    except ValueError:
        _LOG.debug(f"Could not parse number from {val!r}")
        return default


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 or DD/MM/YYYY [HH:MM[:SS]] into a naive datetime."""
    if not isinstance(value, str):
        return None
    v = value.strip()
    if not v:
        return None
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        return dt.replace(tzinfo=None)
    except ValueError:
        pass
    m = _BR_DATETIME.fullmatch(v)
    if m:
        d, mth, y, hh, mm, ss = m.groups()
        try:
            return datetime(int(y), int(mth), int(d), int(hh or 0), int(mm or 0), int(ss or 0))
        except ValueError:
            return None
    return None


def normalize_datetime_iso(value: Any) -> Optional[str]:
    """Return YYYY-MM-DDTHH:MM:SS, or None when the value is not a date."""
    dt = parse_datetime(value)
    return dt.isoformat(timespec="seconds") if dt else None


def month_key(value: Any) -> Optional[str]:
    dt = parse_datetime(value)
    return f"{dt.year:04d}-{dt.month:02d}" if dt else None
