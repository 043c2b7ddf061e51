"""
KAIJU TRADER — Common Utility Functions
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict
import hashlib
import json


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def utc_timestamp() -> str:
    """Return current UTC timestamp as ISO string."""
    return utc_now().isoformat()


def start_of_utc_day(ts: datetime) -> datetime:
    """Midnight UTC of the day containing ts."""
    ts = ts.astimezone(timezone.utc)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def seconds_until_next_utc_day(ts: datetime) -> float:
    return (start_of_utc_day(ts) + timedelta(days=1) - ts).total_seconds()


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safe division avoiding ZeroDivisionError."""
    if denominator == 0:
        return default
    return numerator / denominator


def clamp(value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
    """Clamp a value between min and max."""
    return max(min_val, min(max_val, value))


def stable_id(*parts: Any) -> str:
    """Deterministic short id from its parts."""
    payload = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


def base_asset(symbol: str) -> str:
    """BTC/USDT -> BTC."""
    return symbol.split("/")[0].upper()


def quote_asset(symbol: str) -> str:
    """BTC/USDT -> USDT, BTC -> USD."""
    parts = symbol.split("/")
    return parts[1].upper() if len(parts) > 1 else "USD"


def pct_change(old_val: float, new_val: float) -> float:
    """Calculate percentage change between two values."""
    if old_val == 0:
        return 0.0
    return ((new_val - old_val) / abs(old_val)) * 100.0


def round_dict(values: Dict[str, float], digits: int = 4) -> Dict[str, float]:
    return {k: round(v, digits) for k, v in values.items()}
