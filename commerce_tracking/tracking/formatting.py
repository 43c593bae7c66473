"""
Cell formatting and parsing

All timestamps are naive UTC. Cells read back from the store are strings,
so parsing is lenient: blanks and garbage become ``None`` or zero.
"""

import secrets
import string
from datetime import date, datetime, timezone
from typing import Optional, Union

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"

_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def format_timestamp(value: Optional[datetime]) -> str:
    return value.strftime(TIMESTAMP_FORMAT) if value else ""


def format_date(value: Optional[Union[date, datetime]]) -> str:
    return value.strftime(DATE_FORMAT) if value else ""


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    value = value.strip()
    for fmt in (TIMESTAMP_FORMAT, DATE_FORMAT):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def parse_date(value: Optional[str]) -> Optional[date]:
    parsed = parse_timestamp(value)
    return parsed.date() if parsed else None


def money(value: float) -> str:
    """Fixed two-decimal string used for amounts and percentages"""
    return f"{value:.2f}"


def to_float(value: Optional[str], default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        return default


def to_int(value: Optional[str], default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(str(value).replace(",", "")))
    except ValueError:
        return default


def ratio(numerator: float, denominator: float) -> float:
    """Percentage, zero when the denominator is zero"""
    return numerator / denominator * 100 if denominator else 0.0


def mean(values, default: float = 0.0) -> float:
    values = list(values)
    return sum(values) / len(values) if values else default


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours rounded to two decimals"""
    return round((end - start).total_seconds() / 3600 * 100) / 100


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes elapsed, truncated"""
    return int((end - start).total_seconds() // 60)


def base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = ""
    while number:
        number, remainder = divmod(number, 36)
        digits = _BASE36[remainder] + digits
    return digits


def generate_id(prefix: str, now: datetime) -> str:
    """``PREFIX-<base36 epoch ms>-<5 random base36>``, upper case"""
    millis = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"{prefix}-{base36(millis)}-{suffix}".upper()
