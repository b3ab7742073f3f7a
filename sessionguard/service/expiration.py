"""Turn configured token lifetimes into durations and absolute deadlines.

Two configuration styles are accepted and both must keep working:

- a number, read as whole days (``7``)
- a string ``<n><unit>`` with unit ``s``, ``m``, ``h`` or ``d`` (``"15m"``)

Anything else is read leniently: the leading integer of the string counts as
days (``"5"`` -> 5 days, ``"15M"`` -> 15 days), and values with no leading
integer fall back to 7 days. Parsing never raises.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

DEFAULT_TTL_DAYS = 7

_DURATION_RE = re.compile(r"(\d+)([smhd])", re.ASCII)
_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)", re.ASCII)

_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


def _leading_int(raw: str) -> Optional[int]:
    match = _LEADING_INT_RE.match(raw)
    if not match:
        return None
    return int(match.group(1))


def _ttl_or_none(value: Any) -> Optional[timedelta]:
    # bool is an int subclass but is not a day count
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(days=int(value))

    raw = str(value)
    match = _DURATION_RE.fullmatch(raw)
    if not match:
        days = _leading_int(raw)
        return None if days is None else timedelta(days=days)

    amount = int(match.group(1))
    return timedelta(**{_UNITS[match.group(2)]: amount})


def parse_ttl(value: Any) -> timedelta:
    """Return the lifetime described by ``value``."""
    try:
        ttl = _ttl_or_none(value)
    except (ValueError, OverflowError):
        # NaN, infinity, or more days than timedelta can hold
        ttl = None
    return ttl if ttl is not None else timedelta(days=DEFAULT_TTL_DAYS)


def parse_expiration(value: Any, now: Optional[datetime] = None) -> datetime:
    """Return the absolute instant ``value`` from ``now`` (UTC by default)."""
    base = now or datetime.now(timezone.utc)
    try:
        return base + parse_ttl(value)
    except OverflowError:
        return base + timedelta(days=DEFAULT_TTL_DAYS)


def is_strict_duration(value: Any) -> bool:
    """True when ``value`` parses without the lenient fallbacks."""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return bool(_DURATION_RE.fullmatch(str(value)))


__all__ = [
    "DEFAULT_TTL_DAYS",
    "is_strict_duration",
    "parse_expiration",
    "parse_ttl",
]
