from __future__ import annotations

import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

_SHORTHAND_RE = re.compile(r"^(\d+)([smhd])\b")
_RELATIVE_RE = re.compile(r"^(\d+)\s+(second|minute|hour|day|week|month)s?\s+ago$")
# The library card's "Copy link" button label sometimes sticks to the timestamp.
_TRAILING_DEBRIS_RE = re.compile(r"CCL$", re.IGNORECASE)
_TIME_COMPONENT_RE = re.compile(r":|\b[ap]\.?m\.?\b", re.IGNORECASE)

_DATE_ONLY_FORMATS: Iterable[str] = (
    "%b %d, %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%B %d %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%Y-%m-%d",
    "%m/%d/%Y",
)
_DATE_TIME_FORMATS: Iterable[str] = (
    "%b %d, %Y %I:%M %p",
    "%b %d, %Y, %I:%M %p",
    "%B %d, %Y %I:%M %p",
    "%B %d, %Y, %I:%M %p",
    "%b %d, %Y %H:%M",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime (naive means UTC)."""

    candidate = (value or "").strip()
    if not candidate:
        return None
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _subtract_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _relative(amount: int, unit: str, now: datetime) -> datetime:
    if unit in {"s", "second"}:
        return now - timedelta(seconds=amount)
    if unit in {"m", "minute"}:
        return now - timedelta(minutes=amount)
    if unit in {"h", "hour"}:
        return now - timedelta(hours=amount)
    if unit in {"d", "day"}:
        return now - timedelta(days=amount)
    if unit == "week":
        return now - timedelta(weeks=amount)
    return _subtract_months(now, amount)


def parse_listing_timestamp(text: Optional[str], *, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a library-card timestamp into an aware datetime.

    Accepts shorthand (``13h``, ``2m``), ``N unit(s) ago`` down to months,
    ``just now`` and absolute calendar dates. A date without a time component
    is pushed to the end of that (local) day so a same-day edit still compares
    as newer than an earlier download. Returns ``None`` when nothing matches.
    """

    raw = (text or "").strip()
    if not raw:
        return None
    raw = _TRAILING_DEBRIS_RE.sub("", raw).strip()
    lowered = raw.lower()
    now = now or _utcnow()

    match = _SHORTHAND_RE.match(lowered)
    if match:
        return _relative(int(match.group(1)), match.group(2), now)

    match = _RELATIVE_RE.match(lowered)
    if match:
        return _relative(int(match.group(1)), match.group(2), now)

    if lowered in {"just now", "now"}:
        return now

    iso = parse_iso(raw) if re.match(r"^\d{4}-\d{2}-\d{2}T", raw) else None
    if iso is not None:
        return iso

    if _TIME_COMPONENT_RE.search(raw):
        for fmt in _DATE_TIME_FORMATS:
            try:
                return datetime.strptime(raw, fmt).astimezone()
            except ValueError:
                continue
        return None

    for fmt in _DATE_ONLY_FORMATS:
        try:
            day = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        return day.replace(hour=23, minute=59, second=59, microsecond=999000).astimezone()

    return None


__all__ = ["parse_iso", "parse_listing_timestamp"]
