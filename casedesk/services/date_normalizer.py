"""
Date Normalizer — one place for every loosely-formatted date the engine sees.

Spreadsheet exports reach the engine as ``DD-MM-YYYY`` strings, compact
``DDMMYY`` strings, spreadsheet serial numbers, ISO timestamps and a handful
of human formats. Rules run in a fixed order and the first match wins:

    1. ``DD-MM-YYYY``            (1–2 digit day/month, 4-digit year)
    2. ``DDMMYY``                (pivot 50: <50 → 20yy, ≥50 → 19yy)
    3. spreadsheet serial        (1900-01-01 + (serial − 2) days)
    4. generic                   (ISO-8601 and the formats in _GENERIC_FORMATS)

``normalize_date`` never raises: unparseable input falls back to the
supplied default or to the current time. ``parse_date_value`` is the
non-defaulting core and returns ``None`` instead.

``repair_stored_date`` is the read-back path. Older imports stored serial
numbers as extended-year ISO strings (``+045000-01-01T00:00:00.000Z``);
these are turned back into the serial they came from and reconverted.

Usage:
    from casedesk.services.date_normalizer import normalize_date

    normalize_date("250623")     # 2023-06-25 00:00 UTC
    normalize_date(45000)        # 2023-03-15 00:00 UTC
    normalize_date("not-a-date") # now
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

# Day 1 of the spreadsheet calendar; the extra day accounts for the
# phantom 1900-02-29 and the 1-based day count.
SERIAL_EPOCH = datetime(1900, 1, 1, tzinfo=timezone.utc)
SERIAL_OFFSET_DAYS = 2

# 10000 is 1927-05-18; 2958465 is 9999-12-31, the last day a serial can name.
SERIAL_MIN = 10000
SERIAL_MAX = 2958465

TWO_DIGIT_YEAR_PIVOT = 50
MIN_YEAR = 1900
MAX_YEAR = 2100

_DD_MM_YYYY = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")
_DDMMYY = re.compile(r"^(\d{2})(\d{2})(\d{2})$")
_NUMERIC = re.compile(r"^\d+(?:\.\d+)?$")
_STORED_SERIAL = re.compile(r"^\+(\d{6})-\d{2}-\d{2}T.*Z$")

_GENERIC_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d %B %Y",
    "%d-%b-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_iso(value: datetime | None) -> str | None:
    """Render a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` (UTC)."""
    if value is None:
        return None
    value = as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _safe_date(year: int, month: int, day: int) -> datetime | None:
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


# ═════════════════════════════════════════════════════════════════════════════
# Rules
# ═════════════════════════════════════════════════════════════════════════════


def _parse_dd_mm_yyyy(text: str) -> datetime | None:
    m = _DD_MM_YYYY.match(text)
    if not m:
        return None
    day, month, year = (int(g) for g in m.groups())
    return _safe_date(year, month, day)


def _parse_ddmmyy(text: str) -> datetime | None:
    m = _DDMMYY.match(text)
    if not m:
        return None
    day, month, yy = (int(g) for g in m.groups())
    year = 2000 + yy if yy < TWO_DIGIT_YEAR_PIVOT else 1900 + yy
    if not (1 <= day <= 31) or not (1 <= month <= 12):
        return None
    if not (MIN_YEAR <= year <= MAX_YEAR):
        return None
    return _safe_date(year, month, day)


def from_serial(serial: float) -> datetime | None:
    """Convert a spreadsheet serial day number; ``None`` outside the accepted range."""
    if not (SERIAL_MIN < serial <= SERIAL_MAX):
        return None
    try:
        return SERIAL_EPOCH + timedelta(days=serial - SERIAL_OFFSET_DAYS)
    except OverflowError:
        return None


def _parse_generic(text: str) -> datetime | None:
    iso = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return as_utc(datetime.fromisoformat(iso))
    except ValueError:
        pass
    for fmt in _GENERIC_FORMATS:
        try:
            return as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def parse_date_value(value) -> datetime | None:
    """Apply the parsing rules in order; ``None`` when nothing matches."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return from_serial(value)

    text = str(value).strip()
    if not text:
        return None

    parsed = _parse_dd_mm_yyyy(text) or _parse_ddmmyy(text)
    if parsed is not None:
        return parsed
    if _NUMERIC.match(text):
        return from_serial(float(text))
    return _parse_generic(text)


def normalize_date(value, *, default: datetime | None = None) -> datetime:
    """Parse *value* or fall back to *default* (or now). Never raises."""
    parsed = parse_date_value(value)
    if parsed is not None:
        return parsed
    if value not in (None, ""):
        logger.debug("Unparseable date %r, using fallback", value)
    return default if default is not None else utcnow()


def repair_stored_date(value) -> datetime | None:
    """Read-back repair for values already in the store.

    Extended-year strings carrying a 6-digit serial are reconverted as
    serial dates; anything else goes through the normal rules.
    """
    if isinstance(value, str):
        m = _STORED_SERIAL.match(value.strip())
        if m:
            repaired = from_serial(int(m.group(1)))
            if repaired is not None:
                logger.info("Repaired stored serial date %s -> %s", value, format_iso(repaired))
            return repaired
    return parse_date_value(value)
