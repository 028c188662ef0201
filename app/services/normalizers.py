"""Cell level normalizers for uploaded workbooks.

Uploaded spreadsheets are loosely structured: dates arrive as serial numbers,
``datetime`` cells or free text, quantities carry thousands separators and
headers vary from file to file. Everything here is a pure function so the
extractors can call them on every cell without guarding.
"""
from __future__ import annotations

import math
import numbers
import re
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Sequence

from dateutil import parser as date_parser

# Serial 25569 is 1970-01-01 in the 1900 date system.
EXCEL_UNIX_EPOCH_SERIAL = 25569
SECONDS_PER_DAY = 86400
DEFAULT_FUTURE_YEAR_WINDOW = 5

_PLACEHOLDER_STRINGS = {"nan", "none", "null", "undefined", "nat"}
_INVALID_CONTEXT_VALUES = {"", "NA", "N/A", "-"}
_QUANTITY_STRIP = re.compile(r"[,\s]+")
_LEADING_INT = re.compile(r"^[+-]?\d+")


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def normalize_string(value: Any) -> Optional[str]:
    if value is None or _is_nan(value):
        return None

    string_value = cell_text(value)
    if not string_value:
        return None
    if string_value.lower() in _PLACEHOLDER_STRINGS:
        return None
    return string_value


def cell_text(value: Any) -> str:
    """Render a cell as trimmed text; whole floats lose their trailing ``.0``."""
    if value is None or _is_nan(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    return str(value).strip()


def is_blank_row(row: Optional[Sequence[Any]]) -> bool:
    if not row:
        return True
    return all(cell_text(cell) == "" for cell in row)


def is_context_value(value: Any) -> bool:
    """False for the placeholders spreadsheets use to mean 'same as above'."""
    return cell_text(value).upper() not in _INVALID_CONTEXT_VALUES


def _round_one_decimal(value: float) -> Optional[float]:
    try:
        return float(Decimal(repr(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return None


def parse_fraction(text: Any) -> Optional[float]:
    """Parse ``"1/2"`` or a decimal into a float rounded to one decimal place.

    ``None`` is returned for anything that is not a usable number (blank,
    non-numeric, zero denominator, infinities) so callers can tell "no value"
    apart from a real ``0.0``.
    """
    if text is None or isinstance(text, bool):
        return None
    if _is_number(text):
        number = float(text)
        if not math.isfinite(number):
            return None
        return _round_one_decimal(number)

    raw = str(text).strip()
    if not raw:
        return None

    try:
        if "/" in raw:
            parts = raw.split("/")
            if len(parts) != 2:
                return None
            numerator = float(parts[0].strip())
            denominator = float(parts[1].strip())
            if denominator == 0:
                return None
            number = numerator / denominator
        else:
            number = float(raw)
    except (ValueError, ZeroDivisionError):
        return None

    if not math.isfinite(number):
        return None
    return _round_one_decimal(number)


def excel_serial_to_date(
    serial: Any,
    *,
    future_window: int = DEFAULT_FUTURE_YEAR_WINDOW,
    today: Optional[date] = None,
) -> Optional[datetime]:
    """Convert a 1900-epoch spreadsheet serial (time fraction included) to a datetime.

    Years outside ``[1900, today.year + future_window]`` yield ``None`` so that
    arbitrary numeric cells are not mistaken for dates.
    """
    if serial is None or isinstance(serial, bool):
        return None
    if isinstance(serial, datetime):
        return serial
    if isinstance(serial, date):
        return datetime(serial.year, serial.month, serial.day)
    if isinstance(serial, str) and not serial.strip():
        return None

    try:
        number = float(serial)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None

    whole_days = math.floor(number)
    utc_days = whole_days - EXCEL_UNIX_EPOCH_SERIAL
    total_seconds = round((number - whole_days) * SECONDS_PER_DAY)
    try:
        converted = datetime(1970, 1, 1) + timedelta(days=utc_days, seconds=total_seconds)
    except OverflowError:
        return None

    current_year = (today or date.today()).year
    if converted.year < 1900 or converted.year > current_year + future_window:
        return None
    return converted


def find_header_index(headers: Optional[Sequence[Any]], keywords: Iterable[str]) -> int:
    """Return the first header containing any keyword, trying keywords in order."""
    if not headers:
        return -1
    normalized = [cell_text(header).lower() for header in headers]
    for keyword in keywords:
        for idx, header in enumerate(normalized):
            if keyword in header:
                return idx
    return -1


def cell_at(row: Sequence[Any], index: int) -> Any:
    """Positional lookup that tolerates ``-1`` and short rows."""
    if index < 0 or index >= len(row):
        return ""
    value = row[index]
    if value is None or _is_nan(value):
        return ""
    return value


def parse_quantity(value: Any) -> int:
    """Parse a share quantity; anything unreadable counts as no shares moved."""
    if value is None or isinstance(value, bool) or _is_nan(value):
        return 0
    if _is_number(value):
        if not math.isfinite(float(value)):
            return 0
        return int(math.floor(value))

    cleaned = _QUANTITY_STRIP.sub("", str(value))
    match = _LEADING_INT.match(cleaned)
    if not match:
        return 0
    return int(match.group(0))


def parse_percentage(value: Any) -> float:
    if _is_number(value) and not _is_nan(value):
        return float(value)
    cleaned = cell_text(value).replace("%", "").strip()
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def parse_cell_date(
    value: Any,
    *,
    future_window: int = DEFAULT_FUTURE_YEAR_WINDOW,
    today: Optional[date] = None,
) -> Optional[date]:
    if value is None or isinstance(value, bool) or _is_nan(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if _is_number(value):
        converted = excel_serial_to_date(value, future_window=future_window, today=today)
        return converted.date() if converted else None

    raw = str(value).strip()
    if not raw:
        return None

    parts = raw.split("/")
    if len(parts) == 3:
        try:
            month, day, year = (int(part) for part in parts)
            if year < 100:
                year += 2000
            return date(year, month, day)
        except ValueError:
            return None

    try:
        return date_parser.parse(raw).date()
    except (ValueError, OverflowError):
        return None


def format_db_date(value: Optional[date]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%m/%d/%Y")


def coerce_date(value: Any) -> Optional[date]:
    """Read persisted or serialized dates (ISO, ``MM/DD/YYYY``, date objects)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    raw = str(value).strip()
    if not raw:
        return None
    for candidate, fmt in ((raw[:10], "%Y-%m-%d"), (raw, "%m/%d/%Y")):
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    try:
        return date_parser.parse(raw).date()
    except (ValueError, OverflowError):
        return None
