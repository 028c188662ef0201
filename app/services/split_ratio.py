"""Unit separation ratios ("1 UNIT = 1 CLASS A SHARE AND 1/2 REDEEMABLE WARRANT")."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from app.services.normalizers import parse_fraction

logger = logging.getLogger(__name__)

DEFAULT_CLASS_A_RATIO = 1.0
DEFAULT_RIGHTS_RATIO = 0.5
MAX_RATIO_VALUE = 1000

_CLASS_A_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s+CLASS\s+A", re.IGNORECASE)
_WARRANT_FRACTION_PATTERN = re.compile(r"(\d+)/(\d+)\s+(REDEEMABLE\s+)?WARRANT", re.IGNORECASE)
_WARRANT_DECIMAL_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s+(REDEEMABLE\s+)?WARRANT", re.IGNORECASE)


@dataclass(frozen=True)
class SplitRatio:
    class_a_ratio: float
    rights_ratio: float


def parse_separation_ratio(text: Optional[str]) -> SplitRatio:
    """Read the class A and warrant parts of an issuer's separation ratio text."""
    if not text or not isinstance(text, str):
        return SplitRatio(DEFAULT_CLASS_A_RATIO, DEFAULT_RIGHTS_RATIO)

    class_a = DEFAULT_CLASS_A_RATIO
    rights = DEFAULT_RIGHTS_RATIO

    class_a_match = _CLASS_A_PATTERN.search(text)
    if class_a_match:
        parsed = float(class_a_match.group(1))
        if parsed > 0:
            class_a = parsed

    fraction_match = _WARRANT_FRACTION_PATTERN.search(text)
    decimal_match = _WARRANT_DECIMAL_PATTERN.search(text)
    if fraction_match:
        numerator = float(fraction_match.group(1))
        denominator = float(fraction_match.group(2))
        if denominator != 0:
            rights = numerator / denominator
    elif decimal_match:
        parsed = float(decimal_match.group(1))
        if parsed > 0:
            rights = parsed

    return SplitRatio(class_a, rights)


def validate_ratio_input(value: Any) -> Optional[str]:
    """Return a user facing error for a ratio entry, or ``None`` when it is usable."""
    raw = "" if value is None else str(value).strip()
    if not raw:
        return "This field is required"

    if "/" in raw:
        parts = [part.strip() for part in raw.split("/")]
        if len(parts) != 2:
            return "Invalid fraction format"
        try:
            numerator = float(parts[0])
            denominator = float(parts[1])
        except ValueError:
            return "Invalid fraction format"
        if denominator == 0:
            return "Denominator cannot be zero"
        if numerator <= 0 or denominator <= 0:
            return "Values must be positive"
        return None

    try:
        parsed = float(raw)
    except ValueError:
        return "Please enter a valid number"
    if parsed <= 0:
        return "Value must be greater than 0"
    if parsed > MAX_RATIO_VALUE:
        return "Value seems too large"
    return None


def format_ratio_text(class_a: Any, rights: Any) -> str:
    class_a_value = parse_fraction(class_a)
    rights_value = parse_fraction(rights)
    if class_a_value is None or rights_value is None:
        return "Invalid ratio values"

    if 0 < rights_value < 1:
        rights_text = f"1/{round(1 / rights_value)}"
    else:
        rights_text = f"{rights_value:g}"
    return f"1 UNIT = {class_a_value:g} CLASS A SHARE AND {rights_text} REDEEMABLE WARRANT"
