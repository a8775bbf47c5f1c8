"""
Phone number normalization for imported contact data.

Spreadsheet phone cells arrive in many shapes ("+47 912 34 567",
"(0047) 91234567", "912.34.567", 91234567 as a number). Values are reduced to
digits with an optional leading ``+`` and checked against a digit-count range.
"""

import re
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

PHONE_SHAPE_RE = re.compile(r"^\+?\d+$")
_ALLOWED_INPUT_RE = re.compile(r"^[\d\s\-\.\(\)\+/]+$")


def strip_phone_separators(value: Any) -> Optional[str]:
    """
    Remove spaces, dashes, dots, slashes and parentheses from a phone value.

    A leading international prefix ``00`` is rewritten as ``+``. Text containing
    characters other than digits and separators is returned trimmed but
    otherwise untouched so validation can report it.

    Returns:
        Normalized string, or None for empty input
    """
    if value is None or value == "":
        return None

    if isinstance(value, float) and value.is_integer():
        value = int(value)

    text = str(value).strip()
    if not text:
        return None

    if not _ALLOWED_INPUT_RE.match(text):
        return text

    has_plus = text.startswith("+")
    digits = re.sub(r"\D", "", text)
    if not digits:
        return text

    if not has_plus and digits.startswith("00") and len(digits) > 2:
        has_plus = True
        digits = digits[2:]

    return f"+{digits}" if has_plus else digits


def count_digits(value: Any) -> int:
    """Number of digits in ``value`` (0 for None)."""
    if value is None:
        return 0
    return len(re.sub(r"\D", "", str(value)))


def standardize_phone(
    value: Any,
    *,
    min_digits: int = 8,
    max_digits: int = 15,
) -> Optional[str]:
    """
    Normalize a phone value and enforce the digit-count range.

    Args:
        value: Phone number in any common format
        min_digits: Minimum number of digits to consider valid
        max_digits: Maximum number of digits to consider valid

    Returns:
        "+4791234567" / "91234567" style string, or None if empty or invalid
    """
    normalized = strip_phone_separators(value)
    if normalized is None or not PHONE_SHAPE_RE.match(normalized):
        return None

    digits = count_digits(normalized)
    if digits < min_digits or digits > max_digits:
        logger.debug(
            "Phone number '%s' has %d digits, expected between %d and %d",
            value, digits, min_digits, max_digits,
        )
        return None

    return normalized
