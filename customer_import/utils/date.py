"""
Date parsing utilities for spreadsheet date cells.

Only explicitly accepted formats are parsed; anything else returns ``None`` so
the caller can flag the value instead of guessing. Parsed dates are returned as
ISO 8601 calendar dates (``YYYY-MM-DD``).
"""

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Optional

import pandas as pd

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

EXCEL_EPOCH = date(1899, 12, 30)
EXCEL_SERIAL_MIN = 1
EXCEL_SERIAL_MAX = 2958465  # 9999-12-31

ACCEPTED_FORMATS = (
    "YYYY-MM-DD",
    "DD.MM.YYYY",
    "DD/MM/YYYY",
    "DD-MM-YYYY",
    "DD.MM.YY",
    "Q1 2024",
    "mars 2024",
)

MONTH_NAMES = {
    "jan": 1, "januar": 1, "january": 1,
    "feb": 2, "februar": 2, "february": 2,
    "mar": 3, "mars": 3, "march": 3,
    "apr": 4, "april": 4,
    "mai": 5, "may": 5,
    "jun": 6, "juni": 6, "june": 6,
    "jul": 7, "juli": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "okt": 10, "oct": 10, "oktober": 10, "october": 10,
    "nov": 11, "november": 11,
    "des": 12, "dec": 12, "desember": 12, "december": 12,
}

_ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$")
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})([./-])(\d{1,2})\2(\d{4}|\d{2})$")
_QUARTER_RE = re.compile(r"^q([1-4])[\s/-]*(\d{4})$", re.IGNORECASE)
_MONTH_TEXT_RE = re.compile(r"^([a-zæøå]+)\.?\s+(\d{4})$", re.IGNORECASE)
_ISO_STRICT_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str]) -> None:
    """
    Collect failure stats and emit limited logs (sampled debug lines + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.debug("Unparsable date%s value '%s'", f" ({key})" if context else "", value)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse messages after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def excel_serial_to_date(serial: float) -> Optional[date]:
    """Convert an Excel serial day number (1900 date system) to a date."""
    if serial < EXCEL_SERIAL_MIN or serial > EXCEL_SERIAL_MAX:
        return None
    return EXCEL_EPOCH + timedelta(days=int(serial))


def _parse_text(text: str) -> Optional[date]:
    match = _ISO_RE.match(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = _DAY_FIRST_RE.match(text)
    if match:
        first, second, year_text = int(match.group(1)), int(match.group(3)), match.group(4)
        year = int(year_text)
        if len(year_text) == 2:
            year += 2000 if year < 50 else 1900
        # Day-first is the house format; month-first only when it cannot be a day-first date.
        parsed = _safe_date(year, second, first)
        if parsed is None and match.group(2) == "/" and second > 12 and first <= 12:
            parsed = _safe_date(year, first, second)
        return parsed

    match = _QUARTER_RE.match(text)
    if match:
        quarter = int(match.group(1))
        return date(int(match.group(2)), (quarter - 1) * 3 + 1, 1)

    match = _MONTH_TEXT_RE.match(text)
    if match:
        month = MONTH_NAMES.get(match.group(1).lower())
        if month:
            return date(int(match.group(2)), month, 1)

    if text.isdigit() and len(text) == 5:
        return excel_serial_to_date(int(text))

    return None


def parse_date(
    value: Any,
    *,
    date_format: Optional[str] = None,
    log_context: Optional[str] = None,
) -> Optional[str]:
    """
    Parse a spreadsheet date cell into an ISO date string.

    Supports:
    - ISO 8601: "2024-03-15", "2024-03-15T08:00:00Z"
    - Day first: "15.03.2024", "15/03/2024", "15-03-2024", "15.03.24"
    - Month first only when unambiguous: "03/25/2024"
    - Quarters: "Q2 2023" (first day of the quarter)
    - Month text: "mars 2024", "March 2024" (first day of the month)
    - Excel serial day numbers: 45366
    - ``date``/``datetime``/``pandas.Timestamp`` objects

    Args:
        value: Cell value
        date_format: Explicit strptime format that overrides the accepted list
        log_context: Label used when sampling failures into the log

    Returns:
        "YYYY-MM-DD" or None when the value is empty or not an accepted format
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None

    if isinstance(value, pd.Timestamp):
        return value.date().isoformat()
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, (int, float)):
        parsed = excel_serial_to_date(value)
    else:
        text = str(value).strip()
        if text == "":
            return None
        if date_format:
            try:
                parsed = pd.to_datetime(text, format=date_format, errors="raise").date()
            except (ValueError, TypeError):
                parsed = None
        else:
            parsed = _parse_text(text)

    if parsed is None:
        _record_parse_failure(value, log_context)
        return None
    return parsed.isoformat()


def is_iso_date(value: Any) -> bool:
    """True when ``value`` is a ``YYYY-MM-DD`` string naming a real calendar day."""
    if not isinstance(value, str) or not _ISO_STRICT_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def detect_date_column(values: list) -> bool:
    """
    Detect if a column contains date values.

    Every non-empty sampled value must parse as a date written as text or as a
    date object; bare numbers are never treated as a date signature.
    """
    non_null_values = [v for v in values if v is not None and str(v).strip() != ""]
    if not non_null_values:
        return False
    for value in non_null_values[:20]:
        if isinstance(value, (int, float)) or str(value).strip().isdigit():
            return False
        if parse_date(value, log_context="detect") is None:
            return False
    return True
