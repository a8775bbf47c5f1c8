"""
Mapping applier: turns raw rows into staged, typed candidate values.

This is the only place untyped spreadsheet cells are interpreted. A value that
cannot be coerced to its field's type is kept as its original text so the
validation engine reports it; nothing is guessed or defaulted here.
"""
from typing import Any, Dict, List, Optional, Sequence
import logging
import re

from customer_import.api.schemas.imports import ColumnMapping, MappingConfig, TransformHint
from customer_import.domain.imports.fields import (
    FIELDS,
    FIELD_TYPE_DATE,
    FIELD_TYPE_EMAIL,
    FIELD_TYPE_INTEGER,
    FIELD_TYPE_NUMBER,
    FIELD_TYPE_PHONE,
    FIELD_TYPE_POSTAL_CODE,
)
from customer_import.domain.imports.types import RawRow
from customer_import.utils.date import parse_date
from customer_import.utils.phone import strip_phone_separators

logger = logging.getLogger(__name__)

COMBINED_ADDRESS_RE = re.compile(r"^(?P<address>.+?),?\s+(?P<postal_code>\d{4})\s+(?P<city>[^\d,]+)$")
_GROUPING_CHARS_RE = re.compile(r"[\s '’]")


def parse_locale_number(value: Any, decimal_separator: str = ",") -> Optional[float]:
    """
    Parse a number written with either decimal convention.

    Spaces and apostrophes are treated as digit grouping. When both ``,`` and
    ``.`` appear, ``decimal_separator`` decides which one is the decimal mark;
    a single lone separator is always read as the decimal mark.

    Returns:
        float, or None when the text is not a number
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _GROUPING_CHARS_RE.sub("", str(value).strip())
    if not text:
        return None

    grouping = "." if decimal_separator == "," else ","
    if "," in text and "." in text:
        text = text.replace(grouping, "").replace(decimal_separator, ".")
    elif text.count(",") == 1 and "." not in text:
        text = text.replace(",", ".")
    elif text.count(",") > 1 and "." not in text:
        text = text.replace(",", "")
    elif text.count(".") > 1 and "," not in text:
        text = text.replace(".", "")

    if not re.fullmatch(r"[+-]?(\d+(\.\d*)?|\.\d+)", text):
        return None
    return float(text)


def _apply_transform(value: Any, hint: Optional[TransformHint]) -> Any:
    if hint is None or value is None:
        return value

    if hint.lookup:
        key = str(value).strip()
        if key in hint.lookup:
            value = hint.lookup[key]
        else:
            lowered = {str(k).lower(): v for k, v in hint.lookup.items()}
            value = lowered.get(key.lower(), value)

    if hint.pattern and value is not None:
        match = re.search(hint.pattern, str(value))
        if match:
            value = match.group(1) if match.groups() else match.group(0)

    if hint.split and isinstance(value, str):
        parts = [part for part in value.split(hint.delimiter or " ") if part.strip()]
        if parts:
            value = parts[0] if hint.split == "first" else parts[-1]

    if hint.case and isinstance(value, str):
        if hint.case == "upper":
            value = value.upper()
        elif hint.case == "lower":
            value = value.lower()
        else:
            value = value.title()
    return value


def _as_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def coerce_value(
    field_name: str,
    value: Any,
    *,
    date_format: Optional[str] = None,
    decimal_separator: str = ",",
) -> Any:
    """
    Coerce one raw cell to the type of ``field_name``.

    Unparsable values come back as trimmed text, never as a default.
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None

    field_type = FIELDS[field_name].field_type

    if field_type == FIELD_TYPE_DATE:
        parsed = parse_date(value, date_format=date_format, log_context=field_name)
        return parsed if parsed is not None else _as_text(value)

    if field_type == FIELD_TYPE_PHONE:
        return strip_phone_separators(value)

    if field_type == FIELD_TYPE_EMAIL:
        text = _as_text(value)
        if text.lower().startswith("mailto:"):
            text = text[len("mailto:"):]
        return text.lower()

    if field_type == FIELD_TYPE_POSTAL_CODE:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            number = int(value)
            return str(number).zfill(4) if float(value).is_integer() and 0 <= number <= 9999 else _as_text(value)
        text = re.sub(r"\s", "", str(value))
        if text.isdigit() and len(text) < 4:
            return text.zfill(4)
        return text

    if field_type == FIELD_TYPE_INTEGER:
        number = parse_locale_number(value, decimal_separator)
        if number is not None and number.is_integer():
            return int(number)
        return _as_text(value)

    if field_type == FIELD_TYPE_NUMBER:
        number = parse_locale_number(value, decimal_separator)
        return number if number is not None else _as_text(value)

    return _as_text(value)


def split_combined_address(address: str) -> Optional[Dict[str, str]]:
    """Split "Storgata 5, 0184 Oslo" into address, postal code and city."""
    match = COMBINED_ADDRESS_RE.match(address.strip())
    if not match:
        return None
    return {
        "address": match.group("address").strip().rstrip(","),
        "postal_code": match.group("postal_code"),
        "city": match.group("city").strip(),
    }


def _map_column(mapping: ColumnMapping, raw_values: Dict[str, Any], config: MappingConfig,
                default_decimal_separator: str) -> Any:
    value = raw_values.get(mapping.source_column)
    if isinstance(value, str) and config.options.trim_whitespace:
        value = value.strip() or None
    value = _apply_transform(value, mapping.transform)

    hint = mapping.transform
    date_format = (hint.date_format if hint else None) or config.options.date_format
    decimal_separator = (
        (hint.decimal_separator if hint else None)
        or config.options.decimal_separator
        or default_decimal_separator
    )
    return coerce_value(
        mapping.target_field,
        value,
        date_format=date_format,
        decimal_separator=decimal_separator,
    )


def map_row(row: RawRow, config: MappingConfig, *, default_decimal_separator: str = ",") -> Dict[str, Any]:
    """
    Produce staged values for one raw row.

    Every known field is present in the result; unmapped fields are None.
    """
    staged: Dict[str, Any] = {name: None for name in FIELDS}
    for mapping in config.mappings:
        staged[mapping.target_field] = _map_column(mapping, row.values, config, default_decimal_separator)

    mapped = {m.target_field for m in config.mappings}
    if (
        config.options.split_combined_address
        and "address" in mapped
        and "postal_code" not in mapped
        and "city" not in mapped
        and isinstance(staged["address"], str)
    ):
        parts = split_combined_address(staged["address"])
        if parts:
            staged.update(parts)
    return staged


def map_rows(rows: Sequence[RawRow], config: MappingConfig, *, default_decimal_separator: str = ",") -> List[Dict[str, Any]]:
    """Map a chunk of raw rows, preserving order."""
    return [map_row(row, config, default_decimal_separator=default_decimal_separator) for row in rows]


def missing_source_columns(config: MappingConfig, headers: Sequence[str]) -> List[str]:
    """Mapped source columns that do not exist in the batch's headers."""
    known = set(headers)
    return [m.source_column for m in config.mappings if m.source_column not in known]
