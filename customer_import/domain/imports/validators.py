"""
Validation rules for staged customer rows.

``validate_customer_values`` is the rule set enforced on direct customer
creation; the import pipeline runs it against every staged row, then adds the
per-mapping rules from the mapping configuration and in-batch duplicate
detection. Findings are ``ValidationIssue`` objects classified as ``error``
(blocks commit) or ``warning`` (informational).
"""

import re
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from customer_import.domain.imports.fields import (
    FIELD_DEFINITIONS,
    FIELD_TYPE_DATE,
    FIELD_TYPE_EMAIL,
    FIELD_TYPE_INTEGER,
    FIELD_TYPE_PHONE,
    FIELD_TYPE_POSTAL_CODE,
    FIELDS,
    REQUIRED_FIELDS,
)
from customer_import.domain.customers.store import CustomerStore
from customer_import.domain.imports.matching import RecordMatcher
from customer_import.domain.imports.types import (
    SEVERITY_ERROR,
    SEVERITY_WARNING,
    ValidationIssue,
)
from customer_import.utils.date import is_iso_date
from customer_import.utils.phone import PHONE_SHAPE_RE, count_digits


# Issue codes
REQUIRED_FIELD_MISSING = "required_field_missing"
INVALID_FORMAT = "invalid_format"
INVALID_EMAIL = "invalid_email"
EMAIL_DOMAIN_TYPO = "email_domain_typo"
INVALID_PHONE = "invalid_phone"
INVALID_POSTAL_CODE = "invalid_postal_code"
INVALID_DATE = "invalid_date"
DATE_ORDER = "date_order"
DATE_SUSPICIOUS = "date_suspicious"
INVALID_NUMBER = "invalid_number"
VALUE_OUT_OF_RANGE = "value_out_of_range"
COORDINATES_INCOMPLETE = "coordinates_incomplete"
INVALID_ENUM = "invalid_enum"
DUPLICATE_IN_BATCH = "duplicate_in_batch"
DUPLICATE_ENTRY = "duplicate_entry"


# Preset regex patterns usable from ``pattern`` rules via ``params.preset``
PRESET_PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "phone": r"^\+?[\d\s\-\.\(\)]{7,20}$",
    "phone_international": r"^\+[1-9]\d{6,14}$",
    "postal_code": r"^\d{4}$",
    "org_number": r"^\d{9}$",
    "date_iso": r"^\d{4}-\d{2}-\d{2}$",
    "alphanumeric_id": r"^[A-Za-z0-9]+$",
    "sku": r"^[A-Za-z0-9\-_]+$",
}

PRESET_DESCRIPTIONS = {
    "email": "Standard email format (permissive)",
    "phone": "Loose phone number (7-20 digits with any separators)",
    "phone_international": "E.164 international format (+country code)",
    "postal_code": "Norwegian postal code (4 digits)",
    "org_number": "Norwegian organization number (9 digits)",
    "date_iso": "ISO 8601 date (YYYY-MM-DD)",
    "alphanumeric_id": "Alphanumeric identifier",
    "sku": "Identifier with hyphens/underscores",
}

EMAIL_RE = re.compile(PRESET_PATTERNS["email"])
POSTAL_CODE_RE = re.compile(PRESET_PATTERNS["postal_code"])

COMMON_EMAIL_DOMAINS = (
    "gmail.com", "hotmail.com", "outlook.com", "yahoo.com", "live.com",
    "icloud.com", "me.com", "msn.com", "aol.com", "protonmail.com",
    "online.no", "broadpark.no", "getmail.no", "frisurf.no",
)

EMAIL_DOMAIN_TYPOS = {
    "gmai.com": "gmail.com",
    "gmial.com": "gmail.com",
    "gamil.com": "gmail.com",
    "gnail.com": "gmail.com",
    "gmail.no": "gmail.com",
    "hotmal.com": "hotmail.com",
    "hotmial.com": "hotmail.com",
    "hotmai.com": "hotmail.com",
    "outlok.com": "outlook.com",
    "outllok.com": "outlook.com",
    "outlool.com": "outlook.com",
    "yahooo.com": "yahoo.com",
    "yaho.com": "yahoo.com",
}

EARLIEST_PLAUSIBLE_YEAR = 2000
MAX_YEARS_AHEAD = 10

COMPLETENESS_WEIGHTS = {
    "name": 1.0,
    "address": 1.0,
    "postal_code": 0.8,
    "city": 0.6,
    "phone": 0.7,
    "email": 0.7,
    "contact_person": 0.5,
    "last_service_date": 0.9,
    "next_service_date": 0.9,
}


def get_preset_pattern(preset_name: str) -> Optional[str]:
    return PRESET_PATTERNS.get(preset_name)


def validate_with_preset(value: Any, preset_name: str, allow_null: bool = True) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Returns:
        (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        if allow_null:
            return True, None
        return False, "Value is required"

    pattern = get_preset_pattern(preset_name)
    if pattern is None:
        return False, f"Unknown preset '{preset_name}'"

    if re.match(pattern, str(value).strip()):
        return True, None
    return False, f"Value does not match {PRESET_DESCRIPTIONS.get(preset_name, preset_name)}"


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _edit_distance_one(a: str, b: str) -> bool:
    """True when ``a`` and ``b`` differ by exactly one substitution, insertion or deletion."""
    if abs(len(a) - len(b)) > 1 or a == b:
        return False
    if len(a) == len(b):
        return sum(1 for x, y in zip(a, b) if x != y) == 1
    shorter, longer = (a, b) if len(a) < len(b) else (b, a)
    for i in range(len(longer)):
        if longer[:i] + longer[i + 1:] == shorter:
            return True
    return False


def suggest_email_domain_fix(email: str) -> Optional[str]:
    """Corrected address when the domain looks like a typo of a common provider."""
    local, sep, domain = email.partition("@")
    if not sep:
        return None
    domain = domain.lower()
    if domain in EMAIL_DOMAIN_TYPOS:
        return f"{local}@{EMAIL_DOMAIN_TYPOS[domain]}"
    if domain in COMMON_EMAIL_DOMAINS:
        return None
    for known in COMMON_EMAIL_DOMAINS:
        if _edit_distance_one(domain, known):
            return f"{local}@{known}"
    return None


def _issue(field: str, severity: str, code: str, message: str, value: Any = None,
           suggestion: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(
        field=field,
        severity=severity,
        code=code,
        message=message,
        value=None if value is None else str(value),
        suggestion=suggestion,
    )


def _check_required(values: Mapping[str, Any], issues: List[ValidationIssue]) -> None:
    for name in REQUIRED_FIELDS:
        definition = FIELDS[name]
        text = _as_text(values.get(definition.name))
        if len(text) < (definition.min_length or 1):
            issues.append(_issue(
                definition.name, SEVERITY_ERROR, REQUIRED_FIELD_MISSING,
                f"{definition.label} is required and must be at least {definition.min_length or 1} characters",
                text or None,
            ))


def _check_lengths(values: Mapping[str, Any], issues: List[ValidationIssue]) -> None:
    for definition in FIELD_DEFINITIONS:
        value = values.get(definition.name)
        if definition.max_length and isinstance(value, str) and len(value) > definition.max_length:
            issues.append(_issue(
                definition.name, SEVERITY_ERROR, INVALID_FORMAT,
                f"{definition.label} cannot be longer than {definition.max_length} characters",
                value[:50],
            ))


def _check_email(value: Any, issues: List[ValidationIssue]) -> None:
    email = _as_text(value)
    if not EMAIL_RE.match(email):
        issues.append(_issue("email", SEVERITY_ERROR, INVALID_EMAIL, "Invalid e-mail address", email))
        return
    fix = suggest_email_domain_fix(email)
    if fix:
        issues.append(_issue(
            "email", SEVERITY_WARNING, EMAIL_DOMAIN_TYPO,
            "Possible typo in the e-mail domain", email, suggestion=fix,
        ))


def _check_phone(value: Any, issues: List[ValidationIssue], min_digits: int, max_digits: int) -> None:
    phone = _as_text(value)
    digits = count_digits(phone)
    if not PHONE_SHAPE_RE.match(phone) or digits < min_digits or digits > max_digits:
        issues.append(_issue(
            "phone", SEVERITY_ERROR, INVALID_PHONE,
            f"Phone number must contain {min_digits}-{max_digits} digits", phone,
        ))


def _check_dates(values: Mapping[str, Any], issues: List[ValidationIssue], today: date) -> None:
    parsed: Dict[str, date] = {}
    for definition in FIELD_DEFINITIONS:
        if definition.field_type != FIELD_TYPE_DATE or _is_empty(values.get(definition.name)):
            continue
        value = values[definition.name]
        if not is_iso_date(value):
            issues.append(_issue(
                definition.name, SEVERITY_ERROR, INVALID_DATE,
                f"{definition.label} is not a valid date (expected YYYY-MM-DD)", value,
            ))
            continue
        parsed[definition.name] = date.fromisoformat(value)

    for field, value in parsed.items():
        if value.year < EARLIEST_PLAUSIBLE_YEAR:
            issues.append(_issue(
                field, SEVERITY_WARNING, DATE_SUSPICIOUS,
                f"Date before {EARLIEST_PLAUSIBLE_YEAR}; verify that it is correct", value.isoformat(),
            ))

    next_date = parsed.get("next_service_date")
    if next_date is not None:
        try:
            horizon = today.replace(year=today.year + MAX_YEARS_AHEAD)
        except ValueError:
            horizon = today.replace(year=today.year + MAX_YEARS_AHEAD, day=28)
        if next_date > horizon:
            issues.append(_issue(
                "next_service_date", SEVERITY_WARNING, DATE_SUSPICIOUS,
                f"Date more than {MAX_YEARS_AHEAD} years ahead; verify that it is correct",
                next_date.isoformat(),
            ))
        last_date = parsed.get("last_service_date")
        if last_date is not None and next_date <= last_date:
            issues.append(_issue(
                "next_service_date", SEVERITY_ERROR, DATE_ORDER,
                "Next service date must be after the last service date", next_date.isoformat(),
            ))


def _check_coordinates(values: Mapping[str, Any], issues: List[ValidationIssue]) -> None:
    present = []
    for field, limit in (("latitude", 90), ("longitude", 180)):
        value = values.get(field)
        if _is_empty(value):
            continue
        present.append(field)
        if not _is_number(value):
            issues.append(_issue(field, SEVERITY_ERROR, INVALID_NUMBER, f"{FIELDS[field].label} must be a number", value))
        elif not -limit <= value <= limit:
            issues.append(_issue(
                field, SEVERITY_ERROR, VALUE_OUT_OF_RANGE,
                f"{FIELDS[field].label} must be between -{limit} and {limit}", value,
            ))
    if len(present) == 1:
        missing = "longitude" if present[0] == "latitude" else "latitude"
        issues.append(_issue(
            missing, SEVERITY_WARNING, COORDINATES_INCOMPLETE,
            "Only one coordinate is set; the location will be ignored",
        ))


def validate_customer_values(
    values: Mapping[str, Any],
    *,
    today: Optional[date] = None,
    phone_min_digits: int = 8,
    phone_max_digits: int = 15,
) -> List[ValidationIssue]:
    """
    Business rules for a customer record.

    Checks required fields and minimum lengths, e-mail and phone shape, postal
    code shape, ISO date format and calendar validity, date plausibility and
    ordering, numeric types and coordinate ranges.
    """
    today = today or date.today()
    issues: List[ValidationIssue] = []

    _check_required(values, issues)
    _check_lengths(values, issues)

    for definition in FIELD_DEFINITIONS:
        value = values.get(definition.name)
        if _is_empty(value):
            continue
        if definition.field_type == FIELD_TYPE_EMAIL:
            _check_email(value, issues)
        elif definition.field_type == FIELD_TYPE_PHONE:
            _check_phone(value, issues, phone_min_digits, phone_max_digits)
        elif definition.field_type == FIELD_TYPE_POSTAL_CODE:
            if not POSTAL_CODE_RE.match(_as_text(value)):
                issues.append(_issue(
                    definition.name, SEVERITY_ERROR, INVALID_POSTAL_CODE,
                    "Postal code must be 4 digits", value,
                ))
        elif definition.field_type == FIELD_TYPE_INTEGER and not _is_integer(value):
            issues.append(_issue(
                definition.name, SEVERITY_ERROR, INVALID_NUMBER,
                f"{definition.label} must be a whole number", value,
            ))

    _check_dates(values, issues, today)
    _check_coordinates(values, issues)
    return issues


def _parse_numeric(value: Any) -> Optional[float]:
    if _is_number(value):
        return float(value)
    try:
        return float(_as_text(value).replace(",", "."))
    except ValueError:
        return None


def apply_rule(field: str, value: Any, rule: Mapping[str, Any],
               source_column: Optional[str] = None) -> Optional[ValidationIssue]:
    """
    Evaluate one mapping-level rule (``{"type", "params", "severity", "message"}``).

    Only ``required`` fires on empty values; every other rule skips them.
    """
    rule_type = rule.get("type")
    params = rule.get("params") or {}
    severity = rule.get("severity") or SEVERITY_ERROR
    custom = rule.get("message")
    text = _as_text(value)
    label = FIELDS[field].label if field in FIELDS else field

    def issue(code: str, message: str) -> ValidationIssue:
        return ValidationIssue(
            field=field, severity=severity, code=code, message=custom or message,
            value=text or None, source_column=source_column,
        )

    if rule_type == "required":
        return issue(REQUIRED_FIELD_MISSING, f"{label} is required") if _is_empty(value) else None
    if _is_empty(value):
        return None

    if rule_type == "min_length" and len(text) < int(params.get("min", 0)):
        return issue(INVALID_FORMAT, f"{label} must be at least {params.get('min')} characters")
    if rule_type == "max_length" and "max" in params and len(text) > int(params["max"]):
        return issue(INVALID_FORMAT, f"{label} cannot be longer than {params['max']} characters")
    if rule_type == "pattern":
        pattern = params.get("pattern") or get_preset_pattern(params.get("preset", ""))
        if pattern and not re.search(pattern, text):
            return issue(INVALID_FORMAT, f"{label} has an invalid format")
    if rule_type == "email" and not EMAIL_RE.match(text):
        return issue(INVALID_EMAIL, "Invalid e-mail address")
    if rule_type == "postal_code" and not POSTAL_CODE_RE.match(text):
        return issue(INVALID_POSTAL_CODE, "Postal code must be 4 digits")
    if rule_type == "date" and not is_iso_date(text):
        return issue(INVALID_DATE, f"{label} is not a valid date (expected YYYY-MM-DD)")
    if rule_type in ("number", "integer"):
        number = _parse_numeric(value)
        if number is None:
            return issue(INVALID_NUMBER, f"{label} must be a number")
        if rule_type == "integer" and not number.is_integer():
            return issue(INVALID_NUMBER, f"{label} must be a whole number")
    if rule_type == "range":
        number = _parse_numeric(value)
        low, high = params.get("min"), params.get("max")
        if number is not None and ((low is not None and number < low) or (high is not None and number > high)):
            return issue(VALUE_OUT_OF_RANGE, f"{label} must be between {low} and {high}")
    if rule_type == "enum":
        allowed = [str(option).lower() for option in params.get("values", [])]
        if allowed and text.lower() not in allowed:
            return issue(INVALID_ENUM, f"{label} must be one of: {', '.join(map(str, params.get('values', [])))}")
    return None


def collapse_issues(issues: Iterable[ValidationIssue]) -> List[ValidationIssue]:
    """Keep one issue per (field, code), preferring the error-severity one."""
    collapsed: Dict[Tuple[str, str], ValidationIssue] = {}
    for issue in issues:
        key = (issue.field, issue.code)
        existing = collapsed.get(key)
        if existing is None or (not existing.is_error and issue.is_error):
            collapsed[key] = issue
    return list(collapsed.values())


def validate_staged_values(
    values: Mapping[str, Any],
    field_rules: Mapping[str, Sequence[Mapping[str, Any]]],
    source_columns: Mapping[str, str],
    *,
    today: Optional[date] = None,
    phone_min_digits: int = 8,
    phone_max_digits: int = 15,
) -> List[ValidationIssue]:
    """Default rules plus per-mapping rules for one staged row, with source columns attached."""
    issues = validate_customer_values(
        values, today=today, phone_min_digits=phone_min_digits, phone_max_digits=phone_max_digits,
    )
    for field, rules in field_rules.items():
        for rule in rules:
            issue = apply_rule(field, values.get(field), rule, source_columns.get(field))
            if issue is not None:
                issues.append(issue)

    attached = []
    for issue in collapse_issues(issues):
        if issue.source_column is None and issue.field in source_columns:
            issue = ValidationIssue(
                field=issue.field, severity=issue.severity, code=issue.code, message=issue.message,
                value=issue.value, suggestion=issue.suggestion, source_column=source_columns[issue.field],
            )
        attached.append(issue)
    return attached


def _duplicate_key(values: Mapping[str, Any]) -> Optional[str]:
    name = " ".join(_as_text(values.get("name")).lower().split())
    address = " ".join(_as_text(values.get("address")).lower().split())
    if not name or not address:
        return None
    return f"{name}|{address}"


def find_batch_duplicates(rows: Sequence[Tuple[int, int, Mapping[str, Any]]]) -> Dict[int, ValidationIssue]:
    """
    Flag rows repeating the name and address of an earlier row in the same batch.

    Args:
        rows: (row_id, row_number, values) in row order

    Returns:
        row_id -> warning issue, for every repeat after the first occurrence
    """
    first_seen: Dict[str, int] = {}
    duplicates: Dict[int, ValidationIssue] = {}
    for row_id, row_number, values in rows:
        key = _duplicate_key(values)
        if key is None:
            continue
        if key in first_seen:
            duplicates[row_id] = _issue(
                "name", SEVERITY_WARNING, DUPLICATE_IN_BATCH,
                f"Same name and address as row {first_seen[key]}", values.get("name"),
            )
        else:
            first_seen[key] = row_number
    return duplicates


def find_existing_duplicates(
    store: CustomerStore,
    matcher: RecordMatcher,
    organization_id: int,
    rows: Sequence[Tuple[int, Mapping[str, Any]]],
) -> Dict[int, ValidationIssue]:
    """
    Flag rows whose name and address already belong to a stored customer.

    A row is not flagged when the matcher resolves it to that same customer,
    since committing it updates the record instead of adding a second one.

    Args:
        rows: (row_id, values) pairs
    """
    duplicates: Dict[int, ValidationIssue] = {}
    for row_id, values in rows:
        name, address = values.get("name"), values.get("address")
        if _is_empty(name) or _is_empty(address):
            continue
        existing = store.find_by_name_and_address(organization_id, str(name), str(address))
        if existing is None:
            continue
        matched = matcher.match(store, organization_id, values)
        if matched is not None and matched["id"] == existing["id"]:
            continue
        duplicates[row_id] = _issue(
            "name", SEVERITY_WARNING, DUPLICATE_ENTRY,
            f"Customer {existing['id']} ({existing.get('name')}) already has this name and address",
            name,
            suggestion=str(existing["id"]),
        )
    return duplicates


def classify_issues(issues: Sequence[ValidationIssue]) -> str:
    """Row status for a list of issues: ``invalid``, ``warning`` or ``valid``."""
    if any(issue.is_error for issue in issues):
        return "invalid"
    if issues:
        return "warning"
    return "valid"


def completeness_score(values: Mapping[str, Any]) -> float:
    total = sum(COMPLETENESS_WEIGHTS.values())
    filled = sum(weight for field, weight in COMPLETENESS_WEIGHTS.items() if not _is_empty(values.get(field)))
    return filled / total if total else 0.0


def build_quality_report(
    staged: Sequence[Mapping[str, Any]],
    issues_per_row: Sequence[Sequence[ValidationIssue]],
    mapped_fields: Iterable[str],
) -> Dict[str, Any]:
    """
    Batch-level data quality summary: coverage of each mapped field, average
    completeness and the most frequent issue codes.
    """
    total = len(staged)
    coverage = {}
    for field in mapped_fields:
        filled = sum(1 for values in staged if not _is_empty(values.get(field)))
        coverage[field] = round(filled / total, 3) if total else 0.0

    code_counts: Dict[str, int] = {}
    for issues in issues_per_row:
        for issue in issues:
            code_counts[issue.code] = code_counts.get(issue.code, 0) + 1
    top_issues = sorted(code_counts.items(), key=lambda item: (-item[1], item[0]))[:10]

    average = sum(completeness_score(values) for values in staged) / total if total else 0.0
    return {
        "total_rows": total,
        "field_coverage": coverage,
        "average_completeness": round(average, 3),
        "top_issues": [{"code": code, "count": count} for code, count in top_issues],
    }
