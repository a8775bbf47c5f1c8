"""
Column mapping suggester.

Proposes a source column for every target field by comparing normalized
header text against each field's canonical name and synonyms, then boosting
fields whose expected type matches the sampled values of the column. Output
is advisory only; nothing here touches the batch.
"""
import logging
import re
import unicodedata
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence, Tuple

from customer_import.domain.imports.fields import (
    FIELD_DEFINITIONS,
    FIELD_TYPE_DATE,
    FIELD_TYPE_EMAIL,
    FIELD_TYPE_INTEGER,
    FIELD_TYPE_NUMBER,
    FIELD_TYPE_PHONE,
    FIELD_TYPE_POSTAL_CODE,
    FieldDefinition,
)
from customer_import.domain.imports.types import ColumnProfile, FieldSuggestion, RawRow
from customer_import.domain.imports.validators import EMAIL_RE
from customer_import.utils.date import detect_date_column
from customer_import.utils.phone import standardize_phone

logger = logging.getLogger(__name__)

MATCH_EXACT = "exact"
MATCH_PREFIX = "prefix"
MATCH_FUZZY = "fuzzy"
MATCH_TYPE = "type"

_KIND_RANK = {MATCH_EXACT: 3, MATCH_PREFIX: 2, MATCH_FUZZY: 1, MATCH_TYPE: 0}

PREFIX_CONFIDENCE = 0.85
FUZZY_SCALE = 0.8
TYPE_BOOST = 0.15
TYPE_ONLY_CONFIDENCE = 0.5

# Signatures that identify exactly one field on their own.
_UNIQUE_SIGNATURE_FIELDS = {
    FIELD_TYPE_EMAIL: "email",
    FIELD_TYPE_PHONE: "phone",
    FIELD_TYPE_POSTAL_CODE: "postal_code",
}

_FOLD = str.maketrans({"ø": "o", "æ": "ae", "å": "a", "ß": "ss"})
_NUMBER_RE = re.compile(r"^-?\d+(?:[.,]\d+)?$")


def normalize_header(text: Any) -> str:
    """Case-fold, strip diacritics and punctuation; words separated by one space."""
    if text is None:
        return ""
    folded = str(text).casefold().translate(_FOLD)
    decomposed = unicodedata.normalize("NFKD", folded)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", " ", stripped).strip()


def _candidate_names(definition: FieldDefinition) -> List[str]:
    names = [definition.name.replace("_", " "), definition.label]
    names.extend(definition.synonyms)
    normalized = []
    for name in names:
        value = normalize_header(name)
        if value and value not in normalized:
            normalized.append(value)
    return normalized


_FIELD_CANDIDATES: Dict[str, List[str]] = {
    definition.name: _candidate_names(definition) for definition in FIELD_DEFINITIONS
}


def match_header(header: str, definition: FieldDefinition, min_ratio: float) -> Optional[Tuple[str, float]]:
    """
    Best (match_kind, confidence) of ``header`` against one field, or None.

    Exact matches score 1.0 and prefix matches 0.85. Fuzzy matches use the
    difflib ratio (which must reach ``min_ratio``) scaled below prefix matches.
    """
    normalized = normalize_header(header)
    if not normalized:
        return None
    compact = normalized.replace(" ", "")

    best: Optional[Tuple[str, float]] = None
    for candidate in _FIELD_CANDIDATES[definition.name]:
        candidate_compact = candidate.replace(" ", "")
        if normalized == candidate or compact == candidate_compact:
            return MATCH_EXACT, 1.0

        shorter = min(len(compact), len(candidate_compact))
        if shorter >= 3 and (compact.startswith(candidate_compact) or candidate_compact.startswith(compact)):
            if best is None or _KIND_RANK[best[0]] < _KIND_RANK[MATCH_PREFIX]:
                best = (MATCH_PREFIX, PREFIX_CONFIDENCE)
            continue

        ratio = SequenceMatcher(None, compact, candidate_compact).ratio()
        if ratio >= min_ratio:
            confidence = round(ratio * FUZZY_SCALE, 3)
            if best is None or (best[0] == MATCH_FUZZY and confidence > best[1]):
                best = (MATCH_FUZZY, confidence)
    return best


def detect_type_signature(values: Sequence[Any]) -> Optional[str]:
    """
    Classify sampled column values into a strong type signature.

    Every non-empty sampled value has to agree; mixed columns have no signature.
    """
    sample = [v for v in values if v is not None and str(v).strip() != ""]
    if not sample:
        return None
    texts = [str(v).strip() for v in sample]

    if all(EMAIL_RE.match(text) for text in texts):
        return FIELD_TYPE_EMAIL
    if detect_date_column(sample):
        return FIELD_TYPE_DATE

    def _postal(value: Any) -> bool:
        if isinstance(value, bool):
            return False
        if isinstance(value, int):
            return 0 < value <= 9999
        return bool(re.fullmatch(r"\d{4}", str(value).strip()))

    if all(_postal(v) for v in sample) and any(len(str(v).strip()) == 4 for v in sample):
        return FIELD_TYPE_POSTAL_CODE
    if all(standardize_phone(v) is not None for v in sample) and all(
        not isinstance(v, float) for v in sample
    ):
        return FIELD_TYPE_PHONE
    if all(isinstance(v, int) and not isinstance(v, bool) or re.fullmatch(r"-?\d+", text)
           for v, text in zip(sample, texts)):
        return FIELD_TYPE_INTEGER
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) or _NUMBER_RE.match(text)
           for v, text in zip(sample, texts)):
        return FIELD_TYPE_NUMBER
    return None


def _column_samples(headers: Sequence[str], rows: Sequence[RawRow], sample_size: int) -> Dict[str, List[Any]]:
    samples: Dict[str, List[Any]] = {header: [] for header in headers}
    for row in rows:
        for header in headers:
            value = row.values.get(header)
            if value is not None and len(samples[header]) < sample_size:
                samples[header].append(value)
        if all(len(values) >= sample_size for values in samples.values()):
            break
    return samples


def profile_columns(headers: Sequence[str], rows: Sequence[RawRow], sample_size: int = 20) -> List[ColumnProfile]:
    """Per-column sample values, detected type and number of empty cells."""
    samples = _column_samples(headers, rows, sample_size)
    profiles = []
    for header in headers:
        empty_count = sum(1 for row in rows if row.values.get(header) is None)
        profiles.append(
            ColumnProfile(
                name=header,
                sample_values=samples[header][:5],
                detected_type=detect_type_signature(samples[header]),
                empty_count=empty_count,
            )
        )
    return profiles


def _signature_matches(field_type: str, signature: Optional[str]) -> bool:
    if signature is None:
        return False
    if field_type == FIELD_TYPE_NUMBER:
        return signature in (FIELD_TYPE_NUMBER, FIELD_TYPE_INTEGER)
    return field_type == signature


def suggest_mapping(
    headers: Sequence[str],
    rows: Sequence[RawRow],
    *,
    sample_size: int = 20,
    min_confidence: float = 0.6,
) -> List[FieldSuggestion]:
    """
    Suggest a source column for every known target field.

    Candidates are assigned greedily, strongest match kind first, so one column
    never feeds two fields. Fields without a candidate get ``source_column=None``
    and confidence 0.
    """
    samples = _column_samples(headers, rows, sample_size)
    signatures = {header: detect_type_signature(values) for header, values in samples.items()}

    candidates: List[Tuple[int, float, str, str, str]] = []
    for definition in FIELD_DEFINITIONS:
        for header in headers:
            match = match_header(header, definition, min_confidence)
            if match is None:
                continue
            kind, confidence = match
            if _signature_matches(definition.field_type, signatures[header]):
                confidence = min(1.0, confidence + TYPE_BOOST)
            candidates.append((_KIND_RANK[kind], confidence, definition.name, header, kind))

    candidates.sort(key=lambda item: (item[0], item[1]), reverse=True)

    assigned: Dict[str, FieldSuggestion] = {}
    used_columns = set()
    for _, confidence, field_name, header, kind in candidates:
        if field_name in assigned or header in used_columns:
            continue
        assigned[field_name] = FieldSuggestion(field_name, header, round(confidence, 3), kind)
        used_columns.add(header)

    # Columns with no header match can still be recognized by their values alone.
    for header in headers:
        if header in used_columns:
            continue
        field_name = _UNIQUE_SIGNATURE_FIELDS.get(signatures[header])
        if field_name and field_name not in assigned:
            assigned[field_name] = FieldSuggestion(field_name, header, TYPE_ONLY_CONFIDENCE, MATCH_TYPE)
            used_columns.add(header)

    suggestions = [
        assigned.get(definition.name, FieldSuggestion(definition.name, None, 0.0, None))
        for definition in FIELD_DEFINITIONS
    ]
    logger.debug(
        "Suggested %d of %d fields from %d columns",
        sum(1 for s in suggestions if s.source_column), len(suggestions), len(headers),
    )
    return suggestions


def suggestions_to_mappings(
    suggestions: Sequence[FieldSuggestion], min_confidence: float = 0.0
) -> List[Dict[str, Any]]:
    """Turn accepted suggestions into mapping entries (``source_column``/``target_field``)."""
    return [
        {"source_column": s.source_column, "target_field": s.field}
        for s in suggestions
        if s.source_column is not None and s.confidence >= min_confidence
    ]
