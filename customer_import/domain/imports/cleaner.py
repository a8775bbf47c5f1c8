"""
Automatic clean-up of extracted rows before they are staged.

Cell rules repair text that spreadsheets and exports commonly mangle:
invisible characters, stray whitespace, UTF-8 read as Latin-1 and placeholder
values such as "N/A". Row rules then flag empty rows, summary rows ("Sum",
"Totalt") and exact duplicates.

Flagged rows are kept, with their rule and reason, so the batch row count and
row numbers still describe the file. Commit skips them unless the operator
includes them.
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from customer_import.domain.imports.types import CellChange, CleaningReport, RawRow, RowFlag

logger = logging.getLogger(__name__)


CLEANING_RULES = (
    {"rule_id": "remove_empty_rows", "name": "Remove empty rows",
     "description": "Flags rows where every cell is empty after cleaning", "category": "rows"},
    {"rule_id": "remove_summary_rows", "name": "Remove summary rows",
     "description": 'Flags sparse rows containing "sum", "total" and similar', "category": "rows"},
    {"rule_id": "remove_duplicate_rows", "name": "Remove duplicates",
     "description": "Flags exact duplicate rows, keeping the first", "category": "rows"},
    {"rule_id": "remove_invisible_chars", "name": "Remove invisible characters",
     "description": "Removes zero-width characters and soft hyphens, turns no-break spaces into spaces",
     "category": "cells"},
    {"rule_id": "trim_whitespace", "name": "Trim whitespace",
     "description": "Removes leading and trailing whitespace", "category": "cells"},
    {"rule_id": "normalize_whitespace", "name": "Normalize whitespace",
     "description": "Collapses runs of whitespace into one space", "category": "cells"},
    {"rule_id": "fix_encoding", "name": "Fix encoding",
     "description": "Repairs Norwegian letters decoded with the wrong charset (Ã¦ to æ, Ã¸ to ø)",
     "category": "cells"},
    {"rule_id": "standardize_empty", "name": "Standardize empty values",
     "description": 'Turns placeholders such as "-", "N/A" and "ingen" into empty cells', "category": "cells"},
)

INVISIBLE_CHARS_RE = re.compile("[\u200b\u200c\u200d\ufeff\u00ad\u200e\u200f]")
NO_BREAK_SPACE = "\u00a0"
WHITESPACE_RUN_RE = re.compile(r"\s{2,}")

ENCODING_FIXES = (
    ("Ã¦", "æ"), ("Ã¸", "ø"), ("Ã¥", "å"),
    ("Ã†", "Æ"), ("Ã˜", "Ø"), ("Ã…", "Å"),
    ("Ã©", "é"), ("Ã¶", "ö"), ("Ã¤", "ä"),
    ("Ã¼", "ü"), ("Ã–", "Ö"), ("Ã„", "Ä"),
)

# Case-sensitive: "Tom" is a first name, "tom" means empty.
EMPTY_MARKER_RE = re.compile(r"^(-|N/A|n/a|NA|na|ingen|tom|null|undefined|#N/A|#REF!|#VERDI!|–|—|\.)$")

SUMMARY_RE = re.compile(r"\b(sum|total|totalt|subtotal|i alt|gjennomsnitt|snitt|antall)\b", re.IGNORECASE)

MAX_REPORTED_CHANGES = 500


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _fix_encoding(text: str) -> str:
    for broken, fixed in ENCODING_FIXES:
        text = text.replace(broken, fixed)
    return text


def clean_cell(value: Any) -> Tuple[Any, List[Tuple[str, Any, Any]]]:
    """
    Apply the cell rules to one value.

    Returns the cleaned value and the applied steps as
    ``(rule_id, before, after)`` tuples. Non-text values pass through.
    """
    if not isinstance(value, str):
        return value, []

    steps = []
    current = value

    visible = INVISIBLE_CHARS_RE.sub("", current).replace(NO_BREAK_SPACE, " ")
    if visible != current:
        steps.append(("remove_invisible_chars", current, visible))
        current = visible

    trimmed = current.strip()
    if trimmed != current:
        steps.append(("trim_whitespace", current, trimmed))
        current = trimmed

    collapsed = WHITESPACE_RUN_RE.sub(" ", current)
    if collapsed != current:
        steps.append(("normalize_whitespace", current, collapsed))
        current = collapsed

    repaired = _fix_encoding(current)
    if repaired != current:
        steps.append(("fix_encoding", current, repaired))
        current = repaired

    if EMPTY_MARKER_RE.match(current):
        steps.append(("standardize_empty", current, None))
        return None, steps

    return (current or None), steps


def _row_flag(
    headers: Sequence[str],
    values: Dict[str, Any],
    seen: Dict[Tuple[str, ...], int],
    row_number: int,
) -> Optional[Tuple[str, str]]:
    filled = [values.get(header) for header in headers if not _is_blank(values.get(header))]
    if not filled:
        return "remove_empty_rows", "Empty row"

    if len(filled) <= math.ceil(len(headers) / 2):
        for value in filled:
            if isinstance(value, str) and SUMMARY_RE.search(value):
                return "remove_summary_rows", f'Summary row ("{value[:40]}")'

    key = tuple("" if values.get(header) is None else str(values.get(header)) for header in headers)
    first = seen.get(key)
    if first is not None:
        return "remove_duplicate_rows", f"Duplicate of row {first}"
    seen[key] = row_number
    return None


def clean_rows(
    headers: Sequence[str],
    rows: Sequence[RawRow],
    max_changes: int = MAX_REPORTED_CHANGES,
) -> Tuple[List[RawRow], CleaningReport]:
    """
    Clean every row and flag the ones that should not be imported.

    The returned rows are one-to-one with ``rows``. ``max_changes`` caps the
    cell changes listed in the report; the totals always count all of them.
    """
    report = CleaningReport()
    affected = {rule["rule_id"]: 0 for rule in CLEANING_RULES}
    seen: Dict[Tuple[str, ...], int] = {}
    cleaned: List[RawRow] = []

    for row in rows:
        values = {}
        for column in headers:
            value, steps = clean_cell(row.values.get(column))
            values[column] = value
            for rule_id, before, after in steps:
                affected[rule_id] += 1
                report.total_cells_cleaned += 1
                if len(report.cell_changes) < max_changes:
                    report.cell_changes.append(CellChange(row.row_number, column, before, after, rule_id))
                else:
                    report.changes_truncated = True

        flag = _row_flag(headers, values, seen, row.row_number)
        if flag is not None:
            rule_id, reason = flag
            affected[rule_id] += 1
            report.row_flags.append(RowFlag(row.row_number, rule_id, reason))
            cleaned.append(RawRow(row.row_number, values, cleaning_flag=rule_id, cleaning_note=reason))
        else:
            cleaned.append(RawRow(row.row_number, values))

    report.total_rows_flagged = len(report.row_flags)
    report.rules = [dict(rule, affected_count=affected[rule["rule_id"]]) for rule in CLEANING_RULES]

    if report.total_cells_cleaned or report.total_rows_flagged:
        logger.info(
            "Cleaning changed %d cells and flagged %d of %d rows",
            report.total_cells_cleaned, report.total_rows_flagged, len(rows),
        )
    return cleaned, report
