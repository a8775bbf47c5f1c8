"""Delimited-text export of every row-level issue in a batch."""
import csv
from io import StringIO
from typing import Iterable

from customer_import.db.models import ImportIssue

REPORT_COLUMNS = ["row_number", "field", "severity", "code", "message", "value", "suggestion"]


def build_error_report(issues: Iterable[ImportIssue], delimiter: str = ";") -> str:
    """
    Render issues as CSV with a header row, one line per issue.

    Issues are expected in row order (see ``ImportRepository.issues_for_batch``).
    """
    output = StringIO()
    writer = csv.writer(output, delimiter=delimiter, lineterminator="\n")
    writer.writerow(REPORT_COLUMNS)
    for issue in issues:
        writer.writerow([
            issue.row_number,
            issue.field_name,
            issue.severity,
            issue.code,
            issue.message,
            issue.value if issue.value is not None else "",
            issue.suggestion if issue.suggestion is not None else "",
        ])
    return output.getvalue()
