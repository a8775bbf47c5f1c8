"""
Commit engine: writes accepted staged rows into the customer store.

For each staged row the engine decides create, update or skip, then (unless
this is a dry run) performs the write and commits its undo log entry before
the next row. Row failures are reported as outcomes and never stop the
remaining rows.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from customer_import.db.models import ImportIssue, ImportRow, RowStatus
from customer_import.domain.customers.store import CUSTOMER_FIELDS, CustomerStore
from customer_import.domain.imports.errors import EXCLUDED, VALIDATION_BLOCKED, WRITE_FAILED
from customer_import.domain.imports.mapper import coerce_value
from customer_import.domain.imports.matching import RecordMatcher
from customer_import.domain.imports.repository import ImportRepository
from customer_import.domain.imports.rollback import compute_row_hash
from customer_import.domain.imports.types import (
    ACTION_CREATED,
    ACTION_FAILED,
    ACTION_SKIPPED,
    ACTION_UPDATED,
    SEVERITY_ERROR,
    CommitOutcome,
    CommitResult,
)
from customer_import.domain.imports.fields import FIELDS
from customer_import.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def coerce_edits(edits: Mapping[str, Any], decimal_separator: str = ",") -> Dict[str, Any]:
    """Normalize operator corrections the same way mapped cells are normalized."""
    return {
        field: coerce_value(field, value, decimal_separator=decimal_separator)
        for field, value in edits.items()
        if field in FIELDS
    }


def writable_values(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Non-empty customer fields; empty values never overwrite stored data."""
    return {
        field: value
        for field, value in values.items()
        if field in CUSTOMER_FIELDS and not _is_empty(value)
    }


def blocking_fields(issues: Iterable[ImportIssue]) -> Set[str]:
    return {issue.field_name for issue in issues if issue.severity == SEVERITY_ERROR}


def plan_row(
    row: ImportRow,
    issues: Iterable[ImportIssue],
    excluded_row_ids: Set[int],
    edits: Mapping[str, Any],
    included_row_ids: Set[int] = frozenset(),
) -> Tuple[Optional[CommitOutcome], Dict[str, Any]]:
    """
    Decide whether a row may be written.

    Returns (skip_outcome, candidate_values); ``skip_outcome`` is None when the
    row should be written. An invalid row is only written when the operator's
    edits cover every field that carries an error. Rows flagged by the cleaner
    are skipped unless the operator includes them explicitly.
    """
    if row.id in excluded_row_ids:
        return CommitOutcome(row.id, row.row_number, ACTION_SKIPPED, code=EXCLUDED,
                             message="Excluded by operator"), {}
    if row.cleaning_flag and row.id not in included_row_ids:
        return CommitOutcome(row.id, row.row_number, ACTION_SKIPPED, code=EXCLUDED,
                             message=f"Excluded by cleaning: {row.cleaning_note or row.cleaning_flag}"), {}

    values = dict(row.mapped_data or {})
    values.update({field: value for field, value in edits.items() if not _is_empty(value)})

    if row.validation_status == RowStatus.INVALID.value:
        unresolved = blocking_fields(issues) - {f for f, v in edits.items() if not _is_empty(v)}
        if unresolved:
            return CommitOutcome(
                row.id, row.row_number, ACTION_SKIPPED, code=VALIDATION_BLOCKED,
                message=f"Unresolved errors in: {', '.join(sorted(unresolved))}",
            ), values
    return None, values


def _record_undo(repo: ImportRepository, undo: Callable[[], Any], **entry: Any) -> None:
    """
    Make the undo entry for a store write durable before moving on.

    The store commits on its own, so if the entry cannot be saved the write is
    reversed and the row fails instead of leaving a record rollback cannot see.
    """
    try:
        repo.add_rollback_entry(**entry)
        repo.db.commit()
    except Exception:
        repo.db.rollback()
        try:
            undo()
        except Exception:
            logger.error(
                "Could not reverse %s of customer %s after its undo entry was lost; "
                "the record needs manual cleanup",
                entry["action"], entry["record_id"], exc_info=True,
            )
        raise


def _write_row(
    repo: ImportRepository,
    store: CustomerStore,
    matcher: RecordMatcher,
    organization_id: int,
    batch_id: str,
    row: ImportRow,
    values: Dict[str, Any],
) -> CommitOutcome:
    writable = writable_values(values)
    existing = matcher.match(store, organization_id, values)

    if existing is not None:
        record_id = existing["id"]
        previous = {field: existing.get(field) for field in writable}
        store.update(organization_id, record_id, writable)
        _record_undo(
            repo,
            lambda: store.update(organization_id, record_id, previous),
            batch_id=batch_id,
            organization_id=organization_id,
            row_id=row.id,
            action=ACTION_UPDATED,
            record_id=record_id,
            previous_values=make_json_safe(previous),
            new_values_hash=compute_row_hash(writable),
        )
        return CommitOutcome(row.id, row.row_number, ACTION_UPDATED, record_id=record_id)

    record_id = store.create(organization_id, writable)
    _record_undo(
        repo,
        lambda: store.delete(organization_id, record_id),
        batch_id=batch_id,
        organization_id=organization_id,
        row_id=row.id,
        action=ACTION_CREATED,
        record_id=record_id,
    )
    return CommitOutcome(row.id, row.row_number, ACTION_CREATED, record_id=record_id)


def run_commit(
    repo: ImportRepository,
    store: CustomerStore,
    matcher: RecordMatcher,
    organization_id: int,
    batch_id: str,
    *,
    excluded_row_ids: Iterable[int] = (),
    included_row_ids: Iterable[int] = (),
    row_edits: Optional[Mapping[int, Mapping[str, Any]]] = None,
    dry_run: bool = False,
    decimal_separator: str = ",",
) -> CommitResult:
    """
    Process every staged row of a batch in row order.

    In dry-run mode the matcher is consulted (read-only) to decide between
    create and update, but nothing is written: no store calls, no undo log,
    no row bookkeeping.
    """
    db = repo.db
    excluded = set(excluded_row_ids)
    included = set(included_row_ids)
    edits_by_row = {int(row_id): coerce_edits(edits, decimal_separator) for row_id, edits in (row_edits or {}).items()}
    result = CommitResult(batch_id=batch_id, dry_run=dry_run)

    rows: List[ImportRow] = repo.rows_for_batch(batch_id)
    issues_by_row = repo.issues_for_rows(row.id for row in rows)

    for row in rows:
        skip, values = plan_row(row, issues_by_row.get(row.id, []), excluded, edits_by_row.get(row.id, {}), included)
        if skip is not None:
            outcome = skip
        elif dry_run:
            try:
                existing = matcher.match(store, organization_id, values)
                outcome = CommitOutcome(
                    row.id, row.row_number,
                    ACTION_UPDATED if existing else ACTION_CREATED,
                    record_id=existing["id"] if existing else None,
                )
            except Exception as exc:
                outcome = CommitOutcome(row.id, row.row_number, ACTION_FAILED, code=WRITE_FAILED, message=str(exc))
        else:
            try:
                outcome = _write_row(repo, store, matcher, organization_id, batch_id, row, values)
            except Exception as exc:
                db.rollback()
                logger.warning("Row %s of batch %s failed to commit: %s", row.row_number, batch_id, exc)
                outcome = CommitOutcome(row.id, row.row_number, ACTION_FAILED, code=WRITE_FAILED, message=str(exc))

        if not dry_run:
            row.action_taken = outcome.action
            row.target_record_id = outcome.record_id
            try:
                db.commit()
            except Exception:
                # The write and its undo entry are already durable.
                db.rollback()
                logger.warning("Could not record outcome of row %s in batch %s", row.row_number, batch_id, exc_info=True)
        result.add(outcome)

    return result
