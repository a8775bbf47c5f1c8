"""
Rollback of committed import batches.

Replays a batch's undo log newest entry first:
- records the commit created are deleted from the customer store
- records the commit updated are restored to the values captured before the update
- an updated record that changed again after the commit is flagged as a conflict
  (it is still restored; the flag is for the operator's follow-up)

Individual failures are recorded on the entry and in the result; the replay
always runs to the end.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Mapping

from customer_import.db.models import RollbackEntry
from customer_import.domain.customers.store import CustomerStore, RecordNotFoundError
from customer_import.domain.imports.repository import ImportRepository, utcnow
from customer_import.domain.imports.types import (
    ACTION_CREATED,
    RollbackEntryOutcome,
    RollbackResult,
)

logger = logging.getLogger(__name__)


def _normalize_for_hash(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return float(value)
    return str(value)


def compute_row_hash(row_values: Mapping[str, Any]) -> str:
    """
    Compute SHA-256 hash of record values for conflict detection.

    Numbers are compared as floats so values read back from the store hash the
    same as the values that were written.
    """
    normalized = {key: _normalize_for_hash(value) for key, value in row_values.items()}
    json_str = json.dumps(sorted(normalized.items()), sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()


def _revert_entry(
    store: CustomerStore,
    organization_id: int,
    entry: RollbackEntry,
) -> RollbackEntryOutcome:
    if entry.action == ACTION_CREATED:
        store.delete(organization_id, entry.record_id)
        return RollbackEntryOutcome(entry.id, entry.record_id, entry.action, "deleted")

    previous: Dict[str, Any] = dict(entry.previous_values or {})
    current = store.get(organization_id, entry.record_id)
    if current is None:
        raise RecordNotFoundError(f"Customer {entry.record_id} no longer exists")

    current_hash = compute_row_hash({field: current.get(field) for field in previous})
    conflict = entry.new_values_hash is not None and current_hash != entry.new_values_hash
    if conflict:
        logger.warning(
            "Customer %s changed after import commit; restoring pre-import values anyway",
            entry.record_id,
        )

    store.update(organization_id, entry.record_id, previous)
    return RollbackEntryOutcome(
        entry.id,
        entry.record_id,
        entry.action,
        "reverted",
        conflict=conflict,
        message="Record was modified after the import" if conflict else None,
    )


def replay_rollback_log(
    repo: ImportRepository,
    store: CustomerStore,
    organization_id: int,
    batch_id: str,
) -> RollbackResult:
    """
    Revert every not-yet-reverted entry of ``batch_id``, newest first.

    Each entry is marked reverted (or given its error) and committed on its own,
    so an entry is never reverted twice.
    """
    result = RollbackResult(batch_id=batch_id)
    db = repo.db

    for entry in repo.rollback_entries(batch_id):
        if entry.reverted_at is not None:
            continue
        try:
            outcome = _revert_entry(store, organization_id, entry)
        except Exception as exc:
            logger.warning(
                "Rollback of %s customer %s failed for batch %s: %s",
                entry.action, entry.record_id, batch_id, exc,
            )
            entry.revert_error = str(exc)
            db.commit()
            result.failed_count += 1
            result.outcomes.append(
                RollbackEntryOutcome(entry.id, entry.record_id, entry.action, "failed", message=str(exc))
            )
            continue

        entry.reverted_at = utcnow()
        entry.revert_error = None
        db.commit()

        if outcome.status == "deleted":
            result.records_deleted += 1
        else:
            result.records_reverted += 1
        if outcome.conflict:
            result.conflicts += 1
        result.outcomes.append(outcome)

    return result
