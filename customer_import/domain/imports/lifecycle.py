"""
Batch state machine.

    uploaded -> mapped -> validated -> committing -> committed -> rolling_back -> rolled_back
    uploaded | mapped | validated -> cancelled

``mapped`` and ``validated`` can be re-entered by re-running mapping or
validation before commit. ``committing`` and ``rolling_back`` are transient
states held while the commit or rollback replay runs; they are what a
concurrent second attempt observes.
"""
from typing import Dict, FrozenSet

from customer_import.db.models import BatchStatus
from customer_import.domain.imports.errors import AlreadyRolledBackError, InvalidStateError

S = BatchStatus

TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    S.UPLOADED: frozenset({S.MAPPED, S.CANCELLED}),
    S.MAPPED: frozenset({S.MAPPED, S.VALIDATED, S.CANCELLED}),
    S.VALIDATED: frozenset({S.MAPPED, S.VALIDATED, S.COMMITTING, S.CANCELLED}),
    S.COMMITTING: frozenset({S.COMMITTED}),
    S.COMMITTED: frozenset({S.ROLLING_BACK}),
    S.ROLLING_BACK: frozenset({S.ROLLED_BACK}),
    S.ROLLED_BACK: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.COMMITTED, S.ROLLED_BACK, S.CANCELLED})

# Statuses each operation may start from.
OPERATION_STATUSES: Dict[str, FrozenSet[BatchStatus]] = {
    "apply_mapping": frozenset({S.UPLOADED, S.MAPPED, S.VALIDATED}),
    "validate": frozenset({S.MAPPED, S.VALIDATED}),
    "commit": frozenset({S.VALIDATED}),
    "rollback": frozenset({S.COMMITTED}),
    "cancel": frozenset({S.UPLOADED, S.MAPPED, S.VALIDATED}),
}


def can_transition(current: str, target: str) -> bool:
    return BatchStatus(target) in TRANSITIONS[BatchStatus(current)]


def is_terminal(status: str) -> bool:
    return BatchStatus(status) in TERMINAL_STATUSES


def require_status(status: str, operation: str) -> None:
    """
    Raise unless ``operation`` may run on a batch in ``status``.

    A rollback requested on a batch that is already rolled back fails with
    ``already_rolled_back`` rather than the generic ``invalid_state``.
    """
    current = BatchStatus(status)
    if current in OPERATION_STATUSES[operation]:
        return
    if operation == "rollback" and current == S.ROLLED_BACK:
        raise AlreadyRolledBackError("Batch has already been rolled back")
    allowed = ", ".join(sorted(s.value for s in OPERATION_STATUSES[operation]))
    raise InvalidStateError(
        f"Cannot {operation.replace('_', ' ')} a batch in status '{current.value}' (requires: {allowed})"
    )
