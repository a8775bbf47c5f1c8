"""
Audit/event notifications for import batch activity.

The pipeline notifies the sink of upload, mapping, validation, commit,
rollback and cancellation. Delivery is fire-and-forget: a failing sink is
logged and never fails the operation that triggered it.
"""
import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

EVENT_UPLOADED = "import.uploaded"
EVENT_MAPPED = "import.mapped"
EVENT_VALIDATED = "import.validated"
EVENT_COMMITTED = "import.committed"
EVENT_ROLLED_BACK = "import.rolled_back"
EVENT_CANCELLED = "import.cancelled"


class AuditSink(Protocol):
    def record(
        self,
        event: str,
        *,
        organization_id: int,
        user_id: Optional[int],
        batch_id: str,
        details: Dict[str, Any],
    ) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the ``customer_import.audit`` logger."""

    def __init__(self, logger_name: str = "customer_import.audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, event, *, organization_id, user_id, batch_id, details) -> None:
        self._logger.info(
            "%s org=%s user=%s batch=%s details=%s",
            event, organization_id, user_id, batch_id, details,
        )


def notify(sink: Optional[AuditSink], event: str, **kwargs: Any) -> None:
    """Deliver an event to ``sink`` without letting sink failures propagate."""
    if sink is None:
        return
    try:
        sink.record(event, **kwargs)
    except Exception as exc:
        logger.warning("Audit sink failed for %s (batch %s): %s", event, kwargs.get("batch_id"), exc)
