"""
Persistence for batches, staged rows, issues, templates and the undo log.

Every lookup is filtered by ``organization_id``; a batch or template owned by
another tenant is reported as not found. Guarded status changes go through
``compare_and_swap_status`` so concurrent attempts cannot both succeed.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from customer_import.db.models import (
    ColumnHistory,
    ImportBatch,
    ImportIssue,
    ImportRow,
    MappingTemplate,
    RollbackEntry,
    RowStatus,
)
from customer_import.domain.imports.errors import NotFoundError
from customer_import.domain.imports.fingerprinting import find_matching_header_set
from customer_import.domain.imports.types import RawRow, ValidationIssue
from customer_import.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)

TEMPLATE_SIMILARITY_THRESHOLD = 0.8


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class ImportRepository:
    def __init__(self, db: Session):
        self.db = db

    # Batches

    def create_batch(self, **values: Any) -> ImportBatch:
        batch = ImportBatch(**values)
        self.db.add(batch)
        self.db.flush()
        return batch

    def get_batch(self, organization_id: int, batch_id: str) -> ImportBatch:
        batch = (
            self.db.query(ImportBatch)
            .filter(ImportBatch.id == batch_id, ImportBatch.organization_id == organization_id)
            .one_or_none()
        )
        if batch is None:
            raise NotFoundError(f"Import batch {batch_id} not found")
        return batch

    def list_batches(
        self,
        organization_id: int,
        *,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[ImportBatch], int]:
        query = self.db.query(ImportBatch).filter(ImportBatch.organization_id == organization_id)
        if status:
            query = query.filter(ImportBatch.status == status)
        total = query.count()
        batches = (
            query.order_by(ImportBatch.created_at.desc(), ImportBatch.id)
            .offset(offset)
            .limit(limit)
            .all()
        )
        return batches, total

    def compare_and_swap_status(
        self,
        organization_id: int,
        batch_id: str,
        expected: str,
        new: str,
        **values: Any,
    ) -> bool:
        """
        Atomically move a batch from ``expected`` to ``new`` status.

        Returns False when the batch was not in ``expected`` (someone else got
        there first). Commits on success.
        """
        result = self.db.execute(
            update(ImportBatch)
            .where(
                ImportBatch.id == batch_id,
                ImportBatch.organization_id == organization_id,
                ImportBatch.status == expected,
            )
            .values(status=new, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return False
        self.db.commit()
        self.db.expire_all()
        return True

    # Rows

    def add_rows(self, batch: ImportBatch, rows: Sequence[RawRow]) -> None:
        self.db.add_all(
            ImportRow(
                batch_id=batch.id,
                organization_id=batch.organization_id,
                row_number=row.row_number,
                raw_data=make_json_safe(row.values),
                cleaning_flag=row.cleaning_flag,
                cleaning_note=row.cleaning_note,
            )
            for row in rows
        )
        self.db.flush()

    def rows_for_batch(self, batch_id: str) -> List[ImportRow]:
        return (
            self.db.query(ImportRow)
            .filter(ImportRow.batch_id == batch_id)
            .order_by(ImportRow.row_number)
            .all()
        )

    def row_ids(self, batch_id: str) -> set:
        return {row_id for (row_id,) in self.db.query(ImportRow.id).filter(ImportRow.batch_id == batch_id)}

    def page_rows(
        self,
        batch_id: str,
        *,
        offset: int,
        limit: int,
        errors_only: bool = False,
    ) -> Tuple[List[ImportRow], int]:
        query = self.db.query(ImportRow).filter(ImportRow.batch_id == batch_id)
        if errors_only:
            query = query.filter(ImportRow.validation_status == RowStatus.INVALID.value)
        total = query.count()
        rows = query.order_by(ImportRow.row_number).offset(offset).limit(limit).all()
        return rows, total

    def issues_for_rows(self, row_ids: Iterable[int]) -> Dict[int, List[ImportIssue]]:
        row_ids = list(row_ids)
        grouped: Dict[int, List[ImportIssue]] = {row_id: [] for row_id in row_ids}
        if not row_ids:
            return grouped
        issues = (
            self.db.query(ImportIssue)
            .filter(ImportIssue.row_id.in_(row_ids))
            .order_by(ImportIssue.id)
            .all()
        )
        for issue in issues:
            grouped[issue.row_id].append(issue)
        return grouped

    def issues_for_batch(self, batch_id: str) -> List[ImportIssue]:
        return (
            self.db.query(ImportIssue)
            .filter(ImportIssue.batch_id == batch_id)
            .order_by(ImportIssue.row_number, ImportIssue.id)
            .all()
        )

    def clear_issues(self, batch_id: str) -> None:
        self.db.query(ImportIssue).filter(ImportIssue.batch_id == batch_id).delete(synchronize_session=False)

    def add_issues(self, batch_id: str, row: ImportRow, issues: Sequence[ValidationIssue]) -> None:
        for issue in issues:
            self.db.add(
                ImportIssue(
                    batch_id=batch_id,
                    row_id=row.id,
                    row_number=row.row_number,
                    field_name=issue.field,
                    source_column=issue.source_column,
                    severity=issue.severity,
                    code=issue.code,
                    message=issue.message,
                    value=None if issue.value is None else str(issue.value),
                    suggestion=issue.suggestion,
                )
            )

    # Templates

    def get_template(self, organization_id: int, template_id: int) -> MappingTemplate:
        template = (
            self.db.query(MappingTemplate)
            .filter(MappingTemplate.id == template_id, MappingTemplate.organization_id == organization_id)
            .one_or_none()
        )
        if template is None:
            raise NotFoundError(f"Mapping template {template_id} not found")
        return template

    def list_templates(self, organization_id: int) -> List[MappingTemplate]:
        return (
            self.db.query(MappingTemplate)
            .filter(MappingTemplate.organization_id == organization_id)
            .order_by(MappingTemplate.use_count.desc(), MappingTemplate.name)
            .all()
        )

    def template_name_exists(self, organization_id: int, name: str) -> bool:
        return (
            self.db.query(func.count(MappingTemplate.id))
            .filter(
                MappingTemplate.organization_id == organization_id,
                func.lower(MappingTemplate.name) == name.strip().lower(),
            )
            .scalar()
            > 0
        )

    def create_template(self, **values: Any) -> MappingTemplate:
        template = MappingTemplate(**values)
        self.db.add(template)
        self.db.flush()
        return template

    def delete_template(self, template: MappingTemplate) -> None:
        self.db.delete(template)

    def find_matching_template(self, organization_id: int, headers: Sequence[str]) -> Optional[MappingTemplate]:
        """Template with the same column fingerprint, else the most similar header set."""
        templates = {template.id: template for template in self.list_templates(organization_id)}
        match = find_matching_header_set(
            headers,
            ((t.id, t.column_fingerprint, t.source_columns) for t in templates.values()),
            threshold=TEMPLATE_SIMILARITY_THRESHOLD,
        )
        if match is None:
            return None
        logger.debug(
            "Template %s matched upload headers (%s, %.2f)", match["key"], match["match_type"], match["similarity"]
        )
        return templates[match["key"]]

    # Column history

    def latest_fingerprint(self, organization_id: int) -> Optional[str]:
        entry = (
            self.db.query(ColumnHistory)
            .filter(ColumnHistory.organization_id == organization_id)
            .order_by(ColumnHistory.id.desc())
            .first()
        )
        return entry.column_fingerprint if entry else None

    def record_columns(self, batch: ImportBatch) -> None:
        self.db.add(
            ColumnHistory(
                organization_id=batch.organization_id,
                batch_id=batch.id,
                column_fingerprint=batch.column_fingerprint,
                columns=list(batch.headers or []),
            )
        )

    # Undo log

    def add_rollback_entry(self, **values: Any) -> RollbackEntry:
        entry = RollbackEntry(**values)
        self.db.add(entry)
        self.db.flush()
        return entry

    def rollback_entries(self, batch_id: str) -> List[RollbackEntry]:
        """Entries newest first, the order they are replayed in."""
        return (
            self.db.query(RollbackEntry)
            .filter(RollbackEntry.batch_id == batch_id)
            .order_by(RollbackEntry.id.desc())
            .all()
        )
