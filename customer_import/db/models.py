"""
ORM models for the import pipeline's staged state.

Every table carries ``organization_id`` so repository queries can be scoped to
the calling tenant. Batches are never physically deleted; terminal states are
``committed``, ``rolled_back`` and ``cancelled``.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from customer_import.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


class BatchStatus(str, Enum):
    UPLOADED = "uploaded"
    MAPPED = "mapped"
    VALIDATED = "validated"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class RowStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    WARNING = "warning"
    INVALID = "invalid"


class ImportBatch(Base):
    """One uploaded file's end-to-end import session."""
    __tablename__ = "import_batches"

    id = Column(String(36), primary_key=True, default=_new_uuid)
    organization_id = Column(Integer, nullable=False, index=True)
    created_by = Column(Integer, nullable=True)

    file_name = Column(String(255), nullable=False)
    file_type = Column(String(10), nullable=False)
    file_size_bytes = Column(Integer, nullable=False)
    file_hash = Column(String(64), nullable=False)
    column_fingerprint = Column(String(64), nullable=False)
    headers = Column(JSON, nullable=False, default=list)
    row_count = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=BatchStatus.UPLOADED.value, index=True)
    mapping_config = Column(JSON, nullable=True)
    mapping_template_id = Column(Integer, nullable=True)
    format_change_detected = Column(Boolean, nullable=False, default=False)

    valid_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    quality_report = Column(JSON, nullable=True)
    cleaning_report = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    mapped_at = Column(DateTime(timezone=True), nullable=True)
    validated_at = Column(DateTime(timezone=True), nullable=True)
    committed_at = Column(DateTime(timezone=True), nullable=True)
    committed_by = Column(Integer, nullable=True)
    rolled_back_at = Column(DateTime(timezone=True), nullable=True)
    rolled_back_by = Column(Integer, nullable=True)
    rollback_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_import_batches_org_created", "organization_id", "created_at"),
    )


class ImportRow(Base):
    """A raw spreadsheet row plus its staged, typed candidate values."""
    __tablename__ = "import_rows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    organization_id = Column(Integer, nullable=False)
    row_number = Column(Integer, nullable=False)

    raw_data = Column(JSON, nullable=False)
    mapped_data = Column(JSON, nullable=True)
    validation_status = Column(String(10), nullable=False, default=RowStatus.PENDING.value)
    cleaning_flag = Column(String(40), nullable=True)  # rule id that flagged the row
    cleaning_note = Column(Text, nullable=True)

    action_taken = Column(String(10), nullable=True)
    target_record_id = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("batch_id", "row_number", name="uq_import_rows_batch_row"),
    )


class ImportIssue(Base):
    """A validation finding attached to one staged row."""
    __tablename__ = "import_issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    row_id = Column(Integer, ForeignKey("import_rows.id"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)

    field_name = Column(String(64), nullable=False)
    source_column = Column(String(255), nullable=True)
    severity = Column(String(10), nullable=False)
    code = Column(String(40), nullable=False)
    message = Column(Text, nullable=False)
    value = Column(Text, nullable=True)
    suggestion = Column(Text, nullable=True)


class MappingTemplate(Base):
    """A tenant-scoped, named mapping configuration reusable across batches."""
    __tablename__ = "import_mapping_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    source_columns = Column(JSON, nullable=False, default=list)
    column_fingerprint = Column(String(64), nullable=True, index=True)
    mapping_config = Column(JSON, nullable=False)

    use_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_mapping_templates_org_name"),
    )


class RollbackEntry(Base):
    """Undo log entry for one record written by a commit."""
    __tablename__ = "import_rollback_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    organization_id = Column(Integer, nullable=False)
    row_id = Column(Integer, nullable=True)

    action = Column(String(10), nullable=False)  # created | updated
    record_id = Column(Integer, nullable=False)
    previous_values = Column(JSON, nullable=True)
    new_values_hash = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    reverted_at = Column(DateTime(timezone=True), nullable=True)
    revert_error = Column(Text, nullable=True)


class ColumnHistory(Base):
    """Header sets seen per tenant, used to flag format changes between uploads."""
    __tablename__ = "import_column_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False)
    column_fingerprint = Column(String(64), nullable=False)
    columns = Column(JSON, nullable=False)
    seen_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
