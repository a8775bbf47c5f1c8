"""
Value types passed between pipeline stages.

``RawRow`` is the untyped extracted row; ``PreviewRow`` is the typed, validated
candidate produced from it by the mapping applier. Commit and rollback return
result objects with per-row outcomes instead of raising on row failures.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_SKIPPED = "skipped"
ACTION_FAILED = "failed"


@dataclass(frozen=True)
class RawRow:
    row_number: int
    values: Dict[str, Any]
    cleaning_flag: Optional[str] = None
    cleaning_note: Optional[str] = None


@dataclass
class ColumnProfile:
    name: str
    sample_values: List[Any]
    detected_type: Optional[str]
    empty_count: int


@dataclass
class ExtractedFile:
    file_name: str
    file_type: str
    file_size_bytes: int
    file_hash: str
    column_fingerprint: str
    headers: List[str]
    rows: List[RawRow]


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    severity: str
    code: str
    message: str
    value: Any = None
    suggestion: Optional[str] = None
    source_column: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == SEVERITY_ERROR


@dataclass
class PreviewRow:
    row_id: int
    row_number: int
    raw_values: Dict[str, Any]
    values: Optional[Dict[str, Any]]
    status: str
    issues: List[ValidationIssue] = field(default_factory=list)
    action_taken: Optional[str] = None
    target_record_id: Optional[int] = None
    cleaning_flag: Optional[str] = None
    cleaning_note: Optional[str] = None


@dataclass
class PreviewPage:
    rows: List[PreviewRow]
    total: int
    offset: int
    limit: int


@dataclass
class FieldSuggestion:
    field: str
    source_column: Optional[str]
    confidence: float
    match_kind: Optional[str] = None


@dataclass
class BatchSummary:
    id: str
    status: str
    file_name: str
    file_type: str
    file_size_bytes: int
    row_count: int
    headers: List[str]
    valid_count: int
    warning_count: int
    error_count: int
    format_change_detected: bool
    mapping_template_id: Optional[int]
    mapping_config: Optional[Dict[str, Any]]
    created_at: Optional[datetime]
    mapped_at: Optional[datetime]
    validated_at: Optional[datetime]
    committed_at: Optional[datetime]
    rolled_back_at: Optional[datetime]
    rollback_reason: Optional[str]
    cancelled_at: Optional[datetime]


@dataclass
class UploadResult:
    batch: BatchSummary
    preview: PreviewPage
    columns: List[ColumnProfile]
    suggestions: List[FieldSuggestion]
    matching_template_id: Optional[int]
    cleaning: Optional["CleaningReport"] = None


@dataclass
class MappingResult:
    batch: BatchSummary
    mapped_row_count: int
    preview: PreviewPage
    template_id: Optional[int] = None


@dataclass
class ValidationSummary:
    batch_id: str
    valid_count: int
    warning_count: int
    error_count: int
    quality_report: Dict[str, Any]


@dataclass
class CommitOutcome:
    row_id: int
    row_number: int
    action: str
    record_id: Optional[int] = None
    code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class CommitResult:
    batch_id: str
    dry_run: bool
    created_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    outcomes: List[CommitOutcome] = field(default_factory=list)
    created_ids: List[int] = field(default_factory=list)
    updated_ids: List[int] = field(default_factory=list)
    duration_ms: int = 0

    def add(self, outcome: CommitOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.action == ACTION_CREATED:
            self.created_count += 1
            if outcome.record_id is not None:
                self.created_ids.append(outcome.record_id)
        elif outcome.action == ACTION_UPDATED:
            self.updated_count += 1
            if outcome.record_id is not None:
                self.updated_ids.append(outcome.record_id)
        elif outcome.action == ACTION_SKIPPED:
            self.skipped_count += 1
        else:
            self.failed_count += 1


@dataclass
class RollbackEntryOutcome:
    entry_id: int
    record_id: int
    action: str
    status: str  # deleted | reverted | failed
    conflict: bool = False
    message: Optional[str] = None


@dataclass
class RollbackResult:
    batch_id: str
    records_deleted: int = 0
    records_reverted: int = 0
    conflicts: int = 0
    failed_count: int = 0
    outcomes: List[RollbackEntryOutcome] = field(default_factory=list)
    rolled_back_at: Optional[datetime] = None


@dataclass
class CellChange:
    row_number: int
    column: str
    original_value: Any
    cleaned_value: Any
    rule_id: str


@dataclass
class RowFlag:
    row_number: int
    rule_id: str
    reason: str


@dataclass
class CleaningReport:
    rules: List[Dict[str, Any]] = field(default_factory=list)
    cell_changes: List[CellChange] = field(default_factory=list)
    row_flags: List[RowFlag] = field(default_factory=list)
    total_cells_cleaned: int = 0
    total_rows_flagged: int = 0
    changes_truncated: bool = False
