import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from customer_import.domain.imports.fields import is_known_field
from customer_import.domain.imports.validators import PRESET_PATTERNS


RuleType = Literal[
    "required", "min_length", "max_length", "pattern", "email", "postal_code",
    "date", "number", "integer", "range", "enum",
]


def _coerce_number(name: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be a number")
    try:
        number = float(str(value).strip().replace(",", "."))
    except ValueError as exc:
        raise ValueError(f"'{name}' must be a number, got {value!r}") from exc
    return int(number) if number.is_integer() else number


class ValidationRule(BaseModel):
    type: RuleType
    params: Dict[str, Any] = Field(default_factory=dict)
    severity: Literal["error", "warning"] = "error"
    message: Optional[str] = None

    @model_validator(mode="after")
    def validate_params(self):
        """Check and normalize ``params`` so rules cannot fail while rows are validated."""
        params = dict(self.params)
        if self.type == "pattern":
            pattern, preset = params.get("pattern"), params.get("preset")
            if pattern:
                try:
                    re.compile(pattern)
                except (re.error, TypeError) as exc:
                    raise ValueError(f"Invalid regex pattern: {exc}") from exc
            elif preset:
                if preset not in PRESET_PATTERNS:
                    raise ValueError(f"Unknown preset '{preset}'")
            else:
                raise ValueError("A pattern rule needs 'pattern' or 'preset'")
        elif self.type in ("min_length", "max_length"):
            key = "min" if self.type == "min_length" else "max"
            length = _coerce_number(key, params.get(key))
            if length is None or length < 0 or not float(length).is_integer():
                raise ValueError(f"A {self.type} rule needs a non-negative whole '{key}'")
            params[key] = int(length)
        elif self.type == "range":
            low, high = _coerce_number("min", params.get("min")), _coerce_number("max", params.get("max"))
            if low is None and high is None:
                raise ValueError("A range rule needs 'min' and/or 'max'")
            if low is not None and high is not None and low > high:
                raise ValueError("Range 'min' is greater than 'max'")
            params["min"], params["max"] = low, high
        elif self.type == "enum":
            values = params.get("values")
            if not isinstance(values, list) or not values:
                raise ValueError("An enum rule needs a non-empty 'values' list")
        self.params = params
        return self


class TransformHint(BaseModel):
    """Per-column coercion hints applied by the mapping applier."""
    date_format: Optional[str] = None  # strptime format, e.g. "%d.%m.%Y"
    decimal_separator: Optional[Literal[",", "."]] = None
    case: Optional[Literal["upper", "lower", "title"]] = None
    split: Optional[Literal["first", "last"]] = None  # take one part of a split value
    delimiter: str = " "
    pattern: Optional[str] = None  # regex; group 1 (or the whole match) is kept
    lookup: Optional[Dict[str, Any]] = None  # raw value -> replacement

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"Invalid regex pattern: {exc}") from exc
        return v


class ColumnMapping(BaseModel):
    source_column: str
    target_field: str
    transform: Optional[TransformHint] = None
    validation_rules: List[ValidationRule] = Field(default_factory=list)

    @field_validator("target_field")
    @classmethod
    def validate_target_field(cls, v: str) -> str:
        if not is_known_field(v):
            raise ValueError(f"Unknown target field '{v}'")
        return v


class MappingOptions(BaseModel):
    trim_whitespace: bool = True
    match_strategy: Literal["external_id", "name_address", "external_id_then_name_address"] = "external_id"
    date_format: Optional[str] = None
    decimal_separator: Optional[Literal[",", "."]] = None
    split_combined_address: bool = True


class MappingConfig(BaseModel):
    """Source column -> target field correspondence for one batch (or template)."""
    version: int = 1
    mappings: List[ColumnMapping]
    options: MappingOptions = Field(default_factory=MappingOptions)

    @model_validator(mode="after")
    def validate_unique_targets(self):
        seen = set()
        for mapping in self.mappings:
            if mapping.target_field in seen:
                raise ValueError(f"Target field '{mapping.target_field}' is mapped more than once")
            seen.add(mapping.target_field)
        return self

    def source_columns(self) -> Dict[str, str]:
        return {m.target_field: m.source_column for m in self.mappings}


# Requests


class ApplyMappingRequest(BaseModel):
    mapping: Optional[MappingConfig] = None
    template_id: Optional[int] = None
    save_as_template: bool = False
    template_name: Optional[str] = Field(default=None, max_length=100)
    template_description: Optional[str] = None

    @model_validator(mode="after")
    def validate_source(self):
        if self.mapping is None and self.template_id is None:
            raise ValueError("Provide either a mapping or a template_id")
        if self.save_as_template and not (self.template_name or "").strip():
            raise ValueError("template_name is required when save_as_template is set")
        return self


class CommitRequest(BaseModel):
    excluded_row_ids: List[int] = Field(default_factory=list)
    included_row_ids: List[int] = Field(default_factory=list)  # rows flagged by cleaning
    row_edits: Dict[int, Dict[str, Any]] = Field(default_factory=dict)
    dry_run: bool = False

    @field_validator("row_edits")
    @classmethod
    def validate_edit_fields(cls, v: Dict[int, Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
        for row_id, edits in v.items():
            unknown = [field for field in edits if not is_known_field(field)]
            if unknown:
                raise ValueError(f"Row {row_id} edits unknown fields: {', '.join(unknown)}")
        return v


class RollbackRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


# Responses


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class BatchResponse(_FromAttributes):
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
    mapping_template_id: Optional[int] = None
    mapping_config: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    mapped_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None
    committed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    rollback_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None


class IssueResponse(_FromAttributes):
    field: str
    severity: str
    code: str
    message: str
    value: Optional[str] = None
    suggestion: Optional[str] = None
    source_column: Optional[str] = None


class PreviewRowResponse(_FromAttributes):
    row_id: int
    row_number: int
    raw_values: Dict[str, Any]
    values: Optional[Dict[str, Any]] = None
    status: str
    issues: List[IssueResponse] = Field(default_factory=list)
    action_taken: Optional[str] = None
    target_record_id: Optional[int] = None
    cleaning_flag: Optional[str] = None
    cleaning_note: Optional[str] = None


class PreviewPageResponse(_FromAttributes):
    rows: List[PreviewRowResponse]
    total: int
    offset: int
    limit: int


class ColumnProfileResponse(_FromAttributes):
    name: str
    sample_values: List[Any]
    detected_type: Optional[str] = None
    empty_count: int


class FieldSuggestionResponse(_FromAttributes):
    field: str
    source_column: Optional[str] = None
    confidence: float
    match_kind: Optional[str] = None


class CellChangeResponse(_FromAttributes):
    row_number: int
    column: str
    original_value: Any = None
    cleaned_value: Any = None
    rule_id: str


class RowFlagResponse(_FromAttributes):
    row_number: int
    rule_id: str
    reason: str


class CleaningReportResponse(_FromAttributes):
    rules: List[Dict[str, Any]]
    cell_changes: List[CellChangeResponse]
    row_flags: List[RowFlagResponse]
    total_cells_cleaned: int
    total_rows_flagged: int
    changes_truncated: bool = False


class UploadResponse(_FromAttributes):
    batch: BatchResponse
    preview: PreviewPageResponse
    columns: List[ColumnProfileResponse]
    suggestions: List[FieldSuggestionResponse]
    matching_template_id: Optional[int] = None
    cleaning: Optional[CleaningReportResponse] = None


class BatchDetailResponse(_FromAttributes):
    batch: BatchResponse
    preview: PreviewPageResponse


class MappingResponse(_FromAttributes):
    batch: BatchResponse
    mapped_row_count: int
    preview: PreviewPageResponse
    template_id: Optional[int] = None


class SuggestMappingResponse(_FromAttributes):
    batch_id: str
    suggestions: List[FieldSuggestionResponse]


class ValidationResponse(_FromAttributes):
    batch_id: str
    valid_count: int
    warning_count: int
    error_count: int
    quality_report: Dict[str, Any]


class CommitOutcomeResponse(_FromAttributes):
    row_id: int
    row_number: int
    action: str
    record_id: Optional[int] = None
    code: Optional[str] = None
    message: Optional[str] = None


class CommitResponse(_FromAttributes):
    batch_id: str
    dry_run: bool
    created_count: int
    updated_count: int
    skipped_count: int
    failed_count: int
    outcomes: List[CommitOutcomeResponse]
    created_ids: List[int]
    updated_ids: List[int]
    duration_ms: int


class RollbackOutcomeResponse(_FromAttributes):
    entry_id: int
    record_id: int
    action: str
    status: str
    conflict: bool
    message: Optional[str] = None


class RollbackResponse(_FromAttributes):
    batch_id: str
    records_deleted: int
    records_reverted: int
    conflicts: int
    failed_count: int
    outcomes: List[RollbackOutcomeResponse]
    rolled_back_at: Optional[datetime] = None


class CancelResponse(_FromAttributes):
    batch_id: str
    status: str
    cancelled: bool = True


class TemplateResponse(_FromAttributes):
    id: int
    name: str
    description: Optional[str] = None
    source_columns: List[str]
    column_fingerprint: Optional[str] = None
    mapping_config: Dict[str, Any]
    use_count: int
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class BatchListResponse(_FromAttributes):
    batches: List[BatchResponse]
    total: int
    limit: int
    offset: int
