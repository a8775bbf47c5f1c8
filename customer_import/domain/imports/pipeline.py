"""
Import pipeline entry object.

``ImportPipeline`` is constructed once by whatever serves requests and holds
every dependency the stages need: settings, a session factory for the staged
state, the customer record store, the audit sink, the record matchers, the
per-batch lock manager and a bounded worker pool.

Stage flow:
    upload -> (suggest_mapping) -> apply_mapping -> validate -> commit -> (rollback)

Mapping, validation, commit, rollback and cancellation of the same batch are
serialized by the batch lock; status changes go through compare-and-swap so a
second attempt that slips past the lock still cannot double-apply.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import asdict, replace
from datetime import date
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from customer_import.api.schemas.imports import MappingConfig
from customer_import.core.config import Settings, settings as default_settings
from customer_import.db.models import BatchStatus, ImportBatch, ImportRow, RowStatus
from customer_import.domain.customers.store import CustomerStore
from customer_import.domain.imports import audit
from customer_import.domain.imports.cleaner import clean_rows
from customer_import.domain.imports.commit import run_commit
from customer_import.domain.imports.errors import (
    DuplicateTemplateError,
    InvalidFormatError,
    InvalidStateError,
    NotFoundError,
    StageTimeoutError,
)
from customer_import.domain.imports.intake import extract_file
from customer_import.domain.imports.lifecycle import can_transition, require_status
from customer_import.domain.imports.mapper import map_rows, missing_source_columns
from customer_import.domain.imports.matching import RecordMatcher, default_matchers
from customer_import.domain.imports.report import build_error_report
from customer_import.domain.imports.repository import ImportRepository, utcnow
from customer_import.domain.imports.rollback import replay_rollback_log
from customer_import.domain.imports.suggester import profile_columns, suggest_mapping
from customer_import.domain.imports.types import (
    BatchSummary,
    CommitResult,
    FieldSuggestion,
    MappingResult,
    PreviewPage,
    PreviewRow,
    RawRow,
    RollbackResult,
    UploadResult,
    ValidationIssue,
    ValidationSummary,
)
from customer_import.domain.imports.validators import (
    build_quality_report,
    classify_issues,
    find_batch_duplicates,
    find_existing_duplicates,
    validate_staged_values,
)
from customer_import.utils.locks import BatchLockManager
from customer_import.utils.serialization import make_json_safe

logger = logging.getLogger(__name__)


def _validate_chunk(
    staged: Sequence[Mapping[str, Any]],
    *,
    field_rules: Mapping[str, Sequence[Mapping[str, Any]]],
    source_columns: Mapping[str, str],
    today: date,
    phone_min_digits: int,
    phone_max_digits: int,
) -> List[List[ValidationIssue]]:
    return [
        validate_staged_values(
            values,
            field_rules,
            source_columns,
            today=today,
            phone_min_digits=phone_min_digits,
            phone_max_digits=phone_max_digits,
        )
        for values in staged
    ]


def _summary(batch: ImportBatch) -> BatchSummary:
    return BatchSummary(
        id=batch.id,
        status=batch.status,
        file_name=batch.file_name,
        file_type=batch.file_type,
        file_size_bytes=batch.file_size_bytes,
        row_count=batch.row_count,
        headers=list(batch.headers or []),
        valid_count=batch.valid_count,
        warning_count=batch.warning_count,
        error_count=batch.error_count,
        format_change_detected=bool(batch.format_change_detected),
        mapping_template_id=batch.mapping_template_id,
        mapping_config=batch.mapping_config,
        created_at=batch.created_at,
        mapped_at=batch.mapped_at,
        validated_at=batch.validated_at,
        committed_at=batch.committed_at,
        rolled_back_at=batch.rolled_back_at,
        rollback_reason=batch.rollback_reason,
        cancelled_at=batch.cancelled_at,
    )


def _preview_row(row: ImportRow, issues) -> PreviewRow:
    return PreviewRow(
        row_id=row.id,
        row_number=row.row_number,
        raw_values=dict(row.raw_data or {}),
        values=dict(row.mapped_data) if row.mapped_data is not None else None,
        status=row.validation_status,
        issues=[
            ValidationIssue(
                field=issue.field_name,
                severity=issue.severity,
                code=issue.code,
                message=issue.message,
                value=issue.value,
                suggestion=issue.suggestion,
                source_column=issue.source_column,
            )
            for issue in issues
        ],
        action_taken=row.action_taken,
        target_record_id=row.target_record_id,
        cleaning_flag=row.cleaning_flag,
        cleaning_note=row.cleaning_note,
    )


class ImportPipeline:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: CustomerStore,
        *,
        audit_sink: Optional[audit.AuditSink] = None,
        matchers: Optional[Dict[str, RecordMatcher]] = None,
        settings: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.store = store
        self.audit_sink = audit_sink
        self.matchers = matchers if matchers is not None else default_matchers()
        self.settings = settings or default_settings
        self.locks = BatchLockManager()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.settings.import_parallel_max_workers),
            thread_name_prefix="import-worker",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # Worker pool

    def _stage_timeout(self) -> Optional[int]:
        timeout = self.settings.import_stage_timeout_seconds
        return timeout if timeout and timeout > 0 else None

    def _run_in_pool(self, stage: str, func: Callable, *args, **kwargs):
        """Run ``func`` on the worker pool, bounded by the stage timeout."""
        timeout = self._stage_timeout()
        future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            future.cancel()
            logger.error("%s stage timed out after %s seconds", stage, timeout)
            raise StageTimeoutError(f"{stage.capitalize()} stage timed out after {timeout} seconds")

    def _run_chunks(self, stage: str, func: Callable[[Sequence[Any]], List[Any]], items: Sequence[Any]) -> List[Any]:
        """
        Apply ``func`` to fixed-size chunks of ``items`` in parallel.

        Results are concatenated in input order. The stage timeout covers the
        whole stage, not each chunk.
        """
        chunk_size = max(1, self.settings.import_chunk_size)
        chunks = [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]
        if not chunks:
            return []

        timeout = self._stage_timeout()
        deadline = time.monotonic() + timeout if timeout else None
        logger.debug("Running %s over %d rows in %d chunks", stage, len(items), len(chunks))

        futures = [self._executor.submit(func, chunk) for chunk in chunks]
        results: List[Any] = []
        try:
            for future in futures:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                results.extend(future.result(timeout=remaining))
        except FuturesTimeoutError:
            for future in futures:
                future.cancel()
            logger.error("%s stage timed out after %s seconds", stage, timeout)
            raise StageTimeoutError(f"{stage.capitalize()} stage timed out after {timeout} seconds")
        return results

    # Helpers

    def _page_bounds(self, limit: Optional[int], offset: int) -> Tuple[int, int]:
        if limit is None:
            limit = self.settings.preview_page_size
        limit = max(1, min(int(limit), self.settings.preview_page_size_max))
        return limit, max(0, int(offset))

    def _preview_page(
        self, repo: ImportRepository, batch_id: str, limit: Optional[int], offset: int, errors_only: bool
    ) -> PreviewPage:
        limit, offset = self._page_bounds(limit, offset)
        rows, total = repo.page_rows(batch_id, offset=offset, limit=limit, errors_only=errors_only)
        issues = repo.issues_for_rows(row.id for row in rows)
        return PreviewPage(
            rows=[_preview_row(row, issues.get(row.id, [])) for row in rows],
            total=total,
            offset=offset,
            limit=limit,
        )

    def _matcher_for(self, config: MappingConfig) -> RecordMatcher:
        strategy = config.options.match_strategy
        matcher = self.matchers.get(strategy)
        if matcher is None:
            raise InvalidFormatError(f"Unknown match strategy '{strategy}'")
        return matcher

    def _notify(self, event: str, organization_id: int, user_id: Optional[int], batch_id: str, **details) -> None:
        audit.notify(
            self.audit_sink,
            event,
            organization_id=organization_id,
            user_id=user_id,
            batch_id=batch_id,
            details=details,
        )

    @staticmethod
    def _transition(repo: ImportRepository, batch: ImportBatch, new: BatchStatus, **values: Any) -> None:
        """Compare-and-swap ``batch`` from its loaded status to ``new``, committing pending work."""
        current = batch.status
        if not can_transition(current, new.value):
            raise InvalidStateError(f"Cannot move batch from '{current}' to '{new.value}'")
        if not repo.compare_and_swap_status(batch.organization_id, batch.id, current, new.value, **values):
            raise InvalidStateError(f"Batch {batch.id} changed status concurrently")

    # Intake

    def upload(self, organization_id: int, user_id: Optional[int], content: bytes, file_name: str) -> UploadResult:
        """
        Validate and decode an uploaded file and stage it as a new batch.

        Nothing is persisted when intake fails.
        """
        cfg = self.settings
        extracted = self._run_in_pool(
            "upload",
            extract_file,
            content,
            file_name,
            max_bytes=cfg.upload_max_file_size_bytes,
            max_rows=cfg.import_max_rows,
            file_name_max_length=cfg.file_name_max_length,
        )
        rows, cleaning = extracted.rows, None
        if cfg.import_auto_clean:
            rows, cleaning = self._run_in_pool("cleaning", clean_rows, extracted.headers, extracted.rows)

        with self._session_factory() as db:
            repo = ImportRepository(db)
            previous_fingerprint = repo.latest_fingerprint(organization_id)
            format_changed = previous_fingerprint is not None and previous_fingerprint != extracted.column_fingerprint
            if format_changed:
                logger.info("Column layout changed since the last upload for organization %s", organization_id)

            batch = repo.create_batch(
                organization_id=organization_id,
                created_by=user_id,
                file_name=extracted.file_name,
                file_type=extracted.file_type,
                file_size_bytes=extracted.file_size_bytes,
                file_hash=extracted.file_hash,
                column_fingerprint=extracted.column_fingerprint,
                headers=extracted.headers,
                row_count=len(extracted.rows),
                status=BatchStatus.UPLOADED.value,
                format_change_detected=format_changed,
                cleaning_report=make_json_safe(asdict(cleaning)) if cleaning is not None else None,
            )
            repo.add_rows(batch, rows)
            repo.record_columns(batch)
            template = repo.find_matching_template(organization_id, extracted.headers)
            template_id = template.id if template else None
            db.commit()

            summary = _summary(batch)
            preview = self._preview_page(repo, batch.id, None, 0, False)

        sample_rows = [row for row in rows if not row.cleaning_flag]
        profiles = profile_columns(extracted.headers, sample_rows, cfg.suggestion_sample_size)
        suggestions = suggest_mapping(
            extracted.headers,
            sample_rows,
            sample_size=cfg.suggestion_sample_size,
            min_confidence=cfg.suggestion_min_confidence,
        )
        logger.info(
            "Uploaded batch %s: %d rows, %d columns (org %s)",
            summary.id, summary.row_count, len(summary.headers), organization_id,
        )
        self._notify(
            audit.EVENT_UPLOADED, organization_id, user_id, summary.id,
            file_name=summary.file_name, row_count=summary.row_count,
        )
        return UploadResult(
            batch=summary,
            preview=preview,
            columns=profiles,
            suggestions=suggestions,
            matching_template_id=template_id,
            cleaning=cleaning,
        )

    # Batch reads

    def list_batches(
        self, organization_id: int, *, status: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Tuple[List[BatchSummary], int]:
        if status is not None and status not in {s.value for s in BatchStatus}:
            raise InvalidFormatError(f"Unknown batch status '{status}'")
        with self._session_factory() as db:
            batches, total = ImportRepository(db).list_batches(
                organization_id, status=status, limit=max(1, limit), offset=max(0, offset)
            )
            return [_summary(batch) for batch in batches], total

    def get_batch(
        self,
        organization_id: int,
        batch_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        errors_only: bool = False,
    ) -> Tuple[BatchSummary, PreviewPage]:
        with self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            return _summary(batch), self._preview_page(repo, batch.id, limit, offset, errors_only)

    def get_preview(
        self,
        organization_id: int,
        batch_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        errors_only: bool = False,
    ) -> PreviewPage:
        with self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            return self._preview_page(repo, batch.id, limit, offset, errors_only)

    def suggest_mapping(self, organization_id: int, batch_id: str) -> List[FieldSuggestion]:
        """Advisory per-field suggestions from the batch headers and a value sample."""
        cfg = self.settings
        with self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            sample, _ = repo.page_rows(batch.id, offset=0, limit=cfg.suggestion_sample_size)
            headers = list(batch.headers or [])
            raw = [RawRow(row.row_number, dict(row.raw_data or {})) for row in sample]
        return suggest_mapping(
            headers, raw, sample_size=cfg.suggestion_sample_size, min_confidence=cfg.suggestion_min_confidence
        )

    # Mapping

    def apply_mapping(
        self,
        organization_id: int,
        user_id: Optional[int],
        batch_id: str,
        *,
        mapping: Optional[Any] = None,
        template_id: Optional[int] = None,
        save_as_template: bool = False,
        template_name: Optional[str] = None,
        template_description: Optional[str] = None,
    ) -> MappingResult:
        """
        Stage typed values for every raw row of the batch.

        Re-mapping replaces previous staged values, clears issues and resets row
        status. Template name conflicts are rejected before anything changes.
        """
        with self.locks.acquire(batch_id), self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            require_status(batch.status, "apply_mapping")

            template = None
            if template_id is not None:
                template = repo.get_template(organization_id, template_id)
                config = MappingConfig.model_validate(template.mapping_config)
            elif mapping is not None:
                try:
                    config = mapping if isinstance(mapping, MappingConfig) else MappingConfig.model_validate(mapping)
                except ValidationError as exc:
                    raise InvalidFormatError(f"Invalid mapping: {exc.errors()[0]['msg']}") from exc
            else:
                raise InvalidFormatError("Provide either a mapping or a template_id")

            missing = missing_source_columns(config, batch.headers or [])
            if missing:
                raise InvalidFormatError(f"Mapped columns not found in file: {', '.join(missing)}")

            name = (template_name or "").strip()
            if save_as_template:
                if not name:
                    raise InvalidFormatError("template_name is required when save_as_template is set")
                if repo.template_name_exists(organization_id, name):
                    raise DuplicateTemplateError(f"A mapping template named '{name}' already exists")

            rows = repo.rows_for_batch(batch.id)
            raw = [RawRow(row.row_number, dict(row.raw_data or {})) for row in rows]
            mapped = self._run_chunks(
                "mapping",
                partial(map_rows, config=config, default_decimal_separator=self.settings.default_decimal_separator),
                raw,
            )

            repo.clear_issues(batch.id)
            for row, values in zip(rows, mapped):
                row.mapped_data = make_json_safe(values)
                row.validation_status = RowStatus.PENDING.value
                row.action_taken = None
                row.target_record_id = None

            applied_template_id = None
            if template is not None:
                template.use_count = (template.use_count or 0) + 1
                template.last_used_at = utcnow()
                applied_template_id = template.id
            saved_template_id = None
            if save_as_template:
                saved = repo.create_template(
                    organization_id=organization_id,
                    name=name,
                    description=template_description,
                    source_columns=list(batch.headers or []),
                    column_fingerprint=batch.column_fingerprint,
                    mapping_config=config.model_dump(),
                    created_by=user_id,
                )
                saved_template_id = saved.id
                logger.info("Saved mapping template '%s' (%s) for organization %s", name, saved.id, organization_id)

            self._transition(
                repo, batch, BatchStatus.MAPPED,
                mapping_config=config.model_dump(),
                mapping_template_id=saved_template_id or applied_template_id,
                mapped_at=utcnow(),
                validated_at=None,
                valid_count=0,
                warning_count=0,
                error_count=0,
                quality_report=None,
            )
            batch = repo.get_batch(organization_id, batch_id)
            summary = _summary(batch)
            preview = self._preview_page(repo, batch.id, None, 0, False)

        logger.info("Mapped batch %s: %d rows, %d columns mapped", batch_id, len(mapped), len(config.mappings))
        self._notify(
            audit.EVENT_MAPPED, organization_id, user_id, batch_id,
            mapped_rows=len(mapped), template_id=saved_template_id or applied_template_id,
        )
        return MappingResult(
            batch=summary,
            mapped_row_count=len(mapped),
            preview=preview,
            template_id=saved_template_id or applied_template_id,
        )

    # Validation

    def validate(self, organization_id: int, user_id: Optional[int], batch_id: str) -> ValidationSummary:
        """Run every staged row through the business rules and store the findings."""
        cfg = self.settings
        with self.locks.acquire(batch_id), self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            require_status(batch.status, "validate")

            config = MappingConfig.model_validate(batch.mapping_config)
            source_columns = config.source_columns()
            matcher = self._matcher_for(config)
            field_rules = {
                m.target_field: [rule.model_dump() for rule in m.validation_rules]
                for m in config.mappings
                if m.validation_rules
            }

            rows = repo.rows_for_batch(batch.id)
            staged = [dict(row.mapped_data or {}) for row in rows]
            issues_per_row = self._run_chunks(
                "validation",
                partial(
                    _validate_chunk,
                    field_rules=field_rules,
                    source_columns=source_columns,
                    today=date.today(),
                    phone_min_digits=cfg.phone_min_digits,
                    phone_max_digits=cfg.phone_max_digits,
                ),
                staged,
            )

            duplicates = find_batch_duplicates(
                [(row.id, row.row_number, values) for row, values in zip(rows, staged)]
            )
            # Store lookups run before any staged write so this session holds no pending changes.
            known = find_existing_duplicates(
                self.store, matcher, organization_id, [(row.id, values) for row, values in zip(rows, staged)]
            )

            repo.clear_issues(batch.id)
            counts = {RowStatus.VALID.value: 0, RowStatus.WARNING.value: 0, RowStatus.INVALID.value: 0}
            for row, issues in zip(rows, issues_per_row):
                for duplicate in (duplicates.get(row.id), known.get(row.id)):
                    if duplicate is not None:
                        issues.append(replace(duplicate, source_column=source_columns.get(duplicate.field)))
                repo.add_issues(batch.id, row, issues)
                row.validation_status = classify_issues(issues)
                counts[row.validation_status] += 1

            quality_report = build_quality_report(staged, issues_per_row, [m.target_field for m in config.mappings])
            self._transition(
                repo, batch, BatchStatus.VALIDATED,
                valid_count=counts[RowStatus.VALID.value],
                warning_count=counts[RowStatus.WARNING.value],
                error_count=counts[RowStatus.INVALID.value],
                quality_report=make_json_safe(quality_report),
                validated_at=utcnow(),
            )

        result = ValidationSummary(
            batch_id=batch_id,
            valid_count=counts[RowStatus.VALID.value],
            warning_count=counts[RowStatus.WARNING.value],
            error_count=counts[RowStatus.INVALID.value],
            quality_report=quality_report,
        )
        logger.info(
            "Validated batch %s: %d valid, %d warning, %d error",
            batch_id, result.valid_count, result.warning_count, result.error_count,
        )
        self._notify(
            audit.EVENT_VALIDATED, organization_id, user_id, batch_id,
            valid=result.valid_count, warning=result.warning_count, error=result.error_count,
        )
        return result

    # Commit / rollback

    def commit(
        self,
        organization_id: int,
        user_id: Optional[int],
        batch_id: str,
        *,
        excluded_row_ids: Iterable[int] = (),
        included_row_ids: Iterable[int] = (),
        row_edits: Optional[Mapping[int, Mapping[str, Any]]] = None,
        dry_run: bool = False,
    ) -> CommitResult:
        """
        Write accepted rows to the customer store (or simulate it with ``dry_run``).

        A real commit moves the batch to ``committing`` before the first write,
        so a concurrent attempt fails with ``invalid_state``. Row failures are
        reported in the result. Rows flagged at upload by the cleaner are only
        written when listed in ``included_row_ids``.
        """
        started = time.monotonic()
        excluded_row_ids = {int(row_id) for row_id in excluded_row_ids}
        included_row_ids = {int(row_id) for row_id in included_row_ids}
        row_edits = {int(row_id): dict(edits) for row_id, edits in (row_edits or {}).items()}

        with self.locks.acquire(batch_id), self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            require_status(batch.status, "commit")
            matcher = self._matcher_for(MappingConfig.model_validate(batch.mapping_config))

            unknown = (excluded_row_ids | included_row_ids | set(row_edits)) - repo.row_ids(batch.id)
            if unknown:
                raise NotFoundError(f"Rows not in batch: {', '.join(str(r) for r in sorted(unknown))}")

            if not dry_run:
                self._transition(repo, batch, BatchStatus.COMMITTING)

            commit_kwargs = dict(
                excluded_row_ids=excluded_row_ids,
                included_row_ids=included_row_ids,
                row_edits=row_edits,
                dry_run=dry_run,
                decimal_separator=self.settings.default_decimal_separator,
            )
            if dry_run:
                result = run_commit(repo, self.store, matcher, organization_id, batch_id, **commit_kwargs)
            else:
                try:
                    result = run_commit(repo, self.store, matcher, organization_id, batch_id, **commit_kwargs)
                except Exception:
                    # Records already written stay in the undo log; finish so the batch can be rolled back.
                    db.rollback()
                    logger.exception("Commit of batch %s aborted", batch_id)
                    repo.compare_and_swap_status(
                        organization_id, batch_id, BatchStatus.COMMITTING.value, BatchStatus.COMMITTED.value,
                        committed_at=utcnow(), committed_by=user_id,
                    )
                    raise
                if not repo.compare_and_swap_status(
                    organization_id, batch_id, BatchStatus.COMMITTING.value, BatchStatus.COMMITTED.value,
                    committed_at=utcnow(), committed_by=user_id,
                ):
                    raise InvalidStateError(f"Batch {batch_id} left 'committing' unexpectedly")

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "%s batch %s: %d created, %d updated, %d skipped, %d failed in %d ms",
            "Dry-run commit of" if dry_run else "Committed",
            batch_id, result.created_count, result.updated_count,
            result.skipped_count, result.failed_count, result.duration_ms,
        )
        if not dry_run:
            self._notify(
                audit.EVENT_COMMITTED, organization_id, user_id, batch_id,
                created=result.created_count, updated=result.updated_count,
                skipped=result.skipped_count, failed=result.failed_count,
            )
        return result

    def rollback(self, organization_id: int, user_id: Optional[int], batch_id: str, reason: str) -> RollbackResult:
        """
        Undo a committed batch.

        Individual delete/restore failures are reported per entry; the batch
        still ends ``rolled_back`` once the replay pass completes.
        """
        with self.locks.acquire(batch_id), self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            require_status(batch.status, "rollback")
            if not repo.compare_and_swap_status(
                organization_id, batch_id, BatchStatus.COMMITTED.value, BatchStatus.ROLLING_BACK.value
            ):
                require_status(repo.get_batch(organization_id, batch_id).status, "rollback")
                raise InvalidStateError(f"Batch {batch_id} changed status concurrently")

            try:
                result = replay_rollback_log(repo, self.store, organization_id, batch_id)
            finally:
                rolled_back_at = utcnow()
                repo.compare_and_swap_status(
                    organization_id, batch_id, BatchStatus.ROLLING_BACK.value, BatchStatus.ROLLED_BACK.value,
                    rolled_back_at=rolled_back_at, rolled_back_by=user_id, rollback_reason=reason,
                )

        result.rolled_back_at = rolled_back_at
        logger.info(
            "Rolled back batch %s: %d deleted, %d reverted, %d conflicts, %d failed",
            batch_id, result.records_deleted, result.records_reverted, result.conflicts, result.failed_count,
        )
        self._notify(
            audit.EVENT_ROLLED_BACK, organization_id, user_id, batch_id,
            reason=reason, deleted=result.records_deleted, reverted=result.records_reverted,
            failed=result.failed_count,
        )
        return result

    # Lifecycle

    def cancel_batch(self, organization_id: int, user_id: Optional[int], batch_id: str) -> BatchSummary:
        with self.locks.acquire(batch_id), self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            require_status(batch.status, "cancel")
            self._transition(repo, batch, BatchStatus.CANCELLED, cancelled_at=utcnow())
            summary = _summary(repo.get_batch(organization_id, batch_id))

        logger.info("Cancelled batch %s", batch_id)
        self._notify(audit.EVENT_CANCELLED, organization_id, user_id, batch_id)
        return summary

    def list_templates(self, organization_id: int):
        with self._session_factory() as db:
            return ImportRepository(db).list_templates(organization_id)

    def get_template(self, organization_id: int, template_id: int):
        with self._session_factory() as db:
            return ImportRepository(db).get_template(organization_id, template_id)

    def delete_template(self, organization_id: int, template_id: int) -> None:
        with self._session_factory() as db:
            repo = ImportRepository(db)
            repo.delete_template(repo.get_template(organization_id, template_id))
            db.commit()
        logger.info("Deleted mapping template %s for organization %s", template_id, organization_id)

    def build_error_report(self, organization_id: int, batch_id: str) -> str:
        """Delimited text with one line per stored issue, in row order."""
        with self._session_factory() as db:
            repo = ImportRepository(db)
            batch = repo.get_batch(organization_id, batch_id)
            return build_error_report(repo.issues_for_batch(batch.id), self.settings.error_report_delimiter)
