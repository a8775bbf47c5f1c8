"""
Import batch endpoints: upload, mapping, validation, commit, rollback,
batch/template lifecycle and the error report export.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile

from customer_import.api.dependencies import Caller, get_caller, get_pipeline
from customer_import.api.schemas.imports import (
    ApplyMappingRequest,
    BatchDetailResponse,
    BatchListResponse,
    BatchResponse,
    CancelResponse,
    CommitRequest,
    CommitResponse,
    FieldSuggestionResponse,
    MappingResponse,
    PreviewPageResponse,
    RollbackRequest,
    RollbackResponse,
    SuggestMappingResponse,
    TemplateResponse,
    UploadResponse,
    ValidationResponse,
)
from customer_import.domain.imports.errors import ImportPipelineError
from customer_import.domain.imports.pipeline import ImportPipeline

router = APIRouter(prefix="/imports", tags=["imports"])

logger = logging.getLogger(__name__)


def _http_error(exc: ImportPipelineError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


@router.post("/upload", response_model=UploadResponse)
def upload_file(
    file: UploadFile = File(...),
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    """
    Upload a CSV or Excel file and stage it as a new import batch.

    Returns the batch, the first page of raw rows, a profile of every column
    and the suggested column mapping.
    """
    logger.info("Received upload '%s' for organization %s", file.filename, caller.organization_id)
    # Read one byte past the ceiling so oversize files are detected without buffering them whole.
    content = file.file.read(pipeline.settings.upload_max_file_size_bytes + 1)
    try:
        result = pipeline.upload(caller.organization_id, caller.user_id, content, file.filename or "")
    except ImportPipelineError as e:
        logger.info("Upload of '%s' rejected: %s", file.filename, e.message)
        raise _http_error(e)
    return UploadResponse.model_validate(result)


@router.get("/batches", response_model=BatchListResponse)
def list_batches(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        batches, total = pipeline.list_batches(caller.organization_id, status=status, limit=limit, offset=offset)
    except ImportPipelineError as e:
        raise _http_error(e)
    return BatchListResponse(
        batches=[BatchResponse.model_validate(b) for b in batches],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/batches/{batch_id}", response_model=BatchDetailResponse)
def get_batch(
    batch_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    errors_only: bool = Query(default=False),
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        batch, preview = pipeline.get_batch(
            caller.organization_id, batch_id, limit=limit, offset=offset, errors_only=errors_only
        )
    except ImportPipelineError as e:
        raise _http_error(e)
    return BatchDetailResponse(
        batch=BatchResponse.model_validate(batch),
        preview=PreviewPageResponse.model_validate(preview),
    )


@router.get("/batches/{batch_id}/preview", response_model=PreviewPageResponse)
def get_preview(
    batch_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    errors_only: bool = Query(default=False),
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    """Paged staged rows; ``errors_only`` restricts the page to rows with blocking errors."""
    try:
        preview = pipeline.get_preview(
            caller.organization_id, batch_id, limit=limit, offset=offset, errors_only=errors_only
        )
    except ImportPipelineError as e:
        raise _http_error(e)
    return PreviewPageResponse.model_validate(preview)


@router.post("/batches/{batch_id}/suggest-mapping", response_model=SuggestMappingResponse)
def suggest_mapping(
    batch_id: str,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        suggestions = pipeline.suggest_mapping(caller.organization_id, batch_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return SuggestMappingResponse(
        batch_id=batch_id,
        suggestions=[FieldSuggestionResponse.model_validate(s) for s in suggestions],
    )


@router.post("/batches/{batch_id}/mapping", response_model=MappingResponse)
def apply_mapping(
    batch_id: str,
    request: ApplyMappingRequest,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    """
    Apply a mapping (inline or from a saved template) to the batch.

    Optionally saves the mapping as a named template; a name already used by
    the organization is rejected with 409 before anything is changed.
    """
    try:
        result = pipeline.apply_mapping(
            caller.organization_id,
            caller.user_id,
            batch_id,
            mapping=request.mapping,
            template_id=request.template_id,
            save_as_template=request.save_as_template,
            template_name=request.template_name,
            template_description=request.template_description,
        )
    except ImportPipelineError as e:
        raise _http_error(e)
    return MappingResponse.model_validate(result)


@router.post("/batches/{batch_id}/validate", response_model=ValidationResponse)
def validate_batch(
    batch_id: str,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        summary = pipeline.validate(caller.organization_id, caller.user_id, batch_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return ValidationResponse.model_validate(summary)


@router.post("/batches/{batch_id}/commit", response_model=CommitResponse)
def commit_batch(
    batch_id: str,
    request: CommitRequest,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    """
    Write accepted rows to the customer register.

    With ``dry_run`` the same decisions are computed and counted but nothing is
    written and the batch status does not change.
    """
    try:
        result = pipeline.commit(
            caller.organization_id,
            caller.user_id,
            batch_id,
            excluded_row_ids=request.excluded_row_ids,
            included_row_ids=request.included_row_ids,
            row_edits=request.row_edits,
            dry_run=request.dry_run,
        )
    except ImportPipelineError as e:
        raise _http_error(e)
    return CommitResponse.model_validate(result)


@router.post("/batches/{batch_id}/rollback", response_model=RollbackResponse)
def rollback_batch(
    batch_id: str,
    request: RollbackRequest,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        result = pipeline.rollback(caller.organization_id, caller.user_id, batch_id, request.reason)
    except ImportPipelineError as e:
        raise _http_error(e)
    return RollbackResponse.model_validate(result)


@router.delete("/batches/{batch_id}", response_model=CancelResponse)
def cancel_batch(
    batch_id: str,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    """Cancel a batch that has not been committed. Batches are never physically deleted."""
    try:
        batch = pipeline.cancel_batch(caller.organization_id, caller.user_id, batch_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return CancelResponse(batch_id=batch.id, status=batch.status)


@router.get("/batches/{batch_id}/error-report")
def download_error_report(
    batch_id: str,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        content = pipeline.build_error_report(caller.organization_id, batch_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import-{batch_id}-errors.csv"'},
    )


@router.get("/templates", response_model=List[TemplateResponse])
def list_templates(
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return [TemplateResponse.model_validate(t) for t in pipeline.list_templates(caller.organization_id)]


@router.get("/templates/{template_id}", response_model=TemplateResponse)
def get_template(
    template_id: int,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        template = pipeline.get_template(caller.organization_id, template_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return TemplateResponse.model_validate(template)


@router.delete("/templates/{template_id}")
def delete_template(
    template_id: int,
    caller: Caller = Depends(get_caller),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    try:
        pipeline.delete_template(caller.organization_id, template_id)
    except ImportPipelineError as e:
        raise _http_error(e)
    return {"success": True, "template_id": template_id}
