"""
Batch-level errors raised by the import pipeline.

Each error carries a machine-readable ``code`` and the HTTP status the router
maps it to. Row-level conditions during commit and rollback are never raised;
they are reported on the per-row outcomes using the codes below.
"""

# Per-row outcome codes (reported, not raised)
VALIDATION_BLOCKED = "validation_blocked"
WRITE_FAILED = "write_failed"
EXCLUDED = "excluded"


class ImportPipelineError(Exception):
    code = "import_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidFormatError(ImportPipelineError):
    code = "invalid_format"
    status_code = 400


class FileTooLargeError(ImportPipelineError):
    code = "too_large"
    status_code = 413


class TooManyRowsError(ImportPipelineError):
    code = "too_many_rows"
    status_code = 413


class InvalidStateError(ImportPipelineError):
    code = "invalid_state"
    status_code = 409


class NotFoundError(ImportPipelineError):
    code = "not_found"
    status_code = 404


class AlreadyRolledBackError(ImportPipelineError):
    code = "already_rolled_back"
    status_code = 409


class DuplicateTemplateError(ImportPipelineError):
    code = "duplicate_template"
    status_code = 409


class StageTimeoutError(ImportPipelineError):
    code = "timeout"
    status_code = 504
