"""Error taxonomy for the batch pipeline.

Every error carries a stable string code, a human-readable message and the
HTTP status used when it reaches a route. Errors raised by the external batch
endpoint are always translated into one of these before they are stored on a
job or returned to a caller.
"""
from typing import Any, Dict, Optional


class BatchError(Exception):
    code = "E_INTERNAL"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.extra}


# --- Validation (synchronous, user-correctable, never retried) ---

class ValidationError(BatchError):
    code = "E_INVALID_REQUEST"
    status_code = 400


class ProjectNotFoundError(ValidationError):
    code = "E_PROJECT_NOT_FOUND"
    status_code = 404


class ChunkNotFoundError(ValidationError):
    code = "E_CHUNK_NOT_FOUND"
    status_code = 404


class InvalidAnalysisTypeError(ValidationError):
    code = "E_INVALID_ANALYSIS_TYPE"


class DuplicateAnalysisError(ValidationError):
    code = "E_DUPLICATE_ANALYSIS"
    status_code = 409

    def __init__(self, message: str, existing_result_id: int):
        super().__init__(message, existing_result_id=existing_result_id)
        self.existing_result_id = existing_result_id


class JobAlreadyActiveError(ValidationError):
    code = "E_JOB_ALREADY_ACTIVE"
    status_code = 409

    def __init__(self, message: str, active_job_id: str):
        super().__init__(message, active_job_id=active_job_id)
        self.active_job_id = active_job_id


class AllAnalysesCompletedError(ValidationError):
    code = "E_ALL_ANALYSES_COMPLETED"
    status_code = 409


class ContentTooLargeError(ValidationError):
    code = "E_CONTENT_TOO_LARGE"


class QuotaExceededError(ValidationError):
    code = "E_QUOTA_EXCEEDED"
    status_code = 429


class JobNotFoundError(BatchError):
    code = "E_JOB_NOT_FOUND"
    status_code = 404


class JobNotRetryableError(ValidationError):
    code = "E_JOB_NOT_RETRYABLE"
    status_code = 409


# --- Asynchronous phases ---

class SubmissionError(BatchError):
    """Upload or remote batch creation failed; stored on the job as `failed`."""
    code = "E_SUBMISSION_FAILED"
    status_code = 502


class ReconciliationTransientError(BatchError):
    """Network/IO failure before the result file was fully read. Safe to retry."""
    code = "E_RECONCILIATION_TRANSIENT"
    status_code = 503


class ExpiryError(BatchError):
    code = "E_BATCH_EXPIRED"
    status_code = 410


class EntryError(BatchError):
    """One result line could not be turned into an AnalysisResult."""
    code = "E_ENTRY"
    status_code = 422

    def __init__(self, message: str, reason: str, chunk_id: Optional[str] = None,
                 line: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.chunk_id = chunk_id
        self.line = line

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.reason, "error": self.message}
        if self.chunk_id is not None:
            out["chunk_id"] = self.chunk_id
        if self.line is not None:
            out["line"] = self.line
        return out


class BatchEndpointError(BatchError):
    """Transport-level failure talking to the external batch endpoint."""
    code = "E_BATCH_ENDPOINT"
    status_code = 502


class UnauthenticatedError(BatchError):
    code = "E_UNAUTHENTICATED"
    status_code = 401
