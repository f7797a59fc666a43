# thesis_batch/services/submission_service.py
"""
Job creation and the asynchronous submission phase.

`create_job` validates synchronously and reserves a `pending` row, then
hands the job to a worker (`dispatch_submission`). `submit_job` runs in the
worker: it encodes the request file, uploads it, creates the remote batch and
records the remote ids. Its failures end up on the row, never at the caller.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from flask import current_app

from thesis_batch.errors import (
    BatchError,
    ContentTooLargeError,
    DuplicateAnalysisError,
    InvalidAnalysisTypeError,
    JobAlreadyActiveError,
    JobNotRetryableError,
    QuotaExceededError,
    SubmissionError,
    ValidationError,
)
from thesis_batch.models import db, BatchJob, JobStatus, Project, RawChunk
from thesis_batch.models.types import utcnow
from thesis_batch.services import job_store
from thesis_batch.services.analysis_catalog import analysis_name, valid_analysis_types
from thesis_batch.services.payload_encoder import encode_batch_file
from thesis_batch.services.project_service import get_active_project, get_ordered_chunks
from thesis_batch.services.prompt_service import SYSTEM_PROMPT, build_prompt

logger = logging.getLogger(__name__)


# ---------------------------
# Validation helpers
# ---------------------------

def validate_chunk_ids(chunk_ids: Any) -> List[str]:
    max_chunks = current_app.config["MAX_CHUNKS_PER_JOB"]
    if not isinstance(chunk_ids, (list, tuple)) or not chunk_ids:
        raise ValidationError("Chunk list is missing or empty")
    if len(chunk_ids) > max_chunks:
        raise ValidationError(
            f"Too many chunks selected: {len(chunk_ids)}. Maximum allowed: {max_chunks}"
        )
    for cid in chunk_ids:
        if not isinstance(cid, str) or not cid.strip():
            raise ValidationError("Invalid chunk id in list")
    if len(set(chunk_ids)) != len(chunk_ids):
        raise ValidationError("Chunk ids must be distinct")
    return list(chunk_ids)


def check_content_size(chunks: Sequence[RawChunk]) -> Dict[str, int]:
    cfg = current_app.config
    total_chars = sum(c.char_count or len(c.content or "") for c in chunks)
    avg_chars = total_chars / len(chunks)
    if avg_chars > cfg["MAX_AVG_CHARS_PER_CHUNK"]:
        raise ContentTooLargeError(
            f"Chunks too long on average: {round(avg_chars):,} characters. "
            f"Maximum: {cfg['MAX_AVG_CHARS_PER_CHUNK']:,} characters per chunk."
        )
    if total_chars > cfg["MAX_TOTAL_CHARS_PER_JOB"]:
        raise ContentTooLargeError(
            f"Too much content: {total_chars:,} characters. "
            f"Maximum: {cfg['MAX_TOTAL_CHARS_PER_JOB']:,} characters per batch job."
        )
    return {"total_chars": total_chars, "avg_chars_per_chunk": round(avg_chars)}


def start_of_day(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def check_daily_quota(user_id: str, jobs_to_create: int, limit: int) -> int:
    used = job_store.count_jobs_since(user_id, start_of_day())
    if used + jobs_to_create > limit:
        raise QuotaExceededError(
            f"Daily batch job limit reached: {used} of {limit} used, "
            f"{jobs_to_create} requested.",
            used=used,
            limit=limit,
        )
    return used


def check_not_duplicate(project_id: str, analysis_type: str) -> None:
    existing = job_store.find_completed_result(project_id, analysis_type)
    if existing is not None:
        raise DuplicateAnalysisError(
            f'Analysis "{analysis_name(analysis_type)}" already completed for this project. '
            "Each analysis type can run only once per project.",
            existing_result_id=existing.id,
        )
    active = job_store.find_active_job(project_id, analysis_type)
    if active is not None:
        raise JobAlreadyActiveError(
            f'Analysis "{analysis_name(analysis_type)}" is already being processed.',
            active_job_id=active.id,
        )


def chunk_previews(chunks: Sequence[RawChunk]) -> List[Dict[str, Any]]:
    return [
        {"id": c.id, "char_count": c.char_count, "content_preview": (c.content or "")[:100] + "..."}
        for c in chunks[:3]
    ]


# ---------------------------
# Synchronous phase
# ---------------------------

def create_job(
    user_id: str,
    project_id: str,
    chunk_ids: Sequence[str],
    analysis_type: str,
    extra_metadata: Optional[Dict[str, Any]] = None,
    daily_limit: Optional[int] = None,
) -> BatchJob:
    """Validate, reserve a `pending` BatchJob and dispatch its submission."""
    project = get_active_project(user_id, project_id)
    chunk_ids = validate_chunk_ids(chunk_ids)
    chunks = get_ordered_chunks(user_id, project_id, chunk_ids)

    if not isinstance(analysis_type, str) or not analysis_type:
        raise InvalidAnalysisTypeError("Missing 'analysis_type'")
    if analysis_type not in valid_analysis_types(project.level):
        raise InvalidAnalysisTypeError(
            f'Analysis type "{analysis_type}" is not valid for level {project.level}'
        )

    check_not_duplicate(project_id, analysis_type)
    sizes = check_content_size(chunks)
    check_daily_quota(
        user_id, 1, daily_limit if daily_limit is not None else current_app.config["DAILY_JOB_LIMIT"]
    )

    return _reserve_and_dispatch(user_id, project, chunks, analysis_type, sizes, extra_metadata)


def _reserve_and_dispatch(
    user_id: str,
    project: Project,
    chunks: Sequence[RawChunk],
    analysis_type: str,
    sizes: Dict[str, int],
    extra_metadata: Optional[Dict[str, Any]],
) -> BatchJob:
    metadata = {
        "created_by": "thesis-batch-api",
        "project_title": project.project_title,
        "project_level": project.level,
        "project_faculty": project.faculty,
        "analysis_name": analysis_name(analysis_type),
        "chunks_preview": chunk_previews(chunks),
        **sizes,
        **(extra_metadata or {}),
    }
    window = timedelta(hours=current_app.config["BATCH_WINDOW_HOURS"])
    job = job_store.create_job(
        user_id=user_id,
        project_id=project.id,
        analysis_type=analysis_type,
        chunk_ids=[c.id for c in chunks],
        expires_at=utcnow() + window,
        metadata=metadata,
    )
    logger.info(
        f"Batch job created for {analysis_type} on {len(chunks)} chunks",
        extra={"batch_job_id": job.id, "project_id": project.id},
    )
    try:
        dispatch_submission(job.id)
    except Exception as e:
        logger.exception("Could not queue submission", extra={"batch_job_id": job.id})
        _fail_submission(job.id, f"could not queue the job ({type(e).__name__})")
    return job_store.reload(job)


def dispatch_submission(job_id: str) -> None:
    """Fire-and-forget: queue the submission phase on a worker."""
    from thesis_batch.tasks.batch_tasks import submit_batch_job  # deferred, avoids circular import
    submit_batch_job.delay(job_id)


# ---------------------------
# Asynchronous phase (worker)
# ---------------------------

def submit_job(job_id: str, client) -> Optional[BatchJob]:
    """
    Encode, upload and create the remote batch for a `pending` job.

    Any failure marks the job `failed` with a readable message. Returns the
    reloaded job, or None if the job was no longer pending.
    """
    job = job_store.get_job(job_id)
    if job.status != JobStatus.PENDING or job.external_batch_id:
        logger.info(f"Skipping submission, job is {job.status}", extra={"batch_job_id": job_id})
        return None

    try:
        project = db.session.get(Project, job.project_id)
        chunks = get_ordered_chunks(job.user_id, job.project_id, job.selected_chunk_ids)
        payload = encode_batch_file(
            ((c.id, c.content) for c in chunks),
            build_prompt,
            project.prompt_context(job.analysis_type),
            model=current_app.config["BATCH_MODEL"],
            system_prompt=SYSTEM_PROMPT,
            endpoint=current_app.config["BATCH_ENDPOINT"],
        )

        file_id = client.upload(
            payload.encode("ascii"), f"thesis_batch_{job.analysis_type}_{job.id}.jsonl"
        )
        remote = client.create_batch(file_id, metadata={
            "thesis_batch_job_id": job.id,
            "project_id": job.project_id,
            "analysis_type": job.analysis_type,
            "level": project.level,
        })
    except BatchError as e:
        return _fail_submission(job_id, e.message)
    except Exception as e:
        logger.exception("Unexpected submission error", extra={"batch_job_id": job_id})
        return _fail_submission(job_id, f"{type(e).__name__}: {e}")

    external_status = remote.status if remote.status in JobStatus.IN_FLIGHT else JobStatus.VALIDATING
    metadata = {
        **(job.job_metadata or {}),
        "external_created_at": remote.created_at,
        "external_request_counts": remote.request_counts,
        "completion_window": remote.completion_window,
    }
    if not job_store.mark_submitted(job_id, external_status, remote.id, file_id, metadata):
        # Another worker already submitted this row; the remote batch we just
        # created is orphaned and will simply expire on the provider side.
        logger.warning(
            f"Job was submitted concurrently; orphaned remote batch {remote.id}",
            extra={"batch_job_id": job_id},
        )
        return job_store.reload(job)

    logger.info(
        f"Remote batch created with status {remote.status}",
        extra={"batch_job_id": job_id, "external_batch_id": remote.id},
    )
    return job_store.reload(job)


def _fail_submission(job_id: str, reason: str) -> BatchJob:
    error = SubmissionError(f"Submission failed: {reason}")
    logger.error(error.message, extra={"batch_job_id": job_id})
    job_store.mark_failed(job_id, error.message, from_states=[JobStatus.PENDING])
    return job_store.get_job(job_id)


# ---------------------------
# Retry of fragments without a result
# ---------------------------

def retry_failed_chunks(user_id: str, job_id: str) -> BatchJob:
    """
    New job for the fragments of a terminal job that produced no result,
    in their original order. The kind-level duplicate check is replaced by a
    per-fragment one, since the kind is partially completed by design.
    """
    original = job_store.get_job_for_user(job_id, user_id)
    if not original.is_terminal:
        raise JobNotRetryableError(f"Job is still {original.status}; retry once it has finished")

    done = set(job_store.result_chunk_ids(original.id))
    pending_ids = [cid for cid in original.selected_chunk_ids if cid not in done]
    if not pending_ids:
        raise JobNotRetryableError("Every chunk of this job already has a result")

    project = get_active_project(user_id, original.project_id)
    chunks = get_ordered_chunks(user_id, project.id, pending_ids)
    already = job_store.chunks_with_results(project.id, original.analysis_type, pending_ids)
    if already:
        raise JobNotRetryableError(
            f"{len(already)} chunk(s) were analysed by another job in the meantime",
            chunk_ids=already,
        )
    active = job_store.find_active_job(project.id, original.analysis_type)
    if active is not None:
        raise JobAlreadyActiveError("A job for this analysis is already running", active_job_id=active.id)

    sizes = check_content_size(chunks)
    check_daily_quota(user_id, 1, current_app.config["DAILY_JOB_LIMIT"])
    return _reserve_and_dispatch(
        user_id, project, chunks, original.analysis_type, sizes,
        {"created_by": "thesis-batch-retry", "retry_of": original.id},
    )
