# thesis_batch/services/reconciliation_service.py
"""
Observe the external batch and, once it is completed, turn its result file
into AnalysisResult rows.

`reconcile` is safe to call any number of times, from the poller, the
webhook route or a manual retry. Result ingestion happens at most once per
job: the `claim_results` compare-and-set and the inserted rows are committed
in a single transaction.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app

from thesis_batch.errors import (
    BatchEndpointError,
    EntryError,
    ExpiryError,
    ReconciliationTransientError,
)
from thesis_batch.models import db, BatchJob, JobStatus
from thesis_batch.models.types import utcnow
from thesis_batch.services import job_store
from thesis_batch.services.batch_client import BatchInfo
from thesis_batch.services.payload_encoder import iter_jsonl
from thesis_batch.services.project_service import fetch_chunks_by_id

logger = logging.getLogger(__name__)

EXTERNAL_FAILED = ("failed", "cancelled")
EXTERNAL_EXPIRED = "expired"
EXTERNAL_COMPLETED = "completed"

# Entry error reasons
PARSE_ERROR = "PARSE_ERROR"
CHUNK_NOT_FOUND = "CHUNK_NOT_FOUND"
DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
INVALID_RESPONSE = "INVALID_RESPONSE"
REQUEST_FAILED = "REQUEST_FAILED"


def refresh_status(job_id: str, client) -> BatchJob:
    """Mirror the external status onto the row without touching results."""
    job = job_store.get_job(job_id)
    if job.is_terminal:
        return job
    if job.status == JobStatus.PENDING or not job.external_batch_id:
        _fail_if_never_submitted(job)
        return job_store.reload(job)

    remote = _fetch_remote(job, client)
    if remote.status != EXTERNAL_COMPLETED:
        _apply_remote_status(job, remote)
    return job_store.reload(job)


def reconcile(job_id: str, client) -> BatchJob:
    """
    Drive one job forward from whatever the external endpoint reports.

    Raises ReconciliationTransientError when the endpoint could not be read;
    the row is left as it was and the call can simply be repeated.
    """
    job = job_store.get_job(job_id)
    log_extra = {"batch_job_id": job.id, "external_batch_id": job.external_batch_id}
    if job.is_terminal or job.results_processed:
        logger.info(f"Nothing to reconcile, job is {job.status}", extra=log_extra)
        return job
    if job.status == JobStatus.PENDING or not job.external_batch_id:
        _fail_if_never_submitted(job)
        return job_store.reload(job)

    remote = _fetch_remote(job, client)
    if remote.status != EXTERNAL_COMPLETED:
        _apply_remote_status(job, remote)
        return job_store.reload(job)

    if not remote.output_file_id and not remote.error_file_id:
        raise ReconciliationTransientError("Completed batch has no output file yet", job_id=job.id)

    output = _download(client, remote.output_file_id, job.id)
    errors = _download(client, remote.error_file_id, job.id)

    try:
        if not job_store.claim_results(job.id, remote.output_file_id, remote.error_file_id):
            db.session.rollback()
            logger.info("Results already claimed by another reconciler", extra=log_extra)
            return job_store.reload(job)

        success_count, entry_errors = _ingest(job, output, errors)

        now = utcnow()
        metadata = {
            **(job.job_metadata or {}),
            "success_count": success_count,
            "error_count": len(entry_errors),
            "entry_errors": [e.to_dict() for e in entry_errors],
            "processing_completed_at": now.isoformat(),
            "external_request_counts": remote.request_counts,
        }
        job_store.transition_status(
            job.id, JobStatus.IN_FLIGHT, JobStatus.COMPLETED,
            completed_at=now, job_metadata=metadata,
        )
    except Exception:
        db.session.rollback()
        logger.exception("Result ingestion failed, rolled back", extra=log_extra)
        raise

    logger.info(
        f"Results ingested: {success_count} saved, {len(entry_errors)} entry errors",
        extra=log_extra,
    )
    return job_store.reload(job)


def _fetch_remote(job: BatchJob, client) -> BatchInfo:
    try:
        return client.get_batch(job.external_batch_id)
    except BatchEndpointError as e:
        raise ReconciliationTransientError(e.message, job_id=job.id) from e


def _download(client, file_id: Optional[str], job_id: str) -> bytes:
    if not file_id:
        return b""
    try:
        raw = client.download(file_id)
    except BatchEndpointError as e:
        raise ReconciliationTransientError(e.message, job_id=job_id) from e
    # kept as bytes: json.loads decodes each line strictly, so invalid UTF-8
    # becomes a PARSE_ERROR for that line only
    return raw if isinstance(raw, bytes) else str(raw).encode("utf-8")


def _apply_remote_status(job: BatchJob, remote: BatchInfo) -> None:
    log_extra = {"batch_job_id": job.id, "external_batch_id": remote.id}

    if remote.status in EXTERNAL_FAILED:
        detail = "; ".join(remote.errors) if remote.errors else "no details"
        message = f"External batch {remote.status}: {detail}"
        if job_store.mark_failed(job.id, message, from_states=JobStatus.IN_FLIGHT):
            logger.warning(message, extra=log_extra)
        return

    if remote.status == EXTERNAL_EXPIRED:
        _mark_expired(job, "External batch expired before completing")
        return

    if _expire_if_overdue(job):
        return

    if remote.status in JobStatus.IN_FLIGHT and remote.status != job.status:
        metadata = {**(job.job_metadata or {}), "external_request_counts": remote.request_counts}
        if job_store.transition_status(
            job.id, JobStatus.IN_FLIGHT, remote.status, job_metadata=metadata
        ):
            logger.info(f"Status {job.status} -> {remote.status}", extra=log_extra)
    elif remote.status not in JobStatus.IN_FLIGHT:
        logger.warning(f"Unknown external status {remote.status!r}, ignored", extra=log_extra)


def _fail_if_never_submitted(job: BatchJob) -> bool:
    # pending only ever moves to an in-flight state or to failed
    if job.expires_at is None or job.expires_at > utcnow():
        return False
    return job_store.mark_failed(
        job.id, "Submission failed: job was never submitted within its window",
        from_states=[JobStatus.PENDING],
    )


def _expire_if_overdue(job: BatchJob) -> bool:
    if job.expires_at is None or job.expires_at > utcnow():
        return False
    return _mark_expired(job, "Completion window elapsed before the batch finished")


def _mark_expired(job: BatchJob, reason: str) -> bool:
    hours = current_app.config["BATCH_WINDOW_HOURS"]
    error = ExpiryError(f"{reason} ({hours}h window)")
    moved = job_store.transition_status(
        job.id, JobStatus.IN_FLIGHT, JobStatus.EXPIRED,
        error_message=error.message, completed_at=utcnow(),
    )
    if moved:
        logger.warning(error.message, extra={"batch_job_id": job.id})
    return moved


# ---------------------------
# Result file parsing
# ---------------------------

def _ingest(job: BatchJob, output: bytes, errors: bytes) -> Tuple[int, List[EntryError]]:
    positions = {cid: i for i, cid in enumerate(job.selected_chunk_ids or [])}
    chunks = fetch_chunks_by_id(list(positions), job.project_id)
    snapshot_chars = current_app.config["RESULT_INPUT_SNAPSHOT_CHARS"]

    seen = set()
    success_count = 0
    entry_errors: List[EntryError] = []

    for line_no, line in iter_jsonl(output):
        try:
            chunk_id, content, body = _parse_entry(line, line_no)
            if chunk_id not in positions:
                raise EntryError("Correlation id is not part of this job", CHUNK_NOT_FOUND,
                                 chunk_id=chunk_id, line=line_no)
            if chunk_id in seen:
                raise EntryError("Correlation id appears more than once", DUPLICATE_ENTRY,
                                 chunk_id=chunk_id, line=line_no)
            chunk = chunks.get(chunk_id)
            if chunk is None:
                raise EntryError("Fragment no longer exists", CHUNK_NOT_FOUND,
                                 chunk_id=chunk_id, line=line_no)
        except EntryError as e:
            entry_errors.append(e)
            continue

        seen.add(chunk_id)
        job_store.add_result(
            session_id=job.project_id,
            batch_job_id=job.id,
            chunk_id=chunk_id,
            chunk_number=chunk.order_index,
            submission_position=positions[chunk_id],
            analysis_type=job.analysis_type,
            input_text=(chunk.content or "")[:snapshot_chars],
            output_analysis=content,
            processing_metadata={
                "method": "thesis_batch",
                "external_batch_id": job.external_batch_id,
                "chunk_id": chunk_id,
                "original_order_index": chunk.order_index,
                "usage": body.get("usage"),
                "model": body.get("model"),
                "processed_at": utcnow().isoformat(),
                "analysis_type": job.analysis_type,
            },
        )
        if job_store.increment_processed(job.id):
            success_count += 1
        else:
            logger.warning("processed_chunks already at total", extra={"batch_job_id": job.id})

    for line_no, line in iter_jsonl(errors):
        entry_errors.append(_error_file_entry(line, line_no))

    return success_count, entry_errors


def _parse_entry(line: bytes, line_no: int) -> Tuple[str, str, Dict[str, Any]]:
    try:
        record = json.loads(line)
    except ValueError as e:
        raise EntryError(f"Malformed result line: {e}", PARSE_ERROR, line=line_no) from e
    if not isinstance(record, dict):
        raise EntryError("Result line is not an object", PARSE_ERROR, line=line_no)

    chunk_id = record.get("custom_id")
    if not isinstance(chunk_id, str) or not chunk_id:
        raise EntryError("Result line has no correlation id", PARSE_ERROR, line=line_no)

    response = record.get("response")
    if not isinstance(response, dict):
        response = {}
    body = response.get("body")
    if not isinstance(body, dict):
        body = {}
    content = _message_content(body)
    if response.get("status_code") != 200 or not content:
        raise EntryError(
            _error_text(record, response, body), INVALID_RESPONSE, chunk_id=chunk_id, line=line_no
        )
    return chunk_id, content, body


def _message_content(body: Dict[str, Any]) -> Optional[str]:
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) and content.strip() else None


def _error_text(record: Dict[str, Any], response: Dict[str, Any], body: Dict[str, Any]) -> str:
    error = body.get("error") or record.get("error")
    if isinstance(error, dict):
        error = error.get("message") or error.get("code")
    if error:
        return str(error)
    return f"Unexpected response (status {response.get('status_code')}) or empty content"


def _error_file_entry(line: bytes, line_no: int) -> EntryError:
    try:
        record = json.loads(line)
    except ValueError as e:
        return EntryError(f"Malformed error line: {e}", PARSE_ERROR, line=line_no)
    if not isinstance(record, dict):
        return EntryError("Error line is not an object", PARSE_ERROR, line=line_no)
    response = record.get("response")
    if not isinstance(response, dict):
        response = {}
    body = response.get("body")
    if not isinstance(body, dict):
        body = {}
    return EntryError(
        _error_text(record, response, body),
        REQUEST_FAILED,
        chunk_id=record.get("custom_id"),
        line=line_no,
    )
