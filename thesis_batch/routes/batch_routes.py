# thesis_batch/routes/batch_routes.py
import logging

from flask import Blueprint, current_app, jsonify, request

from thesis_batch.auth import current_user_id
from thesis_batch.errors import BatchError, ValidationError
from thesis_batch.models import db, JobStatus, Project
from thesis_batch.models.types import utcnow
from thesis_batch.services import bulk_planner, job_store, submission_service
from thesis_batch.services.analysis_catalog import analysis_name
from thesis_batch.services.batch_client import get_batch_client
from thesis_batch.services.reconciliation_service import reconcile, refresh_status

logger = logging.getLogger(__name__)

bp = Blueprint("thesis_batch", __name__)  # prefix applied in create_app

STATUS_MESSAGES = {
    JobStatus.PENDING: "Job waiting to be submitted...",
    JobStatus.VALIDATING: "The batch endpoint is validating the job...",
    JobStatus.IN_PROGRESS: "Analysis in progress... ({processed}/{total} chunks processed)",
    JobStatus.FINALIZING: "The batch endpoint is finalizing the results...",
    JobStatus.CANCELLING: "Cancellation in progress...",
    JobStatus.COMPLETED: "Analysis completed! {processed}/{total} chunks processed successfully.",
    JobStatus.FAILED: "Analysis failed. Check the error details.",
    JobStatus.EXPIRED: "Batch job expired after {hours}h. Retry with a new job.",
}

# --- Local helpers ---

def _iso(dt):
    return dt.replace(microsecond=0).isoformat() + "Z" if dt else None


def _time_elapsed(created_at) -> str:
    minutes = int((utcnow() - created_at).total_seconds() // 60) if created_at else 0
    hours, minutes = divmod(max(minutes, 0), 60)
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


def _status_message(job, window_hours: int) -> str:
    template = STATUS_MESSAGES.get(job.status, "Unknown status: {status}")
    return template.format(
        processed=job.processed_chunks, total=job.total_chunks,
        hours=window_hours, status=job.status,
    )


def _job_dict(job):
    return {
        "batch_job_id": job.id,
        "project_id": job.project_id,
        "analysis_type": job.analysis_type,
        "analysis_name": analysis_name(job.analysis_type),
        "status": job.status,
        "total_chunks": job.total_chunks,
        "processed_chunks": job.processed_chunks,
        "progress_percentage": job.progress_percentage,
        "results_processed": job.results_processed,
        "external_batch_id": job.external_batch_id,
        "error_message": job.error_message,
        "created_at": _iso(job.created_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "expires_at": _iso(job.expires_at),
        "metadata": job.job_metadata or {},
    }


def _result_dict(result):
    return {
        "id": result.id,
        "chunk_id": result.chunk_id,
        "chunk_number": result.chunk_number,
        "submission_position": result.submission_position,
        "analysis_type": result.analysis_type,
        "output_analysis": result.output_analysis,
        "processing_metadata": result.processing_metadata or {},
        "created_at": _iso(result.created_at),
    }


def _int_arg(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"'{name}' must be an integer")
    if not minimum <= value <= maximum:
        raise ValidationError(f"'{name}' must be between {minimum} and {maximum}")
    return value


def _required_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing '{key}'")
    return value.strip()


@bp.post("/create")
def create():
    """
    Batch job: create for one analysis type
    ---
    tags:
      - Thesis Batch
    consumes:
      - application/json
    parameters:
      - in: header
        name: X-User-Id
        type: string
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - project_id
            - chunk_ids
            - analysis_type
          properties:
            project_id:
              type: string
              example: "6f1c2a8e-0000-4000-8000-000000000001"
            chunk_ids:
              type: array
              items:
                type: string
              description: Fragments in the order they must be analysed.
            analysis_type:
              type: string
              example: "analisi_strutturale"
    responses:
      201:
        description: Job created and queued for submission
      400:
        description: Invalid request or content too large
      404:
        description: Project or chunks not found
      409:
        description: Analysis already completed or already running
      429:
        description: Daily limit reached
    """
    user_id = current_user_id()
    data = request.get_json(silent=True) or {}
    project_id = _required_str(data, "project_id")

    # ownership is checked before the analysis type is looked at
    job = submission_service.create_job(
        user_id, project_id, data.get("chunk_ids"), data.get("analysis_type")
    )
    project = db.session.get(Project, job.project_id)
    return jsonify({
        "ok": True,
        "batch_job_id": job.id,
        "status": job.status,
        "message": (
            f'Batch job created: analysis "{analysis_name(job.analysis_type)}" '
            f"on {job.total_chunks} chunks."
        ),
        "details": {
            "total_chunks": job.total_chunks,
            "analysis_type": analysis_name(job.analysis_type),
            "project_title": project.project_title if project else None,
        },
    }), 201


@bp.post("/bulk-create")
def bulk_create():
    """
    Batch job: create every missing analysis for the project level
    ---
    tags:
      - Thesis Batch
    consumes:
      - application/json
    parameters:
      - in: header
        name: X-User-Id
        type: string
        required: true
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - project_id
            - chunk_ids
          properties:
            project_id:
              type: string
            chunk_ids:
              type: array
              items:
                type: string
    responses:
      201:
        description: At least one job created
      409:
        description: Every analysis already completed
      429:
        description: Daily bulk limit reached
      502:
        description: No job could be created
    """
    user_id = current_user_id()
    data = request.get_json(silent=True) or {}
    project_id = _required_str(data, "project_id")

    result = bulk_planner.create_all(user_id, project_id, data.get("chunk_ids"))
    body = {"ok": bool(result.created), **result.to_dict()}
    if not result.created:
        body["message"] = "No batch job could be created"
        return jsonify(body), 502

    body["message"] = (
        f"{len(result.created)} analyses queued"
        + (f" ({len(result.errors)} not created)" if result.errors else "")
    )
    return jsonify(body), 201


@bp.get("/status/<job_id>")
def status(job_id: str):
    """
    Batch job: status and progress
    ---
    tags:
      - Thesis Batch
    parameters:
      - in: header
        name: X-User-Id
        type: string
        required: true
      - in: path
        name: job_id
        type: string
        required: true
    responses:
      200:
        description: OK
      404:
        description: Not found
    """
    user_id = current_user_id()
    job = job_store.get_job_for_user(job_id, user_id)

    if job.external_batch_id and job.status in JobStatus.IN_FLIGHT:
        try:
            job = refresh_status(job.id, get_batch_client())
        except BatchError as e:
            # serve the stored state; the poller will catch up
            logger.warning(f"Status refresh failed: {e.message}", extra={"batch_job_id": job.id})
            db.session.rollback()
            job = job_store.get_job(job_id)

    payload = _job_dict(job)
    payload.update({
        "ok": True,
        "time_elapsed": _time_elapsed(job.created_at),
        "message": _status_message(job, current_app.config["BATCH_WINDOW_HOURS"]),
    })
    return jsonify(payload), 200


@bp.get("/jobs")
def jobs():
    """
    Batch jobs of the caller
    ---
    tags:
      - Thesis Batch
    parameters:
      - in: header
        name: X-User-Id
        type: string
        required: true
      - in: query
        name: page
        type: integer
        default: 1
      - in: query
        name: limit
        type: integer
        default: 20
      - in: query
        name: status
        type: string
      - in: query
        name: project_id
        type: string
      - in: query
        name: analysis_type
        type: string
      - in: query
        name: sort_by
        type: string
        enum: [created_at, completed_at, status, analysis_type]
      - in: query
        name: sort_order
        type: string
        enum: [asc, desc]
    responses:
      200:
        description: OK
      400:
        description: Invalid query parameters
    """
    user_id = current_user_id()
    page = _int_arg("page", 1, 1, 10_000)
    limit = _int_arg("limit", 20, 1, 100)

    status_filter = request.args.get("status") or None
    if status_filter and status_filter not in JobStatus.ACTIVE + JobStatus.TERMINAL:
        raise ValidationError(f"Unknown status '{status_filter}'")
    sort_by = request.args.get("sort_by") or "created_at"
    if sort_by not in job_store.SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort by '{sort_by}'")
    sort_order = (request.args.get("sort_order") or "desc").lower()
    if sort_order not in ("asc", "desc"):
        raise ValidationError("'sort_order' must be asc or desc")

    listing = job_store.list_user_jobs(
        user_id,
        page=page,
        limit=limit,
        status=status_filter,
        project_id=request.args.get("project_id") or None,
        analysis_type=request.args.get("analysis_type") or None,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return jsonify({
        "ok": True,
        "jobs": [_job_dict(j) for j in listing["jobs"]],
        "pagination": listing["pagination"],
        "summary": listing["summary"],
    }), 200


@bp.get("/<job_id>/results")
def results(job_id: str):
    """
    Batch job: generated analyses, in submission order
    ---
    tags:
      - Thesis Batch
    parameters:
      - in: header
        name: X-User-Id
        type: string
        required: true
      - in: path
        name: job_id
        type: string
        required: true
    responses:
      200:
        description: OK
      404:
        description: Not found
    """
    job = job_store.get_job_for_user(job_id, current_user_id())
    rows = job_store.list_results(job.id)
    return jsonify({
        "ok": True,
        "batch_job_id": job.id,
        "status": job.status,
        "count": len(rows),
        "results": [_result_dict(r) for r in rows],
    }), 200


@bp.post("/process-results/<job_id>")
def process_results(job_id: str):
    """
    Batch job: reconcile with the external endpoint now
    ---
    tags:
      - Thesis Batch
    parameters:
      - in: header
        name: X-User-Id
        type: string
        required: true
      - in: path
        name: job_id
        type: string
        required: true
    responses:
      200:
        description: Reconciled (possibly still in flight)
      404:
        description: Not found
      503:
        description: External endpoint unreachable, retry later
    """
    job = job_store.get_job_for_user(job_id, current_user_id())
    job = reconcile(job.id, get_batch_client())
    metadata = job.job_metadata or {}
    return jsonify({
        "ok": True,
        "batch_job_id": job.id,
        "status": job.status,
        "processed_chunks": job.processed_chunks,
        "total_chunks": job.total_chunks,
        "results_processed": job.results_processed,
        "success_count": metadata.get("success_count"),
        "error_count": metadata.get("error_count"),
        "entry_errors": metadata.get("entry_errors", []),
    }), 200


@bp.post("/<job_id>/retry")
def retry(job_id: str):
    """
    Batch job: new job for the chunks that produced no result
    ---
    tags:
      - Thesis Batch
    parameters:
      - in: header
        name: X-User-Id
        type: string
        required: true
      - in: path
        name: job_id
        type: string
        required: true
    responses:
      201:
        description: Retry job created
      404:
        description: Not found
      409:
        description: Job still running or nothing left to retry
    """
    job = submission_service.retry_failed_chunks(current_user_id(), job_id)
    return jsonify({
        "ok": True,
        "batch_job_id": job.id,
        "retry_of": job_id,
        "status": job.status,
        "total_chunks": job.total_chunks,
    }), 201
