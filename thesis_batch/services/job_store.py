# thesis_batch/services/job_store.py
"""
Persistence for BatchJob and AnalysisResult rows.

Concurrently mutated fields (`status`, `processed_chunks`, `results_processed`
and the external ids) are only ever changed through guarded UPDATE
statements, never read-modify-write on a loaded object.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from thesis_batch.errors import JobAlreadyActiveError, JobNotFoundError
from thesis_batch.models import db, AnalysisResult, BatchJob, JobStatus
from thesis_batch.models.types import utcnow

SORTABLE_FIELDS = ("created_at", "completed_at", "status", "analysis_type")


# ---------------------------
# BatchJob
# ---------------------------

def create_job(
    user_id: str,
    project_id: str,
    analysis_type: str,
    chunk_ids: Sequence[str],
    expires_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> BatchJob:
    job = BatchJob(
        user_id=user_id,
        project_id=project_id,
        analysis_type=analysis_type,
        selected_chunk_ids=list(chunk_ids),
        total_chunks=len(chunk_ids),
        processed_chunks=0,
        status=JobStatus.PENDING,
        expires_at=expires_at,
        job_metadata=dict(metadata or {}),
    )
    db.session.add(job)
    try:
        db.session.commit()
    except IntegrityError:
        # lost the race against a concurrent create for the same kind
        db.session.rollback()
        active = find_active_job(project_id, analysis_type)
        if active is None:
            raise
        raise JobAlreadyActiveError(
            f"Analysis {analysis_type} is already being processed for this project",
            active_job_id=active.id,
        )
    return job


def get_job(job_id: str) -> BatchJob:
    job = db.session.get(BatchJob, job_id)
    if job is None:
        raise JobNotFoundError(f"Batch job {job_id} not found")
    return job


def get_job_for_user(job_id: str, user_id: str) -> BatchJob:
    job = db.session.get(BatchJob, job_id)
    if job is None or job.user_id != user_id:
        raise JobNotFoundError("Batch job not found or not authorized")
    return job


def reload(job: BatchJob) -> BatchJob:
    db.session.refresh(job)
    return job


def transition_status(job_id: str, from_states: Iterable[str], to_state: str, **fields: Any) -> bool:
    """Compare-and-set on `status`. Returns False when the row was not in `from_states`."""
    values = {"status": to_state, "updated_at": utcnow(), **fields}
    stmt = (
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.status.in_(list(from_states)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    rowcount = db.session.execute(stmt).rowcount
    db.session.commit()
    return rowcount == 1


def mark_submitted(
    job_id: str,
    external_status: str,
    external_batch_id: str,
    external_input_file_id: str,
    metadata: Dict[str, Any],
) -> bool:
    """Record the remote ids. Only succeeds once, from `pending` with empty ids."""
    now = utcnow()
    stmt = (
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.status == JobStatus.PENDING,
            BatchJob.external_batch_id.is_(None),
        )
        .values(
            status=external_status,
            external_batch_id=external_batch_id,
            external_input_file_id=external_input_file_id,
            job_metadata=metadata,
            started_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    rowcount = db.session.execute(stmt).rowcount
    db.session.commit()
    return rowcount == 1


def mark_failed(job_id: str, message: str, from_states: Iterable[str] = JobStatus.ACTIVE) -> bool:
    return transition_status(
        job_id, from_states, JobStatus.FAILED, error_message=message, completed_at=utcnow()
    )


def claim_results(job_id: str, output_file_id: str, error_file_id: Optional[str]) -> bool:
    """
    Take the right to turn the result file into rows. Not committed here: the
    caller commits the claim together with the rows, so a crash or a second
    reconciler never sees a half-processed job.
    """
    stmt = (
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.results_processed.is_(False),
            BatchJob.status.in_(list(JobStatus.IN_FLIGHT)),
        )
        .values(
            results_processed=True,
            external_output_file_id=output_file_id,
            external_error_file_id=error_file_id,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def increment_processed(job_id: str) -> bool:
    """Atomic `processed_chunks += 1`, refused once the counter reaches the total."""
    stmt = (
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.processed_chunks < BatchJob.total_chunks)
        .values(processed_chunks=BatchJob.processed_chunks + 1)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def count_jobs_since(user_id: str, since: datetime) -> int:
    stmt = select(func.count(BatchJob.id)).where(
        BatchJob.user_id == user_id, BatchJob.created_at >= since
    )
    return db.session.execute(stmt).scalar_one()


def find_active_job(project_id: str, analysis_type: str) -> Optional[BatchJob]:
    return db.session.execute(
        select(BatchJob)
        .where(
            BatchJob.project_id == project_id,
            BatchJob.analysis_type == analysis_type,
            BatchJob.status.in_(list(JobStatus.ACTIVE)),
        )
        .order_by(BatchJob.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_pollable_jobs(limit: int = 200) -> List[BatchJob]:
    """In-flight jobs, plus pending ones whose window has already elapsed."""
    stale_pending = and_(BatchJob.status == JobStatus.PENDING, BatchJob.expires_at < utcnow())
    return list(db.session.execute(
        select(BatchJob)
        .where(or_(BatchJob.status.in_(list(JobStatus.IN_FLIGHT)), stale_pending))
        .order_by(BatchJob.created_at.asc())
        .limit(limit)
    ).scalars())


def list_user_jobs(
    user_id: str,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    analysis_type: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> Dict[str, Any]:
    filters = [BatchJob.user_id == user_id]
    if status:
        filters.append(BatchJob.status == status)
    if project_id:
        filters.append(BatchJob.project_id == project_id)
    if analysis_type:
        filters.append(BatchJob.analysis_type == analysis_type)

    column = getattr(BatchJob, sort_by if sort_by in SORTABLE_FIELDS else "created_at")
    ordering = column.asc() if sort_order == "asc" else column.desc()

    total = db.session.execute(select(func.count(BatchJob.id)).where(*filters)).scalar_one()
    jobs = list(db.session.execute(
        select(BatchJob).where(*filters).order_by(ordering, BatchJob.id)
        .offset((page - 1) * limit).limit(limit)
    ).scalars())

    rows = db.session.execute(
        select(BatchJob.status, func.count(BatchJob.id), func.coalesce(func.sum(BatchJob.processed_chunks), 0))
        .where(BatchJob.user_id == user_id)
        .group_by(BatchJob.status)
    ).all()
    by_status = {s: (n, processed) for s, n, processed in rows}

    def _count(states):
        return sum(by_status.get(s, (0, 0))[0] for s in states)

    total_pages = -(-total // limit) if limit else 0
    return {
        "jobs": jobs,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
        "summary": {
            "total_jobs": sum(n for n, _ in by_status.values()),
            "active_jobs": _count(JobStatus.ACTIVE),
            "completed_jobs": _count([JobStatus.COMPLETED]),
            "failed_jobs": _count([JobStatus.FAILED, JobStatus.EXPIRED]),
            "analyses_created": int(sum(p for _, p in by_status.values())),
        },
    }


# ---------------------------
# AnalysisResult
# ---------------------------

def completed_analysis_types(project_id: str) -> List[str]:
    return list(db.session.execute(
        select(AnalysisResult.analysis_type)
        .where(AnalysisResult.session_id == project_id)
        .distinct()
    ).scalars())


def find_completed_result(project_id: str, analysis_type: str) -> Optional[AnalysisResult]:
    return db.session.execute(
        select(AnalysisResult)
        .where(AnalysisResult.session_id == project_id, AnalysisResult.analysis_type == analysis_type)
        .order_by(AnalysisResult.id.asc())
        .limit(1)
    ).scalar_one_or_none()


def result_chunk_ids(job_id: str) -> List[str]:
    return list(db.session.execute(
        select(AnalysisResult.chunk_id).where(AnalysisResult.batch_job_id == job_id)
    ).scalars())


def chunks_with_results(project_id: str, analysis_type: str, chunk_ids: Sequence[str]) -> List[str]:
    return list(db.session.execute(
        select(AnalysisResult.chunk_id)
        .where(
            AnalysisResult.session_id == project_id,
            AnalysisResult.analysis_type == analysis_type,
            AnalysisResult.chunk_id.in_(list(chunk_ids)),
        )
        .distinct()
    ).scalars())


def add_result(**fields: Any) -> AnalysisResult:
    """Stage one row in the current transaction; the caller commits."""
    result = AnalysisResult(**fields)
    db.session.add(result)
    return result


def list_results(job_id: str) -> List[AnalysisResult]:
    return list(db.session.execute(
        select(AnalysisResult)
        .where(AnalysisResult.batch_job_id == job_id)
        .order_by(AnalysisResult.submission_position.asc(), AnalysisResult.id.asc())
    ).scalars())
