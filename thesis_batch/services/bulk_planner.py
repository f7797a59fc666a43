# thesis_batch/services/bulk_planner.py
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from flask import current_app

from thesis_batch.errors import AllAnalysesCompletedError, BatchError
from thesis_batch.models import db
from thesis_batch.models.types import utcnow
from thesis_batch.services import job_store, submission_service
from thesis_batch.services.analysis_catalog import analysis_name, valid_analysis_types
from thesis_batch.services.project_service import get_active_project, get_ordered_chunks

logger = logging.getLogger(__name__)


@dataclass
class JobRef:
    batch_job_id: str
    analysis_type: str
    analysis_name: str
    status: str


@dataclass
class BulkResult:
    bulk_job_id: str
    created: List[JobRef] = field(default_factory=list)
    skipped_already_done: List[str] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)
    total_chunks: int = 0
    estimated_completion_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bulk_job_id": self.bulk_job_id,
            "created_jobs": [ref.__dict__ for ref in self.created],
            "skipped_already_done": list(self.skipped_already_done),
            "errors": [{"analysis_type": k, "error": reason} for k, reason in self.errors],
            "total_chunks": self.total_chunks,
            "estimated_completion_minutes": self.estimated_completion_minutes,
        }


def generate_bulk_job_id() -> str:
    return f"bulk_{int(utcnow().timestamp())}_{uuid.uuid4().hex[:9]}"


def estimate_completion_minutes(jobs_created: int) -> int:
    """Advisory only; nothing branches on this value."""
    cfg = current_app.config
    return math.ceil(
        max(jobs_created, 0) * cfg["BULK_BASELINE_MINUTES_PER_JOB"] * cfg["BULK_SAFETY_MULTIPLIER"]
    )


def create_all(user_id: str, project_id: str, chunk_ids: Sequence[str]) -> BulkResult:
    """
    One BatchJob per analysis kind of the project's level that has no result yet.

    Input and quota problems reject the whole operation up front. After that,
    each kind is submitted independently: a failing kind is reported in
    `errors` and the loop moves on.
    """
    cfg = current_app.config
    project = get_active_project(user_id, project_id)
    chunk_ids = submission_service.validate_chunk_ids(chunk_ids)
    chunks = get_ordered_chunks(user_id, project_id, chunk_ids)
    submission_service.check_content_size(chunks)

    all_kinds = valid_analysis_types(project.level)
    done = set(job_store.completed_analysis_types(project_id))
    skipped = [k for k in all_kinds if k in done]
    remaining = [k for k in all_kinds if k not in done]
    if not remaining:
        raise AllAnalysesCompletedError(
            f"All analyses for level {project.level} are already completed for this project."
        )

    bulk_limit = cfg["BULK_DAILY_JOB_LIMIT"]
    submission_service.check_daily_quota(user_id, len(remaining), bulk_limit)

    result = BulkResult(
        bulk_job_id=generate_bulk_job_id(),
        skipped_already_done=skipped,
        total_chunks=len(chunks),
    )
    log_extra = {"project_id": project_id, "bulk_job_id": result.bulk_job_id}
    logger.info(
        f"Bulk run: {len(remaining)} kinds to create, {len(skipped)} already completed",
        extra=log_extra,
    )

    for kind in remaining:
        metadata = {
            "created_by": "thesis-bulk-batch-api",
            "bulk_job_id": result.bulk_job_id,
            "is_bulk_operation": True,
            "bulk_operation_size": len(remaining),
        }
        try:
            job = submission_service.create_job(
                user_id, project_id, chunk_ids, kind,
                extra_metadata=metadata, daily_limit=bulk_limit,
            )
        except BatchError as e:
            logger.warning(f"Bulk run: {kind} not created: {e.message}", extra=log_extra)
            result.errors.append((kind, e.message))
            continue
        except Exception as e:
            logger.exception(f"Bulk run: unexpected error creating {kind}", extra=log_extra)
            db.session.rollback()
            result.errors.append((kind, f"Internal error ({type(e).__name__})"))
            continue
        result.created.append(JobRef(job.id, kind, analysis_name(kind), job.status))

    result.estimated_completion_minutes = estimate_completion_minutes(len(result.created))
    return result
