# thesis_batch/tasks/batch_tasks.py
import logging

from celery import shared_task

from thesis_batch.errors import ReconciliationTransientError
from thesis_batch.services import job_store
from thesis_batch.services.batch_client import get_batch_client
from thesis_batch.services.reconciliation_service import reconcile
from thesis_batch.services.submission_service import submit_job

logger = logging.getLogger(__name__)


@shared_task(name="batch.submit")
def submit_batch_job(job_id: str):
    job = submit_job(job_id, get_batch_client())
    if job is None:
        return {"job_id": job_id, "skipped": True}
    return {"job_id": job.id, "status": job.status, "external_batch_id": job.external_batch_id}


@shared_task(
    name="batch.reconcile",
    autoretry_for=(ReconciliationTransientError,),
    retry_backoff=30,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=8,
)
def reconcile_batch_job(job_id: str):
    job = reconcile(job_id, get_batch_client())
    return {"job_id": job.id, "status": job.status, "processed_chunks": job.processed_chunks}


@shared_task(name="batch.poll_active")
def poll_active_jobs():
    """Queue a reconcile for every job that can still move. Never waits on any of them."""
    job_ids = [job.id for job in job_store.list_pollable_jobs()]
    for job_id in job_ids:
        reconcile_batch_job.delay(job_id)
    if job_ids:
        logger.info(f"Queued reconcile for {len(job_ids)} jobs")
    return {"queued": len(job_ids)}
