import pytest

from thesis_batch.errors import AllAnalysesCompletedError, QuotaExceededError, SubmissionError
from thesis_batch.models import db, AnalysisResult, BatchJob, JobStatus
from thesis_batch.services import bulk_planner, job_store, submission_service
from thesis_batch.services.analysis_catalog import valid_analysis_types


def _complete_kind(project, chunk, kind):
    job = job_store.create_job(project.user_id, project.id, kind, [chunk.id])
    db.session.add(AnalysisResult(
        session_id=project.id, batch_job_id=job.id, chunk_id=chunk.id, chunk_number=0,
        submission_position=0, analysis_type=kind, output_analysis="done",
    ))
    db.session.commit()
    job_store.transition_status(job.id, JobStatus.ACTIVE, JobStatus.COMPLETED)


def test_creates_one_job_per_remaining_kind(make_project, make_chunks, dispatched):
    project = make_project(level="magistrale")
    chunks = make_chunks(project, 3)
    kinds = valid_analysis_types("magistrale")
    for kind in kinds[:3]:
        _complete_kind(project, chunks[0], kind)

    result = bulk_planner.create_all(project.user_id, project.id, [c.id for c in chunks])

    assert [ref.analysis_type for ref in result.created] == kinds[3:]
    assert result.skipped_already_done == kinds[:3]
    assert result.errors == []
    assert len(dispatched) == 9
    assert result.bulk_job_id.startswith("bulk_")
    assert result.estimated_completion_minutes == 68  # ceil(9 * 5 * 1.5)

    jobs = BatchJob.query.filter_by(status=JobStatus.PENDING).all()
    assert len(jobs) == 9
    assert {j.job_metadata["bulk_job_id"] for j in jobs} == {result.bulk_job_id}
    assert all(j.job_metadata["is_bulk_operation"] for j in jobs)
    assert all(j.job_metadata["bulk_operation_size"] == 9 for j in jobs)


def test_one_failing_kind_does_not_stop_the_others(make_project, make_chunks, monkeypatch):
    project = make_project(level="triennale")
    chunks = make_chunks(project, 2)
    kinds = valid_analysis_types("triennale")
    real_create = submission_service.create_job

    def flaky_create(user_id, project_id, chunk_ids, kind, **kwargs):
        if kind == kinds[2]:
            raise SubmissionError("Submission failed: endpoint unavailable")
        return real_create(user_id, project_id, chunk_ids, kind, **kwargs)

    monkeypatch.setattr(submission_service, "create_job", flaky_create)

    result = bulk_planner.create_all(project.user_id, project.id, [c.id for c in chunks])

    assert len(result.created) == len(kinds) - 1
    assert kinds[2] not in [ref.analysis_type for ref in result.created]
    assert result.errors == [(kinds[2], "Submission failed: endpoint unavailable")]


def test_all_done_is_rejected(make_project, make_chunks):
    project = make_project(level="triennale")
    chunks = make_chunks(project, 1)
    for kind in valid_analysis_types("triennale"):
        _complete_kind(project, chunks[0], kind)

    with pytest.raises(AllAnalysesCompletedError):
        bulk_planner.create_all(project.user_id, project.id, [chunks[0].id])


def test_bulk_quota_is_checked_up_front(make_project, make_chunks, app, monkeypatch):
    monkeypatch.setitem(app.config, "BULK_DAILY_JOB_LIMIT", 10)
    project = make_project(level="magistrale")
    chunks = make_chunks(project, 1)

    with pytest.raises(QuotaExceededError):
        bulk_planner.create_all(project.user_id, project.id, [chunks[0].id])
    assert BatchJob.query.count() == 0


def test_bulk_jobs_exceed_the_single_job_quota(make_project, make_chunks):
    project = make_project(level="dottorato")
    chunks = make_chunks(project, 1)

    result = bulk_planner.create_all(project.user_id, project.id, [chunks[0].id])

    assert len(result.created) == 16
    assert result.errors == []
