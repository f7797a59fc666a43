import json

import pytest

from thesis_batch.errors import (
    ChunkNotFoundError,
    ContentTooLargeError,
    DuplicateAnalysisError,
    InvalidAnalysisTypeError,
    JobAlreadyActiveError,
    JobNotRetryableError,
    ProjectNotFoundError,
    QuotaExceededError,
    ValidationError,
)
from thesis_batch.models import db, AnalysisResult, BatchJob, JobStatus
from thesis_batch.services import job_store, submission_service
from thesis_batch.services.analysis_catalog import valid_analysis_types
from thesis_batch.services.payload_encoder import iter_jsonl

KIND = "analisi_implicazioni"


def _ids(chunks):
    return [c.id for c in chunks]


def _add_result(job, chunk, position=0):
    row = AnalysisResult(
        session_id=job.project_id, batch_job_id=job.id, chunk_id=chunk.id,
        chunk_number=chunk.order_index, submission_position=position,
        analysis_type=job.analysis_type, input_text=chunk.content, output_analysis="ok",
    )
    db.session.add(row)
    db.session.commit()
    return row


def test_create_job_reserves_pending_and_dispatches(make_project, make_chunks, dispatched):
    project = make_project()
    chunks = make_chunks(project, 3)

    job = submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)

    assert job.status == JobStatus.PENDING
    assert dispatched == [job.id]
    assert job.expires_at is not None
    meta = job.job_metadata
    assert meta["project_level"] == "magistrale"
    assert meta["total_chars"] == sum(c.char_count for c in chunks)
    assert len(meta["chunks_preview"]) == 3


def test_unknown_project_is_rejected(make_project):
    with pytest.raises(ProjectNotFoundError):
        submission_service.create_job("user-1", "missing", ["c1"], KIND)


def test_project_of_another_user_is_rejected(make_project, make_chunks):
    project = make_project(user_id="owner")
    chunks = make_chunks(project, 1)
    with pytest.raises(ProjectNotFoundError):
        submission_service.create_job("intruder", project.id, _ids(chunks), KIND)


def test_inactive_project_is_rejected(make_project, make_chunks):
    project = make_project(status="completed")
    chunks = make_chunks(project, 1)
    with pytest.raises(ProjectNotFoundError):
        submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)


@pytest.mark.parametrize("chunk_ids", [[], None, "c1", [""], ["a", "a"], [f"c{i}" for i in range(51)]])
def test_malformed_chunk_lists_are_rejected(make_project, chunk_ids):
    project = make_project()
    with pytest.raises(ValidationError):
        submission_service.create_job(project.user_id, project.id, chunk_ids, KIND)


def test_unknown_chunk_ids_are_reported(make_project, make_chunks):
    project = make_project()
    chunks = make_chunks(project, 2)
    with pytest.raises(ChunkNotFoundError) as exc:
        submission_service.create_job(project.user_id, project.id, _ids(chunks) + ["ghost"], KIND)
    assert exc.value.extra["missing_chunk_ids"] == ["ghost"]


def test_chunks_of_another_project_are_not_found(make_project, make_chunks):
    project = make_project()
    other = make_project(title="altro")
    foreign = make_chunks(other, 1)
    with pytest.raises(ChunkNotFoundError):
        submission_service.create_job(project.user_id, project.id, _ids(foreign), KIND)


def test_kind_must_belong_to_project_level(make_project, make_chunks):
    project = make_project(level="triennale")
    chunks = make_chunks(project, 1)
    with pytest.raises(InvalidAnalysisTypeError):
        submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)


def test_completed_kind_is_a_duplicate_and_creates_nothing(make_project, make_chunks):
    project = make_project()
    chunks = make_chunks(project, 2)
    first = submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)
    existing = _add_result(first, chunks[0])
    job_store.transition_status(first.id, JobStatus.ACTIVE, JobStatus.COMPLETED)

    with pytest.raises(DuplicateAnalysisError) as exc:
        submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)

    assert exc.value.existing_result_id == existing.id
    assert exc.value.status_code == 409
    assert BatchJob.query.count() == 1


def test_running_kind_is_rejected(make_project, make_chunks):
    project = make_project()
    chunks = make_chunks(project, 1)
    first = submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)

    with pytest.raises(JobAlreadyActiveError) as exc:
        submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)
    assert exc.value.active_job_id == first.id


def test_concurrent_creates_for_one_kind_leave_one_job(make_project, make_chunks, monkeypatch):
    project = make_project()
    chunks = make_chunks(project, 1)
    real_check = submission_service.check_content_size
    racers = []
    raced = []

    def check_then_race(ready):
        # another request passes its checks and inserts first
        if not raced:
            raced.append(True)
            racers.append(submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND))
        return real_check(ready)

    monkeypatch.setattr(submission_service, "check_content_size", check_then_race)

    with pytest.raises(JobAlreadyActiveError) as exc:
        submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)

    assert exc.value.active_job_id == racers[0].id
    active = BatchJob.query.filter(BatchJob.status.in_(JobStatus.ACTIVE)).all()
    assert [j.id for j in active] == [racers[0].id]


def test_average_size_limit(make_project, make_chunks):
    project = make_project()
    chunks = make_chunks(project, 1, text="x" * 25_001)
    with pytest.raises(ContentTooLargeError):
        submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)


def test_total_size_limit(make_project, make_chunks):
    project = make_project()
    chunks = make_chunks(project, 21, text="x" * 25_000)
    with pytest.raises(ContentTooLargeError):
        submission_service.create_job(project.user_id, project.id, _ids(chunks), KIND)


def test_daily_quota(make_project, make_chunks):
    project = make_project()
    chunks = make_chunks(project, 1)
    kinds = valid_analysis_types("magistrale")
    for kind in kinds[:5]:
        submission_service.create_job(project.user_id, project.id, _ids(chunks), kind)

    with pytest.raises(QuotaExceededError) as exc:
        submission_service.create_job(project.user_id, project.id, _ids(chunks), kinds[5])
    assert exc.value.status_code == 429
    assert BatchJob.query.count() == 5


def test_failed_dispatch_marks_job_failed(make_project, make_chunks, monkeypatch):
    def boom(job_id):
        raise ConnectionError("broker down")

    monkeypatch.setattr("thesis_batch.services.submission_service.dispatch_submission", boom)
    project = make_project()
    job = submission_service.create_job(project.user_id, project.id, _ids(make_chunks(project, 1)), KIND)

    assert job.status == JobStatus.FAILED
    assert job.error_message.startswith("Submission failed:")


def test_submit_job_keeps_requested_order(make_project, make_chunks, fake_client):
    project = make_project()
    chunks = make_chunks(project, 4)
    requested = [chunks[2].id, chunks[0].id, chunks[3].id, chunks[1].id]
    job = submission_service.create_job(project.user_id, project.id, requested, KIND)

    job = submission_service.submit_job(job.id, fake_client)

    assert job.status == JobStatus.VALIDATING
    assert job.external_batch_id in fake_client.batches
    payload = fake_client.files[job.external_input_file_id].decode("ascii")
    sent = [json.loads(line)["custom_id"] for _, line in iter_jsonl(payload)]
    assert sent == requested
    assert fake_client.created_metadata[job.external_batch_id]["thesis_batch_job_id"] == job.id


def test_submit_job_is_a_noop_once_submitted(make_project, make_chunks, fake_client):
    project = make_project()
    job = submission_service.create_job(project.user_id, project.id, _ids(make_chunks(project, 1)), KIND)
    submission_service.submit_job(job.id, fake_client)

    assert submission_service.submit_job(job.id, fake_client) is None
    assert len(fake_client.batches) == 1


@pytest.mark.parametrize("failing", ["upload", "create_batch"])
def test_submit_job_failure_is_stored_on_the_job(make_project, make_chunks, fake_client, failing):
    fake_client.failing.add(failing)
    project = make_project()
    job = submission_service.create_job(project.user_id, project.id, _ids(make_chunks(project, 1)), KIND)

    job = submission_service.submit_job(job.id, fake_client)

    assert job.status == JobStatus.FAILED
    assert job.error_message.startswith("Submission failed:")
    assert job.external_batch_id is None


def test_retry_covers_only_chunks_without_result(make_project, make_chunks, dispatched):
    project = make_project()
    chunks = make_chunks(project, 4)
    requested = [chunks[3].id, chunks[1].id, chunks[0].id, chunks[2].id]
    original = submission_service.create_job(project.user_id, project.id, requested, KIND)
    _add_result(original, chunks[1], position=1)
    job_store.transition_status(original.id, JobStatus.ACTIVE, JobStatus.COMPLETED)

    retry = submission_service.retry_failed_chunks(project.user_id, original.id)

    assert retry.id != original.id
    assert retry.selected_chunk_ids == [chunks[3].id, chunks[0].id, chunks[2].id]
    assert retry.job_metadata["retry_of"] == original.id
    assert dispatched[-1] == retry.id


def test_retry_refuses_running_jobs(make_project, make_chunks):
    project = make_project()
    job = submission_service.create_job(project.user_id, project.id, _ids(make_chunks(project, 1)), KIND)
    with pytest.raises(JobNotRetryableError):
        submission_service.retry_failed_chunks(project.user_id, job.id)
