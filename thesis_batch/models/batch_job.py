# thesis_batch/models/batch_job.py
from thesis_batch.models import db
from thesis_batch.models.types import JSONBCompat, new_uuid, utcnow


class JobStatus:
    PENDING = "pending"
    # mirrored from the external endpoint
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    CANCELLING = "cancelling"
    # terminal
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    IN_FLIGHT = (VALIDATING, IN_PROGRESS, FINALIZING, CANCELLING)
    ACTIVE = (PENDING,) + IN_FLIGHT
    TERMINAL = (COMPLETED, FAILED, EXPIRED)


_ACTIVE_PREDICATE = "status IN (" + ", ".join(f"'{s}'" for s in JobStatus.ACTIVE) + ")"


class BatchJob(db.Model):
    __tablename__ = "thesis_batch_jobs"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.String(64), index=True, nullable=False)
    project_id = db.Column(db.String(36), db.ForeignKey("thesis_projects.id"), index=True, nullable=False)
    analysis_type = db.Column(db.String(64), index=True, nullable=False)

    # Order is meaningful: it is the submission order of the fragments.
    selected_chunk_ids = db.Column(JSONBCompat(), nullable=False)
    total_chunks = db.Column(db.Integer, nullable=False)
    processed_chunks = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default=JobStatus.PENDING, index=True)
    results_processed = db.Column(db.Boolean, nullable=False, default=False)
    error_message = db.Column(db.Text, nullable=True)

    # Written once by a successful submission
    external_batch_id = db.Column(db.String(128), nullable=True, unique=True)
    external_input_file_id = db.Column(db.String(128), nullable=True)
    external_output_file_id = db.Column(db.String(128), nullable=True)
    external_error_file_id = db.Column(db.String(128), nullable=True)

    job_metadata = db.Column("metadata", JSONBCompat(), nullable=False, default=dict)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    results = db.relationship("AnalysisResult", back_populates="batch_job", lazy="dynamic")

    __table_args__ = (
        db.CheckConstraint("processed_chunks >= 0", name="ck_batch_jobs_processed_non_negative"),
        db.CheckConstraint("processed_chunks <= total_chunks", name="ck_batch_jobs_processed_le_total"),
        db.Index("ix_batch_jobs_project_kind", "project_id", "analysis_type"),
        db.Index("ix_batch_jobs_user_created", "user_id", "created_at"),
        # at most one active job per (project, analysis type)
        db.Index(
            "uq_batch_jobs_active_kind", "project_id", "analysis_type",
            unique=True,
            postgresql_where=db.text(_ACTIVE_PREDICATE),
            sqlite_where=db.text(_ACTIVE_PREDICATE),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    @property
    def progress_percentage(self) -> int:
        if not self.total_chunks:
            return 0
        return round(self.processed_chunks * 100 / self.total_chunks)
