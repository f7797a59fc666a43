# thesis_batch/models/analysis_result.py
from thesis_batch.models import db
from thesis_batch.models.types import JSONBCompat, utcnow


class AnalysisResult(db.Model):
    """One generated analysis for one fragment. Append-only."""
    __tablename__ = "thesis_analysis_chunks"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(36), db.ForeignKey("thesis_projects.id"), index=True, nullable=False)
    batch_job_id = db.Column(db.String(36), db.ForeignKey("thesis_batch_jobs.id"), index=True, nullable=False)
    chunk_id = db.Column(db.String(36), nullable=False)

    chunk_number = db.Column(db.Integer, nullable=False)          # fragment ordinal, snapshotted
    submission_position = db.Column(db.Integer, nullable=False)   # index in selected_chunk_ids
    analysis_type = db.Column(db.String(64), nullable=False)

    input_text = db.Column(db.Text, nullable=False, default="")
    output_analysis = db.Column(db.Text, nullable=False)
    processing_metadata = db.Column(JSONBCompat(), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    batch_job = db.relationship("BatchJob", back_populates="results")

    __table_args__ = (
        db.Index("ix_analysis_chunks_session_kind", "session_id", "analysis_type"),
    )
