# thesis_batch/models/project.py
from thesis_batch.models import db
from thesis_batch.models.types import new_uuid, utcnow

LEVELS = ("triennale", "magistrale", "dottorato")
PROJECT_STATUSES = ("active", "completed", "abandoned")


class Project(db.Model):
    """Thesis project owned by the portal. Read-only for the batch pipeline."""
    __tablename__ = "thesis_projects"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.String(64), index=True, nullable=False)
    project_title = db.Column(db.String(255), nullable=False, default="")
    faculty = db.Column(db.String(255), nullable=True)
    thesis_topic = db.Column(db.String(500), nullable=True)
    level = db.Column(db.String(20), nullable=False)          # triennale|magistrale|dottorato
    status = db.Column(db.String(20), nullable=False, default="active")  # active|completed|abandoned
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    chunks = db.relationship("RawChunk", back_populates="project", lazy="dynamic")

    def prompt_context(self, analysis_type: str) -> dict:
        return {
            "faculty": self.faculty or "",
            "thesis_topic": self.thesis_topic or "",
            "level": self.level,
            "project_title": self.project_title or "",
            "analysis_type": analysis_type,
        }
