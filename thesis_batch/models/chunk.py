# thesis_batch/models/chunk.py
from thesis_batch.models import db
from thesis_batch.models.types import new_uuid, utcnow


class RawChunk(db.Model):
    __tablename__ = "thesis_raw_chunks"

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    project_id = db.Column(db.String(36), db.ForeignKey("thesis_projects.id"), index=True, nullable=False)
    user_id = db.Column(db.String(64), index=True, nullable=False)
    order_index = db.Column(db.Integer, nullable=False)   # position inside the thesis
    content = db.Column(db.Text, nullable=False, default="")
    char_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    project = db.relationship("Project", back_populates="chunks")
