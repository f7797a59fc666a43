# thesis_batch/services/project_service.py
from typing import Dict, List, Sequence

from sqlalchemy import select

from thesis_batch.errors import ChunkNotFoundError, ProjectNotFoundError
from thesis_batch.models import db, Project, RawChunk


def get_active_project(user_id: str, project_id: str) -> Project:
    """Project owned by `user_id` and still `active`, else ProjectNotFoundError."""
    project = db.session.get(Project, project_id)
    if project is None or project.user_id != user_id or project.status != "active":
        raise ProjectNotFoundError("Project not found or not active", project_id=project_id)
    return project


def fetch_chunks_by_id(chunk_ids: Sequence[str], project_id: str) -> Dict[str, RawChunk]:
    """Chunks of `project_id` keyed by id. The store gives no ordering guarantee."""
    if not chunk_ids:
        return {}
    rows = db.session.execute(
        select(RawChunk).where(RawChunk.project_id == project_id, RawChunk.id.in_(list(chunk_ids)))
    ).scalars()
    return {c.id: c for c in rows}


def get_ordered_chunks(user_id: str, project_id: str, chunk_ids: Sequence[str]) -> List[RawChunk]:
    """
    Resolve every id to a chunk owned by the user and project, returned in
    the order of `chunk_ids`. Any missing id raises ChunkNotFoundError.
    """
    found = fetch_chunks_by_id(chunk_ids, project_id)
    missing = [cid for cid in chunk_ids if cid not in found or found[cid].user_id != user_id]
    if missing:
        raise ChunkNotFoundError(
            f"Some chunks were not found: {len(missing)} missing",
            missing_chunk_ids=missing,
        )
    return [found[cid] for cid in chunk_ids]
