from flask import Blueprint, jsonify
from sqlalchemy import text

from thesis_batch.models import db

bp = Blueprint("health", __name__)

@bp.get("/healthz")
def healthz():
    """
    Healthcheck
    ---
    tags:
      - Health
    responses:
      200:
        description: OK
      503:
        description: Database unreachable
    """
    try:
        db.session.execute(text("SELECT 1"))
    except Exception as e:
        db.session.rollback()
        return jsonify({"ok": False, "database": type(e).__name__}), 503
    return jsonify({"ok": True, "database": "ok"}), 200
