# thesis_batch/auth.py
from flask import request

from thesis_batch.errors import UnauthenticatedError

USER_HEADER = "X-User-Id"


def current_user_id() -> str:
    """
    Caller identity. The portal's gateway authenticates the session token and
    forwards the user id in a header; this service trusts it.
    """
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise UnauthenticatedError(f"Missing {USER_HEADER} header")
    return user_id
