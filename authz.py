import os
from functools import wraps

from flask import current_app, request, session

ADMIN = "ADMIN"
NURSE = "NURSE"
ROLES = (ADMIN, NURSE)

ANONYMOUS_UID = "anonymous"


def _admin_uids() -> set:
    raw = os.environ.get("INFIRMARY_ADMIN_UIDS", "")
    return {uid.strip() for uid in raw.split(",") if uid.strip()}


def get_current_uid(req) -> str:
    uid = session.get("uid")
    if uid:
        return uid
    # Only in debug allow overrides
    if current_app.debug:
        header_uid = (req.headers.get("X-USER-UID") or "").strip()
        if header_uid:
            return header_uid
    return ANONYMOUS_UID


def get_current_role(req) -> str:
    uid = get_current_uid(req)
    default_role = ADMIN if uid in _admin_uids() else NURSE
    if not current_app.debug:
        return default_role
    role = req.headers.get("X-ROLE") or req.args.get("role") or default_role
    role = role.strip().upper() if isinstance(role, str) else default_role
    return role if role in ROLES else default_role


def require_roles(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if request.method != "POST":
                return fn(*args, **kwargs)
            role = get_current_role(request)
            if role not in roles:
                return "Forbidden", 403
            return fn(*args, **kwargs)

        return wrapper

    return decorator
