from __future__ import annotations

from flask import Blueprint, g, request

from app.pcms.db import db_session
from app.pcms.errors import AuthenticationError
from app.pcms.models import User
from app.pcms.modules.notifications import service
from app.pcms.rbac import require_login
from app.pcms.utils import parse_int

bp = Blueprint("notifications", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise AuthenticationError("Login required.")
    return u


@bp.get("/")
@require_login
def list_notifications():
    s = db_session()
    u = _current_user()
    items, total = service.list_notifications(
        s,
        user=u,
        unread_only=(request.args.get("unread") or "").strip().lower() in ("1", "true", "yes"),
        page=parse_int(request.args.get("page", 1), "page"),
        per_page=parse_int(request.args.get("per_page", 20), "per_page"),
    )
    return {"items": [service.notification_to_dict(n) for n in items], "total": total}


@bp.get("/unread-count")
@require_login
def unread_count():
    s = db_session()
    return {"count": service.unread_count(s, user=_current_user())}


@bp.post("/<int:notification_id>/read")
@require_login
def mark_as_read(notification_id: int):
    s = db_session()
    n = service.mark_as_read(s, notification_id, user=_current_user())
    return service.notification_to_dict(n)


@bp.post("/read-all")
@require_login
def mark_all_as_read():
    s = db_session()
    return {"updated": service.mark_all_as_read(s, user=_current_user())}
