from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.pcms.db import db_session
from app.pcms.errors import AuthenticationError
from app.pcms.models import User
from app.pcms.modules.cases import service
from app.pcms.rbac import require_login
from app.pcms.utils import json_body, parse_int

bp = Blueprint("cases", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise AuthenticationError("Login required.")
    return u


def _collaborators() -> service.CaseCollaborators:
    return current_app.extensions["pcms_case_collaborators"]


@bp.get("/")
@require_login
def list_cases():
    s = db_session()
    u = _current_user()
    args = request.args
    items, total = service.list_cases(
        s,
        actor_id=u.id,
        status=args.getlist("status") or None,
        department_id=parse_int(args["department_id"], "department_id") if args.get("department_id") else None,
        student_id=parse_int(args["student_id"], "student_id") if args.get("student_id") else None,
        assigned_to_id=parse_int(args["assigned_to_id"], "assigned_to_id") if args.get("assigned_to_id") else None,
        page=parse_int(args.get("page", 1), "page"),
        per_page=parse_int(args.get("per_page", 20), "per_page"),
    )
    return {"items": [service.case_to_dict(c) for c in items], "total": total}


@bp.post("/")
@require_login
def create_case():
    s = db_session()
    u = _current_user()
    data = json_body(request)
    student_id = parse_int(data["student_id"], "student_id") if data.get("student_id") is not None else None
    case = service.create_case(s, actor_id=u.id, data=data, student_id=student_id)
    return service.case_to_dict(case), 201


@bp.get("/search")
@require_login
def search_cases():
    s = db_session()
    u = _current_user()
    items = service.search_cases(s, request.args.get("q") or "", actor_id=u.id)
    return {"items": [service.case_to_dict(c) for c in items]}


@bp.get("/number/<case_number>")
@require_login
def get_case_by_number(case_number: str):
    s = db_session()
    u = _current_user()
    return service.case_to_dict(service.get_case_by_number(s, case_number, actor_id=u.id))


@bp.get("/<int:case_id>")
@require_login
def get_case(case_id: int):
    s = db_session()
    u = _current_user()
    return service.case_to_dict(service.get_case(s, case_id, actor_id=u.id))


@bp.patch("/<int:case_id>")
@require_login
def update_case(case_id: int):
    s = db_session()
    u = _current_user()
    case = service.update_case(s, case_id, actor_id=u.id, data=json_body(request))
    return service.case_to_dict(case)


@bp.delete("/<int:case_id>")
@require_login
def delete_case(case_id: int):
    s = db_session()
    u = _current_user()
    service.delete_case(s, case_id, actor_id=u.id)
    return {"ok": True}


@bp.post("/<int:case_id>/transitions/<trigger>")
@require_login
def attempt_transition(case_id: int, trigger: str):
    s = db_session()
    u = _current_user()
    result = service.attempt_transition(
        s,
        case_id,
        trigger,
        actor_id=u.id,
        payload=json_body(request),
        collaborators=_collaborators(),
        max_revision_requests=current_app.config.get("CASE_MAX_REVISION_REQUESTS", 0),
    )
    return result.to_dict()


@bp.post("/<int:case_id>/report")
@require_login
def regenerate_report(case_id: int):
    s = db_session()
    u = _current_user()
    result = service.regenerate_report(s, case_id, actor_id=u.id, collaborators=_collaborators())
    return result.to_dict()
