from __future__ import annotations

import json
from typing import Any

from flask import Blueprint, current_app, g, request, send_file

from app.pcms.db import db_session
from app.pcms.errors import AuthenticationError, ValidationError
from app.pcms.models import User
from app.pcms.modules.documents import service
from app.pcms.qr import qr_generator_from_config
from app.pcms.rbac import require_login
from app.pcms.storage import storage_from_config
from app.pcms.utils import json_body, parse_int

bp = Blueprint("documents", __name__)

_LIST_FIELDS = ("tags", "allowed_roles", "allowed_users", "allowed_departments")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise AuthenticationError("Login required.")
    return u


def _dispatcher():
    return current_app.extensions["pcms_notification_dispatcher"]


def _form_data() -> dict[str, Any]:
    """Multipart form fields; list fields may repeat or be sent as a JSON array string."""
    if request.is_json:
        return json_body(request)
    data: dict[str, Any] = {k: v for k, v in request.form.items() if k not in _LIST_FIELDS}
    for key in _LIST_FIELDS:
        values = request.form.getlist(key)
        if len(values) == 1 and values[0].strip().startswith("["):
            try:
                data[key] = json.loads(values[0])
            except ValueError:
                raise ValidationError(f"{key} must be a JSON array.", details={"field": key})
        elif values:
            data[key] = values
    return data


def _upload() -> service.UploadedFile | None:
    f = request.files.get("file")
    if not f or not f.filename:
        return None
    return service.UploadedFile(
        filename=f.filename,
        data=f.read(),
        content_type=(f.mimetype or "application/octet-stream").strip(),
    )


def _send(version, fobj):
    return send_file(
        fobj,
        mimetype=version.content_type,
        as_attachment=True,
        download_name=version.filename,
        max_age=0,
    )


@bp.get("/")
@require_login
def list_documents():
    s = db_session()
    u = _current_user()
    args = request.args
    items, total = service.list_documents(
        s,
        actor_id=u.id,
        category=args.get("category") or None,
        status=args.get("status") or None,
        query=args.get("q"),
        page=parse_int(args.get("page", 1), "page"),
        per_page=parse_int(args.get("per_page", 20), "per_page"),
    )
    return {"items": [service.document_to_dict(d) for d in items], "total": total}


@bp.post("/")
@require_login
def create_document():
    s = db_session()
    u = _current_user()
    doc = service.create_document(
        s,
        actor_id=u.id,
        data=_form_data(),
        upload=_upload(),
        storage=storage_from_config(current_app.config),
        qr=qr_generator_from_config(current_app.config),
        dispatcher=_dispatcher(),
    )
    return service.document_to_dict(doc), 201


@bp.get("/qr/<code>")
@require_login
def get_document_by_qr_code(code: str):
    s = db_session()
    u = _current_user()
    doc, decision = service.get_document_by_qr_code(s, code, actor_id=u.id, ip_address=request.remote_addr)
    return service.document_to_dict(doc, decision)


@bp.get("/<int:document_id>")
@require_login
def get_document(document_id: int):
    s = db_session()
    u = _current_user()
    method = request.args.get("via") or "direct"
    doc, decision = service.get_document(s, document_id, actor_id=u.id, ip_address=request.remote_addr, method=method)
    return service.document_to_dict(doc, decision)


@bp.patch("/<int:document_id>")
@require_login
def update_document(document_id: int):
    s = db_session()
    u = _current_user()
    doc = service.update_document(s, document_id, actor_id=u.id, data=json_body(request), dispatcher=_dispatcher())
    return service.document_to_dict(doc)


@bp.delete("/<int:document_id>")
@require_login
def delete_document(document_id: int):
    s = db_session()
    u = _current_user()
    service.delete_document(s, document_id, actor_id=u.id)
    return {"ok": True}


@bp.post("/<int:document_id>/versions")
@require_login
def add_version(document_id: int):
    s = db_session()
    u = _current_user()
    v = service.add_version(
        s,
        document_id,
        actor_id=u.id,
        upload=_upload(),
        change_notes=(request.form.get("change_notes") or "").strip(),
        storage=storage_from_config(current_app.config),
    )
    return service.version_to_dict(v), 201


@bp.get("/<int:document_id>/file")
@require_login
def download_current(document_id: int):
    s = db_session()
    u = _current_user()
    v, fobj = service.get_file(
        s,
        document_id,
        actor_id=u.id,
        storage=storage_from_config(current_app.config),
        ip_address=request.remote_addr,
    )
    return _send(v, fobj)


@bp.get("/<int:document_id>/file/<int:version>")
@require_login
def download_version(document_id: int, version: int):
    s = db_session()
    u = _current_user()
    v, fobj = service.get_file(
        s,
        document_id,
        actor_id=u.id,
        storage=storage_from_config(current_app.config),
        version=version,
        ip_address=request.remote_addr,
    )
    return _send(v, fobj)


@bp.get("/<int:document_id>/access")
@require_login
def evaluate_access(document_id: int):
    s = db_session()
    u = _current_user()
    return service.evaluate_document_access(s, document_id, actor_id=u.id).to_dict()


@bp.get("/<int:document_id>/access-logs")
@require_login
def access_logs(document_id: int):
    s = db_session()
    u = _current_user()
    logs = service.list_access_logs(s, document_id, actor_id=u.id)
    return {"items": [service.access_log_to_dict(log) for log in logs]}


@bp.post("/<int:document_id>/status")
@require_login
def set_status(document_id: int):
    s = db_session()
    u = _current_user()
    status = (json_body(request).get("status") or "").strip()
    doc = service.set_status(s, document_id, status, actor_id=u.id)
    return service.document_to_dict(doc)
