import io

import pytest
from werkzeug.security import generate_password_hash

from app.pcms import create_app
from app.pcms.db import session_scope
from app.pcms.models import Base, Department, User


def _make_app(tmp_path, monkeypatch, *, csrf: bool = False):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("CSRF_ENABLED", "1" if csrf else "0")
    for k in ("SMTP_HOST", "S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        d = Department(code="PHARM", name="Pharmacy Practice")
        s.add(d)
        s.flush()
        pw = generate_password_hash("pw")
        s.add_all(
            [
                User(email="student@example.com", password_hash=pw, role="student", department_id=d.id),
                User(email="staff@example.com", password_hash=pw, role="staff", department_id=d.id),
                User(email="manager@example.com", password_hash=pw, role="manager", department_id=d.id),
            ]
        )
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch)


def _login(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200, r.json
    return c


def _user_id(app, email):
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one().id


def test_health_ok(app):
    c = app.test_client()
    r = c.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert c.get("/healthz").data == b"ok"


def test_blueprints_share_one_notification_dispatcher(app):
    collaborators = app.extensions["pcms_case_collaborators"]
    assert app.extensions["pcms_notification_dispatcher"] is collaborators.dispatcher
    assert collaborators.qr.base_url == app.config["BASE_URL"]


def test_login_and_me(app):
    c = app.test_client()
    r = c.get("/auth/me")
    assert r.status_code == 401
    assert r.json["error"]["code"] == "AUTH_REQUIRED"

    r = c.post("/auth/login", json={"email": "student@example.com", "password": "nope"})
    assert r.status_code == 401

    r = c.post("/auth/login", data={"email": "student@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "student"
    assert r.json["csrf_token"]

    r = c.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "student@example.com"

    c.post("/auth/logout")
    assert c.get("/api/cases/").status_code == 401


def test_case_workflow_over_http(app):
    student = _login(app, "student@example.com")
    manager = _login(app, "manager@example.com")
    staff = _login(app, "staff@example.com")

    r = student.post("/api/cases/", json={"title": "CKD dosing review", "soap_note": {"assessment": "eGFR 28"}})
    assert r.status_code == 201
    case = r.json
    assert case["status"] == "draft"
    assert case["allowed_triggers"] == ["submit"]
    case_id = case["id"]

    r = student.post(f"/api/cases/{case_id}/transitions/submit", json={})
    assert r.status_code == 200
    assert r.json["case"]["status"] == "submitted"
    assert r.json["warnings"] == []

    # Only elevated roles may assign
    r = staff.post(f"/api/cases/{case_id}/transitions/assign", json={"assignee_id": _user_id(app, "staff@example.com")})
    assert r.status_code == 403

    r = manager.post(f"/api/cases/{case_id}/transitions/assign", json={"assignee_id": _user_id(app, "staff@example.com")})
    assert r.status_code == 200
    assert r.json["case"]["status"] == "assigned"

    r = manager.post(f"/api/cases/{case_id}/transitions/assign", json={"assignee_id": _user_id(app, "staff@example.com")})
    assert r.status_code == 409
    err = r.json["error"]
    assert err["code"] == "INVALID_STATE_TRANSITION"
    assert err["details"] == {"current_status": "assigned", "trigger": "assign"}

    r = student.post(f"/api/cases/{case_id}/transitions/teleport", json={})
    assert r.status_code == 400

    r = student.patch(f"/api/cases/{case_id}", json={"title": "edited after submit"})
    assert r.status_code == 403

    r = staff.get(f"/api/cases/{case_id}")
    assert r.status_code == 200
    assert [h["status"] for h in r.json["workflow_history"]] == ["draft", "submitted", "assigned"]

    r = student.get("/api/cases/search?q=CKD")
    assert [c["id"] for c in r.json["items"]] == [case_id]

    r = manager.get("/api/notifications/unread-count")
    assert r.json == {"count": 1}
    r = staff.get("/api/notifications/")
    assert r.json["total"] == 1
    nid = r.json["items"][0]["id"]
    assert staff.post(f"/api/notifications/{nid}/read").json["is_read"] is True
    assert student.post(f"/api/notifications/{nid}/read").status_code == 403


def test_document_upload_and_download(app):
    staff = _login(app, "staff@example.com")
    student = _login(app, "student@example.com")

    r = staff.post(
        "/api/documents/",
        data={
            "title": "Renal dosing table",
            "category": "references",
            "visibility": "restricted",
            "allowed_roles": ["student"],
            "file": (io.BytesIO(b"crcl table v1"), "renal dosing.csv"),
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 201, r.json
    doc = r.json
    assert doc["access_control"]["allowed_roles"] == ["student"]
    assert doc["versions"][0]["filename"] == "renal_dosing.csv"

    r = staff.post(
        f"/api/documents/{doc['id']}/versions",
        data={"file": (io.BytesIO(b"crcl table v2"), "renal dosing.csv"), "change_notes": "CrCl bands"},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    assert r.json["version"] == 2

    r = student.get(f"/api/documents/{doc['id']}/file")
    assert r.status_code == 200
    assert r.data == b"crcl table v2"
    r = student.get(f"/api/documents/{doc['id']}/file/1")
    assert r.data == b"crcl table v1"

    r = student.get(f"/api/documents/qr/{doc['qr_code']['code']}")
    assert r.status_code == 200
    assert r.json["access"] == {"can_read": True, "can_edit": False}

    assert student.get(f"/api/documents/{doc['id']}/access-logs").status_code == 403
    r = staff.get(f"/api/documents/{doc['id']}/access-logs")
    assert sorted(log["method"] for log in r.json["items"]) == ["download", "download", "qrcode"]

    r = staff.post(f"/api/documents/{doc['id']}/status", json={"status": "bogus"})
    assert r.status_code == 400


def test_csrf_required_when_enabled(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch, csrf=True)
    c = app.test_client()
    r = c.post("/auth/login", json={"email": "student@example.com", "password": "pw"})
    assert r.status_code == 200
    token = r.json["csrf_token"]

    r = c.post("/api/cases/", json={"title": "No token"})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "CSRF_FAILED"

    r = c.post("/api/cases/", json={"title": "With token"}, headers={"X-CSRF-Token": token})
    assert r.status_code == 201
