import smtplib

import pytest
from werkzeug.security import generate_password_hash

from app.pcms import create_app
from app.pcms.db import session_scope
from app.pcms.errors import AuthorizationError, NotFoundError, ValidationError
from app.pcms.models import Base, Department, User
from app.pcms.modules.notifications import mailer as mailer_mod
from app.pcms.modules.notifications import service
from app.pcms.modules.notifications.mailer import DisabledMailer, Mailer, SmtpMailer, mailer_from_config
from app.pcms.modules.notifications.models import Notification


class RecordingMailer(Mailer):
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send(self, *, to, subject, body, html=None):
        self.sent.append(to)
        return (True, "sent") if self.ok else (False, "mailbox full")


class RaisingMailer(Mailer):
    def send(self, *, to, subject, body, html=None):
        raise ConnectionResetError("smtp went away")


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        pharm = Department(code="PHARM", name="Pharmacy Practice")
        clin = Department(code="CLIN", name="Clinical Sciences")
        s.add_all([pharm, clin])
        s.flush()
        pw = generate_password_hash("pw")
        s.add_all(
            [
                User(email="student@example.com", password_hash=pw, role="student", department_id=pharm.id),
                User(
                    email="quiet@example.com",
                    password_hash=pw,
                    role="student",
                    department_id=pharm.id,
                    email_notifications=False,
                ),
                User(email="m1@example.com", password_hash=pw, role="manager", department_id=pharm.id),
                User(email="m2@example.com", password_hash=pw, role="manager", department_id=pharm.id),
                User(
                    email="gone@example.com",
                    password_hash=pw,
                    role="manager",
                    department_id=pharm.id,
                    is_active=False,
                ),
                User(email="m3@example.com", password_hash=pw, role="manager", department_id=clin.id),
            ]
        )
    return app


@pytest.fixture()
def users(app):
    with session_scope(app) as s:
        return {u.email.split("@")[0]: u.id for u in s.query(User).all()}


def _event(**kwargs):
    base = {
        "type": "case_update",
        "title": "Case Review Started",
        "message": 'Review of your case "Asthma" has started.',
        "related_entity": "case",
        "related_entity_id": 1,
    }
    base.update(kwargs)
    return service.NotificationEvent(**base)


def _dispatch(app, mailer, event):
    with session_scope(app) as s:
        return service.NotificationDispatcher(mailer).dispatch(s, event)


def _rows(app):
    with session_scope(app) as s:
        return {n.recipient_id: n for n in s.query(Notification).all()}


def test_email_follows_recipient_preference(app, users):
    mailer = RecordingMailer()
    ids = _dispatch(app, mailer, _event(recipient_ids=(users["student"], users["quiet"])))
    assert len(ids) == 2
    assert mailer.sent == ["student@example.com"]

    rows = _rows(app)
    assert rows[users["student"]].email_sent is True
    assert rows[users["student"]].email_sent_at is not None
    assert rows[users["quiet"]].email_sent is False
    assert all(n.is_read is False for n in rows.values())


def test_raising_mailer_does_not_fail_dispatch(app, users):
    ids = _dispatch(app, RaisingMailer(), _event(recipient_ids=(users["student"],)))
    assert len(ids) == 1
    assert _rows(app)[users["student"]].email_sent is False


def test_failed_delivery_leaves_email_unsent(app, users):
    mailer = RecordingMailer(ok=False)
    _dispatch(app, mailer, _event(recipient_ids=(users["student"],)))
    assert mailer.sent == ["student@example.com"]
    assert _rows(app)[users["student"]].email_sent is False


def test_role_fan_out_is_department_scoped_and_skips_inactive(app, users):
    ids = _dispatch(
        app,
        DisabledMailer(),
        _event(
            type="approval_request",
            title="New Case Submission",
            recipient_role="manager",
            recipient_department_id=_department_id(app, "PHARM"),
        ),
    )
    assert len(ids) == 2
    assert set(_rows(app)) == {users["m1"], users["m2"]}


def test_role_fan_out_without_department_reaches_all(app, users):
    _dispatch(app, DisabledMailer(), _event(type="approval_request", recipient_role="manager"))
    assert set(_rows(app)) == {users["m1"], users["m2"], users["m3"]}


def test_recipients_are_deduplicated(app, users):
    ids = _dispatch(
        app,
        DisabledMailer(),
        _event(recipient_ids=(users["m1"], users["m1"]), recipient_role="manager"),
    )
    assert len(ids) == 3


def test_no_recipients_creates_nothing(app, users):
    assert _dispatch(app, DisabledMailer(), _event(recipient_ids=(users["gone"],))) == []
    assert _rows(app) == {}


@pytest.mark.parametrize(
    "override",
    [{"type": "gossip"}, {"related_entity": "invoice"}, {"title": "  "}, {"message": ""}],
)
def test_invalid_events_are_rejected(app, users, override):
    with pytest.raises(ValidationError):
        _dispatch(app, DisabledMailer(), _event(recipient_ids=(users["student"],), **override))


def test_inbox_read_operations(app, users):
    _dispatch(app, DisabledMailer(), _event(recipient_ids=(users["student"],)))
    _dispatch(app, DisabledMailer(), _event(recipient_ids=(users["student"],), title="Case Archived"))
    _dispatch(app, DisabledMailer(), _event(recipient_ids=(users["m1"],)))

    with session_scope(app) as s:
        student = s.get(User, users["student"])
        m1 = s.get(User, users["m1"])
        items, total = service.list_notifications(s, user=student)
        assert total == 2
        assert service.unread_count(s, user=student) == 2

        with pytest.raises(AuthorizationError):
            service.mark_as_read(s, items[0].id, user=m1)
        with pytest.raises(NotFoundError):
            service.mark_as_read(s, 9999, user=student)

        n = service.mark_as_read(s, items[0].id, user=student)
        assert n.is_read is True and n.read_at is not None
        assert service.unread_count(s, user=student) == 1
        unread, total = service.list_notifications(s, user=student, unread_only=True)
        assert total == 1 and unread[0].id == items[1].id

        assert service.mark_all_as_read(s, user=student) == 1
        assert service.unread_count(s, user=student) == 0
        # Other inboxes are untouched
        assert service.unread_count(s, user=m1) == 1


def test_notification_to_dict(app, users):
    [nid] = _dispatch(app, DisabledMailer(), _event(recipient_ids=(users["student"],)))
    with session_scope(app) as s:
        data = service.notification_to_dict(s.get(Notification, nid))
    assert data["type"] == "case_update"
    assert data["related_entity"] == "case"
    assert data["is_read"] is False
    assert data["read_at"] is None


def _department_id(app, code):
    with session_scope(app) as s:
        return s.query(Department).filter(Department.code == code).one().id


def test_mailer_from_config():
    assert isinstance(mailer_from_config({"SMTP_HOST": ""}), DisabledMailer)
    m = mailer_from_config({"SMTP_HOST": "smtp.example.com", "SMTP_PORT": 2525, "SMTP_FROM": "pcms@example.com"})
    assert isinstance(m, SmtpMailer)
    assert (m.host, m.port, m.sender, m.use_tls) == ("smtp.example.com", 2525, "pcms@example.com", True)
    assert DisabledMailer().send(to="a@example.com", subject="s", body="b")[0] is False


class FakeSMTP:
    instances = []
    fail_login = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, username, password):
        if FakeSMTP.fail_login:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")
        self.calls.append(("login", username))

    def send_message(self, msg):
        self.messages.append(msg)


@pytest.fixture()
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_login = False
    monkeypatch.setattr(mailer_mod.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_smtp_mailer_sends_multipart_message(fake_smtp):
    m = SmtpMailer(host="smtp.example.com", port=587, username="bot", password="pw", sender="pcms@example.com")
    ok, detail = m.send(to="student@example.com", subject="Case Archived", body="plain", html="<p>html</p>")
    assert (ok, detail) == (True, "sent")

    [server] = fake_smtp.instances
    assert server.calls == ["starttls", ("login", "bot")]
    [msg] = server.messages
    assert msg["To"] == "student@example.com"
    assert msg["From"] == "pcms@example.com"
    assert msg["Subject"] == "Case Archived"
    assert msg.is_multipart()


def test_smtp_mailer_reports_auth_failure(fake_smtp):
    fake_smtp.fail_login = True
    m = SmtpMailer(host="smtp.example.com", port=587, username="bot", password="wrong", sender="pcms@example.com")
    ok, detail = m.send(to="student@example.com", subject="s", body="b")
    assert ok is False
    assert detail.startswith("SMTP authentication failed")
