import pytest
from werkzeug.security import generate_password_hash

from app.pcms import create_app
from app.pcms.db import session_scope
from app.pcms.errors import AuthorizationError, InvalidStateTransitionError, NotFoundError, ValidationError
from app.pcms.models import AuditEvent, Base, Department, User
from app.pcms.modules.cases import repository, service
from app.pcms.modules.cases.models import Case, CaseWorkflowEntry
from app.pcms.modules.cases.reports import ReportRenderer
from app.pcms.modules.cases.workflow import ASSIGNED_STATUSES
from app.pcms.modules.notifications.mailer import Mailer
from app.pcms.modules.notifications.models import Notification
from app.pcms.modules.notifications.service import NotificationDispatcher
from app.pcms.qr import AccessCodeGenerator


class RecordingMailer(Mailer):
    def __init__(self):
        self.sent = []

    def send(self, *, to, subject, body, html=None):
        self.sent.append((to, subject))
        return True, "sent"


class MemoryRenderer(ReportRenderer):
    def __init__(self):
        self.rendered = []

    def render(self, snapshot, qr):
        self.rendered.append(snapshot)
        return f"reports/case-report-{snapshot['case_number']}.txt"


class ExplodingRenderer(ReportRenderer):
    def render(self, snapshot, qr):
        raise RuntimeError("renderer offline")


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.delenv("SMTP_HOST", raising=False)

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
                User(email="student.a@example.com", password_hash=pw, role="student", department_id=pharm.id),
                User(email="student.b@example.com", password_hash=pw, role="student", department_id=pharm.id),
                User(email="staff.s@example.com", password_hash=pw, role="staff", department_id=pharm.id),
                User(email="staff.t@example.com", password_hash=pw, role="staff", department_id=clin.id),
                User(email="manager.m@example.com", password_hash=pw, role="manager", department_id=pharm.id),
                User(email="manager.n@example.com", password_hash=pw, role="manager", department_id=clin.id),
                User(email="admin@example.com", password_hash=pw, role="super_admin"),
            ]
        )
    return app


@pytest.fixture()
def users(app):
    with session_scope(app) as s:
        return {u.email.split("@")[0]: u.id for u in s.query(User).all()}


@pytest.fixture()
def mailer():
    return RecordingMailer()


@pytest.fixture()
def renderer():
    return MemoryRenderer()


@pytest.fixture()
def collaborators(mailer, renderer):
    return service.CaseCollaborators(
        dispatcher=NotificationDispatcher(mailer),
        renderer=renderer,
        qr=AccessCodeGenerator(base_url="https://pcms.test"),
    )


def _new_case(app, users, **data):
    payload = {"title": "Warfarin dosing in AF", "soap_note": {"subjective": "palpitations"}, **data}
    with session_scope(app) as s:
        return service.create_case(s, actor_id=users["student.a"], data=payload).id


def _fire(app, case_id, trigger, actor_id, collaborators, payload=None, **kwargs):
    with session_scope(app) as s:
        return service.attempt_transition(
            s, case_id, trigger, actor_id=actor_id, payload=payload, collaborators=collaborators, **kwargs
        )


def _to_in_review(app, users, collaborators):
    case_id = _new_case(app, users)
    _fire(app, case_id, "submit", users["student.a"], collaborators)
    _fire(app, case_id, "assign", users["manager.m"], collaborators, {"assignee_id": users["staff.s"]})
    _fire(app, case_id, "start_review", users["staff.s"], collaborators)
    return case_id


def _assert_assignment_invariant(c):
    assert (c.assigned_to_id is not None) == (c.status in ASSIGNED_STATUSES)
    assert (c.evaluation is not None) == (c.status in ("completed", "archived"))


def _notifications_for(app, user_id):
    with session_scope(app) as s:
        return [(n.type, n.title, n.message) for n in s.query(Notification).filter(Notification.recipient_id == user_id).order_by(Notification.id)]


def test_fresh_case_starts_in_draft_with_one_history_entry(app, users):
    case_id = _new_case(app, users)
    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.status == "draft"
        assert len(c.workflow_history) == 1
        assert c.workflow_history[0].status == "draft"
        assert c.assigned_to_id is None
        assert c.evaluation is None
        assert c.report_path is None
        _assert_assignment_invariant(c)
        assert c.case_number.startswith("CASE-") and len(c.case_number) == 15
        assert c.department_id == s.query(Department).filter(Department.code == "PHARM").one().id
        assert s.query(AuditEvent).filter(AuditEvent.action == "case.create").count() == 1


def test_create_case_requires_title(app, users):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            service.create_case(s, actor_id=users["student.a"], data={"title": "  "})


def test_create_case_department_must_exist(app, users):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            service.create_case(s, actor_id=users["student.a"], data={"title": "Gout flare", "department_id": 9999})
        clin_id = s.query(Department.id).filter(Department.code == "CLIN").scalar()

    case_id = _new_case(app, users, department_id=str(clin_id))
    with session_scope(app) as s:
        assert s.get(Case, case_id).department_id == clin_id


def test_create_on_behalf_requires_staff(app, users):
    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            service.create_case(
                s, actor_id=users["student.b"], data={"title": "x"}, student_id=users["student.a"]
            )
        c = service.create_case(s, actor_id=users["staff.s"], data={"title": "x"}, student_id=users["student.a"])
        assert c.student_id == users["student.a"]
        assert c.workflow_history[0].changed_by_user_id == users["staff.s"]
        with pytest.raises(ValidationError):
            service.create_case(s, actor_id=users["staff.s"], data={"title": "x"}, student_id=users["staff.t"])


def test_revision_scenario_notifies_student(app, users, collaborators):
    case_id = _to_in_review(app, users, collaborators)
    result = _fire(
        app, case_id, "request_revision", users["staff.s"], collaborators, {"description": "add dosage rationale"}
    )
    assert result.warnings == []

    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.status == "revision_requested"
        assert [rr.description for rr in c.revision_requests] == ["add dosage rationale"]
        assert c.revision_requests[0].requested_by_user_id == users["staff.s"]
        assert [h.status for h in c.workflow_history] == ["draft", "submitted", "assigned", "in_review", "revision_requested"]
        assert c.assigned_to_id == users["staff.s"]
        _assert_assignment_invariant(c)

    titles = [t for _, t, _ in _notifications_for(app, users["student.a"])]
    assert "Revision Required for Your Case" in titles
    revision = [m for _, t, m in _notifications_for(app, users["student.a"]) if t == "Revision Required for Your Case"]
    assert revision[0].endswith("Details: add dosage rationale")


def test_submission_notifies_department_managers_only(app, users, collaborators, mailer):
    case_id = _new_case(app, users)
    result = _fire(app, case_id, "submit", users["student.a"], collaborators)
    assert len(result.notification_ids) == 1

    assert [t for _, t, _ in _notifications_for(app, users["manager.m"])] == ["New Case Submission"]
    assert _notifications_for(app, users["manager.n"]) == []
    assert mailer.sent == [("manager.m@example.com", "New Case Submission")]


def test_assignment_notifies_assignee(app, users, collaborators):
    case_id = _new_case(app, users)
    _fire(app, case_id, "submit", users["student.a"], collaborators)
    result = _fire(app, case_id, "assign", users["manager.m"], collaborators, {"assignee_id": users["staff.s"]})
    assert result.case.assigned_to_id == users["staff.s"]
    assert _notifications_for(app, users["staff.s"])[0][:2] == ("assignment", "Case Assigned for Review")
    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.workflow_history[-1].note == "Case assigned to staff.s@example.com"


def test_assign_to_non_staff_is_rejected_without_mutation(app, users, collaborators):
    case_id = _new_case(app, users)
    _fire(app, case_id, "submit", users["student.a"], collaborators)
    with pytest.raises(ValidationError):
        _fire(app, case_id, "assign", users["manager.m"], collaborators, {"assignee_id": users["student.b"]})
    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.status == "submitted"
        assert c.assigned_to_id is None
        assert len(c.workflow_history) == 2


def test_assign_rejects_fractional_assignee_id(app, users, collaborators):
    case_id = _new_case(app, users)
    _fire(app, case_id, "submit", users["student.a"], collaborators)
    with pytest.raises(ValidationError):
        _fire(app, case_id, "assign", users["manager.m"], collaborators, {"assignee_id": users["staff.s"] + 0.5})

    # Integral floats are still ids
    result = _fire(app, case_id, "assign", users["manager.m"], collaborators, {"assignee_id": float(users["staff.s"])})
    assert result.case.assigned_to_id == users["staff.s"]


def test_invalid_transition_leaves_case_unmodified(app, users, collaborators):
    case_id = _new_case(app, users)
    with pytest.raises(InvalidStateTransitionError):
        _fire(app, case_id, "start_review", users["staff.s"], collaborators)
    with pytest.raises(InvalidStateTransitionError):
        _fire(app, case_id, "complete_review", users["staff.s"], collaborators, {"evaluation": {"score": 85}})
    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.status == "draft"
        assert len(c.workflow_history) == 1
        assert c.evaluation is None
        assert s.query(Notification).count() == 0


def test_completion_with_failing_renderer_still_completes_and_notifies(app, users, collaborators):
    case_id = _to_in_review(app, users, collaborators)
    failing = service.CaseCollaborators(
        dispatcher=collaborators.dispatcher,
        renderer=ExplodingRenderer(),
        qr=collaborators.qr,
    )
    result = _fire(
        app,
        case_id,
        "complete_review",
        users["staff.s"],
        failing,
        {"evaluation": {"score": 85, "max_score": 100, "feedback": "Good"}},
    )
    assert len(result.warnings) == 1
    assert "renderer offline" in result.warnings[0]

    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.status == "completed"
        assert c.evaluation.score == 85
        assert c.evaluation.max_score == 100
        assert c.evaluation.evaluated_by_user_id == users["staff.s"]
        assert c.report_path is None
        _assert_assignment_invariant(c)

    completed = [(ty, m) for ty, t, m in _notifications_for(app, users["student.a"]) if t == "Case Review Completed"]
    assert completed == [("approval_result", 'Your case "Warfarin dosing in AF" has been reviewed. Score: 85/100')]


def test_completion_generates_report_and_regenerate_retries(app, users, collaborators, renderer):
    case_id = _to_in_review(app, users, collaborators)
    failing = service.CaseCollaborators(collaborators.dispatcher, ExplodingRenderer(), collaborators.qr)
    _fire(app, case_id, "complete_review", users["staff.s"], failing, {"evaluation": {"score": 70}})

    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            service.regenerate_report(s, case_id, actor_id=users["student.a"], collaborators=collaborators)
        result = service.regenerate_report(s, case_id, actor_id=users["staff.s"], collaborators=collaborators)
        assert result.warnings == []

    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.report_path.startswith("reports/case-report-CASE-")
        assert c.report_url == f"https://pcms.test/qr/{c.report_qr_code}"
        assert c.report_generated_at is not None
    assert renderer.rendered[0]["evaluation"]["score"] == 70


def test_regenerate_report_requires_completed_case(app, users, collaborators):
    case_id = _new_case(app, users)
    with session_scope(app) as s:
        with pytest.raises(InvalidStateTransitionError):
            service.regenerate_report(s, case_id, actor_id=users["admin"], collaborators=collaborators)


def test_concurrent_assign_only_one_wins(app, users, collaborators):
    case_id = _new_case(app, users)
    _fire(app, case_id, "submit", users["student.a"], collaborators)

    sm = app.extensions["sqlalchemy_sessionmaker"]
    first, second = sm(), sm()
    try:
        stale = second.get(Case, case_id)
        assert stale.status == "submitted"

        service.attempt_transition(
            first,
            case_id,
            "assign",
            actor_id=users["manager.m"],
            payload={"assignee_id": users["staff.s"]},
            collaborators=collaborators,
        )
        with pytest.raises(InvalidStateTransitionError) as excinfo:
            service.attempt_transition(
                second,
                case_id,
                "assign",
                actor_id=users["admin"],
                payload={"assignee_id": users["staff.t"]},
                collaborators=collaborators,
            )
        # The loser is told the status that actually won
        assert excinfo.value.current_status == "assigned"
    finally:
        first.close()
        second.close()

    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.status == "assigned"
        assert c.assigned_to_id == users["staff.s"]
        assert [h.status for h in s.query(CaseWorkflowEntry).filter(CaseWorkflowEntry.case_id == case_id).order_by(CaseWorkflowEntry.id)] == [
            "draft",
            "submitted",
            "assigned",
        ]
        # Only the winner's notification exists
        assert s.query(Notification).filter(Notification.type == "assignment").count() == 1


def test_status_swap_on_deleted_case_is_not_found(app, users):
    case_id = _new_case(app, users)

    sm = app.extensions["sqlalchemy_sessionmaker"]
    stale = sm()
    try:
        c = stale.get(Case, case_id)
        with session_scope(app) as s:
            s.get(Case, case_id).is_deleted = True
        with pytest.raises(NotFoundError):
            repository.update_status_atomic(
                stale,
                c,
                expected_status="draft",
                new_status="submitted",
                changed_by_id=users["student.a"],
                note="Case submitted",
            )
    finally:
        stale.close()


def test_resubmission_clears_assignee_and_resolves_requests(app, users, collaborators):
    case_id = _to_in_review(app, users, collaborators)
    _fire(app, case_id, "request_revision", users["staff.s"], collaborators, {"description": "cite guideline"})
    _fire(app, case_id, "submit", users["student.a"], collaborators)
    with session_scope(app) as s:
        c = s.get(Case, case_id)
        assert c.status == "submitted"
        assert c.assigned_to_id is None
        assert c.revision_requests[0].resolved_at is not None
        assert c.workflow_history[-1].note == "Case resubmitted after revision"
        _assert_assignment_invariant(c)
    titles = [t for _, t, _ in _notifications_for(app, users["manager.m"])]
    assert titles == ["New Case Submission", "Case Resubmitted"]


def test_revision_cap(app, users, collaborators):
    case_id = _to_in_review(app, users, collaborators)
    _fire(
        app, case_id, "request_revision", users["staff.s"], collaborators, {"description": "one"}, max_revision_requests=1
    )
    _fire(app, case_id, "submit", users["student.a"], collaborators)
    _fire(app, case_id, "assign", users["manager.m"], collaborators, {"assignee_id": users["staff.s"]})
    _fire(app, case_id, "start_review", users["staff.s"], collaborators)
    with pytest.raises(ValidationError):
        _fire(
            app, case_id, "request_revision", users["staff.s"], collaborators, {"description": "two"}, max_revision_requests=1
        )


def test_reject_and_archive_notify_student(app, users, collaborators):
    rejected_id = _new_case(app, users)
    _fire(app, rejected_id, "submit", users["student.a"], collaborators)
    _fire(app, rejected_id, "reject", users["manager.m"], collaborators, {"reason": "incomplete"})

    archived_id = _to_in_review(app, users, collaborators)
    _fire(app, archived_id, "complete_review", users["staff.s"], collaborators, {"evaluation": {"score": 90}})
    _fire(app, archived_id, "archive", users["admin"], collaborators)

    with session_scope(app) as s:
        rejected = s.get(Case, rejected_id)
        assert rejected.status == "rejected"
        _assert_assignment_invariant(rejected)
        archived = s.get(Case, archived_id)
        assert archived.status == "archived"
        assert archived.evaluation is not None
        _assert_assignment_invariant(archived)

    titles = [t for _, t, _ in _notifications_for(app, users["student.a"])]
    assert "Case Rejected" in titles
    assert "Case Archived" in titles


def test_update_case_owner_only_and_only_while_mutable(app, users, collaborators):
    case_id = _new_case(app, users)
    with session_scope(app) as s:
        c = service.update_case(
            s,
            case_id,
            actor_id=users["student.a"],
            data={"title": "Updated title", "status": "completed", "case_number": "CASE-HACKED", "assigned_to_id": 3},
        )
        assert c.title == "Updated title"
        assert c.status == "draft"
        assert c.case_number != "CASE-HACKED"
        assert c.assigned_to_id is None

        with pytest.raises(AuthorizationError):
            service.update_case(s, case_id, actor_id=users["student.b"], data={"title": "mine now"})
        with pytest.raises(AuthorizationError):
            service.update_case(s, case_id, actor_id=users["manager.m"], data={"title": "manager edit"})

    _fire(app, case_id, "submit", users["student.a"], collaborators)
    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            service.update_case(s, case_id, actor_id=users["student.a"], data={"title": "too late"})


def test_case_visibility(app, users, collaborators):
    case_id = _to_in_review(app, users, collaborators)
    with session_scope(app) as s:
        for who in ("student.a", "staff.s", "manager.n", "admin"):
            assert service.get_case(s, case_id, actor_id=users[who]).id == case_id
        with pytest.raises(AuthorizationError):
            service.get_case(s, case_id, actor_id=users["student.b"])
        with pytest.raises(AuthorizationError):
            service.get_case(s, case_id, actor_id=users["staff.t"])
        number = s.get(Case, case_id).case_number
        assert service.get_case_by_number(s, number.lower(), actor_id=users["staff.s"]).id == case_id


def test_list_and_search_are_role_scoped(app, users, collaborators):
    mine = _new_case(app, users, title="Asthma step-up therapy")
    with session_scope(app) as s:
        other = service.create_case(s, actor_id=users["student.b"], data={"title": "Asthma in pregnancy"}).id

    with session_scope(app) as s:
        items, total = service.list_cases(s, actor_id=users["student.a"])
        assert [c.id for c in items] == [mine] and total == 1
        items, total = service.list_cases(s, actor_id=users["staff.s"])
        assert {c.id for c in items} == {mine, other}
        items, total = service.list_cases(s, actor_id=users["staff.t"])
        assert total == 0
        items, total = service.list_cases(s, actor_id=users["admin"], status="draft")
        assert total == 2
        with pytest.raises(ValidationError):
            service.list_cases(s, actor_id=users["admin"], status="pending")

        assert [c.id for c in service.search_cases(s, "asthma", actor_id=users["student.b"])] == [other]
        assert len(service.search_cases(s, "ASTHMA", actor_id=users["manager.n"])) == 2
        with pytest.raises(ValidationError):
            service.search_cases(s, "a", actor_id=users["admin"])


def test_delete_rules(app, users, collaborators):
    draft_id = _new_case(app, users)
    submitted_id = _new_case(app, users)
    _fire(app, submitted_id, "submit", users["student.a"], collaborators)

    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            service.delete_case(s, draft_id, actor_id=users["student.b"])
        with pytest.raises(AuthorizationError):
            service.delete_case(s, submitted_id, actor_id=users["student.a"])
        with pytest.raises(AuthorizationError):
            service.delete_case(s, submitted_id, actor_id=users["staff.t"])

        service.delete_case(s, draft_id, actor_id=users["student.a"])
        service.delete_case(s, submitted_id, actor_id=users["staff.s"])

    with session_scope(app) as s:
        items, total = service.list_cases(s, actor_id=users["admin"])
        assert total == 0
        with pytest.raises(NotFoundError):
            service.get_case(s, draft_id, actor_id=users["admin"])
        # History survives the soft delete
        assert s.query(CaseWorkflowEntry).filter(CaseWorkflowEntry.case_id == submitted_id).count() == 2
        with pytest.raises(NotFoundError):
            _fire(app, submitted_id, "assign", users["manager.m"], collaborators, {"assignee_id": users["staff.s"]})
