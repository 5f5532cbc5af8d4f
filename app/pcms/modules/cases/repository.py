"""
Case persistence.

All status writes go through `update_status_atomic`, a compare-and-swap on the current
status value: of two racing writers that read the same status, exactly one UPDATE
matches a row and the other gets InvalidStateTransitionError.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.pcms.access import Principal, ROLE_STAFF, ROLE_STUDENT
from app.pcms.errors import InvalidStateTransitionError, NotFoundError

from .models import Case, CaseEvaluation, CaseRevisionRequest, CaseWorkflowEntry


def find_by_id(s: Session, case_id: int, *, include_deleted: bool = False) -> Case:
    case = s.get(Case, case_id)
    if case is None or (case.is_deleted and not include_deleted):
        raise NotFoundError.for_entity("Case", case_id)
    return case


def find_by_case_number(s: Session, case_number: str) -> Case:
    case = s.query(Case).filter(Case.case_number == case_number.strip().upper()).one_or_none()
    if case is None or case.is_deleted:
        raise NotFoundError.for_entity("Case", case_number)
    return case


def case_number_exists(s: Session, case_number: str) -> bool:
    return s.query(Case.id).filter(Case.case_number == case_number).first() is not None


def append_history(case: Case, *, status: str, changed_by_id: int | None, note: str) -> CaseWorkflowEntry:
    entry = CaseWorkflowEntry(status=status, changed_by_user_id=changed_by_id, note=note)
    case.workflow_history.append(entry)
    return entry


def update_status_atomic(
    s: Session,
    case: Case,
    *,
    expected_status: str,
    new_status: str,
    changed_by_id: int,
    note: str,
    values: dict[str, Any] | None = None,
) -> CaseWorkflowEntry:
    """
    UPDATE cases SET status=:new ... WHERE id=:id AND status=:expected.

    Extra column values (e.g. assigned_to_id) are written in the same statement.
    On success the in-memory case is brought in line without marking it dirty, and
    the workflow history entry is appended to the same unit of work.
    """
    now = datetime.utcnow()
    row_values: dict[str, Any] = dict(values or {})
    row_values["status"] = new_status
    row_values["updated_at"] = now

    result = s.execute(
        update(Case)
        .where(Case.id == case.id, Case.status == expected_status, Case.is_deleted.is_(False))
        .values(**row_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = s.execute(
            select(Case.status).where(Case.id == case.id, Case.is_deleted.is_(False))
        ).scalar_one_or_none()
        if current is None:
            raise NotFoundError.for_entity("Case", case.id)
        raise InvalidStateTransitionError(
            f"Case {case.case_number} is no longer in status '{expected_status}'; re-fetch and retry.",
            current_status=current,
            trigger=None,
        )

    for key, value in row_values.items():
        set_committed_value(case, key, value)
    return append_history(case, status=new_status, changed_by_id=changed_by_id, note=note)


def append_revision_request(s: Session, case: Case, *, requested_by_id: int, description: str) -> CaseRevisionRequest:
    rr = CaseRevisionRequest(requested_by_user_id=requested_by_id, description=description)
    case.revision_requests.append(rr)
    return rr


def resolve_open_revision_requests(case: Case, *, when: datetime | None = None) -> int:
    when = when or datetime.utcnow()
    resolved = 0
    for rr in case.revision_requests:
        if rr.resolved_at is None:
            rr.resolved_at = when
            resolved += 1
    return resolved


def set_evaluation(
    s: Session,
    case: Case,
    *,
    evaluated_by_id: int,
    score: float,
    max_score: float,
    feedback: str | None,
    rubric_items: list[dict[str, Any]],
) -> CaseEvaluation:
    if case.evaluation is not None:
        raise InvalidStateTransitionError(
            f"Case {case.case_number} already has an evaluation.",
            current_status=case.status,
            trigger=None,
        )
    ev = CaseEvaluation(
        score=score,
        max_score=max_score,
        feedback=feedback,
        rubric_items=rubric_items or None,
        evaluated_by_user_id=evaluated_by_id,
    )
    case.evaluation = ev
    return ev


def set_report(case: Case, *, path: str, qr_code: str, url: str) -> None:
    case.report_path = path
    case.report_qr_code = qr_code
    case.report_url = url
    case.report_generated_at = datetime.utcnow()


def soft_delete(case: Case, *, deleted_by_id: int) -> None:
    case.is_deleted = True
    case.deleted_at = datetime.utcnow()
    case.deleted_by_user_id = deleted_by_id


def _visible_to(stmt, principal: Principal):
    if principal.is_elevated:
        return stmt
    if principal.role == ROLE_STUDENT:
        return stmt.where(Case.student_id == principal.id)
    clauses = [Case.assigned_to_id == principal.id, Case.student_id == principal.id]
    if principal.role == ROLE_STAFF and principal.department_id is not None:
        clauses.append(Case.department_id == principal.department_id)
    return stmt.where(or_(*clauses))


def list_cases(
    s: Session,
    *,
    principal: Principal,
    statuses: list[str] | None = None,
    department_id: int | None = None,
    student_id: int | None = None,
    assigned_to_id: int | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Case], int]:
    stmt = _visible_to(select(Case).where(Case.is_deleted.is_(False)), principal)
    if statuses:
        stmt = stmt.where(Case.status.in_(statuses))
    if department_id is not None:
        stmt = stmt.where(Case.department_id == department_id)
    if student_id is not None:
        stmt = stmt.where(Case.student_id == student_id)
    if assigned_to_id is not None:
        stmt = stmt.where(Case.assigned_to_id == assigned_to_id)

    total = s.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    items = (
        s.execute(stmt.order_by(Case.created_at.desc(), Case.id.desc()).offset((page - 1) * per_page).limit(per_page))
        .scalars()
        .all()
    )
    return list(items), int(total)


def search_cases(s: Session, *, principal: Principal, query: str, limit: int = 50) -> list[Case]:
    pattern = f"%{query.strip()}%"
    stmt = _visible_to(
        select(Case).where(
            Case.is_deleted.is_(False),
            or_(Case.case_number.ilike(pattern), Case.title.ilike(pattern)),
        ),
        principal,
    )
    return list(s.execute(stmt.order_by(Case.created_at.desc()).limit(limit)).scalars().all())
