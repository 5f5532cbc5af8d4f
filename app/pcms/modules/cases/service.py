"""
Case Workflow Orchestrator.

Wraps the pure state machine (workflow.py) with persistence and collaborators:

    load case + actor -> plan_transition (no mutation) -> CAS status update, history,
    child rows, one notification dispatch, audit event -> single commit

Completion additionally generates the report and QR code in a second, separately
committed unit. A failing renderer or QR generator never undoes the completed status;
the failure comes back as a warning on the TransitionResult and `regenerate_report`
can retry later. Persistence errors always propagate.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.pcms.access import (
    VISIBILITY_RESTRICTED,
    AccessDescriptor,
    Principal,
    ROLE_MANAGER,
    ROLE_STUDENT,
    can_edit,
    can_read,
    principal_for,
)
from app.pcms.audit import record_event
from app.pcms.errors import AuthorizationError, InvalidStateTransitionError, ValidationError
from app.pcms.models import User
from app.pcms.modules.notifications.service import (
    NotificationDispatcher,
    NotificationEvent,
    dispatcher_from_config,
)
from app.pcms.qr import QrCodeGenerator, qr_generator_from_config
from app.pcms.rbac import load_actor, resolve_department_id, user_has_capability
from app.pcms.utils import generate_reference, isoformat, parse_int

from . import repository
from .models import Case
from .reports import ReportRenderer, renderer_from_config
from .workflow import (
    ASSIGN,
    ASSIGNED,
    ARCHIVED,
    CASE_STATUSES,
    COMPLETE_REVIEW,
    COMPLETED,
    DRAFT,
    EVALUATED_STATUSES,
    IN_REVIEW,
    MUTABLE_STATUSES,
    REJECTED,
    REQUEST_REVISION,
    REVISION_REQUESTED,
    SUBMIT,
    SUBMITTED,
    CaseState,
    PlannedTransition,
    TransitionContext,
    allowed_triggers,
    plan_transition,
)

logger = logging.getLogger(__name__)

CONTENT_FIELDS = ("patient_info", "medical_history", "soap_note", "case_details")
EDITABLE_FIELDS = ("title", *CONTENT_FIELDS, "attachments")
MIN_SEARCH_LENGTH = 2


@dataclass(frozen=True)
class CaseCollaborators:
    dispatcher: NotificationDispatcher
    renderer: ReportRenderer
    qr: QrCodeGenerator


def collaborators_from_config(config: dict) -> CaseCollaborators:
    return CaseCollaborators(
        dispatcher=dispatcher_from_config(config),
        renderer=renderer_from_config(config),
        qr=qr_generator_from_config(config),
    )


@dataclass
class TransitionResult:
    case: Case
    warnings: list[str] = field(default_factory=list)
    notification_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"case": case_to_dict(self.case), "warnings": list(self.warnings)}


# Visibility

def case_access_descriptor(case: Case) -> AccessDescriptor:
    """Cases are restricted resources: owner as author, the reviewer on the user allow-list."""
    return AccessDescriptor.build(
        author_id=case.student_id,
        department_id=case.department_id,
        visibility=VISIBILITY_RESTRICTED,
        allowed_users=[case.assigned_to_id] if case.assigned_to_id is not None else [],
    )


def can_view_case(principal: Principal, case: Case) -> bool:
    descriptor = case_access_descriptor(case)
    return can_read(principal, descriptor) or can_edit(principal, descriptor)


def _ensure_visible(principal: Principal, case: Case) -> None:
    if not can_view_case(principal, case):
        logger.warning("Case access denied case_id=%s user_id=%s", case.id, principal.id)
        raise AuthorizationError("You do not have access to this case.", details={"case_id": case.id})


# Serialization

def case_snapshot(case: Case) -> dict[str, Any]:
    ev = case.evaluation
    return {
        "id": case.id,
        "case_number": case.case_number,
        "title": case.title,
        "status": case.status,
        "student_id": case.student_id,
        "department_id": case.department_id,
        "assigned_to_id": case.assigned_to_id,
        "patient_info": case.patient_info,
        "medical_history": case.medical_history,
        "soap_note": case.soap_note,
        "case_details": case.case_details,
        "attachments": case.attachments or [],
        "evaluation": (
            {
                "score": ev.score,
                "max_score": ev.max_score,
                "feedback": ev.feedback,
                "rubric_items": ev.rubric_items or [],
                "evaluated_by_id": ev.evaluated_by_user_id,
                "evaluated_at": isoformat(ev.evaluated_at),
            }
            if ev is not None
            else None
        ),
        "created_at": isoformat(case.created_at),
        "updated_at": isoformat(case.updated_at),
    }


def case_to_dict(case: Case) -> dict[str, Any]:
    data = case_snapshot(case)
    data["workflow_history"] = [
        {
            "status": h.status,
            "changed_by_id": h.changed_by_user_id,
            "note": h.note,
            "created_at": isoformat(h.created_at),
        }
        for h in case.workflow_history
    ]
    data["revision_requests"] = [
        {
            "requested_by_id": rr.requested_by_user_id,
            "description": rr.description,
            "created_at": isoformat(rr.created_at),
            "resolved_at": isoformat(rr.resolved_at),
        }
        for rr in case.revision_requests
    ]
    data["report"] = (
        {
            "path": case.report_path,
            "qr_code": case.report_qr_code,
            "url": case.report_url,
            "generated_at": isoformat(case.report_generated_at),
        }
        if case.has_report
        else None
    )
    data["allowed_triggers"] = allowed_triggers(case.status)
    return data


# Content

def _clean_content(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if key == "title":
        if not isinstance(value, str) or not value.strip():
            raise ValidationError.required_field("title")
        return value.strip()
    if value is None:
        return None
    if key == "attachments":
        if not isinstance(value, list) or not all(isinstance(a, dict) for a in value):
            raise ValidationError("attachments must be a list of objects.", details={"field": key})
        return value
    if not isinstance(value, dict):
        raise ValidationError(f"{key} must be an object.", details={"field": key})
    return value


def _new_case_number(s: Session) -> str:
    for _ in range(5):
        number = generate_reference("CASE")
        if not repository.case_number_exists(s, number):
            return number
    raise RuntimeError("Could not allocate a unique case number.")


def create_case(s: Session, *, actor_id: int, data: dict[str, Any], student_id: int | None = None) -> Case:
    actor = load_actor(s, actor_id)

    if student_id is None or student_id == actor.id:
        student = actor
    else:
        if not user_has_capability(actor, "cases.create_on_behalf"):
            raise AuthorizationError("Only staff or above may create a case on behalf of a student.")
        student = load_actor(s, student_id)
        if student.role != ROLE_STUDENT:
            raise ValidationError("Cases can only be created for students.", details={"field": "student_id"})

    department_id = resolve_department_id(s, data.get("department_id"), student.department_id)

    case = Case(
        case_number=_new_case_number(s),
        title=_clean_content(data, "title"),
        student_id=student.id,
        department_id=department_id,
        status=DRAFT,
        assigned_to_id=None,
        attachments=_clean_content(data, "attachments") or [],
        **{key: _clean_content(data, key) for key in CONTENT_FIELDS},
    )
    s.add(case)
    repository.append_history(case, status=DRAFT, changed_by_id=actor.id, note="Case created")
    s.flush()

    record_event(
        s,
        actor=actor,
        action="case.create",
        entity_type="Case",
        entity_id=str(case.id),
        metadata={"case_number": case.case_number, "student_id": student.id, "on_behalf": student.id != actor.id},
    )
    s.commit()
    logger.info("Case created case_id=%s case_number=%s student_id=%s", case.id, case.case_number, student.id)
    return case


def update_case(s: Session, case_id: int, *, actor_id: int, data: dict[str, Any]) -> Case:
    """Generic content update. Workflow fields are only written by attempt_transition and are dropped here."""
    actor = load_actor(s, actor_id)
    case = repository.find_by_id(s, case_id)

    if actor.id != case.student_id:
        raise AuthorizationError("Only the case owner may edit this case.")
    if case.status not in MUTABLE_STATUSES:
        raise AuthorizationError(
            f"Case cannot be edited in status '{case.status}'.",
            details={"status": case.status},
        )

    changed: dict[str, Any] = {}
    for key in EDITABLE_FIELDS:
        if key not in data:
            continue
        value = _clean_content(data, key)
        old = getattr(case, key)
        if value == old:
            continue
        setattr(case, key, value)
        changed[key] = {"old": old, "new": value} if key == "title" else True

    if not changed:
        return case

    case.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="case.update",
        entity_type="Case",
        entity_id=str(case.id),
        metadata={"case_number": case.case_number, "changed": changed},
    )
    s.commit()
    return case


def get_case(s: Session, case_id: int, *, actor_id: int) -> Case:
    actor = load_actor(s, actor_id)
    case = repository.find_by_id(s, case_id)
    _ensure_visible(principal_for(actor), case)
    return case


def get_case_by_number(s: Session, case_number: str, *, actor_id: int) -> Case:
    actor = load_actor(s, actor_id)
    case = repository.find_by_case_number(s, case_number)
    _ensure_visible(principal_for(actor), case)
    return case


def list_cases(
    s: Session,
    *,
    actor_id: int,
    status: str | list[str] | None = None,
    department_id: int | None = None,
    student_id: int | None = None,
    assigned_to_id: int | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Case], int]:
    actor = load_actor(s, actor_id)
    statuses = [status] if isinstance(status, str) else list(status or [])
    unknown = [st for st in statuses if st not in CASE_STATUSES]
    if unknown:
        raise ValidationError(f"Unknown status filter: {', '.join(unknown)}", details={"field": "status"})
    return repository.list_cases(
        s,
        principal=principal_for(actor),
        statuses=statuses,
        department_id=department_id,
        student_id=student_id,
        assigned_to_id=assigned_to_id,
        page=page,
        per_page=per_page,
    )


def search_cases(s: Session, query: str, *, actor_id: int) -> list[Case]:
    actor = load_actor(s, actor_id)
    query = (query or "").strip()
    if len(query) < MIN_SEARCH_LENGTH:
        raise ValidationError(
            f"Search query must be at least {MIN_SEARCH_LENGTH} characters.",
            details={"field": "q"},
        )
    return repository.search_cases(s, principal=principal_for(actor), query=query)


def delete_case(s: Session, case_id: int, *, actor_id: int) -> None:
    actor = load_actor(s, actor_id)
    case = repository.find_by_id(s, case_id)
    principal = principal_for(actor)

    if principal.role == ROLE_STUDENT:
        if case.student_id != actor.id:
            raise AuthorizationError("You can only delete your own cases.")
        if case.status != DRAFT:
            raise AuthorizationError("Students can only delete cases in draft.", details={"status": case.status})
    elif not can_edit(principal, case_access_descriptor(case)):
        raise AuthorizationError("You do not have permission to delete this case.")

    repository.soft_delete(case, deleted_by_id=actor.id)
    record_event(
        s,
        actor=actor,
        action="case.delete",
        entity_type="Case",
        entity_id=str(case.id),
        metadata={"case_number": case.case_number, "status": case.status},
    )
    s.commit()
    logger.info("Case soft-deleted case_id=%s by user_id=%s", case.id, actor.id)


# Transitions

def _case_state(case: Case) -> CaseState:
    return CaseState(
        status=case.status,
        student_id=case.student_id,
        assigned_to_id=case.assigned_to_id,
        revision_count=len(case.revision_requests),
    )


def _resolve_assignee(s: Session, payload: dict[str, Any]) -> User | None:
    raw = payload.get("assignee_id")
    if raw is None:
        return None
    user = s.get(User, parse_int(raw, "assignee_id"))
    if user is None or not user.is_active:
        return None
    return user


def _transition_notification(case: Case, planned: PlannedTransition, actor: User) -> NotificationEvent:
    target = planned.target
    params = planned.params
    common = {"related_entity": "case", "related_entity_id": case.id, "sender_id": actor.id}
    to_student = {"recipient_ids": (case.student_id,)}

    if target == SUBMITTED:
        resubmitted = planned.source == REVISION_REQUESTED
        return NotificationEvent(
            type="approval_request",
            title="Case Resubmitted" if resubmitted else "New Case Submission",
            message=(
                f'Case "{case.title}" ({case.case_number}) has been '
                f'{"resubmitted after revision" if resubmitted else "submitted for review"}.'
            ),
            recipient_role=ROLE_MANAGER,
            recipient_department_id=case.department_id,
            **common,
        )
    if target == ASSIGNED:
        return NotificationEvent(
            type="assignment",
            title="Case Assigned for Review",
            message=f'You have been assigned to review case "{case.title}" ({case.case_number}).',
            recipient_ids=(params["assignee_id"],),
            **common,
        )
    if target == IN_REVIEW:
        return NotificationEvent(
            type="case_update",
            title="Case Review Started",
            message=f'Review of your case "{case.title}" has started.',
            **to_student,
            **common,
        )
    if target == REVISION_REQUESTED:
        return NotificationEvent(
            type="case_update",
            title="Revision Required for Your Case",
            message=f'Your case "{case.title}" requires revisions. Details: {params["description"]}',
            **to_student,
            **common,
        )
    if target == COMPLETED:
        return NotificationEvent(
            type="approval_result",
            title="Case Review Completed",
            message=(
                f'Your case "{case.title}" has been reviewed. '
                f'Score: {params["score"]:g}/{params["max_score"]:g}'
            ),
            **to_student,
            **common,
        )
    if target == REJECTED:
        reason = params.get("reason")
        return NotificationEvent(
            type="approval_result",
            title="Case Rejected",
            message=f'Your case "{case.title}" was rejected.' + (f" Reason: {reason}" if reason else ""),
            **to_student,
            **common,
        )
    if target == ARCHIVED:
        return NotificationEvent(
            type="case_update",
            title="Case Archived",
            message=f'Your case "{case.title}" has been archived.',
            **to_student,
            **common,
        )
    raise ValueError(f"No notification defined for status {target!r}")


def _apply(s: Session, case: Case, planned: PlannedTransition, actor: User) -> None:
    params = planned.params
    values: dict[str, Any] = {}
    if planned.trigger == ASSIGN:
        values["assigned_to_id"] = params["assignee_id"]
    elif planned.trigger == SUBMIT and planned.source == REVISION_REQUESTED:
        values["assigned_to_id"] = None

    repository.update_status_atomic(
        s,
        case,
        expected_status=planned.source,
        new_status=planned.target,
        changed_by_id=actor.id,
        note=planned.note,
        values=values,
    )

    if planned.trigger == SUBMIT and planned.source == REVISION_REQUESTED:
        repository.resolve_open_revision_requests(case)
    elif planned.trigger == REQUEST_REVISION:
        repository.append_revision_request(s, case, requested_by_id=actor.id, description=params["description"])
    elif planned.trigger == COMPLETE_REVIEW:
        repository.set_evaluation(
            s,
            case,
            evaluated_by_id=actor.id,
            score=params["score"],
            max_score=params["max_score"],
            feedback=params["feedback"],
            rubric_items=params["rubric_items"],
        )


def attempt_transition(
    s: Session,
    case_id: int,
    trigger: str,
    *,
    actor_id: int,
    payload: dict[str, Any] | None = None,
    collaborators: CaseCollaborators,
    max_revision_requests: int = 0,
) -> TransitionResult:
    """
    Fire `trigger` on a case as `actor_id`.

    Raises ValidationError / AuthorizationError / InvalidStateTransitionError before any
    mutation; a lost compare-and-swap race also surfaces as InvalidStateTransitionError
    with nothing committed.
    """
    payload = dict(payload or {})
    actor = load_actor(s, actor_id)
    case = repository.find_by_id(s, case_id)

    assignee = _resolve_assignee(s, payload) if trigger == ASSIGN else None
    ctx = TransitionContext(
        case=_case_state(case),
        actor=principal_for(actor),
        payload=payload,
        assignee=principal_for(assignee) if assignee is not None else None,
        assignee_label=assignee.email if assignee is not None else None,
        max_revision_requests=max_revision_requests,
    )
    planned = plan_transition(ctx, trigger)

    try:
        _apply(s, case, planned, actor)
        notification_ids = collaborators.dispatcher.dispatch(s, _transition_notification(case, planned, actor))
        record_event(
            s,
            actor=actor,
            action=f"case.{planned.trigger}",
            entity_type="Case",
            entity_id=str(case.id),
            reason=planned.params.get("reason") or planned.params.get("description"),
            metadata={
                "case_number": case.case_number,
                "from": planned.source,
                "to": planned.target,
                **({"assignee_id": planned.params["assignee_id"]} if "assignee_id" in planned.params else {}),
                **({"score": planned.params["score"]} if "score" in planned.params else {}),
            },
        )
        s.commit()
    except Exception:
        s.rollback()
        raise

    logger.info(
        "Case transition case_id=%s %s -> %s trigger=%s actor_id=%s",
        case.id,
        planned.source,
        planned.target,
        planned.trigger,
        actor.id,
    )

    result = TransitionResult(case=case, notification_ids=notification_ids)
    if planned.target == COMPLETED:
        warning = _generate_report(s, case, actor=actor, collaborators=collaborators)
        if warning:
            result.warnings.append(warning)
    return result


def _generate_report(s: Session, case: Case, *, actor: User, collaborators: CaseCollaborators) -> str | None:
    """Render report + QR in its own unit of work. Returns a warning instead of raising on collaborator failure."""
    try:
        qr = collaborators.qr.generate(f"/cases/{case.id}/report", f"Case Report {case.case_number}")
        path = collaborators.renderer.render(case_snapshot(case), qr)
        repository.set_report(case, path=path, qr_code=qr.code, url=qr.url)
        record_event(
            s,
            actor=actor,
            action="case.report_generated",
            entity_type="Case",
            entity_id=str(case.id),
            metadata={"case_number": case.case_number, "report_path": path},
        )
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        raise
    except Exception as e:
        s.rollback()
        logger.warning("Report generation failed case_id=%s: %s", case.id, e, exc_info=True)
        return f"Report generation failed: {e}"
    return None


def regenerate_report(s: Session, case_id: int, *, actor_id: int, collaborators: CaseCollaborators) -> TransitionResult:
    actor = load_actor(s, actor_id)
    case = repository.find_by_id(s, case_id)
    principal = principal_for(actor)

    if case.status not in EVALUATED_STATUSES:
        raise InvalidStateTransitionError(
            f"A report can only be generated for a completed case (status '{case.status}').",
            current_status=case.status,
            trigger=None,
        )
    if not (principal.is_elevated or actor.id == case.assigned_to_id):
        raise AuthorizationError("Only the reviewer or a manager may regenerate the report.")

    result = TransitionResult(case=case)
    warning = _generate_report(s, case, actor=actor, collaborators=collaborators)
    if warning:
        result.warnings.append(warning)
    return result
