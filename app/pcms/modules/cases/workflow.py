"""
Case lifecycle state machine.

The whole lifecycle lives in one table keyed by (current status, trigger). Each entry
names the destination, who may fire it, and the guard that validates the payload.
`plan_transition` evaluates the entry in a fixed order and never mutates anything:

1. unknown trigger                      -> ValidationError
2. (status, trigger) not in the table   -> InvalidStateTransitionError
3. actor rule fails                     -> AuthorizationError
4. guard fails                          -> ValidationError

Persistence and side effects are the orchestrator's job (service.py).
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import math
from numbers import Real
from typing import Any

from app.pcms.access import ROLE_STAFF, Principal
from app.pcms.errors import AuthorizationError, InvalidStateTransitionError, ValidationError
from app.pcms.rbac import role_has_capability

DRAFT = "draft"
SUBMITTED = "submitted"
ASSIGNED = "assigned"
IN_REVIEW = "in_review"
REVISION_REQUESTED = "revision_requested"
COMPLETED = "completed"
REJECTED = "rejected"
ARCHIVED = "archived"

CASE_STATUSES = frozenset({DRAFT, SUBMITTED, ASSIGNED, IN_REVIEW, REVISION_REQUESTED, COMPLETED, REJECTED, ARCHIVED})
TERMINAL_STATUSES = frozenset({REJECTED, ARCHIVED})

# Clinical content is editable (by the owner) only here.
MUTABLE_STATUSES = frozenset({DRAFT, REVISION_REQUESTED})
# assigned_to is set exactly in these statuses; archived keeps the completed reviewer.
ASSIGNED_STATUSES = frozenset({ASSIGNED, IN_REVIEW, REVISION_REQUESTED, COMPLETED, ARCHIVED})
EVALUATED_STATUSES = frozenset({COMPLETED, ARCHIVED})

SUBMIT = "submit"
ASSIGN = "assign"
START_REVIEW = "start_review"
REQUEST_REVISION = "request_revision"
COMPLETE_REVIEW = "complete_review"
REJECT = "reject"
ARCHIVE = "archive"

TRIGGERS = frozenset({SUBMIT, ASSIGN, START_REVIEW, REQUEST_REVISION, COMPLETE_REVIEW, REJECT, ARCHIVE})

DEFAULT_MAX_SCORE = 100.0


@dataclass(frozen=True)
class CaseState:
    """The slice of a case the state machine decides on."""

    status: str
    student_id: int
    assigned_to_id: int | None = None
    revision_count: int = 0


@dataclass(frozen=True)
class TransitionContext:
    case: CaseState
    actor: Principal
    payload: Mapping[str, Any] = field(default_factory=dict)
    # Resolved target of an `assign` (None when the payload named nobody)
    assignee: Principal | None = None
    assignee_label: str | None = None
    # 0 = unlimited
    max_revision_requests: int = 0


@dataclass(frozen=True)
class ActorRule:
    description: str
    check: Callable[[TransitionContext], bool]


@dataclass(frozen=True)
class Transition:
    source: str
    trigger: str
    target: str
    actor: ActorRule
    guard: Callable[[TransitionContext], dict[str, Any]] | None
    note: Callable[[TransitionContext, dict[str, Any]], str]


@dataclass(frozen=True)
class PlannedTransition:
    transition: Transition
    note: str
    params: dict[str, Any]

    @property
    def source(self) -> str:
        return self.transition.source

    @property
    def target(self) -> str:
        return self.transition.target

    @property
    def trigger(self) -> str:
        return self.transition.trigger


# Actor rules

CASE_OWNER = ActorRule("the case owner", lambda ctx: ctx.actor.id == ctx.case.student_id)
ASSIGNED_STAFF = ActorRule(
    "the assigned staff member",
    lambda ctx: ctx.case.assigned_to_id is not None and ctx.actor.id == ctx.case.assigned_to_id,
)


def _holds(capability: str) -> ActorRule:
    return ActorRule(
        f"a role with {capability}",
        lambda ctx: role_has_capability(ctx.actor.role, capability),
    )


CAN_ASSIGN = _holds("cases.assign")
CAN_REJECT = _holds("cases.reject")
CAN_ARCHIVE = _holds("cases.archive")


# Guards

def _guard_assignee(ctx: TransitionContext) -> dict[str, Any]:
    if ctx.assignee is None:
        if ctx.payload.get("assignee_id") is None:
            raise ValidationError.required_field("assignee_id")
        raise ValidationError(
            "Assignee not found or inactive.",
            details={"field": "assignee_id", "assignee_id": str(ctx.payload.get("assignee_id"))},
        )
    if ctx.assignee.role != ROLE_STAFF:
        raise ValidationError(
            "Case can only be assigned to staff members.",
            details={"field": "assignee_id", "role": ctx.assignee.role},
        )
    return {"assignee_id": ctx.assignee.id}


def _guard_revision_description(ctx: TransitionContext) -> dict[str, Any]:
    description = ctx.payload.get("description")
    if not isinstance(description, str) or not description.strip():
        raise ValidationError.required_field("description")
    if ctx.max_revision_requests and ctx.case.revision_count >= ctx.max_revision_requests:
        raise ValidationError(
            f"Revision limit reached ({ctx.max_revision_requests}); complete the review instead.",
            details={"limit": ctx.max_revision_requests},
        )
    return {"description": description.strip()}


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def _guard_evaluation(ctx: TransitionContext) -> dict[str, Any]:
    evaluation = ctx.payload.get("evaluation")
    if not isinstance(evaluation, Mapping):
        raise ValidationError.required_field("evaluation")
    score = evaluation.get("score")
    if not _is_number(score):
        raise ValidationError("evaluation.score must be a number.", details={"field": "evaluation.score"})
    max_score = evaluation.get("max_score", DEFAULT_MAX_SCORE)
    if max_score is None:
        max_score = DEFAULT_MAX_SCORE
    if not _is_number(max_score) or max_score <= 0:
        raise ValidationError("evaluation.max_score must be a positive number.", details={"field": "evaluation.max_score"})
    if score < 0 or score > max_score:
        raise ValidationError(
            "evaluation.score must be between 0 and max_score.",
            details={"field": "evaluation.score", "max_score": max_score},
        )

    rubric_items = evaluation.get("rubric_items") or []
    if not isinstance(rubric_items, list) or not all(isinstance(item, Mapping) for item in rubric_items):
        raise ValidationError("evaluation.rubric_items must be a list of objects.", details={"field": "evaluation.rubric_items"})

    feedback = evaluation.get("feedback")
    if feedback is not None and not isinstance(feedback, str):
        raise ValidationError("evaluation.feedback must be text.", details={"field": "evaluation.feedback"})

    return {
        "score": float(score),
        "max_score": float(max_score),
        "feedback": feedback.strip() if feedback else None,
        "rubric_items": [dict(item) for item in rubric_items],
    }


def _optional_reason(ctx: TransitionContext) -> dict[str, Any]:
    reason = ctx.payload.get("reason")
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("reason must be text.", details={"field": "reason"})
    return {"reason": reason.strip() if reason else None}


def _format_score(value: float) -> str:
    return f"{value:g}"


def _assign_note(ctx: TransitionContext, params: dict[str, Any]) -> str:
    label = ctx.assignee_label or f"staff #{params['assignee_id']}"
    return f"Case assigned to {label}"


def _with_reason(text: str, params: dict[str, Any]) -> str:
    return f"{text}: {params['reason']}" if params.get("reason") else text


TRANSITIONS: dict[tuple[str, str], Transition] = {
    (t.source, t.trigger): t
    for t in (
        Transition(DRAFT, SUBMIT, SUBMITTED, CASE_OWNER, None, lambda ctx, p: "Case submitted for review"),
        Transition(
            REVISION_REQUESTED, SUBMIT, SUBMITTED, CASE_OWNER, None,
            lambda ctx, p: "Case resubmitted after revision",
        ),
        Transition(
            SUBMITTED, ASSIGN, ASSIGNED, CAN_ASSIGN, _guard_assignee,
            _assign_note,
        ),
        Transition(ASSIGNED, START_REVIEW, IN_REVIEW, ASSIGNED_STAFF, None, lambda ctx, p: "Case review started"),
        Transition(
            IN_REVIEW, REQUEST_REVISION, REVISION_REQUESTED, ASSIGNED_STAFF, _guard_revision_description,
            lambda ctx, p: f"Revision requested: {p['description']}",
        ),
        Transition(
            IN_REVIEW, COMPLETE_REVIEW, COMPLETED, ASSIGNED_STAFF, _guard_evaluation,
            lambda ctx, p: f"Review completed with score {_format_score(p['score'])}/{_format_score(p['max_score'])}",
        ),
        Transition(SUBMITTED, REJECT, REJECTED, CAN_REJECT, _optional_reason, lambda ctx, p: _with_reason("Case rejected", p)),
        Transition(COMPLETED, ARCHIVE, ARCHIVED, CAN_ARCHIVE, _optional_reason, lambda ctx, p: _with_reason("Case archived", p)),
    )
}


def allowed_triggers(status: str) -> list[str]:
    return sorted(trigger for (source, trigger) in TRANSITIONS if source == status)


def plan_transition(ctx: TransitionContext, trigger: str) -> PlannedTransition:
    if trigger not in TRIGGERS:
        raise ValidationError(f"Unknown trigger: {trigger!r}", details={"trigger": trigger})

    transition = TRANSITIONS.get((ctx.case.status, trigger))
    if transition is None:
        raise InvalidStateTransitionError(
            f"Cannot {trigger.replace('_', ' ')} a case in status '{ctx.case.status}'.",
            current_status=ctx.case.status,
            trigger=trigger,
        )

    if not transition.actor.check(ctx):
        raise AuthorizationError(
            f"Only {transition.actor.description} may {trigger.replace('_', ' ')} this case.",
            details={"trigger": trigger, "actor_id": ctx.actor.id},
        )

    params = transition.guard(ctx) if transition.guard else {}
    return PlannedTransition(transition=transition, note=transition.note(ctx, params), params=params)
