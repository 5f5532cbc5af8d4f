from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g
from sqlalchemy.orm import Session

from app.pcms.access import ROLE_MANAGER, ROLE_STAFF, ROLE_STUDENT, ROLE_SUPER_ADMIN
from app.pcms.errors import AuthenticationError, ValidationError
from app.pcms.models import Department, User
from app.pcms.utils import parse_int

ROLES = (ROLE_SUPER_ADMIN, ROLE_MANAGER, ROLE_STAFF, ROLE_STUDENT)

ROLE_HIERARCHY: dict[str, frozenset[str]] = {
    ROLE_SUPER_ADMIN: frozenset({ROLE_SUPER_ADMIN, ROLE_MANAGER, ROLE_STAFF, ROLE_STUDENT}),
    ROLE_MANAGER: frozenset({ROLE_MANAGER, ROLE_STAFF, ROLE_STUDENT}),
    ROLE_STAFF: frozenset({ROLE_STAFF, ROLE_STUDENT}),
    ROLE_STUDENT: frozenset({ROLE_STUDENT}),
}

ROLE_LABELS = {
    ROLE_SUPER_ADMIN: "Super Admin",
    ROLE_MANAGER: "Department Manager",
    ROLE_STAFF: "Faculty Staff",
    ROLE_STUDENT: "Student",
}

# Capability -> minimum role. Checked through the hierarchy, so super_admin inherits manager's.
CAPABILITIES: dict[str, str] = {
    "cases.create_on_behalf": ROLE_STAFF,
    "cases.assign": ROLE_MANAGER,
    "cases.reject": ROLE_MANAGER,
    "cases.archive": ROLE_MANAGER,
    "documents.create": ROLE_STUDENT,
}


def role_at_least(role: str | None, minimum: str) -> bool:
    return minimum in ROLE_HIERARCHY.get(role or "", frozenset())


def role_has_capability(role: str | None, capability: str) -> bool:
    minimum = CAPABILITIES.get(capability)
    if minimum is None:
        return False
    return role_at_least(role, minimum)


def user_has_capability(user: User | None, capability: str) -> bool:
    if not user or not user.is_active:
        return False
    return role_has_capability(user.role, capability)


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            raise AuthenticationError("Login required.")
        return fn(*args, **kwargs)

    return wrapped


def load_actor(s: Session, user_id: int) -> User:
    """Resolve the acting principal for service calls; unknown or inactive users are unauthenticated."""
    user = s.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("Unknown or inactive user.", details={"user_id": str(user_id)})
    return user


def resolve_department_id(s: Session, value: Any, default: int | None) -> int | None:
    """Caller-supplied department ids must name an existing department; None keeps the default."""
    if value is None:
        return default
    department_id = parse_int(value, "department_id")
    if s.get(Department, department_id) is None:
        raise ValidationError("Unknown department.", details={"field": "department_id", "department_id": department_id})
    return department_id
