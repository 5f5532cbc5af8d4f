"""
Access Policy Evaluator.

A single pure decision over (principal, resource access descriptor). Every controller,
service and test asks the same two questions here instead of re-deriving the policy:

- can_read: elevated role, author, public visibility, or (restricted and on any allow-list)
- can_edit: elevated role, author, or staff in the resource's owning department

Both functions are total: any well-formed input yields a bool, unknown visibility values
are treated as private. Nothing here logs or touches the database; callers record access
attempts themselves.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.pcms.models import User


ROLE_SUPER_ADMIN = "super_admin"
ROLE_MANAGER = "manager"
ROLE_STAFF = "staff"
ROLE_STUDENT = "student"

ELEVATED_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_MANAGER})

VISIBILITY_PUBLIC = "public"
VISIBILITY_PRIVATE = "private"
VISIBILITY_RESTRICTED = "restricted"
VISIBILITIES = frozenset({VISIBILITY_PUBLIC, VISIBILITY_PRIVATE, VISIBILITY_RESTRICTED})


@dataclass(frozen=True)
class Principal:
    id: int
    role: str
    department_id: int | None = None

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


@dataclass(frozen=True)
class AccessDescriptor:
    author_id: int | None
    department_id: int | None = None
    visibility: str = VISIBILITY_PRIVATE
    allowed_roles: frozenset[str] = field(default_factory=frozenset)
    allowed_users: frozenset[int] = field(default_factory=frozenset)
    allowed_departments: frozenset[int] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        *,
        author_id: int | None,
        department_id: int | None = None,
        visibility: str | None = None,
        allowed_roles: Iterable[str] | None = None,
        allowed_users: Iterable[int] | None = None,
        allowed_departments: Iterable[int] | None = None,
    ) -> "AccessDescriptor":
        return cls(
            author_id=author_id,
            department_id=department_id,
            visibility=visibility or VISIBILITY_PRIVATE,
            allowed_roles=frozenset(allowed_roles or ()),
            allowed_users=frozenset(int(u) for u in (allowed_users or ())),
            allowed_departments=frozenset(int(d) for d in (allowed_departments or ())),
        )


@dataclass(frozen=True)
class AccessDecision:
    can_read: bool
    can_edit: bool

    def to_dict(self) -> dict[str, bool]:
        return {"can_read": self.can_read, "can_edit": self.can_edit}


def principal_for(user: "User") -> Principal:
    return Principal(id=user.id, role=user.role, department_id=user.department_id)


def _is_author(principal: Principal, resource: AccessDescriptor) -> bool:
    return resource.author_id is not None and resource.author_id == principal.id


def can_read(principal: Principal, resource: AccessDescriptor) -> bool:
    if principal.is_elevated:
        return True
    if _is_author(principal, resource):
        return True
    if resource.visibility == VISIBILITY_PUBLIC:
        return True
    if resource.visibility == VISIBILITY_RESTRICTED:
        if principal.id in resource.allowed_users:
            return True
        if principal.role in resource.allowed_roles:
            return True
        if principal.department_id is not None and principal.department_id in resource.allowed_departments:
            return True
    return False


def can_edit(principal: Principal, resource: AccessDescriptor) -> bool:
    if principal.is_elevated:
        return True
    if _is_author(principal, resource):
        return True
    return (
        principal.role == ROLE_STAFF
        and principal.department_id is not None
        and principal.department_id == resource.department_id
    )


def evaluate_access(principal: Principal, resource: AccessDescriptor) -> AccessDecision:
    return AccessDecision(can_read=can_read(principal, resource), can_edit=can_edit(principal, resource))
