import pytest

from app.pcms.access import (
    AccessDescriptor,
    Principal,
    can_edit,
    can_read,
    evaluate_access,
)

AUTHOR = Principal(id=1, role="student", department_id=10)
CLASSMATE = Principal(id=2, role="student", department_id=10)
STAFF_SAME_DEPT = Principal(id=3, role="staff", department_id=10)
STAFF_OTHER_DEPT = Principal(id=4, role="staff", department_id=20)
MANAGER = Principal(id=5, role="manager", department_id=20)
SUPER_ADMIN = Principal(id=6, role="super_admin", department_id=None)
NO_DEPT_STUDENT = Principal(id=7, role="student", department_id=None)

EVERYONE = [AUTHOR, CLASSMATE, STAFF_SAME_DEPT, STAFF_OTHER_DEPT, MANAGER, SUPER_ADMIN, NO_DEPT_STUDENT]


def _doc(visibility: str, **kwargs) -> AccessDescriptor:
    return AccessDescriptor.build(author_id=AUTHOR.id, department_id=10, visibility=visibility, **kwargs)


@pytest.mark.parametrize("principal", EVERYONE, ids=lambda p: f"{p.role}-{p.id}")
def test_public_documents_are_readable_by_everyone(principal):
    # Allow-lists are ignored for public documents
    doc = _doc("public", allowed_users=[999], allowed_roles=["manager"])
    assert can_read(principal, doc) is True


@pytest.mark.parametrize("visibility", ["public", "private", "restricted", "bogus"])
def test_author_can_always_read_and_edit(visibility):
    doc = _doc(visibility)
    assert can_read(AUTHOR, doc) is True
    assert can_edit(AUTHOR, doc) is True


@pytest.mark.parametrize("principal", [CLASSMATE, STAFF_SAME_DEPT, STAFF_OTHER_DEPT, NO_DEPT_STUDENT])
def test_private_documents_hidden_from_non_author_non_elevated(principal):
    assert can_read(principal, _doc("private")) is False


@pytest.mark.parametrize("principal", [MANAGER, SUPER_ADMIN])
@pytest.mark.parametrize("visibility", ["public", "private", "restricted"])
def test_elevated_roles_read_and_edit_everything(principal, visibility):
    doc = _doc(visibility)
    assert can_read(principal, doc) is True
    assert can_edit(principal, doc) is True


def test_restricted_allows_listed_user():
    doc = _doc("restricted", allowed_users=[CLASSMATE.id])
    assert can_read(CLASSMATE, doc) is True
    assert can_read(NO_DEPT_STUDENT, doc) is False


def test_restricted_allows_listed_role():
    doc = _doc("restricted", allowed_roles=["staff"])
    assert can_read(STAFF_SAME_DEPT, doc) is True
    assert can_read(STAFF_OTHER_DEPT, doc) is True
    assert can_read(CLASSMATE, doc) is False


def test_restricted_allows_listed_department():
    doc = _doc("restricted", allowed_departments=[20])
    assert can_read(STAFF_OTHER_DEPT, doc) is True
    assert can_read(CLASSMATE, doc) is False
    # No department never matches a department allow-list
    assert can_read(NO_DEPT_STUDENT, doc) is False


def test_restricted_with_empty_allow_lists_denies():
    assert can_read(CLASSMATE, _doc("restricted")) is False


def test_unknown_visibility_is_treated_as_private():
    doc = _doc("shared-with-friends", allowed_users=[CLASSMATE.id])
    assert can_read(CLASSMATE, doc) is False


def test_staff_edit_requires_same_department():
    doc = _doc("private")
    assert can_edit(STAFF_SAME_DEPT, doc) is True
    assert can_edit(STAFF_OTHER_DEPT, doc) is False


def test_students_in_same_department_cannot_edit():
    assert can_edit(CLASSMATE, _doc("public")) is False


def test_resource_without_department_only_editable_by_author_and_elevated():
    doc = AccessDescriptor.build(author_id=AUTHOR.id, department_id=None, visibility="public")
    staff_no_dept = Principal(id=8, role="staff", department_id=None)
    assert can_edit(staff_no_dept, doc) is False
    assert can_edit(STAFF_SAME_DEPT, doc) is False
    assert can_edit(MANAGER, doc) is True


def test_read_does_not_imply_edit():
    doc = _doc("restricted", allowed_users=[CLASSMATE.id])
    decision = evaluate_access(CLASSMATE, doc)
    assert decision.can_read is True
    assert decision.can_edit is False
    assert decision.to_dict() == {"can_read": True, "can_edit": False}


def test_descriptor_without_author_is_total():
    doc = AccessDescriptor.build(author_id=None, visibility=None)
    for principal in EVERYONE:
        assert can_read(principal, doc) is principal.is_elevated
