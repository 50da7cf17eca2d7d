from datetime import datetime, timezone

import pytest

from benefits_worker.domain.entities import User, UserGroupMembership, add_one_year
from benefits_worker.domain.value_objects import (
    GroupType, VerificationStatus, GroupCheckResult, CheckOutcome
)


def test_add_one_year():
    assert add_one_year(datetime(2025, 3, 10)) == datetime(2026, 3, 10)
    # 29 февраля переходит на 1 марта
    assert add_one_year(datetime(2024, 2, 29, 8, 30)) == datetime(2025, 3, 1, 8, 30)


def test_verify_and_reject():
    now = datetime(2025, 1, 15, tzinfo=timezone.utc)
    pending = UserGroupMembership.pending(GroupType.VETERANS)

    verified = pending.verify(now)
    assert verified.status is VerificationStatus.VERIFIED
    assert verified.verified_at == now
    assert verified.expires_at == datetime(2026, 1, 15, tzinfo=timezone.utc)
    assert verified.rejected_at is None
    assert pending.is_pending and not verified.is_pending

    rejected = pending.reject(now, "Ошибка проверки: timeout")
    assert rejected.status is VerificationStatus.REJECTED
    assert rejected.rejected_at == now
    assert rejected.verified_at is None and rejected.expires_at is None
    assert rejected.error_message == "Ошибка проверки: timeout"


def test_membership_json_format():
    now = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
    membership = UserGroupMembership.pending(GroupType.LARGE_FAMILIES).verify(now)

    data = membership.to_dict()

    assert data == {
        'type': 'large_families',
        'status': 'verified',
        'verified_at': '2025-01-15T10:00:00+00:00',
        'rejected_at': None,
        'expires_at': '2026-01-15T10:00:00+00:00',
        'error_message': '',
    }
    assert UserGroupMembership.from_dict(data) == membership


def test_membership_from_minimal_dict():
    membership = UserGroupMembership.from_dict({'type': 'children', 'error_message': None})
    assert membership == UserGroupMembership.pending(GroupType.CHILDREN)


def test_request_groups_keeps_order_and_other_groups():
    decided = UserGroupMembership(type=GroupType.STUDENTS, status=VerificationStatus.REJECTED)
    user = User(user_id=None, groups=[
        UserGroupMembership(type=GroupType.CHILDREN, status=VerificationStatus.VERIFIED),
        decided,
    ])

    updated = user.request_groups([GroupType.VETERANS, GroupType.CHILDREN, GroupType.VETERANS])

    assert updated == [
        UserGroupMembership.pending(GroupType.CHILDREN),
        decided,
        UserGroupMembership.pending(GroupType.VETERANS),
    ]
    assert user.groups is updated
    assert user.membership(GroupType.DISABLED) is None


def test_group_check_result():
    assert GroupCheckResult.from_checker_status(GroupType.CHILDREN, "подтвержден").outcome \
        is CheckOutcome.CONFIRMED
    assert GroupCheckResult.from_checker_status(GroupType.CHILDREN, "отклонен").outcome \
        is CheckOutcome.REJECTED
    with pytest.raises(ValueError):
        GroupCheckResult(GroupType.CHILDREN, CheckOutcome.CALL_FAILED)


def test_group_type_validation():
    assert GroupType.is_valid("young_families")
    assert not GroupType.is_valid("astronauts")
