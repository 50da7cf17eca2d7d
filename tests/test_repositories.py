import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from benefits_worker.domain.entities import User, UserGroupMembership
from benefits_worker.domain.exceptions import UserNotFoundException
from benefits_worker.domain.value_objects import GroupType, VerificationStatus
from benefits_worker.infrastructure.repositories import SQLAlchemyUserRepository


@pytest.fixture
def session():
    session = AsyncMock()
    session.begin = MagicMock()
    return session


@pytest.fixture
def session_factory(session):
    """ async_sessionmaker, выдающий один и тот же мок сессии """
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    return factory


async def test_in_memory_repository_returns_copies(user_repo, pensioner):
    """ Изменения загруженного объекта не попадают в хранилище без update """
    user = await user_repo.get_by_id(pensioner.user_id)
    user.groups.clear()

    assert (await user_repo.get_by_id(pensioner.user_id)).groups == pensioner.groups


async def test_in_memory_update_of_unknown_user(user_repo):
    with pytest.raises(UserNotFoundException):
        await user_repo.update_user_groups(uuid.uuid4(), [])


async def test_sqlalchemy_get_by_id_maps_json_groups(session, session_factory):
    user_id = uuid.uuid4()
    row = SimpleNamespace(id=user_id, snils="1", email="user@example.com", group_type=[
        {"type": "pensioners", "status": "verified",
         "verified_at": "2025-01-15T10:00:00+00:00", "expires_at": "2026-01-15T10:00:00+00:00"},
        {"type": "children", "status": "pending"},
    ])
    session.execute.return_value = MagicMock(one_or_none=MagicMock(return_value=row))

    user = await SQLAlchemyUserRepository(session_factory).get_by_id(user_id)

    assert user == User(user_id=user_id, snils="1", email="user@example.com", groups=[
        UserGroupMembership(
            type=GroupType.PENSIONERS,
            status=VerificationStatus.VERIFIED,
            verified_at=datetime(2025, 1, 15, 10, tzinfo=timezone.utc),
            expires_at=datetime(2026, 1, 15, 10, tzinfo=timezone.utc),
        ),
        UserGroupMembership.pending(GroupType.CHILDREN),
    ])
    assert "FROM users" in str(session.execute.await_args.args[0])


async def test_sqlalchemy_get_by_id_missing(session, session_factory):
    session.execute.return_value = MagicMock(one_or_none=MagicMock(return_value=None))

    assert await SQLAlchemyUserRepository(session_factory).get_by_id(uuid.uuid4()) is None


async def test_sqlalchemy_update_user_groups(session, session_factory):
    session.execute.return_value = MagicMock(rowcount=1)
    groups = [UserGroupMembership.pending(GroupType.VETERANS)]

    await SQLAlchemyUserRepository(session_factory).update_user_groups(uuid.uuid4(), groups)

    stmt = session.execute.await_args.args[0]
    assert str(stmt).startswith("UPDATE users SET group_type")
    session.begin.assert_called_once()


async def test_sqlalchemy_update_unknown_user(session, session_factory):
    session.execute.return_value = MagicMock(rowcount=0)

    with pytest.raises(UserNotFoundException):
        await SQLAlchemyUserRepository(session_factory).update_user_groups(uuid.uuid4(), [])
