import asyncio
import copy
from typing import List, Optional, Dict
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from benefits_worker.application.interfaces import AbstractUserRepository
from benefits_worker.domain.entities import User, UserGroupMembership
from benefits_worker.domain.exceptions import UserNotFoundException
from benefits_worker.infrastructure.orm import users as orm_users
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='repositories')


def _memberships_from_json(raw) -> List[UserGroupMembership]:
    if not raw:
        return []
    return [UserGroupMembership.from_dict(item) for item in raw]


class SQLAlchemyUserRepository(AbstractUserRepository):
    """ Репозиторий пользователей поверх SQLAlchemy (async) """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        stmt = select(
            orm_users.c.id, orm_users.c.snils, orm_users.c.email, orm_users.c.group_type
        ).where(orm_users.c.id == user_id)

        async with self._session_factory() as session:
            row = (await session.execute(stmt)).one_or_none()

        if row is None:
            return None

        return User(
            user_id=row.id,
            snils=row.snils,
            email=row.email,
            groups=_memberships_from_json(row.group_type)
        )

    async def update_user_groups(self, user_id: UUID, groups: List[UserGroupMembership]) -> None:
        stmt = (
            update(orm_users)
            .where(orm_users.c.id == user_id)
            .values(group_type=[m.to_dict() for m in groups])
        )

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)

        if result.rowcount == 0:
            raise UserNotFoundException(f"User {user_id} not found")

        logger.debug(f"Groups of user {user_id} updated: {len(groups)} records")


class InMemoryUserRepository(AbstractUserRepository):
    """ Репозиторий пользователей в памяти (тесты и локальный запуск) """

    def __init__(self):
        self.users: Dict[UUID, User] = {}
        self.lock = asyncio.Lock()

    async def add(self, user: User) -> None:
        async with self.lock:
            self.users[user.user_id] = copy.deepcopy(user)

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        async with self.lock:
            user = self.users.get(user_id)
            # Копия, чтобы вызывающий не менял хранилище в обход update
            return copy.deepcopy(user) if user else None

    async def update_user_groups(self, user_id: UUID, groups: List[UserGroupMembership]) -> None:
        async with self.lock:
            user = self.users.get(user_id)
            if user is None:
                raise UserNotFoundException(f"User {user_id} not found")
            user.groups = list(groups)
