import uuid
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from benefits_worker.config import config
from benefits_worker.domain.entities import User, UserGroupMembership
from benefits_worker.domain.value_objects import GroupType, VerificationStatus
from benefits_worker.infrastructure.broker import InMemoryTaskBroker
from benefits_worker.infrastructure.repositories import InMemoryUserRepository
from benefits_worker.infrastructure.services import PrometheusMetricsCollector

from fakes import Clock


@pytest.fixture
def metrics_collector():
    """Фикстура для создания экземпляра PrometheusMetricsCollector"""
    return PrometheusMetricsCollector()


@pytest.fixture
def metrics_mock():
    return AsyncMock()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def broker(clock):
    return InMemoryTaskBroker(clock=clock)


@pytest.fixture
def user_repo():
    return InMemoryUserRepository()


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
async def pensioner(user_repo, user_id):
    """ Пользователь с ожидающей проверки группой пенсионеров и подтвержденной студенческой """
    user = User(
        user_id=user_id,
        snils="112-233-445 95",
        email="user@example.com",
        groups=[
            UserGroupMembership(type=GroupType.PENSIONERS, status=VerificationStatus.PENDING),
            UserGroupMembership(
                type=GroupType.STUDENTS,
                status=VerificationStatus.VERIFIED,
                verified_at=datetime(2024, 9, 1, tzinfo=config.timezone),
                expires_at=datetime(2025, 9, 1, tzinfo=config.timezone)
            ),
        ]
    )
    await user_repo.add(user)
    return user
