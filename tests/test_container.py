import pytest

from benefits_worker.application.interfaces import (
    AbstractUserRepository, AbstractTaskBroker, AbstractEmailSender,
    AbstractSocialGroupVerifier, AbstractMetricsCollector, AbstractQueueClient
)
from benefits_worker.application.queue_client import QueueClient
from benefits_worker.application.use_cases import CheckSocialGroupsUseCase, RequestGroupVerificationUseCase
from benefits_worker.config import config, parse_queue_weights
from benefits_worker.container import ServiceContainer, ServiceNotRegisteredError
from benefits_worker.handlers.social_group_handler import CheckSocialGroupHandler
from benefits_worker.infrastructure.broker import InMemoryTaskBroker
from benefits_worker.infrastructure.repositories import InMemoryUserRepository
from benefits_worker.infrastructure.services import LogEmailSender, SocialGroupCheckerClient


@pytest.fixture
async def container(monkeypatch):
    """ Фикстура для создания тестового контейнера без внешних подключений """
    monkeypatch.setattr(config.queue, "backend", "memory")
    monkeypatch.setattr(config.database, "url", None)
    monkeypatch.setattr(config.email, "enabled", False)

    container = ServiceContainer()
    await container.initialise()

    yield container

    # Очистка после теста
    await container.cleanup()


async def test_services_created_according_to_config(container):
    """ Без Redis и базы - реализации в памяти """
    assert isinstance(await container.get(AbstractTaskBroker), InMemoryTaskBroker)
    assert isinstance(await container.get(AbstractUserRepository), InMemoryUserRepository)
    assert isinstance(await container.get(AbstractEmailSender), LogEmailSender)
    assert isinstance(await container.get(AbstractSocialGroupVerifier), SocialGroupCheckerClient)


async def test_dependencies_are_injected(container):
    """ Зависимости разрешаются по аннотациям конструктора """
    handler = await container.get(CheckSocialGroupHandler)
    use_case = handler.check_groups_use_case

    assert isinstance(use_case, CheckSocialGroupsUseCase)
    assert use_case.user_repo is await container.get(AbstractUserRepository)
    assert use_case.metrics is await container.get(AbstractMetricsCollector)

    client = await container.get(AbstractQueueClient)
    assert isinstance(client, QueueClient)
    assert client.broker is await container.get(AbstractTaskBroker)

    producer = await container.get(RequestGroupVerificationUseCase)
    assert producer.queue_client is client
    # transient: каждый раз новый экземпляр
    assert producer is not await container.get(RequestGroupVerificationUseCase)


async def test_unregistered_service(container):
    with pytest.raises(ServiceNotRegisteredError):
        await container.get(dict)


async def test_cleanup_method(container):
    """ Тест с очисткой контейнера """
    await container.cleanup()
    assert not container._singletons
    assert not container._initialized


def test_parse_queue_weights():
    assert parse_queue_weights("sendEmailQueue:3, checkSocialGroupQueue:1,") == {
        "sendEmailQueue": 3, "checkSocialGroupQueue": 1
    }
    assert parse_queue_weights("solo") == {"solo": 1}
    with pytest.raises(ValueError):
        parse_queue_weights("sendEmailQueue:0")
