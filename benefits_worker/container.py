import inspect
import logging
from typing import Type, Any, Dict, Optional

import redis
from redis.asyncio import Redis as aioredis
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine

from benefits_worker.application.interfaces import (
    AbstractUserRepository, AbstractSocialGroupVerifier, AbstractEmailSender,
    AbstractTaskBroker, AbstractQueueClient, AbstractMetricsCollector
)
from benefits_worker.application.queue_client import QueueClient
from benefits_worker.application.use_cases import (
    CheckSocialGroupsUseCase, SendVerificationEmailUseCase,
    RequestEmailVerificationUseCase, RequestGroupVerificationUseCase
)
from benefits_worker.config import config
from benefits_worker.handlers.send_email_handler import SendEmailHandler
from benefits_worker.handlers.social_group_handler import CheckSocialGroupHandler
from benefits_worker.infrastructure.broker import RedisTaskBroker, InMemoryTaskBroker
from benefits_worker.infrastructure.orm import create_tables
from benefits_worker.infrastructure.repositories import SQLAlchemyUserRepository, InMemoryUserRepository
from benefits_worker.infrastructure.services import (
    SocialGroupCheckerClient, SMTPEmailSender, LogEmailSender, PrometheusMetricsCollector
)


class ServiceNotRegisteredError(Exception):
    """Исключение для незарегистрированного сервиса"""
    pass


class ServiceContainer:

    def __init__(self):
        self._services: Dict[Type, tuple] = {}
        self._singletons: Dict[Type, Any] = {}
        self._initialized = False

    def register_singleton(self, interface: Type, implementation: Type = None):
        """
        Зарегистрировать singleton сервис - зависимость, объявляемая
        всего один раз при инициализации контейнера
        :param interface: абстрактный порт для определенного сервиса
        :param implementation: адаптер под него
        """
        if implementation is None:
            implementation = interface
        self._services[interface] = (implementation, True)

    def register_transient(self, interface: Type, implementation: Type = None):
        """
        Зарегистрировать transient сервис - новый экземпляр на каждый запрос
        :param interface: абстрактный порт для определенного сервиса
        :param implementation: адаптер под него
        """
        if implementation is None:
            implementation = interface
        self._services[interface] = (implementation, False)

    def register_instance(self, interface: Type, instance: Any):
        """ Зарегистрировать готовый экземпляр """
        self._singletons[interface] = instance
        self._services[interface] = (type(instance), True)

    def is_registered(self, interface: Type) -> bool:
        return interface in self._services

    async def get(self, interface: Type):
        """ Получить экземпляр сервиса """
        if interface not in self._services:
            raise ServiceNotRegisteredError(f"Service {interface.__name__} not registered")

        implementation, is_singleton = self._services[interface]
        if is_singleton:
            if interface not in self._singletons:
                self._singletons[interface] = await self._create_instance(implementation)
            return self._singletons[interface]
        else:
            return await self._create_instance(implementation)

    async def _create_instance(self, implementation: Type):
        """ Создать экземпляр с dependency injection """

        # Получить параметры конструктора
        sig = inspect.signature(implementation.__init__)
        params = {}

        for param_name, param in sig.parameters.items():
            if param_name == 'self':
                continue

            # Разрешаем зависимость по типу аннотации, остальное - по умолчанию
            if param.annotation != inspect.Parameter.empty:
                if param.annotation in self._services:
                    params[param_name] = await self.get(param.annotation)
                elif hasattr(param.annotation, '__origin__'):
                    # Generic типы (например, Callable[...]) не разрешаем
                    continue

        return implementation(**params)

    async def initialise(self):
        """ Инициализировать контейнер и все зависимости """

        if self._initialized:
            return

        # Создать подключения к внешним зависимостям
        await self._setup_external_connections()

        # Зарегистрировать все сервисы
        await self._register_services()

        self._initialized = True

    async def _setup_external_connections(self):
        """ Настроить подключения к внешним сервисам """
        if config.queue.backend == 'redis':
            redis_client = aioredis.from_url(
                url=config.redis.url,
                max_connections=config.redis.max_connections,
                retry_on_timeout=config.redis.retry_on_timeout,
                socket_timeout=config.redis.socket_timeout,
                socket_connect_timeout=config.redis.socket_connect_timeout,
                decode_responses=True
            )
            self.register_instance(redis.Redis, redis_client)

        if config.database.url:
            try:
                engine = create_async_engine(
                    url=config.database.url,
                    pool_pre_ping=True,
                    echo=False
                )
                self.register_instance(AsyncEngine, engine)
                session_factory = async_sessionmaker(engine, expire_on_commit=False)
                self.register_instance(async_sessionmaker, session_factory)

                if config.database.create_tables:
                    await create_tables(engine)

            except Exception as e:
                logging.warning(f"Failed to connect to database: {e}. Proceeding with in-memory users.")

    async def _register_services(self):
        """ Зарегистрировать все сервисы """

        # Брокер и клиент очереди
        if self.is_registered(redis.Redis):
            self.register_singleton(AbstractTaskBroker, RedisTaskBroker)
        else:
            self.register_singleton(AbstractTaskBroker, InMemoryTaskBroker)
        self.register_singleton(AbstractQueueClient, QueueClient)

        # Repositories
        if self.is_registered(async_sessionmaker):
            self.register_singleton(AbstractUserRepository, SQLAlchemyUserRepository)
        else:
            self.register_singleton(AbstractUserRepository, InMemoryUserRepository)

        # Infrastructure services
        self.register_singleton(AbstractSocialGroupVerifier, SocialGroupCheckerClient)
        if config.email.enabled:
            self.register_singleton(AbstractEmailSender, SMTPEmailSender)
        else:
            self.register_singleton(AbstractEmailSender, LogEmailSender)
        self.register_singleton(AbstractMetricsCollector, PrometheusMetricsCollector)

        # Use cases
        self.register_singleton(CheckSocialGroupsUseCase)
        self.register_singleton(SendVerificationEmailUseCase)
        self.register_transient(RequestEmailVerificationUseCase)
        self.register_transient(RequestGroupVerificationUseCase)

        # Обработчики задач
        self.register_singleton(SendEmailHandler)
        self.register_singleton(CheckSocialGroupHandler)

    async def cleanup(self):
        """Очистить ресурсы"""

        # Закрыть соединения
        verifier = self._singletons.get(AbstractSocialGroupVerifier)
        if isinstance(verifier, SocialGroupCheckerClient):
            await verifier.close()
        if redis.Redis in self._singletons:
            await self._singletons[redis.Redis].aclose()
        if AsyncEngine in self._singletons:
            await self._singletons[AsyncEngine].dispose()

        # Очистить состояния
        self._singletons.clear()
        self._services.clear()
        self._initialized = False


class ServiceFactory:
    """ Фабрика для создания настроенного контейнера """

    @staticmethod
    async def create_container() -> ServiceContainer:
        """Создать и настроить контейнер"""
        container = ServiceContainer()
        await container.initialise()
        return container


# Глобальный контейнер (Singleton)
_container: Optional[ServiceContainer] = None


async def get_container() -> ServiceContainer:
    """ Получить глобальный контейнер """
    global _container
    if _container is None:
        _container = await ServiceFactory.create_container()

    return _container


async def cleanup_container() -> None:
    """Очистить глобальный контейнер"""
    global _container

    if _container is not None:
        await _container.cleanup()
        _container = None


# УДОБНЫЕ ФУНКЦИИ ДЛЯ ПОЛУЧЕНИЯ СЕРВИСОВ
async def get_user_repository() -> AbstractUserRepository:
    """ Получить репозиторий пользователей """
    container = await get_container()
    return await container.get(AbstractUserRepository)


async def get_task_broker() -> AbstractTaskBroker:
    """ Получить брокер задач """
    container = await get_container()
    return await container.get(AbstractTaskBroker)


async def get_metrics_collector() -> AbstractMetricsCollector:
    """ Получить сборщик метрик """
    container = await get_container()
    return await container.get(AbstractMetricsCollector)
