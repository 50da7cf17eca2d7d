"""
Клиент очереди для продюсеров.

Клиент передается в use case явно. Для мест, где это неудобно, есть
процессный клиент по умолчанию: его ставит WorkerService при старте,
а тесты подменяют через override_client() / set_client().
"""

import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

from benefits_worker.application.interfaces import AbstractQueueClient, AbstractTaskBroker
from benefits_worker.domain.tasks import Task
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='queue client')


class QueueClient(AbstractQueueClient):
    """ Постановка задач в брокер """

    def __init__(self, broker: AbstractTaskBroker):
        self.broker = broker

    async def enqueue(self, task: Task) -> Task:
        """ Передать задачу брокеру; долговечность обеспечивает брокер """
        await self.broker.enqueue(task)
        logger.debug(f"Task {task.name} ({task.id}) enqueued to {task.queue}")
        return task


_global_client: Optional[AbstractQueueClient] = None
_global_lock = threading.Lock()

# Подмена в пределах контекста (asyncio-задачи/потока) важнее глобальной
_context_client: ContextVar[Optional[AbstractQueueClient]] = ContextVar("queue_client", default=None)


def get_client() -> Optional[AbstractQueueClient]:
    """ Текущий клиент очереди: контекстный, иначе глобальный """
    client = _context_client.get()
    if client is not None:
        return client

    with _global_lock:
        return _global_client


def set_client(client: Optional[AbstractQueueClient]) -> Callable[[], None]:
    """ Заменить глобальный клиент; возвращает функцию восстановления прежнего """
    global _global_client

    with _global_lock:
        previous = _global_client
        _global_client = client

    def restore() -> None:
        set_client(previous)

    return restore


@contextmanager
def override_client(client: AbstractQueueClient) -> Iterator[AbstractQueueClient]:
    """ Подменить клиент только для текущего контекста """
    token = _context_client.set(client)
    try:
        yield client
    finally:
        _context_client.reset(token)
