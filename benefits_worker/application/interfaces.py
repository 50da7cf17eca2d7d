from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Sequence, TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from benefits_worker.domain.entities import User, UserGroupMembership
    from benefits_worker.domain.tasks import Task, TaskKind
    from benefits_worker.domain.value_objects import GroupType, GroupCheckResult


@dataclass(frozen=True)
class QueueStats:
    """ Срез состояния одной очереди """
    queue: str
    pending: int = 0
    active: int = 0
    scheduled: int = 0
    dead: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'queue': self.queue,
            'pending': self.pending,
            'active': self.active,
            'scheduled': self.scheduled,
            'dead': self.dead,
        }


class AbstractUserRepository(ABC):
    """Интерфейс репозитория пользователей"""

    @abstractmethod
    async def get_by_id(self, user_id: UUID) -> Optional["User"]:
        """Найти пользователя по ID"""
        raise NotImplementedError

    @abstractmethod
    async def update_user_groups(self, user_id: UUID, groups: List["UserGroupMembership"]) -> None:
        """Полностью заменить список социальных групп пользователя"""
        raise NotImplementedError


class AbstractSocialGroupVerifier(ABC):
    """Интерфейс проверки социальных групп во внешнем сервисе"""

    @abstractmethod
    async def verify(self, snils: str, groups: Sequence["GroupType"]) -> Dict["GroupType", "GroupCheckResult"]:
        """
        Проверить группы по СНИЛС.
        Сбой вызова не бросается наружу, а возвращается как CALL_FAILED по каждой группе.
        """
        raise NotImplementedError


class AbstractEmailSender(ABC):
    """Интерфейс отправки писем"""

    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> None:
        raise NotImplementedError


class AbstractTaskBroker(ABC):
    """ Интерфейс брокера задач (хранение, выдача, повторы) """

    @abstractmethod
    async def enqueue(self, task: "Task") -> None:
        """ Поставить задачу в очередь """
        raise NotImplementedError

    @abstractmethod
    async def dequeue(self, queues: Sequence[str]) -> Optional["Task"]:
        """
        Забрать первую доступную задачу, проверяя очереди по порядку.
        Нечитаемые записи брокер сам переносит в мертвые и идет дальше.
        """
        raise NotImplementedError

    @abstractmethod
    async def ack(self, task: "Task") -> None:
        """ Задача выполнена - удалить """
        raise NotImplementedError

    @abstractmethod
    async def retry(self, task: "Task", error: str, delay: float) -> "Task":
        """ Отложить задачу на повтор, вернуть обновленную копию """
        raise NotImplementedError

    @abstractmethod
    async def kill(self, task: "Task", error: str) -> "Task":
        """ Переместить задачу в список мертвых """
        raise NotImplementedError

    @abstractmethod
    async def forward_scheduled(self) -> int:
        """ Вернуть в очередь задачи, у которых подошло время повтора """
        raise NotImplementedError

    @abstractmethod
    async def stats(self) -> List[QueueStats]:
        raise NotImplementedError

    @abstractmethod
    async def list_dead(self, queue: str, limit: int = 100) -> List[str]:
        """ Последние мертвые записи очереди (как они лежат в брокере) """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class AbstractQueueClient(ABC):
    """ Постановка задач в очередь для продюсеров """

    @abstractmethod
    async def enqueue(self, task: "Task") -> "Task":
        raise NotImplementedError


class AbstractTaskHandler(ABC):
    """ Обработчик задач одного вида """

    kind: "TaskKind"

    @abstractmethod
    async def process(self, task: "Task") -> None:
        raise NotImplementedError


class AbstractMetricsCollector(ABC):
    """ Интерфейс сборщика метрик """

    @abstractmethod
    async def record_task_processed(self, task_name: str, processing_time: float, success: bool) -> None:
        """ Записать выполнение задачи """
        pass

    @abstractmethod
    async def record_retry_attempt(self, task_name: str, retry_count: int, delay: float) -> None:
        """ Записать постановку на повтор """
        pass

    @abstractmethod
    async def record_dead_task(self, task_name: str, reason: str) -> None:
        """ Записать задачу, ушедшую в мертвые """
        pass

    @abstractmethod
    async def record_queue_size(self, queue: str, queue_size: int) -> None:
        """ Записать размер очереди """
        pass

    @abstractmethod
    async def record_membership_transition(self, group: str, status: str) -> None:
        """ Записать смену статуса социальной группы """
        pass

    @abstractmethod
    async def record_error(self, error_type: str) -> None:
        """ Записать ошибку """
        pass

    @abstractmethod
    async def get_metrics(self) -> Dict[str, Any]:
        """ Получить метрики """
        pass

    @abstractmethod
    async def get_health_status(self) -> Dict[str, Any]:
        """ Получить статус здоровья """
        pass
