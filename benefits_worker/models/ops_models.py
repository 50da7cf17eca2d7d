from typing import List

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """ Модель ответа проверки здоровья """
    status: str = Field(..., description="Статус сервиса")
    queue_size: int = Field(default=0, description="Задач в ожидании по всем очередям")
    error_rate: float = Field(default=0.0, description="Доля неудачных выполнений")
    timestamp: float = Field(..., description="Временная метка")


class QueueStatsModel(BaseModel):
    """ Состояние одной очереди """
    queue: str
    pending: int = Field(default=0, description="Ждут выполнения")
    active: int = Field(default=0, description="Выполняются")
    scheduled: int = Field(default=0, description="Ждут повтора")
    dead: int = Field(default=0, description="Исчерпали попытки")


class QueueStatusResponse(BaseModel):
    """ Модель ответа состояния очередей """
    queues: List[QueueStatsModel] = Field(default_factory=list)


class DeadTasksResponse(BaseModel):
    """ Последние мертвые задачи очереди """
    queue: str
    tasks: List[str] = Field(default_factory=list, description="Записи как они лежат в брокере")
