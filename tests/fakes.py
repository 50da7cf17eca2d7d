from datetime import datetime
from typing import Dict, Sequence

from benefits_worker.application.interfaces import AbstractSocialGroupVerifier, AbstractTaskHandler
from benefits_worker.config import config
from benefits_worker.domain.value_objects import GroupType, GroupCheckResult


FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=config.timezone)


class FakeVerifier(AbstractSocialGroupVerifier):
    """ Сервис проверки с заранее заданными ответами """

    def __init__(self, results: Dict[GroupType, GroupCheckResult] = None):
        self.results = results or {}
        self.calls = []

    async def verify(self, snils: str, groups: Sequence[GroupType]) -> Dict[GroupType, GroupCheckResult]:
        self.calls.append((snils, list(groups)))
        return {g: r for g, r in self.results.items() if g in groups}


class FakeHandler(AbstractTaskHandler):
    """ Обработчик, который записывает задачи и выполняет side_effect """

    def __init__(self, kind, side_effect=None):
        self.kind = kind
        self.side_effect = side_effect
        self.tasks = []

    async def process(self, task) -> None:
        self.tasks.append(task)
        if self.side_effect is not None:
            await self.side_effect(task)


class Clock:
    """ Управляемые часы для брокера """

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
