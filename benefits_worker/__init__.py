"""
Benefits Task Worker

Воркер фоновых задач сервиса льгот: письма с кодом подтверждения
и проверка социальных групп пользователей во внешнем сервисе.
Использует Domain-Driven Design (DDD) и принципы SOLID.
"""

__version__ = "0.1.0"
